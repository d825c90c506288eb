from collections.abc import Callable
import threading
import time
from typing import TypeVar

from fleetrecall.errors import LookupTimeout


T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    pass


def run_with_retries(
    fn: Callable[[], T],
    *,
    max_retries: int,
    backoff_seconds: float,
    on_attempt_failure: Callable[[int, Exception], None] | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
    before_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    last_error: Exception | None = None

    for attempt in range(1, max_retries + 2):
        try:
            return fn()
        except Exception as exc:
            last_error = exc
            if on_attempt_failure:
                on_attempt_failure(attempt, exc)

            retry_allowed = True if should_retry is None else should_retry(exc)
            if attempt > max_retries or not retry_allowed:
                break
            # Errors raised here end the retry loop and reach the caller as-is.
            if before_retry:
                before_retry(attempt, exc)
            if backoff_seconds > 0:
                time.sleep(backoff_seconds * attempt)

    raise RetryExhaustedError(str(last_error)) from last_error


def call_with_deadline(fn: Callable[[], T], *, timeout_seconds: float, label: str = "call") -> T:
    outcome: dict[str, object] = {}
    done = threading.Event()

    def _target() -> None:
        try:
            outcome["value"] = fn()
        except BaseException as exc:
            outcome["error"] = exc
        finally:
            done.set()

    # The worker is abandoned on timeout; daemon so it never blocks interpreter exit.
    worker = threading.Thread(target=_target, name=f"deadline-{label}", daemon=True)
    worker.start()
    if not done.wait(timeout_seconds):
        raise LookupTimeout(f"Request timeout after {timeout_seconds:g} seconds", worker=worker)

    if "error" in outcome:
        raise outcome["error"]  # type: ignore[misc]
    return outcome["value"]  # type: ignore[return-value]
