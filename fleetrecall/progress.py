from collections.abc import Callable
import logging
import queue
import threading
from typing import Any

from fleetrecall.schemas import EventKind, ProgressEvent


logger = logging.getLogger(__name__)

Subscriber = Callable[[ProgressEvent], None]

_STOP = object()


class RunContext:
    """Per-run progress channel.

    Events are handed to a daemon thread so a slow or failing subscriber can
    never stall or break the pipeline. When the pending queue is full new
    events are dropped.
    """

    def __init__(self, run_id: str, subscriber: Subscriber | None = None, *, max_pending: int = 1000) -> None:
        self.run_id = run_id
        self._subscriber = subscriber
        self._queue: queue.Queue[object] = queue.Queue(maxsize=max_pending)
        self._worker: threading.Thread | None = None
        self._closed = False
        self.dropped_events = 0
        if subscriber is not None:
            self._worker = threading.Thread(target=self._drain, name=f"progress-{run_id}", daemon=True)
            self._worker.start()

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def publish(
        self,
        kind: EventKind,
        message: str | None = None,
        percent: int | None = None,
        payload: Any = None,
    ) -> None:
        if self._worker is None or self._closed:
            return
        event = ProgressEvent(run_id=self.run_id, kind=kind, message=message, percent=percent, payload=payload)
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped_events += 1
            logger.debug("progress event dropped", extra={"run_id": self.run_id, "kind": kind.value})

    def progress(self, message: str, percent: int) -> None:
        self.publish(EventKind.PROGRESS, message=message, percent=percent)

    def error(self, message: str) -> None:
        self.publish(EventKind.ERROR, message=message)

    def complete(self, payload: Any = None) -> None:
        self.publish(EventKind.COMPLETE, payload=payload)

    def close(self, timeout: float = 5.0) -> None:
        if self._worker is None or self._closed:
            self._closed = True
            return
        self._closed = True
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("progress channel still full on close", extra={"run_id": self.run_id})
            return
        self._worker.join(timeout)

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self._subscriber(item)  # type: ignore[misc, arg-type]
            except Exception:
                logger.warning("progress subscriber failed", exc_info=True, extra={"run_id": self.run_id})


def phase_percent(index: int, total: int, start: int, end: int) -> int:
    if total <= 0:
        return end
    return start + ((index * (end - start)) // total)
