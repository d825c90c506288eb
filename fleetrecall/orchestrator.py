from dataclasses import dataclass, replace
import logging
import time

from fleetrecall.config import Settings
from fleetrecall.dedup import RecallDedupCache
from fleetrecall.errors import LookupFailure, LookupTimeout, SessionLossError, SessionRestartError
from fleetrecall.progress import RunContext, phase_percent
from fleetrecall.retry import RetryExhaustedError, call_with_deadline, run_with_retries
from fleetrecall.schemas import (
    EaInfo,
    LookupFailed,
    LookupState,
    LookupSuccess,
    PrimaryLookup,
    VinScrapeResult,
)
from fleetrecall.sources import PrimarySource, RegistrySource


logger = logging.getLogger(__name__)

PRIMARY_RANGE = (30, 60)
REGISTRY_RANGE = (75, 90)


@dataclass(frozen=True)
class RegistryPhaseOutcome:
    status: str
    unique_recall_numbers: int
    pair_count: int
    lookups: int
    halted: bool = False
    message: str | None = None


class ScrapeOrchestrator:
    def __init__(
        self,
        settings: Settings,
        primary: PrimarySource,
        registry: RegistrySource,
        context: RunContext,
    ) -> None:
        self.settings = settings
        self.primary = primary
        self.registry = registry
        self.context = context

    def run(self, vins: list[str]) -> tuple[list[VinScrapeResult], RegistryPhaseOutcome]:
        results = self.run_primary_phase(vins)
        outcome = self.run_registry_phase(results)
        return results, outcome

    # Phase 1

    def run_primary_phase(self, vins: list[str]) -> list[VinScrapeResult]:
        results = [VinScrapeResult(vin=vin) for vin in vins]
        self.context.progress("Initializing primary source...", 20)

        initialized = self._safe_initialize(self.primary, "primary")
        try:
            if not initialized:
                logger.warning("primary source failed to initialize", extra={"vin_count": len(vins)})
                self.context.error("Primary source failed to initialize")
                for result in results:
                    result.primary = LookupFailed("primary source failed to initialize")
                    result.state = LookupState.FAILED
                return results

            self.context.progress("Looking up recall data...", PRIMARY_RANGE[0])
            total = len(results)
            for index, result in enumerate(results):
                abandoned = self._lookup_vin(result)
                self.context.progress(
                    f"Looking up recall data... ({index + 1}/{total})",
                    phase_percent(index + 1, total, *PRIMARY_RANGE),
                )

                remaining = index < total - 1
                if remaining and abandoned is not None:
                    if not self._recycle_session(self.primary, "primary", abandoned):
                        logger.error("primary session not re-established after timeout", extra={"vin": result.vin})
                elif remaining and (index + 1) % self.settings.primary_restart_every == 0:
                    self._proactive_restart(self.primary, "primary", processed=index + 1)
                if remaining:
                    self._pause(self.settings.inter_call_delay_seconds)
        finally:
            self._safe_close(self.primary, "primary")

        failed = sum(1 for result in results if result.state is LookupState.FAILED)
        logger.info("primary phase complete", extra={"vin_count": len(results), "failed": failed})
        return results

    def _lookup_vin(self, result: VinScrapeResult) -> LookupTimeout | None:
        result.state = LookupState.ATTEMPTING

        def attempt() -> PrimaryLookup:
            result.attempts += 1
            response = call_with_deadline(
                lambda: self.primary.lookup(result.vin),
                timeout_seconds=self.settings.lookup_timeout_seconds,
                label=result.vin,
            )
            if response is None or not response.success:
                message = (response.error if response is not None else None) or "Lookup failed"
                raise LookupFailure(message)
            return response

        def log_failure(attempt_number: int, exc: Exception) -> None:
            logger.warning(
                "primary lookup attempt failed",
                extra={"vin": result.vin, "attempt": attempt_number, "error": str(exc)},
            )

        def restart(attempt_number: int, exc: Exception) -> None:
            logger.info("restarting primary session before retry", extra={"vin": result.vin, "attempt": attempt_number})
            try:
                self.primary.close()
                self._await_abandoned(exc)
                self._pause(self.settings.restart_cooldown_seconds)
                reinitialized = self.primary.initialize()
            except Exception as restart_exc:
                raise SessionRestartError(f"Session restart failed: {restart_exc}") from restart_exc
            if not reinitialized:
                raise SessionRestartError(f"Failed to restart session after error: {exc}")

        try:
            response = run_with_retries(
                attempt,
                max_retries=self.settings.primary_max_retries,
                backoff_seconds=0,
                on_attempt_failure=log_failure,
                should_retry=self.needs_session_restart,
                before_retry=restart,
            )
        except SessionRestartError as exc:
            self._fail(result, str(exc))
            return None
        except RetryExhaustedError as exc:
            cause = exc.__cause__
            self._fail(result, str(cause or exc))
            # A timed out call is still running on the session; the caller recycles it.
            return cause if isinstance(cause, LookupTimeout) else None

        result.primary = LookupSuccess(recalls=list(response.recalls))
        result.state = LookupState.SUCCEEDED
        logger.info(
            "primary lookup succeeded",
            extra={"vin": result.vin, "recalls": len(result.valid_recalls()), "attempts": result.attempts},
        )
        return None

    def needs_session_restart(self, exc: Exception) -> bool:
        message = str(exc)
        return any(marker in message for marker in self.settings.restart_error_markers)

    def _fail(self, result: VinScrapeResult, message: str) -> None:
        result.primary = LookupFailed(message)
        result.state = LookupState.FAILED
        logger.error("primary lookup failed", extra={"vin": result.vin, "error": message})
        self.context.error(f"Lookup failed for VIN {result.vin}: {message}")

    # Phase 3

    def run_registry_phase(self, results: list[VinScrapeResult]) -> RegistryPhaseOutcome:
        cache = RecallDedupCache.from_results(results)
        unique = cache.unique_recall_numbers
        logger.info(
            "recall numbers collected",
            extra={
                "pair_count": cache.pair_count,
                "unique_recall_numbers": len(unique),
                "duplicates_avoided": cache.pair_count - len(unique),
            },
        )
        if not unique:
            return RegistryPhaseOutcome(status="nothing_to_resolve", unique_recall_numbers=0, pair_count=0, lookups=0)

        self.context.progress("Initializing registry...", 60)
        if not self._safe_initialize(self.registry, "registry"):
            self.context.error("Registry failed to initialize; EA numbers will be reported as NONE")
            self._safe_close(self.registry, "registry")
            return RegistryPhaseOutcome(
                status="skipped",
                unique_recall_numbers=len(unique),
                pair_count=cache.pair_count,
                lookups=0,
                message="registry failed to initialize",
            )

        lookups = 0
        halted = False
        message: str | None = None
        try:
            if not self._ensure_authenticated():
                self.context.error("Registry sign-in required. Please sign in and try again.")
                return RegistryPhaseOutcome(
                    status="skipped",
                    unique_recall_numbers=len(unique),
                    pair_count=cache.pair_count,
                    lookups=0,
                    message="registry authentication failed",
                )

            self.context.progress("Resolving EA numbers...", REGISTRY_RANGE[0])
            try:
                lookups = self._resolve_all(cache, unique)
            except SessionLossError as exc:
                halted = True
                message = str(exc)
                lookups = sum(1 for number in unique if cache.is_resolved(number))
                logger.error("registry session lost", extra={"resolved": lookups, "remaining": len(cache.pending)})
                self.context.error("Registry session expired. Please sign in and try again.")

            cache.broadcast()
        finally:
            self._safe_close(self.registry, "registry")

        return RegistryPhaseOutcome(
            status="halted" if halted else "completed",
            unique_recall_numbers=len(unique),
            pair_count=cache.pair_count,
            lookups=lookups,
            halted=halted,
            message=message,
        )

    def _ensure_authenticated(self) -> bool:
        if self._check_authenticated():
            logger.info("registry session already authenticated")
            return True

        logger.warning("registry sign-in required, waiting for manual authentication")
        self.context.progress("Waiting for manual registry sign-in...", 65)
        try:
            authenticated = call_with_deadline(
                self.registry.authenticate,
                timeout_seconds=self.settings.auth_timeout_seconds,
                label="authenticate",
            )
        except Exception as exc:
            logger.error("registry authentication failed", extra={"error": str(exc)})
            return False
        return bool(authenticated)

    def _check_authenticated(self) -> bool:
        try:
            return bool(
                call_with_deadline(
                    self.registry.check_authenticated,
                    timeout_seconds=self.settings.lookup_timeout_seconds,
                    label="check-authenticated",
                )
            )
        except Exception as exc:
            logger.warning("registry authentication check failed", extra={"error": str(exc)})
            return False

    def _resolve_all(self, cache: RecallDedupCache, unique: list[str]) -> int:
        total = len(unique)
        lookups = 0
        for index, recall_number in enumerate(unique):
            info, abandoned = self._resolve_one(recall_number, vin_count=len(cache.vins_for(recall_number)))
            cache.record(recall_number, info)
            lookups += 1
            self.context.progress(
                f"Resolving EA numbers... ({index + 1}/{total})",
                phase_percent(index + 1, total, *REGISTRY_RANGE),
            )

            remaining = index < total - 1
            if remaining and abandoned is not None:
                if not self._recycle_session(self.registry, "registry", abandoned):
                    raise SessionLossError(f"registry session not re-established after timeout on {recall_number}")
                if not self._check_authenticated():
                    raise SessionLossError(f"registry authentication lost after {index + 1} lookups")
            elif remaining and (index + 1) % self.settings.registry_restart_every == 0:
                if self._proactive_restart(self.registry, "registry", processed=index + 1):
                    if not self._check_authenticated():
                        raise SessionLossError(f"registry authentication lost after {index + 1} lookups")
            if remaining:
                self._pause(self.settings.inter_call_delay_seconds)
        return lookups

    def _resolve_one(self, recall_number: str, *, vin_count: int) -> tuple[EaInfo, LookupTimeout | None]:
        try:
            info = call_with_deadline(
                lambda: self.registry.resolve(recall_number),
                timeout_seconds=self.settings.lookup_timeout_seconds,
                label=recall_number,
            )
        except LookupTimeout as exc:
            logger.error("registry lookup timed out", extra={"recall_number": recall_number, "error": str(exc)})
            return EaInfo.unavailable(recall_number, str(exc)), exc
        except Exception as exc:
            logger.error("registry lookup failed", extra={"recall_number": recall_number, "error": str(exc)})
            return EaInfo.unavailable(recall_number, str(exc)), None

        if info is None:
            return EaInfo.unavailable(recall_number, "registry returned no data"), None
        if info.recall_number != recall_number:
            # Keyed by the number that was queried, whatever spelling the registry echoes back.
            info = replace(info, recall_number=recall_number)
        logger.info(
            "registry lookup finished",
            extra={
                "recall_number": recall_number,
                "ea_exists": info.exists,
                "ea_number": info.ea_number or "NONE",
                "vin_count": vin_count,
            },
        )
        return info, None

    # Session handling

    def _recycle_session(self, source: PrimarySource | RegistrySource, label: str, abandoned: LookupTimeout) -> bool:
        logger.warning("recycling session after timed out call", extra={"source": label, "error": str(abandoned)})
        self._safe_close(source, label)
        self._await_abandoned(abandoned)
        self._pause(self.settings.restart_cooldown_seconds)
        return self._safe_initialize(source, label)

    def _await_abandoned(self, exc: Exception) -> None:
        worker = exc.worker if isinstance(exc, LookupTimeout) else None
        if worker is None:
            return
        # Closing the session unblocks the stale call; never start the next one while it runs.
        worker.join(self.settings.lookup_timeout_seconds)
        if worker.is_alive():
            logger.error("timed out call still running after session close", extra={"worker": worker.name})

    def _proactive_restart(self, source: PrimarySource | RegistrySource, label: str, *, processed: int) -> bool:
        logger.info("restarting session to maintain stability", extra={"source": label, "processed": processed})
        self._safe_close(source, label)
        if self._safe_initialize(source, label):
            return True
        logger.error("session restart failed, continuing with existing session", extra={"source": label})
        return False

    def _safe_initialize(self, source: PrimarySource | RegistrySource, label: str) -> bool:
        try:
            return bool(source.initialize())
        except Exception as exc:
            logger.error("session initialization failed", extra={"source": label, "error": str(exc)})
            return False

    def _safe_close(self, source: PrimarySource | RegistrySource, label: str) -> None:
        try:
            source.close()
        except Exception as exc:
            logger.warning("session close failed", extra={"source": label, "error": str(exc)})

    def _pause(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)
