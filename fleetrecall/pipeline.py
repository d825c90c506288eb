from collections.abc import Callable
import logging
from pathlib import Path
from typing import TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from fleetrecall.config import Settings
from fleetrecall.db_models import PipelineRun, StepRun
from fleetrecall.errors import SpreadsheetReadError, ValidationError
from fleetrecall.extractor import AUTO_COLUMN, extract_vin_records, no_vins_message
from fleetrecall.orchestrator import RegistryPhaseOutcome, ScrapeOrchestrator
from fleetrecall.progress import RunContext, Subscriber
from fleetrecall.report import ReportDocument, build_report, report_filename, write_report
from fleetrecall.retry import RetryExhaustedError, run_with_retries
from fleetrecall.run_store import (
    create_or_get_run,
    create_step_attempt,
    finish_step_failure,
    finish_step_success,
    mark_run_failed,
    mark_run_running,
    mark_run_succeeded,
    reset_failed_run_state,
    store_ea_resolutions,
    store_invalid_vins,
    store_vin_lookups,
    update_run_counts,
)
from fleetrecall.schemas import ExtractionResult, LookupState, PipelineResult, VinScrapeResult
from fleetrecall.sources import PrimarySource, RegistrySource
from fleetrecall.spreadsheet import read_sheet


logger = logging.getLogger(__name__)
T = TypeVar("T")


class PipelineRunner:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        primary_factory: Callable[[], PrimarySource],
        registry_factory: Callable[[], RegistrySource],
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.primary_factory = primary_factory
        self.registry_factory = registry_factory

    def run(
        self,
        *,
        input_path: Path,
        run_key: str,
        vin_column: str = AUTO_COLUMN,
        trigger_source: str = "manual",
        subscriber: Subscriber | None = None,
    ) -> PipelineResult:
        with self.session_factory() as db:
            run, created = create_or_get_run(
                db,
                run_key=run_key,
                input_file=str(input_path),
                vin_column=vin_column,
                trigger_source=trigger_source,
            )
            if not created:
                if run.status == "failed":
                    # Keep the same run key and clear prior failed state.
                    logger.info("retrying previously failed run", extra={"run_key": run_key})
                    reset_failed_run_state(db, run)
                else:
                    logger.info("idempotent run reused", extra={"run_key": run_key, "status": run.status})
                    return self._result_from_run(run, reused_existing_run=True)

            mark_run_running(db, run)
            with RunContext(run_key, subscriber) as context:
                try:
                    self._execute(db, run, context, input_path=input_path, vin_column=vin_column)
                except Exception as exc:
                    mark_run_failed(db, run, error=str(exc))
                    context.error(f"Error processing file: {exc}")
                    logger.exception("pipeline run failed", extra={"run_key": run_key})
                    return self._result_from_run(run, reused_existing_run=False)

                result = self._result_from_run(run, reused_existing_run=False)
                context.complete(result)
            return result

    def _execute(self, db: Session, run: PipelineRun, context: RunContext, *, input_path: Path, vin_column: str) -> None:
        context.progress("Reading spreadsheet...", 10)
        extraction = self._run_step(db, run, "extract", lambda: self._extract(input_path, vin_column))
        update_run_counts(
            db,
            run,
            total_rows=extraction.total_rows,
            vin_count=len(extraction.records),
            invalid_count=len(extraction.invalid_rows),
            column_used=extraction.detected_column_name,
        )
        store_invalid_vins(db, run_id=run.id, invalid_rows=extraction.invalid_rows)
        context.progress(f'Extracted VINs from "{extraction.detected_column_name}" column', 15)

        if not extraction.records:
            message = no_vins_message(extraction)
            logger.warning("no vins found", extra={"run_key": run.run_key, "column": extraction.column_used})
            mark_run_succeeded(db, run, report_path=None, message=message)
            return

        orchestrator = ScrapeOrchestrator(self.settings, self.primary_factory(), self.registry_factory(), context)
        vins = [record.vin for record in extraction.records]
        results = self._run_step(db, run, "primary_lookup", lambda: orchestrator.run_primary_phase(vins))
        store_vin_lookups(db, run_id=run.id, results=results)

        outcome = self._run_step(db, run, "registry_lookup", lambda: orchestrator.run_registry_phase(results))
        store_ea_resolutions(db, run_id=run.id, results=results)

        context.progress("Creating output file...", 90)
        report_path = Path(self.settings.output_dir) / report_filename()
        document = self._run_step(
            db,
            run,
            "build_report",
            lambda: self._publish_report(results, extraction, report_path),
        )

        update_run_counts(
            db,
            run,
            failed_lookups=sum(1 for result in results if result.state is LookupState.FAILED),
            recall_rows=document.summary.recall_rows,
            unique_recall_numbers=outcome.unique_recall_numbers,
            registry_lookups=outcome.lookups,
        )
        mark_run_succeeded(db, run, report_path=str(report_path), message=self._success_message(len(vins), outcome))

    def _run_step(self, db: Session, run: PipelineRun, step_name: str, fn: Callable[[], T]) -> T:
        def execute_once(attempt: int) -> T:
            # Persist each attempt so retries stay auditable.
            step = create_step_attempt(db, run_id=run.id, step_name=step_name, attempt=attempt)
            try:
                result = fn()
                finish_step_success(db, step)
                return result
            except Exception as exc:
                finish_step_failure(db, step, str(exc))
                raise

        try:
            return run_with_retries(
                lambda: execute_once(self._next_attempt(db, run.id, step_name)),
                max_retries=self.settings.max_step_retries,
                backoff_seconds=self.settings.retry_backoff_seconds,
                should_retry=lambda exc: self._is_retryable(step_name, exc),
            )
        except RetryExhaustedError as exc:
            cause = exc.__cause__
            if isinstance(cause, (SpreadsheetReadError, ValidationError)):
                raise cause
            raise RuntimeError(f"step '{step_name}' failed after retries: {exc}") from exc

    def _next_attempt(self, db: Session, run_id: int, step_name: str) -> int:
        stmt = (
            select(StepRun.attempt)
            .where(StepRun.run_id == run_id, StepRun.step_name == step_name)
            .order_by(StepRun.attempt.desc())
            .limit(1)
        )
        current = db.execute(stmt).scalar_one_or_none()
        if current is not None:
            return current + 1
        return 1

    def _is_retryable(self, step_name: str, exc: Exception) -> bool:
        # Lookup phases talk to external sites and must never be re-driven as a whole.
        return step_name == "build_report" and isinstance(exc, OSError)

    def _extract(self, input_path: Path, vin_column: str) -> ExtractionResult:
        sheet = read_sheet(input_path)
        return extract_vin_records(sheet.headers, sheet.rows, vin_column)

    def _publish_report(
        self,
        results: list[VinScrapeResult],
        extraction: ExtractionResult,
        report_path: Path,
    ) -> ReportDocument:
        document = build_report(results, extraction.records, extraction.invalid_rows)
        write_report(document, report_path)
        return document

    def _success_message(self, vin_count: int, outcome: RegistryPhaseOutcome) -> str:
        message = f"Successfully processed {vin_count} VIN numbers and looked up recall data."
        if outcome.status == "skipped":
            message += f" EA lookup skipped: {outcome.message}."
        elif outcome.halted:
            message += f" EA lookup stopped early: {outcome.message}."
        return message

    def _result_from_run(self, run: PipelineRun, reused_existing_run: bool) -> PipelineResult:
        return PipelineResult(
            run_id=run.id,
            run_key=run.run_key,
            input_file=run.input_file,
            trigger_source=run.trigger_source,
            status=run.status,
            total_rows=run.total_rows,
            vin_count=run.vin_count,
            invalid_count=run.invalid_count,
            failed_lookups=run.failed_lookups,
            recall_rows=run.recall_rows,
            unique_recall_numbers=run.unique_recall_numbers,
            registry_lookups=run.registry_lookups,
            column_used=run.column_used,
            report_path=run.report_path,
            message=run.message,
            reused_existing_run=reused_existing_run,
        )
