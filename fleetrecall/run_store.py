from datetime import UTC, datetime
import json

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fleetrecall.db_models import EaResolutionRecord, InvalidVinRecord, PipelineRun, StepRun, VinLookupRecord
from fleetrecall.schemas import EaInfo, InvalidRow, VinScrapeResult


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def get_run_by_key(db: Session, run_key: str) -> PipelineRun | None:
    stmt = select(PipelineRun).where(PipelineRun.run_key == run_key)
    return db.execute(stmt).scalar_one_or_none()


def create_or_get_run(
    db: Session,
    *,
    run_key: str,
    input_file: str,
    vin_column: str,
    trigger_source: str,
) -> tuple[PipelineRun, bool]:
    run = PipelineRun(
        run_key=run_key,
        input_file=input_file,
        vin_column=vin_column,
        trigger_source=trigger_source,
        status="queued",
    )
    db.add(run)
    try:
        db.commit()
    except IntegrityError:
        # Unique run_key enforces idempotent run creation.
        db.rollback()
        existing = get_run_by_key(db, run_key)
        if existing:
            return existing, False
        raise

    db.refresh(run)
    return run, True


def reset_failed_run_state(db: Session, run: PipelineRun) -> None:
    for model in (StepRun, VinLookupRecord, InvalidVinRecord, EaResolutionRecord):
        db.execute(delete(model).where(model.run_id == run.id))

    run.status = "queued"
    run.error = None
    run.message = None
    run.report_path = None
    run.completed_at = None
    run.total_rows = 0
    run.vin_count = 0
    run.invalid_count = 0
    run.failed_lookups = 0
    run.recall_rows = 0
    run.unique_recall_numbers = 0
    run.registry_lookups = 0
    db.commit()


def mark_run_running(db: Session, run: PipelineRun) -> None:
    run.status = "running"
    run.started_at = utc_now()
    run.error = None
    db.commit()


def update_run_counts(db: Session, run: PipelineRun, **counts: object) -> None:
    for field_name, value in counts.items():
        if not hasattr(PipelineRun, field_name):
            raise AttributeError(f"unknown run field '{field_name}'")
        setattr(run, field_name, value)
    db.commit()


def mark_run_succeeded(db: Session, run: PipelineRun, *, report_path: str | None, message: str | None) -> None:
    run.status = "succeeded"
    run.report_path = report_path
    run.message = message
    run.completed_at = utc_now()
    run.error = None
    db.commit()


def mark_run_failed(db: Session, run: PipelineRun, *, error: str) -> None:
    run.status = "failed"
    run.error = error
    run.completed_at = utc_now()
    db.commit()


def create_step_attempt(db: Session, *, run_id: int, step_name: str, attempt: int) -> StepRun:
    step = StepRun(run_id=run_id, step_name=step_name, attempt=attempt, status="started", started_at=utc_now())
    db.add(step)
    db.commit()
    db.refresh(step)
    return step


def finish_step_success(db: Session, step: StepRun) -> None:
    finished_at = utc_now()
    step.status = "succeeded"
    step.completed_at = finished_at
    step.duration_ms = (finished_at - step.started_at).total_seconds() * 1000
    step.error = None
    db.commit()


def finish_step_failure(db: Session, step: StepRun, error: str) -> None:
    finished_at = utc_now()
    step.status = "failed"
    step.completed_at = finished_at
    step.duration_ms = (finished_at - step.started_at).total_seconds() * 1000
    step.error = error
    db.commit()


def store_invalid_vins(db: Session, *, run_id: int, invalid_rows: list[InvalidRow]) -> None:
    for invalid in invalid_rows:
        db.add(
            InvalidVinRecord(
                run_id=run_id,
                row_index=invalid.row_index,
                invalid_value=invalid.invalid_value,
                source_column=invalid.source_column,
                reason=invalid.reason.value,
                raw_row=json.dumps(invalid.row, default=str, sort_keys=True),
            )
        )
    db.commit()


def store_vin_lookups(db: Session, *, run_id: int, results: list[VinScrapeResult]) -> None:
    for result in results:
        db.add(
            VinLookupRecord(
                run_id=run_id,
                vin=result.vin,
                state=result.state.value,
                attempts=result.attempts,
                recall_count=len(result.valid_recalls()),
                error=result.error_message(),
            )
        )
    db.commit()


def store_ea_resolutions(db: Session, *, run_id: int, results: list[VinScrapeResult]) -> None:
    resolutions: dict[str, tuple[EaInfo, int]] = {}
    for result in results:
        for recall_number, info in result.recall_to_ea.items():
            _, vin_count = resolutions.get(recall_number, (info, 0))
            resolutions[recall_number] = (info, vin_count + 1)

    for recall_number, (info, vin_count) in resolutions.items():
        db.add(
            EaResolutionRecord(
                run_id=run_id,
                recall_number=recall_number,
                ea_exists=info.exists,
                ea_number=info.ea_number,
                error=info.error,
                vin_count=vin_count,
            )
        )
    db.commit()
