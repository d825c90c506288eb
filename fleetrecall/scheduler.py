from datetime import UTC, datetime
import logging
from pathlib import Path

from apscheduler.schedulers.blocking import BlockingScheduler

from fleetrecall.config import Settings
from fleetrecall.pipeline import PipelineRunner
from fleetrecall.schemas import PipelineResult


logger = logging.getLogger(__name__)


def run_daily_sweep(settings: Settings, runner: PipelineRunner) -> PipelineResult | None:
    input_path = Path(settings.input_path)
    if not input_path.exists():
        logger.warning("scheduled input file missing, skipping sweep", extra={"input_path": str(input_path)})
        return None

    run_date = datetime.now(UTC).date()
    run_key = f"scheduled-{run_date.isoformat()}-{input_path.stem}"
    result = runner.run(input_path=input_path, run_key=run_key, trigger_source="scheduled")
    if result.status == "failed":
        logger.error(
            "scheduled pipeline run failed",
            extra={
                "run_key": result.run_key,
                "status": result.status,
                "reused_existing_run": result.reused_existing_run,
            },
        )
        return result
    logger.info(
        "scheduled pipeline run completed",
        extra={
            "run_key": result.run_key,
            "status": result.status,
            "report_path": result.report_path,
            "reused_existing_run": result.reused_existing_run,
        },
    )
    return result


def start_scheduler(settings: Settings, runner: PipelineRunner, *, run_now: bool = False) -> None:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        run_daily_sweep,
        "cron",
        args=[settings, runner],
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id="daily_recall_sweep",
        replace_existing=True,
    )

    logger.info(
        "scheduler started",
        extra={
            "input_path": settings.input_path,
            "schedule_hour_utc": settings.schedule_hour_utc,
            "schedule_minute_utc": settings.schedule_minute_utc,
        },
    )

    if run_now:
        run_daily_sweep(settings, runner)

    scheduler.start()
