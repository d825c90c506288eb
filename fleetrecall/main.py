import argparse
from datetime import UTC, datetime
import hashlib
import logging
from pathlib import Path

from fleetrecall.compare import compare_report
from fleetrecall.config import Settings, get_settings
from fleetrecall.database import build_session_factory
from fleetrecall.errors import FleetRecallError
from fleetrecall.extractor import AUTO_COLUMN
from fleetrecall.pipeline import PipelineRunner
from fleetrecall.scheduler import start_scheduler
from fleetrecall.schemas import EventKind, ProgressEvent
from fleetrecall.sources import build_primary_source, build_registry_source
from fleetrecall.spreadsheet import read_sheet


logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Look up fleet recalls and build recall reports")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="process one fleet spreadsheet")
    run_parser.add_argument("--input", required=True, help="Fleet spreadsheet (.xlsx, .xlsm or .csv)")
    run_parser.add_argument(
        "--vin-column",
        default=AUTO_COLUMN,
        help="Column letter holding VINs, or 'auto' to detect it",
    )
    run_parser.add_argument("--run-key", required=False, help="Idempotency key for this run")
    run_parser.add_argument(
        "--trigger-source",
        default="manual",
        choices=["manual", "scheduled"],
        help="Metadata label for how this run was triggered",
    )

    compare_parser = subparsers.add_parser("compare", help="check a recall report against a reference file")
    compare_parser.add_argument("--report", required=True, help="Recall report produced by 'run'")
    compare_parser.add_argument("--reference", required=True, help="Reference spreadsheet with a Title column")

    columns_parser = subparsers.add_parser("columns", help="list the columns of a spreadsheet")
    columns_parser.add_argument("--input", required=True, help="Spreadsheet to inspect")

    schedule_parser = subparsers.add_parser("schedule", help="start daily scheduler")
    schedule_parser.add_argument("--run-now", action="store_true", help="also run once immediately")

    return parser.parse_args()


def default_run_key(input_path: Path) -> str:
    if not input_path.exists():
        return f"{input_path.stem}-{datetime.now(UTC).date().isoformat()}"
    digest = hashlib.sha256(input_path.read_bytes()).hexdigest()[:12]
    return f"{input_path.stem}-{digest}"


def build_runner(settings: Settings) -> PipelineRunner:
    session_factory = build_session_factory(settings.database_url)
    return PipelineRunner(
        settings,
        session_factory,
        primary_factory=lambda: build_primary_source(settings.primary_source_factory),
        registry_factory=lambda: build_registry_source(settings.registry_source_factory),
    )


def log_event(event: ProgressEvent) -> None:
    if event.kind is EventKind.ERROR:
        logger.warning("run error event", extra={"run_id": event.run_id, "event_message": event.message})
    elif event.kind is EventKind.PROGRESS:
        logger.info("run progress", extra={"run_id": event.run_id, "percent": event.percent, "event_message": event.message})


def _run(args: argparse.Namespace, settings: Settings) -> None:
    input_path = Path(args.input)
    runner = build_runner(settings)
    result = runner.run(
        input_path=input_path,
        vin_column=args.vin_column,
        run_key=args.run_key or default_run_key(input_path),
        trigger_source=args.trigger_source,
        subscriber=log_event,
    )

    print(
        "run_id={run_id} run_key={run_key} trigger={trigger} status={status} rows={rows} vins={vins} invalid={invalid} failed_lookups={failed} recall_rows={recall_rows} reused={reused} report={report}".format(
            run_id=result.run_id,
            run_key=result.run_key,
            trigger=result.trigger_source,
            status=result.status,
            rows=result.total_rows,
            vins=result.vin_count,
            invalid=result.invalid_count,
            failed=result.failed_lookups,
            recall_rows=result.recall_rows,
            reused=result.reused_existing_run,
            report=result.report_path,
        )
    )
    if result.message:
        print(result.message)
    if result.status == "failed":
        raise SystemExit(1)


def _compare(args: argparse.Namespace, settings: Settings) -> None:
    try:
        result = compare_report(Path(args.report), Path(args.reference), Path(settings.output_dir))
    except FleetRecallError as exc:
        print(f"error={exc}")
        raise SystemExit(1) from exc

    print(
        "checked={checked} missing={missing} output={output}".format(
            checked=result.total_checked,
            missing=result.missing_count,
            output=result.output_path,
        )
    )
    print(result.message)


def _columns(args: argparse.Namespace) -> None:
    try:
        sheet = read_sheet(Path(args.input))
    except FleetRecallError as exc:
        print(f"error={exc}")
        raise SystemExit(1) from exc

    for column in sheet.columns():
        print(f"{column.letter} {column.name}")


def main() -> None:
    args = parse_args()
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.command == "schedule":
        start_scheduler(settings, build_runner(settings), run_now=args.run_now)
        return
    if args.command == "compare":
        _compare(args, settings)
        return
    if args.command == "columns":
        _columns(args)
        return
    _run(args, settings)


if __name__ == "__main__":
    main()
