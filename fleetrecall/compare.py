from datetime import datetime
import logging
from pathlib import Path

from fleetrecall.errors import EmptyInput, MissingColumn
from fleetrecall.report import RECALL_NUMBER, SHEET_RECALL_DATA
from fleetrecall.schemas import ComparisonResult, MissingRecall, RawRow, RecallType, is_valid_recall_number
from fleetrecall.spreadsheet import Sheet, read_sheet, write_workbook


logger = logging.getLogger(__name__)

TITLE_COLUMN = "Title"
MISSING_SHEET = "Missing Recalls"
MISSING_HEADERS = ["ASSET NO", "Recall/Safety Number", "Type"]
MISSING_WIDTHS = [18, 30, 12]


def _text(value: object) -> str:
    return "" if value is None else str(value).strip()


def report_recalls(rows: list[RawRow]) -> list[MissingRecall]:
    entries: list[MissingRecall] = []
    for row in rows:
        recall_number = _text(row.get(RECALL_NUMBER))
        if not is_valid_recall_number(recall_number):
            continue
        entries.append(
            MissingRecall(
                recall_number=recall_number,
                type=RecallType.parse(row.get("Type")).value,
                asset_no=_text(row.get("ASSET NO")),
            )
        )
    return entries


def title_values(headers: list[str], rows: list[RawRow]) -> list[str]:
    if not rows:
        raise EmptyInput("Reference file is empty")

    title_column = next((header for header in headers if header.strip().lower() == TITLE_COLUMN.lower()), None)
    if title_column is None:
        raise MissingColumn(TITLE_COLUMN, headers)

    return [_text(row[title_column]) for row in rows if _text(row.get(title_column))]


def find_missing(entries: list[MissingRecall], titles: list[str]) -> tuple[list[MissingRecall], int]:
    unique_numbers = list(dict.fromkeys(entry.recall_number for entry in entries))
    lowered_titles = [title.lower() for title in titles]

    found = {
        number
        for number in unique_numbers
        if any(number.lower() in title for title in lowered_titles)
    }
    missing = [entry for entry in entries if entry.recall_number not in found]
    return missing, len(unique_numbers)


def compare_report(report_path: Path, reference_path: Path, output_dir: Path) -> ComparisonResult:
    report = read_sheet(report_path, sheet_name=SHEET_RECALL_DATA)
    entries = report_recalls(report.rows)

    reference = read_sheet(reference_path)
    titles = title_values(reference.headers, reference.rows)

    missing, total_checked = find_missing(entries, titles)
    logger.info(
        "comparison finished",
        extra={"unique_recall_numbers": total_checked, "titles": len(titles), "missing": len(missing)},
    )

    if not missing:
        return ComparisonResult(
            missing=[],
            total_checked=total_checked,
            output_path=None,
            message="All recall numbers were found in the reference file",
        )

    sheet = Sheet(name=MISSING_SHEET, headers=MISSING_HEADERS, column_widths=MISSING_WIDTHS)
    for entry in missing:
        sheet.rows.append([entry.asset_no, entry.recall_number, entry.type])

    stamp = datetime.now().strftime("%Y%m%d%H%M%S%f")
    output_path = write_workbook([sheet], output_dir / f"missing_recalls_{stamp}.xlsx")
    return ComparisonResult(
        missing=missing,
        total_checked=total_checked,
        output_path=str(output_path),
        message=f"{len(missing)} recall rows are not referenced in the reference file",
    )
