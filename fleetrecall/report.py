from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
import logging
from pathlib import Path
import re

from fleetrecall.schemas import InvalidRow, RawRow, RecallType, ReportRow, VinRecord, VinScrapeResult
from fleetrecall.spreadsheet import Sheet, write_workbook


logger = logging.getLogger(__name__)

NONE_VALUE = "NONE"
RECALL_NUMBER = "Recall Number"

SHEET_GROUPED = "Grouped by Recall"
SHEET_RECALL_DATA = "Recall Data"
SHEET_NEEDS_EA_RECALLS = "Needs EA (Recalls)"
SHEET_NEEDS_EA_SATISFACTION = "Needs EA (Satisfaction)"
SHEET_NEEDS_WO = "Needs WO"
SHEET_INVALID = "Invalid VINs"

RECALL_DATA_HEADERS = [
    "ASSET NO",
    "YEAR",
    "MODEL",
    "MANUFACTURER",
    "STATION",
    "VIN",
    RECALL_NUMBER,
    "Type",
    "EA Number",
    "Work Order",
    "WORK ORDER STATUS",
]
RECALL_DATA_WIDTHS = [18, 8, 15, 15, 20, 20, 25, 12, 25, 18, 20]
GROUPED_HEADERS = [
    RECALL_NUMBER,
    "Type",
    "EA Number",
    "ASSET NO",
    "YEAR",
    "MODEL",
    "MANUFACTURER",
    "STATION",
    "VIN",
    "Work Order",
    "WORK ORDER STATUS",
]
GROUPED_WIDTHS = [25, 12, 25, 18, 8, 15, 15, 20, 20, 18, 20]
NEEDS_HEADERS = [RECALL_NUMBER, "ASSET NO", "VIN", "STATION", "Total"]
NEEDS_WIDTHS = [25, 18, 20, 20, 10]
INVALID_HEADERS = [
    "ASSET NO",
    "YEAR",
    "MODEL",
    "MANUFACTURER",
    "STATION",
    "VIN",
    "Work Order",
    "WORK ORDER STATUS",
    "Reason",
]
INVALID_WIDTHS = [18, 8, 15, 15, 20, 20, 18, 20, 40]

ASSET_NO_ALIASES = ("ASSET NO", "EQ EQUIP NO", "EQ EQUIPMENT NO", "EQUIPMENT NO", "EQUIP NO")
YEAR_ALIASES = ("YEAR",)
MODEL_ALIASES = ("MODEL",)
MANUFACTURER_ALIASES = ("MANUFACTURER", "MAKE")
STATION_ALIASES = ("STATION", "LOC ASSIGN PM LOC", "LOC", "PM LOC", "LOCATION")
WORK_ORDER_ALIASES = (
    "Work Order",
    "WORK ORDER",
    "WO",
    "WORK ORDER NO",
    "WORK ORDER NUMBER",
    "WO NUMBER",
    "WorkOrder",
    "WORKORDER",
)
WORK_ORDER_STATUS_ALIASES = (
    "WORK ORDER STATUS",
    "WO STATUS",
    "WO Status",
    "Work Order Status",
    "WORK ORDER STAT",
    "WO STAT",
    "WorkOrderStatus",
    "WORKORDERSTATUS",
    "WOStatus",
    "WOSTATUS",
)


@dataclass(frozen=True)
class ReportSummary:
    scraped_vins: int
    vins_with_recalls: int
    vins_without_recalls: int
    recall_rows: int
    unique_recall_numbers: int
    multi_vin_groups: int
    needs_ea_recall_numbers: int
    needs_ea_recall_vehicles: int
    needs_ea_satisfaction_numbers: int
    needs_ea_satisfaction_vehicles: int
    needs_wo_numbers: int
    needs_wo_vehicles: int
    invalid_rows: int


@dataclass(frozen=True)
class ReportDocument:
    sheets: list[Sheet]
    rows: list[ReportRow]
    summary: ReportSummary

    def sheet(self, name: str) -> Sheet:
        for sheet in self.sheets:
            if sheet.name == name:
                return sheet
        raise KeyError(name)


def _is_empty(value: object) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _normalize(key: object) -> str:
    return re.sub(r"\s+", " ", str(key).strip().upper()) if key is not None else ""


def resolve_column(row: RawRow | None, aliases: Iterable[str]) -> object:
    if not row:
        return ""
    aliases = tuple(aliases)
    for key in aliases:
        value = row.get(key)
        if not _is_empty(value):
            return value

    wanted = {_normalize(alias) for alias in aliases}
    for key, value in row.items():
        if _normalize(key) in wanted and not _is_empty(value):
            return value
    return ""


def _status_or_none(row: RawRow | None) -> object:
    status = resolve_column(row, WORK_ORDER_STATUS_ALIASES)
    return NONE_VALUE if _is_empty(status) else status


def _text(value: object) -> str:
    return "" if value is None else str(value).strip()


def has_ea(row: ReportRow) -> bool:
    value = _text(row.ea_number)
    return bool(value) and value.upper() != NONE_VALUE


def needs_work_order(row: ReportRow) -> bool:
    value = _text(row.work_order)
    return not value or value.upper() == NONE_VALUE or value == "--"


def expand_rows(results: list[VinScrapeResult], records: list[VinRecord]) -> list[ReportRow]:
    source_rows = {record.vin: record.source_row for record in records}
    rows: list[ReportRow] = []
    for result in results:
        source_row = source_rows.get(result.vin)
        if source_row is None:
            logger.warning("no source row for vin", extra={"vin": result.vin})
        for entry in result.valid_recalls():
            info = result.recall_to_ea.get(entry.recall_number)
            ea_number = info.ea_number if info is not None and info.ea_number else NONE_VALUE
            rows.append(
                ReportRow(
                    asset_no=resolve_column(source_row, ASSET_NO_ALIASES),
                    year=resolve_column(source_row, YEAR_ALIASES),
                    model=resolve_column(source_row, MODEL_ALIASES),
                    manufacturer=resolve_column(source_row, MANUFACTURER_ALIASES),
                    station=resolve_column(source_row, STATION_ALIASES),
                    vin=result.vin,
                    recall_number=entry.recall_number,
                    type=entry.type.value,
                    ea_number=ea_number,
                    work_order=resolve_column(source_row, WORK_ORDER_ALIASES),
                    work_order_status=_status_or_none(source_row),
                )
            )
    return rows


def _group_by_recall(rows: Iterable[ReportRow]) -> dict[str, list[ReportRow]]:
    groups: dict[str, list[ReportRow]] = {}
    for row in rows:
        groups.setdefault(row.recall_number, []).append(row)
    return groups


def _grouped_sheet(rows: list[ReportRow]) -> tuple[Sheet, int]:
    groups = _group_by_recall(rows)
    multi = sorted(number for number, members in groups.items() if len(members) > 1)
    single = sorted(number for number, members in groups.items() if len(members) == 1)

    sheet = Sheet(name=SHEET_GROUPED, headers=GROUPED_HEADERS, column_widths=GROUPED_WIDTHS)
    for number in multi + single:
        for position, row in enumerate(groups[number]):
            sheet.rows.append(
                [
                    row.recall_number,
                    row.type,
                    row.ea_number,
                    row.asset_no,
                    row.year,
                    row.model,
                    row.manufacturer,
                    row.station,
                    row.vin,
                    row.work_order,
                    row.work_order_status,
                ]
            )
            # Group header row stays visible; the rest collapse under it.
            sheet.outline.append((1, False) if position == 0 else (2, True))
    return sheet, len(multi)


def _recall_data_sheet(rows: list[ReportRow]) -> Sheet:
    sheet = Sheet(name=SHEET_RECALL_DATA, headers=RECALL_DATA_HEADERS, column_widths=RECALL_DATA_WIDTHS)
    for row in rows:
        sheet.rows.append(
            [
                row.asset_no,
                row.year,
                row.model,
                row.manufacturer,
                row.station,
                row.vin,
                row.recall_number,
                row.type,
                row.ea_number,
                row.work_order,
                row.work_order_status,
            ]
        )
    return sheet


def _subtotal_sheet(name: str, rows: list[ReportRow], predicate: Callable[[ReportRow], bool]) -> tuple[Sheet, int, int]:
    groups = _group_by_recall(row for row in rows if predicate(row))
    sheet = Sheet(name=name, headers=NEEDS_HEADERS, column_widths=NEEDS_WIDTHS)

    grand_total = 0
    for number in sorted(groups):
        members = groups[number]
        for row in members:
            sheet.rows.append([number, row.asset_no, row.vin, row.station, 1])
            sheet.outline.append((2, True))
        grand_total += len(members)
        sheet.rows.append([f"{number} Total", "", "", "", len(members)])
        sheet.outline.append((1, False))

    if groups:
        sheet.rows.append(["Grand Total", "", "", "", grand_total])
        sheet.outline.append((0, False))
    return sheet, len(groups), grand_total


def _invalid_sheet(invalid_rows: list[InvalidRow]) -> Sheet:
    sheet = Sheet(name=SHEET_INVALID, headers=INVALID_HEADERS, column_widths=INVALID_WIDTHS)
    for invalid in invalid_rows:
        sheet.rows.append(
            [
                resolve_column(invalid.row, ASSET_NO_ALIASES),
                resolve_column(invalid.row, YEAR_ALIASES),
                resolve_column(invalid.row, MODEL_ALIASES),
                resolve_column(invalid.row, MANUFACTURER_ALIASES),
                resolve_column(invalid.row, STATION_ALIASES),
                invalid.invalid_value,
                resolve_column(invalid.row, WORK_ORDER_ALIASES),
                _status_or_none(invalid.row),
                invalid.describe(),
            ]
        )
    return sheet


def build_report(
    results: list[VinScrapeResult],
    records: list[VinRecord],
    invalid_rows: list[InvalidRow],
) -> ReportDocument:
    rows = expand_rows(results, records)

    grouped, multi_groups = _grouped_sheet(rows)
    needs_ea_recalls, ea_recall_numbers, ea_recall_total = _subtotal_sheet(
        SHEET_NEEDS_EA_RECALLS,
        rows,
        lambda row: not has_ea(row) and row.type == RecallType.RECALL.value,
    )
    needs_ea_satisfaction, ea_satisfaction_numbers, ea_satisfaction_total = _subtotal_sheet(
        SHEET_NEEDS_EA_SATISFACTION,
        rows,
        lambda row: not has_ea(row) and row.type == RecallType.SATISFACTION.value,
    )
    needs_wo, wo_numbers, wo_total = _subtotal_sheet(
        SHEET_NEEDS_WO,
        rows,
        lambda row: has_ea(row) and needs_work_order(row),
    )

    with_recalls = sum(1 for result in results if result.valid_recalls())
    summary = ReportSummary(
        scraped_vins=len(results),
        vins_with_recalls=with_recalls,
        vins_without_recalls=len(results) - with_recalls,
        recall_rows=len(rows),
        unique_recall_numbers=len({row.recall_number for row in rows}),
        multi_vin_groups=multi_groups,
        needs_ea_recall_numbers=ea_recall_numbers,
        needs_ea_recall_vehicles=ea_recall_total,
        needs_ea_satisfaction_numbers=ea_satisfaction_numbers,
        needs_ea_satisfaction_vehicles=ea_satisfaction_total,
        needs_wo_numbers=wo_numbers,
        needs_wo_vehicles=wo_total,
        invalid_rows=len(invalid_rows),
    )
    sheets = [
        grouped,
        _recall_data_sheet(rows),
        needs_ea_recalls,
        needs_ea_satisfaction,
        needs_wo,
        _invalid_sheet(invalid_rows),
    ]
    return ReportDocument(sheets=sheets, rows=rows, summary=summary)


def report_filename(now: datetime | None = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y%m%d%H%M%S%f")
    return f"recall_data_{stamp}.xlsx"


def write_report(document: ReportDocument, path: Path) -> Path:
    if not document.rows:
        logger.warning("report has no recall rows", extra={"path": str(path)})
    write_workbook(document.sheets, path)

    summary = document.summary
    logger.info(
        "report written",
        extra={
            "path": str(path),
            "recall_rows": summary.recall_rows,
            "vins_with_recalls": summary.vins_with_recalls,
            "vins_without_recalls": summary.vins_without_recalls,
            "unique_recall_numbers": summary.unique_recall_numbers,
            "needs_ea_recalls": summary.needs_ea_recall_vehicles,
            "needs_ea_satisfaction": summary.needs_ea_satisfaction_vehicles,
            "needs_wo": summary.needs_wo_vehicles,
            "invalid_rows": summary.invalid_rows,
        },
    )
    return path
