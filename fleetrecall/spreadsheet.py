import csv
from dataclasses import dataclass, field
import logging
from pathlib import Path
from zipfile import BadZipFile

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.utils.exceptions import InvalidFileException

from fleetrecall.errors import SpreadsheetReadError
from fleetrecall.schemas import ColumnRef, RawRow


logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".xlsx", ".xlsm", ".csv")

HEADER_FONT = Font(bold=True, color="FFFFFF")
HEADER_FILL = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
HEADER_ALIGNMENT = Alignment(horizontal="center", vertical="center")
THIN_BORDER = Border(
    left=Side(style="thin"),
    right=Side(style="thin"),
    top=Side(style="thin"),
    bottom=Side(style="thin"),
)


@dataclass(frozen=True)
class SheetData:
    headers: list[str]
    rows: list[RawRow]

    def columns(self) -> list[ColumnRef]:
        return [ColumnRef(letter=get_column_letter(index), name=name) for index, name in enumerate(self.headers, start=1)]


@dataclass
class Sheet:
    name: str
    headers: list[str]
    rows: list[list[object]] = field(default_factory=list)
    column_widths: list[int] = field(default_factory=list)
    # One (outline level, hidden) pair per data row; empty means no outline.
    outline: list[tuple[int, bool]] = field(default_factory=list)


def _is_blank(value: object) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _header_names(raw_headers: tuple[object, ...]) -> list[str]:
    headers: list[str] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_headers, start=1):
        name = ("" if raw is None else str(raw).strip()) or f"__EMPTY_{get_column_letter(index)}"
        # Repeated headers become NAME_1, NAME_2 so no column overwrites another.
        candidate = name
        suffix = 0
        while candidate in seen:
            suffix += 1
            candidate = f"{name}_{suffix}"
        seen.add(candidate)
        headers.append(candidate)
    return headers


def _rows_from_values(headers: list[str], values: list[tuple[object, ...]]) -> list[RawRow]:
    rows: list[RawRow] = []
    for raw in values:
        if all(_is_blank(value) for value in raw):
            continue
        row: RawRow = {}
        for name, value in zip(headers, raw):
            if _is_blank(value):
                continue
            row[name] = value
        rows.append(row)
    return rows


def _read_xlsx(path: Path, sheet_name: str | None) -> SheetData:
    workbook = load_workbook(path, read_only=True, data_only=True)
    try:
        if sheet_name is not None and sheet_name in workbook.sheetnames:
            worksheet = workbook[sheet_name]
        else:
            worksheet = workbook[workbook.sheetnames[0]]
        iterator = worksheet.iter_rows(values_only=True)
        first = next(iterator, None)
        if first is None:
            return SheetData(headers=[], rows=[])
        headers = _header_names(first)
        return SheetData(headers=headers, rows=_rows_from_values(headers, list(iterator)))
    finally:
        workbook.close()


def _read_csv(path: Path) -> SheetData:
    with path.open("r", encoding="utf-8-sig", newline="") as infile:
        reader = csv.reader(infile)
        first = next(reader, None)
        if first is None:
            return SheetData(headers=[], rows=[])
        headers = _header_names(tuple(first))
        return SheetData(headers=headers, rows=_rows_from_values(headers, [tuple(line) for line in reader]))


def read_sheet(path: Path, sheet_name: str | None = None) -> SheetData:
    if not path.exists():
        raise SpreadsheetReadError(f"input file not found: {path}")

    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise SpreadsheetReadError(f"unsupported spreadsheet type '{suffix}', expected one of {', '.join(SUPPORTED_SUFFIXES)}")

    try:
        if suffix == ".csv":
            data = _read_csv(path)
        else:
            data = _read_xlsx(path, sheet_name)
    except (OSError, UnicodeDecodeError, BadZipFile, InvalidFileException, KeyError, ValueError) as exc:
        raise SpreadsheetReadError(f"Error reading spreadsheet {path.name}: {exc}") from exc

    logger.info("spreadsheet read", extra={"path": str(path), "rows": len(data.rows), "columns": len(data.headers)})
    return data


def _style_header(worksheet, column_count: int) -> None:
    for cell in worksheet[1][:column_count]:
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = HEADER_ALIGNMENT
        cell.border = THIN_BORDER


def write_workbook(sheets: list[Sheet], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)

    workbook = Workbook()
    workbook.remove(workbook.active)
    for sheet in sheets:
        worksheet = workbook.create_sheet(title=sheet.name[:31])
        worksheet.append(sheet.headers)
        _style_header(worksheet, len(sheet.headers))
        for row in sheet.rows:
            worksheet.append(row)

        for index, width in enumerate(sheet.column_widths, start=1):
            worksheet.column_dimensions[get_column_letter(index)].width = width

        if sheet.outline:
            worksheet.sheet_properties.outlinePr.summaryBelow = True
            worksheet.sheet_properties.outlinePr.summaryRight = False
            for offset, (level, hidden) in enumerate(sheet.outline, start=2):
                dimension = worksheet.row_dimensions[offset]
                dimension.outlineLevel = level
                dimension.hidden = hidden

        worksheet.freeze_panes = "A2"

    workbook.save(path)
    logger.info("workbook written", extra={"path": str(path), "sheets": [sheet.name for sheet in sheets]})
    return path
