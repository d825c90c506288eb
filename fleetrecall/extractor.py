from datetime import UTC, date, datetime, timedelta
import logging
import re

from openpyxl.utils import column_index_from_string, get_column_letter

from fleetrecall.errors import ColumnNotFound
from fleetrecall.schemas import (
    NOT_FOUND_COLUMN,
    ColumnRef,
    ExtractionResult,
    InvalidReason,
    InvalidRow,
    RawRow,
    VinRecord,
)


logger = logging.getLogger(__name__)

AUTO_COLUMN = "auto"
VIN_PATTERN = re.compile(r"^[A-HJ-NPR-Z0-9]{17}$")
VIN_COLUMN_CANDIDATES = ("SERIAL NO", "VIN", "vin", "Vin", "VIN NO")
DATE_COLUMN_CANDIDATES = ("DATETIME OPEN", "DATETIME_OPEN", "DATE TIME OPEN", "DATE_TIME_OPEN")
SPREADSHEET_EPOCH = datetime(1899, 12, 30)
DATE_FORMATS = (
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %I:%M:%S %p",
)


def is_valid_vin(value: str) -> bool:
    return bool(VIN_PATTERN.match(value))


def classify_invalid_vin(value: str) -> InvalidReason:
    if len(value) < 10:
        return InvalidReason.TOO_SHORT
    if len(value) != 17:
        return InvalidReason.WRONG_LENGTH
    return InvalidReason.BAD_CHARSET


def _cell_text(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _naive_utc(value: datetime) -> datetime:
    # Offset-aware stamps are compared against naive sheet dates.
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def parse_opened_date(value: object) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _naive_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)):
        try:
            return SPREADSHEET_EPOCH + timedelta(days=float(value))
        except OverflowError:
            return None

    text = str(value).strip()
    if not text:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    try:
        return _naive_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def _normalize_key(key: str) -> str:
    return re.sub(r"\s+", " ", key.strip().upper())


def opened_date_for_row(row: RawRow) -> datetime | None:
    for key in DATE_COLUMN_CANDIDATES:
        parsed = parse_opened_date(row.get(key))
        if parsed is not None:
            return parsed

    for key, value in row.items():
        normalized = _normalize_key(key)
        if "DATETIME" in normalized and "OPEN" in normalized:
            parsed = parse_opened_date(value)
            if parsed is not None:
                return parsed
    return None


def _dedup_rank(record: VinRecord) -> tuple[bool, datetime]:
    return (record.opened_at is not None, record.opened_at or datetime.min)


class _VinIndex:
    def __init__(self) -> None:
        self._records: dict[str, VinRecord] = {}

    def offer(self, candidate: VinRecord) -> None:
        existing = self._records.get(candidate.vin)
        if existing is None:
            self._records[candidate.vin] = candidate
            return

        # Strictly greater rank replaces; ties keep the first-seen row.
        if _dedup_rank(candidate) > _dedup_rank(existing):
            logger.info(
                "duplicate vin replaced by later row",
                extra={"vin": candidate.vin, "kept_row": candidate.row_index, "dropped_row": existing.row_index},
            )
            self._records[candidate.vin] = candidate
        else:
            logger.info(
                "duplicate vin kept existing row",
                extra={"vin": candidate.vin, "kept_row": existing.row_index, "dropped_row": candidate.row_index},
            )

    def records(self) -> list[VinRecord]:
        return list(self._records.values())


def _resolve_manual_column(vin_column: str, headers: list[str]) -> str:
    letter = vin_column.strip().upper()
    try:
        index = column_index_from_string(letter)
    except ValueError:
        raise ColumnNotFound(vin_column, headers) from None
    if index > len(headers):
        raise ColumnNotFound(vin_column, headers)
    return headers[index - 1]


def _find_vin_auto(row: RawRow) -> tuple[str | None, str | None, tuple[str, str] | None]:
    first_invalid: tuple[str, str] | None = None
    for key in VIN_COLUMN_CANDIDATES:
        value = _cell_text(row.get(key))
        if not value:
            continue
        if is_valid_vin(value):
            return value, key, None
        logger.debug("skipping non-vin value", extra={"column": key, "value": value})
        if first_invalid is None:
            first_invalid = (key, value)

    for key, raw in row.items():
        value = _cell_text(raw)
        if value and is_valid_vin(value):
            return value, key, None

    return None, None, first_invalid


def extract_vin_records(headers: list[str], rows: list[RawRow], vin_column: str = AUTO_COLUMN) -> ExtractionResult:
    index = _VinIndex()
    invalid_rows: list[InvalidRow] = []
    manual_key = None if vin_column == AUTO_COLUMN else _resolve_manual_column(vin_column, headers)
    found_columns: dict[int, str] = {}

    for row_index, row in enumerate(rows):
        if manual_key is not None:
            value = _cell_text(row.get(manual_key))
            vin = value if value and is_valid_vin(value) else None
            source_key = manual_key
            if not value:
                invalid_rows.append(InvalidRow(row_index, row, "", manual_key, InvalidReason.MISSING))
            elif vin is None:
                invalid_rows.append(InvalidRow(row_index, row, value, manual_key, classify_invalid_vin(value)))
        else:
            vin, source_key, first_invalid = _find_vin_auto(row)
            if vin is None:
                if first_invalid is not None:
                    column, value = first_invalid
                    invalid_rows.append(InvalidRow(row_index, row, value, column, classify_invalid_vin(value)))
                else:
                    invalid_rows.append(InvalidRow(row_index, row, "", NOT_FOUND_COLUMN, InvalidReason.MISSING))

        if vin is None:
            continue
        found_columns[row_index] = source_key or ""
        index.offer(VinRecord(vin=vin, source_row=row, opened_at=opened_date_for_row(row), row_index=row_index))

    records = index.records()
    available = [ColumnRef(letter=get_column_letter(position), name=name) for position, name in enumerate(headers, start=1)]

    detected_letter = vin_column if manual_key is not None else AUTO_COLUMN
    detected_name = manual_key or VIN_COLUMN_CANDIDATES[0]
    if records and manual_key is None:
        used = found_columns.get(records[0].row_index, "")
        if used in headers:
            detected_letter = get_column_letter(headers.index(used) + 1)
            detected_name = used

    logger.info(
        "vin extraction finished",
        extra={
            "total_rows": len(rows),
            "vin_count": len(records),
            "invalid_count": len(invalid_rows),
            "column": detected_name,
        },
    )
    return ExtractionResult(
        records=records,
        invalid_rows=invalid_rows,
        total_rows=len(rows),
        column_used=vin_column,
        detected_column=detected_letter,
        detected_column_name=detected_name,
        available_columns=available,
    )


def no_vins_message(result: ExtractionResult) -> str:
    columns = ", ".join(f"{column.letter} ({column.name})" for column in result.available_columns)
    has_serial_no = any(column.name == VIN_COLUMN_CANDIDATES[0] for column in result.available_columns)
    if result.column_used == AUTO_COLUMN and not has_serial_no:
        return (
            'No VIN numbers found. Please ensure your file has a column named "SERIAL NO" '
            f"containing VIN numbers. Available columns: {columns}"
        )
    where = "using auto-detection" if result.column_used == AUTO_COLUMN else f"in column {result.column_used}"
    return f"No VIN numbers found {where}. Available columns: {columns}"
