from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


RawRow = dict[str, object]

NO_RECALL_PLACEHOLDERS = frozenset({"No recall information", "No recall information available"})
NOT_FOUND_COLUMN = "Not found"


def is_valid_recall_number(recall_number: object) -> bool:
    if not isinstance(recall_number, str):
        return False
    value = recall_number.strip()
    return bool(value) and value not in NO_RECALL_PLACEHOLDERS


class InvalidReason(str, Enum):
    TOO_SHORT = "TooShort"
    WRONG_LENGTH = "WrongLength"
    BAD_CHARSET = "BadCharset"
    MISSING = "Missing"


class RecallType(str, Enum):
    RECALL = "Recall"
    SATISFACTION = "Satisfaction"

    @classmethod
    def parse(cls, raw: object) -> "RecallType":
        label = str(raw or "").strip().lower()
        # Customer satisfaction programs are reported as "Safety" by the lookup site.
        if label in {"satisfaction", "safety"} or "satisfaction" in label:
            return cls.SATISFACTION
        return cls.RECALL


class LookupState(str, Enum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class EventKind(str, Enum):
    PROGRESS = "progress"
    ERROR = "error"
    COMPLETE = "complete"


@dataclass(frozen=True)
class VinRecord:
    vin: str
    source_row: RawRow
    opened_at: datetime | None
    row_index: int


@dataclass(frozen=True)
class InvalidRow:
    row_index: int
    row: RawRow
    invalid_value: str
    source_column: str
    reason: InvalidReason

    def describe(self) -> str:
        length = len(self.invalid_value)
        if self.reason is InvalidReason.TOO_SHORT:
            return f"VIN is only {length} characters (must be at least 10)"
        if self.reason is InvalidReason.WRONG_LENGTH:
            return f"VIN is {length} characters (must be exactly 17)"
        if self.reason is InvalidReason.BAD_CHARSET:
            return "VIN contains invalid characters"
        if self.source_column == NOT_FOUND_COLUMN:
            return "No VIN value found in any column"
        return "VIN column is empty or missing"


@dataclass(frozen=True)
class ColumnRef:
    letter: str
    name: str


@dataclass(frozen=True)
class ExtractionResult:
    records: list[VinRecord]
    invalid_rows: list[InvalidRow]
    total_rows: int
    column_used: str
    detected_column: str
    detected_column_name: str
    available_columns: list[ColumnRef]


@dataclass(frozen=True)
class RecallEntry:
    recall_number: str
    type: RecallType = RecallType.RECALL
    discovered_via: str = ""


@dataclass(frozen=True)
class PrimaryLookup:
    success: bool
    recalls: list[RecallEntry] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True)
class LookupSuccess:
    recalls: list[RecallEntry]


@dataclass(frozen=True)
class LookupFailed:
    message: str


PrimaryLookupOutcome = LookupSuccess | LookupFailed


@dataclass(frozen=True)
class EaInfo:
    recall_number: str
    exists: bool
    ea_number: str | None = None
    error: str | None = None

    @classmethod
    def unavailable(cls, recall_number: str, error: str | None = None) -> "EaInfo":
        return cls(recall_number=recall_number, exists=False, ea_number=None, error=error)


@dataclass
class VinScrapeResult:
    vin: str
    primary: PrimaryLookupOutcome | None = None
    recall_to_ea: dict[str, EaInfo] = field(default_factory=dict)
    state: LookupState = LookupState.PENDING
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return isinstance(self.primary, LookupSuccess)

    def valid_recalls(self) -> list[RecallEntry]:
        if not isinstance(self.primary, LookupSuccess):
            return []
        return [entry for entry in self.primary.recalls if is_valid_recall_number(entry.recall_number)]

    def error_message(self) -> str | None:
        if isinstance(self.primary, LookupFailed):
            return self.primary.message
        return None


@dataclass(frozen=True)
class ReportRow:
    asset_no: object
    year: object
    model: object
    manufacturer: object
    station: object
    vin: str
    recall_number: str
    type: str
    ea_number: str
    work_order: object
    work_order_status: object


@dataclass(frozen=True)
class ProgressEvent:
    run_id: str
    kind: EventKind
    message: str | None = None
    percent: int | None = None
    payload: Any = None


@dataclass(frozen=True)
class MissingRecall:
    recall_number: str
    type: str
    asset_no: str


@dataclass(frozen=True)
class ComparisonResult:
    missing: list[MissingRecall]
    total_checked: int
    output_path: str | None
    message: str

    @property
    def missing_count(self) -> int:
        return len(self.missing)


@dataclass(frozen=True)
class PipelineResult:
    run_id: int
    run_key: str
    input_file: str
    trigger_source: str
    status: str
    total_rows: int
    vin_count: int
    invalid_count: int
    failed_lookups: int
    recall_rows: int
    unique_recall_numbers: int
    registry_lookups: int
    column_used: str
    report_path: str | None
    message: str | None
    reused_existing_run: bool
