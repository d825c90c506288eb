from datetime import datetime
from pathlib import Path

from openpyxl import load_workbook
import pytest

from fleetrecall.report import (
    SHEET_GROUPED,
    SHEET_INVALID,
    SHEET_NEEDS_EA_RECALLS,
    SHEET_NEEDS_EA_SATISFACTION,
    SHEET_NEEDS_WO,
    SHEET_RECALL_DATA,
    build_report,
    report_filename,
    resolve_column,
    write_report,
)
from fleetrecall.schemas import (
    EaInfo,
    InvalidReason,
    InvalidRow,
    LookupFailed,
    LookupSuccess,
    RecallEntry,
    RecallType,
    VinRecord,
    VinScrapeResult,
)


VIN_A = "1FTFW1ET1EFA12345"
VIN_B = "1FTFW1ET1EFA67890"
VIN_C = "1FMCU9GD5KUA00001"


@pytest.fixture()
def report_inputs() -> tuple[list[VinScrapeResult], list[VinRecord], list[InvalidRow]]:
    records = [
        VinRecord(
            vin=VIN_A,
            source_row={
                "ASSET NO": "T-100",
                "YEAR": 2014,
                "MODEL": "F-150",
                "MAKE": "FORD",
                "LOC": "North",
                "SERIAL NO": VIN_A,
                "WO": "WO-1",
            },
            opened_at=None,
            row_index=0,
        ),
        VinRecord(
            vin=VIN_B,
            source_row={
                "EQ EQUIP NO": "T-101",
                "YEAR": 2015,
                "MODEL": "F-150",
                "MANUFACTURER": "FORD",
                "LOC ASSIGN PM LOC": "South",
                "SERIAL NO": VIN_B,
                "WO STATUS": "OPEN",
            },
            opened_at=None,
            row_index=1,
        ),
        VinRecord(vin=VIN_C, source_row={"ASSET NO": "T-102", "SERIAL NO": VIN_C}, opened_at=None, row_index=2),
    ]
    shared = EaInfo(recall_number="23S01", exists=True, ea_number="EA-1")
    results = [
        VinScrapeResult(
            vin=VIN_A,
            primary=LookupSuccess(
                [
                    RecallEntry("23S01", RecallType.RECALL),
                    RecallEntry("24C07", RecallType.SATISFACTION),
                    RecallEntry("No recall information"),
                ]
            ),
            recall_to_ea={"23S01": shared, "24C07": EaInfo.unavailable("24C07")},
        ),
        VinScrapeResult(
            vin=VIN_B,
            primary=LookupSuccess([RecallEntry("23S01", RecallType.RECALL)]),
            recall_to_ea={"23S01": shared},
        ),
        VinScrapeResult(vin=VIN_C, primary=LookupFailed("Server error")),
    ]
    invalid_rows = [
        InvalidRow(
            row_index=3,
            row={"ASSET NO": "T-103", "SERIAL NO": "ABC123"},
            invalid_value="ABC123",
            source_column="SERIAL NO",
            reason=InvalidReason.TOO_SHORT,
        )
    ]
    return results, records, invalid_rows


def test_resolve_column_uses_aliases_in_order() -> None:
    row = {"EQ EQUIP NO": "T-9", "pm  loc": "Depot"}

    assert resolve_column(row, ("ASSET NO", "EQ EQUIP NO")) == "T-9"
    assert resolve_column(row, ("LOC", "PM LOC")) == "Depot"
    assert resolve_column(None, ("ASSET NO",)) == ""


def test_recall_data_sheet_has_one_row_per_valid_recall(report_inputs) -> None:
    document = build_report(*report_inputs)

    sheet = document.sheet(SHEET_RECALL_DATA)
    assert sheet.rows == [
        ["T-100", 2014, "F-150", "FORD", "North", VIN_A, "23S01", "Recall", "EA-1", "WO-1", "NONE"],
        ["T-100", 2014, "F-150", "FORD", "North", VIN_A, "24C07", "Satisfaction", "NONE", "WO-1", "NONE"],
        ["T-101", 2015, "F-150", "FORD", "South", VIN_B, "23S01", "Recall", "EA-1", "", "OPEN"],
    ]


def test_grouped_sheet_lists_multi_vin_groups_first(report_inputs) -> None:
    document = build_report(*report_inputs)

    sheet = document.sheet(SHEET_GROUPED)
    assert [(row[0], row[8]) for row in sheet.rows] == [("23S01", VIN_A), ("23S01", VIN_B), ("24C07", VIN_A)]
    assert sheet.outline == [(1, False), (2, True), (1, False)]


def test_needs_sheets_carry_subtotals_and_grand_total(report_inputs) -> None:
    document = build_report(*report_inputs)

    assert document.sheet(SHEET_NEEDS_EA_RECALLS).rows == []
    satisfaction = document.sheet(SHEET_NEEDS_EA_SATISFACTION)
    assert satisfaction.rows == [
        ["24C07", "T-100", VIN_A, "North", 1],
        ["24C07 Total", "", "", "", 1],
        ["Grand Total", "", "", "", 1],
    ]
    assert satisfaction.outline == [(2, True), (1, False), (0, False)]

    needs_wo = document.sheet(SHEET_NEEDS_WO)
    assert needs_wo.rows[0] == ["23S01", "T-101", VIN_B, "South", 1]
    assert needs_wo.rows[-1] == ["Grand Total", "", "", "", 1]


def test_invalid_sheet_describes_reason(report_inputs) -> None:
    document = build_report(*report_inputs)

    assert document.sheet(SHEET_INVALID).rows == [
        ["T-103", "", "", "", "", "ABC123", "", "NONE", "VIN is only 6 characters (must be at least 10)"]
    ]


def test_summary_counts(report_inputs) -> None:
    summary = build_report(*report_inputs).summary

    assert summary.scraped_vins == 3
    assert summary.vins_with_recalls == 2
    assert summary.vins_without_recalls == 1
    assert summary.recall_rows == 3
    assert summary.unique_recall_numbers == 2
    assert summary.multi_vin_groups == 1
    assert summary.needs_ea_recall_vehicles == 0
    assert summary.needs_ea_satisfaction_vehicles == 1
    assert summary.needs_wo_vehicles == 1
    assert summary.invalid_rows == 1


def test_report_is_deterministic(report_inputs) -> None:
    first = build_report(*report_inputs)
    second = build_report(*report_inputs)

    assert [(sheet.name, sheet.rows, sheet.outline) for sheet in first.sheets] == [
        (sheet.name, sheet.rows, sheet.outline) for sheet in second.sheets
    ]


def test_write_report_produces_six_outlined_sheets(report_inputs, tmp_path: Path) -> None:
    document = build_report(*report_inputs)
    path = tmp_path / report_filename(datetime(2024, 3, 15, 8, 30))

    write_report(document, path)

    assert path.name.startswith("recall_data_20240315083000")
    workbook = load_workbook(path)
    assert workbook.sheetnames == [
        SHEET_GROUPED,
        SHEET_RECALL_DATA,
        SHEET_NEEDS_EA_RECALLS,
        SHEET_NEEDS_EA_SATISFACTION,
        SHEET_NEEDS_WO,
        SHEET_INVALID,
    ]
    grouped = workbook[SHEET_GROUPED]
    assert grouped.freeze_panes == "A2"
    assert grouped["A1"].value == "Recall Number"
    assert grouped.row_dimensions[3].outlineLevel == 2
    assert grouped.row_dimensions[3].hidden is True
    assert grouped.sheet_properties.outlinePr.summaryBelow is True
    assert workbook[SHEET_NEEDS_EA_RECALLS].max_row == 1


def test_written_reports_are_identical_across_runs(report_inputs, tmp_path: Path) -> None:
    first_path = write_report(build_report(*report_inputs), tmp_path / report_filename(datetime(2024, 3, 15, 8, 30)))
    second_path = write_report(build_report(*report_inputs), tmp_path / report_filename(datetime(2024, 3, 15, 9, 45)))

    def cell_values(path: Path) -> dict[str, list[tuple[object, ...]]]:
        workbook = load_workbook(path)
        return {name: list(workbook[name].iter_rows(values_only=True)) for name in workbook.sheetnames}

    assert first_path != second_path
    assert cell_values(first_path) == cell_values(second_path)
