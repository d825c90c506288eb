from pathlib import Path

from openpyxl import load_workbook
import pytest

from fakes import write_xlsx
from fleetrecall.compare import MISSING_HEADERS, MISSING_SHEET, compare_report, find_missing, report_recalls, title_values
from fleetrecall.errors import EmptyInput, MissingColumn
from fleetrecall.report import RECALL_DATA_HEADERS
from fleetrecall.schemas import MissingRecall, RecallType


def _report(path: Path) -> Path:
    def row(asset: str, number: str, type: str) -> list[object]:
        return [asset, 2014, "F-150", "FORD", "North", "1FTFW1ET1EFA12345", number, type, "NONE", "", "NONE"]

    return write_xlsx(
        path,
        RECALL_DATA_HEADERS,
        [
            row("T-100", "23S01", "Recall"),
            row("T-101", "23S01", "Recall"),
            row("T-100", "24C07", "Satisfaction"),
            row("T-102", "No recall information", "Recall"),
        ],
    )


def test_find_missing_matches_substrings_case_insensitively() -> None:
    entries = [
        MissingRecall("23S01", "Recall", "T-100"),
        MissingRecall("24c07", "Satisfaction", "T-100"),
        MissingRecall("24C07", "Satisfaction", "T-101"),
    ]

    missing, checked = find_missing(entries, ["Field fix 23s01 - brake line", "Program 24C07"])

    assert checked == 3
    assert missing == []


def test_find_missing_reports_every_asset_of_unfound_number() -> None:
    entries = [
        MissingRecall("23S01", "Recall", "T-100"),
        MissingRecall("23S01", "Recall", "T-101"),
        MissingRecall("24C07", "Satisfaction", "T-100"),
    ]

    missing, checked = find_missing(entries, ["24C07 campaign"])

    assert checked == 2
    assert [entry.asset_no for entry in missing] == ["T-100", "T-101"]


def test_title_values_requires_rows_and_title_column() -> None:
    with pytest.raises(EmptyInput, match="Reference file is empty"):
        title_values(["Title"], [])

    with pytest.raises(MissingColumn, match='No "Title" column found in reference file'):
        title_values(["Name"], [{"Name": "x"}])

    assert title_values(["TITLE"], [{"TITLE": " 23S01 "}, {}]) == ["23S01"]


def test_compare_report_writes_missing_recalls(tmp_path: Path) -> None:
    report = _report(tmp_path / "report.xlsx")
    reference = write_xlsx(tmp_path / "reference.xlsx", ["Title", "Owner"], [["Recall 23S01 brake", "ops"]])

    result = compare_report(report, reference, tmp_path / "out")

    assert result.total_checked == 2
    assert result.missing_count == 1
    assert result.output_path is not None
    workbook = load_workbook(result.output_path)
    assert workbook.sheetnames == [MISSING_SHEET]
    rows = list(workbook[MISSING_SHEET].iter_rows(values_only=True))
    assert list(rows[0]) == MISSING_HEADERS
    assert list(rows[1]) == ["T-100", "24C07", "Satisfaction"]


def test_compare_report_without_missing_writes_nothing(tmp_path: Path) -> None:
    report = _report(tmp_path / "report.xlsx")
    reference = tmp_path / "reference.csv"
    reference.write_text("Title\n23S01 fix\n24C07 program\n", encoding="utf-8")

    result = compare_report(report, reference, tmp_path / "out")

    assert result.output_path is None
    assert result.message == "All recall numbers were found in the reference file"
    assert not (tmp_path / "out").exists()


def test_recall_type_labels_are_normalized() -> None:
    assert RecallType.parse("Satisfaction") is RecallType.SATISFACTION
    assert RecallType.parse("Safety") is RecallType.SATISFACTION
    assert RecallType.parse("Customer Satisfaction Program") is RecallType.SATISFACTION
    assert RecallType.parse("Recall") is RecallType.RECALL
    assert RecallType.parse(None) is RecallType.RECALL


def test_report_recalls_normalize_type_labels() -> None:
    rows = [
        {"ASSET NO": "T-1", "Recall Number": "23S01", "Type": "Safety"},
        {"ASSET NO": "T-2", "Recall Number": "24C07"},
        {"ASSET NO": "T-3", "Recall Number": "No recall information available"},
    ]

    assert report_recalls(rows) == [
        MissingRecall("23S01", "Satisfaction", "T-1"),
        MissingRecall("24C07", "Recall", "T-2"),
    ]
