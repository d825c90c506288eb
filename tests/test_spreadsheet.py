from pathlib import Path

import pytest

from fakes import write_xlsx
from fleetrecall.errors import SpreadsheetReadError
from fleetrecall.extractor import extract_vin_records
from fleetrecall.spreadsheet import read_sheet


VIN = "1FTFW1ET1EFA12345"


def test_duplicate_headers_keep_every_column(tmp_path: Path) -> None:
    path = write_xlsx(
        tmp_path / "fleet.xlsx",
        ["VIN", "ASSET NO", "VIN", "VIN"],
        [["old-value", "T-1", VIN, "third"]],
    )

    sheet = read_sheet(path)

    assert sheet.headers == ["VIN", "ASSET NO", "VIN_1", "VIN_2"]
    assert sheet.rows == [{"VIN": "old-value", "ASSET NO": "T-1", "VIN_1": VIN, "VIN_2": "third"}]
    assert [(column.letter, column.name) for column in sheet.columns()][2] == ("C", "VIN_1")

    result = extract_vin_records(sheet.headers, sheet.rows, "C")
    assert [record.vin for record in result.records] == [VIN]


def test_blank_headers_and_rows(tmp_path: Path) -> None:
    path = tmp_path / "fleet.csv"
    path.write_text(f"ASSET NO,,SERIAL NO\nT-1,x,{VIN}\n,,\n", encoding="utf-8")

    sheet = read_sheet(path)

    assert sheet.headers == ["ASSET NO", "__EMPTY_B", "SERIAL NO"]
    assert sheet.rows == [{"ASSET NO": "T-1", "__EMPTY_B": "x", "SERIAL NO": VIN}]


def test_unsupported_and_missing_files_raise(tmp_path: Path) -> None:
    text_file = tmp_path / "fleet.txt"
    text_file.write_text("SERIAL NO\n", encoding="utf-8")

    with pytest.raises(SpreadsheetReadError, match="unsupported spreadsheet type"):
        read_sheet(text_file)
    with pytest.raises(SpreadsheetReadError, match="input file not found"):
        read_sheet(tmp_path / "missing.xlsx")
