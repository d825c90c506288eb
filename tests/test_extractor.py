from datetime import UTC, datetime

import pytest

from fleetrecall.errors import ColumnNotFound
from fleetrecall.extractor import extract_vin_records, is_valid_vin, no_vins_message, parse_opened_date
from fleetrecall.schemas import NOT_FOUND_COLUMN, InvalidReason


VIN = "1FTFW1ET1EFA12345"
OTHER_VIN = "1FMCU9GD5KUA00001"


def test_vin_validity_rejects_forbidden_letters_and_lengths() -> None:
    assert is_valid_vin(VIN)
    assert not is_valid_vin("1FTFW1ET1EFA1234O")
    assert not is_valid_vin("1FTFW1ET1EFA1234I")
    assert not is_valid_vin("1FTFW1ET1EFA1234")
    assert not is_valid_vin(VIN.lower())


def test_duplicate_vin_keeps_most_recent_open_date() -> None:
    headers = ["SERIAL NO", "DATETIME OPEN", "ASSET NO"]
    rows = [
        {"SERIAL NO": VIN, "DATETIME OPEN": "1/1/2024", "ASSET NO": "A"},
        {"SERIAL NO": VIN, "DATETIME OPEN": "2/1/2024", "ASSET NO": "B"},
        {"SERIAL NO": VIN, "ASSET NO": "C"},
    ]

    result = extract_vin_records(headers, rows)

    assert len(result.records) == 1
    record = result.records[0]
    assert record.source_row["ASSET NO"] == "B"
    assert record.opened_at == datetime(2024, 2, 1)


def test_duplicate_without_dates_keeps_first_seen() -> None:
    rows = [
        {"VIN": VIN, "ASSET NO": "first"},
        {"VIN": VIN, "ASSET NO": "second"},
    ]

    result = extract_vin_records(["VIN", "ASSET NO"], rows)

    assert [record.source_row["ASSET NO"] for record in result.records] == ["first"]


def test_dated_row_beats_undated_duplicate() -> None:
    rows = [
        {"SERIAL NO": VIN, "ASSET NO": "undated"},
        {"SERIAL NO": VIN, "ASSET NO": "dated", "DATETIME_OPEN": 45292},
    ]

    result = extract_vin_records(["SERIAL NO", "ASSET NO", "DATETIME_OPEN"], rows)

    assert result.records[0].source_row["ASSET NO"] == "dated"
    assert result.records[0].opened_at == datetime(2024, 1, 1)


def test_invalid_rows_are_classified_once_each() -> None:
    headers = ["SERIAL NO", "VIN", "ASSET NO"]
    rows = [
        {"SERIAL NO": "ABC", "VIN": "1234567890AB", "ASSET NO": "short"},
        {"SERIAL NO": "1FTFW1ET1EFA1234O", "ASSET NO": "charset"},
        {"VIN": "1FTFW1ET1EFA123456", "ASSET NO": "long"},
        {"ASSET NO": "missing"},
        {"SERIAL NO": "bad", "VIN": VIN, "ASSET NO": "valid"},
    ]

    result = extract_vin_records(headers, rows)

    assert [record.vin for record in result.records] == [VIN]
    reasons = {invalid.row["ASSET NO"]: invalid for invalid in result.invalid_rows}
    assert len(result.invalid_rows) == 4
    assert reasons["short"].reason is InvalidReason.TOO_SHORT
    assert reasons["short"].source_column == "SERIAL NO"
    assert reasons["short"].describe() == "VIN is only 3 characters (must be at least 10)"
    assert reasons["charset"].reason is InvalidReason.BAD_CHARSET
    assert reasons["charset"].describe() == "VIN contains invalid characters"
    assert reasons["long"].reason is InvalidReason.WRONG_LENGTH
    assert reasons["long"].describe() == "VIN is 18 characters (must be exactly 17)"
    assert reasons["missing"].reason is InvalidReason.MISSING
    assert reasons["missing"].source_column == NOT_FOUND_COLUMN
    assert reasons["missing"].describe() == "No VIN value found in any column"


def test_auto_mode_falls_back_to_any_column() -> None:
    headers = ["ASSET NO", "Chassis"]
    rows = [{"ASSET NO": "A-1", "Chassis": OTHER_VIN}]

    result = extract_vin_records(headers, rows)

    assert [record.vin for record in result.records] == [OTHER_VIN]
    assert result.detected_column == "B"
    assert result.detected_column_name == "Chassis"


def test_manual_column_letter_resolves_against_header_order() -> None:
    headers = ["ASSET NO", "Unit VIN"]
    rows = [
        {"ASSET NO": "A-1", "Unit VIN": VIN},
        {"ASSET NO": "A-2"},
        {"ASSET NO": "A-3", "Unit VIN": "12345"},
    ]

    result = extract_vin_records(headers, rows, "b")

    assert [record.vin for record in result.records] == [VIN]
    assert result.detected_column_name == "Unit VIN"
    missing, short = result.invalid_rows
    assert missing.reason is InvalidReason.MISSING
    assert missing.source_column == "Unit VIN"
    assert missing.describe() == "VIN column is empty or missing"
    assert short.reason is InvalidReason.TOO_SHORT


def test_manual_column_supports_multi_letter_columns() -> None:
    headers = [f"C{index}" for index in range(1, 28)]
    rows = [{"C27": VIN}]

    result = extract_vin_records(headers, rows, "AA")

    assert [record.vin for record in result.records] == [VIN]


def test_manual_column_out_of_range_raises() -> None:
    with pytest.raises(ColumnNotFound) as excinfo:
        extract_vin_records(["ASSET NO", "VIN"], [{"VIN": VIN}], "D")

    assert excinfo.value.available_columns == ["ASSET NO", "VIN"]
    assert "Column D not found" in str(excinfo.value)


def test_no_vins_message_hints_at_serial_no_column() -> None:
    result = extract_vin_records(["ASSET NO", "MAKE"], [{"ASSET NO": "A-1", "MAKE": "FORD"}])

    assert result.records == []
    message = no_vins_message(result)
    assert 'column named "SERIAL NO"' in message
    assert "A (ASSET NO), B (MAKE)" in message


def test_no_vins_message_for_manual_column() -> None:
    result = extract_vin_records(["ASSET NO", "SERIAL NO"], [{"ASSET NO": "A-1"}], "B")

    assert no_vins_message(result).startswith("No VIN numbers found in column B.")


def test_parse_opened_date_formats() -> None:
    assert parse_opened_date("3/15/2024 14:30") == datetime(2024, 3, 15, 14, 30)
    assert parse_opened_date("2024-03-15T08:00:00") == datetime(2024, 3, 15, 8, 0)
    assert parse_opened_date(45366.5) == datetime(2024, 3, 15, 12, 0)
    assert parse_opened_date("not a date") is None
    assert parse_opened_date(None) is None


def test_duplicate_with_mixed_timezone_dates_keeps_later_row() -> None:
    rows = [
        {"SERIAL NO": VIN, "DATETIME OPEN": "2021-05-01T00:00:00+00:00", "ASSET NO": "iso"},
        {"SERIAL NO": VIN, "DATETIME OPEN": "4/29/2021", "ASSET NO": "us"},
    ]

    result = extract_vin_records(["SERIAL NO", "DATETIME OPEN", "ASSET NO"], rows)

    assert [record.source_row["ASSET NO"] for record in result.records] == ["iso"]
    assert result.records[0].opened_at == datetime(2021, 5, 1)


def test_offset_aware_dates_are_normalized_to_naive_utc() -> None:
    assert parse_opened_date("2024-03-15T10:00:00+02:00") == datetime(2024, 3, 15, 8, 0)
    assert parse_opened_date(datetime(2024, 3, 15, 10, 0, tzinfo=UTC)) == datetime(2024, 3, 15, 10, 0)
