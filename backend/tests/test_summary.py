from __future__ import annotations

import copy
from datetime import datetime
from typing import Any

from models import Cell, Row
from summary import infer_type, parse_date, summarize


def _rows(column: str, values: list[Any]) -> list[Row]:
    return [Row.from_mapping(f"r{i}", "ds", i, {column: v}) for i, v in enumerate(values)]


def test_numeric_column_stats() -> None:
    stats = summarize(_rows("a", ["1", "2", "3", "4"]), ["a"])["a"]
    assert stats.dataType == "number"
    assert stats.count == 4
    assert stats.mean == 2.5
    assert stats.min == 1
    assert stats.max == 4
    assert stats.uniqueCount is None


def test_number_cells_and_numeric_strings_mix() -> None:
    stats = summarize(_rows("a", [10, "2.5", -1.5, " 4 "]), ["a"])["a"]
    assert stats.dataType == "number"
    assert stats.min == -1.5
    assert stats.max == 10
    assert stats.mean == 3.75


def test_single_non_numeric_value_forces_textual() -> None:
    stats = summarize(_rows("a", ["1", "2", "x"]), ["a"])["a"]
    assert stats.dataType == "string"
    assert stats.uniqueCount == 3
    assert set(stats.uniqueValues or []) == {"1", "2", "x"}
    assert stats.mean is None


def test_non_finite_strings_are_not_numbers() -> None:
    assert summarize(_rows("a", ["1", "inf"]), ["a"])["a"].dataType == "string"
    assert summarize(_rows("a", ["nan", "2"]), ["a"])["a"].dataType == "string"


def test_date_column_reports_range() -> None:
    stats = summarize(
        _rows("d", ["2024-03-01", "01/15/2024", "2024-02-10T08:30:00"]), ["d"]
    )["d"]
    assert stats.dataType == "date"
    assert stats.count == 3
    assert stats.earliest == "2024-01-15T00:00:00"
    assert stats.latest == "2024-03-01T00:00:00"


def test_number_wins_over_date_and_mixed_falls_to_text() -> None:
    assert infer_type([Cell.of("2024"), Cell.of("2025")]) == "number"
    assert infer_type([Cell.of("2024-01-01"), Cell.of("5")]) == "string"
    assert parse_date(Cell.of("not a date")) is None
    assert parse_date(Cell.of(20240101)) is None


def test_empty_values_are_not_counted() -> None:
    stats = summarize(_rows("a", ["1", "", None, "3"]), ["a"])["a"]
    assert stats.count == 2
    assert stats.dataType == "number"
    assert stats.mean == 2


def test_all_empty_column_is_textual_with_no_uniques() -> None:
    stats = summarize(_rows("a", ["", None]), ["a"])["a"]
    assert stats.dataType == "string"
    assert stats.count == 0
    assert stats.uniqueCount == 0
    assert stats.uniqueValues is None


def test_booleans_are_textual() -> None:
    stats = summarize(_rows("b", [True, False, True]), ["b"])["b"]
    assert stats.dataType == "string"
    assert stats.uniqueCount == 2
    assert set(stats.uniqueValues or []) == {"true", "false"}


def test_unique_values_only_for_moderate_cardinality() -> None:
    one = summarize(_rows("a", ["x", "x"]), ["a"])["a"]
    assert one.uniqueCount == 1
    assert one.uniqueValues is None

    fifteen = summarize(_rows("a", [f"v{i}" for i in range(15)]), ["a"])["a"]
    assert fifteen.uniqueCount == 15
    assert len(fifteen.uniqueValues or []) == 10

    many = summarize(_rows("a", [f"v{i}" for i in range(20)]), ["a"])["a"]
    assert many.uniqueCount == 20
    assert many.uniqueValues is None


def test_missing_column_key_counts_as_empty() -> None:
    rows = [Row.from_mapping("r0", "ds", 0, {"a": "1"})]
    summary = summarize(rows, ["a", "b"])
    assert summary["b"].count == 0


def test_empty_sample_omits_every_column() -> None:
    assert summarize([], ["a", "b"]) == {}


def test_summarize_is_pure() -> None:
    rows = _rows("a", ["3", "1", "x", "", "1"])
    before = copy.deepcopy(rows)
    first = summarize(rows, ["a"])
    second = summarize(rows, ["a"])
    assert first == second
    assert rows == before


def test_mean_of_values_near_the_float_limit() -> None:
    stats = summarize(_rows("a", ["1e308", "1e308"]), ["a"])["a"]
    assert stats.dataType == "number"
    assert stats.mean == 1e308
    assert stats.max == 1e308


def test_day_first_dates_are_recognised_per_column() -> None:
    stats = summarize(_rows("d", ["25/12/2023", "03/01/2024", "13/02/2024"]), ["d"])["d"]
    assert stats.dataType == "date"
    assert stats.earliest == "2023-12-25T00:00:00"
    assert stats.latest == "2024-02-13T00:00:00"


def test_ambiguous_dates_read_month_first() -> None:
    stats = summarize(_rows("d", ["01/02/2024", "03/04/2024"]), ["d"])["d"]
    assert stats.earliest == "2024-01-02T00:00:00"
    assert stats.latest == "2024-03-04T00:00:00"


def test_date_parsing_accepts_named_months_and_offsets() -> None:
    assert parse_date(Cell.of("March 5, 2024")) == datetime(2024, 3, 5)
    assert parse_date(Cell.of("2024-01-01T02:00:00+02:00")) == datetime(2024, 1, 1)
    assert parse_date(Cell.of("today")) is None
    assert parse_date(Cell.of("12")) is None
