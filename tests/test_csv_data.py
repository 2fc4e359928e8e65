"""Tests for CSV reading, filters and size statistics."""

import pytest

from csv_rag_mcp.csv_data import (
    calculate_size_stats,
    filter_by_date_range,
    filter_by_size,
    load_rows,
    parse_date,
    row_to_text,
)


CSV_CONTENT = (
    "ID,DATE,SIZE\n"
    "1,2024-05-01,10\n"
    "2,2024-05-02,20\n"
    "3,2024-06-01,30\n"
    "4,2024-06-15,40\n"
    "5,2024-07-01,50\n"
)


@pytest.fixture
def rows(tmp_path):
    path = tmp_path / "sample.csv"
    path.write_text(CSV_CONTENT, encoding="utf-8")
    return load_rows(path)


class TestLoadRows:

    def test_row_count_and_types(self, rows):
        assert len(rows) == 5
        assert rows[0]["ID"] == "1"
        assert rows[0]["DATE"] == "2024-05-01"
        assert rows[0]["SIZE"] == 10

    def test_column_order_preserved(self, rows):
        assert list(rows[0]) == ["ID", "DATE", "SIZE"]

    def test_blank_lines_skipped_and_cells_trimmed(self, tmp_path):
        path = tmp_path / "messy.csv"
        path.write_text("DATE, SIZE\n 2024-01-01 , 1.5 \n\n,\n2024-01-02,x\n", encoding="utf-8")
        rows = load_rows(path)
        assert len(rows) == 2
        assert rows[0] == {"DATE": "2024-01-01", "SIZE": 1.5}
        assert rows[1]["SIZE"] is None

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(OSError):
            load_rows(tmp_path / "missing.csv")

    def test_custom_size_field(self, tmp_path):
        path = tmp_path / "custom.csv"
        path.write_text("when,bytes\n2024-01-01,7\n", encoding="utf-8")
        rows = load_rows(path, date_field="when", size_field="bytes")
        assert rows[0]["bytes"] == 7


class TestRowToText:

    def test_canonical_form(self):
        assert row_to_text({"DATE": "2024-05-01", "SIZE": 70}) == "DATE: 2024-05-01, SIZE: 70"

    def test_none_rendered_empty(self):
        assert row_to_text({"SIZE": None}) == "SIZE: "


class TestDateFilter:

    def test_may_rows(self, rows):
        may = filter_by_date_range(rows, "2024-05-01", "2024-05-31")
        assert [r["ID"] for r in may] == ["1", "2"]

    def test_bounds_inclusive(self, rows):
        result = filter_by_date_range(rows, "2024-06-01", "2024-06-15")
        assert [r["ID"] for r in result] == ["3", "4"]

    def test_open_bounds(self, rows):
        assert len(filter_by_date_range(rows, None, "2024-05-02")) == 2
        assert len(filter_by_date_range(rows, "2024-06-15", None)) == 2
        assert len(filter_by_date_range(rows)) == 5

    def test_idempotent(self, rows):
        once = filter_by_date_range(rows, "2024-05-02", "2024-06-30")
        twice = filter_by_date_range(once, "2024-05-02", "2024-06-30")
        assert twice == once

    def test_unparseable_row_dates_excluded(self):
        data = [{"DATE": "not a date"}, {"DATE": None}, {"DATE": "2024-01-01"}]
        assert filter_by_date_range(data, "2023-01-01", "2025-01-01") == [{"DATE": "2024-01-01"}]

    def test_invalid_bound_raises(self, rows):
        with pytest.raises(ValueError, match="startDate"):
            filter_by_date_range(rows, "05/01/2024", None)

    def test_parse_date_ignores_time_part(self):
        assert parse_date("2024-05-01T10:00:00").isoformat() == "2024-05-01"


class TestSizeFilter:

    def test_range(self, rows):
        result = filter_by_size(rows, 20, 40)
        assert [r["ID"] for r in result] == ["2", "3", "4"]

    def test_open_bounds(self, rows):
        assert len(filter_by_size(rows, min_size=45)) == 1
        assert len(filter_by_size(rows, max_size=10)) == 1

    def test_non_numeric_sizes_excluded(self):
        data = [{"SIZE": None}, {"SIZE": "abc"}, {"SIZE": 5}]
        assert filter_by_size(data, 0, 10) == [{"SIZE": 5}]


class TestSizeStats:

    def test_all_rows(self, rows):
        stats = calculate_size_stats(rows)
        assert stats == {"sum": 150, "average": 30, "max": 50, "min": 10}

    def test_empty_set_is_all_zero(self):
        assert calculate_size_stats([]) == {"sum": 0, "average": 0, "max": 0, "min": 0}

    def test_all_non_numeric_is_all_zero(self):
        assert calculate_size_stats([{"SIZE": None}]) == {"sum": 0, "average": 0, "max": 0, "min": 0}

    def test_sum_equals_average_times_count(self, rows):
        subset = filter_by_date_range(rows, "2024-05-01", "2024-06-30")
        stats = calculate_size_stats(subset)
        assert stats["sum"] == pytest.approx(stats["average"] * len(subset))
        for row in subset:
            assert stats["min"] <= row["SIZE"] <= stats["max"]
