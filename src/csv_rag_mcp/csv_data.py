"""
CSV row source and filters.

Rows are plain dicts in column order. The size column is converted to a
number when the table is read; the date column stays a ``YYYY-MM-DD`` string
and is parsed when filtering.
"""

from __future__ import annotations

import csv
import logging
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from .constants import DATE_FORMAT, DEFAULT_DATE_FIELD, DEFAULT_SIZE_FIELD

logger = logging.getLogger(__name__)

Row = dict[str, Any]
Number = Union[int, float]


def _to_number(value: Any) -> Optional[Number]:
    """Convert a CSV cell to int/float; None if empty or not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return None
    # NaN never satisfies a range check
    return None if number != number else number


def parse_date(value: Any) -> Optional[date]:
    """Parse a YYYY-MM-DD date (a trailing time part is ignored)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return datetime.strptime(value.strip()[:10], DATE_FORMAT).date()
    except ValueError:
        return None


def load_rows(
    path: Path,
    date_field: str = DEFAULT_DATE_FIELD,
    size_field: str = DEFAULT_SIZE_FIELD,
) -> list[Row]:
    """
    Read a CSV file with a header row.

    Cells are stripped, empty lines are skipped, and the size column is
    converted to a number (None if not numeric).

    Raises:
        OSError: If the file cannot be read
        csv.Error: If the file is not valid CSV
    """
    rows: list[Row] = []
    with open(path, encoding="utf-8-sig", newline="") as f:
        reader = csv.DictReader(f, skipinitialspace=True)
        for record in reader:
            if not any((v or "").strip() for v in record.values() if isinstance(v, str)):
                continue
            row = {
                (k or "").strip(): (v.strip() if isinstance(v, str) else v)
                for k, v in record.items()
            }
            if size_field in row:
                row[size_field] = _to_number(row[size_field])
            rows.append(row)

    if rows and date_field not in rows[0]:
        logger.warning(f"Date column '{date_field}' not found in {path.name}")
    if rows and size_field not in rows[0]:
        logger.warning(f"Size column '{size_field}' not found in {path.name}")
    return rows


def row_to_text(row: Row) -> str:
    """Canonical text form used for embedding and as RAG context."""
    return ", ".join(f"{key}: {'' if value is None else value}" for key, value in row.items())


def filter_by_date_range(
    rows: Iterable[Row],
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    date_field: str = DEFAULT_DATE_FIELD,
) -> list[Row]:
    """
    Keep rows whose date lies within [start_date, end_date].

    Either bound may be omitted. Rows with a missing or unparseable date are
    dropped.

    Raises:
        ValueError: If a bound is not a valid YYYY-MM-DD date
    """
    start = _parse_bound(start_date, "startDate")
    end = _parse_bound(end_date, "endDate")

    result = []
    for row in rows:
        d = parse_date(row.get(date_field))
        if d is None:
            continue
        if start is not None and d < start:
            continue
        if end is not None and d > end:
            continue
        result.append(row)
    return result


def _parse_bound(value: Optional[str], name: str) -> Optional[date]:
    if value is None or value == "":
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise ValueError(f"{name} must be a date in YYYY-MM-DD format, got {value!r}")
    return parsed


def filter_by_size(
    rows: Iterable[Row],
    min_size: Optional[Number] = None,
    max_size: Optional[Number] = None,
    size_field: str = DEFAULT_SIZE_FIELD,
) -> list[Row]:
    """Keep rows whose numeric size lies within [min_size, max_size]."""
    result = []
    for row in rows:
        size = _to_number(row.get(size_field))
        if size is None:
            continue
        if min_size is not None and size < min_size:
            continue
        if max_size is not None and size > max_size:
            continue
        result.append(row)
    return result


def calculate_size_stats(rows: Iterable[Row], size_field: str = DEFAULT_SIZE_FIELD) -> dict[str, Number]:
    """
    Sum, average, max and min of the size column.

    An empty (or all non-numeric) set yields all zeros.
    """
    sizes = [s for s in (_to_number(row.get(size_field)) for row in rows) if s is not None]
    if not sizes:
        return {"sum": 0, "average": 0, "max": 0, "min": 0}

    total = sum(sizes)
    return {
        "sum": total,
        "average": total / len(sizes),
        "max": max(sizes),
        "min": min(sizes),
    }
