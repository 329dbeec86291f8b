"""Per-column type inference and descriptive statistics over a row sample.

The statistics describe only the rows passed in. Callers analyse the first
``ANALYSIS_SAMPLE_SIZE`` rows of a dataset, so every figure here is a sample
estimate rather than an exact dataset-wide value.
"""

from __future__ import annotations

import math
import warnings
from datetime import datetime, timezone
from typing import Literal

import pandas as pd
from pandas.tseries.api import guess_datetime_format
from pydantic import BaseModel

from models import Cell, CellKind, Row

DataType = Literal["number", "date", "string"]

UNIQUE_VALUES_MAX_CARDINALITY = 20
UNIQUE_VALUES_LIMIT = 10

class ColumnStats(BaseModel):
    column: str
    count: int
    dataType: DataType
    mean: float | int | None = None
    min: float | int | None = None
    max: float | int | None = None
    earliest: str | None = None
    latest: str | None = None
    uniqueCount: int | None = None
    uniqueValues: list[str] | None = None


def _safe_number(val: float) -> float | int:
    if val == int(val) and abs(val) < 2**53:
        return int(val)
    return val


def mean(values: list[float]) -> float:
    try:
        return math.fsum(values) / len(values)
    except OverflowError:
        # scaled terms keep the running sum within the float range
        return math.fsum(v / len(values) for v in values)


def parse_date(cell: Cell, dayfirst: bool = False) -> datetime | None:
    """Parse a string cell as a calendar date; bare numbers never qualify."""
    if cell.kind is not CellKind.STRING or cell.as_number() is not None:
        return None
    text = str(cell.value).strip()
    # a date needs at least a day or a year; this also skips "now" and "today"
    if not any(ch.isdigit() for ch in text):
        return None

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        with warnings.catch_warnings():
            # pandas warns when it has to guess the day/month order
            warnings.simplefilter("ignore", UserWarning)
            stamp = pd.to_datetime(text, errors="coerce", dayfirst=dayfirst)
            if pd.isna(stamp):
                return None
            parsed = stamp.to_pydatetime()

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _reads_day_first(text: str) -> bool:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", UserWarning)
        fmt = guess_datetime_format(text)
    return bool(fmt) and "%d" in fmt and "%m" in fmt and fmt.index("%d") < fmt.index("%m")


def parse_dates(cells: list[Cell]) -> list[datetime | None]:
    """Parse a column of dates with one day/month order for every value.

    The column reads day-first as soon as one value only makes sense that
    way (``25/12/2023``); ambiguous columns read month-first.
    """
    texts = [str(c.value).strip() for c in cells if c.kind is CellKind.STRING]
    dayfirst = any(_reads_day_first(t) for t in texts)
    return [parse_date(c, dayfirst=dayfirst) for c in cells]


def non_empty_cells(rows: list[Row], column: str) -> list[Cell]:
    cells = (row.get(column) for row in rows)
    return [c for c in cells if not c.is_empty]


def infer_type(cells: list[Cell]) -> DataType:
    """Number beats date beats string; each needs every value to qualify."""
    if not cells:
        return "string"
    if all(c.as_number() is not None for c in cells):
        return "number"
    if all(d is not None for d in parse_dates(cells)):
        return "date"
    return "string"


def column_stats(column: str, cells: list[Cell]) -> ColumnStats:
    data_type = infer_type(cells)
    stats = ColumnStats(column=column, count=len(cells), dataType=data_type)

    if data_type == "number":
        numbers = [c.as_number() for c in cells]
        stats.mean = _safe_number(mean(numbers))
        stats.min = _safe_number(min(numbers))
        stats.max = _safe_number(max(numbers))
    elif data_type == "date":
        dates = parse_dates(cells)
        stats.earliest = min(dates).isoformat()
        stats.latest = max(dates).isoformat()
    else:
        # dict keeps first-seen order
        unique = list(dict.fromkeys(c.text for c in cells))
        stats.uniqueCount = len(unique)
        if 1 < len(unique) < UNIQUE_VALUES_MAX_CARDINALITY:
            stats.uniqueValues = unique[:UNIQUE_VALUES_LIMIT]

    return stats


def summarize(rows: list[Row], columns: list[str]) -> dict[str, ColumnStats]:
    if not rows:
        return {}
    return {col: column_stats(col, non_empty_cells(rows, col)) for col in columns}
