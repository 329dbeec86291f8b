"""Row query pipeline: substring filters, stable sort, pagination."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from config import FILTER_CASE_SENSITIVE, SORT_MODE
from errors import InvalidInput
from models import Cell, Row

SORT_DIRECTIONS = {"asc", "desc"}
SORT_MODES = {"auto", "string"}


@dataclass(frozen=True)
class QueryOptions:
    case_sensitive: bool = FILTER_CASE_SENSITIVE
    # "auto" compares numerically when every sort value is a number,
    # "string" always compares the text form.
    sort_mode: str = SORT_MODE


@dataclass
class QueryResult:
    rows: list[Row] = field(default_factory=list)
    total: int = 0


def parse_filters(filters: str | None) -> dict[str, str]:
    """Decode the JSON-encoded ``{column: pattern}`` filter map."""
    if not filters:
        return {}

    try:
        parsed = json.loads(filters)
    except json.JSONDecodeError:
        raise InvalidInput("Invalid filters JSON")

    if not isinstance(parsed, dict):
        raise InvalidInput("Filters must be a JSON object")

    out: dict[str, str] = {}
    for column, value in parsed.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            raise InvalidInput(f"Filter value for column '{column}' must be a scalar")
        out[column] = Cell.of(value).text
    return out


def _fold(text: str, case_sensitive: bool) -> str:
    return text if case_sensitive else text.casefold()


def apply_filters(
    rows: list[Row], filters: dict[str, str], case_sensitive: bool = False
) -> list[Row]:
    active = {
        col: _fold(pattern, case_sensitive)
        for col, pattern in filters.items()
        if pattern != ""
    }
    if not active:
        return list(rows)

    matched: list[Row] = []
    for row in rows:
        for col, pattern in active.items():
            cell = row.get(col)
            if cell.is_null or pattern not in _fold(cell.text, case_sensitive):
                break
        else:
            matched.append(row)
    return matched


def sort_rows(
    rows: list[Row],
    column: str,
    direction: str = "asc",
    sort_mode: str = "auto",
) -> list[Row]:
    """Stable sort on one column; null and missing cells always go last."""
    if direction not in SORT_DIRECTIONS:
        raise InvalidInput(f"Invalid sort direction: {direction}")
    if sort_mode not in SORT_MODES:
        raise InvalidInput(f"Invalid sort mode: {sort_mode}")

    present = [r for r in rows if not r.get(column).is_null]
    missing = [r for r in rows if r.get(column).is_null]
    reverse = direction == "desc"

    numeric = sort_mode == "auto" and any(not r.get(column).is_empty for r in present)
    if numeric:
        numeric = all(
            r.get(column).as_number() is not None
            for r in present
            if not r.get(column).is_empty
        )

    if numeric:
        # Blank strings have no numeric key, so they join the nulls.
        keyed = [r for r in present if not r.get(column).is_empty]
        blanks = [r for r in present if r.get(column).is_empty]
        keyed.sort(key=lambda r: r.get(column).as_number(), reverse=reverse)
        return keyed + blanks + missing

    present.sort(key=lambda r: r.get(column).text, reverse=reverse)
    return present + missing


def paginate(rows: list[Row], page: int, page_size: int) -> list[Row]:
    if page < 1:
        raise InvalidInput("page must be >= 1")
    if page_size < 1:
        raise InvalidInput("pageSize must be >= 1")
    start = (page - 1) * page_size
    return rows[start : start + page_size]


def query_rows(
    rows: list[Row],
    page: int,
    page_size: int,
    sort_column: str | None = None,
    sort_direction: str | None = None,
    filters: dict[str, str] | None = None,
    options: QueryOptions | None = None,
) -> QueryResult:
    # sort_rows and paginate validate their own arguments.
    opts = options or QueryOptions()
    matched = apply_filters(rows, filters or {}, opts.case_sensitive)
    if sort_column:
        matched = sort_rows(
            matched, sort_column, sort_direction or "asc", opts.sort_mode
        )

    return QueryResult(rows=paginate(matched, page, page_size), total=len(matched))


def total_pages(total: int, page_size: int) -> int:
    return max(1, (total + page_size - 1) // page_size)


def describe_query(params: dict[str, Any]) -> str:
    return ", ".join(f"{k}={v!r}" for k, v in params.items() if v not in (None, {}))
