"""Chart-ready series built from a row sample and its column stats."""

from __future__ import annotations

import math
from collections import Counter
from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel, Field

from models import Row
from summary import ColumnStats, mean, non_empty_cells, summarize

HISTOGRAM_MIN_BINS = 5
HISTOGRAM_MAX_BINS = 10
BAR_TOP_CATEGORIES = 20
PIE_MAX_UNIQUE = 15


class ChartKind(str, Enum):
    BAR = "bar"
    LINE = "line"
    PIE = "pie"


class HistogramBin(BaseModel):
    range: str
    count: int
    value: float


class LinePoint(BaseModel):
    index: int
    value: float


class CategoryCount(BaseModel):
    name: str
    value: int


ChartPoint = Union[HistogramBin, LinePoint, CategoryCount]


class AnalysisView(BaseModel):
    summary: dict[str, ColumnStats] = Field(default_factory=dict)
    column: str | None = None
    availableChartKinds: list[ChartKind] = Field(default_factory=list)
    chartKind: ChartKind | None = None
    chartData: list[ChartPoint] = Field(default_factory=list)
    status: Literal["no_column", "no_chart", "ok"] = "no_column"


def available_chart_kinds(stats: ColumnStats | None) -> list[ChartKind]:
    if stats is None:
        return []
    if stats.dataType == "number":
        return [ChartKind.BAR, ChartKind.LINE]
    if stats.dataType == "string" and (stats.uniqueCount or 0) > 1:
        kinds = [ChartKind.BAR]
        if stats.uniqueCount < PIE_MAX_UNIQUE:
            kinds.append(ChartKind.PIE)
        return kinds
    return []


def select_chart_kind(
    stats: ColumnStats | None, current: ChartKind | None = None
) -> ChartKind | None:
    """Keep the current kind while it is still offered, else take the first."""
    kinds = available_chart_kinds(stats)
    if current in kinds:
        return current
    return kinds[0] if kinds else None


def histogram_bin_count(n: int) -> int:
    return min(HISTOGRAM_MAX_BINS, max(HISTOGRAM_MIN_BINS, math.ceil(math.sqrt(n))))


def build_histogram(values: list[float]) -> list[HistogramBin]:
    if not values:
        return []

    lo = min(values)
    hi = max(values)
    bin_count = histogram_bin_count(len(values))
    # hi - lo can overflow for values near the float limits
    width = hi / bin_count - lo / bin_count

    members: list[list[float]] = [[] for _ in range(bin_count)]
    for v in values:
        idx = bin_count - 1
        if width > 0:
            pos = (v - lo) / width
            if not math.isfinite(pos):
                pos = v / width - lo / width
            if math.isfinite(pos):
                idx = min(max(math.floor(pos), 0), bin_count - 1)
        members[idx].append(v)

    return [
        HistogramBin(
            range=f"{lo + i * width:.2f} - {lo + (i + 1) * width:.2f}",
            count=len(group),
            value=mean(group) if group else 0.0,
        )
        for i, group in enumerate(members)
    ]


def build_line(values: list[float]) -> list[LinePoint]:
    return [LinePoint(index=i, value=v) for i, v in enumerate(sorted(values))]


def count_categories(texts: list[str], limit: int | None = None) -> list[CategoryCount]:
    # Counter keeps first-seen order and sorted() is stable, so ties stay in
    # the order values first appeared.
    ordered = sorted(Counter(texts).items(), key=lambda kv: kv[1], reverse=True)
    if limit is not None:
        ordered = ordered[:limit]
    return [CategoryCount(name=name, value=count) for name, count in ordered]


def build_chart_data(
    rows: list[Row],
    column: str,
    stats: ColumnStats | None,
    chart_kind: ChartKind | None,
) -> list[ChartPoint]:
    if stats is None or chart_kind not in available_chart_kinds(stats):
        return []

    cells = non_empty_cells(rows, column)

    if stats.dataType == "number":
        values = [n for n in (c.as_number() for c in cells) if n is not None]
        if chart_kind is ChartKind.BAR:
            return build_histogram(values)
        return build_line(values)

    texts = [c.text for c in cells]
    if chart_kind is ChartKind.BAR:
        return count_categories(texts, BAR_TOP_CATEGORIES)
    return count_categories(texts)


def analyze(
    rows: list[Row],
    columns: list[str],
    column: str | None = None,
    chart_kind: ChartKind | None = None,
) -> AnalysisView:
    """sample -> summarize -> select chart kind -> build series."""
    summary = summarize(rows, columns)
    if not column:
        return AnalysisView(summary=summary)

    stats = summary.get(column)
    kinds = available_chart_kinds(stats)
    kind = select_chart_kind(stats, chart_kind)
    data = build_chart_data(rows, column, stats, kind)

    return AnalysisView(
        summary=summary,
        column=column,
        availableChartKinds=kinds,
        chartKind=kind,
        chartData=data,
        status="ok" if data else "no_chart",
    )
