"""Row and cell types: every cell is a String, Number, Boolean or Null."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from errors import InvalidInput


class CellKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    NULL = "null"


def parse_number(text: str) -> float | None:
    """Parse a finite number out of text, or return None."""
    stripped = text.strip()
    if not stripped or "_" in stripped:
        return None
    try:
        n = float(stripped)
    except ValueError:
        return None
    if not math.isfinite(n):
        return None
    return n


def format_number(n: int | float) -> str:
    if isinstance(n, int):
        return str(n)
    if n == int(n) and abs(n) < 2**53:
        return str(int(n))
    return repr(n)


@dataclass(frozen=True)
class Cell:
    kind: CellKind
    value: str | int | float | bool | None = None

    @classmethod
    def of(cls, raw: Any) -> Cell:
        if raw is None:
            return NULL_CELL
        if isinstance(raw, bool):
            return cls(CellKind.BOOLEAN, raw)
        if isinstance(raw, (int, float)):
            if isinstance(raw, float) and not math.isfinite(raw):
                raise InvalidInput(f"Cell values must be finite numbers: {raw}")
            return cls(CellKind.NUMBER, raw)
        if isinstance(raw, str):
            return cls(CellKind.STRING, raw)
        raise InvalidInput(
            f"Cell values must be strings, numbers, booleans or null, got {type(raw).__name__}"
        )

    @property
    def is_null(self) -> bool:
        return self.kind is CellKind.NULL

    @property
    def is_empty(self) -> bool:
        return self.kind is CellKind.NULL or (
            self.kind is CellKind.STRING and self.value == ""
        )

    @property
    def text(self) -> str:
        if self.kind is CellKind.STRING:
            return str(self.value)
        if self.kind is CellKind.NUMBER:
            return format_number(self.value)  # type: ignore[arg-type]
        if self.kind is CellKind.BOOLEAN:
            return "true" if self.value else "false"
        return ""

    def as_number(self) -> float | None:
        if self.kind is CellKind.NUMBER:
            return float(self.value)  # type: ignore[arg-type]
        if self.kind is CellKind.STRING:
            return parse_number(str(self.value))
        return None


NULL_CELL = Cell(CellKind.NULL)


@dataclass
class Row:
    id: str
    dataset_id: str
    position: int
    data: dict[str, Cell] = field(default_factory=dict)

    @classmethod
    def from_mapping(
        cls, row_id: str, dataset_id: str, position: int, mapping: dict[str, Any]
    ) -> Row:
        return cls(
            id=row_id,
            dataset_id=dataset_id,
            position=position,
            data={str(k): Cell.of(v) for k, v in mapping.items()},
        )

    def get(self, column: str) -> Cell:
        return self.data.get(column, NULL_CELL)

    def raw_data(self) -> dict[str, Any]:
        return {k: c.value for k, c in self.data.items()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "datasetId": self.dataset_id,
            "rowIndex": self.position,
            "data": self.raw_data(),
        }
