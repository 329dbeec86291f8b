"""Caller identity and dataset access predicates."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Caller:
    user_id: str
    team_ids: tuple[str, ...] = field(default_factory=tuple)
    owned_team_ids: tuple[str, ...] = field(default_factory=tuple)


def can_read(caller: Caller, dataset: dict[str, Any]) -> bool:
    if dataset["ownerId"] == caller.user_id:
        return True
    team_id = dataset.get("teamId")
    return team_id is not None and team_id in caller.team_ids


# Team members may edit cells of shared datasets.
can_write = can_read


def can_manage(caller: Caller, dataset: dict[str, Any]) -> bool:
    """Rename, delete and share are reserved to the owner."""
    return dataset["ownerId"] == caller.user_id
