"""Per-candidate outcomes threaded through a pipeline run.

A candidate starts as ``Pending`` and ends as exactly one of ``Invalid``,
``Created`` or ``PersistFailed``; ``Resolved`` sits between location
resolution and persistence.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class Pending:
    index: int
    candidate: dict[str, Any]


@dataclass(frozen=True)
class Invalid:
    index: int
    candidate: Any
    reason: str


@dataclass(frozen=True)
class Resolved:
    index: int
    candidate: dict[str, Any]
    coordinates: tuple[float, float]


@dataclass(frozen=True)
class Created:
    index: int
    violation_id: str


@dataclass(frozen=True)
class PersistFailed:
    index: int
    candidate: dict[str, Any]
    reason: str


CandidateOutcome = Union[Pending, Invalid, Resolved, Created, PersistFailed]


def failed_entry(outcome: Invalid | PersistFailed) -> dict[str, Any]:
    return {"violation": outcome.candidate, "error": outcome.reason}


def created_ids(outcomes: list[CandidateOutcome]) -> list[str]:
    return [o.violation_id for o in outcomes if isinstance(o, Created)]


def failed_entries(outcomes: list[CandidateOutcome]) -> list[dict[str, Any]]:
    return [failed_entry(o) for o in outcomes if isinstance(o, (Invalid, PersistFailed))]
