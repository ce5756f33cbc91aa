"""Structural validation of extracted violation candidates.

Candidates are checked against a JSON schema of the Violation record plus a
handful of date rules that a schema cannot express (no incident dates in the
future). The same rules guard the violation stores, which additionally require
resolved coordinates and a creator.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

from jsonschema import Draft7Validator

from report_intake.errors import ViolationRejectedError

VIOLATION_TYPES = (
    "AIRSTRIKE",
    "CHEMICAL_ATTACK",
    "DETENTION",
    "DISPLACEMENT",
    "EXECUTION",
    "SHELLING",
    "SIEGE",
    "TORTURE",
    "MURDER",
    "SHOOTING",
    "HOME_INVASION",
    "EXPLOSION",
    "AMBUSH",
    "KIDNAPPING",
    "LANDMINE",
    "OTHER",
)
CERTAINTY_LEVELS = ("confirmed", "probable", "possible")
PERPETRATOR_AFFILIATIONS = (
    "assad_regime",
    "post_8th_december_government",
    "various_armed_groups",
    "isis",
    "sdf",
    "israel",
    "turkey",
    "druze_militias",
    "russia",
    "iran_shia_militias",
    "international_coalition",
    "unknown",
)
VICTIM_GENDERS = ("male", "female", "other", "unknown")
VICTIM_STATUSES = ("civilian", "combatant", "unknown")

URL_PATTERN = r"^(https?://)?([a-z0-9.-]+)\.([a-z.]{2,6})[/\w .-]*/?$"
_URL_OR_EMPTY_PATTERN = r"^$|" + URL_PATTERN

CANDIDATE_DEFAULTS: dict[str, Any] = {
    "verified": False,
    "perpetrator_affiliation": "unknown",
}


def _localized(*, max_length: int | None = None, pattern: str | None = None) -> dict[str, Any]:
    text: dict[str, Any] = {"type": "string"}
    if max_length is not None:
        text["maxLength"] = max_length
    if pattern is not None:
        text["pattern"] = pattern
    return {
        "type": "object",
        "properties": {"en": text, "ar": text},
    }


_COUNT = {"type": "integer", "minimum": 0}

VIOLATION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["type", "date", "location", "description", "certainty_level"],
    "properties": {
        "type": {"enum": list(VIOLATION_TYPES)},
        "date": {"type": "string", "minLength": 1},
        "reported_date": {"type": ["string", "null"]},
        "location": {
            "type": "object",
            "properties": {
                "name": {
                    "type": "object",
                    "properties": {
                        "en": {"type": "string", "minLength": 2, "maxLength": 100},
                        "ar": {"type": "string"},
                    },
                },
                "administrative_division": _localized(),
                "coordinates": {
                    "type": "array",
                    "items": {"type": "number"},
                    "minItems": 2,
                    "maxItems": 2,
                },
            },
        },
        "description": {
            "type": "object",
            "required": ["en"],
            "properties": {
                "en": {"type": "string", "minLength": 10, "maxLength": 2000},
                "ar": {"type": "string"},
            },
        },
        "source": _localized(max_length=1500),
        "source_url": _localized(max_length=500, pattern=_URL_OR_EMPTY_PATTERN),
        "verified": {"type": "boolean"},
        "certainty_level": {"enum": list(CERTAINTY_LEVELS)},
        "verification_method": _localized(max_length=500),
        "casualties": _COUNT,
        "kidnapped_count": _COUNT,
        "injured_count": _COUNT,
        "displaced_count": _COUNT,
        "victims": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "age": {"type": ["integer", "null"], "minimum": 0, "maximum": 120},
                    "gender": {"enum": list(VICTIM_GENDERS)},
                    "status": {"enum": list(VICTIM_STATUSES)},
                    "death_date": {"type": ["string", "null"]},
                },
            },
        },
        "perpetrator": _localized(max_length=200),
        "perpetrator_affiliation": {"enum": list(PERPETRATOR_AFFILIATIONS)},
        "media_links": {
            "type": "array",
            "items": {"type": "string", "pattern": URL_PATTERN},
        },
        "tags": {
            "type": "array",
            "items": _localized(max_length=50),
        },
    },
}

_VALIDATOR = Draft7Validator(VIOLATION_SCHEMA)


@dataclass
class ValidationOutcome:
    valid: list[dict[str, Any]] = field(default_factory=list)
    invalid: list[dict[str, Any]] = field(default_factory=list)


def _parse_date(value: Any) -> date | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return datetime.fromisoformat(value.strip()).date()
    except ValueError:
        return None


def _date_errors(candidate: dict[str, Any], today: date) -> list[str]:
    errors: list[str] = []
    raw_date = candidate.get("date")
    if isinstance(raw_date, str) and raw_date.strip():
        incident = _parse_date(raw_date)
        if incident is None:
            errors.append("date: Incident date must be a valid ISO date")
        elif incident > today:
            errors.append("date: Incident date cannot be in the future")

    raw_reported = candidate.get("reported_date")
    if isinstance(raw_reported, str) and raw_reported.strip():
        reported = _parse_date(raw_reported)
        if reported is None:
            errors.append("reported_date: Reported date must be a valid ISO date")
        elif reported > today:
            errors.append("reported_date: Reported date cannot be in the future")

    victims = candidate.get("victims")
    if isinstance(victims, list):
        for idx, victim in enumerate(victims):
            if not isinstance(victim, dict):
                continue
            death = _parse_date(victim.get("death_date"))
            if death is not None and death > today:
                errors.append(f"victims.{idx}.death_date: Death date cannot be in the future")
    return errors


def _schema_errors(candidate: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    for error in _VALIDATOR.iter_errors(candidate):
        path = ".".join(str(part) for part in error.absolute_path)
        errors.append(f"{path}: {error.message}" if path else error.message)
    return errors


def candidate_errors(candidate: Any, *, now: datetime | None = None) -> list[str]:
    """Return every rule the candidate breaks, sorted so the result is stable."""
    if not isinstance(candidate, dict):
        return ["Violation must be an object"]
    today = (now or datetime.now(UTC)).date()
    return sorted(_schema_errors(candidate) + _date_errors(candidate, today))


def with_defaults(candidate: dict[str, Any]) -> dict[str, Any]:
    prepared = copy.deepcopy(candidate)
    for key, value in CANDIDATE_DEFAULTS.items():
        if prepared.get(key) is None:
            prepared[key] = value
    return prepared


def validate_candidates(
    candidates: Iterable[Any],
    *,
    now: datetime | None = None,
) -> ValidationOutcome:
    """Partition candidates into valid (defaults applied) and invalid ``{violation, error}`` entries."""
    outcome = ValidationOutcome()
    for candidate in candidates:
        prepared = with_defaults(candidate) if isinstance(candidate, dict) else candidate
        errors = candidate_errors(prepared, now=now)
        if errors:
            outcome.invalid.append(
                {
                    "violation": copy.deepcopy(candidate),
                    "error": "; ".join(errors),
                }
            )
        else:
            outcome.valid.append(prepared)
    return outcome


def _coordinate_errors(location: Any) -> list[str]:
    coords = location.get("coordinates") if isinstance(location, dict) else None
    if not isinstance(coords, (list, tuple)) or len(coords) != 2:
        return ["location.coordinates: Coordinates are required"]
    lon, lat = coords
    if isinstance(lon, bool) or isinstance(lat, bool) or not isinstance(lon, (int, float)) or not isinstance(lat, (int, float)):
        return ["location.coordinates: Coordinates must be an array of two numbers [longitude, latitude]"]
    if not -180 <= lon <= 180 or not -90 <= lat <= 90:
        return ["location.coordinates: Coordinates must be within valid longitude/latitude ranges"]
    return []


def ensure_storable(record: dict[str, Any], *, now: datetime | None = None) -> None:
    """Store-side guard: schema rules plus resolved coordinates and a creator."""
    errors = candidate_errors(record, now=now)
    if isinstance(record, dict):
        errors.extend(_coordinate_errors(record.get("location")))
        if not str(record.get("created_by") or "").strip():
            errors.append("created_by: Creator is required")
    if errors:
        raise ViolationRejectedError(f"Violation validation failed: {'; '.join(errors)}")
