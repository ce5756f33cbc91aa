from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from typing import Any

logger = logging.getLogger(__name__)


def attribute_source(candidate: Mapping[str, Any], source_url: Mapping[str, Any] | None) -> dict[str, Any]:
    """Copy of ``candidate`` with the job's source attribution folded into ``source``/``source_url``."""
    record = copy.deepcopy(dict(candidate))
    if not source_url or not source_url.get("name"):
        return record

    source = dict(record.get("source") or {})
    existing = str(source.get("en") or "")
    source["en"] = f"{existing}. {source_url['name']}" if existing else str(source_url["name"])
    record["source"] = source

    if source_url.get("url"):
        links = dict(record.get("source_url") or {})
        links["en"] = str(source_url["url"])
        record["source_url"] = links
    return record


def persist_candidate(
    candidate: Mapping[str, Any],
    *,
    coordinates: list[float] | tuple[float, float],
    submitted_by: str,
    source_url: Mapping[str, Any] | None,
    repository: Any,
) -> str:
    """Create the permanent violation record and return its id."""
    record = attribute_source(candidate, source_url)
    location = dict(record.get("location") or {})
    location["coordinates"] = [float(coordinates[0]), float(coordinates[1])]
    record["location"] = location
    record["created_by"] = submitted_by
    record["updated_by"] = submitted_by

    created = repository.create(violation=record)
    violation_id = str(created["violation_id"])
    logger.info("Created violation %s (%s on %s)", violation_id, record.get("type"), record.get("date"))
    return violation_id
