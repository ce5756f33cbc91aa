"""
Report parsing pipeline: one run per dequeued job.

  load job -> processing(10) -> extract -> 40 -> validation(50)
    -> creating_violations(70) -> resolve + persist per candidate -> completed(100)

Job-level failures are written to the job record as ``failed`` before they
propagate to the queue adapter. Per-candidate failures (validation, location,
persistence) are collected in ``results.failed_violations`` and never abort
the batch. A run does not resume from an earlier attempt: every stage runs
again and violations created by a previous attempt are created again.
"""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from report_intake.db.postgres import PostgresTxRunner
from report_intake.errors import ExtractionError, JobStateError
from report_intake.extraction import create_extractor_from_env
from report_intake.geocoding import create_geocoder_from_env, resolve_location
from report_intake.job_store import JobStore
from report_intake.outcomes import (
    CandidateOutcome,
    Created,
    Invalid,
    Pending,
    PersistFailed,
    Resolved,
    created_ids,
    failed_entries,
)
from report_intake.persistence import persist_candidate
from report_intake.repositories import (
    InMemoryGeocodingCacheRepository,
    InMemoryViolationsRepository,
    PostgresGeocodingCacheRepository,
    PostgresViolationsRepository,
)
from report_intake.runtime_profile import env_int
from report_intake.validation import validate_candidates

logger = logging.getLogger(__name__)

NOTHING_EXTRACTED = "No violations were extracted from the report"
ALL_INVALID = "All parsed violations failed validation"


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def extraction_failure_message(exc: Exception) -> str:
    detail = getattr(exc, "response_data", None)
    detail_text = json.dumps(detail, ensure_ascii=False, default=str) if detail is not None else ""
    message = getattr(exc, "message", None) or str(exc) or "Unknown error"
    return f"Report parsing failed: {message}. {detail_text}"


@dataclass
class _RunState:
    job_id: str
    started: float
    failure_recorded: bool = False


class ReportParsingPipeline:
    def __init__(
        self,
        *,
        job_store: JobStore,
        extractor: Any,
        geocoder: Any,
        violations_repository: Any,
    ) -> None:
        self.job_store = job_store
        self.extractor = extractor
        self.geocoder = geocoder
        self.violations_repository = violations_repository

    def __call__(self, job_id: str) -> dict[str, Any]:
        return self.run(job_id)

    def run(self, job_id: str) -> dict[str, Any]:
        job = self.job_store.require_job(job_id)
        if job.get("status") == "completed":
            raise JobStateError(f"job {job_id} is already completed")

        state = _RunState(job_id=job_id, started=time.monotonic())
        with self._error_boundary(state):
            return self._execute(job, state)

    @contextmanager
    def _error_boundary(self, state: _RunState) -> Iterator[None]:
        """Scoped to one run: records the failure on the job, then re-raises."""
        try:
            yield
        except Exception as exc:
            if not state.failure_recorded:
                logger.error("Job %s failed: %s", state.job_id, exc)
                self._mark_failed(state, str(exc))
            raise

    def _mark_failed(self, state: _RunState, error: str) -> None:
        try:
            self.job_store.update_job(state.job_id, {"status": "failed", "error": error})
        except Exception:
            logger.exception("Could not record failure for job %s", state.job_id)
        state.failure_recorded = True

    def _execute(self, job: dict[str, Any], state: _RunState) -> dict[str, Any]:
        job_id = state.job_id
        metadata = job.get("processing_metadata") or {}
        now = _utcnow_iso()
        self.job_store.update_job(
            job_id,
            {
                "status": "processing",
                "progress": 10,
                "error": None,
                "processing_metadata.attempts": int(metadata.get("attempts") or 0) + 1,
                "processing_metadata.last_attempt": now,
                "processing_metadata.processing_started_at": now,
            },
        )

        candidates = self._extract(job, state)
        self.job_store.update_job(job_id, {"progress": 40})

        self.job_store.update_job(job_id, {"status": "validation", "progress": 50})
        validation = validate_candidates(candidates)
        logger.info(
            "Job %s: validation complete. Valid: %d, Invalid: %d",
            job_id,
            len(validation.valid),
            len(validation.invalid),
        )
        outcomes: list[CandidateOutcome] = [
            Invalid(index=i, candidate=entry["violation"], reason=entry["error"])
            for i, entry in enumerate(validation.invalid)
        ]
        self.job_store.update_job(
            job_id,
            {
                "status": "creating_violations",
                "progress": 70,
                "results.parsed_violations_count": len(candidates),
                "results.failed_violations": failed_entries(outcomes),
            },
        )

        if not validation.valid:
            error = ALL_INVALID if validation.invalid else NOTHING_EXTRACTED
            logger.info("Job %s: %s", job_id, error)
            return self._complete(state, outcomes, error=error)

        for i, candidate in enumerate(validation.valid):
            outcomes.append(self._process_candidate(job, Pending(index=i, candidate=candidate)))

        created = created_ids(outcomes)
        logger.info(
            "Job %s: created %d of %d valid violations",
            job_id,
            len(created),
            len(validation.valid),
        )
        return self._complete(state, outcomes, error=None)

    def _extract(self, job: Mapping[str, Any], state: _RunState) -> list[dict[str, Any]]:
        try:
            candidates = self.extractor.extract(job["report_text"], job.get("source_url"))
        except Exception as exc:
            error = extraction_failure_message(exc)
            logger.error("Extraction failed for job %s: %s", state.job_id, error)
            self._mark_failed(state, error)
            raise
        if not isinstance(candidates, list):
            raise ExtractionError("Extraction returned a non-list result", retryable=False)
        logger.info("Extraction completed for job %s: %d candidates", state.job_id, len(candidates))
        return candidates

    def _process_candidate(self, job: Mapping[str, Any], pending: Pending) -> CandidateOutcome:
        candidate = pending.candidate
        try:
            coordinates = resolve_location(candidate.get("location"), geocoder=self.geocoder)
            resolved = Resolved(index=pending.index, candidate=candidate, coordinates=(coordinates[0], coordinates[1]))
            violation_id = persist_candidate(
                resolved.candidate,
                coordinates=resolved.coordinates,
                submitted_by=str(job.get("submitted_by") or ""),
                source_url=job.get("source_url"),
                repository=self.violations_repository,
            )
        except Exception as exc:
            reason = getattr(exc, "message", None) or str(exc)
            logger.warning("Job %s: candidate %d failed: %s", job["job_id"], pending.index, reason)
            return PersistFailed(index=pending.index, candidate=candidate, reason=reason)
        return Created(index=pending.index, violation_id=violation_id)

    def _complete(
        self,
        state: _RunState,
        outcomes: list[CandidateOutcome],
        *,
        error: str | None,
    ) -> dict[str, Any]:
        created = created_ids(outcomes)
        fields: dict[str, Any] = {
            "status": "completed",
            "progress": 100,
            "results.created_violations_count": len(created),
            "results.violations": created,
            "results.failed_violations": failed_entries(outcomes),
            "processing_metadata.processing_completed_at": _utcnow_iso(),
            "processing_metadata.processing_time_ms": int((time.monotonic() - state.started) * 1000),
        }
        if error is not None:
            fields["error"] = error
        return self.job_store.update_job(state.job_id, fields)


def create_pipeline_from_env(
    *,
    job_store: JobStore,
    environ: Mapping[str, str] | None = None,
) -> ReportParsingPipeline:
    env = os.environ if environ is None else environ
    backend = env.get("INTAKE_STORE_BACKEND", "memory").strip().lower()
    ttl_days = env_int(env, "GEOCODE_CACHE_TTL_DAYS", default=90, minimum=1)
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when INTAKE_STORE_BACKEND=postgres")
        runner = PostgresTxRunner(dsn)
        violations: Any = PostgresViolationsRepository(
            tx_runner=runner,
            table_name=env.get("INTAKE_VIOLATIONS_TABLE", "violations"),
        )
        cache: Any = PostgresGeocodingCacheRepository(
            tx_runner=runner,
            table_name=env.get("INTAKE_GEOCODE_CACHE_TABLE", "geocoding_cache"),
            ttl_days=ttl_days,
        )
    else:
        violations = InMemoryViolationsRepository()
        cache = InMemoryGeocodingCacheRepository(ttl_days=ttl_days)

    return ReportParsingPipeline(
        job_store=job_store,
        extractor=create_extractor_from_env(environ),
        geocoder=create_geocoder_from_env(env, cache_repository=cache),
        violations_repository=violations,
    )
