from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from report_intake.db.postgres import PostgresTxRunner
from report_intake.errors import JobNotFoundError, JobStateError
from report_intake.repositories.jobs import InMemoryJobsRepository, PostgresJobsRepository
from report_intake.runtime_profile import true_stack_required

logger = logging.getLogger(__name__)

JOB_STATUSES = ("queued", "processing", "validation", "creating_violations", "completed", "failed")

# ``processing`` is re-entered by every delivery attempt; ``completed`` is terminal.
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "queued": {"processing", "failed"},
    "processing": {"processing", "validation", "failed"},
    "validation": {"processing", "creating_violations", "failed"},
    "creating_violations": {"processing", "completed", "failed"},
    "failed": {"processing"},
    "completed": set(),
}


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def empty_results() -> dict[str, Any]:
    return {
        "parsed_violations_count": 0,
        "created_violations_count": 0,
        "violations": [],
        "failed_violations": [],
    }


def empty_processing_metadata() -> dict[str, Any]:
    return {
        "attempts": 0,
        "last_attempt": None,
        "processing_started_at": None,
        "processing_completed_at": None,
        "processing_time_ms": None,
    }


class JobStore:
    """Job records and their lifecycle rules, on top of a jobs repository."""

    def __init__(self, *, repository: Any) -> None:
        self.repository = repository

    def create_job(
        self,
        *,
        report_text: str,
        source_url: dict[str, Any] | None,
        submitted_by: str,
        estimated_processing_time: str,
    ) -> dict[str, Any]:
        now = _utcnow_iso()
        job = {
            "job_id": f"job_{uuid.uuid4().hex[:12]}",
            "report_text": report_text,
            "source_url": dict(source_url) if source_url else None,
            "submitted_by": submitted_by,
            "status": "queued",
            "progress": 0,
            "estimated_processing_time": estimated_processing_time,
            "error": None,
            "results": empty_results(),
            "processing_metadata": empty_processing_metadata(),
            "created_at": now,
            "updated_at": now,
        }
        return self.repository.create(job=job)

    def get_job(self, job_id: str) -> dict[str, Any] | None:
        return self.repository.get(job_id=job_id)

    def require_job(self, job_id: str) -> dict[str, Any]:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def update_job(self, job_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        """Apply a partial update; only the given field paths are written."""
        current = self.require_job(job_id)
        current_status = str(current.get("status", ""))
        new_status = fields.get("status")
        if new_status is not None and new_status != current_status:
            if new_status not in ALLOWED_TRANSITIONS.get(current_status, set()):
                raise JobStateError(f"invalid job transition: {current_status} -> {new_status}")

        if "progress" in fields:
            progress = int(fields["progress"])
            if not 0 <= progress <= 100:
                raise ValueError(f"progress must be within 0..100, got {progress}")
            restarting = new_status == "processing"
            if not restarting and progress < int(current.get("progress", 0)):
                raise JobStateError(
                    f"progress must not decrease within one attempt: {current.get('progress')} -> {progress}"
                )

        payload = dict(fields)
        payload["updated_at"] = _utcnow_iso()
        return self.repository.update(job_id=job_id, fields=payload)

    def list_jobs(
        self,
        *,
        status: str | None = None,
        submitted_by: str | None = None,
        cursor: str | None = None,
        limit: int = 20,
    ) -> dict[str, Any]:
        return self.repository.list(status=status, submitted_by=submitted_by, cursor=cursor, limit=limit)

    def reset(self) -> None:
        reset = getattr(self.repository, "reset", None)
        if callable(reset):
            reset()


def describe_job(job: Mapping[str, Any]) -> dict[str, Any]:
    """Polling view of a job; the full report text is left out."""
    results = job.get("results") or {}
    return {
        "job_id": job["job_id"],
        "status": job.get("status"),
        "progress": job.get("progress", 0),
        "submitted_by": job.get("submitted_by"),
        "submitted_at": job.get("created_at"),
        "estimated_processing_time": job.get("estimated_processing_time"),
        "source": job.get("source_url"),
        "error": job.get("error"),
        "results": {
            "parsed_violations_count": results.get("parsed_violations_count", 0),
            "created_violations_count": results.get("created_violations_count", 0),
            "violations": list(results.get("violations", [])),
            "failed_violations": list(results.get("failed_violations", [])),
        },
    }


def create_job_store_from_env(environ: Mapping[str, str] | None = None) -> JobStore:
    env = os.environ if environ is None else environ
    backend = env.get("INTAKE_STORE_BACKEND", "memory").strip().lower()
    if true_stack_required(env) and backend != "postgres":
        raise RuntimeError("INTAKE_STORE_BACKEND must be postgres when INTAKE_REQUIRE_TRUESTACK=true")
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when INTAKE_STORE_BACKEND=postgres")
        table_name = env.get("INTAKE_JOBS_TABLE", "report_parsing_jobs")
        return JobStore(repository=PostgresJobsRepository(tx_runner=PostgresTxRunner(dsn), table_name=table_name))
    if backend != "memory":
        raise RuntimeError(f"unsupported store backend: {backend}")
    return JobStore(repository=InMemoryJobsRepository())


job_store = create_job_store_from_env()
