from __future__ import annotations

import logging
import math
import re
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from report_intake.errors import ApiError
from report_intake.job_store import JobStore
from report_intake.report_queue import ReportParsingQueue
from report_intake.validation import URL_PATTERN

logger = logging.getLogger(__name__)

MIN_REPORT_LENGTH = 50
WORDS_PER_MINUTE = 200
DEFAULT_SOURCE = {"name": "Manual submission"}


class SourceInfo(BaseModel):
    name: str = Field(default="", validate_default=True)
    url: str | None = None
    report_date: str | None = None

    @field_validator("name")
    @classmethod
    def _name_present(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Source name is required when providing source information")
        return value.strip()

    @field_validator("url")
    @classmethod
    def _url_shape(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        if not re.match(URL_PATTERN, value.strip()):
            raise ValueError("Source URL must be a valid URL")
        return value.strip()


class ReportSubmission(BaseModel):
    report_text: str = Field(default="", validate_default=True)
    source_url: SourceInfo | None = None

    @field_validator("report_text")
    @classmethod
    def _long_enough(cls, value: str) -> str:
        if len(value.strip()) < MIN_REPORT_LENGTH:
            raise ValueError(f"Report text is required and should be at least {MIN_REPORT_LENGTH} characters")
        return value


def _rejection(message: str) -> ApiError:
    return ApiError(
        code="REQ_VALIDATION_FAILED",
        message=message,
        error_class="validation",
        retryable=False,
        http_status=400,
    )


def _first_error_message(exc: ValidationError) -> str:
    for err in exc.errors():
        ctx_error = (err.get("ctx") or {}).get("error")
        if ctx_error is not None:
            return str(ctx_error)
        loc = ".".join(str(part) for part in err.get("loc", ()))
        return f"{loc}: {err.get('msg', 'invalid value')}"
    return "invalid payload"


def estimate_processing_time(report_text: str) -> str:
    words = len(report_text.split())
    return f"{max(1, math.ceil(words / WORDS_PER_MINUTE))} minutes"


def parse_submission(payload: Mapping[str, Any]) -> ReportSubmission:
    try:
        return ReportSubmission.model_validate(dict(payload))
    except ValidationError as exc:
        raise _rejection(_first_error_message(exc)) from exc


def submit_report(
    payload: Mapping[str, Any],
    *,
    submitted_by: str,
    job_store: JobStore,
    queue: ReportParsingQueue,
) -> dict[str, Any]:
    """Create a queued job for the report and hand its id to the parsing queue."""
    if not str(submitted_by or "").strip():
        raise _rejection("submitted_by is required")
    submission = parse_submission(payload)

    source = submission.source_url.model_dump(exclude_none=True) if submission.source_url else dict(DEFAULT_SOURCE)
    estimate = estimate_processing_time(submission.report_text)
    job = job_store.create_job(
        report_text=submission.report_text,
        source_url=source,
        submitted_by=submitted_by,
        estimated_processing_time=estimate,
    )
    queue.enqueue(job["job_id"])
    logger.info("Report submitted as job %s by %s (%s)", job["job_id"], submitted_by, estimate)
    return {
        "job_id": job["job_id"],
        "estimated_processing_time": estimate,
        "submitted_at": job["created_at"],
    }
