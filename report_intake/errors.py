from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class ConfigurationError(ApiError):
    """Missing or rejected credentials; fails identically on every attempt."""

    def __init__(self, message: str) -> None:
        super().__init__(
            code="CONFIG_MISSING",
            message=message,
            error_class="configuration",
            retryable=False,
            http_status=500,
        )


class JobNotFoundError(ApiError):
    def __init__(self, job_id: str) -> None:
        super().__init__(
            code="JOB_NOT_FOUND",
            message=f"Job with ID {job_id} not found in database",
            error_class="configuration",
            retryable=False,
            http_status=404,
        )
        self.job_id = job_id


class JobStateError(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="WF_STATE_TRANSITION_INVALID",
            message=message,
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )


class ExtractionError(ApiError):
    def __init__(
        self,
        message: str,
        *,
        response_data: Any = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(
            code="EXTRACTION_FAILED",
            message=message,
            error_class="transient" if retryable else "upstream_rejected",
            retryable=retryable,
            http_status=502,
        )
        self.response_data = response_data


class LocationResolutionError(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="LOCATION_UNRESOLVED",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=422,
        )


class ViolationRejectedError(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="VIOLATION_REJECTED",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=422,
        )


class StoreUnavailableError(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="STORE_UNAVAILABLE",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=503,
        )
