"""Queue adapter for report parsing jobs.

Wraps a queue backend with the delivery policy for parsing jobs: a bounded
number of attempts, exponential backoff between them, and bounded retention of
recent completed/failed executions. Retry accounting lives here; handlers just
raise. Errors carrying ``retryable=False`` skip the remaining attempts.
"""

from __future__ import annotations

import logging
import os
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from report_intake.queue_backend import QueueMessage
from report_intake.runtime_profile import env_int

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_NAME = "report-parsing"


@dataclass(frozen=True)
class BackoffPolicy:
    type: str = "exponential"
    delay_ms: int = 5000

    def delay_for(self, attempts_made: int) -> int:
        if self.type == "fixed":
            return self.delay_ms
        return self.delay_ms * 2 ** max(0, attempts_made - 1)

    def as_dict(self) -> dict[str, Any]:
        return {"type": self.type, "delay": self.delay_ms}

    @classmethod
    def from_dict(cls, data: Any, *, default: BackoffPolicy) -> BackoffPolicy:
        if not isinstance(data, dict):
            return default
        try:
            delay_ms = int(data.get("delay", default.delay_ms))
        except (TypeError, ValueError):
            delay_ms = default.delay_ms
        return cls(type=str(data.get("type") or default.type), delay_ms=max(0, delay_ms))


@dataclass(frozen=True)
class QueueOptions:
    attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    remove_on_complete: int = 100
    remove_on_fail: int = 200

    def job_options(self) -> dict[str, Any]:
        return {"attempts": self.attempts, "backoff": self.backoff.as_dict()}


@dataclass
class ExecutionRecord:
    job_id: str
    message_id: str
    attempts_made: int
    finished_at: str
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "message_id": self.message_id,
            "attempts_made": self.attempts_made,
            "finished_at": self.finished_at,
            "error": self.error,
        }


class ReportParsingQueue:
    def __init__(
        self,
        *,
        backend: Any,
        queue_name: str = DEFAULT_QUEUE_NAME,
        options: QueueOptions | None = None,
    ) -> None:
        self.backend = backend
        self.queue_name = queue_name
        self.options = options or QueueOptions()
        self._handler: Callable[[str], Any] | None = None
        self._completed: deque[ExecutionRecord] = deque(maxlen=max(1, self.options.remove_on_complete))
        self._failed: deque[ExecutionRecord] = deque(maxlen=max(1, self.options.remove_on_fail))

    def enqueue(self, job_id: str, *, options: QueueOptions | None = None) -> QueueMessage:
        opts = options or self.options
        msg = self.backend.enqueue(
            queue_name=self.queue_name,
            payload={"job_id": job_id, **opts.job_options()},
        )
        logger.info("Enqueued job %s as message %s", job_id, msg.message_id)
        return msg

    def on_dequeue(self, handler: Callable[[str], Any]) -> None:
        self._handler = handler

    def _max_attempts(self, payload: dict[str, Any]) -> int:
        try:
            return max(1, int(payload.get("attempts", self.options.attempts)))
        except (TypeError, ValueError):
            return self.options.attempts

    def process_next(self) -> str | None:
        """Deliver one due message; returns completed/retrying/failed, or None when idle."""
        if self._handler is None:
            raise RuntimeError("no handler registered; call on_dequeue() first")
        msg = self.backend.dequeue(queue_name=self.queue_name)
        if msg is None:
            return None
        attempts_made = msg.attempt + 1
        job_id = str(msg.payload.get("job_id") or "")
        if not job_id:
            logger.error("Dropping message %s without job_id", msg.message_id)
            self.backend.nack(message_id=msg.message_id, requeue=False)
            self._failed.append(self._record(msg, job_id, attempts_made, error="message has no job_id"))
            return "failed"

        logger.info("Processing job %s (message %s, attempt %d)", job_id, msg.message_id, attempts_made)
        try:
            self._handler(job_id)
        except Exception as exc:
            return self._handle_failure(msg, job_id=job_id, attempts_made=attempts_made, exc=exc)

        self.backend.ack(message_id=msg.message_id)
        self._completed.append(self._record(msg, job_id, attempts_made))
        logger.info("Job %s completed successfully", job_id)
        return "completed"

    def _handle_failure(
        self,
        msg: QueueMessage,
        *,
        job_id: str,
        attempts_made: int,
        exc: Exception,
    ) -> str:
        max_attempts = self._max_attempts(msg.payload)
        retryable = bool(getattr(exc, "retryable", True))
        if retryable and attempts_made < max_attempts:
            backoff = BackoffPolicy.from_dict(msg.payload.get("backoff"), default=self.options.backoff)
            delay_ms = backoff.delay_for(attempts_made)
            self.backend.nack(message_id=msg.message_id, requeue=True, delay_ms=delay_ms)
            logger.warning(
                "Job %s attempt %d/%d failed (%s); retrying in %d ms",
                job_id,
                attempts_made,
                max_attempts,
                exc,
                delay_ms,
            )
            return "retrying"

        self.backend.nack(message_id=msg.message_id, requeue=False)
        self._failed.append(self._record(msg, job_id, attempts_made, error=str(exc)))
        if retryable:
            logger.error("Job %s failed: attempts exhausted after %d: %s", job_id, attempts_made, exc)
        else:
            logger.error("Job %s failed with non-retryable error on attempt %d: %s", job_id, attempts_made, exc)
        return "failed"

    @staticmethod
    def _record(msg: QueueMessage, job_id: str, attempts_made: int, *, error: str | None = None) -> ExecutionRecord:
        return ExecutionRecord(
            job_id=job_id,
            message_id=msg.message_id,
            attempts_made=attempts_made,
            finished_at=datetime.now(UTC).isoformat(),
            error=error,
        )

    def recent_completed(self) -> list[dict[str, Any]]:
        return [record.as_dict() for record in self._completed]

    def recent_failed(self) -> list[dict[str, Any]]:
        return [record.as_dict() for record in self._failed]

    def pending_count(self) -> int:
        return int(self.backend.pending_count(queue_name=self.queue_name))

    def reset(self) -> None:
        self._completed.clear()
        self._failed.clear()
        reset = getattr(self.backend, "reset", None)
        if callable(reset):
            reset()


def queue_options_from_env(environ: Mapping[str, str] | None = None) -> QueueOptions:
    env = os.environ if environ is None else environ
    return QueueOptions(
        attempts=env_int(env, "INTAKE_QUEUE_ATTEMPTS", default=3, minimum=1),
        backoff=BackoffPolicy(
            type="exponential",
            delay_ms=env_int(env, "INTAKE_QUEUE_BACKOFF_DELAY_MS", default=5000, minimum=0),
        ),
        remove_on_complete=env_int(env, "INTAKE_QUEUE_KEEP_COMPLETED", default=100, minimum=1),
        remove_on_fail=env_int(env, "INTAKE_QUEUE_KEEP_FAILED", default=200, minimum=1),
    )


def create_report_queue_from_env(
    *,
    backend: Any,
    environ: Mapping[str, str] | None = None,
) -> ReportParsingQueue:
    env = os.environ if environ is None else environ
    queue_name = str(env.get("INTAKE_QUEUE_NAME", DEFAULT_QUEUE_NAME)).strip() or DEFAULT_QUEUE_NAME
    return ReportParsingQueue(backend=backend, queue_name=queue_name, options=queue_options_from_env(env))
