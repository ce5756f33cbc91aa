from __future__ import annotations

import logging
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass

from report_intake.report_queue import ReportParsingQueue
from report_intake.runtime_profile import env_int

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    processed: int = 0
    succeeded: int = 0
    retrying: int = 0
    failed: int = 0

    def add(self, other: WorkerRunStats) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.retrying += other.retrying
        self.failed += other.failed

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "retrying": self.retrying,
            "failed": self.failed,
        }


class WorkerRuntime:
    """Resident worker: drains the parsing queue one job at a time."""

    def __init__(
        self,
        *,
        queue: ReportParsingQueue,
        max_messages_per_iteration: int = 20,
        poll_interval_ms: int = 200,
    ) -> None:
        self.queue = queue
        self.max_messages_per_iteration = max(1, int(max_messages_per_iteration))
        self.poll_interval_ms = max(1, int(poll_interval_ms))

    def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        while stats.processed < self.max_messages_per_iteration:
            outcome = self.queue.process_next()
            if outcome is None:
                break
            stats.processed += 1
            if outcome == "completed":
                stats.succeeded += 1
            elif outcome == "retrying":
                stats.retrying += 1
            else:
                stats.failed += 1
        return stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while True:
            current = self.run_once()
            aggregate.add(WorkerRunStats(**current))
            iterations += 1
            if current["processed"]:
                logger.info("Worker iteration %d: %s", iterations, current)
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if current["processed"] == 0:
                time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()


def create_worker_runtime_from_env(
    *,
    queue: ReportParsingQueue,
    environ: Mapping[str, str] | None = None,
) -> WorkerRuntime:
    env = os.environ if environ is None else environ
    return WorkerRuntime(
        queue=queue,
        max_messages_per_iteration=env_int(env, "WORKER_MAX_MESSAGES_PER_ITERATION", default=20, minimum=1),
        poll_interval_ms=env_int(env, "WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
    )
