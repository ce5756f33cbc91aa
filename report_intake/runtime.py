from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from report_intake.queue_backend import InMemoryQueueBackend, create_queue_from_env
from report_intake.report_queue import ReportParsingQueue, create_report_queue_from_env
from report_intake.runtime_profile import true_stack_required

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(environ: Mapping[str, str] | None = None) -> None:
    """Entry-point logging; a no-op when the root logger already has handlers."""
    if logging.getLogger().handlers:
        return
    env = os.environ if environ is None else environ
    level_name = env.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)


def _create_queue_backend_for_runtime(
    environ: Mapping[str, str] | None = None,
) -> InMemoryQueueBackend | object:
    env = os.environ if environ is None else environ
    try:
        return create_queue_from_env(env)
    except (RuntimeError, ValueError) as exc:
        if true_stack_required(env):
            raise
        logger.warning("Queue backend unavailable (%s), falling back to in-memory queue", exc)
        return InMemoryQueueBackend()


queue_backend = _create_queue_backend_for_runtime()
report_queue: ReportParsingQueue = create_report_queue_from_env(backend=queue_backend)
