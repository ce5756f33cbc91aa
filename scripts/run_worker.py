#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from report_intake.job_store import job_store
from report_intake.pipeline import create_pipeline_from_env
from report_intake.runtime import configure_logging, report_queue
from report_intake.worker_runtime import create_worker_runtime_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run resident worker loop for queued report parsing jobs.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    args = parser.parse_args()

    configure_logging()
    pipeline = create_pipeline_from_env(job_store=job_store)
    report_queue.on_dequeue(pipeline.run)
    runtime = create_worker_runtime_from_env(queue=report_queue)
    if args.iterations > 0:
        stats = runtime.run_forever(stop_after_iterations=args.iterations)
    else:
        stats = runtime.run_forever(stop_after_iterations=None)
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
