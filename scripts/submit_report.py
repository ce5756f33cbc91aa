#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from report_intake.errors import ApiError
from report_intake.job_store import job_store
from report_intake.runtime import configure_logging, report_queue
from report_intake.submission import submit_report


def main() -> int:
    parser = argparse.ArgumentParser(description="Submit a report text file for violation parsing.")
    parser.add_argument("path", type=Path, help="UTF-8 text file holding the report")
    parser.add_argument("--submitted-by", required=True, help="id of the submitting user")
    parser.add_argument("--source-name", default="", help="name of the report source")
    parser.add_argument("--source-url", default="", help="URL of the report source")
    parser.add_argument("--report-date", default="", help="publication date of the report (YYYY-MM-DD)")
    args = parser.parse_args()

    configure_logging()
    payload: dict[str, object] = {"report_text": args.path.read_text(encoding="utf-8")}
    if args.source_name or args.source_url or args.report_date:
        source = {"name": args.source_name}
        if args.source_url:
            source["url"] = args.source_url
        if args.report_date:
            source["report_date"] = args.report_date
        payload["source_url"] = source

    try:
        result = submit_report(payload, submitted_by=args.submitted_by, job_store=job_store, queue=report_queue)
    except ApiError as exc:
        print(json.dumps({"success": False, "code": exc.code, "message": exc.message}, ensure_ascii=True))
        return 1
    print(json.dumps({"success": True, "data": result}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
