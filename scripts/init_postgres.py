#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from report_intake.db.schema import PostgresSchemaManager


def main() -> int:
    parser = argparse.ArgumentParser(description="Create the job, violation and geocode cache tables")
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    parser.add_argument("--jobs-table", default=os.getenv("INTAKE_JOBS_TABLE", "report_parsing_jobs"))
    parser.add_argument("--violations-table", default=os.getenv("INTAKE_VIOLATIONS_TABLE", "violations"))
    parser.add_argument("--cache-table", default=os.getenv("INTAKE_GEOCODE_CACHE_TABLE", "geocoding_cache"))
    args = parser.parse_args()

    dsn = str(args.dsn or "").strip()
    if not dsn:
        raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")

    manager = PostgresSchemaManager(
        dsn,
        jobs_table=args.jobs_table,
        violations_table=args.violations_table,
        cache_table=args.cache_table,
    )
    created = manager.apply()
    print(json.dumps({"tables": created, "count": len(created)}, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
