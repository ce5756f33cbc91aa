from __future__ import annotations

import copy
import threading
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from report_intake.db.postgres import PostgresTxRunner
from report_intake.errors import JobNotFoundError
from report_intake.repositories._sql import dump_json, validate_identifier

SCALAR_COLUMNS = ("status", "progress", "error", "estimated_processing_time")
JSON_COLUMNS = ("source_url", "results", "processing_metadata")
TIMESTAMP_COLUMNS = ("updated_at",)

_SELECT_COLUMNS = (
    "job_id, report_text, source_url, submitted_by, status, progress, estimated_processing_time, "
    "error, results, processing_metadata, created_at, updated_at"
)


def split_field_path(path: str) -> tuple[str, str | None]:
    """Split ``results.violations`` into (``results``, ``violations``); only one level of nesting is addressable."""
    parts = path.split(".")
    if len(parts) == 1:
        column, key = parts[0], None
    elif len(parts) == 2 and parts[1]:
        column, key = parts[0], parts[1]
    else:
        raise ValueError(f"unsupported job field path: {path}")
    if key is None and column not in SCALAR_COLUMNS + JSON_COLUMNS + TIMESTAMP_COLUMNS:
        raise ValueError(f"unsupported job field: {column}")
    if key is not None and column not in JSON_COLUMNS:
        raise ValueError(f"job field is not a document: {column}")
    return column, key


def apply_field_updates(job: dict[str, Any], fields: Mapping[str, Any]) -> dict[str, Any]:
    for path, value in fields.items():
        column, key = split_field_path(path)
        if key is None:
            job[column] = copy.deepcopy(value)
            continue
        nested = job.get(column)
        if not isinstance(nested, dict):
            nested = {}
            job[column] = nested
        nested[key] = copy.deepcopy(value)
    return job


class InMemoryJobsRepository:
    def __init__(self, jobs: dict[str, dict[str, Any]] | None = None) -> None:
        self._jobs = {} if jobs is None else jobs
        self._lock = threading.RLock()

    def create(self, *, job: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._jobs[str(job["job_id"])] = copy.deepcopy(job)
            return copy.deepcopy(job)

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._jobs.get(job_id)
            return None if row is None else copy.deepcopy(row)

    def update(self, *, job_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            apply_field_updates(row, fields)
            return copy.deepcopy(row)

    def list(
        self,
        *,
        status: str | None = None,
        submitted_by: str | None = None,
        cursor: str | None = None,
        limit: int = 20,
    ) -> dict[str, Any]:
        with self._lock:
            jobs = list(self._jobs.values())
        if status:
            jobs = [j for j in jobs if j.get("status") == status]
        if submitted_by:
            jobs = [j for j in jobs if j.get("submitted_by") == submitted_by]
        jobs.sort(key=lambda j: str(j.get("created_at", "")), reverse=True)

        start = _cursor_offset(cursor)
        limit = min(max(limit, 1), 100)
        sliced = jobs[start : start + limit]
        next_cursor = None
        if start + limit < len(jobs):
            next_cursor = str(start + limit)
        return {
            "items": [copy.deepcopy(j) for j in sliced],
            "total": len(jobs),
            "next_cursor": next_cursor,
        }

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()


def _cursor_offset(cursor: str | None) -> int:
    if not cursor:
        return 0
    try:
        return max(0, int(cursor))
    except ValueError:
        return 0


def _iso(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class PostgresJobsRepository:
    """Jobs repository for postgres backend; nested documents are patched with jsonb_set."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "report_parsing_jobs") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    @staticmethod
    def _row_to_job(row: tuple[Any, ...]) -> dict[str, Any]:
        return {
            "job_id": row[0],
            "report_text": row[1],
            "source_url": row[2] if isinstance(row[2], dict) else None,
            "submitted_by": row[3],
            "status": row[4],
            "progress": int(row[5]),
            "estimated_processing_time": row[6],
            "error": row[7],
            "results": row[8] if isinstance(row[8], dict) else {},
            "processing_metadata": row[9] if isinstance(row[9], dict) else {},
            "created_at": _iso(row[10]),
            "updated_at": _iso(row[11]),
        }

    def create(self, *, job: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._table_name} (
                job_id, report_text, source_url, submitted_by, status, progress,
                estimated_processing_time, error, results, processing_metadata, created_at, updated_at
            ) VALUES (%s, %s, %s::jsonb, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s::timestamptz, %s::timestamptz)
        """
        payload = copy.deepcopy(job)

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        payload["job_id"],
                        payload["report_text"],
                        dump_json(payload.get("source_url")),
                        payload["submitted_by"],
                        payload.get("status", "queued"),
                        int(payload.get("progress", 0)),
                        payload.get("estimated_processing_time", "unknown"),
                        payload.get("error"),
                        dump_json(payload.get("results", {})),
                        dump_json(payload.get("processing_metadata", {})),
                        payload["created_at"],
                        payload["updated_at"],
                    ),
                )
            return payload

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {_SELECT_COLUMNS}
            FROM {self._table_name}
            WHERE job_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return self._row_to_job(row)

        return self._tx_runner.run_in_tx(fn=_op)

    def _build_update(self, fields: Mapping[str, Any]) -> tuple[str, list[Any]]:
        assignments: list[str] = []
        params: list[Any] = []
        nested: dict[str, list[tuple[str, Any]]] = {}
        for path, value in fields.items():
            column, key = split_field_path(path)
            if key is not None:
                nested.setdefault(column, []).append((key, value))
            elif column in JSON_COLUMNS:
                assignments.append(f"{column} = %s::jsonb")
                params.append(dump_json(value))
            elif column in TIMESTAMP_COLUMNS:
                assignments.append(f"{column} = %s::timestamptz")
                params.append(value)
            else:
                assignments.append(f"{column} = %s")
                params.append(value)
        for column, pairs in nested.items():
            expr = f"COALESCE({column}, '{{}}'::jsonb)"
            for key, value in pairs:
                expr = f"jsonb_set({expr}, %s::text[], %s::jsonb, true)"
                params.extend([[key], dump_json(value)])
            assignments.append(f"{column} = {expr}")
        if not assignments:
            raise ValueError("no job fields to update")
        sql = f"""
            UPDATE {self._table_name}
            SET {", ".join(assignments)}
            WHERE job_id = %s
            RETURNING {_SELECT_COLUMNS}
        """
        return sql, params

    def update(self, *, job_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        sql, params = self._build_update(fields)

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (*params, job_id))
                row = cur.fetchone()
            if row is None:
                return None
            return self._row_to_job(row)

        updated = self._tx_runner.run_in_tx(fn=_op)
        if updated is None:
            raise JobNotFoundError(job_id)
        return updated

    def list(
        self,
        *,
        status: str | None = None,
        submitted_by: str | None = None,
        cursor: str | None = None,
        limit: int = 20,
    ) -> dict[str, Any]:
        where: list[str] = []
        params: list[Any] = []
        if status:
            where.append("status = %s")
            params.append(status)
        if submitted_by:
            where.append("submitted_by = %s")
            params.append(submitted_by)
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        start = _cursor_offset(cursor)
        limit = min(max(limit, 1), 100)
        count_sql = f"SELECT COUNT(*) FROM {self._table_name} {where_sql}"
        page_sql = f"""
            SELECT {_SELECT_COLUMNS}
            FROM {self._table_name}
            {where_sql}
            ORDER BY created_at DESC
            LIMIT %s OFFSET %s
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(count_sql, tuple(params))
                total_row = cur.fetchone()
                cur.execute(page_sql, (*params, limit, start))
                rows = cur.fetchall()
            total = int(total_row[0]) if total_row else 0
            next_cursor = str(start + limit) if start + limit < total else None
            return {
                "items": [self._row_to_job(row) for row in rows],
                "total": total,
                "next_cursor": next_cursor,
            }

        return self._tx_runner.run_in_tx(fn=_op)

    def reset(self) -> None:
        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self._table_name}")

        self._tx_runner.run_in_tx(fn=_op)
