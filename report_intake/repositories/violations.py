from __future__ import annotations

import copy
import threading
import uuid
from datetime import UTC, datetime
from typing import Any

from report_intake.db.postgres import PostgresTxRunner, _import_psycopg
from report_intake.errors import ViolationRejectedError
from report_intake.repositories._sql import dump_json, validate_identifier
from report_intake.validation import ensure_storable


def _new_violation_id() -> str:
    return f"vio_{uuid.uuid4().hex[:12]}"


class InMemoryViolationsRepository:
    def __init__(self, violations: dict[str, dict[str, Any]] | None = None) -> None:
        self._violations = {} if violations is None else violations
        self._lock = threading.RLock()

    def create(self, *, violation: dict[str, Any]) -> dict[str, Any]:
        ensure_storable(violation)
        record = copy.deepcopy(violation)
        record["violation_id"] = _new_violation_id()
        record["created_at"] = datetime.now(UTC).isoformat()
        with self._lock:
            self._violations[record["violation_id"]] = record
        return copy.deepcopy(record)

    def get(self, *, violation_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._violations.get(violation_id)
            return None if row is None else copy.deepcopy(row)

    def list(self) -> list[dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(v) for v in self._violations.values()]

    def reset(self) -> None:
        with self._lock:
            self._violations.clear()


class PostgresViolationsRepository:
    """Violation store; constraint and data errors surface as per-item rejections."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "violations") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def create(self, *, violation: dict[str, Any]) -> dict[str, Any]:
        ensure_storable(violation)
        record = copy.deepcopy(violation)
        record["violation_id"] = _new_violation_id()
        record["created_at"] = datetime.now(UTC).isoformat()
        sql = f"""
            INSERT INTO {self._table_name} (
                violation_id, type, date, created_by, updated_by, payload, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s::timestamptz)
        """
        psycopg = _import_psycopg()

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        record["violation_id"],
                        record["type"],
                        record["date"],
                        str(record["created_by"]),
                        str(record.get("updated_by") or record["created_by"]),
                        dump_json(record),
                        record["created_at"],
                    ),
                )
            return record

        try:
            return self._tx_runner.run_in_tx(fn=_op)
        except (psycopg.IntegrityError, psycopg.DataError) as exc:
            raise ViolationRejectedError(f"Violation rejected by store: {exc}") from exc
