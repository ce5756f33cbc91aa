from __future__ import annotations

import copy
import threading
from datetime import UTC, datetime, timedelta
from typing import Any

from report_intake.db.postgres import PostgresTxRunner
from report_intake.repositories._sql import dump_json, validate_identifier

DEFAULT_TTL_DAYS = 90


def _is_expired(created_at: str, *, ttl: timedelta, now: datetime) -> bool:
    try:
        created = datetime.fromisoformat(created_at)
    except ValueError:
        return True
    if created.tzinfo is None:
        created = created.replace(tzinfo=UTC)
    return created + ttl <= now


class InMemoryGeocodingCacheRepository:
    def __init__(self, *, ttl_days: int = DEFAULT_TTL_DAYS) -> None:
        self._entries: dict[str, dict[str, Any]] = {}
        self._ttl = timedelta(days=max(1, ttl_days))
        self._lock = threading.RLock()

    def get(self, *, cache_key: str) -> dict[str, Any] | None:
        now = datetime.now(UTC)
        with self._lock:
            entry = self._entries.get(cache_key)
            if entry is None:
                return None
            if _is_expired(str(entry.get("created_at", "")), ttl=self._ttl, now=now):
                self._entries.pop(cache_key, None)
                return None
            return copy.deepcopy(entry)

    def record_hit(self, *, cache_key: str) -> None:
        with self._lock:
            entry = self._entries.get(cache_key)
            if entry is None:
                return
            entry["hit_count"] = int(entry.get("hit_count", 0)) + 1
            entry["last_used"] = datetime.now(UTC).isoformat()

    def put(
        self,
        *,
        cache_key: str,
        search_terms: dict[str, Any],
        results: dict[str, Any],
        source: str = "geocoding_api",
        api_calls_used: int = 1,
    ) -> None:
        now = datetime.now(UTC).isoformat()
        with self._lock:
            existing = self._entries.get(cache_key)
            hit_count = int(existing.get("hit_count", 0)) + 1 if existing is not None else 1
            self._entries[cache_key] = {
                "cache_key": cache_key,
                "search_terms": copy.deepcopy(search_terms),
                "results": copy.deepcopy(results),
                "source": source,
                "api_calls_used": int(api_calls_used),
                "hit_count": hit_count,
                "last_used": now,
                "created_at": now,
            }

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()


class PostgresGeocodingCacheRepository:
    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        table_name: str = "geocoding_cache",
        ttl_days: int = DEFAULT_TTL_DAYS,
    ) -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)
        self._ttl_days = max(1, ttl_days)

    def get(self, *, cache_key: str) -> dict[str, Any] | None:
        purge_sql = f"""
            DELETE FROM {self._table_name}
            WHERE cache_key = %s AND created_at <= now() - make_interval(days => %s)
        """
        sql = f"""
            SELECT cache_key, search_terms, results, hit_count, last_used, created_at, source, api_calls_used
            FROM {self._table_name}
            WHERE cache_key = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(purge_sql, (cache_key, self._ttl_days))
                cur.execute(sql, (cache_key,))
                row = cur.fetchone()
            if row is None:
                return None
            return {
                "cache_key": row[0],
                "search_terms": row[1] if isinstance(row[1], dict) else {},
                "results": row[2] if isinstance(row[2], dict) else {},
                "hit_count": int(row[3]),
                "last_used": row[4].isoformat() if isinstance(row[4], datetime) else row[4],
                "created_at": row[5].isoformat() if isinstance(row[5], datetime) else row[5],
                "source": row[6],
                "api_calls_used": int(row[7]),
            }

        return self._tx_runner.run_in_tx(fn=_op)

    def record_hit(self, *, cache_key: str) -> None:
        sql = f"""
            UPDATE {self._table_name}
            SET hit_count = hit_count + 1, last_used = now()
            WHERE cache_key = %s
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, (cache_key,))

        self._tx_runner.run_in_tx(fn=_op)

    def put(
        self,
        *,
        cache_key: str,
        search_terms: dict[str, Any],
        results: dict[str, Any],
        source: str = "geocoding_api",
        api_calls_used: int = 1,
    ) -> None:
        # A rewrite restarts the TTL window.
        sql = f"""
            INSERT INTO {self._table_name}
                (cache_key, search_terms, results, source, api_calls_used, hit_count, last_used, created_at)
            VALUES (%s, %s::jsonb, %s::jsonb, %s, %s, 1, now(), now())
            ON CONFLICT (cache_key) DO UPDATE
            SET search_terms = EXCLUDED.search_terms,
                results = EXCLUDED.results,
                source = EXCLUDED.source,
                api_calls_used = EXCLUDED.api_calls_used,
                hit_count = {self._table_name}.hit_count + 1,
                last_used = now(),
                created_at = now()
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (cache_key, dump_json(search_terms), dump_json(results), source, int(api_calls_used)),
                )

        self._tx_runner.run_in_tx(fn=_op)
