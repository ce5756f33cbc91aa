from __future__ import annotations

from report_intake.db.postgres import _import_psycopg
from report_intake.repositories._sql import validate_identifier


class PostgresSchemaManager:
    """Create the job, violation and geocode cache tables if missing."""

    def __init__(
        self,
        dsn: str,
        *,
        jobs_table: str = "report_parsing_jobs",
        violations_table: str = "violations",
        cache_table: str = "geocoding_cache",
    ) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self._jobs_table = validate_identifier(jobs_table)
        self._violations_table = validate_identifier(violations_table)
        self._cache_table = validate_identifier(cache_table)

    def statements(self) -> list[str]:
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {self._jobs_table} (
                job_id TEXT PRIMARY KEY,
                report_text TEXT NOT NULL,
                source_url JSONB,
                submitted_by TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'queued',
                progress INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
                estimated_processing_time TEXT NOT NULL DEFAULT 'unknown',
                error TEXT,
                results JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                processing_metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """,
            f"CREATE INDEX IF NOT EXISTS {self._jobs_table}_status_created_idx "
            f"ON {self._jobs_table} (status, created_at DESC)",
            f"CREATE INDEX IF NOT EXISTS {self._jobs_table}_submitter_status_idx "
            f"ON {self._jobs_table} (submitted_by, status)",
            f"""
            CREATE TABLE IF NOT EXISTS {self._violations_table} (
                violation_id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                date TEXT NOT NULL,
                created_by TEXT NOT NULL,
                updated_by TEXT NOT NULL,
                payload JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {self._cache_table} (
                cache_key TEXT PRIMARY KEY,
                search_terms JSONB NOT NULL,
                results JSONB NOT NULL,
                source TEXT NOT NULL DEFAULT 'geocoding_api',
                api_calls_used INTEGER NOT NULL DEFAULT 1,
                hit_count INTEGER NOT NULL DEFAULT 1,
                last_used TIMESTAMPTZ NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            )
            """,
        ]

    def apply(self) -> list[str]:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for statement in self.statements():
                    cur.execute(statement)
            conn.commit()
        return [self._jobs_table, self._violations_table, self._cache_table]
