from __future__ import annotations

from datetime import UTC, datetime

import pytest

from report_intake.errors import JobNotFoundError
from report_intake.repositories.jobs import (
    InMemoryJobsRepository,
    PostgresJobsRepository,
    apply_field_updates,
    split_field_path,
)


def _job_dict(job_id: str = "job_repo_1", *, created_at: str = "2024-03-03T10:00:00+00:00") -> dict:
    return {
        "job_id": job_id,
        "report_text": "report body",
        "source_url": {"name": "SNHR", "url": "https://snhr.org/report"},
        "submitted_by": "user_1",
        "status": "queued",
        "progress": 0,
        "estimated_processing_time": "1 minutes",
        "error": None,
        "results": {
            "parsed_violations_count": 0,
            "created_violations_count": 0,
            "violations": [],
            "failed_violations": [],
        },
        "processing_metadata": {"attempts": 0},
        "created_at": created_at,
        "updated_at": created_at,
    }


class FakeCursor:
    def __init__(self, statements: list, rows: list):
        self._statements = statements
        self._rows = rows

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        self._statements.append((query, params))

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        rows = list(self._rows)
        self._rows.clear()
        return rows


class FakeRunner:
    def __init__(self, rows: list | None = None):
        self.statements: list[tuple[str, tuple | None]] = []
        self.rows = rows or []
        self.calls = 0

    def run_in_tx(self, *, fn):
        self.calls += 1
        runner = self

        class FakeConnection:
            def cursor(self):
                return FakeCursor(runner.statements, runner.rows)

        return fn(FakeConnection())


def _row(job: dict) -> tuple:
    return (
        job["job_id"],
        job["report_text"],
        job["source_url"],
        job["submitted_by"],
        job["status"],
        job["progress"],
        job["estimated_processing_time"],
        job["error"],
        job["results"],
        job["processing_metadata"],
        datetime(2024, 3, 3, 10, 0, tzinfo=UTC),
        datetime(2024, 3, 3, 10, 5, tzinfo=UTC),
    )


def test_split_field_path_allows_one_level_into_documents():
    assert split_field_path("status") == ("status", None)
    assert split_field_path("results.violations") == ("results", "violations")
    with pytest.raises(ValueError, match="unsupported job field path"):
        split_field_path("results.violations.0")
    with pytest.raises(ValueError, match="not a document"):
        split_field_path("status.value")
    with pytest.raises(ValueError, match="unsupported job field"):
        split_field_path("report_text")


def test_apply_field_updates_keeps_sibling_result_fields():
    job = _job_dict()
    job["results"]["violations"] = ["vio_1"]
    apply_field_updates(job, {"results.parsed_violations_count": 3, "progress": 70})

    assert job["results"]["parsed_violations_count"] == 3
    assert job["results"]["violations"] == ["vio_1"]
    assert job["progress"] == 70


def test_inmemory_repository_update_is_partial():
    repo = InMemoryJobsRepository()
    repo.create(job=_job_dict())
    repo.update(job_id="job_repo_1", fields={"results.failed_violations": [{"violation": {}, "error": "x"}]})
    updated = repo.update(job_id="job_repo_1", fields={"results.created_violations_count": 2})

    assert updated["results"]["failed_violations"] == [{"violation": {}, "error": "x"}]
    assert updated["results"]["created_violations_count"] == 2
    assert updated["source_url"]["name"] == "SNHR"


def test_inmemory_repository_returns_copies():
    repo = InMemoryJobsRepository()
    repo.create(job=_job_dict())
    fetched = repo.get(job_id="job_repo_1")
    fetched["results"]["violations"].append("vio_tampered")

    assert repo.get(job_id="job_repo_1")["results"]["violations"] == []


def test_inmemory_repository_update_missing_job_raises():
    repo = InMemoryJobsRepository()
    with pytest.raises(JobNotFoundError) as excinfo:
        repo.update(job_id="job_missing", fields={"progress": 10})
    assert excinfo.value.message == "Job with ID job_missing not found in database"


def test_inmemory_repository_lists_newest_first_with_cursor():
    repo = InMemoryJobsRepository()
    repo.create(job=_job_dict("job_old", created_at="2024-03-01T00:00:00+00:00"))
    repo.create(job=_job_dict("job_mid", created_at="2024-03-02T00:00:00+00:00"))
    repo.create(job={**_job_dict("job_new", created_at="2024-03-03T00:00:00+00:00"), "status": "completed"})

    page = repo.list(limit=2)
    assert [j["job_id"] for j in page["items"]] == ["job_new", "job_mid"]
    assert page["total"] == 3
    assert page["next_cursor"] == "2"

    rest = repo.list(limit=2, cursor=page["next_cursor"])
    assert [j["job_id"] for j in rest["items"]] == ["job_old"]
    assert rest["next_cursor"] is None

    completed = repo.list(status="completed")
    assert [j["job_id"] for j in completed["items"]] == ["job_new"]


def test_postgres_jobs_repository_rejects_invalid_table_name():
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresJobsRepository(tx_runner=FakeRunner(), table_name="jobs;drop table jobs")


def test_postgres_jobs_repository_create_and_get_with_fake_runner():
    job = _job_dict()
    runner = FakeRunner(rows=[_row(job)])
    repo = PostgresJobsRepository(tx_runner=runner, table_name="report_parsing_jobs")

    repo.create(job=job)
    insert_sql, insert_params = runner.statements[0]
    assert "INSERT INTO report_parsing_jobs" in insert_sql
    assert insert_params[0] == "job_repo_1"
    assert '"name": "SNHR"' in insert_params[2]

    fetched = repo.get(job_id="job_repo_1")
    assert fetched is not None
    assert fetched["status"] == "queued"
    assert fetched["created_at"] == "2024-03-03T10:00:00+00:00"


def test_postgres_jobs_repository_update_uses_jsonb_set_for_nested_keys():
    job = _job_dict()
    runner = FakeRunner(rows=[_row({**job, "status": "creating_violations", "progress": 70})])
    repo = PostgresJobsRepository(tx_runner=runner)

    updated = repo.update(
        job_id="job_repo_1",
        fields={
            "status": "creating_violations",
            "progress": 70,
            "results.parsed_violations_count": 3,
            "results.failed_violations": [],
        },
    )
    sql, params = runner.statements[0]
    assert "status = %s" in sql
    assert "progress = %s" in sql
    assert sql.count("jsonb_set(") == 2
    assert "RETURNING" in sql
    assert params[:2] == ("creating_violations", 70)
    assert params[2:6] == (["parsed_violations_count"], "3", ["failed_violations"], "[]")
    assert params[-1] == "job_repo_1"
    assert updated["progress"] == 70


def test_postgres_jobs_repository_update_missing_job_raises():
    repo = PostgresJobsRepository(tx_runner=FakeRunner(rows=[]))
    with pytest.raises(JobNotFoundError):
        repo.update(job_id="job_missing", fields={"progress": 10})


def test_postgres_jobs_repository_list_pages_by_offset():
    job = _job_dict()
    # count row is consumed by fetchone, the page rows by fetchall
    runner = FakeRunner(rows=[(3,), _row(job)])
    repo = PostgresJobsRepository(tx_runner=runner)

    page = repo.list(status="queued", limit=1)
    count_sql, count_params = runner.statements[0]
    page_sql, page_params = runner.statements[1]
    assert "COUNT(*)" in count_sql
    assert count_params == ("queued",)
    assert "ORDER BY created_at DESC" in page_sql
    assert page_params == ("queued", 1, 0)
    assert page["total"] == 3
    assert page["next_cursor"] == "1"
    assert [j["job_id"] for j in page["items"]] == ["job_repo_1"]
