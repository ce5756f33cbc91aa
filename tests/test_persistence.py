from __future__ import annotations

import pytest

from conftest import make_candidate
from report_intake.errors import ViolationRejectedError
from report_intake.persistence import attribute_source, persist_candidate
from report_intake.repositories import PostgresViolationsRepository


def test_attribution_appends_source_name_and_sets_url():
    candidate = make_candidate(source={"en": "Local activists", "ar": "ناشطون"})
    record = attribute_source(candidate, {"name": "SNHR", "url": "https://snhr.org/r/1"})

    assert record["source"] == {"en": "Local activists. SNHR", "ar": "ناشطون"}
    assert record["source_url"] == {"en": "https://snhr.org/r/1"}
    assert candidate["source"]["en"] == "Local activists"


def test_attribution_without_existing_source():
    record = attribute_source(make_candidate(), {"name": "SNHR"})
    assert record["source"] == {"en": "SNHR"}
    assert "source_url" not in record


def test_attribution_requires_source_name():
    candidate = make_candidate(source={"en": "Local activists"})
    assert attribute_source(candidate, {"name": "", "url": "https://snhr.org"}) == candidate
    assert attribute_source(candidate, None) == candidate


def test_persist_candidate_stamps_creator_and_coordinates(violations_repo):
    violation_id = persist_candidate(
        make_candidate(),
        coordinates=(37.161, 36.202),
        submitted_by="user_7",
        source_url={"name": "SNHR", "url": "https://snhr.org/r/1"},
        repository=violations_repo,
    )

    stored = violations_repo.get(violation_id=violation_id)
    assert violation_id.startswith("vio_")
    assert stored["created_by"] == "user_7"
    assert stored["updated_by"] == "user_7"
    assert stored["location"]["coordinates"] == [37.161, 36.202]
    assert stored["source"]["en"] == "SNHR"
    assert stored["source_url"]["en"] == "https://snhr.org/r/1"


def test_store_rejects_schema_breaking_record(violations_repo):
    with pytest.raises(ViolationRejectedError, match="Violation validation failed"):
        persist_candidate(
            make_candidate(certainty_level="unsure"),
            coordinates=(37.1, 36.2),
            submitted_by="user_7",
            source_url=None,
            repository=violations_repo,
        )
    assert violations_repo.list() == []


class _FakePsycopg:
    class IntegrityError(Exception):
        pass

    class DataError(Exception):
        pass


def test_postgres_violations_repository_inserts_payload(monkeypatch):
    monkeypatch.setattr("report_intake.repositories.violations._import_psycopg", lambda: _FakePsycopg)
    statements: list[tuple[str, tuple]] = []

    class FakeCursor:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def execute(self, query, params=None):
            statements.append((query, params))

    class FakeConnection:
        def cursor(self):
            return FakeCursor()

    class FakeRunner:
        def run_in_tx(self, *, fn):
            return fn(FakeConnection())

    repo = PostgresViolationsRepository(tx_runner=FakeRunner(), table_name="violations")
    record = make_candidate(created_by="user_7")
    record["location"]["coordinates"] = [37.1, 36.2]
    created = repo.create(violation=record)

    sql, params = statements[0]
    assert "INSERT INTO violations" in sql
    assert params[0] == created["violation_id"]
    assert params[1:5] == ("AIRSTRIKE", "2024-03-03", "user_7", "user_7")
    assert '"coordinates": [37.1, 36.2]' in params[5]


def test_postgres_violations_repository_maps_integrity_error(monkeypatch):
    monkeypatch.setattr("report_intake.repositories.violations._import_psycopg", lambda: _FakePsycopg)

    class FailingRunner:
        def run_in_tx(self, *, fn):
            raise _FakePsycopg.IntegrityError("duplicate key value violates unique constraint")

    repo = PostgresViolationsRepository(tx_runner=FailingRunner())
    record = make_candidate(created_by="user_7")
    record["location"]["coordinates"] = [37.1, 36.2]
    with pytest.raises(ViolationRejectedError, match="duplicate key"):
        repo.create(violation=record)
