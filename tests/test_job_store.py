from __future__ import annotations

import pytest

from report_intake.errors import JobNotFoundError, JobStateError
from report_intake.job_store import (
    ALLOWED_TRANSITIONS,
    JobStore,
    create_job_store_from_env,
    describe_job,
)
from report_intake.repositories import InMemoryJobsRepository, PostgresJobsRepository


def _create(store: JobStore, **overrides) -> dict:
    kwargs = {
        "report_text": "A long enough report about an incident in Idlib countryside.",
        "source_url": {"name": "SNHR"},
        "submitted_by": "user_1",
        "estimated_processing_time": "1 minutes",
    }
    kwargs.update(overrides)
    return store.create_job(**kwargs)


def test_create_job_starts_queued_with_empty_results(memory_store):
    job = _create(memory_store)
    assert job["job_id"].startswith("job_")
    assert job["status"] == "queued"
    assert job["progress"] == 0
    assert job["results"] == {
        "parsed_violations_count": 0,
        "created_violations_count": 0,
        "violations": [],
        "failed_violations": [],
    }
    assert job["processing_metadata"]["attempts"] == 0
    assert memory_store.get_job(job["job_id"]) == job


def test_require_job_raises_for_unknown_id(memory_store):
    with pytest.raises(JobNotFoundError):
        memory_store.require_job("job_unknown")


def test_full_lifecycle_follows_allowed_transitions(memory_store):
    job_id = _create(memory_store)["job_id"]
    memory_store.update_job(job_id, {"status": "processing", "progress": 10})
    memory_store.update_job(job_id, {"progress": 40})
    memory_store.update_job(job_id, {"status": "validation", "progress": 50})
    memory_store.update_job(job_id, {"status": "creating_violations", "progress": 70})
    done = memory_store.update_job(job_id, {"status": "completed", "progress": 100})
    assert done["status"] == "completed"
    assert done["progress"] == 100


def test_skipping_a_stage_is_rejected(memory_store):
    job_id = _create(memory_store)["job_id"]
    with pytest.raises(JobStateError, match="queued -> completed"):
        memory_store.update_job(job_id, {"status": "completed"})


def test_completed_is_terminal(memory_store):
    assert ALLOWED_TRANSITIONS["completed"] == set()
    job_id = _create(memory_store)["job_id"]
    for status in ("processing", "validation", "creating_violations", "completed"):
        memory_store.update_job(job_id, {"status": status})
    with pytest.raises(JobStateError):
        memory_store.update_job(job_id, {"status": "processing"})


def test_failed_is_reachable_from_every_non_terminal_state():
    for status, targets in ALLOWED_TRANSITIONS.items():
        if status in {"completed", "failed"}:
            continue
        assert "failed" in targets


def test_progress_cannot_decrease_within_an_attempt(memory_store):
    job_id = _create(memory_store)["job_id"]
    memory_store.update_job(job_id, {"status": "processing", "progress": 40})
    with pytest.raises(JobStateError, match="must not decrease"):
        memory_store.update_job(job_id, {"progress": 10})


def test_new_attempt_may_restart_progress(memory_store):
    job_id = _create(memory_store)["job_id"]
    memory_store.update_job(job_id, {"status": "processing", "progress": 40})
    memory_store.update_job(job_id, {"status": "failed", "error": "boom"})
    restarted = memory_store.update_job(job_id, {"status": "processing", "progress": 10})
    assert restarted["progress"] == 10


def test_progress_out_of_range_is_rejected(memory_store):
    job_id = _create(memory_store)["job_id"]
    with pytest.raises(ValueError, match="0..100"):
        memory_store.update_job(job_id, {"progress": 101})


def test_update_touches_updated_at(memory_store):
    job = _create(memory_store)
    updated = memory_store.update_job(job["job_id"], {"progress": 5})
    assert updated["updated_at"] >= job["updated_at"]


def test_describe_job_omits_report_text(memory_store):
    job = _create(memory_store)
    view = describe_job(job)
    assert "report_text" not in view
    assert view["job_id"] == job["job_id"]
    assert view["submitted_at"] == job["created_at"]
    assert view["source"] == {"name": "SNHR"}
    assert view["results"]["violations"] == []


def test_list_jobs_filters_by_submitter(memory_store):
    _create(memory_store, submitted_by="user_a")
    _create(memory_store, submitted_by="user_b")
    page = memory_store.list_jobs(submitted_by="user_a")
    assert page["total"] == 1
    assert page["items"][0]["submitted_by"] == "user_a"


def test_store_factory_defaults_to_memory():
    store = create_job_store_from_env({})
    assert isinstance(store.repository, InMemoryJobsRepository)


def test_store_factory_builds_postgres_repository():
    store = create_job_store_from_env(
        {"INTAKE_STORE_BACKEND": "postgres", "POSTGRES_DSN": "postgresql://localhost/intake"}
    )
    assert isinstance(store.repository, PostgresJobsRepository)


def test_store_factory_requires_dsn_for_postgres():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        create_job_store_from_env({"INTAKE_STORE_BACKEND": "postgres"})


def test_store_factory_refuses_memory_when_true_stack_required():
    with pytest.raises(RuntimeError, match="must be postgres"):
        create_job_store_from_env({"INTAKE_REQUIRE_TRUESTACK": "true"})
