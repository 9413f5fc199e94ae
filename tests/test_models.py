"""Tests for job models, retry policy and the in-memory store."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from report_job_orchestrator.core.exceptions import (
    DatabaseError,
    DuplicateJobError,
    NonRetryableError,
    RetryableError,
    ValidationError,
)
from report_job_orchestrator.models.common import Page, isoformat, is_object_id, parse_datetime
from report_job_orchestrator.models.job import (
    JobError,
    JobOutput,
    JobPriority,
    JobStatus,
    ReportJob,
    StorageDescriptor,
    can_transition_to,
    get_valid_transitions,
)
from report_job_orchestrator.models.parameters import ReportParameters, merge_parameters
from report_job_orchestrator.services.fault_tolerance import RetryPolicy, error_code_for, is_retryable
from report_job_orchestrator.utils.database import InMemoryDatabaseManager

from conftest import START, USER_ID


def make_job(**overrides) -> ReportJob:
    fields = dict(report_type="learner-activity", name="Scores", requested_by=USER_ID,
                  created_at=START, updated_at=START)
    fields.update(overrides)
    return ReportJob(**fields)


def test_progress_never_moves_backwards():
    job = make_job()
    assert job.update_progress(40, "aggregating", records_processed=4, now=START)
    assert not job.update_progress(30, "rendering")
    assert job.progress.percentage == 40
    assert job.progress.current_step == "aggregating"

    assert job.update_progress(150, "done", total_records=10)
    assert job.progress.percentage == 100
    assert job.progress.to_dict() == {
        "percentage": 100.0, "currentStep": "done", "recordsProcessed": 4, "totalRecords": 10,
    }


def test_status_transitions():
    assert can_transition_to(JobStatus.QUEUED, JobStatus.RUNNING)
    assert can_transition_to(JobStatus.RUNNING, JobStatus.QUEUED)
    assert can_transition_to(JobStatus.FAILED, JobStatus.QUEUED)
    assert not can_transition_to(JobStatus.QUEUED, JobStatus.COMPLETED)
    assert get_valid_transitions(JobStatus.COMPLETED) == []
    assert get_valid_transitions(JobStatus.CANCELLED) == []


def test_failed_job_is_terminal_only_without_pending_retry():
    job = make_job(status=JobStatus.FAILED, error=JobError(code="IO_ERROR", message="disk"))
    assert job.is_terminal()
    assert not job.retry_pending

    job.error.next_retry_at = START + timedelta(minutes=1)
    assert job.retry_pending
    assert not job.is_terminal()


def test_dispatch_key_orders_priority_then_age():
    old_low = make_job(priority=JobPriority.LOW)
    new_urgent = make_job(priority=JobPriority.URGENT, created_at=START + timedelta(hours=1))
    old_normal = make_job()
    new_normal = make_job(created_at=START + timedelta(seconds=1))

    ordered = sorted([old_low, new_normal, new_urgent, old_normal], key=lambda j: j.dispatch_key())
    assert ordered == [new_urgent, old_normal, new_normal, old_low]
    assert [p.rank for p in JobPriority] == [0, 1, 2, 3]


def test_deferred_job_is_not_eligible_until_due():
    job = make_job(scheduled_for=START + timedelta(hours=1))
    assert not job.is_eligible(START)
    assert job.is_eligible(START + timedelta(hours=1))


def test_retry_policy_backoff():
    policy = RetryPolicy(base_delay=5, multiplier=2, max_delay=300)
    assert [policy.delay_for(n) for n in range(3)] == [5, 10, 20]
    assert policy.delay_for(10) == 300

    jittered = RetryPolicy(base_delay=10, jitter=True)
    assert 5 <= jittered.delay_for(0) <= 10


@pytest.mark.parametrize("error, retryable, code", [
    (OSError("disk full"), True, "IO_ERROR"),
    (ConnectionError("reset"), True, "CONNECTION_ERROR"),
    (asyncio.TimeoutError(), True, "TIMEOUT"),
    (RetryableError("try later"), True, "TRANSIENT_ERROR"),
    (NonRetryableError("bad data"), False, "PERMANENT_ERROR"),
    (ValidationError("groupBy", "not allowed"), False, "VALIDATION_ERROR"),
    (KeyError("learnerId"), False, "INTERNAL_ERROR"),
])
def test_failure_classification(error, retryable, code):
    assert is_retryable(error) is retryable
    assert error_code_for(error) == code


def test_merge_parameters():
    base = {"groupBy": ["course"], "filters": {"courseIds": ["a" * 24], "eventTypes": ["login"]}}
    override = {"filters": {"eventTypes": ["quiz"]}, "measures": ["count"], "groupBy": None}

    assert merge_parameters(base, None, override) == {
        "groupBy": ["course"],
        "filters": {"courseIds": ["a" * 24], "eventTypes": ["quiz"]},
        "measures": ["count"],
    }
    assert base["filters"]["eventTypes"] == ["login"]


def test_parameters_validate_ids_and_date_order():
    with pytest.raises(ValueError):
        ReportParameters.model_validate({"filters": {"courseIds": ["not-an-id"]}})
    with pytest.raises(ValueError):
        ReportParameters.model_validate(
            {"dateRange": {"startDate": "2024-03-02T00:00:00Z", "endDate": "2024-03-01T00:00:00Z"}}
        )
    params = ReportParameters.model_validate({"groupBy": ["course"], "includeInactive": False})
    assert params.to_dict() == {"groupBy": ["course"], "includeInactive": False}


def test_job_record_round_trip():
    expires = START + timedelta(days=7)
    job = make_job(
        parameters=ReportParameters(group_by=["course"], measures=["count"]),
        output=JobOutput(format="csv", filename="scores.csv",
                         storage=StorageDescriptor(provider="local", path="/tmp/x.csv", expires_at=expires)),
        status=JobStatus.FAILED,
        priority=JobPriority.HIGH,
        error=JobError(code="IO_ERROR", message="disk", retry_count=2, retryable=True),
        completed_at=START + timedelta(minutes=3),
    )

    record = job.to_record()
    assert record["priority_rank"] == 2
    restored = ReportJob.from_record(record)

    assert restored.to_dict() == job.to_dict()
    assert restored.expires_at == expires
    assert restored.retry_count == 2


def test_timestamps_and_ids():
    assert parse_datetime("2024-03-01T09:00:00Z") == datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
    assert parse_datetime("2024-03-01T10:00:00+01:00") == datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
    assert parse_datetime(datetime(2024, 3, 1, 9, 0)) == datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
    assert parse_datetime("") is None
    assert isoformat(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)) == "2024-03-01T09:00:00Z"

    assert is_object_id(USER_ID)
    assert not is_object_id("64b7f0c2")
    assert not is_object_id(None)


def test_page_pagination():
    assert Page(items=[], page=2, limit=20, total=41).pagination() == {
        "page": 2, "limit": 20, "total": 41, "totalPages": 3,
    }
    assert Page(items=[], page=1, limit=20, total=0).total_pages == 1


@pytest.mark.asyncio
async def test_in_memory_compare_and_set():
    db = InMemoryDatabaseManager()
    job = await db.insert_job(make_job())

    claimed = await db.compare_and_set_job(job.id, JobStatus.QUEUED, {"status": JobStatus.RUNNING, "worker_id": "w1"})
    assert claimed.status == JobStatus.RUNNING
    assert await db.compare_and_set_job(job.id, JobStatus.QUEUED, {"status": JobStatus.RUNNING}) is None
    assert await db.compare_and_set_job(
        job.id, JobStatus.RUNNING, {"status": JobStatus.COMPLETED}, worker_id="w2"
    ) is None

    with pytest.raises(DatabaseError):
        await db.compare_and_set_job(job.id, JobStatus.RUNNING, {"no_such_column": 1})

    with pytest.raises(DatabaseError):
        await db.insert_job(job)


@pytest.mark.asyncio
async def test_in_memory_store_rejects_duplicate_occurrence():
    db = InMemoryDatabaseManager()
    occurrence = START + timedelta(days=1)
    await db.insert_job(make_job(schedule_id="e" * 24, scheduled_for=occurrence))

    with pytest.raises(DuplicateJobError):
        await db.insert_job(make_job(schedule_id="e" * 24, scheduled_for=occurrence))
