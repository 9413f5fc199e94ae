"""Tests for report job submission, lookup, listing and cancellation."""

import pytest

from report_job_orchestrator.core.exceptions import (
    ConflictError,
    DepartmentNotFoundError,
    JobNotFoundError,
    TemplateNotFoundError,
    ValidationError,
)
from report_job_orchestrator.models.job import JobStatus, JobPriority, Visibility

from conftest import DEPARTMENT_ID, USER_ID, job_request, submit, template_request


@pytest.mark.asyncio
async def test_submit_returns_receipt_and_stores_queued_job(orchestrator):
    receipt = await orchestrator.submit_job(job_request(), USER_ID)

    assert receipt["status"] == "queued"
    assert receipt["queuePosition"] == 0
    assert receipt["estimatedWaitTime"] is None

    job = await orchestrator.get_job(receipt["id"])
    assert job.status == JobStatus.QUEUED
    assert job.priority == JobPriority.NORMAL
    assert job.visibility == Visibility.PRIVATE
    assert job.requested_by == USER_ID
    assert job.parameters.group_by == ["course"]
    assert job.progress.percentage == 0
    assert job.error is None


@pytest.mark.asyncio
async def test_queue_position_counts_jobs_dispatched_first(orchestrator, clock):
    positions = []
    for _ in range(3):
        clock.advance(seconds=1)
        receipt = await orchestrator.submit_job(job_request(), USER_ID)
        positions.append(receipt["queuePosition"])
    assert positions == [0, 1, 2]

    clock.advance(seconds=1)
    urgent = await orchestrator.submit_job(job_request(priority="urgent"), USER_ID)
    assert urgent["queuePosition"] == 0


@pytest.mark.asyncio
async def test_estimated_wait_uses_completed_job_durations(orchestrator, clock):
    await submit(orchestrator)
    await orchestrator.run_pending()

    clock.advance(seconds=1)
    await submit(orchestrator)
    clock.advance(seconds=1)
    receipt = await orchestrator.submit_job(job_request(), USER_ID)

    assert receipt["queuePosition"] == 1
    # The fake clock does not move while the job runs
    assert receipt["estimatedWaitTime"] == 0


@pytest.mark.asyncio
async def test_submit_rejects_unknown_report_type(orchestrator):
    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.submit_job(job_request(reportType="attendance"), USER_ID)
    assert exc_info.value.error_code == "UNKNOWN_REPORT_TYPE"
    assert exc_info.value.field == "reportType"


@pytest.mark.asyncio
async def test_submit_rejects_unsupported_format(orchestrator):
    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.submit_job(
            job_request(reportType="course-summary", parameters={}, output={"format": "json"}), USER_ID
        )
    assert exc_info.value.error_code == "UNSUPPORTED_FORMAT"


@pytest.mark.asyncio
async def test_submit_rejects_missing_name(orchestrator):
    request = job_request()
    del request["name"]
    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.submit_job(request, USER_ID)
    assert exc_info.value.field == "name"


@pytest.mark.asyncio
@pytest.mark.parametrize("parameters, field_name", [
    ({"groupBy": ["secretField"]}, "parameters.groupBy"),
    ({"measures": ["median:score"]}, "parameters.measures"),
    ({"dateRange": {"startDate": "2024-02-01T00:00:00Z", "endDate": "2024-01-01T00:00:00Z"}}, "parameters.dateRange"),
    ({"filters": {"courseIds": ["not-an-id"]}}, "parameters.filters.courseIds.0"),
    ({"unexpected": True}, "parameters.unexpected"),
])
async def test_submit_rejects_invalid_parameters(orchestrator, parameters, field_name):
    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.submit_job(job_request(parameters=parameters), USER_ID)
    assert exc_info.value.field == field_name


@pytest.mark.asyncio
async def test_submit_checks_department(orchestrator):
    job = await submit(orchestrator, departmentId=DEPARTMENT_ID)
    assert job.department_id == DEPARTMENT_ID

    with pytest.raises(DepartmentNotFoundError):
        await orchestrator.submit_job(job_request(departmentId="0" * 24), USER_ID)


@pytest.mark.asyncio
async def test_submit_merges_template_defaults(orchestrator, clock):
    template = await orchestrator.create_template(
        template_request(visibility="department"), USER_ID
    )

    job = await submit(
        orchestrator,
        templateId=template.id,
        parameters={"measures": ["sum:score"]},
    )

    assert job.template_id == template.id
    assert job.parameters.group_by == ["course"]
    assert job.parameters.measures == ["sum:score"]
    assert job.visibility == Visibility.DEPARTMENT
    assert job.output.filename == f"learner-activity-{clock.now:%Y-%m-%d}"

    stored = await orchestrator.get_template(template.id)
    assert stored.usage_count == 1


@pytest.mark.asyncio
async def test_submit_rejects_missing_or_mismatched_template(orchestrator):
    with pytest.raises(TemplateNotFoundError):
        await orchestrator.submit_job(job_request(templateId="a" * 24), USER_ID)

    summary_template = await orchestrator.create_template(
        template_request(reportType="course-summary", parameters={}), USER_ID
    )
    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.submit_job(job_request(templateId=summary_template.id), USER_ID)
    assert exc_info.value.field == "templateId"


@pytest.mark.asyncio
async def test_get_job_validates_identifier(orchestrator):
    with pytest.raises(ValidationError):
        await orchestrator.get_job("not-an-id")
    with pytest.raises(JobNotFoundError):
        await orchestrator.get_job("b" * 24)


@pytest.mark.asyncio
async def test_list_jobs_paginates_and_sorts(orchestrator, clock):
    ids = []
    for _ in range(5):
        clock.advance(minutes=1)
        ids.append((await submit(orchestrator)).id)

    page = await orchestrator.list_jobs({"page": 1, "limit": 2})
    assert page.total == 5
    assert page.pagination() == {"page": 1, "limit": 2, "total": 5, "totalPages": 3}
    assert [job.id for job in page.items] == [ids[4], ids[3]]

    last = await orchestrator.list_jobs({"page": 3, "limit": 2, "sortOrder": "asc"})
    assert [job.id for job in last.items] == [ids[4]]


@pytest.mark.asyncio
async def test_list_jobs_filters(orchestrator, clock):
    kept = await submit(orchestrator)
    cancelled = await submit(orchestrator)
    await orchestrator.cancel_job(cancelled.id)
    await submit(orchestrator, reportType="course-summary", parameters={})

    queued = await orchestrator.list_jobs({"status": "queued", "reportType": ["learner-activity"]})
    assert [job.id for job in queued.items] == [kept.id]

    by_status = await orchestrator.list_jobs({"status": ["cancelled"]})
    assert [job.id for job in by_status.items] == [cancelled.id]

    with pytest.raises(ValidationError):
        await orchestrator.list_jobs({"limit": 500})


@pytest.mark.asyncio
async def test_list_jobs_sorts_by_priority(orchestrator, clock):
    for priority in ("low", "urgent", "normal"):
        clock.advance(seconds=1)
        await submit(orchestrator, priority=priority)

    page = await orchestrator.list_jobs({"sortBy": "priority", "sortOrder": "desc"})
    assert [job.priority.value for job in page.items] == ["urgent", "normal", "low"]


@pytest.mark.asyncio
async def test_cancel_queued_job_is_immediate(orchestrator):
    job = await submit(orchestrator)

    cancelled = await orchestrator.cancel_job(job.id, reason="no longer needed")

    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.cancel_reason == "no longer needed"
    assert cancelled.cancelled_at is not None
    assert await orchestrator.run_pending() == 0


@pytest.mark.asyncio
async def test_cancel_running_job_sets_request(orchestrator):
    job = await submit(orchestrator)
    claimed = await orchestrator.queue_manager.claim_next()
    assert claimed.id == job.id

    with pytest.raises(ConflictError):
        await orchestrator.cancel_job(job.id, allow_running=False)

    requested = await orchestrator.cancel_job(job.id)
    assert requested.status == JobStatus.RUNNING
    assert requested.cancel_requested is True


@pytest.mark.asyncio
async def test_cancel_terminal_job_conflicts(orchestrator):
    job = await submit(orchestrator)
    await orchestrator.run_pending()

    with pytest.raises(ConflictError) as exc_info:
        await orchestrator.cancel_job(job.id)
    assert exc_info.value.error_code == "INVALID_JOB_STATE"


@pytest.mark.asyncio
async def test_prune_removes_old_terminal_jobs_only(orchestrator, clock):
    old = await submit(orchestrator)
    await orchestrator.cancel_job(old.id)
    waiting = await submit(orchestrator)

    clock.advance(days=10)
    assert await orchestrator.prune_jobs(7) == 1

    with pytest.raises(JobNotFoundError):
        await orchestrator.get_job(old.id)
    assert (await orchestrator.get_job(waiting.id)).status == JobStatus.QUEUED

    with pytest.raises(ValidationError):
        await orchestrator.prune_jobs(-1)
