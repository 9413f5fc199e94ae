"""Tests for schedule management and the schedule trigger."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from report_job_orchestrator.core.exceptions import (
    ConflictError,
    ScheduleNotFoundError,
    TemplateNotFoundError,
    ValidationError,
)
from report_job_orchestrator.models.job import JobPriority, JobStatus

from conftest import USER_ID, schedule_request, template_request


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def template(orchestrator):
    return await orchestrator.create_template(template_request(), USER_ID)


@pytest.mark.asyncio
async def test_create_schedule_computes_first_run(orchestrator, template):
    # Clock starts at 2024-03-01 12:00 UTC; Berlin is UTC+1 until March 31
    schedule = await orchestrator.create_schedule(
        schedule_request(
            template.id,
            schedule={"frequency": "daily", "timeOfDay": "09:00", "timezone": "Europe/Berlin"},
        ),
        USER_ID,
    )

    assert schedule.is_active
    assert schedule.next_run_at == utc(2024, 3, 2, 8, 0)
    assert schedule.last_run_at is None
    assert schedule.to_dict()["nextRunAt"] == "2024-03-02T08:00:00Z"


@pytest.mark.asyncio
async def test_create_schedule_validation(orchestrator, template):
    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.create_schedule(
            schedule_request(template.id, schedule={"frequency": "daily", "timezone": "Mars/Olympus"}),
            USER_ID,
        )
    assert exc_info.value.field == "schedule.timezone"

    with pytest.raises(ValidationError):
        await orchestrator.create_schedule(
            schedule_request(template.id, schedule={"frequency": "hourly"}), USER_ID
        )

    with pytest.raises(ValidationError):
        await orchestrator.create_schedule(
            schedule_request(template.id, schedule={"frequency": "daily", "timeOfDay": "25:00"}), USER_ID
        )

    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.create_schedule(
            schedule_request(template.id, parameterOverrides={"groupBy": ["secretField"]}), USER_ID
        )
    assert exc_info.value.field == "parameters.groupBy"

    with pytest.raises(TemplateNotFoundError):
        await orchestrator.create_schedule(schedule_request("c" * 24), USER_ID)


@pytest.mark.asyncio
async def test_tick_materializes_due_schedule_once(orchestrator, template, clock):
    schedule = await orchestrator.create_schedule(
        schedule_request(template.id, priority="high", parameterOverrides={"measures": ["max:score"]}),
        USER_ID,
    )
    assert schedule.next_run_at == utc(2024, 3, 2, 9, 0)

    assert await orchestrator.tick_schedules() == []

    clock.now = utc(2024, 3, 2, 9, 0)
    created = await orchestrator.tick_schedules()
    assert len(created) == 1
    job = created[0]
    assert job.status == JobStatus.QUEUED
    assert job.schedule_id == schedule.id
    assert job.template_id == template.id
    assert job.scheduled_for == utc(2024, 3, 2, 9, 0)
    assert job.priority == JobPriority.HIGH
    assert job.requested_by == USER_ID
    assert job.parameters.group_by == ["course"]
    assert job.parameters.measures == ["max:score"]
    assert job.output.filename == "learner-activity-2024-03-02"

    advanced = await orchestrator.get_schedule(schedule.id)
    assert advanced.next_run_at == utc(2024, 3, 3, 9, 0)
    assert advanced.last_run_at == clock.now

    assert await orchestrator.tick_schedules() == []
    assert (await orchestrator.get_template(template.id)).usage_count == 1

    assert await orchestrator.run_pending() == 1
    assert (await orchestrator.get_job(job.id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_concurrent_ticks_create_one_job_per_occurrence(orchestrator, template, clock):
    await orchestrator.create_schedule(schedule_request(template.id), USER_ID)
    clock.now = utc(2024, 3, 2, 9, 30)

    results = await asyncio.gather(orchestrator.tick_schedules(), orchestrator.tick_schedules())

    assert sum(len(jobs) for jobs in results) == 1
    page = await orchestrator.list_jobs()
    assert page.total == 1


@pytest.mark.asyncio
async def test_repeated_firing_of_same_occurrence_is_rejected(orchestrator, template, clock):
    schedule = await orchestrator.create_schedule(schedule_request(template.id), USER_ID)
    clock.now = utc(2024, 3, 2, 9, 0)
    stale_view = await orchestrator.get_schedule(schedule.id)

    assert len(await orchestrator.tick_schedules()) == 1
    # A replica still holding the old next_run_at fires the same occurrence
    assert await orchestrator.schedule_manager._fire(stale_view, clock.now) is None
    assert (await orchestrator.list_jobs()).total == 1
    assert (await orchestrator.get_schedule(schedule.id)).next_run_at == utc(2024, 3, 3, 9, 0)


@pytest.mark.asyncio
async def test_late_tick_fires_one_occurrence_per_tick(orchestrator, template, clock):
    schedule = await orchestrator.create_schedule(schedule_request(template.id), USER_ID)
    clock.now = utc(2024, 3, 5, 12, 0)

    first = await orchestrator.tick_schedules()
    assert [job.scheduled_for for job in first] == [utc(2024, 3, 2, 9, 0)]
    assert (await orchestrator.get_schedule(schedule.id)).next_run_at == utc(2024, 3, 3, 9, 0)


@pytest.mark.asyncio
async def test_once_schedule_deactivates_after_firing(orchestrator, template, clock):
    schedule = await orchestrator.create_schedule(
        schedule_request(template.id, schedule={"frequency": "once", "timeOfDay": "18:00"}), USER_ID
    )
    assert schedule.next_run_at == utc(2024, 3, 1, 18, 0)

    clock.now = utc(2024, 3, 1, 18, 0)
    assert len(await orchestrator.tick_schedules()) == 1

    done = await orchestrator.get_schedule(schedule.id)
    assert not done.is_active
    assert done.next_run_at is None
    assert done.last_run_at == clock.now

    with pytest.raises(ConflictError):
        await orchestrator.resume_schedule(schedule.id)


@pytest.mark.asyncio
async def test_pause_freezes_and_resume_skips_missed_runs(orchestrator, template, clock):
    schedule = await orchestrator.create_schedule(schedule_request(template.id), USER_ID)

    paused = await orchestrator.pause_schedule(schedule.id, reason="holiday")
    assert not paused.is_active
    assert paused.is_paused
    assert paused.pause_reason == "holiday"
    assert paused.next_run_at == utc(2024, 3, 2, 9, 0)

    clock.now = utc(2024, 3, 6, 12, 0)
    assert await orchestrator.tick_schedules() == []

    resumed = await orchestrator.resume_schedule(schedule.id)
    assert resumed.is_active
    assert resumed.paused_at is None
    assert resumed.pause_reason is None
    assert resumed.next_run_at == utc(2024, 3, 7, 9, 0)

    assert await orchestrator.tick_schedules() == []
    assert (await orchestrator.list_jobs()).total == 0


@pytest.mark.asyncio
async def test_pause_and_resume_reject_wrong_state(orchestrator, template):
    schedule = await orchestrator.create_schedule(schedule_request(template.id), USER_ID)

    with pytest.raises(ConflictError) as exc_info:
        await orchestrator.resume_schedule(schedule.id)
    assert exc_info.value.error_code == "INVALID_SCHEDULE_STATE"

    await orchestrator.pause_schedule(schedule.id)
    with pytest.raises(ConflictError):
        await orchestrator.pause_schedule(schedule.id)


@pytest.mark.asyncio
async def test_update_schedule_recomputes_next_run(orchestrator, template, clock):
    schedule = await orchestrator.create_schedule(schedule_request(template.id), USER_ID)

    renamed = await orchestrator.update_schedule(schedule.id, {"name": "Renamed"})
    assert renamed.name == "Renamed"
    assert renamed.next_run_at == schedule.next_run_at

    moved = await orchestrator.update_schedule(
        schedule.id, {"schedule": {"frequency": "weekly", "timeOfDay": "15:30", "timezone": "UTC"}}
    )
    assert moved.frequency.value == "weekly"
    assert moved.next_run_at == utc(2024, 3, 1, 15, 30)

    with pytest.raises(ValidationError):
        await orchestrator.update_schedule(schedule.id, {"output": {"format": "pdf"}})


@pytest.mark.asyncio
async def test_tick_skips_occurrence_when_template_is_gone(orchestrator, template, clock):
    schedule = await orchestrator.create_schedule(schedule_request(template.id), USER_ID)
    await orchestrator.pause_schedule(schedule.id)
    await orchestrator.delete_template(template.id)
    await orchestrator.resume_schedule(schedule.id)

    clock.now = utc(2024, 3, 2, 9, 0)
    assert await orchestrator.tick_schedules() == []
    assert (await orchestrator.get_schedule(schedule.id)).next_run_at == utc(2024, 3, 3, 9, 0)


@pytest.mark.asyncio
async def test_list_and_get_schedules(orchestrator, template, clock):
    first = await orchestrator.create_schedule(schedule_request(template.id), USER_ID)
    clock.advance(seconds=1)
    second = await orchestrator.create_schedule(schedule_request(template.id, name="Second"), USER_ID)
    await orchestrator.pause_schedule(first.id)

    active = await orchestrator.list_schedules({"isActive": True})
    assert [item.id for item in active.items] == [second.id]

    everything = await orchestrator.list_schedules({"templateId": template.id})
    assert [item.id for item in everything.items] == [second.id, first.id]

    with pytest.raises(ScheduleNotFoundError):
        await orchestrator.get_schedule("d" * 24)


@pytest.mark.asyncio
async def test_schedule_trigger_loop_fires_when_started(orchestrator, template, clock):
    orchestrator.schedule_manager.config.tick_interval = 0.01
    await orchestrator.create_schedule(schedule_request(template.id), USER_ID)
    clock.now = utc(2024, 3, 2, 9, 0) + timedelta(minutes=1)

    await orchestrator.schedule_manager.start()
    try:
        for _ in range(100):
            if (await orchestrator.list_jobs()).total:
                break
            await asyncio.sleep(0.01)
    finally:
        await orchestrator.schedule_manager.stop()

    assert (await orchestrator.list_jobs()).total == 1


@pytest.mark.asyncio
async def test_monthly_schedule_does_not_drift_after_short_month(orchestrator, template, clock):
    clock.now = utc(2024, 1, 30, 12, 0)
    schedule = await orchestrator.create_schedule(
        schedule_request(template.id, schedule={"frequency": "monthly", "timeOfDay": "09:00", "timezone": "UTC"}),
        USER_ID,
    )
    assert schedule.next_run_at == utc(2024, 1, 31, 9, 0)
    assert schedule.anchor_day == 31

    clock.now = utc(2024, 1, 31, 9, 0)
    assert len(await orchestrator.tick_schedules()) == 1
    assert (await orchestrator.get_schedule(schedule.id)).next_run_at == utc(2024, 2, 29, 9, 0)

    clock.now = utc(2024, 2, 29, 9, 0)
    assert len(await orchestrator.tick_schedules()) == 1
    assert (await orchestrator.get_schedule(schedule.id)).next_run_at == utc(2024, 3, 31, 9, 0)
