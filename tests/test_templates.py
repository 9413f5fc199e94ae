"""Tests for report templates."""

import pytest

from report_job_orchestrator.core.exceptions import ConflictError, TemplateNotFoundError, ValidationError
from report_job_orchestrator.models.job import Visibility

from conftest import USER_ID, schedule_request, template_request

OTHER_USER = "0123456789abcdef01234567"


@pytest.mark.asyncio
async def test_create_and_get_template(orchestrator):
    template = await orchestrator.create_template(
        template_request(
            description="Scores grouped by course",
            visibility="organization",
            sharedWith={"roles": ["instructor"]},
        ),
        USER_ID,
    )

    fetched = await orchestrator.get_template(template.id)
    assert fetched.name == "Weekly scores"
    assert fetched.default_format == "csv"
    assert fetched.filename_template == "{reportType}-{date}"
    assert fetched.visibility == Visibility.ORGANIZATION
    assert fetched.shared_with.roles == ["instructor"]
    assert fetched.usage_count == 0
    assert fetched.is_active
    assert fetched.to_dict()["defaultOutput"] == {"format": "csv", "filenameTemplate": "{reportType}-{date}"}


@pytest.mark.asyncio
async def test_create_template_validates_against_report_type(orchestrator):
    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.create_template(template_request(reportType="unknown"), USER_ID)
    assert exc_info.value.error_code == "UNKNOWN_REPORT_TYPE"

    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.create_template(
            template_request(reportType="course-summary", parameters={}, defaultOutput={"format": "json"}),
            USER_ID,
        )
    assert exc_info.value.error_code == "UNSUPPORTED_FORMAT"

    with pytest.raises(ValidationError):
        await orchestrator.create_template(template_request(parameters={"groupBy": ["nope"]}), USER_ID)


@pytest.mark.asyncio
async def test_update_template(orchestrator):
    template = await orchestrator.create_template(template_request(), USER_ID)

    updated = await orchestrator.update_template(
        template.id, {"name": "Renamed", "parameters": {"groupBy": ["learnerId"]}}
    )
    assert updated.name == "Renamed"
    assert updated.parameters == {"groupBy": ["learnerId"]}

    deactivated = await orchestrator.update_template(template.id, {"isActive": False})
    assert deactivated.is_active is False
    assert deactivated.name == "Renamed"

    with pytest.raises(ValidationError):
        await orchestrator.update_template(template.id, {"parameters": {"groupBy": ["nope"]}})


@pytest.mark.asyncio
async def test_clone_template(orchestrator, clock):
    template = await orchestrator.create_template(template_request(), USER_ID)
    clock.advance(minutes=5)

    copy = await orchestrator.clone_template(template.id, OTHER_USER)
    assert copy.id != template.id
    assert copy.name == "Weekly scores (Copy)"
    assert copy.created_by == OTHER_USER
    assert copy.parameters == template.parameters
    assert copy.usage_count == 0
    assert copy.created_at == clock.now

    named = await orchestrator.clone_template(template.id, OTHER_USER, name="Monthly scores")
    assert named.name == "Monthly scores"


@pytest.mark.asyncio
async def test_delete_template_blocked_by_active_schedule(orchestrator):
    template = await orchestrator.create_template(template_request(), USER_ID)
    schedule = await orchestrator.create_schedule(schedule_request(template.id), USER_ID)

    with pytest.raises(ConflictError) as exc_info:
        await orchestrator.delete_template(template.id)
    assert exc_info.value.error_code == "TEMPLATE_IN_USE"

    await orchestrator.pause_schedule(schedule.id)
    await orchestrator.delete_template(template.id)
    with pytest.raises(TemplateNotFoundError):
        await orchestrator.get_template(template.id)


@pytest.mark.asyncio
async def test_list_templates_filters_and_searches(orchestrator, clock):
    weekly = await orchestrator.create_template(template_request(), USER_ID)
    clock.advance(seconds=1)
    summary = await orchestrator.create_template(
        template_request(name="Course roll-up", reportType="course-summary", parameters={},
                         description="All courses, weekly"),
        USER_ID,
    )

    by_type = await orchestrator.list_templates({"reportType": "course-summary"})
    assert [item.id for item in by_type.items] == [summary.id]

    search = await orchestrator.list_templates({"search": "WEEKLY"})
    assert [item.id for item in search.items] == [summary.id, weekly.id]

    paged = await orchestrator.list_templates({"limit": 1, "page": 2})
    assert paged.total == 2
    assert [item.id for item in paged.items] == [weekly.id]


def test_template_sharing_rules():
    from report_job_orchestrator.models.template import ReportTemplate, SharedWith

    template = ReportTemplate(
        name="t", report_type="learner-activity", created_by=USER_ID,
        shared_with=SharedWith(users=[OTHER_USER], departments=["d1"], roles=["admin"]),
    )
    assert template.is_shared_with(USER_ID)
    assert template.is_shared_with(OTHER_USER)
    assert template.is_shared_with("someone", department_ids=["d1"])
    assert template.is_shared_with("someone", roles=["admin"])
    assert not template.is_shared_with("someone", department_ids=["d2"], roles=["viewer"])

    template.visibility = Visibility.ORGANIZATION
    assert template.is_shared_with("someone")
