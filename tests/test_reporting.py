"""Tests for aggregation, renderers, the report type registry and output storage."""

import json
import os
from datetime import datetime, timedelta, timezone

import pytest

from report_job_orchestrator.core.exceptions import (
    ConfigurationError,
    NonRetryableError,
    ReportExpiredError,
    ReportNotFoundError,
    ValidationError,
)
from report_job_orchestrator.models.job import JobStatus
from report_job_orchestrator.reporting.aggregation import Aggregator, parse_measure
from report_job_orchestrator.reporting.base import ReportTypeDefinition, StaticDepartmentDirectory
from report_job_orchestrator.reporting.registry import ReportTypeRegistry, load_object
from report_job_orchestrator.reporting.renderers import get_renderer

from conftest import ListDataSource, make_records, submit


ROWS = [
    {"course": "algebra", "learner": "a", "score": 70},
    {"course": "algebra", "learner": "b", "score": 90},
    {"course": "biology", "learner": "a", "score": 50},
    {"course": "biology", "learner": "a", "score": None},
]


def test_parse_measure():
    assert parse_measure("count").spec == "count"
    assert parse_measure("AVG:score").label == "avg_score"
    with pytest.raises(ValueError):
        parse_measure("sum")
    with pytest.raises(ValueError):
        parse_measure("median:score")


def test_aggregator_passthrough_without_grouping():
    aggregator = Aggregator()
    aggregator.add(ROWS[:2])
    aggregator.add(ROWS[2:])
    assert aggregator.passthrough
    assert aggregator.result() == ROWS
    assert aggregator.records_seen == 4


def test_aggregator_groups_and_measures():
    aggregator = Aggregator(
        ["course"], ["count", "sum:score", "avg:score", "min:score", "max:score", "distinct:learner"]
    )
    aggregator.add(ROWS)

    assert aggregator.result() == [
        {"course": "algebra", "count": 2, "sum_score": 160.0, "avg_score": 80.0,
         "min_score": 70, "max_score": 90, "distinct_learner": 2},
        {"course": "biology", "count": 2, "sum_score": 50.0, "avg_score": 50.0,
         "min_score": 50, "max_score": 50, "distinct_learner": 1},
    ]


def test_group_by_without_measures_counts_records():
    aggregator = Aggregator(["learner"])
    aggregator.add(ROWS)
    assert aggregator.result() == [{"learner": "a", "count": 3}, {"learner": "b", "count": 1}]


def test_sum_of_non_numeric_values_fails():
    aggregator = Aggregator(measures=["sum:score"])
    with pytest.raises(NonRetryableError) as exc_info:
        aggregator.add([{"score": "high"}])
    assert exc_info.value.error_code == "AGGREGATION_ERROR"


def test_csv_renderer_uses_union_of_columns():
    renderer = get_renderer("CSV")
    content = renderer.render(
        [{"a": 1, "when": datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)}, {"a": 2, "b": "x"}], {}
    )
    assert content.decode("utf-8") == "a,when,b\n1,2024-03-01T09:00:00Z,\n2,,x\n"
    assert get_renderer("csv").render([], {}) == b""


def test_json_renderer_wraps_rows_with_metadata():
    renderer = get_renderer("json")
    document = json.loads(renderer.render([{"n": 1}], {"jobId": "abc"}))
    assert document == {"metadata": {"jobId": "abc"}, "rowCount": 1, "rows": [{"n": 1}]}


def test_unknown_renderer():
    with pytest.raises(ValidationError):
        get_renderer("pdf")


def test_registry_rejects_formats_without_renderer():
    registry = ReportTypeRegistry()
    with pytest.raises(ConfigurationError):
        registry.register(ReportTypeDefinition(
            name="scan", data_source=ListDataSource([]), formats=frozenset({"pdf"})
        ))
    with pytest.raises(ValidationError):
        registry.get("scan")


def test_registry_lookup(registry):
    assert registry.names() == ["course-summary", "learner-activity"]
    assert "learner-activity" in registry
    assert len(registry) == 2
    assert registry.get("course-summary").supports_format("CSV")
    assert not registry.get("course-summary").supports_format("json")


def test_load_object():
    assert load_object("report_job_orchestrator.reporting.renderers:RENDERERS")["csv"].extension == "csv"
    with pytest.raises(ConfigurationError):
        load_object("report_job_orchestrator.reporting.renderers")
    with pytest.raises(ConfigurationError):
        load_object("report_job_orchestrator.no_such_module:thing")
    with pytest.raises(ConfigurationError):
        load_object("report_job_orchestrator.reporting.renderers:NOPE")


@pytest.mark.asyncio
async def test_static_department_directory():
    open_directory = StaticDepartmentDirectory()
    assert await open_directory.exists("a" * 24)
    assert not await open_directory.exists("engineering")

    closed = StaticDepartmentDirectory(["a" * 24])
    assert await closed.exists("a" * 24)
    assert not await closed.exists("b" * 24)


@pytest.mark.asyncio
async def test_data_source_count_defaults_to_unknown():
    from report_job_orchestrator.reporting.base import ReportDataSource

    class Minimal(ReportDataSource):
        async def fetch(self, parameters, batch_size):
            yield []

    assert await Minimal().count(None) is None


@pytest.mark.asyncio
async def test_download_refused_for_unfinished_and_expired_jobs(orchestrator, clock):
    queued = await submit(orchestrator)
    with pytest.raises(ReportNotFoundError):
        await orchestrator.download_report(queued.id)

    await orchestrator.run_pending()
    done = await orchestrator.get_job(queued.id)

    just_before = done.expires_at - timedelta(seconds=1)
    assert (await orchestrator.download_report(done.id, now=just_before)).size > 0

    with pytest.raises(ReportExpiredError):
        await orchestrator.download_report(done.id, now=done.expires_at)

    clock.advance(hours=200)
    with pytest.raises(ReportExpiredError):
        await orchestrator.download_report(done.id)


@pytest.mark.asyncio
async def test_download_missing_artifact(orchestrator):
    job = await submit(orchestrator)
    await orchestrator.run_pending()
    done = await orchestrator.get_job(job.id)
    await orchestrator.storage.discard(done.output.storage)

    with pytest.raises(ReportNotFoundError):
        await orchestrator.download_report(job.id)


@pytest.mark.asyncio
async def test_purge_expired_removes_artifacts_but_keeps_jobs(orchestrator, clock):
    job = await submit(orchestrator)
    await orchestrator.run_pending()
    done = await orchestrator.get_job(job.id)

    assert await orchestrator.purge_expired() == 0

    assert await orchestrator.purge_expired(now=done.expires_at) == 1
    kept = await orchestrator.get_job(job.id)
    assert kept.status == JobStatus.COMPLETED
    assert not os.path.exists(kept.output.storage.path)


@pytest.mark.asyncio
async def test_completed_report_uses_batches_from_source(orchestrator, registry):
    source = registry.get("course-summary").data_source
    job = await submit(orchestrator, reportType="course-summary", parameters={})
    await orchestrator.run_pending()

    handle = await orchestrator.download_report(job.id)
    lines = (await handle.read()).decode("utf-8").splitlines()
    assert lines[0] == "learnerId,course,score,occurredAt"
    assert len(lines) == len(make_records(4)) + 1
    assert source.fetch_calls == 1
