"""Shared fixtures: a controllable clock, in-process data sources and an orchestrator on the in-memory store."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import pytest
import pytest_asyncio

from report_job_orchestrator.core.config import OrchestratorConfig, RetryConfig, StorageConfig, WorkerConfig
from report_job_orchestrator.core.orchestrator import ReportOrchestrator
from report_job_orchestrator.models.job import ReportJob
from report_job_orchestrator.reporting.base import (
    ReportDataSource,
    ReportTypeDefinition,
    StaticDepartmentDirectory,
)
from report_job_orchestrator.reporting.registry import ReportTypeRegistry


START = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
USER_ID = "64b7f0c2a1d4e5f6a7b8c9d0"
DEPARTMENT_ID = "5f1e2d3c4b5a697887766554"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class ListDataSource(ReportDataSource):
    """
    Serves a fixed list of records.

    ``failures`` makes the next N fetches raise ``error`` before yielding;
    ``on_batch`` is awaited before each batch is handed to the worker.
    """

    def __init__(self, records: List[Dict[str, Any]], failures: int = 0,
                 error: Optional[BaseException] = None):
        self.records = records
        self.failures = failures
        self.error = error or OSError("source unavailable")
        self.fetch_calls = 0
        self.on_batch: Optional[Callable[[int], Awaitable[None]]] = None

    async def count(self, parameters):
        return len(self.records)

    async def fetch(self, parameters, batch_size):
        self.fetch_calls += 1
        if self.failures:
            self.failures -= 1
            raise self.error
        for index, offset in enumerate(range(0, len(self.records), batch_size)):
            if self.on_batch is not None:
                await self.on_batch(index)
            yield self.records[offset:offset + batch_size]


def make_records(count: int = 10) -> List[Dict[str, Any]]:
    return [
        {
            "learnerId": f"{i:024x}",
            "course": "algebra" if i % 2 == 0 else "biology",
            "score": i,
            "occurredAt": START - timedelta(days=i),
        }
        for i in range(count)
    ]


def sample_source() -> ListDataSource:
    """Zero-argument factory for configuration-built registries."""
    return ListDataSource(make_records(4))


def job_request(**overrides) -> Dict[str, Any]:
    request: Dict[str, Any] = {
        "reportType": "learner-activity",
        "name": "Scores by course",
        "parameters": {"groupBy": ["course"], "measures": ["count", "sum:score"]},
        "output": {"format": "csv"},
    }
    request.update(overrides)
    return request


def template_request(**overrides) -> Dict[str, Any]:
    request: Dict[str, Any] = {
        "name": "Weekly scores",
        "reportType": "learner-activity",
        "parameters": {"groupBy": ["course"]},
        "defaultOutput": {"format": "csv", "filenameTemplate": "{reportType}-{date}"},
    }
    request.update(overrides)
    return request


def schedule_request(template_id: str, **overrides) -> Dict[str, Any]:
    request: Dict[str, Any] = {
        "name": "Daily scores",
        "templateId": template_id,
        "schedule": {"frequency": "daily", "timeOfDay": "09:00", "timezone": "UTC"},
        "output": {"format": "csv"},
        "delivery": {"method": "storage"},
    }
    request.update(overrides)
    return request


def build_orchestrator(tmp_path, registry: ReportTypeRegistry, clock: FakeClock,
                       retry: Optional[RetryConfig] = None, worker: Optional[WorkerConfig] = None,
                       **components) -> ReportOrchestrator:
    config = OrchestratorConfig(
        storage=StorageConfig(base_dir=str(tmp_path / "reports")),
        retry=retry or RetryConfig(base_delay=60.0),
        worker=worker or WorkerConfig(),
    )
    return ReportOrchestrator(
        config,
        **components,
        registry=registry,
        departments=StaticDepartmentDirectory([DEPARTMENT_ID]),
        clock=clock,
    )


async def wait_until(predicate: Callable[[], Awaitable[bool]], attempts: int = 200) -> bool:
    for _ in range(attempts):
        if await predicate():
            return True
        await asyncio.sleep(0.01)
    return False


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def data_source() -> ListDataSource:
    return ListDataSource(make_records())


@pytest.fixture
def registry(data_source) -> ReportTypeRegistry:
    return ReportTypeRegistry([
        ReportTypeDefinition(
            name="learner-activity",
            data_source=data_source,
            max_retries=2,
            batch_size=3,
            allowed_group_by=frozenset({"course", "learnerId"}),
        ),
        ReportTypeDefinition(
            name="course-summary",
            data_source=ListDataSource(make_records(4)),
            formats=frozenset({"csv"}),
        ),
    ])


@pytest_asyncio.fixture
async def orchestrator(tmp_path, registry, clock):
    orch = build_orchestrator(tmp_path, registry, clock)
    await orch.initialize()
    yield orch
    await orch.stop()
    await orch.close()


async def submit(orchestrator: ReportOrchestrator, **overrides) -> ReportJob:
    receipt = await orchestrator.submit_job(job_request(**overrides), USER_ID)
    return await orchestrator.get_job(receipt["id"])
