"""
Basic usage example for Report Job Orchestrator

This example registers an in-process report type, submits a report job,
waits for it to complete and downloads the rendered CSV. It then creates a
template and a daily schedule built from it.
"""

import asyncio
import random
from datetime import datetime, timedelta, timezone

from report_job_orchestrator import (
    OrchestratorConfig,
    ReportDataSource,
    ReportOrchestrator,
    ReportTypeDefinition,
    ReportTypeRegistry,
    setup_logger,
)


class CourseActivitySource(ReportDataSource):
    """Synthetic learner activity records."""

    def __init__(self, records: int = 2_000):
        rng = random.Random(7)
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.records = [
            {
                "learnerId": f"{rng.randrange(16 ** 24):024x}",
                "course": rng.choice(["algebra", "biology", "chemistry"]),
                "eventType": rng.choice(["started", "completed", "quiz"]),
                "minutes": rng.randint(1, 90),
                "occurredAt": start + timedelta(minutes=i * 17),
            }
            for i in range(records)
        ]

    async def count(self, parameters):
        return len(self.records)

    async def fetch(self, parameters, batch_size):
        for offset in range(0, len(self.records), batch_size):
            await asyncio.sleep(0)
            yield self.records[offset:offset + batch_size]


async def basic_example():
    """Submit one report and download it."""
    print("Starting Report Job Orchestrator example")
    setup_logger(level="WARNING", structured=False)

    registry = ReportTypeRegistry([
        ReportTypeDefinition(
            name="course-activity",
            data_source=CourseActivitySource(),
            allowed_group_by=frozenset({"course", "eventType"}),
            batch_size=250,
        )
    ])
    config = OrchestratorConfig.from_dict({"storage": {"base_dir": "./example-reports"}})

    async with ReportOrchestrator(config, registry=registry) as orchestrator:
        receipt = await orchestrator.submit_job({
            "reportType": "course-activity",
            "name": "Minutes by course",
            "parameters": {"groupBy": ["course"], "measures": ["count", "sum:minutes", "avg:minutes"]},
            "output": {"format": "csv"},
            "priority": "high",
        }, requested_by="64b7f0c2a1d4e5f6a7b8c9d0")
        print(f"Job submitted: {receipt['id']} (queue position {receipt['queuePosition']})")

        job = await orchestrator.get_job(receipt["id"])
        while not job.is_terminal():
            await asyncio.sleep(0.1)
            job = await orchestrator.get_job(receipt["id"])
        print(f"Job {job.status.value}: {job.progress.records_processed} records processed")

        download = await orchestrator.download_report(job.id)
        print(f"Report {download.filename} ({download.size} bytes):")
        print((await download.read()).decode("utf-8"))

        template = await orchestrator.create_template({
            "name": "Daily activity by event",
            "reportType": "course-activity",
            "parameters": {"groupBy": ["eventType"]},
            "defaultOutput": {"format": "json", "filenameTemplate": "{reportType}-{date}"},
        }, created_by="64b7f0c2a1d4e5f6a7b8c9d0")

        schedule = await orchestrator.create_schedule({
            "name": "Daily activity",
            "templateId": template.id,
            "schedule": {"frequency": "daily", "timeOfDay": "06:30", "timezone": "Europe/Berlin"},
            "output": {"format": "json"},
            "delivery": {"method": "storage"},
        }, created_by="64b7f0c2a1d4e5f6a7b8c9d0")
        print(f"Schedule {schedule.id} next runs at {schedule.to_dict()['nextRunAt']}")

        health = await orchestrator.get_system_health()
        print(f"System health: {health.overall_status}")


if __name__ == "__main__":
    asyncio.run(basic_example())
