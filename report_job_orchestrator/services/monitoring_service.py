"""
MonitoringService for Report Job Orchestrator

Prometheus metrics for job submission, completion, retries and run time,
plus a health summary built from the stores and the dispatcher.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from ..models.common import utcnow, isoformat
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from .queue_manager import QueueManager


DURATION_BUCKETS = (1, 5, 15, 30, 60, 120, 300, 600, 1800, 3600)


@dataclass
class SystemHealth:
    """Overall system health status."""
    overall_status: str
    database_healthy: bool
    jobs_by_status: Dict[str, int]
    queue_size: int
    running_jobs: int
    active_schedules: int
    uptime_seconds: float
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = isoformat(self.timestamp)
        return data


class MonitoringService:
    """
    Metrics and health reporting.

    Metrics live on a registry owned by this service so several
    orchestrators (or test cases) in one process never collide.
    """

    def __init__(self, database_manager, clock: Callable[[], datetime] = utcnow,
                 registry: Optional[CollectorRegistry] = None):
        self.db = database_manager
        self.clock = clock
        self.registry = registry or CollectorRegistry()
        self.queue_manager: Optional["QueueManager"] = None
        self.start_time = clock()
        self.logger = get_logger(__name__)

        self.jobs_submitted = Counter(
            "report_jobs_submitted_total",
            "Report jobs accepted for execution",
            ["report_type"],
            registry=self.registry,
        )
        self.jobs_finished = Counter(
            "report_jobs_finished_total",
            "Report jobs that reached a final status",
            ["report_type", "status"],
            registry=self.registry,
        )
        self.job_retries = Counter(
            "report_job_retries_total",
            "Automatic and manual report job retries",
            ["report_type"],
            registry=self.registry,
        )
        self.job_duration = Histogram(
            "report_job_duration_seconds",
            "Run time of completed report jobs",
            ["report_type"],
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.jobs_queued = Gauge(
            "report_jobs_queued",
            "Report jobs waiting in this dispatcher",
            registry=self.registry,
        )
        self.jobs_running = Gauge(
            "report_jobs_running",
            "Report jobs executing on this node",
            registry=self.registry,
        )

    def record_submitted(self, report_type: str) -> None:
        self.jobs_submitted.labels(report_type=report_type).inc()

    def record_finished(self, report_type: str, status: str, duration: Optional[float] = None) -> None:
        self.jobs_finished.labels(report_type=report_type, status=status).inc()
        if duration is not None:
            self.job_duration.labels(report_type=report_type).observe(duration)

    def record_retry(self, report_type: str) -> None:
        self.job_retries.labels(report_type=report_type).inc()

    def update_queue_gauges(self, queued: int, running: int) -> None:
        self.jobs_queued.set(queued)
        self.jobs_running.set(running)

    async def get_system_health(self) -> SystemHealth:
        """Collect a health summary."""
        database_healthy = await self.db.is_healthy()
        jobs_by_status: Dict[str, int] = {}
        active_schedules = 0
        if database_healthy:
            jobs_by_status = await self.db.count_jobs_by_status()
            active_schedules = await self.db.count_active_schedules()

        queue_size = running = 0
        if self.queue_manager is not None:
            stats = self.queue_manager.get_queue_statistics()
            queue_size = stats["queue_size"]
            running = stats["running_jobs"]
            self.update_queue_gauges(queue_size, running)

        if not database_healthy:
            overall = "unhealthy"
        elif self.queue_manager is not None and not self.queue_manager.is_running:
            overall = "degraded"
        else:
            overall = "healthy"

        now = self.clock()
        return SystemHealth(
            overall_status=overall,
            database_healthy=database_healthy,
            jobs_by_status=jobs_by_status,
            queue_size=queue_size,
            running_jobs=running,
            active_schedules=active_schedules,
            uptime_seconds=(now - self.start_time).total_seconds(),
            timestamp=now,
        )

    def render_metrics(self) -> str:
        """Prometheus text exposition of this service's registry."""
        if self.queue_manager is not None:
            stats = self.queue_manager.get_queue_statistics()
            self.update_queue_gauges(stats["queue_size"], stats["running_jobs"])
        return generate_latest(self.registry).decode("utf-8")
