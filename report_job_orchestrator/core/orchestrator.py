"""
Main ReportOrchestrator class that coordinates all services

Provides the primary interface for report job submission, scheduling,
templates, downloads and system health, and owns the lifecycle of the
dispatcher, worker pool, retry manager and schedule trigger.
"""

import asyncio
from datetime import datetime
from importlib import resources
from typing import Any, Callable, Dict, List, Optional, Union

from ..core.config import OrchestratorConfig
from ..core.exceptions import OrchestratorError
from ..models.common import Page, utcnow
from ..models.job import ReportJob
from ..models.schedule import ReportSchedule
from ..models.template import ReportTemplate
from ..reporting.base import DepartmentDirectory, StaticDepartmentDirectory
from ..reporting.registry import ReportTypeRegistry
from ..services.fault_tolerance import RetryManager
from ..services.job_manager import JobManager
from ..services.monitoring_service import MonitoringService, SystemHealth
from ..services.queue_manager import QueueManager
from ..services.schedule_manager import ScheduleManager
from ..services.storage_manager import DownloadHandle, OutputStorageManager, StorageBackend
from ..services.template_manager import TemplateManager
from ..services.worker_manager import WorkerManager
from ..utils.database import DatabaseManager, InMemoryDatabaseManager
from ..utils.logger import get_logger


def load_schema_sql() -> str:
    """PostgreSQL DDL shipped with the package."""
    return resources.files("report_job_orchestrator").joinpath("sql/schema.sql").read_text(encoding="utf-8")


class ReportOrchestrator:
    """
    Main orchestrator class that coordinates all services.

    Provides a unified interface for:
    - Report job submission, listing, cancellation and retry
    - Report downloads
    - Schedules and templates
    - System health and metrics
    """

    def __init__(
        self,
        config: Optional[OrchestratorConfig] = None,
        database_manager=None,
        registry: Optional[ReportTypeRegistry] = None,
        departments: Optional[DepartmentDirectory] = None,
        storage_backend: Optional[StorageBackend] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the ReportOrchestrator.

        Args:
            config: Orchestrator configuration (defaults apply when omitted)
            database_manager: Store; built from ``config.database_url`` when omitted,
                falling back to the in-memory store
            registry: Report types; built from ``config.report_types`` when omitted
            departments: Department directory; built from ``config.department_ids`` when omitted
            storage_backend: Artifact backend; the local filesystem backend by default
            clock: Source of the current UTC time
        """
        self.config = config or OrchestratorConfig()
        self.clock = clock

        if database_manager is None:
            if self.config.database_url:
                database_manager = DatabaseManager(self.config.database_url)
            else:
                database_manager = InMemoryDatabaseManager()
        self.db = database_manager

        self.registry = registry if registry is not None else ReportTypeRegistry.from_config(self.config.report_types)
        self.departments = departments or StaticDepartmentDirectory(self.config.department_ids)

        self.monitoring_service = MonitoringService(self.db, clock=clock)
        self.storage = OutputStorageManager(self.config.storage, backend=storage_backend, clock=clock)
        self.queue_manager = QueueManager(self.db, self.config.dispatcher, self.config.worker, clock=clock)
        self.retry_manager = RetryManager(
            self.db, self.registry, self.queue_manager,
            config=self.config.retry, monitoring=self.monitoring_service, clock=clock
        )
        self.queue_manager.retry_manager = self.retry_manager
        self.monitoring_service.queue_manager = self.queue_manager

        self.worker_manager = WorkerManager(
            self.db, self.queue_manager, self.retry_manager, self.storage, self.registry,
            config=self.config.worker, monitoring=self.monitoring_service, clock=clock
        )
        self.job_manager = JobManager(
            self.db, self.registry, self.queue_manager, self.retry_manager,
            departments=self.departments, monitoring=self.monitoring_service, clock=clock
        )
        self.template_manager = TemplateManager(self.db, self.registry, clock=clock)
        self.schedule_manager = ScheduleManager(
            self.db, self.registry, self.job_manager,
            config=self.config.scheduler, departments=self.departments, clock=clock
        )

        self._initialized = False
        self._is_running = False
        self._shutdown_event = asyncio.Event()
        self.logger = get_logger(__name__)

    async def initialize(self, apply_schema: bool = False):
        """Open the store; optionally create the PostgreSQL schema."""
        if self._initialized:
            return
        await self.db.initialize()
        if apply_schema and isinstance(self.db, DatabaseManager):
            await self.db.apply_schema(load_schema_sql())
        await self.queue_manager.resync()
        self._initialized = True

    async def start(self):
        """Start the orchestrator and all services."""
        self.logger.info("Starting ReportOrchestrator", extra={
            "report_types": self.registry.names(),
            "store": self.db.__class__.__name__,
            "max_concurrent_jobs": self.config.dispatcher.max_concurrent_jobs
        })

        try:
            await self.initialize()
            await self.retry_manager.start()
            await self.queue_manager.start()
            await self.schedule_manager.start()
            self._is_running = True
            self._shutdown_event.clear()
            self.logger.info("ReportOrchestrator started successfully")

        except Exception as e:
            self.logger.error("Failed to start ReportOrchestrator", exc_info=True)
            await self.stop()
            raise OrchestratorError(f"Failed to start orchestrator: {str(e)}")

    async def stop(self, drain_timeout: Optional[float] = None) -> List[str]:
        """
        Stop the orchestrator.

        Dispatch and the schedule trigger stop first; running jobs get
        ``drain_timeout`` seconds to finish before their leases are released
        back to the queue.

        Returns:
            Ids of jobs released back to the queue
        """
        self.logger.info("Stopping ReportOrchestrator")
        self._shutdown_event.set()

        for service in (self.schedule_manager, self.queue_manager):
            try:
                await service.stop()
            except Exception:
                self.logger.error(f"Error stopping service {service.__class__.__name__}", exc_info=True)

        released: List[str] = []
        try:
            released = await self.worker_manager.drain(drain_timeout)
        except Exception:
            self.logger.error("Error draining workers", exc_info=True)

        try:
            await self.retry_manager.stop()
        except Exception:
            self.logger.error("Error stopping service RetryManager", exc_info=True)

        self._is_running = False
        self.logger.info("ReportOrchestrator stopped", extra={"released_jobs": len(released)})
        return released

    async def close(self):
        """Stop if running and close the store."""
        if self._is_running:
            await self.stop()
        await self.db.close()
        self._initialized = False

    async def __aenter__(self) -> "ReportOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def is_running(self) -> bool:
        return self._is_running

    async def wait_for_shutdown(self):
        await self._shutdown_event.wait()

    def request_shutdown(self):
        """Wake ``wait_for_shutdown``; safe to call from a signal handler."""
        self._shutdown_event.set()

    async def run_pending(self) -> int:
        """
        Claim and execute queued jobs in this task until none is eligible.

        Returns:
            Number of jobs executed
        """
        executed = 0
        while True:
            job = await self.queue_manager.claim_next()
            if job is None:
                break
            await self.worker_manager.launch(job)
            await self.worker_manager.wait_idle()
            executed += 1
        return executed

    # Report jobs
    async def submit_job(self, request: Union[Dict[str, Any], Any], requested_by: str) -> Dict[str, Any]:
        """Validate and queue a report job; see ``JobManager.submit_job``."""
        return await self.job_manager.submit_job(request, requested_by)

    async def list_jobs(self, query: Optional[Union[Dict[str, Any], Any]] = None) -> Page:
        return await self.job_manager.list_jobs(query)

    async def get_job(self, job_id: str) -> ReportJob:
        return await self.job_manager.get_job(job_id)

    async def cancel_job(self, job_id: str, reason: Optional[str] = None, allow_running: bool = True) -> ReportJob:
        return await self.job_manager.cancel_job(job_id, reason=reason, allow_running=allow_running)

    async def retry_job(self, job_id: str) -> ReportJob:
        return await self.job_manager.retry_job(job_id)

    async def download_report(self, job_id: str, now: Optional[datetime] = None) -> DownloadHandle:
        """
        Grant a download of a completed job's report.

        Raises:
            JobNotFoundError: If the job does not exist
            ReportNotFoundError: If the job has no report
            ReportExpiredError: If the report expired
        """
        job = await self.job_manager.get_job(job_id)
        return await self.storage.open_download(job, now)

    # Schedules
    async def create_schedule(self, request: Union[Dict[str, Any], Any], created_by: str) -> ReportSchedule:
        return await self.schedule_manager.create_schedule(request, created_by)

    async def list_schedules(self, query: Optional[Union[Dict[str, Any], Any]] = None) -> Page:
        return await self.schedule_manager.list_schedules(query)

    async def get_schedule(self, schedule_id: str) -> ReportSchedule:
        return await self.schedule_manager.get_schedule(schedule_id)

    async def update_schedule(self, schedule_id: str, request: Union[Dict[str, Any], Any]) -> ReportSchedule:
        return await self.schedule_manager.update_schedule(schedule_id, request)

    async def pause_schedule(self, schedule_id: str, reason: Optional[str] = None) -> ReportSchedule:
        return await self.schedule_manager.pause_schedule(schedule_id, {"reason": reason})

    async def resume_schedule(self, schedule_id: str) -> ReportSchedule:
        return await self.schedule_manager.resume_schedule(schedule_id)

    async def tick_schedules(self, now: Optional[datetime] = None) -> List[ReportJob]:
        return await self.schedule_manager.tick(now)

    # Templates
    async def create_template(self, request: Union[Dict[str, Any], Any], created_by: str) -> ReportTemplate:
        return await self.template_manager.create_template(request, created_by)

    async def list_templates(self, query: Optional[Union[Dict[str, Any], Any]] = None) -> Page:
        return await self.template_manager.list_templates(query)

    async def get_template(self, template_id: str) -> ReportTemplate:
        return await self.template_manager.get_template(template_id)

    async def update_template(self, template_id: str, request: Union[Dict[str, Any], Any]) -> ReportTemplate:
        return await self.template_manager.update_template(template_id, request)

    async def delete_template(self, template_id: str) -> None:
        await self.template_manager.delete_template(template_id)

    async def clone_template(self, template_id: str, created_by: str,
                             name: Optional[str] = None) -> ReportTemplate:
        return await self.template_manager.clone_template(template_id, {"name": name}, created_by)

    # Monitoring and maintenance
    async def get_system_health(self) -> SystemHealth:
        return await self.monitoring_service.get_system_health()

    def render_metrics(self) -> str:
        return self.monitoring_service.render_metrics()

    async def get_queue_statistics(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self.queue_manager.get_queue_statistics())
        stats.update(self.worker_manager.get_worker_statistics())
        return stats

    async def prune_jobs(self, older_than_days: float) -> int:
        return await self.job_manager.prune_jobs(older_than_days)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        return await self.storage.purge_expired(self.db, now)
