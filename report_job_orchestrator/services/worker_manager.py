"""
WorkerManager service for Report Job Orchestrator

Runs claimed report jobs as asyncio tasks. Each ``ReportWorker`` executes the
report pipeline with checkpoints between phases, where it reports progress,
renews its lease and honours cancellation requests.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from ..core.config import WorkerConfig
from ..core.exceptions import JobCancelledError, LeaseLostError, UnsupportedFormatError
from ..models.common import utcnow, isoformat
from ..models.job import ReportJob, JobStatus, JobProgress, JobOutput
from ..reporting.aggregation import Aggregator
from ..reporting.renderers import get_renderer
from ..utils.logger import get_logger, LoggerContext

if TYPE_CHECKING:
    from ..reporting.registry import ReportTypeRegistry
    from .fault_tolerance import RetryManager
    from .monitoring_service import MonitoringService
    from .queue_manager import QueueManager
    from .storage_manager import OutputStorageManager


class ReportWorker:
    """
    Executes one claimed job.

    Pipeline: resolving parameters (5%), fetching data (10-60%), aggregating
    (70%), rendering (85%), storing (95%), completed (100%). The worker never
    marks a job failed itself; failures go to the retry manager.
    """

    def __init__(self, manager: "WorkerManager", job: ReportJob):
        self.manager = manager
        self.db = manager.db
        self.job = job
        self.worker_id = job.worker_id
        self.clock = manager.clock
        self.logger = get_logger(__name__)
        self._beats_since_checkpoint = 0
        self._stalled = False
        self._pipeline: Optional[asyncio.Task] = None

    def _lease_expiry(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.manager.config.lease_timeout)

    async def checkpoint(
        self,
        percentage: float,
        step: str,
        records_processed: Optional[int] = None,
        total_records: Optional[int] = None,
    ) -> None:
        """
        Report progress and observe cancellation.

        Raises:
            JobCancelledError: If a cancel was requested
            LeaseLostError: If this worker no longer holds the job
        """
        current = await self.db.get_job(self.job.id)
        if current is None or current.status != JobStatus.RUNNING or current.worker_id != self.worker_id:
            raise LeaseLostError(self.job.id, self.worker_id)
        if current.cancel_requested:
            raise JobCancelledError(self.job.id)

        now = self.clock()
        changes: Dict[str, Any] = {"lease_expires_at": self._lease_expiry(now), "updated_at": now}
        if current.update_progress(percentage, step, records_processed, total_records, now=now):
            changes["progress"] = current.progress
        else:
            self.logger.debug("Ignoring progress regression", extra={
                "job_id": self.job.id,
                "reported": percentage,
                "current": current.progress.percentage
            })

        updated = await self.db.compare_and_set_job(
            self.job.id, JobStatus.RUNNING, changes, worker_id=self.worker_id
        )
        if updated is None:
            raise LeaseLostError(self.job.id, self.worker_id)
        self.job = updated
        self._beats_since_checkpoint = 0

    async def heartbeat(self) -> None:
        """
        Renew the lease until cancelled.

        A pipeline that reaches no checkpoint within ``stall_timeout`` is
        abandoned and its lease left to expire.
        """
        interval = self.manager.config.heartbeat_interval
        stall_timeout = self.manager.config.stall_timeout
        while True:
            await asyncio.sleep(interval)
            self._beats_since_checkpoint += 1
            if self._beats_since_checkpoint * interval >= stall_timeout:
                self.logger.warning("Job made no progress; abandoning lease", extra={
                    "job_id": self.job.id,
                    "stall_timeout": stall_timeout,
                    "step": self.job.progress.current_step
                })
                self._stalled = True
                if self._pipeline is not None:
                    self._pipeline.cancel()
                return
            now = self.clock()
            renewed = await self.db.compare_and_set_job(
                self.job.id,
                JobStatus.RUNNING,
                {"lease_expires_at": self._lease_expiry(now), "updated_at": now},
                worker_id=self.worker_id,
            )
            if renewed is None:
                self.logger.warning("Heartbeat could not renew lease", extra={"job_id": self.job.id})
                return

    async def execute(self) -> Optional[ReportJob]:
        """Run the pipeline and record the outcome."""
        self._pipeline = asyncio.create_task(self._run_pipeline())
        heartbeat = asyncio.create_task(self.heartbeat())
        try:
            return await self._pipeline
        except JobCancelledError:
            return await self._acknowledge_cancel()
        except LeaseLostError:
            self.logger.warning("Lease lost; abandoning job", extra={"job_id": self.job.id})
            return None
        except asyncio.CancelledError:
            if self._stalled:
                return None
            raise
        except Exception as e:
            self.logger.error(f"Job execution failed: {e}", exc_info=True)
            return await self.manager.retry_manager.handle_failure(self.job, e)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            except Exception:
                self.logger.debug("Heartbeat task ended with an error", exc_info=True)

    async def _run_pipeline(self) -> Optional[ReportJob]:
        job = self.job
        manager = self.manager

        await self.checkpoint(5, "resolving parameters")
        definition = manager.registry.get(job.report_type)
        if not definition.supports_format(job.output.format):
            raise UnsupportedFormatError(job.report_type, job.output.format)
        renderer = get_renderer(job.output.format)
        parameters = definition.parse_parameters(job.parameters.to_dict())

        total = await definition.data_source.count(parameters)
        await self.checkpoint(10, "fetching data", 0, total)

        aggregator = Aggregator(parameters.group_by, parameters.measures)
        processed = 0
        batches_seen = 0
        batches = definition.data_source.fetch(parameters, definition.batch_size)
        try:
            async for batch in batches:
                aggregator.add(batch)
                processed += len(batch)
                batches_seen += 1
                if total:
                    fraction = min(processed / total, 1.0)
                else:
                    fraction = 1.0 - 0.5 ** batches_seen
                await self.checkpoint(10 + 50 * fraction, "fetching data", processed, total)
        finally:
            aclose = getattr(batches, "aclose", None)
            if aclose is not None:
                await aclose()

        await self.checkpoint(70, "aggregating", processed, total)
        rows = aggregator.result()

        await self.checkpoint(85, "rendering", processed, total)
        metadata = {
            "jobId": job.id,
            "reportType": job.report_type,
            "name": job.name,
            "generatedAt": isoformat(self.clock()),
            "parameters": parameters.to_dict(),
        }
        loop = asyncio.get_running_loop()
        content = await loop.run_in_executor(None, renderer.render, rows, metadata)

        await self.checkpoint(95, "storing", processed, total)
        completed_at = self.clock()
        descriptor = await manager.storage.store(job, content, renderer, completed_at)

        progress = JobProgress(
            percentage=100.0,
            current_step="completed",
            records_processed=processed,
            total_records=total if total is not None else processed,
        )
        completed = await self.db.compare_and_set_job(
            job.id,
            JobStatus.RUNNING,
            {
                "status": JobStatus.COMPLETED,
                "completed_at": completed_at,
                "output": JobOutput(format=job.output.format, filename=job.output.filename, storage=descriptor),
                "progress": progress,
                "lease_expires_at": None,
                "updated_at": completed_at,
            },
            worker_id=self.worker_id,
            cancel_requested=False,
        )
        if completed is None:
            await manager.storage.discard(descriptor)
            current = await self.db.get_job(job.id)
            if current is not None and current.status == JobStatus.RUNNING \
                    and current.worker_id == self.worker_id and current.cancel_requested:
                raise JobCancelledError(job.id)
            raise LeaseLostError(job.id, self.worker_id)

        self.logger.info("Job completed", extra={
            "job_id": job.id,
            "records_processed": processed,
            "rows": len(rows)
        })
        if manager.monitoring:
            manager.monitoring.record_finished(job.report_type, JobStatus.COMPLETED.value, completed.get_duration())
        return completed

    async def _acknowledge_cancel(self) -> Optional[ReportJob]:
        now = self.clock()
        cancelled = await self.db.compare_and_set_job(
            self.job.id,
            JobStatus.RUNNING,
            {
                "status": JobStatus.CANCELLED,
                "cancelled_at": now,
                "lease_expires_at": None,
                "updated_at": now,
            },
            worker_id=self.worker_id,
        )
        if cancelled is None:
            self.logger.warning("Cancel acknowledgement lost the lease", extra={"job_id": self.job.id})
            return None

        self.logger.info("Job cancelled at checkpoint", extra={
            "job_id": self.job.id,
            "step": cancelled.progress.current_step,
            "reason": cancelled.cancel_reason
        })
        if self.manager.monitoring:
            self.manager.monitoring.record_finished(self.job.report_type, JobStatus.CANCELLED.value)
        return cancelled


class WorkerManager:
    """
    Bounded pool of report workers.

    The dispatcher bounds concurrency; this manager owns the tasks, frees
    dispatcher slots when they finish and drains them at shutdown.
    """

    def __init__(
        self,
        database_manager,
        queue_manager: "QueueManager",
        retry_manager: "RetryManager",
        storage: "OutputStorageManager",
        registry: "ReportTypeRegistry",
        config: Optional[WorkerConfig] = None,
        monitoring: Optional["MonitoringService"] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = database_manager
        self.queue_manager = queue_manager
        self.retry_manager = retry_manager
        self.storage = storage
        self.registry = registry
        self.config = config or WorkerConfig()
        self.monitoring = monitoring
        self.clock = clock

        self.active: Dict[str, asyncio.Task] = {}
        self.logger = get_logger(__name__)

        queue_manager.job_handler = self.launch

    async def launch(self, job: ReportJob) -> asyncio.Task:
        """Start executing a claimed job."""
        task = asyncio.create_task(self._run(job), name=f"report-job-{job.id}")
        self.active[job.id] = task
        return task

    async def _run(self, job: ReportJob) -> Optional[ReportJob]:
        with LoggerContext(job_id=job.id, worker_id=job.worker_id):
            try:
                return await ReportWorker(self, job).execute()
            finally:
                self.active.pop(job.id, None)
                self.queue_manager.release(job.id)

    async def wait_idle(self) -> None:
        """Wait until every active job has finished."""
        while self.active:
            await asyncio.gather(*list(self.active.values()), return_exceptions=True)

    async def drain(self, timeout: Optional[float] = None) -> List[str]:
        """
        Wait for in-flight jobs, then requeue whatever is still running.

        Returns:
            Ids of jobs whose lease was released
        """
        timeout = self.config.drain_timeout if timeout is None else timeout
        running_jobs = {task: job_id for job_id, task in self.active.items()}
        if not running_jobs:
            return []

        self.logger.info(f"Draining {len(running_jobs)} running jobs", extra={"timeout": timeout})
        _, pending = await asyncio.wait(list(running_jobs), timeout=timeout)

        released: List[str] = []
        for task in pending:
            job_id = running_jobs.get(task)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                self.logger.debug("Worker task ended with an error during drain", exc_info=True)
            if job_id is None:
                continue

            job = await self.db.get_job(job_id)
            if job is None or job.status != JobStatus.RUNNING:
                continue
            requeued = await self.db.compare_and_set_job(
                job_id,
                JobStatus.RUNNING,
                {
                    "status": JobStatus.QUEUED,
                    "worker_id": None,
                    "lease_expires_at": None,
                    "started_at": None,
                    "progress": JobProgress(),
                },
                worker_id=job.worker_id,
            )
            if requeued is not None:
                released.append(job_id)
                self.logger.info("Released lease at shutdown", extra={"job_id": job_id})
        return released

    def get_worker_statistics(self) -> Dict[str, Any]:
        return {"active_jobs": len(self.active), "job_ids": sorted(self.active)}
