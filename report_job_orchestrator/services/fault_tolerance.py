"""
Retry and backoff for failed report jobs.

Classifies failures as retryable or terminal, records them on the job and
re-enqueues retryable failures after an exponential backoff delay using
event loop timers.
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Set, Tuple, TYPE_CHECKING

from ..core.config import RetryConfig
from ..core.exceptions import (
    ReportOrchestratorError,
    RetryableError,
    NonRetryableError,
    ValidationError,
    ConflictError,
    JobNotFoundError,
)
from ..models.common import utcnow
from ..models.job import ReportJob, JobStatus, JobError, JobProgress
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from ..reporting.registry import ReportTypeRegistry
    from .monitoring_service import MonitoringService
    from .queue_manager import QueueManager


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    base_delay: float = 5.0
    multiplier: float = 2.0
    max_delay: float = 300.0
    jitter: bool = False

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            base_delay=config.base_delay,
            multiplier=config.multiplier,
            max_delay=config.max_delay,
            jitter=config.jitter,
        )

    def delay_for(self, retry_count: int) -> float:
        """Backoff before the retry following ``retry_count`` earlier retries."""
        delay = min(self.base_delay * (self.multiplier ** retry_count), self.max_delay)
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)  # 50%-100% of calculated delay
        return delay


RETRYABLE_EXCEPTIONS: Tuple[type, ...] = (RetryableError, OSError, ConnectionError, asyncio.TimeoutError)


def is_retryable(error: BaseException) -> bool:
    """Transient failures (I/O, timeouts, lease loss) are retryable; everything else is terminal."""
    if isinstance(error, (NonRetryableError, ValidationError)):
        return False
    return isinstance(error, RETRYABLE_EXCEPTIONS)


def error_code_for(error: BaseException) -> str:
    if isinstance(error, ReportOrchestratorError) and error.error_code:
        return error.error_code
    if isinstance(error, asyncio.TimeoutError):
        return "TIMEOUT"
    if isinstance(error, ConnectionError):
        return "CONNECTION_ERROR"
    if isinstance(error, OSError):
        return "IO_ERROR"
    return "INTERNAL_ERROR"


class RetryManager:
    """
    Owns every ``failed`` transition and the ``failed -> queued`` re-entry.

    A retryable failure within budget leaves the job ``failed`` with
    ``error.next_retry_at`` set; a timer moves it back to ``queued`` when due.
    Both the timer and manual retries guard on the retry count, so whichever
    acts first wins and the other becomes a no-op.
    """

    def __init__(
        self,
        database_manager,
        registry: "ReportTypeRegistry",
        queue_manager: "QueueManager",
        config: Optional[RetryConfig] = None,
        monitoring: Optional["MonitoringService"] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = database_manager
        self.registry = registry
        self.queue_manager = queue_manager
        self.config = config or RetryConfig()
        self.policy = RetryPolicy.from_config(self.config)
        self.monitoring = monitoring
        self.clock = clock

        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self.logger = get_logger(__name__)

    async def start(self):
        """Re-arm timers for retries that were pending when the service stopped."""
        pending = await self.db.list_pending_retries()
        now = self.clock()
        for job in pending:
            delay = max((job.error.next_retry_at - now).total_seconds(), 0.0)
            self._arm(job.id, job.retry_count, delay)
        if pending:
            self.logger.info(f"Re-armed {len(pending)} pending retries")

    async def stop(self):
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            try:
                await task
            except asyncio.CancelledError:
                pass

    def max_retries_for(self, report_type: str) -> int:
        if report_type in self.registry:
            configured = self.registry.get(report_type).max_retries
            if configured is not None:
                return configured
        return self.config.default_max_retries

    async def handle_failure(self, job: ReportJob, error: BaseException) -> Optional[ReportJob]:
        """
        Record a failure of a running job.

        Returns:
            The updated job, or None if the job was no longer held by its worker
        """
        now = self.clock()
        code = error_code_for(error)
        message = str(error) or error.__class__.__name__
        retryable = is_retryable(error)
        retry_count = job.retry_count
        max_retries = self.max_retries_for(job.report_type)
        last_retry_at = job.error.last_retry_at if job.error else None

        changes = {
            "status": JobStatus.FAILED,
            "worker_id": None,
            "lease_expires_at": None,
            "updated_at": now,
        }

        if retryable and retry_count < max_retries:
            delay = self.policy.delay_for(retry_count)
            changes["error"] = JobError(
                code=code,
                message=message,
                retry_count=retry_count + 1,
                last_retry_at=now,
                retryable=True,
                next_retry_at=now + timedelta(seconds=delay),
            )
        else:
            delay = None
            changes["error"] = JobError(
                code=code,
                message=message,
                retry_count=retry_count,
                last_retry_at=last_retry_at,
                retryable=retryable,
            )
            changes["completed_at"] = now

        updated = await self.db.compare_and_set_job(job.id, JobStatus.RUNNING, changes, worker_id=job.worker_id)
        if updated is None:
            self.logger.warning("Failure not recorded; job no longer held by worker", extra={
                "job_id": job.id,
                "worker_id": job.worker_id
            })
            return None

        if delay is not None:
            self.logger.warning(f"Job {job.id} failed, retrying in {delay:.2f} seconds", extra={
                "job_id": job.id,
                "error_code": code,
                "retry_count": updated.retry_count,
                "max_retries": max_retries
            })
            if self.monitoring:
                self.monitoring.record_retry(job.report_type)
            self._arm(job.id, updated.retry_count, delay)
        else:
            self.logger.error(f"Job {job.id} failed permanently: {message}", extra={
                "job_id": job.id,
                "error_code": code,
                "retryable": retryable,
                "retry_count": retry_count
            })
            if self.monitoring:
                self.monitoring.record_finished(job.report_type, JobStatus.FAILED.value)
        return updated

    def _arm(self, job_id: str, retry_count: int, delay: float) -> None:
        existing = self._timers.pop(job_id, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[job_id] = loop.call_later(delay, self._fire, job_id, retry_count)

    def disarm(self, job_id: str) -> bool:
        """Drop the pending re-queue timer for a job, if any."""
        timer = self._timers.pop(job_id, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def _fire(self, job_id: str, retry_count: int) -> None:
        self._timers.pop(job_id, None)
        task = asyncio.get_running_loop().create_task(self._requeue(job_id, retry_count))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _requeue(self, job_id: str, retry_count: int) -> Optional[ReportJob]:
        try:
            job = await self.db.get_job(job_id)
            if job is None or not job.retry_pending or job.retry_count != retry_count:
                return None

            error = job.error
            error.next_retry_at = None
            updated = await self.db.compare_and_set_job(
                job_id,
                JobStatus.FAILED,
                {
                    "status": JobStatus.QUEUED,
                    "error": error,
                    "progress": JobProgress(),
                    "started_at": None,
                    "updated_at": self.clock(),
                },
                retry_count=retry_count,
            )
            if updated is not None:
                self.logger.info("Job re-enqueued for retry", extra={
                    "job_id": job_id,
                    "retry_count": retry_count
                })
                self.queue_manager.enqueue(updated)
            return updated
        except Exception:
            self.logger.error("Failed to re-enqueue job", extra={"job_id": job_id}, exc_info=True)
            return None

    async def retry_job(self, job_id: str) -> ReportJob:
        """
        Manually retry a failed job.

        Raises:
            JobNotFoundError: If the job does not exist
            ConflictError: If the job is not ``failed``
        """
        job = await self.db.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.FAILED:
            raise ConflictError(
                f"Report job {job_id} is {job.status.value}; only failed jobs can be retried",
                error_code="INVALID_JOB_STATE",
                details={"job_id": job_id, "status": job.status.value}
            )

        now = self.clock()
        previous_count = job.retry_count
        error = job.error or JobError(code="UNKNOWN_ERROR", message="")
        error.retry_count = previous_count + 1
        error.last_retry_at = now
        error.next_retry_at = None

        updated = await self.db.compare_and_set_job(
            job_id,
            JobStatus.FAILED,
            {
                "status": JobStatus.QUEUED,
                "error": error,
                "progress": JobProgress(),
                "started_at": None,
                "completed_at": None,
                "updated_at": now,
            },
            retry_count=previous_count,
        )
        if updated is None:
            raise ConflictError(
                f"Report job {job_id} changed state during retry",
                error_code="INVALID_JOB_STATE",
                details={"job_id": job_id}
            )

        self.disarm(job_id)

        self.logger.info("Job manually retried", extra={"job_id": job_id, "retry_count": updated.retry_count})
        if self.monitoring:
            self.monitoring.record_retry(job.report_type)
        self.queue_manager.enqueue(updated)
        return updated
