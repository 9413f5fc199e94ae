"""
QueueManager service for Report Job Orchestrator

The priority dispatcher: keeps queued jobs in a heap ordered by priority and
age, claims them through the store's compare-and-set and hands claimed jobs
to the worker pool while respecting the concurrency caps.
"""

import asyncio
import heapq
import os
import socket
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple, TYPE_CHECKING
from uuid import uuid4

from ..core.config import DispatcherConfig, WorkerConfig
from ..core.exceptions import RetryableError
from ..models.common import utcnow
from ..models.job import ReportJob, JobStatus, JobProgress
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from .fault_tolerance import RetryManager


ReadyEntry = Tuple[int, datetime, str]
DeferredEntry = Tuple[datetime, str]


class QueueManager:
    """
    Priority dispatcher.

    The store is the source of truth. The heaps are a local index that is
    rebuilt at start and resynced periodically; an entry that loses its claim
    is simply dropped (or re-deferred) and selection moves on.
    """

    def __init__(
        self,
        database_manager,
        config: Optional[DispatcherConfig] = None,
        worker_config: Optional[WorkerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        node_id: Optional[str] = None,
    ):
        self.db = database_manager
        self.config = config or DispatcherConfig()
        self.worker_config = worker_config or WorkerConfig()
        self.clock = clock
        self.node_id = node_id or f"{socket.gethostname()}-{os.getpid()}"

        self._ready: List[ReadyEntry] = []
        self._deferred: List[DeferredEntry] = []
        self._queued: Dict[str, Optional[str]] = {}
        self._running: Dict[str, Optional[str]] = {}

        self.retry_manager: Optional["RetryManager"] = None
        self.job_handler: Optional[Callable[[ReportJob], Awaitable[None]]] = None

        self._wake = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()
        self._claim_lock = asyncio.Lock()
        self.is_running = False

        self.logger = get_logger(__name__)

    async def start(self):
        """Load queued jobs, reconcile stale leases and start the loops."""
        self.logger.info("Starting QueueManager", extra={"node_id": self.node_id})
        await self.resync()
        await self.reconcile_leases()

        self.is_running = True
        for loop in (self._dispatch_loop, self._resync_loop, self._lease_loop):
            self._tasks.add(asyncio.create_task(loop()))

    async def stop(self):
        """Stop dispatching; running jobs are left to the worker pool."""
        self.logger.info("Stopping QueueManager")
        self.is_running = False
        self._wake.set()
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

    def enqueue(self, job: ReportJob) -> None:
        """
        Index a queued job for dispatch.

        Jobs with a future ``scheduled_for`` go to the deferred heap until due.
        """
        if job.status != JobStatus.QUEUED or job.id in self._running:
            return
        if job.id in self._queued:
            return

        self._queued[job.id] = job.department_id
        now = self.clock()
        if job.scheduled_for is not None and job.scheduled_for > now:
            heapq.heappush(self._deferred, (job.scheduled_for, job.id))
        else:
            heapq.heappush(self._ready, job.dispatch_key())

        self.logger.debug("Job enqueued", extra={
            "job_id": job.id,
            "priority": job.priority.value,
            "queue_size": len(self._queued)
        })
        self._wake.set()

    def discard(self, job_id: str) -> None:
        """Forget a job that left the queue (for example, cancelled)."""
        if job_id in self._queued:
            del self._queued[job_id]
            self.logger.debug("Job removed from queue", extra={"job_id": job_id})

    def release(self, job_id: str) -> None:
        """Free the slot held by a job that finished on this node."""
        self._running.pop(job_id, None)
        self._wake.set()

    def wake(self) -> None:
        self._wake.set()

    def has_capacity(self) -> bool:
        return len(self._running) < self.config.max_concurrent_jobs

    def _department_full(self, department_id: Optional[str]) -> bool:
        cap = self.config.max_jobs_per_department
        if cap is None or department_id is None:
            return False
        in_use = sum(1 for dept in self._running.values() if dept == department_id)
        return in_use >= cap

    async def claim_next(self, now: Optional[datetime] = None) -> Optional[ReportJob]:
        """
        Claim the highest-priority eligible job.

        Returns:
            The claimed job (now ``running`` with a lease), or None when no
            job is eligible or every slot is taken
        """
        async with self._claim_lock:
            now = now or self.clock()
            if not self.has_capacity():
                return None

            await self._promote_deferred(now)

            skipped: List[ReadyEntry] = []
            claimed: Optional[ReportJob] = None
            while self._ready:
                entry = heapq.heappop(self._ready)
                job_id = entry[2]
                if job_id not in self._queued:
                    continue

                department_id = self._queued[job_id]
                if self._department_full(department_id):
                    skipped.append(entry)
                    continue

                worker_id = f"{self.node_id}:{uuid4().hex[:8]}"
                claimed = await self.db.compare_and_set_job(
                    job_id,
                    JobStatus.QUEUED,
                    {
                        "status": JobStatus.RUNNING,
                        "started_at": now,
                        "worker_id": worker_id,
                        "lease_expires_at": now + timedelta(seconds=self.worker_config.lease_timeout),
                        "progress": JobProgress(percentage=0.0, current_step="starting"),
                        "updated_at": now,
                    },
                    eligible_at=now,
                )
                if claimed is None:
                    await self._handle_lost_claim(job_id, now)
                    continue

                self._queued.pop(job_id, None)
                self._running[job_id] = claimed.department_id
                break

            for entry in skipped:
                heapq.heappush(self._ready, entry)

        if claimed is not None:
            self.logger.info("Job claimed", extra={
                "job_id": claimed.id,
                "worker_id": claimed.worker_id,
                "priority": claimed.priority.value,
                "remaining_queue_size": len(self._queued)
            })
        return claimed

    async def _promote_deferred(self, now: datetime) -> None:
        while self._deferred and self._deferred[0][0] <= now:
            _, job_id = heapq.heappop(self._deferred)
            if job_id not in self._queued:
                continue
            job = await self.db.get_job(job_id)
            if job is None or job.status != JobStatus.QUEUED:
                self._queued.pop(job_id, None)
                continue
            heapq.heappush(self._ready, job.dispatch_key())

    async def _handle_lost_claim(self, job_id: str, now: datetime) -> None:
        current = await self.db.get_job(job_id)
        if current is not None and current.status == JobStatus.QUEUED \
                and current.scheduled_for is not None and current.scheduled_for > now:
            heapq.heappush(self._deferred, (current.scheduled_for, job_id))
            return
        self._queued.pop(job_id, None)
        self.logger.debug("Claim lost", extra={
            "job_id": job_id,
            "status": current.status.value if current else None
        })

    def _seconds_until_next_deferred(self) -> Optional[float]:
        if not self._deferred:
            return None
        delta = (self._deferred[0][0] - self.clock()).total_seconds()
        return max(delta, 0.0)

    async def _dispatch_loop(self):
        while self.is_running:
            self._wake.clear()
            try:
                while self.has_capacity():
                    job = await self.claim_next()
                    if job is None:
                        break
                    await self._launch(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.error("Dispatch round failed", exc_info=True)

            timeout = self._seconds_until_next_deferred()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    async def _launch(self, job: ReportJob) -> None:
        if self.job_handler is None:
            self.logger.warning("No job handler attached; releasing claimed job", extra={"job_id": job.id})
            await self.db.compare_and_set_job(
                job.id, JobStatus.RUNNING,
                {"status": JobStatus.QUEUED, "worker_id": None, "lease_expires_at": None},
                worker_id=job.worker_id,
            )
            self._running.pop(job.id, None)
            return
        await self.job_handler(job)

    async def resync(self) -> int:
        """Index queued jobs from the store that this dispatcher has not seen."""
        jobs = await self.db.list_queued_jobs()
        added = 0
        for job in jobs:
            if job.id not in self._queued and job.id not in self._running:
                self.enqueue(job)
                added += 1
        if added:
            self.logger.info("Loaded queued jobs", extra={"loaded_jobs": added})
        return added

    async def reconcile_leases(self, now: Optional[datetime] = None) -> int:
        """Fail running jobs whose lease expired and hand them to the retry manager."""
        now = now or self.clock()
        expired = await self.db.find_expired_leases(now)
        for job in expired:
            self.logger.warning("Lease expired", extra={
                "job_id": job.id,
                "worker_id": job.worker_id,
                "lease_expires_at": str(job.lease_expires_at)
            })
            if self.retry_manager is None:
                continue
            await self.retry_manager.handle_failure(
                job,
                RetryableError(f"lease held by {job.worker_id} expired", error_code="LEASE_EXPIRED"),
            )
        return len(expired)

    async def _resync_loop(self):
        while self.is_running:
            await asyncio.sleep(self.config.resync_interval)
            try:
                await self.resync()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.error("Queue resync failed", exc_info=True)

    async def _lease_loop(self):
        while self.is_running:
            await asyncio.sleep(self.config.lease_check_interval)
            try:
                await self.reconcile_leases()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.error("Lease reconciliation failed", exc_info=True)

    def get_queue_statistics(self) -> Dict[str, int]:
        """Get queue statistics."""
        return {
            "queue_size": len(self._queued),
            "deferred_jobs": len(self._deferred),
            "running_jobs": len(self._running),
        }
