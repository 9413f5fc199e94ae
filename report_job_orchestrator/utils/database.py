"""
Database utilities for Report Job Orchestrator

Provides the durable job, schedule and template stores. ``DatabaseManager``
talks to PostgreSQL through asyncpg; ``InMemoryDatabaseManager`` implements
the same interface in process for tests, the CLI and single-node use.

Every state change of a job goes through a compare-and-set: the update only
applies when the row still has the expected status (and, where given, the
expected lease owner, retry count or eligibility time). A ``None`` return
means the caller lost the race.
"""

import asyncio
import copy
import json
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import asyncpg

from ..models.common import utcnow, isoformat
from ..models.job import ReportJob, JobStatus, JobPriority
from ..models.schedule import ReportSchedule
from ..models.template import ReportTemplate
from ..core.exceptions import DatabaseError, DuplicateJobError
from .logger import get_logger


JOB_COLUMNS = (
    "id", "report_type", "name", "description", "parameters", "output",
    "priority", "priority_rank", "visibility", "status", "progress", "error",
    "requested_by", "department_id", "template_id", "schedule_id",
    "scheduled_for", "worker_id", "lease_expires_at", "cancel_requested",
    "cancel_reason", "created_at", "updated_at", "started_at",
    "completed_at", "cancelled_at",
)

SCHEDULE_COLUMNS = (
    "id", "name", "description", "template_id", "frequency", "timezone",
    "time_of_day", "parameter_overrides", "output_format", "delivery_method",
    "priority", "department_id", "created_by", "is_active", "next_run_at",
    "last_run_at", "anchor_day", "paused_at", "pause_reason", "created_at", "updated_at",
)

TEMPLATE_COLUMNS = (
    "id", "name", "description", "report_type", "parameters",
    "default_format", "filename_template", "visibility", "shared_with",
    "is_active", "usage_count", "created_by", "created_at", "updated_at",
)

JOB_SORT_COLUMNS = {
    "created_at": "created_at",
    "updated_at": "updated_at",
    "status": "status",
    "priority": "priority_rank",
}

StatusArg = Union[JobStatus, Sequence[JobStatus]]


def encode_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Convert model values (enums, nested descriptors) to column values."""
    encoded: Dict[str, Any] = {}
    for key, value in changes.items():
        if isinstance(value, JobPriority):
            encoded["priority_rank"] = value.rank
            value = value.value
        elif isinstance(value, Enum):
            value = value.value
        elif hasattr(value, "to_dict"):
            value = value.to_dict()
        encoded[key] = value
    encoded.setdefault("updated_at", utcnow())
    return encoded


def _statuses(expected: StatusArg) -> List[str]:
    if isinstance(expected, JobStatus):
        return [expected.value]
    return [status.value for status in expected]


def _check_columns(changes: Dict[str, Any], allowed: Iterable[str], table: str) -> None:
    unknown = set(changes) - set(allowed)
    if unknown:
        raise DatabaseError("update", f"unknown column(s) {sorted(unknown)}", table=table)


class DatabaseManager:
    """
    PostgreSQL-backed store for jobs, schedules and templates.

    Provides high-level methods with connection pooling; job status changes
    are single ``UPDATE ... WHERE status = ... RETURNING *`` statements.
    """

    def __init__(self, connection_string: str, pool_size: int = 10, max_overflow: int = 20):
        """
        Initialize database manager.

        Args:
            connection_string: PostgreSQL connection string
            pool_size: Base connection pool size
            max_overflow: Maximum additional connections
        """
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool: Optional[asyncpg.Pool] = None
        self.logger = get_logger(__name__)

    @staticmethod
    async def _init_connection(connection: asyncpg.Connection) -> None:
        for type_name in ("json", "jsonb"):
            await connection.set_type_codec(
                type_name,
                encoder=lambda value: json.dumps(value, default=str),
                decoder=json.loads,
                schema="pg_catalog",
            )

    async def initialize(self) -> None:
        """Initialize database connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=1,
                max_size=self.pool_size + self.max_overflow,
                command_timeout=60,
                init=self._init_connection,
            )
        except Exception as e:
            raise DatabaseError("initialization", f"Failed to create connection pool: {str(e)}")

    async def close(self) -> None:
        """Close database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def is_healthy(self) -> bool:
        """Check database connectivity."""
        try:
            async with self.get_connection() as connection:
                await connection.execute("SELECT 1")
                return True
        except Exception:
            return False

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self.pool:
            raise DatabaseError("connection", "Database pool not initialized")

        async with self.pool.acquire() as connection:
            yield connection

    async def apply_schema(self, sql: str) -> None:
        """Execute a schema script (idempotent DDL)."""
        try:
            async with self.get_connection() as conn:
                await conn.execute(sql)
        except Exception as e:
            raise DatabaseError("apply_schema", str(e))

    # Job methods
    async def insert_job(self, job: ReportJob) -> ReportJob:
        """
        Insert a new job.

        Raises:
            DuplicateJobError: If the job's (schedule_id, scheduled_for) was already materialized
        """
        record = job.to_record()
        placeholders = ", ".join(f"${i}" for i in range(1, len(JOB_COLUMNS) + 1))
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    f"INSERT INTO report_jobs ({', '.join(JOB_COLUMNS)}) VALUES ({placeholders}) RETURNING *",
                    *[record[column] for column in JOB_COLUMNS]
                )
                return ReportJob.from_record(dict(row))
        except asyncpg.UniqueViolationError:
            if job.schedule_id:
                raise DuplicateJobError(job.schedule_id, isoformat(job.scheduled_for))
            raise DatabaseError("insert_job", f"job {job.id} already exists", table="report_jobs")
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("insert_job", str(e), table="report_jobs")

    async def get_job(self, job_id: str) -> Optional[ReportJob]:
        """Get a job by ID."""
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow("SELECT * FROM report_jobs WHERE id = $1", job_id)
                return ReportJob.from_record(dict(row)) if row else None
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("get_job", str(e), table="report_jobs")

    async def list_jobs(
        self,
        statuses: Optional[Sequence[JobStatus]] = None,
        report_types: Optional[Sequence[str]] = None,
        requested_by: Optional[str] = None,
        department_id: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[ReportJob], int]:
        """List jobs matching the filters; returns one page and the total count."""
        conditions: List[str] = []
        args: List[Any] = []

        def add(condition: str, value: Any) -> None:
            args.append(value)
            conditions.append(condition.format(n=len(args)))

        if statuses:
            add("status = ANY(${n}::text[])", [status.value for status in statuses])
        if report_types:
            add("report_type = ANY(${n}::text[])", list(report_types))
        if requested_by:
            add("requested_by = ${n}", requested_by)
        if department_id:
            add("department_id = ${n}", department_id)
        if from_date:
            add("created_at >= ${n}", from_date)
        if to_date:
            add("created_at <= ${n}", to_date)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        column = JOB_SORT_COLUMNS.get(sort_by, "created_at")
        direction = "ASC" if sort_order == "asc" else "DESC"

        try:
            async with self.get_connection() as conn:
                total = await conn.fetchval(f"SELECT COUNT(*) FROM report_jobs {where}", *args)
                rows = await conn.fetch(
                    f"SELECT * FROM report_jobs {where} ORDER BY {column} {direction}, id {direction} "
                    f"LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}",
                    *args, limit, offset
                )
                return [ReportJob.from_record(dict(row)) for row in rows], int(total or 0)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("list_jobs", str(e), table="report_jobs")

    async def compare_and_set_job(
        self,
        job_id: str,
        expected: StatusArg,
        changes: Dict[str, Any],
        worker_id: Optional[str] = None,
        retry_count: Optional[int] = None,
        eligible_at: Optional[datetime] = None,
        cancel_requested: Optional[bool] = None,
    ) -> Optional[ReportJob]:
        """
        Atomically update a job if it is still in the expected state.

        Args:
            job_id: Job to update
            expected: Status (or statuses) the job must currently have
            changes: Column values to set; model values are encoded
            worker_id: If given, the job's lease must be held by this worker
            retry_count: If given, the job's retry count must equal this
            eligible_at: If given, the job's scheduled_for must be unset or not after this
            cancel_requested: If given, the job's cancel flag must equal this

        Returns:
            The updated job, or None if the guard did not match
        """
        values = encode_changes(changes)
        _check_columns(values, JOB_COLUMNS, "report_jobs")

        args: List[Any] = []
        assignments = []
        for column, value in values.items():
            args.append(value)
            assignments.append(f"{column} = ${len(args)}")

        args.append(job_id)
        conditions = [f"id = ${len(args)}"]
        args.append(_statuses(expected))
        conditions.append(f"status = ANY(${len(args)}::text[])")
        if worker_id is not None:
            args.append(worker_id)
            conditions.append(f"worker_id = ${len(args)}")
        if retry_count is not None:
            args.append(retry_count)
            conditions.append(f"COALESCE((error->>'retryCount')::int, 0) = ${len(args)}")
        if eligible_at is not None:
            args.append(eligible_at)
            conditions.append(f"(scheduled_for IS NULL OR scheduled_for <= ${len(args)})")
        if cancel_requested is not None:
            args.append(cancel_requested)
            conditions.append(f"cancel_requested = ${len(args)}")

        query = (
            f"UPDATE report_jobs SET {', '.join(assignments)} "
            f"WHERE {' AND '.join(conditions)} RETURNING *"
        )
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(query, *args)
                return ReportJob.from_record(dict(row)) if row else None
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("compare_and_set_job", str(e), table="report_jobs")

    async def list_queued_jobs(self) -> List[ReportJob]:
        """All queued jobs in dispatch order."""
        return await self._fetch_jobs(
            "list_queued_jobs",
            "SELECT * FROM report_jobs WHERE status = 'queued' ORDER BY priority_rank DESC, created_at ASC, id ASC"
        )

    async def count_jobs_ahead(self, job: ReportJob, now: datetime) -> int:
        """Number of eligible queued jobs that would be dispatched before ``job``."""
        try:
            async with self.get_connection() as conn:
                count = await conn.fetchval(
                    """
                    SELECT COUNT(*) FROM report_jobs
                    WHERE status = 'queued'
                      AND id <> $1
                      AND (scheduled_for IS NULL OR scheduled_for <= $2)
                      AND (priority_rank > $3
                           OR (priority_rank = $3 AND (created_at < $4
                               OR (created_at = $4 AND id < $1))))
                    """,
                    job.id, now, job.priority.rank, job.created_at
                )
                return int(count or 0)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("count_jobs_ahead", str(e), table="report_jobs")

    async def mean_duration(self, report_type: str, sample_size: int = 50) -> Optional[float]:
        """Mean run time in seconds of the latest completed jobs of a report type."""
        try:
            async with self.get_connection() as conn:
                value = await conn.fetchval(
                    """
                    SELECT AVG(EXTRACT(EPOCH FROM (completed_at - started_at))) FROM (
                        SELECT started_at, completed_at FROM report_jobs
                        WHERE report_type = $1 AND status = 'completed'
                          AND started_at IS NOT NULL AND completed_at IS NOT NULL
                        ORDER BY completed_at DESC
                        LIMIT $2
                    ) recent
                    """,
                    report_type, sample_size
                )
                return float(value) if value is not None else None
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("mean_duration", str(e), table="report_jobs")

    async def find_expired_leases(self, now: datetime) -> List[ReportJob]:
        """Running jobs whose lease expired before ``now``."""
        return await self._fetch_jobs(
            "find_expired_leases",
            "SELECT * FROM report_jobs WHERE status = 'running' AND lease_expires_at < $1",
            now
        )

    async def list_pending_retries(self) -> List[ReportJob]:
        """Failed jobs with an automatic retry scheduled."""
        return await self._fetch_jobs(
            "list_pending_retries",
            "SELECT * FROM report_jobs WHERE status = 'failed' AND error->>'nextRetryAt' IS NOT NULL"
        )

    async def list_jobs_by_status(self, status: JobStatus) -> List[ReportJob]:
        return await self._fetch_jobs(
            "list_jobs_by_status",
            "SELECT * FROM report_jobs WHERE status = $1",
            status.value
        )

    async def list_expired_outputs(self, now: datetime) -> List[ReportJob]:
        """Completed jobs whose artifact is past its expiry."""
        return await self._fetch_jobs(
            "list_expired_outputs",
            """
            SELECT * FROM report_jobs
            WHERE status = 'completed'
              AND output->'storage' IS NOT NULL
              AND (output->'storage'->>'expiresAt')::timestamptz <= $1
            """,
            now
        )

    async def count_jobs_by_status(self) -> Dict[str, int]:
        """Get job counts per status."""
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch("SELECT status, COUNT(*) AS count FROM report_jobs GROUP BY status")
                stats = {status.value: 0 for status in JobStatus}
                stats["total"] = 0
                for row in rows:
                    stats[row["status"]] = row["count"]
                    stats["total"] += row["count"]
                return stats
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("count_jobs_by_status", str(e), table="report_jobs")

    async def prune_jobs(self, before: datetime) -> int:
        """Delete terminal jobs last updated before ``before``."""
        try:
            async with self.get_connection() as conn:
                result = await conn.execute(
                    """
                    DELETE FROM report_jobs
                    WHERE updated_at < $1
                      AND (status IN ('completed', 'cancelled')
                           OR (status = 'failed' AND error->>'nextRetryAt' IS NULL))
                    """,
                    before
                )
                return int(result.split()[-1])
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("prune_jobs", str(e), table="report_jobs")

    async def _fetch_jobs(self, operation: str, query: str, *args: Any) -> List[ReportJob]:
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch(query, *args)
                return [ReportJob.from_record(dict(row)) for row in rows]
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(operation, str(e), table="report_jobs")

    # Schedule methods
    async def insert_schedule(self, schedule: ReportSchedule) -> ReportSchedule:
        record = schedule.to_record()
        placeholders = ", ".join(f"${i}" for i in range(1, len(SCHEDULE_COLUMNS) + 1))
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    f"INSERT INTO report_schedules ({', '.join(SCHEDULE_COLUMNS)}) "
                    f"VALUES ({placeholders}) RETURNING *",
                    *[record[column] for column in SCHEDULE_COLUMNS]
                )
                return ReportSchedule.from_record(dict(row))
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("insert_schedule", str(e), table="report_schedules")

    async def get_schedule(self, schedule_id: str) -> Optional[ReportSchedule]:
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow("SELECT * FROM report_schedules WHERE id = $1", schedule_id)
                return ReportSchedule.from_record(dict(row)) if row else None
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("get_schedule", str(e), table="report_schedules")

    async def update_schedule(
        self,
        schedule_id: str,
        changes: Dict[str, Any],
        is_active: Optional[bool] = None,
    ) -> Optional[ReportSchedule]:
        """
        Update schedule columns.

        When ``is_active`` is given the update only applies if the schedule's
        current active flag matches it.
        """
        return await self._update_schedule("update_schedule", schedule_id, changes, is_active=is_active)

    async def advance_schedule(
        self,
        schedule_id: str,
        expected_next_run_at: datetime,
        changes: Dict[str, Any],
    ) -> Optional[ReportSchedule]:
        """Move an active schedule past a firing, guarded by its previous next_run_at."""
        return await self._update_schedule(
            "advance_schedule", schedule_id, changes,
            is_active=True, next_run_at=expected_next_run_at
        )

    async def _update_schedule(
        self,
        operation: str,
        schedule_id: str,
        changes: Dict[str, Any],
        is_active: Optional[bool] = None,
        next_run_at: Optional[datetime] = None,
    ) -> Optional[ReportSchedule]:
        values = encode_changes(changes)
        values.pop("priority_rank", None)
        _check_columns(values, SCHEDULE_COLUMNS, "report_schedules")

        args: List[Any] = []
        assignments = []
        for column, value in values.items():
            args.append(value)
            assignments.append(f"{column} = ${len(args)}")

        args.append(schedule_id)
        conditions = [f"id = ${len(args)}"]
        if is_active is not None:
            args.append(is_active)
            conditions.append(f"is_active = ${len(args)}")
        if next_run_at is not None:
            args.append(next_run_at)
            conditions.append(f"next_run_at = ${len(args)}")

        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    f"UPDATE report_schedules SET {', '.join(assignments)} "
                    f"WHERE {' AND '.join(conditions)} RETURNING *",
                    *args
                )
                return ReportSchedule.from_record(dict(row)) if row else None
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(operation, str(e), table="report_schedules")

    async def list_schedules(
        self,
        template_id: Optional[str] = None,
        is_active: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[ReportSchedule], int]:
        conditions: List[str] = []
        args: List[Any] = []
        if template_id:
            args.append(template_id)
            conditions.append(f"template_id = ${len(args)}")
        if is_active is not None:
            args.append(is_active)
            conditions.append(f"is_active = ${len(args)}")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        try:
            async with self.get_connection() as conn:
                total = await conn.fetchval(f"SELECT COUNT(*) FROM report_schedules {where}", *args)
                rows = await conn.fetch(
                    f"SELECT * FROM report_schedules {where} ORDER BY created_at DESC, id DESC "
                    f"LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}",
                    *args, limit, offset
                )
                return [ReportSchedule.from_record(dict(row)) for row in rows], int(total or 0)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("list_schedules", str(e), table="report_schedules")

    async def list_due_schedules(self, now: datetime) -> List[ReportSchedule]:
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch(
                    "SELECT * FROM report_schedules WHERE is_active AND next_run_at <= $1 ORDER BY next_run_at, id",
                    now
                )
                return [ReportSchedule.from_record(dict(row)) for row in rows]
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("list_due_schedules", str(e), table="report_schedules")

    async def count_active_schedules(self, template_id: Optional[str] = None) -> int:
        try:
            async with self.get_connection() as conn:
                if template_id:
                    count = await conn.fetchval(
                        "SELECT COUNT(*) FROM report_schedules WHERE is_active AND template_id = $1",
                        template_id
                    )
                else:
                    count = await conn.fetchval("SELECT COUNT(*) FROM report_schedules WHERE is_active")
                return int(count or 0)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("count_active_schedules", str(e), table="report_schedules")

    # Template methods
    async def insert_template(self, template: ReportTemplate) -> ReportTemplate:
        record = template.to_record()
        placeholders = ", ".join(f"${i}" for i in range(1, len(TEMPLATE_COLUMNS) + 1))
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    f"INSERT INTO report_templates ({', '.join(TEMPLATE_COLUMNS)}) "
                    f"VALUES ({placeholders}) RETURNING *",
                    *[record[column] for column in TEMPLATE_COLUMNS]
                )
                return ReportTemplate.from_record(dict(row))
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("insert_template", str(e), table="report_templates")

    async def get_template(self, template_id: str) -> Optional[ReportTemplate]:
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow("SELECT * FROM report_templates WHERE id = $1", template_id)
                return ReportTemplate.from_record(dict(row)) if row else None
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("get_template", str(e), table="report_templates")

    async def update_template(self, template_id: str, changes: Dict[str, Any]) -> Optional[ReportTemplate]:
        values = encode_changes(changes)
        values.pop("priority_rank", None)
        _check_columns(values, TEMPLATE_COLUMNS, "report_templates")
        assignments = [f"{column} = ${i}" for i, column in enumerate(values, start=1)]
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    f"UPDATE report_templates SET {', '.join(assignments)} "
                    f"WHERE id = ${len(values) + 1} RETURNING *",
                    *values.values(), template_id
                )
                return ReportTemplate.from_record(dict(row)) if row else None
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("update_template", str(e), table="report_templates")

    async def increment_template_usage(self, template_id: str) -> None:
        try:
            async with self.get_connection() as conn:
                await conn.execute(
                    "UPDATE report_templates SET usage_count = usage_count + 1 WHERE id = $1",
                    template_id
                )
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("increment_template_usage", str(e), table="report_templates")

    async def delete_template(self, template_id: str) -> bool:
        try:
            async with self.get_connection() as conn:
                result = await conn.execute("DELETE FROM report_templates WHERE id = $1", template_id)
                return result.split()[-1] != "0"
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("delete_template", str(e), table="report_templates")

    async def list_templates(
        self,
        report_type: Optional[str] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[ReportTemplate], int]:
        conditions: List[str] = []
        args: List[Any] = []
        if report_type:
            args.append(report_type)
            conditions.append(f"report_type = ${len(args)}")
        if search:
            args.append(f"%{search}%")
            conditions.append(f"(name ILIKE ${len(args)} OR description ILIKE ${len(args)})")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        try:
            async with self.get_connection() as conn:
                total = await conn.fetchval(f"SELECT COUNT(*) FROM report_templates {where}", *args)
                rows = await conn.fetch(
                    f"SELECT * FROM report_templates {where} ORDER BY created_at DESC, id DESC "
                    f"LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}",
                    *args, limit, offset
                )
                return [ReportTemplate.from_record(dict(row)) for row in rows], int(total or 0)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("list_templates", str(e), table="report_templates")


class InMemoryDatabaseManager:
    """
    In-process store with the same interface as ``DatabaseManager``.

    Rows are kept as plain records and every compare-and-set runs under a
    single ``asyncio.Lock``, so concurrent claims and cancels resolve exactly
    as they would against PostgreSQL.
    """

    def __init__(self):
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._schedules: Dict[str, Dict[str, Any]] = {}
        self._templates: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self.logger = get_logger(__name__)

    async def initialize(self) -> None:
        self.logger.debug("Using in-memory store")

    async def close(self) -> None:
        pass

    async def is_healthy(self) -> bool:
        return True

    # Job methods
    async def insert_job(self, job: ReportJob) -> ReportJob:
        record = copy.deepcopy(job.to_record())
        async with self._lock:
            if record["id"] in self._jobs:
                raise DatabaseError("insert_job", f"job {job.id} already exists", table="report_jobs")
            if job.schedule_id and job.scheduled_for is not None:
                for existing in self._jobs.values():
                    if (existing["schedule_id"] == job.schedule_id
                            and existing["scheduled_for"] == job.scheduled_for):
                        raise DuplicateJobError(job.schedule_id, isoformat(job.scheduled_for))
            self._jobs[record["id"]] = record
        return ReportJob.from_record(copy.deepcopy(record))

    async def get_job(self, job_id: str) -> Optional[ReportJob]:
        record = self._jobs.get(job_id)
        return ReportJob.from_record(copy.deepcopy(record)) if record else None

    async def list_jobs(
        self,
        statuses: Optional[Sequence[JobStatus]] = None,
        report_types: Optional[Sequence[str]] = None,
        requested_by: Optional[str] = None,
        department_id: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[ReportJob], int]:
        status_values = {status.value for status in statuses} if statuses else None
        type_values = set(report_types) if report_types else None

        def matches(record: Dict[str, Any]) -> bool:
            if status_values and record["status"] not in status_values:
                return False
            if type_values and record["report_type"] not in type_values:
                return False
            if requested_by and record["requested_by"] != requested_by:
                return False
            if department_id and record["department_id"] != department_id:
                return False
            if from_date and record["created_at"] < from_date:
                return False
            if to_date and record["created_at"] > to_date:
                return False
            return True

        column = JOB_SORT_COLUMNS.get(sort_by, "created_at")
        selected = [record for record in self._jobs.values() if matches(record)]
        selected.sort(key=lambda r: (r[column], r["id"]), reverse=(sort_order != "asc"))
        page = selected[offset:offset + limit]
        return [ReportJob.from_record(copy.deepcopy(r)) for r in page], len(selected)

    async def compare_and_set_job(
        self,
        job_id: str,
        expected: StatusArg,
        changes: Dict[str, Any],
        worker_id: Optional[str] = None,
        retry_count: Optional[int] = None,
        eligible_at: Optional[datetime] = None,
        cancel_requested: Optional[bool] = None,
    ) -> Optional[ReportJob]:
        values = copy.deepcopy(encode_changes(changes))
        _check_columns(values, JOB_COLUMNS, "report_jobs")

        async with self._lock:
            record = self._jobs.get(job_id)
            if record is None or record["status"] not in _statuses(expected):
                return None
            if worker_id is not None and record["worker_id"] != worker_id:
                return None
            if retry_count is not None and (record["error"] or {}).get("retryCount", 0) != retry_count:
                return None
            if eligible_at is not None and record["scheduled_for"] is not None \
                    and record["scheduled_for"] > eligible_at:
                return None
            if cancel_requested is not None and bool(record["cancel_requested"]) != cancel_requested:
                return None
            record.update(values)
            return ReportJob.from_record(copy.deepcopy(record))

    async def list_queued_jobs(self) -> List[ReportJob]:
        queued = [ReportJob.from_record(copy.deepcopy(r))
                  for r in self._jobs.values() if r["status"] == JobStatus.QUEUED.value]
        queued.sort(key=lambda job: job.dispatch_key())
        return queued

    async def count_jobs_ahead(self, job: ReportJob, now: datetime) -> int:
        key = job.dispatch_key()
        count = 0
        for record in self._jobs.values():
            if record["id"] == job.id or record["status"] != JobStatus.QUEUED.value:
                continue
            if record["scheduled_for"] is not None and record["scheduled_for"] > now:
                continue
            if (-record["priority_rank"], record["created_at"], record["id"]) < key:
                count += 1
        return count

    async def mean_duration(self, report_type: str, sample_size: int = 50) -> Optional[float]:
        finished = [
            r for r in self._jobs.values()
            if r["report_type"] == report_type and r["status"] == JobStatus.COMPLETED.value
            and r["started_at"] and r["completed_at"]
        ]
        finished.sort(key=lambda r: r["completed_at"], reverse=True)
        durations = [(r["completed_at"] - r["started_at"]).total_seconds() for r in finished[:sample_size]]
        if not durations:
            return None
        return sum(durations) / len(durations)

    async def find_expired_leases(self, now: datetime) -> List[ReportJob]:
        return self._select_jobs(
            lambda r: r["status"] == JobStatus.RUNNING.value
            and r["lease_expires_at"] is not None and r["lease_expires_at"] < now
        )

    async def list_pending_retries(self) -> List[ReportJob]:
        return self._select_jobs(
            lambda r: r["status"] == JobStatus.FAILED.value
            and bool((r["error"] or {}).get("nextRetryAt"))
        )

    async def list_jobs_by_status(self, status: JobStatus) -> List[ReportJob]:
        return self._select_jobs(lambda r: r["status"] == status.value)

    async def list_expired_outputs(self, now: datetime) -> List[ReportJob]:
        jobs = self._select_jobs(lambda r: r["status"] == JobStatus.COMPLETED.value)
        return [job for job in jobs if job.expires_at is not None and job.expires_at <= now]

    async def count_jobs_by_status(self) -> Dict[str, int]:
        stats = {status.value: 0 for status in JobStatus}
        for record in self._jobs.values():
            stats[record["status"]] += 1
        stats["total"] = len(self._jobs)
        return stats

    async def prune_jobs(self, before: datetime) -> int:
        async with self._lock:
            doomed = [
                job_id for job_id, r in self._jobs.items()
                if r["updated_at"] < before and (
                    r["status"] in (JobStatus.COMPLETED.value, JobStatus.CANCELLED.value)
                    or (r["status"] == JobStatus.FAILED.value and not (r["error"] or {}).get("nextRetryAt"))
                )
            ]
            for job_id in doomed:
                del self._jobs[job_id]
        return len(doomed)

    def _select_jobs(self, predicate) -> List[ReportJob]:
        return [ReportJob.from_record(copy.deepcopy(r)) for r in self._jobs.values() if predicate(r)]

    # Schedule methods
    async def insert_schedule(self, schedule: ReportSchedule) -> ReportSchedule:
        record = copy.deepcopy(schedule.to_record())
        async with self._lock:
            self._schedules[record["id"]] = record
        return ReportSchedule.from_record(copy.deepcopy(record))

    async def get_schedule(self, schedule_id: str) -> Optional[ReportSchedule]:
        record = self._schedules.get(schedule_id)
        return ReportSchedule.from_record(copy.deepcopy(record)) if record else None

    async def update_schedule(
        self,
        schedule_id: str,
        changes: Dict[str, Any],
        is_active: Optional[bool] = None,
    ) -> Optional[ReportSchedule]:
        return await self._update_schedule(schedule_id, changes, is_active=is_active)

    async def advance_schedule(
        self,
        schedule_id: str,
        expected_next_run_at: datetime,
        changes: Dict[str, Any],
    ) -> Optional[ReportSchedule]:
        return await self._update_schedule(
            schedule_id, changes, is_active=True, next_run_at=expected_next_run_at
        )

    async def _update_schedule(
        self,
        schedule_id: str,
        changes: Dict[str, Any],
        is_active: Optional[bool] = None,
        next_run_at: Optional[datetime] = None,
    ) -> Optional[ReportSchedule]:
        values = copy.deepcopy(encode_changes(changes))
        values.pop("priority_rank", None)
        _check_columns(values, SCHEDULE_COLUMNS, "report_schedules")

        async with self._lock:
            record = self._schedules.get(schedule_id)
            if record is None:
                return None
            if is_active is not None and record["is_active"] != is_active:
                return None
            if next_run_at is not None and record["next_run_at"] != next_run_at:
                return None
            record.update(values)
            return ReportSchedule.from_record(copy.deepcopy(record))

    async def list_schedules(
        self,
        template_id: Optional[str] = None,
        is_active: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[ReportSchedule], int]:
        selected = [
            r for r in self._schedules.values()
            if (not template_id or r["template_id"] == template_id)
            and (is_active is None or r["is_active"] == is_active)
        ]
        selected.sort(key=lambda r: (r["created_at"], r["id"]), reverse=True)
        page = selected[offset:offset + limit]
        return [ReportSchedule.from_record(copy.deepcopy(r)) for r in page], len(selected)

    async def list_due_schedules(self, now: datetime) -> List[ReportSchedule]:
        due = [
            r for r in self._schedules.values()
            if r["is_active"] and r["next_run_at"] is not None and r["next_run_at"] <= now
        ]
        due.sort(key=lambda r: (r["next_run_at"], r["id"]))
        return [ReportSchedule.from_record(copy.deepcopy(r)) for r in due]

    async def count_active_schedules(self, template_id: Optional[str] = None) -> int:
        return sum(
            1 for r in self._schedules.values()
            if r["is_active"] and (not template_id or r["template_id"] == template_id)
        )

    # Template methods
    async def insert_template(self, template: ReportTemplate) -> ReportTemplate:
        record = copy.deepcopy(template.to_record())
        async with self._lock:
            self._templates[record["id"]] = record
        return ReportTemplate.from_record(copy.deepcopy(record))

    async def get_template(self, template_id: str) -> Optional[ReportTemplate]:
        record = self._templates.get(template_id)
        return ReportTemplate.from_record(copy.deepcopy(record)) if record else None

    async def update_template(self, template_id: str, changes: Dict[str, Any]) -> Optional[ReportTemplate]:
        values = copy.deepcopy(encode_changes(changes))
        values.pop("priority_rank", None)
        _check_columns(values, TEMPLATE_COLUMNS, "report_templates")
        async with self._lock:
            record = self._templates.get(template_id)
            if record is None:
                return None
            record.update(values)
            return ReportTemplate.from_record(copy.deepcopy(record))

    async def increment_template_usage(self, template_id: str) -> None:
        async with self._lock:
            record = self._templates.get(template_id)
            if record is not None:
                record["usage_count"] += 1

    async def delete_template(self, template_id: str) -> bool:
        async with self._lock:
            return self._templates.pop(template_id, None) is not None

    async def list_templates(
        self,
        report_type: Optional[str] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[ReportTemplate], int]:
        needle = search.lower() if search else None

        def matches(record: Dict[str, Any]) -> bool:
            if report_type and record["report_type"] != report_type:
                return False
            if needle:
                haystack = f"{record['name']} {record.get('description') or ''}".lower()
                return needle in haystack
            return True

        selected = [r for r in self._templates.values() if matches(r)]
        selected.sort(key=lambda r: (r["created_at"], r["id"]), reverse=True)
        page = selected[offset:offset + limit]
        return [ReportTemplate.from_record(copy.deepcopy(r)) for r in page], len(selected)
