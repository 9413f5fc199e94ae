"""
JobManager service for Report Job Orchestrator

The job submission gateway: validates and stores new report jobs, and
serves listing, lookup, cancellation, manual retry and pruning.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Union, TYPE_CHECKING

from ..core.exceptions import (
    ConflictError,
    DepartmentNotFoundError,
    JobNotFoundError,
    TemplateNotFoundError,
    UnsupportedFormatError,
    ValidationError,
)
from ..models.common import Page, utcnow, ensure_utc, is_object_id
from ..models.job import ReportJob, JobStatus, JobPriority, JobOutput, Visibility
from ..models.parameters import merge_parameters
from ..models.requests import CreateReportJobRequest, ListReportJobsQuery, parse_request
from ..reporting.base import DepartmentDirectory, StaticDepartmentDirectory
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from ..reporting.registry import ReportTypeRegistry
    from .fault_tolerance import RetryManager
    from .monitoring_service import MonitoringService
    from .queue_manager import QueueManager


SORT_FIELDS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "status": "status",
    "priority": "priority",
}


def require_object_id(value: str, field_name: str = "id") -> str:
    if not is_object_id(value):
        raise ValidationError(field_name, "must be a 24 character hex identifier", value=value)
    return value


class JobManager:
    """
    Manages report job submission and job-level operations.

    Provides capabilities for:
    - Validated submission (report type, format, template, department)
    - Queue position and wait estimates
    - Listing with filters, pagination and sorting
    - Cancellation of queued and running jobs
    """

    def __init__(
        self,
        database_manager,
        registry: "ReportTypeRegistry",
        queue_manager: "QueueManager",
        retry_manager: "RetryManager",
        departments: Optional[DepartmentDirectory] = None,
        monitoring: Optional["MonitoringService"] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = database_manager
        self.registry = registry
        self.queue_manager = queue_manager
        self.retry_manager = retry_manager
        self.departments = departments or StaticDepartmentDirectory()
        self.monitoring = monitoring
        self.clock = clock
        self.logger = get_logger(__name__)

    async def submit_job(
        self,
        request: Union[CreateReportJobRequest, Dict[str, Any]],
        requested_by: str,
    ) -> Dict[str, Any]:
        """
        Validate and queue a new report job.

        Args:
            request: Job creation request (model or camelCase mapping)
            requested_by: Id of the requesting user

        Returns:
            ``{id, status, queuePosition, estimatedWaitTime}``

        Raises:
            ValidationError: Bad shape, unknown report type or unsupported format
            TemplateNotFoundError: If ``templateId`` does not exist
            DepartmentNotFoundError: If ``departmentId`` does not exist
        """
        request = parse_request(CreateReportJobRequest, request)
        definition = self.registry.get(request.report_type)
        output_format = request.output.format.lower()
        if not definition.supports_format(output_format):
            raise UnsupportedFormatError(request.report_type, output_format)

        template = None
        if request.template_id:
            template = await self.db.get_template(request.template_id)
            if template is None:
                raise TemplateNotFoundError(request.template_id)
            if template.report_type != request.report_type:
                raise ValidationError(
                    "templateId",
                    f"template is for report type '{template.report_type}'",
                    value=request.template_id
                )

        if request.department_id and not await self.departments.exists(request.department_id):
            raise DepartmentNotFoundError(request.department_id)

        merged = merge_parameters(template.parameters if template else None, request.parameters)
        parameters = definition.parse_parameters(merged)

        now = self.clock()
        filename = request.output.filename
        if filename is None and template is not None:
            filename = template.render_filename(now)

        visibility = request.visibility
        if visibility is None:
            visibility = template.visibility if template else Visibility.PRIVATE

        job = ReportJob(
            report_type=request.report_type,
            name=request.name,
            description=request.description,
            requested_by=requested_by,
            parameters=parameters,
            output=JobOutput(format=output_format, filename=filename),
            priority=request.priority or JobPriority.NORMAL,
            visibility=visibility,
            department_id=request.department_id,
            template_id=request.template_id,
            scheduled_for=ensure_utc(request.scheduled_for),
            created_at=now,
            updated_at=now,
        )
        job = await self.enqueue_job(job)
        if template is not None:
            await self.db.increment_template_usage(template.id)

        queue_position = await self.db.count_jobs_ahead(job, now)
        mean_duration = await self.db.mean_duration(job.report_type)
        estimated_wait = queue_position * mean_duration if mean_duration is not None else None

        self.logger.info("Job submitted", extra={
            "job_id": job.id,
            "report_type": job.report_type,
            "priority": job.priority.value,
            "queue_position": queue_position
        })
        return {
            "id": job.id,
            "status": job.status.value,
            "queuePosition": queue_position,
            "estimatedWaitTime": estimated_wait,
        }

    async def enqueue_job(self, job: ReportJob) -> ReportJob:
        """
        Store a new queued job and hand it to the dispatcher.

        Raises:
            DuplicateJobError: If a schedule firing was already materialized
        """
        stored = await self.db.insert_job(job)
        if self.monitoring:
            self.monitoring.record_submitted(stored.report_type)
        self.queue_manager.enqueue(stored)
        return stored

    async def get_job(self, job_id: str) -> ReportJob:
        """
        Get a job by id.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        require_object_id(job_id)
        job = await self.db.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(self, query: Union[ListReportJobsQuery, Dict[str, Any], None] = None) -> Page:
        query = parse_request(ListReportJobsQuery, query)
        items, total = await self.db.list_jobs(
            statuses=query.status,
            report_types=query.report_type,
            requested_by=query.requested_by,
            department_id=query.department_id,
            from_date=ensure_utc(query.from_date),
            to_date=ensure_utc(query.to_date),
            sort_by=SORT_FIELDS[query.sort_by],
            sort_order=query.sort_order,
            offset=(query.page - 1) * query.limit,
            limit=query.limit,
        )
        return Page(items=items, page=query.page, limit=query.limit, total=total)

    async def cancel_job(self, job_id: str, reason: Optional[str] = None, allow_running: bool = True) -> ReportJob:
        """
        Cancel a job.

        A queued job, or a failed job waiting on an automatic retry, is
        cancelled immediately. A running job receives a cooperative cancel
        request that its worker acknowledges at the next checkpoint, unless
        ``allow_running`` is False.

        Raises:
            JobNotFoundError: If the job does not exist
            ConflictError: If the job is terminal, or running and ``allow_running`` is False
        """
        job = await self.get_job(job_id)

        # A lost compare-and-set means the status moved; re-read and decide again
        for _ in range(3):
            now = self.clock()
            if job.status == JobStatus.QUEUED:
                cancelled = await self.db.compare_and_set_job(
                    job_id,
                    JobStatus.QUEUED,
                    {
                        "status": JobStatus.CANCELLED,
                        "cancelled_at": now,
                        "cancel_reason": reason,
                        "updated_at": now,
                    },
                )
                if cancelled is not None:
                    self.queue_manager.discard(job_id)
                    self.logger.info("Queued job cancelled", extra={"job_id": job_id, "reason": reason})
                    if self.monitoring:
                        self.monitoring.record_finished(job.report_type, JobStatus.CANCELLED.value)
                    return cancelled

            elif job.status == JobStatus.RUNNING:
                if not allow_running:
                    raise ConflictError(
                        f"Report job {job_id} is already running",
                        error_code="INVALID_JOB_STATE",
                        details={"job_id": job_id, "status": job.status.value}
                    )
                requested = await self.db.compare_and_set_job(
                    job_id,
                    JobStatus.RUNNING,
                    {"cancel_requested": True, "cancel_reason": reason, "updated_at": now},
                )
                if requested is not None:
                    self.logger.info("Cancel requested for running job", extra={"job_id": job_id})
                    return requested

            elif job.retry_pending:
                error = job.error
                error.next_retry_at = None
                cancelled = await self.db.compare_and_set_job(
                    job_id,
                    JobStatus.FAILED,
                    {
                        "status": JobStatus.CANCELLED,
                        "cancelled_at": now,
                        "cancel_reason": reason,
                        "error": error,
                        "updated_at": now,
                    },
                    retry_count=job.retry_count,
                )
                if cancelled is not None:
                    self.retry_manager.disarm(job_id)
                    self.logger.info("Pending retry cancelled", extra={
                        "job_id": job_id,
                        "retry_count": cancelled.retry_count,
                        "reason": reason
                    })
                    if self.monitoring:
                        self.monitoring.record_finished(job.report_type, JobStatus.CANCELLED.value)
                    return cancelled

            else:
                raise ConflictError(
                    f"Report job {job_id} is {job.status.value} and cannot be cancelled",
                    error_code="INVALID_JOB_STATE",
                    details={"job_id": job_id, "status": job.status.value}
                )

            job = await self.get_job(job_id)

        raise ConflictError(
            f"Report job {job_id} changed state during cancellation",
            error_code="INVALID_JOB_STATE",
            details={"job_id": job_id}
        )

    async def retry_job(self, job_id: str) -> ReportJob:
        require_object_id(job_id)
        return await self.retry_manager.retry_job(job_id)

    async def prune_jobs(self, older_than_days: float) -> int:
        """Delete terminal job records last updated more than ``older_than_days`` ago."""
        if older_than_days < 0:
            raise ValidationError("olderThanDays", "must not be negative", value=older_than_days)
        cutoff = self.clock() - timedelta(days=older_than_days)
        pruned = await self.db.prune_jobs(cutoff)
        self.logger.info(f"Pruned {pruned} job records", extra={"cutoff": str(cutoff)})
        return pruned
