"""
Job-related data models for Report Job Orchestrator

Defines report jobs, their priorities, progress, error and output descriptors,
and the job status state machine.
"""

from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass, field

from .common import utcnow, generate_object_id, isoformat, parse_datetime
from .parameters import ReportParameters, StoredReportParameters


class JobStatus(Enum):
    """Job execution status enumeration."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobPriority(Enum):
    """Job priority enumeration, ordered from lowest to highest."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """Numeric rank; higher ranks are dispatched first."""
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {
    JobPriority.LOW: 0,
    JobPriority.NORMAL: 1,
    JobPriority.HIGH: 2,
    JobPriority.URGENT: 3,
}


class Visibility(Enum):
    """Who may view and download a job's output."""
    PRIVATE = "private"
    DEPARTMENT = "department"
    ORGANIZATION = "organization"


@dataclass
class JobProgress:
    """Progress of a running job. ``percentage`` never decreases."""

    percentage: float = 0.0
    current_step: str = "queued"
    records_processed: Optional[int] = None
    total_records: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "percentage": self.percentage,
            "currentStep": self.current_step,
        }
        if self.records_processed is not None:
            data["recordsProcessed"] = self.records_processed
        if self.total_records is not None:
            data["totalRecords"] = self.total_records
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "JobProgress":
        if not data:
            return cls()
        return cls(
            percentage=float(data.get("percentage", 0.0)),
            current_step=data.get("currentStep", "queued"),
            records_processed=data.get("recordsProcessed"),
            total_records=data.get("totalRecords"),
        )


@dataclass
class JobError:
    """Failure details; present only once a job has failed at least once."""

    code: str
    message: str
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    retryable: bool = False
    next_retry_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryCount": self.retry_count,
            "lastRetryAt": isoformat(self.last_retry_at),
            "retryable": self.retryable,
            "nextRetryAt": isoformat(self.next_retry_at),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["JobError"]:
        if not data:
            return None
        return cls(
            code=data.get("code") or "UNKNOWN_ERROR",
            message=data.get("message", ""),
            retry_count=int(data.get("retryCount", 0)),
            last_retry_at=parse_datetime(data.get("lastRetryAt")),
            retryable=bool(data.get("retryable", False)),
            next_retry_at=parse_datetime(data.get("nextRetryAt")),
        )


@dataclass
class StorageDescriptor:
    """Where a rendered artifact lives and until when it can be downloaded."""

    provider: str
    expires_at: datetime
    path: Optional[str] = None
    bucket: Optional[str] = None
    key: Optional[str] = None
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "provider": self.provider,
            "path": self.path,
            "bucket": self.bucket,
            "key": self.key,
            "url": self.url,
            "expiresAt": isoformat(self.expires_at),
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["StorageDescriptor"]:
        if not data:
            return None
        return cls(
            provider=data["provider"],
            expires_at=parse_datetime(data["expiresAt"]),
            path=data.get("path"),
            bucket=data.get("bucket"),
            key=data.get("key"),
            url=data.get("url"),
        )


@dataclass
class JobOutput:
    """Requested output format and, once produced, its storage descriptor."""

    format: str
    filename: Optional[str] = None
    storage: Optional[StorageDescriptor] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"format": self.format}
        if self.filename:
            data["filename"] = self.filename
        if self.storage:
            data["storage"] = self.storage.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobOutput":
        return cls(
            format=data["format"],
            filename=data.get("filename"),
            storage=StorageDescriptor.from_dict(data.get("storage")),
        )


@dataclass
class ReportJob:
    """Core report job data model."""

    # Primary identification
    report_type: str
    name: str
    requested_by: str

    # Job configuration
    parameters: ReportParameters = field(default_factory=ReportParameters)
    output: JobOutput = field(default_factory=lambda: JobOutput(format="csv"))
    id: str = field(default_factory=generate_object_id)
    description: Optional[str] = None
    priority: JobPriority = JobPriority.NORMAL
    visibility: Visibility = Visibility.PRIVATE

    # Status tracking
    status: JobStatus = JobStatus.QUEUED
    progress: JobProgress = field(default_factory=JobProgress)
    error: Optional[JobError] = None

    # Provenance
    department_id: Optional[str] = None
    template_id: Optional[str] = None
    schedule_id: Optional[str] = None
    scheduled_for: Optional[datetime] = None

    # Lease held by the executing worker
    worker_id: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    # Cooperative cancellation
    cancel_requested: bool = False
    cancel_reason: Optional[str] = None

    # Timestamps
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def retry_count(self) -> int:
        return self.error.retry_count if self.error else 0

    @property
    def expires_at(self) -> Optional[datetime]:
        return self.output.storage.expires_at if self.output.storage else None

    @property
    def retry_pending(self) -> bool:
        """True while an automatic retry is scheduled for a failed job."""
        return (
            self.status == JobStatus.FAILED
            and self.error is not None
            and self.error.next_retry_at is not None
        )

    def is_terminal(self) -> bool:
        """Check if job is in a terminal state."""
        if self.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
            return True
        return self.status == JobStatus.FAILED and not self.retry_pending

    def can_be_cancelled(self) -> bool:
        """Check if job can be cancelled."""
        return self.status in (JobStatus.QUEUED, JobStatus.RUNNING) or self.retry_pending

    def is_eligible(self, now: datetime) -> bool:
        """Queued and not deferred past ``now``."""
        if self.status != JobStatus.QUEUED:
            return False
        return self.scheduled_for is None or self.scheduled_for <= now

    def dispatch_key(self) -> Tuple[int, datetime, str]:
        """Sort key: highest priority first, then oldest first."""
        return (-self.priority.rank, self.created_at, self.id)

    def get_duration(self) -> Optional[float]:
        """Get job duration in seconds if completed."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def update_progress(
        self,
        percentage: float,
        current_step: str,
        records_processed: Optional[int] = None,
        total_records: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Apply a progress update.

        Returns False (and leaves the job untouched) when the update would
        move the percentage backwards.
        """
        percentage = max(0.0, min(100.0, float(percentage)))
        if percentage < self.progress.percentage:
            return False

        self.progress.percentage = percentage
        self.progress.current_step = current_step
        if records_processed is not None:
            self.progress.records_processed = records_processed
        if total_records is not None:
            self.progress.total_records = total_records
        self.updated_at = now or utcnow()
        return True

    def to_summary(self) -> Dict[str, Any]:
        """Summary representation used in job listings."""
        summary: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "reportType": self.report_type,
            "status": self.status.value,
            "priority": self.priority.value,
            "visibility": self.visibility.value,
            "progress": self.progress.to_dict(),
            "requestedBy": self.requested_by,
            "departmentId": self.department_id,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
            "startedAt": isoformat(self.started_at),
            "completedAt": isoformat(self.completed_at),
            "expiresAt": isoformat(self.expires_at),
            "output": {
                "format": self.output.format,
                "downloadUrl": self.output.storage.url if self.output.storage else None,
            },
        }
        return summary

    def to_dict(self) -> Dict[str, Any]:
        """Full detail representation."""
        detail = self.to_summary()
        detail.update({
            "parameters": self.parameters.to_dict(),
            "output": self.output.to_dict(),
            "error": self.error.to_dict() if self.error else None,
            "scheduledFor": isoformat(self.scheduled_for),
            "templateId": self.template_id,
            "scheduleId": self.schedule_id,
            "cancelRequested": self.cancel_requested,
            "cancelledAt": isoformat(self.cancelled_at),
        })
        return detail

    def to_record(self) -> Dict[str, Any]:
        """Flatten the job into a storage row."""
        return {
            "id": self.id,
            "report_type": self.report_type,
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters.to_dict(),
            "output": self.output.to_dict(),
            "priority": self.priority.value,
            "priority_rank": self.priority.rank,
            "visibility": self.visibility.value,
            "status": self.status.value,
            "progress": self.progress.to_dict(),
            "error": self.error.to_dict() if self.error else None,
            "requested_by": self.requested_by,
            "department_id": self.department_id,
            "template_id": self.template_id,
            "schedule_id": self.schedule_id,
            "scheduled_for": self.scheduled_for,
            "worker_id": self.worker_id,
            "lease_expires_at": self.lease_expires_at,
            "cancel_requested": self.cancel_requested,
            "cancel_reason": self.cancel_reason,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "cancelled_at": self.cancelled_at,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "ReportJob":
        """Create a job from a storage row."""
        return cls(
            id=data["id"],
            report_type=data["report_type"],
            name=data["name"],
            description=data.get("description"),
            parameters=StoredReportParameters.model_validate(data.get("parameters") or {}),
            output=JobOutput.from_dict(data["output"]),
            priority=JobPriority(data["priority"]),
            visibility=Visibility(data["visibility"]),
            status=JobStatus(data["status"]),
            progress=JobProgress.from_dict(data.get("progress")),
            error=JobError.from_dict(data.get("error")),
            requested_by=data["requested_by"],
            department_id=data.get("department_id"),
            template_id=data.get("template_id"),
            schedule_id=data.get("schedule_id"),
            scheduled_for=parse_datetime(data.get("scheduled_for")),
            worker_id=data.get("worker_id"),
            lease_expires_at=parse_datetime(data.get("lease_expires_at")),
            cancel_requested=bool(data.get("cancel_requested", False)),
            cancel_reason=data.get("cancel_reason"),
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
            started_at=parse_datetime(data.get("started_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            cancelled_at=parse_datetime(data.get("cancelled_at")),
        )


# Job status transition rules
JOB_STATUS_TRANSITIONS = {
    JobStatus.QUEUED: [JobStatus.RUNNING, JobStatus.CANCELLED],
    JobStatus.RUNNING: [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.QUEUED],
    JobStatus.FAILED: [JobStatus.QUEUED, JobStatus.CANCELLED],
    JobStatus.COMPLETED: [],  # Terminal state
    JobStatus.CANCELLED: [],  # Terminal state
}


def can_transition_to(current_status: JobStatus, target_status: JobStatus) -> bool:
    """Check if a job can transition from current status to target status."""
    return target_status in JOB_STATUS_TRANSITIONS.get(current_status, [])


def get_valid_transitions(current_status: JobStatus) -> List[JobStatus]:
    """Get list of valid status transitions from current status."""
    return JOB_STATUS_TRANSITIONS.get(current_status, [])
