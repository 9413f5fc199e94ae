"""
Exception classes for Report Job Orchestrator

Provides the hierarchy of exceptions raised by job submission, dispatch,
execution, scheduling and artifact download.
"""

from typing import Optional, Dict, Any


class ReportOrchestratorError(Exception):
    """Base exception for all report orchestrator errors."""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


class ValidationError(ReportOrchestratorError):
    """Raised when input validation fails."""

    def __init__(self, field: str, message: str, value: Any = None, error_code: str = "VALIDATION_ERROR"):
        super().__init__(
            f"Validation error for {field}: {message}",
            error_code=error_code,
            details={"field": field, "value": str(value) if value is not None else None}
        )
        self.field = field


class UnsupportedFormatError(ValidationError):
    """Raised when an output format is not supported for a report type."""

    def __init__(self, report_type: str, output_format: str):
        super().__init__(
            "output.format",
            f"format '{output_format}' is not supported for report type '{report_type}'",
            value=output_format,
            error_code="UNSUPPORTED_FORMAT"
        )
        self.details["report_type"] = report_type


class NotFoundError(ReportOrchestratorError):
    """Base class for lookups of unknown entities."""


class JobNotFoundError(NotFoundError):
    """Raised when a requested job cannot be found."""

    def __init__(self, job_id: str):
        super().__init__(
            f"Report job {job_id} not found",
            error_code="JOB_NOT_FOUND",
            details={"job_id": job_id}
        )


class ScheduleNotFoundError(NotFoundError):
    """Raised when a requested schedule cannot be found."""

    def __init__(self, schedule_id: str):
        super().__init__(
            f"Report schedule {schedule_id} not found",
            error_code="SCHEDULE_NOT_FOUND",
            details={"schedule_id": schedule_id}
        )


class TemplateNotFoundError(NotFoundError):
    """Raised when a requested template cannot be found."""

    def __init__(self, template_id: str):
        super().__init__(
            f"Report template {template_id} not found",
            error_code="TEMPLATE_NOT_FOUND",
            details={"template_id": template_id}
        )


class DepartmentNotFoundError(NotFoundError):
    """Raised when a referenced department does not exist."""

    def __init__(self, department_id: str):
        super().__init__(
            f"Department {department_id} not found",
            error_code="DEPARTMENT_NOT_FOUND",
            details={"department_id": department_id}
        )


class ReportNotFoundError(NotFoundError):
    """Raised when a job has no downloadable artifact."""

    def __init__(self, job_id: str, status: Optional[str] = None):
        super().__init__(
            f"No report output available for job {job_id}",
            error_code="REPORT_NOT_FOUND",
            details={"job_id": job_id, "status": status}
        )


class ReportExpiredError(ReportOrchestratorError):
    """Raised when a report artifact is past its expiry."""

    def __init__(self, job_id: str, expires_at: Optional[str] = None):
        super().__init__(
            f"Report output for job {job_id} has expired",
            error_code="REPORT_EXPIRED",
            details={"job_id": job_id, "expires_at": expires_at}
        )


class ConflictError(ReportOrchestratorError):
    """Raised when an operation is illegal for the entity's current state."""

    def __init__(self, message: str, error_code: str = "CONFLICT", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code=error_code, details=details)


class DuplicateJobError(ConflictError):
    """Raised when a schedule firing has already been materialized."""

    def __init__(self, schedule_id: str, scheduled_for: str):
        super().__init__(
            f"Schedule {schedule_id} already produced a job for {scheduled_for}",
            error_code="DUPLICATE_SCHEDULED_JOB",
            details={"schedule_id": schedule_id, "scheduled_for": scheduled_for}
        )


class JobExecutionError(ReportOrchestratorError):
    """Raised when job execution encounters an error."""

    def __init__(self, message: str, error_code: str = "JOB_EXECUTION_ERROR", stage: Optional[str] = None):
        super().__init__(message, error_code=error_code, details={"stage": stage})


class RetryableError(JobExecutionError):
    """A transient failure; the job may be retried automatically."""

    def __init__(self, message: str, error_code: str = "TRANSIENT_ERROR", stage: Optional[str] = None):
        super().__init__(message, error_code=error_code, stage=stage)


class NonRetryableError(JobExecutionError):
    """A permanent failure; the job is never retried automatically."""

    def __init__(self, message: str, error_code: str = "PERMANENT_ERROR", stage: Optional[str] = None):
        super().__init__(message, error_code=error_code, stage=stage)


class JobCancelledError(ReportOrchestratorError):
    """Raised inside a worker when a checkpoint observes a cancel request."""

    def __init__(self, job_id: str):
        super().__init__(
            f"Report job {job_id} was cancelled",
            error_code="JOB_CANCELLED",
            details={"job_id": job_id}
        )


class LeaseLostError(ReportOrchestratorError):
    """Raised when a worker no longer owns the job it is executing."""

    def __init__(self, job_id: str, worker_id: str):
        super().__init__(
            f"Worker {worker_id} lost the lease on job {job_id}",
            error_code="LEASE_LOST",
            details={"job_id": job_id, "worker_id": worker_id}
        )


class ConfigurationError(ReportOrchestratorError):
    """Raised when there's an error in configuration."""

    def __init__(self, config_key: str, message: str):
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key}
        )


class DatabaseError(ReportOrchestratorError):
    """Raised when database operations fail."""

    def __init__(self, operation: str, message: str, table: Optional[str] = None):
        super().__init__(
            f"Database operation '{operation}' failed: {message}",
            error_code="DATABASE_ERROR",
            details={"operation": operation, "table": table}
        )


class OrchestratorError(ReportOrchestratorError):
    """Raised when orchestrator-level operations fail."""

    def __init__(self, message: str):
        super().__init__(
            f"Orchestrator error: {message}",
            error_code="ORCHESTRATOR_ERROR"
        )
