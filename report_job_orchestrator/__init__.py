"""
Report Job Orchestrator

An asynchronous report generation engine: users submit report jobs
(typed parameters, output format, priority) that are queued, dispatched by
priority to a bounded worker pool, executed with progress reporting and
cooperative cancellation, retried with exponential backoff, and stored as
downloadable artifacts with an expiry. Recurring schedules materialize jobs
from reusable templates.

Usage:
    from report_job_orchestrator import ReportOrchestrator, OrchestratorConfig
    from report_job_orchestrator.reporting import ReportTypeRegistry, ReportTypeDefinition

    registry = ReportTypeRegistry([
        ReportTypeDefinition(name="learner-progress", data_source=LearnerProgressSource())
    ])
    orchestrator = ReportOrchestrator(OrchestratorConfig(), registry=registry)
    await orchestrator.start()

    receipt = await orchestrator.submit_job({
        "reportType": "learner-progress",
        "name": "Weekly progress",
        "output": {"format": "csv"},
        "priority": "high"
    }, requested_by="64b7f0c2a1d4e5f6a7b8c9d0")
    print(f"Job {receipt['id']} queued at position {receipt['queuePosition']}")

    job = await orchestrator.get_job(receipt["id"])
    print(f"Job status: {job.status.value} ({job.progress.percentage:.0f}%)")
"""

__version__ = "1.0.0"
__author__ = "Report Job Orchestrator Team"
__license__ = "MIT"

# Core orchestrator
from .core.orchestrator import ReportOrchestrator
from .core.config import OrchestratorConfig, load_config

# Data models
from .models.job import ReportJob, JobStatus, JobPriority, Visibility
from .models.schedule import ReportSchedule, Frequency, DeliveryMethod
from .models.template import ReportTemplate
from .models.parameters import ReportParameters

# Report type integration
from .reporting.base import ReportDataSource, ReportTypeDefinition, DepartmentDirectory
from .reporting.registry import ReportTypeRegistry

# Services (for advanced usage)
from .services.job_manager import JobManager
from .services.queue_manager import QueueManager
from .services.worker_manager import WorkerManager
from .services.monitoring_service import MonitoringService

# Utilities
from .utils.database import DatabaseManager, InMemoryDatabaseManager
from .utils.logger import setup_logger, get_logger

# Exceptions
from .core.exceptions import (
    ReportOrchestratorError,
    ValidationError,
    NotFoundError,
    JobNotFoundError,
    ReportNotFoundError,
    ReportExpiredError,
    ConflictError,
    ConfigurationError,
    DatabaseError
)

__all__ = [
    # Core
    "ReportOrchestrator",
    "OrchestratorConfig",
    "load_config",

    # Models
    "ReportJob",
    "JobStatus",
    "JobPriority",
    "Visibility",
    "ReportSchedule",
    "Frequency",
    "DeliveryMethod",
    "ReportTemplate",
    "ReportParameters",

    # Report type integration
    "ReportDataSource",
    "ReportTypeDefinition",
    "DepartmentDirectory",
    "ReportTypeRegistry",

    # Services (for advanced usage)
    "JobManager",
    "QueueManager",
    "WorkerManager",
    "MonitoringService",

    # Utilities
    "DatabaseManager",
    "InMemoryDatabaseManager",
    "setup_logger",
    "get_logger",

    # Exceptions
    "ReportOrchestratorError",
    "ValidationError",
    "NotFoundError",
    "JobNotFoundError",
    "ReportNotFoundError",
    "ReportExpiredError",
    "ConflictError",
    "ConfigurationError",
    "DatabaseError",

    # Package metadata
    "__version__",
    "__author__",
    "__license__"
]
