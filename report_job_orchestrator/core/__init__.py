"""
Core package for Report Job Orchestrator

Contains the main orchestrator class, configuration and exceptions.
"""

from .orchestrator import ReportOrchestrator
from .config import OrchestratorConfig, load_config
from .exceptions import (
    ReportOrchestratorError,
    ValidationError,
    UnsupportedFormatError,
    NotFoundError,
    JobNotFoundError,
    ScheduleNotFoundError,
    TemplateNotFoundError,
    DepartmentNotFoundError,
    ReportNotFoundError,
    ReportExpiredError,
    ConflictError,
    DuplicateJobError,
    JobExecutionError,
    RetryableError,
    NonRetryableError,
    ConfigurationError,
    DatabaseError,
    OrchestratorError
)

__all__ = [
    "ReportOrchestrator",
    "OrchestratorConfig",
    "load_config",
    "ReportOrchestratorError",
    "ValidationError",
    "UnsupportedFormatError",
    "NotFoundError",
    "JobNotFoundError",
    "ScheduleNotFoundError",
    "TemplateNotFoundError",
    "DepartmentNotFoundError",
    "ReportNotFoundError",
    "ReportExpiredError",
    "ConflictError",
    "DuplicateJobError",
    "JobExecutionError",
    "RetryableError",
    "NonRetryableError",
    "ConfigurationError",
    "DatabaseError",
    "OrchestratorError"
]
