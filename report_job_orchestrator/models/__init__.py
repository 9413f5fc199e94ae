"""
Data models for Report Job Orchestrator

Report jobs, schedules, templates, typed report parameters and the request
shapes accepted by the public operations.
"""

# Job models
from .job import (
    ReportJob,
    JobStatus,
    JobPriority,
    Visibility,
    JobProgress,
    JobError,
    JobOutput,
    StorageDescriptor,
    JOB_STATUS_TRANSITIONS,
    can_transition_to,
    get_valid_transitions
)

# Schedule and template models
from .schedule import ReportSchedule, Frequency, DeliveryMethod
from .template import ReportTemplate, SharedWith

# Parameters
from .parameters import ReportParameters, DateRange, ReportFilters, merge_parameters

from .common import Page

__all__ = [
    # Job models
    "ReportJob",
    "JobStatus",
    "JobPriority",
    "Visibility",
    "JobProgress",
    "JobError",
    "JobOutput",
    "StorageDescriptor",
    "JOB_STATUS_TRANSITIONS",
    "can_transition_to",
    "get_valid_transitions",

    # Schedule and template models
    "ReportSchedule",
    "Frequency",
    "DeliveryMethod",
    "ReportTemplate",
    "SharedWith",

    # Parameters
    "ReportParameters",
    "DateRange",
    "ReportFilters",
    "merge_parameters",

    "Page"
]
