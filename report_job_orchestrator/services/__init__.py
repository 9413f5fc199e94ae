"""
Services package for Report Job Orchestrator

Contains the service implementations behind the orchestrator: submission,
dispatch, execution, retries, schedules, templates, storage and monitoring.
"""

from .job_manager import JobManager
from .queue_manager import QueueManager
from .worker_manager import WorkerManager, ReportWorker
from .fault_tolerance import RetryManager, RetryPolicy
from .schedule_manager import ScheduleManager
from .template_manager import TemplateManager
from .storage_manager import OutputStorageManager, LocalStorageBackend, StorageBackend, DownloadHandle
from .monitoring_service import MonitoringService, SystemHealth

__all__ = [
    "JobManager",
    "QueueManager",
    "WorkerManager",
    "ReportWorker",
    "RetryManager",
    "RetryPolicy",
    "ScheduleManager",
    "TemplateManager",
    "OutputStorageManager",
    "LocalStorageBackend",
    "StorageBackend",
    "DownloadHandle",
    "MonitoringService",
    "SystemHealth"
]
