"""
Utilities package for Report Job Orchestrator

Contains the job/schedule/template stores, schedule recurrence and logging.
"""

from .database import DatabaseManager, InMemoryDatabaseManager
from .logger import setup_logger, get_logger, set_log_context, clear_log_context, LoggerContext

__all__ = [
    "DatabaseManager",
    "InMemoryDatabaseManager",
    "setup_logger",
    "get_logger",
    "set_log_context",
    "clear_log_context",
    "LoggerContext"
]
