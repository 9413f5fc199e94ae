"""
CLI package for Report Job Orchestrator

Provides command-line interface for report jobs, schedules, templates and monitoring.
"""

from .main import main, cli

__all__ = ["main", "cli"]
