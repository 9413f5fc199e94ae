"""
Report type integration for Report Job Orchestrator

Data source interfaces, the report type registry, aggregation and renderers.
"""

from .base import ReportDataSource, ReportTypeDefinition, DepartmentDirectory, StaticDepartmentDirectory
from .registry import ReportTypeRegistry
from .aggregation import Aggregator, Measure, parse_measure
from .renderers import get_renderer

__all__ = [
    "ReportDataSource",
    "ReportTypeDefinition",
    "DepartmentDirectory",
    "StaticDepartmentDirectory",
    "ReportTypeRegistry",
    "Aggregator",
    "Measure",
    "parse_measure",
    "get_renderer",
]
