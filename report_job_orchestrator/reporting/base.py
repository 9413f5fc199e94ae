"""
Report type integration points.

Defines the interfaces the orchestrator consumes from the outside world:
per-report-type data sources, the report type definition (parameter schema,
supported formats, retry budget) and the department directory.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, FrozenSet, Iterable, List, Optional, Type

import pydantic

from ..models.common import is_object_id
from ..models.parameters import ReportParameters
from ..core.exceptions import ValidationError
from .aggregation import parse_measure


class ReportDataSource(ABC):
    """
    Abstract base class for report data sources.

    A data source owns the query logic for one report type: it applies the
    date range and filters and yields raw records in batches. Fetching is the
    long-running part of a job, so implementations should yield often; the
    worker checks for cancellation between batches.
    """

    async def count(self, parameters: ReportParameters) -> Optional[int]:
        """
        Total number of records the fetch will yield, if cheaply known.

        Used only for progress reporting.
        """
        return None

    @abstractmethod
    def fetch(self, parameters: ReportParameters, batch_size: int) -> AsyncIterator[List[Dict[str, Any]]]:
        """
        Yield batches of records matching the parameters.

        Args:
            parameters: Validated report parameters
            batch_size: Preferred number of records per batch
        """


class DepartmentDirectory(ABC):
    """Lookup of departments owned by another service."""

    @abstractmethod
    async def exists(self, department_id: str) -> bool:
        """Check whether a department exists."""


class StaticDepartmentDirectory(DepartmentDirectory):
    """
    Department directory backed by a fixed set of ids.

    With no ids configured every well-formed id is accepted.
    """

    def __init__(self, department_ids: Optional[Iterable[str]] = None):
        self.department_ids = set(department_ids) if department_ids is not None else None

    async def exists(self, department_id: str) -> bool:
        if self.department_ids is None:
            return is_object_id(department_id)
        return department_id in self.department_ids


@dataclass
class ReportTypeDefinition:
    """Schema and execution settings for one report type."""

    name: str
    data_source: ReportDataSource
    formats: FrozenSet[str] = frozenset({"csv", "json"})
    parameters_model: Type[ReportParameters] = ReportParameters
    max_retries: Optional[int] = None
    allowed_group_by: Optional[FrozenSet[str]] = None
    allowed_measures: Optional[FrozenSet[str]] = None
    batch_size: int = 500
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def supports_format(self, output_format: str) -> bool:
        return output_format.lower() in self.formats

    def parse_parameters(self, data: Dict[str, Any]) -> ReportParameters:
        """
        Validate a parameter bundle against this report type's schema.

        Raises:
            ValidationError: If the parameters do not match the schema
        """
        try:
            parameters = self.parameters_model.model_validate(data)
        except pydantic.ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            field_name = f"parameters.{location}" if location else "parameters"
            raise ValidationError(field_name, first.get("msg", str(e)))

        for group_field in parameters.group_by or []:
            if self.allowed_group_by is not None and group_field not in self.allowed_group_by:
                raise ValidationError(
                    "parameters.groupBy",
                    f"'{group_field}' is not a groupable field for {self.name}",
                    value=group_field
                )

        for measure in parameters.measures or []:
            try:
                parsed = parse_measure(measure)
            except ValueError as e:
                raise ValidationError("parameters.measures", str(e), value=measure)
            if self.allowed_measures is not None and parsed.spec not in self.allowed_measures:
                raise ValidationError(
                    "parameters.measures",
                    f"'{measure}' is not an available measure for {self.name}",
                    value=measure
                )

        return parameters
