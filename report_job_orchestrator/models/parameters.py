"""
Typed report parameters

Report parameters are validated per report type: each report type declares a
pydantic model (``ReportParameters`` or a subclass of it) and every parameter
bundle flowing through the engine is an instance of that model rather than an
untyped mapping.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator
from typing_extensions import Annotated

from .common import OBJECT_ID_PATTERN


ObjectId = Annotated[str, StringConstraints(pattern=OBJECT_ID_PATTERN)]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class DateRange(_CamelModel):
    """Inclusive date range a report covers."""

    start_date: datetime = Field(alias="startDate")
    end_date: datetime = Field(alias="endDate")

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.start_date > self.end_date:
            raise ValueError("startDate must not be after endDate")
        return self


class ReportFilters(_CamelModel):
    """Entity filters; every id list references other entities by id."""

    department_ids: Optional[List[ObjectId]] = Field(default=None, alias="departmentIds")
    course_ids: Optional[List[ObjectId]] = Field(default=None, alias="courseIds")
    class_ids: Optional[List[ObjectId]] = Field(default=None, alias="classIds")
    learner_ids: Optional[List[ObjectId]] = Field(default=None, alias="learnerIds")
    content_ids: Optional[List[ObjectId]] = Field(default=None, alias="contentIds")
    event_types: Optional[List[str]] = Field(default=None, alias="eventTypes")
    statuses: Optional[List[str]] = None


class ReportParameters(_CamelModel):
    """
    Parameters common to every report type.

    Report types with extra knobs subclass this model and register the
    subclass in their ``ReportTypeDefinition``.
    """

    date_range: Optional[DateRange] = Field(default=None, alias="dateRange")
    filters: Optional[ReportFilters] = None
    group_by: Optional[List[str]] = Field(default=None, alias="groupBy")
    measures: Optional[List[str]] = None
    include_inactive: Optional[bool] = Field(default=None, alias="includeInactive")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the external (camelCase) field names."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class StoredReportParameters(ReportParameters):
    """
    Permissive rehydration of persisted parameters.

    Rows may carry fields of a report-type specific subclass; the worker
    re-validates them against the registered model before use.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")


def merge_parameters(*layers: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Merge parameter layers; later layers override earlier ones.

    Nested mappings (``filters``, ``dateRange``) are merged key by key and
    ``None`` values never override a value from an earlier layer.
    """
    merged: Dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            if value is None:
                continue
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = merge_parameters(merged[key], value)
            else:
                merged[key] = value
    return merged
