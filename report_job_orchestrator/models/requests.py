"""
Request shapes for the report job, schedule and template operations

These pydantic models validate the shape of incoming requests. Semantic
checks that need the report type registry or the stores (supported formats,
template existence, departments) happen in the services.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..core.exceptions import ValidationError
from .job import JobPriority, JobStatus, Visibility
from .parameters import ObjectId
from .schedule import DeliveryMethod, Frequency


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


def _as_list(value: Any) -> Any:
    if isinstance(value, str):
        return [value]
    return value


class OutputRequest(_Request):
    format: str = Field(min_length=1)
    filename: Optional[str] = None


class CreateReportJobRequest(_Request):
    report_type: str = Field(alias="reportType", min_length=1)
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    output: OutputRequest
    priority: Optional[JobPriority] = None
    visibility: Optional[Visibility] = None
    scheduled_for: Optional[datetime] = Field(default=None, alias="scheduledFor")
    template_id: Optional[ObjectId] = Field(default=None, alias="templateId")
    department_id: Optional[ObjectId] = Field(default=None, alias="departmentId")


class ListReportJobsQuery(_Request):
    status: Optional[List[JobStatus]] = None
    report_type: Optional[List[str]] = Field(default=None, alias="reportType")
    requested_by: Optional[str] = Field(default=None, alias="requestedBy")
    department_id: Optional[ObjectId] = Field(default=None, alias="departmentId")
    from_date: Optional[datetime] = Field(default=None, alias="fromDate")
    to_date: Optional[datetime] = Field(default=None, alias="toDate")
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    sort_by: Literal["createdAt", "status", "priority", "updatedAt"] = Field(default="createdAt", alias="sortBy")
    sort_order: Literal["asc", "desc"] = Field(default="desc", alias="sortOrder")

    @field_validator("status", "report_type", mode="before")
    @classmethod
    def _wrap_single_value(cls, value: Any) -> Any:
        return _as_list(value)


class CancelReportJobRequest(_Request):
    reason: Optional[str] = Field(default=None, max_length=500)


class ScheduleSpec(_Request):
    frequency: Frequency
    timezone: str = "UTC"
    time_of_day: Optional[str] = Field(
        default=None, alias="timeOfDay", pattern=r"^([01]\d|2[0-3]):([0-5]\d)$"
    )


class ScheduleOutput(_Request):
    format: str = Field(min_length=1)


class ScheduleDelivery(_Request):
    method: DeliveryMethod


class CreateScheduleRequest(_Request):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    template_id: ObjectId = Field(alias="templateId")
    schedule: ScheduleSpec
    output: ScheduleOutput
    delivery: ScheduleDelivery
    parameter_overrides: Dict[str, Any] = Field(default_factory=dict, alias="parameterOverrides")
    priority: Optional[JobPriority] = None
    department_id: Optional[ObjectId] = Field(default=None, alias="departmentId")


class UpdateScheduleRequest(_Request):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    schedule: Optional[ScheduleSpec] = None
    output: Optional[ScheduleOutput] = None
    delivery: Optional[ScheduleDelivery] = None
    parameter_overrides: Optional[Dict[str, Any]] = Field(default=None, alias="parameterOverrides")
    priority: Optional[JobPriority] = None


class ListSchedulesQuery(_Request):
    template_id: Optional[ObjectId] = Field(default=None, alias="templateId")
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)


class PauseScheduleRequest(_Request):
    reason: Optional[str] = None


class TemplateOutput(_Request):
    format: str = Field(min_length=1)
    filename_template: Optional[str] = Field(default=None, alias="filenameTemplate")


class SharedWithRequest(_Request):
    users: Optional[List[ObjectId]] = None
    departments: Optional[List[ObjectId]] = None
    roles: Optional[List[str]] = None


class CreateTemplateRequest(_Request):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    report_type: str = Field(alias="reportType", min_length=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    default_output: TemplateOutput = Field(alias="defaultOutput")
    visibility: Optional[Visibility] = None
    shared_with: Optional[SharedWithRequest] = Field(default=None, alias="sharedWith")


class ListTemplatesQuery(_Request):
    report_type: Optional[str] = Field(default=None, alias="reportType")
    search: Optional[str] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)


class UpdateTemplateRequest(_Request):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    parameters: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = Field(default=None, alias="isActive")


class CloneTemplateRequest(_Request):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)


RequestT = TypeVar("RequestT", bound=BaseModel)


def parse_request(model: Type[RequestT], data: Union[RequestT, Dict[str, Any], None]) -> RequestT:
    """
    Validate request data against a request model.

    Raises:
        ValidationError: With the first offending field
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data or {})
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field_name = ".".join(str(part) for part in first.get("loc", ())) or "request"
        raise ValidationError(field_name, first.get("msg", str(e)), value=first.get("input"))
