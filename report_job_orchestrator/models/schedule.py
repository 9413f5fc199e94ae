"""
Schedule data models for Report Job Orchestrator

A schedule is a recurring trigger definition that materializes report jobs
from a template at computed times.
"""

from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any
from dataclasses import dataclass, field

from .common import utcnow, generate_object_id, isoformat, parse_datetime
from .job import JobPriority


class Frequency(Enum):
    """How often a schedule fires."""
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class DeliveryMethod(Enum):
    """How a scheduled report is delivered once generated."""
    EMAIL = "email"
    STORAGE = "storage"
    BOTH = "both"


@dataclass
class ReportSchedule:
    """Recurring report trigger definition."""

    name: str
    template_id: str
    frequency: Frequency
    output_format: str
    created_by: str

    id: str = field(default_factory=generate_object_id)
    description: Optional[str] = None
    timezone: str = "UTC"
    time_of_day: str = "00:00"
    parameter_overrides: Dict[str, Any] = field(default_factory=dict)
    delivery_method: DeliveryMethod = DeliveryMethod.STORAGE
    priority: JobPriority = JobPriority.NORMAL
    department_id: Optional[str] = None

    # Trigger state
    is_active: bool = True
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    anchor_day: Optional[int] = None
    paused_at: Optional[datetime] = None
    pause_reason: Optional[str] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_due(self, now: datetime) -> bool:
        """Active and its next run is not in the future."""
        return self.is_active and self.next_run_at is not None and self.next_run_at <= now

    @property
    def is_paused(self) -> bool:
        return not self.is_active and self.paused_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "templateId": self.template_id,
            "schedule": {
                "frequency": self.frequency.value,
                "timezone": self.timezone,
                "timeOfDay": self.time_of_day,
            },
            "parameterOverrides": self.parameter_overrides,
            "output": {"format": self.output_format},
            "delivery": {"method": self.delivery_method.value},
            "priority": self.priority.value,
            "departmentId": self.department_id,
            "createdBy": self.created_by,
            "isActive": self.is_active,
            "nextRunAt": isoformat(self.next_run_at),
            "lastRunAt": isoformat(self.last_run_at),
            "pausedAt": isoformat(self.paused_at),
            "pauseReason": self.pause_reason,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "template_id": self.template_id,
            "frequency": self.frequency.value,
            "timezone": self.timezone,
            "time_of_day": self.time_of_day,
            "parameter_overrides": self.parameter_overrides,
            "output_format": self.output_format,
            "delivery_method": self.delivery_method.value,
            "priority": self.priority.value,
            "department_id": self.department_id,
            "created_by": self.created_by,
            "is_active": self.is_active,
            "next_run_at": self.next_run_at,
            "last_run_at": self.last_run_at,
            "anchor_day": self.anchor_day,
            "paused_at": self.paused_at,
            "pause_reason": self.pause_reason,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "ReportSchedule":
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description"),
            template_id=data["template_id"],
            frequency=Frequency(data["frequency"]),
            timezone=data.get("timezone") or "UTC",
            time_of_day=data.get("time_of_day") or "00:00",
            parameter_overrides=data.get("parameter_overrides") or {},
            output_format=data["output_format"],
            delivery_method=DeliveryMethod(data["delivery_method"]),
            priority=JobPriority(data.get("priority") or "normal"),
            department_id=data.get("department_id"),
            created_by=data["created_by"],
            is_active=bool(data.get("is_active", True)),
            next_run_at=parse_datetime(data.get("next_run_at")),
            last_run_at=parse_datetime(data.get("last_run_at")),
            anchor_day=data.get("anchor_day"),
            paused_at=parse_datetime(data.get("paused_at")),
            pause_reason=data.get("pause_reason"),
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
        )
