"""
Template data models for Report Job Orchestrator

Templates are named, reusable parameter and output presets for a report type.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List, Iterable
from dataclasses import dataclass, field
import copy

from .common import utcnow, generate_object_id, isoformat, parse_datetime
from .job import Visibility


@dataclass
class SharedWith:
    """Users, departments and roles a template is shared with."""

    users: List[str] = field(default_factory=list)
    departments: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[str]]:
        return {"users": list(self.users), "departments": list(self.departments), "roles": list(self.roles)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SharedWith":
        data = data or {}
        return cls(
            users=list(data.get("users") or []),
            departments=list(data.get("departments") or []),
            roles=list(data.get("roles") or []),
        )


@dataclass
class ReportTemplate:
    """Reusable default parameter/output bundle for a report type."""

    name: str
    report_type: str
    created_by: str

    id: str = field(default_factory=generate_object_id)
    description: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    default_format: str = "csv"
    filename_template: Optional[str] = None
    visibility: Visibility = Visibility.PRIVATE
    shared_with: SharedWith = field(default_factory=SharedWith)
    is_active: bool = True
    usage_count: int = 0

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_shared_with(
        self,
        user_id: str,
        department_ids: Iterable[str] = (),
        roles: Iterable[str] = (),
    ) -> bool:
        """Whether the given principal may use this template."""
        if user_id == self.created_by or self.visibility == Visibility.ORGANIZATION:
            return True
        if user_id in self.shared_with.users:
            return True
        if set(department_ids) & set(self.shared_with.departments):
            return True
        return bool(set(roles) & set(self.shared_with.roles))

    def render_filename(self, when: datetime) -> Optional[str]:
        """Fill ``{date}`` and ``{reportType}`` in the filename template."""
        if not self.filename_template:
            return None
        return (
            self.filename_template
            .replace("{date}", when.strftime("%Y-%m-%d"))
            .replace("{reportType}", self.report_type)
        )

    def clone(self, name: str, created_by: str, now: Optional[datetime] = None) -> "ReportTemplate":
        """Copy this template under a new id and name."""
        now = now or utcnow()
        return ReportTemplate(
            name=name,
            report_type=self.report_type,
            created_by=created_by,
            description=self.description,
            parameters=copy.deepcopy(self.parameters),
            default_format=self.default_format,
            filename_template=self.filename_template,
            visibility=self.visibility,
            shared_with=SharedWith.from_dict(self.shared_with.to_dict()),
            created_at=now,
            updated_at=now,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "reportType": self.report_type,
            "parameters": self.parameters,
            "defaultOutput": {
                "format": self.default_format,
                "filenameTemplate": self.filename_template,
            },
            "visibility": self.visibility.value,
            "sharedWith": self.shared_with.to_dict(),
            "isActive": self.is_active,
            "usageCount": self.usage_count,
            "createdBy": self.created_by,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "report_type": self.report_type,
            "parameters": self.parameters,
            "default_format": self.default_format,
            "filename_template": self.filename_template,
            "visibility": self.visibility.value,
            "shared_with": self.shared_with.to_dict(),
            "is_active": self.is_active,
            "usage_count": self.usage_count,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "ReportTemplate":
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description"),
            report_type=data["report_type"],
            parameters=data.get("parameters") or {},
            default_format=data["default_format"],
            filename_template=data.get("filename_template"),
            visibility=Visibility(data.get("visibility") or "private"),
            shared_with=SharedWith.from_dict(data.get("shared_with")),
            is_active=bool(data.get("is_active", True)),
            usage_count=int(data.get("usage_count") or 0),
            created_by=data["created_by"],
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
        )
