"""
TemplateManager service for Report Job Orchestrator

Stores reusable parameter and output presets per report type.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union, TYPE_CHECKING

from ..core.exceptions import ConflictError, TemplateNotFoundError, UnsupportedFormatError
from ..models.common import Page, utcnow
from ..models.job import Visibility
from ..models.requests import (
    CloneTemplateRequest,
    CreateTemplateRequest,
    ListTemplatesQuery,
    UpdateTemplateRequest,
    parse_request,
)
from ..models.template import ReportTemplate, SharedWith
from ..utils.logger import get_logger
from .job_manager import require_object_id

if TYPE_CHECKING:
    from ..reporting.registry import ReportTypeRegistry


class TemplateManager:
    """Template registry: create, list, get, update, delete and clone."""

    def __init__(
        self,
        database_manager,
        registry: "ReportTypeRegistry",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = database_manager
        self.registry = registry
        self.clock = clock
        self.logger = get_logger(__name__)

    async def create_template(
        self,
        request: Union[CreateTemplateRequest, Dict[str, Any]],
        created_by: str,
    ) -> ReportTemplate:
        """
        Create a template.

        The report type must be registered, the default output format must be
        supported by it and the default parameters must validate.
        """
        request = parse_request(CreateTemplateRequest, request)
        definition = self.registry.get(request.report_type)
        output_format = request.default_output.format.lower()
        if not definition.supports_format(output_format):
            raise UnsupportedFormatError(request.report_type, output_format)
        definition.parse_parameters(request.parameters)

        now = self.clock()
        shared_with = request.shared_with.model_dump() if request.shared_with else None
        template = ReportTemplate(
            name=request.name,
            description=request.description,
            report_type=request.report_type,
            created_by=created_by,
            parameters=request.parameters,
            default_format=output_format,
            filename_template=request.default_output.filename_template,
            visibility=request.visibility or Visibility.PRIVATE,
            shared_with=SharedWith.from_dict(shared_with),
            created_at=now,
            updated_at=now,
        )
        template = await self.db.insert_template(template)
        self.logger.info("Template created", extra={
            "template_id": template.id,
            "report_type": template.report_type
        })
        return template

    async def get_template(self, template_id: str) -> ReportTemplate:
        require_object_id(template_id)
        template = await self.db.get_template(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    async def list_templates(self, query: Union[ListTemplatesQuery, Dict[str, Any], None] = None) -> Page:
        query = parse_request(ListTemplatesQuery, query)
        items, total = await self.db.list_templates(
            report_type=query.report_type,
            search=query.search,
            offset=(query.page - 1) * query.limit,
            limit=query.limit,
        )
        return Page(items=items, page=query.page, limit=query.limit, total=total)

    async def update_template(
        self,
        template_id: str,
        request: Union[UpdateTemplateRequest, Dict[str, Any]],
    ) -> ReportTemplate:
        request = parse_request(UpdateTemplateRequest, request)
        template = await self.get_template(template_id)

        changes: Dict[str, Any] = request.model_dump(exclude_unset=True, exclude_none=True)
        if "parameters" in changes:
            self.registry.get(template.report_type).parse_parameters(changes["parameters"])
        if not changes:
            return template

        changes["updated_at"] = self.clock()
        updated = await self.db.update_template(template_id, changes)
        if updated is None:
            raise TemplateNotFoundError(template_id)
        self.logger.info("Template updated", extra={"template_id": template_id, "fields": sorted(changes)})
        return updated

    async def delete_template(self, template_id: str) -> None:
        """
        Delete a template.

        Jobs keep their parameter snapshot, so only active schedules block
        deletion.

        Raises:
            ConflictError: If an active schedule references the template
        """
        await self.get_template(template_id)
        active = await self.db.count_active_schedules(template_id)
        if active:
            raise ConflictError(
                f"Template {template_id} is used by {active} active schedule(s)",
                error_code="TEMPLATE_IN_USE",
                details={"template_id": template_id, "active_schedules": active}
            )
        if not await self.db.delete_template(template_id):
            raise TemplateNotFoundError(template_id)
        self.logger.info("Template deleted", extra={"template_id": template_id})

    async def clone_template(
        self,
        template_id: str,
        request: Union[CloneTemplateRequest, Dict[str, Any], None],
        created_by: str,
    ) -> ReportTemplate:
        request = parse_request(CloneTemplateRequest, request)
        source = await self.get_template(template_id)
        name = request.name or f"{source.name} (Copy)"
        clone = await self.db.insert_template(source.clone(name, created_by, now=self.clock()))
        self.logger.info("Template cloned", extra={"template_id": clone.id, "source_id": template_id})
        return clone
