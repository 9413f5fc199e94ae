"""
ScheduleManager service for Report Job Orchestrator

Stores recurring report schedules and runs the trigger that materializes
due schedules into queued jobs. Each firing is keyed by
``(schedule_id, scheduled_for)`` in the job store, so overlapping ticks on
several replicas create at most one job per occurrence.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Union, TYPE_CHECKING

from ..core.config import SchedulerConfig
from ..core.exceptions import (
    ConflictError,
    DepartmentNotFoundError,
    DuplicateJobError,
    ScheduleNotFoundError,
    TemplateNotFoundError,
    UnsupportedFormatError,
    ValidationError,
)
from ..models.common import Page, utcnow
from ..models.job import ReportJob, JobOutput, JobPriority
from ..models.parameters import merge_parameters
from ..models.requests import (
    CreateScheduleRequest,
    ListSchedulesQuery,
    PauseScheduleRequest,
    UpdateScheduleRequest,
    parse_request,
)
from ..models.schedule import ReportSchedule, Frequency
from ..models.template import ReportTemplate
from ..reporting.base import DepartmentDirectory, StaticDepartmentDirectory
from ..utils import recurrence
from ..utils.logger import get_logger, LoggerContext
from .job_manager import require_object_id

if TYPE_CHECKING:
    from ..reporting.registry import ReportTypeRegistry
    from .job_manager import JobManager


class ScheduleManager:
    """
    Schedule store operations and the periodic schedule trigger.

    The trigger never backfills: a paused schedule keeps its ``next_run_at``
    frozen and resuming skips every occurrence that passed meanwhile.
    """

    def __init__(
        self,
        database_manager,
        registry: "ReportTypeRegistry",
        job_manager: "JobManager",
        config: Optional[SchedulerConfig] = None,
        departments: Optional[DepartmentDirectory] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = database_manager
        self.registry = registry
        self.job_manager = job_manager
        self.config = config or SchedulerConfig()
        self.departments = departments or StaticDepartmentDirectory()
        self.clock = clock

        self._tasks: Set[asyncio.Task] = set()
        self.is_running = False
        self.logger = get_logger(__name__)

    async def start(self):
        """Start the trigger loop."""
        self.logger.info("Starting ScheduleManager", extra={"tick_interval": self.config.tick_interval})
        self.is_running = True
        self._tasks.add(asyncio.create_task(self._tick_loop()))

    async def stop(self):
        self.logger.info("Stopping ScheduleManager")
        self.is_running = False
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

    async def _tick_loop(self):
        while self.is_running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.error("Schedule tick failed", exc_info=True)
            await asyncio.sleep(self.config.tick_interval)

    # Store operations

    async def _validate_against_template(
        self,
        template: ReportTemplate,
        output_format: str,
        parameter_overrides: Dict[str, Any],
    ) -> None:
        definition = self.registry.get(template.report_type)
        if not definition.supports_format(output_format):
            raise UnsupportedFormatError(template.report_type, output_format)
        definition.parse_parameters(merge_parameters(template.parameters, parameter_overrides))

    async def create_schedule(
        self,
        request: Union[CreateScheduleRequest, Dict[str, Any]],
        created_by: str,
    ) -> ReportSchedule:
        """
        Create a schedule for a template.

        The first run is the first ``timeOfDay`` occurrence after now in the
        schedule's timezone.

        Raises:
            ValidationError: Bad shape, timezone or output format
            TemplateNotFoundError: If the template does not exist
            DepartmentNotFoundError: If ``departmentId`` does not exist
        """
        request = parse_request(CreateScheduleRequest, request)
        spec = request.schedule
        recurrence.validate_timezone(spec.timezone)

        template = await self.db.get_template(request.template_id)
        if template is None:
            raise TemplateNotFoundError(request.template_id)
        output_format = request.output.format.lower()
        await self._validate_against_template(template, output_format, request.parameter_overrides)

        if request.department_id and not await self.departments.exists(request.department_id):
            raise DepartmentNotFoundError(request.department_id)

        now = self.clock()
        time_of_day = spec.time_of_day or "00:00"
        next_run_at = recurrence.first_run_after(time_of_day, spec.timezone, now)
        schedule = ReportSchedule(
            name=request.name,
            description=request.description,
            template_id=request.template_id,
            frequency=spec.frequency,
            timezone=spec.timezone,
            time_of_day=time_of_day,
            parameter_overrides=request.parameter_overrides,
            output_format=output_format,
            delivery_method=request.delivery.method,
            priority=request.priority or JobPriority.NORMAL,
            department_id=request.department_id,
            created_by=created_by,
            next_run_at=next_run_at,
            anchor_day=recurrence.anchor_day_of(spec.timezone, next_run_at),
            created_at=now,
            updated_at=now,
        )
        schedule = await self.db.insert_schedule(schedule)
        self.logger.info("Schedule created", extra={
            "schedule_id": schedule.id,
            "template_id": schedule.template_id,
            "frequency": schedule.frequency.value,
            "next_run_at": str(schedule.next_run_at)
        })
        return schedule

    async def get_schedule(self, schedule_id: str) -> ReportSchedule:
        require_object_id(schedule_id)
        schedule = await self.db.get_schedule(schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError(schedule_id)
        return schedule

    async def list_schedules(self, query: Union[ListSchedulesQuery, Dict[str, Any], None] = None) -> Page:
        query = parse_request(ListSchedulesQuery, query)
        items, total = await self.db.list_schedules(
            template_id=query.template_id,
            is_active=query.is_active,
            offset=(query.page - 1) * query.limit,
            limit=query.limit,
        )
        return Page(items=items, page=query.page, limit=query.limit, total=total)

    async def update_schedule(
        self,
        schedule_id: str,
        request: Union[UpdateScheduleRequest, Dict[str, Any]],
    ) -> ReportSchedule:
        """
        Update a schedule.

        Changing frequency, time of day or timezone recomputes ``next_run_at``
        from now.
        """
        request = parse_request(UpdateScheduleRequest, request)
        schedule = await self.get_schedule(schedule_id)
        now = self.clock()

        changes: Dict[str, Any] = {}
        for name in ("name", "description", "priority", "parameter_overrides"):
            value = getattr(request, name)
            if value is not None:
                changes[name] = value
        if request.output is not None:
            changes["output_format"] = request.output.format.lower()
        if request.delivery is not None:
            changes["delivery_method"] = request.delivery.method

        if request.schedule is not None:
            spec = request.schedule
            recurrence.validate_timezone(spec.timezone)
            time_of_day = spec.time_of_day or schedule.time_of_day
            next_run_at = recurrence.first_run_after(time_of_day, spec.timezone, now)
            changes.update({
                "frequency": spec.frequency,
                "timezone": spec.timezone,
                "time_of_day": time_of_day,
                "next_run_at": next_run_at,
                "anchor_day": recurrence.anchor_day_of(spec.timezone, next_run_at),
            })

        if "output_format" in changes or "parameter_overrides" in changes:
            template = await self.db.get_template(schedule.template_id)
            if template is not None:
                await self._validate_against_template(
                    template,
                    changes.get("output_format", schedule.output_format),
                    changes.get("parameter_overrides", schedule.parameter_overrides),
                )

        if not changes:
            return schedule

        changes["updated_at"] = now
        updated = await self.db.update_schedule(schedule_id, changes)
        if updated is None:
            raise ScheduleNotFoundError(schedule_id)
        self.logger.info("Schedule updated", extra={"schedule_id": schedule_id, "fields": sorted(changes)})
        return updated

    async def pause_schedule(
        self,
        schedule_id: str,
        request: Union[PauseScheduleRequest, Dict[str, Any], None] = None,
    ) -> ReportSchedule:
        """
        Pause an active schedule; ``next_run_at`` is kept as it was.

        Raises:
            ConflictError: If the schedule is not active
        """
        request = parse_request(PauseScheduleRequest, request)
        await self.get_schedule(schedule_id)
        now = self.clock()
        paused = await self.db.update_schedule(
            schedule_id,
            {"is_active": False, "paused_at": now, "pause_reason": request.reason, "updated_at": now},
            is_active=True,
        )
        if paused is None:
            raise ConflictError(
                f"Report schedule {schedule_id} is not active",
                error_code="INVALID_SCHEDULE_STATE",
                details={"schedule_id": schedule_id}
            )
        self.logger.info("Schedule paused", extra={"schedule_id": schedule_id, "reason": request.reason})
        return paused

    async def resume_schedule(self, schedule_id: str) -> ReportSchedule:
        """
        Resume a paused schedule at its next occurrence after now.

        Raises:
            ConflictError: If the schedule is active, or is a one-off that already fired
        """
        schedule = await self.get_schedule(schedule_id)
        if schedule.is_active:
            raise ConflictError(
                f"Report schedule {schedule_id} is already active",
                error_code="INVALID_SCHEDULE_STATE",
                details={"schedule_id": schedule_id}
            )
        if schedule.frequency == Frequency.ONCE and schedule.last_run_at is not None:
            raise ConflictError(
                f"Report schedule {schedule_id} already ran and cannot be resumed",
                error_code="INVALID_SCHEDULE_STATE",
                details={"schedule_id": schedule_id}
            )

        now = self.clock()
        next_run_at = recurrence.next_after_resume(
            schedule.frequency, schedule.time_of_day, schedule.timezone, schedule.next_run_at, now,
            schedule.anchor_day
        )
        resumed = await self.db.update_schedule(
            schedule_id,
            {
                "is_active": True,
                "next_run_at": next_run_at,
                "paused_at": None,
                "pause_reason": None,
                "updated_at": now,
            },
            is_active=False,
        )
        if resumed is None:
            raise ConflictError(
                f"Report schedule {schedule_id} changed state during resume",
                error_code="INVALID_SCHEDULE_STATE",
                details={"schedule_id": schedule_id}
            )
        self.logger.info("Schedule resumed", extra={
            "schedule_id": schedule_id,
            "frozen_next_run_at": str(schedule.next_run_at),
            "next_run_at": str(next_run_at)
        })
        return resumed

    # Trigger

    async def tick(self, now: Optional[datetime] = None) -> List[ReportJob]:
        """
        Fire every due schedule once.

        Returns:
            Jobs created by this tick
        """
        now = now or self.clock()
        created: List[ReportJob] = []
        for schedule in await self.db.list_due_schedules(now):
            with LoggerContext(schedule_id=schedule.id):
                try:
                    job = await self._fire(schedule, now)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    self.logger.error("Failed to fire schedule", exc_info=True)
                    continue
            if job is not None:
                created.append(job)
        return created

    async def _fire(self, schedule: ReportSchedule, now: datetime) -> Optional[ReportJob]:
        scheduled_for = schedule.next_run_at
        job = None

        template = await self.db.get_template(schedule.template_id)
        if template is None:
            self.logger.warning("Template no longer exists; skipping occurrence", extra={
                "template_id": schedule.template_id,
                "scheduled_for": str(scheduled_for)
            })
        else:
            try:
                job = self._build_job(schedule, template, scheduled_for)
            except ValidationError as e:
                self.logger.error(f"Schedule produced invalid job: {e.message}", extra={
                    "template_id": template.id,
                    "scheduled_for": str(scheduled_for)
                })

        if job is not None:
            try:
                job = await self.job_manager.enqueue_job(job)
                await self.db.increment_template_usage(template.id)
                self.logger.info("Schedule fired", extra={
                    "job_id": job.id,
                    "scheduled_for": str(scheduled_for)
                })
            except DuplicateJobError:
                self.logger.info("Occurrence already materialized", extra={"scheduled_for": str(scheduled_for)})
                job = None

        await self._advance(schedule, now)
        return job

    def _build_job(self, schedule: ReportSchedule, template: ReportTemplate,
                   scheduled_for: datetime) -> ReportJob:
        definition = self.registry.get(template.report_type)
        if not definition.supports_format(schedule.output_format):
            raise UnsupportedFormatError(template.report_type, schedule.output_format)
        parameters = definition.parse_parameters(
            merge_parameters(template.parameters, schedule.parameter_overrides)
        )
        return ReportJob(
            report_type=template.report_type,
            name=schedule.name,
            description=schedule.description,
            requested_by=schedule.created_by,
            parameters=parameters,
            output=JobOutput(format=schedule.output_format, filename=template.render_filename(scheduled_for)),
            priority=schedule.priority,
            visibility=template.visibility,
            department_id=schedule.department_id,
            template_id=template.id,
            schedule_id=schedule.id,
            scheduled_for=scheduled_for,
            created_at=self.clock(),
            updated_at=self.clock(),
        )

    async def _advance(self, schedule: ReportSchedule, now: datetime) -> Optional[ReportSchedule]:
        next_run_at = recurrence.advance(
            schedule.frequency, schedule.time_of_day, schedule.timezone, schedule.next_run_at,
            schedule.anchor_day
        )
        changes: Dict[str, Any] = {"next_run_at": next_run_at, "last_run_at": now, "updated_at": now}
        if next_run_at is None:
            changes["is_active"] = False

        advanced = await self.db.advance_schedule(schedule.id, schedule.next_run_at, changes)
        if advanced is None:
            self.logger.debug("Schedule already advanced by another tick")
        return advanced
