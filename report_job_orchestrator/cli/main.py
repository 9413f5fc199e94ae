"""
Main CLI entry point for Report Job Orchestrator

Provides command-line interface for report jobs, schedules, templates,
monitoring and maintenance, and runs the engine itself.
"""

import asyncio
import json
import signal
import sys
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import click

from ..core.config import load_config
from ..core.exceptions import ReportOrchestratorError
from ..core.orchestrator import ReportOrchestrator
from ..models.common import Page
from ..utils.logger import setup_logger


DEFAULT_USER = "cli"


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file path')
@click.option('--database-url', '-d', help='Database connection URL (in-memory store when omitted)')
@click.option('--log-level', '-l', default='INFO', help='Log level')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.option('--user', '-u', default=DEFAULT_USER, help='Id recorded as requester/creator')
@click.pass_context
def cli(ctx, config, database_url, log_level, verbose, user):
    """Report Job Orchestrator CLI"""

    ctx.ensure_object(dict)

    ctx.obj['config'] = config
    ctx.obj['database_url'] = database_url
    ctx.obj['log_level'] = log_level
    ctx.obj['verbose'] = verbose
    ctx.obj['user'] = user


@cli.group()
@click.pass_context
def job(ctx):
    """Report job commands"""
    pass


@cli.group()
@click.pass_context
def schedule(ctx):
    """Report schedule commands"""
    pass


@cli.group()
@click.pass_context
def template(ctx):
    """Report template commands"""
    pass


@cli.group()
@click.pass_context
def monitor(ctx):
    """Monitoring and status commands"""
    pass


@cli.group()
@click.pass_context
def maintenance(ctx):
    """Housekeeping commands"""
    pass


# Engine
@cli.command('run')
@click.option('--apply-schema', is_flag=True, help='Create the PostgreSQL schema before starting')
@click.pass_context
def run_engine(ctx, apply_schema):
    """Run the dispatcher, workers and schedule trigger until interrupted"""

    async def _run():
        orchestrator = _build_orchestrator(ctx)
        try:
            await orchestrator.initialize(apply_schema=apply_schema)
            await orchestrator.start()

            loop = asyncio.get_running_loop()
            for signum in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(signum, orchestrator.request_shutdown)
                except (NotImplementedError, RuntimeError):
                    pass

            click.echo("Report orchestrator running. Press Ctrl+C to stop.")
            await orchestrator.wait_for_shutdown()
            click.echo("Shutting down...")

        except ReportOrchestratorError as e:
            click.echo(f"Error running orchestrator: {e.message}", err=True)
            sys.exit(1)
        finally:
            await orchestrator.close()

    asyncio.run(_run())


@cli.command('serve')
@click.option('--host', default='127.0.0.1', help='HTTP server host')
@click.option('--port', type=int, default=8000, help='HTTP server port')
@click.option('--apply-schema', is_flag=True, help='Create the PostgreSQL schema before starting')
@click.pass_context
def serve(ctx, host, port, apply_schema):
    """Run the engine behind the HTTP API (requires the "web" extra)"""
    import uvicorn

    from ..web.app import create_app

    orchestrator = _build_orchestrator(ctx)
    if apply_schema:
        asyncio.run(_apply_schema(orchestrator))

    click.echo(f"Starting HTTP server on {host}:{port}")
    uvicorn.run(create_app(orchestrator), host=host, port=port, log_config=None)


async def _apply_schema(orchestrator: ReportOrchestrator):
    await orchestrator.initialize(apply_schema=True)
    await orchestrator.close()


# Job Commands
@job.command('submit')
@click.argument('report_type')
@click.argument('name')
@click.option('--format', 'output_format', default='csv', help='Output format')
@click.option('--priority', type=click.Choice(['low', 'normal', 'high', 'urgent']), help='Job priority')
@click.option('--parameters-json', help='Report parameters as a JSON object')
@click.option('--parameters-file', type=click.Path(exists=True), help='Report parameters JSON file')
@click.option('--template-id', help='Template providing default parameters')
@click.option('--department-id', help='Owning department')
@click.option('--filename', help='Requested output filename')
@click.option('--visibility', type=click.Choice(['private', 'department', 'organization']))
@click.option('--scheduled-for', help='ISO-8601 time before which the job is not dispatched')
@click.option('--description', help='Job description')
@click.option('--wait', is_flag=True, help='Run the engine in-process until the job finishes')
@click.pass_context
def submit_job(ctx, report_type, name, output_format, priority, parameters_json, parameters_file,
               template_id, department_id, filename, visibility, scheduled_for, description, wait):
    """Submit a new report job"""

    async def _submit(orchestrator: ReportOrchestrator):
        request: Dict[str, Any] = {
            "reportType": report_type,
            "name": name,
            "output": {"format": output_format},
            "parameters": _load_json_option(parameters_json, parameters_file, "parameters"),
        }
        optional = {
            "priority": priority,
            "templateId": template_id,
            "departmentId": department_id,
            "visibility": visibility,
            "scheduledFor": scheduled_for,
            "description": description,
        }
        request.update({key: value for key, value in optional.items() if value is not None})
        if filename:
            request["output"]["filename"] = filename

        receipt = await orchestrator.submit_job(request, ctx.obj['user'])
        click.echo("Job submitted successfully!")
        click.echo(f"Job ID: {receipt['id']}")
        click.echo(f"Queue Position: {receipt['queuePosition']}")
        if receipt['estimatedWaitTime'] is not None:
            click.echo(f"Estimated Wait: {receipt['estimatedWaitTime']:.0f}s")

        if wait:
            await orchestrator.start()
            job = await orchestrator.get_job(receipt['id'])
            while not job.is_terminal() and not job.retry_pending:
                await asyncio.sleep(0.5)
                job = await orchestrator.get_job(receipt['id'])
            _display_job_details(job.to_dict(), ctx.obj['verbose'])

    _run(ctx, _submit)


@job.command('status')
@click.argument('job_id')
@click.pass_context
def job_status(ctx, job_id):
    """Get job status and details"""

    async def _status(orchestrator: ReportOrchestrator):
        job = await orchestrator.get_job(job_id)
        _display_job_details(job.to_dict(), ctx.obj['verbose'])

    _run(ctx, _status)


@job.command('list')
@click.option('--status', multiple=True,
              type=click.Choice(['queued', 'running', 'completed', 'failed', 'cancelled']), help='Filter by status')
@click.option('--report-type', multiple=True, help='Filter by report type')
@click.option('--requested-by', help='Filter by requester')
@click.option('--page', type=int, default=1)
@click.option('--limit', type=int, default=20)
@click.option('--sort-by', type=click.Choice(['createdAt', 'updatedAt', 'status', 'priority']), default='createdAt')
@click.option('--sort-order', type=click.Choice(['asc', 'desc']), default='desc')
@click.pass_context
def list_jobs(ctx, status, report_type, requested_by, page, limit, sort_by, sort_order):
    """List report jobs"""

    async def _list(orchestrator: ReportOrchestrator):
        query: Dict[str, Any] = {"page": page, "limit": limit, "sortBy": sort_by, "sortOrder": sort_order}
        if status:
            query["status"] = list(status)
        if report_type:
            query["reportType"] = list(report_type)
        if requested_by:
            query["requestedBy"] = requested_by
        result = await orchestrator.list_jobs(query)
        _display_jobs_table(result, ctx.obj['verbose'])

    _run(ctx, _list)


@job.command('cancel')
@click.argument('job_id')
@click.option('--reason', help='Cancellation reason')
@click.option('--queued-only', is_flag=True, help='Refuse to cancel a job that is already running')
@click.pass_context
def cancel_job(ctx, job_id, reason, queued_only):
    """Cancel a queued or running job"""

    async def _cancel(orchestrator: ReportOrchestrator):
        job = await orchestrator.cancel_job(job_id, reason=reason, allow_running=not queued_only)
        if job.cancel_requested and job.status.value == 'running':
            click.echo(f"Cancellation requested for running job {job_id}")
        else:
            click.echo(f"Job {job_id} cancelled successfully")

    _run(ctx, _cancel)


@job.command('retry')
@click.argument('job_id')
@click.pass_context
def retry_job(ctx, job_id):
    """Re-enqueue a failed job"""

    async def _retry(orchestrator: ReportOrchestrator):
        job = await orchestrator.retry_job(job_id)
        click.echo(f"Job {job_id} re-queued (retry {job.retry_count})")

    _run(ctx, _retry)


@job.command('download')
@click.argument('job_id')
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Destination file (defaults to the report filename)')
@click.pass_context
def download_report(ctx, job_id, output):
    """Download a completed report"""

    async def _download(orchestrator: ReportOrchestrator):
        handle = await orchestrator.download_report(job_id)
        destination = output or handle.filename
        with open(destination, 'wb') as f:
            async for chunk in handle.iter_chunks():
                f.write(chunk)
        click.echo(f"Saved {handle.filename} ({handle.size} bytes, {handle.content_type}) to {destination}")

    _run(ctx, _download)


# Schedule Commands
@schedule.command('create')
@click.argument('name')
@click.argument('template_id')
@click.option('--frequency', type=click.Choice(['once', 'daily', 'weekly', 'monthly', 'quarterly']), required=True)
@click.option('--time-of-day', default='00:00', help='Local firing time HH:MM')
@click.option('--timezone', default='UTC', help='IANA timezone name')
@click.option('--format', 'output_format', default='csv', help='Output format')
@click.option('--delivery', type=click.Choice(['email', 'storage', 'both']), default='storage')
@click.option('--overrides-json', help='Parameter overrides as a JSON object')
@click.option('--priority', type=click.Choice(['low', 'normal', 'high', 'urgent']))
@click.pass_context
def create_schedule(ctx, name, template_id, frequency, time_of_day, timezone, output_format,
                    delivery, overrides_json, priority):
    """Create a recurring schedule from a template"""

    async def _create(orchestrator: ReportOrchestrator):
        request: Dict[str, Any] = {
            "name": name,
            "templateId": template_id,
            "schedule": {"frequency": frequency, "timeOfDay": time_of_day, "timezone": timezone},
            "output": {"format": output_format},
            "delivery": {"method": delivery},
            "parameterOverrides": _load_json_option(overrides_json, None, "overrides"),
        }
        if priority:
            request["priority"] = priority
        created = await orchestrator.create_schedule(request, ctx.obj['user'])
        click.echo(f"Schedule created: {created.id}")
        click.echo(f"Next Run: {created.to_dict()['nextRunAt']}")

    _run(ctx, _create)


@schedule.command('list')
@click.option('--template-id', help='Filter by template')
@click.option('--active/--inactive', default=None, help='Filter by active flag')
@click.option('--page', type=int, default=1)
@click.option('--limit', type=int, default=20)
@click.pass_context
def list_schedules(ctx, template_id, active, page, limit):
    """List schedules"""

    async def _list(orchestrator: ReportOrchestrator):
        query: Dict[str, Any] = {"page": page, "limit": limit}
        if template_id:
            query["templateId"] = template_id
        if active is not None:
            query["isActive"] = active
        result = await orchestrator.list_schedules(query)
        if not result.items:
            click.echo("No schedules found")
            return
        click.echo(f"{'Schedule ID':<26} {'Name':<30} {'Frequency':<10} {'Active':<7} {'Next Run':<22}")
        click.echo("-" * 98)
        for item in result.items:
            data = item.to_dict()
            click.echo(f"{data['id']:<26} {data['name'][:30]:<30} {data['schedule']['frequency']:<10} "
                       f"{str(data['isActive']):<7} {data['nextRunAt'] or '-':<22}")
        _display_pagination(result)

    _run(ctx, _list)


@schedule.command('pause')
@click.argument('schedule_id')
@click.option('--reason', help='Pause reason')
@click.pass_context
def pause_schedule(ctx, schedule_id, reason):
    """Pause a schedule"""

    async def _pause(orchestrator: ReportOrchestrator):
        await orchestrator.pause_schedule(schedule_id, reason=reason)
        click.echo(f"Schedule {schedule_id} paused")

    _run(ctx, _pause)


@schedule.command('resume')
@click.argument('schedule_id')
@click.pass_context
def resume_schedule(ctx, schedule_id):
    """Resume a paused schedule"""

    async def _resume(orchestrator: ReportOrchestrator):
        resumed = await orchestrator.resume_schedule(schedule_id)
        click.echo(f"Schedule {schedule_id} resumed; next run {resumed.to_dict()['nextRunAt']}")

    _run(ctx, _resume)


@schedule.command('tick')
@click.pass_context
def tick_schedules(ctx):
    """Fire every due schedule once"""

    async def _tick(orchestrator: ReportOrchestrator):
        jobs = await orchestrator.tick_schedules()
        click.echo(f"Created {len(jobs)} job(s)")
        for created in jobs:
            click.echo(f"  {created.id} (schedule {created.schedule_id})")

    _run(ctx, _tick)


# Template Commands
@template.command('create')
@click.argument('name')
@click.argument('report_type')
@click.option('--format', 'output_format', default='csv', help='Default output format')
@click.option('--filename-template', help='Filename pattern, e.g. "{reportType}-{date}"')
@click.option('--parameters-json', help='Default parameters as a JSON object')
@click.option('--parameters-file', type=click.Path(exists=True), help='Default parameters JSON file')
@click.option('--visibility', type=click.Choice(['private', 'department', 'organization']))
@click.option('--description', help='Template description')
@click.pass_context
def create_template(ctx, name, report_type, output_format, filename_template, parameters_json,
                    parameters_file, visibility, description):
    """Create a report template"""

    async def _create(orchestrator: ReportOrchestrator):
        request: Dict[str, Any] = {
            "name": name,
            "reportType": report_type,
            "parameters": _load_json_option(parameters_json, parameters_file, "parameters"),
            "defaultOutput": {"format": output_format},
        }
        if filename_template:
            request["defaultOutput"]["filenameTemplate"] = filename_template
        if visibility:
            request["visibility"] = visibility
        if description:
            request["description"] = description
        created = await orchestrator.create_template(request, ctx.obj['user'])
        click.echo(f"Template created: {created.id}")

    _run(ctx, _create)


@template.command('list')
@click.option('--report-type', help='Filter by report type')
@click.option('--search', help='Case-insensitive search on name and description')
@click.option('--page', type=int, default=1)
@click.option('--limit', type=int, default=20)
@click.pass_context
def list_templates(ctx, report_type, search, page, limit):
    """List templates"""

    async def _list(orchestrator: ReportOrchestrator):
        query: Dict[str, Any] = {"page": page, "limit": limit}
        if report_type:
            query["reportType"] = report_type
        if search:
            query["search"] = search
        result = await orchestrator.list_templates(query)
        if not result.items:
            click.echo("No templates found")
            return
        click.echo(f"{'Template ID':<26} {'Name':<30} {'Report Type':<24} {'Uses':<6}")
        click.echo("-" * 89)
        for item in result.items:
            click.echo(f"{item.id:<26} {item.name[:30]:<30} {item.report_type[:24]:<24} {item.usage_count:<6}")
        _display_pagination(result)

    _run(ctx, _list)


@template.command('clone')
@click.argument('template_id')
@click.option('--name', help='Name of the copy (defaults to "<name> (Copy)")')
@click.pass_context
def clone_template(ctx, template_id, name):
    """Clone a template"""

    async def _clone(orchestrator: ReportOrchestrator):
        clone = await orchestrator.clone_template(template_id, ctx.obj['user'], name=name)
        click.echo(f"Template cloned: {clone.id} ({clone.name})")

    _run(ctx, _clone)


@template.command('delete')
@click.argument('template_id')
@click.pass_context
def delete_template(ctx, template_id):
    """Delete a template"""

    async def _delete(orchestrator: ReportOrchestrator):
        await orchestrator.delete_template(template_id)
        click.echo(f"Template {template_id} deleted")

    _run(ctx, _delete)


# Monitor Commands
@monitor.command('health')
@click.pass_context
def system_health(ctx):
    """Show system health"""

    async def _health(orchestrator: ReportOrchestrator):
        health = await orchestrator.get_system_health()
        _display_system_health(health.to_dict(), ctx.obj['verbose'])

    _run(ctx, _health)


@monitor.command('metrics')
@click.pass_context
def show_metrics(ctx):
    """Print Prometheus metrics"""

    async def _metrics(orchestrator: ReportOrchestrator):
        click.echo(orchestrator.render_metrics())

    _run(ctx, _metrics)


# Maintenance Commands
@maintenance.command('prune')
@click.option('--older-than-days', type=float, default=90.0, help='Age of terminal jobs to delete')
@click.pass_context
def prune_jobs(ctx, older_than_days):
    """Delete old terminal job records"""

    async def _prune(orchestrator: ReportOrchestrator):
        pruned = await orchestrator.prune_jobs(older_than_days)
        click.echo(f"Pruned {pruned} job(s)")

    _run(ctx, _prune)


@maintenance.command('purge')
@click.pass_context
def purge_reports(ctx):
    """Delete expired report artifacts"""

    async def _purge(orchestrator: ReportOrchestrator):
        purged = await orchestrator.purge_expired()
        click.echo(f"Purged {purged} artifact(s)")

    _run(ctx, _purge)


# Helper Functions
def _build_orchestrator(ctx) -> ReportOrchestrator:
    """Create an orchestrator from the global options"""
    config = load_config(ctx.obj['config'])
    if ctx.obj['database_url']:
        config.database_url = ctx.obj['database_url']

    setup_logger(
        level=ctx.obj['log_level'],
        structured=config.logging.structured and not ctx.obj['verbose'],
        log_file=config.logging.log_file
    )
    return ReportOrchestrator(config)


def _run(ctx, action: Callable[[ReportOrchestrator], Awaitable[None]]):
    """Run one command against an initialized orchestrator and report errors"""

    async def _execute():
        orchestrator = None
        try:
            orchestrator = _build_orchestrator(ctx)
            await orchestrator.initialize()
            await action(orchestrator)
        except ReportOrchestratorError as e:
            click.echo(f"Error: {e.message}", err=True)
            if ctx.obj['verbose'] and e.details:
                click.echo(json.dumps(e.details, indent=2, default=str), err=True)
            sys.exit(1)
        finally:
            if orchestrator:
                await orchestrator.close()

    asyncio.run(_execute())


def _load_json_option(text: Optional[str], path: Optional[str], label: str) -> Dict[str, Any]:
    try:
        if path:
            with open(path, 'r') as f:
                data = json.load(f)
        elif text:
            data = json.loads(text)
        else:
            return {}
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint=label)
    if not isinstance(data, dict):
        raise click.BadParameter("expected a JSON object", param_hint=label)
    return data


def _display_job_details(job_info: Dict[str, Any], verbose: bool):
    """Display detailed job information"""
    click.echo(f"Job ID: {job_info['id']}")
    click.echo(f"Name: {job_info['name']}")
    click.echo(f"Report Type: {job_info['reportType']}")
    click.echo(f"Status: {job_info['status']}")
    click.echo(f"Priority: {job_info['priority']}")
    click.echo(f"Created: {job_info['createdAt']}")

    if job_info.get('startedAt'):
        click.echo(f"Started: {job_info['startedAt']}")

    if job_info.get('completedAt'):
        click.echo(f"Completed: {job_info['completedAt']}")

    progress = job_info.get('progress') or {}
    click.echo(f"Progress: {progress.get('percentage', 0):.1f}% ({progress.get('currentStep')})")

    if job_info.get('error'):
        error = job_info['error']
        click.echo(f"Error: [{error['code']}] {error['message']} (retries: {error['retryCount']})")

    storage = (job_info.get('output') or {}).get('storage')
    if storage:
        click.echo(f"Report: {storage.get('url') or storage.get('path')} (expires {storage.get('expiresAt')})")

    if verbose:
        click.echo("Parameters:")
        click.echo(json.dumps(job_info.get('parameters') or {}, indent=2))


def _display_jobs_table(result: Page, verbose: bool):
    """Display jobs in table format"""
    if not result.items:
        click.echo("No jobs found")
        return

    # Header
    if verbose:
        click.echo(f"{'Job ID':<26} {'Name':<30} {'Status':<10} {'Priority':<8} {'Progress':<9} {'Created':<20}")
        click.echo("-" * 108)
    else:
        click.echo(f"{'Job ID':<26} {'Name':<30} {'Status':<10} {'Progress':<9}")
        click.echo("-" * 78)

    # Rows
    for job in result.items:
        progress = f"{job.progress.percentage:.1f}%"
        if verbose:
            created = job.to_dict()['createdAt'][:19]
            click.echo(f"{job.id:<26} {job.name[:30]:<30} {job.status.value:<10} "
                       f"{job.priority.value:<8} {progress:<9} {created:<20}")
        else:
            click.echo(f"{job.id:<26} {job.name[:30]:<30} {job.status.value:<10} {progress:<9}")

    _display_pagination(result)


def _display_pagination(result: Page):
    click.echo(f"Page {result.page} of {result.total_pages} ({result.total} total)")


def _display_system_health(health: Dict[str, Any], verbose: bool):
    """Display system health information"""
    click.echo(f"Overall Status: {health['overall_status'].upper()}")
    click.echo(f"Database: {'healthy' if health['database_healthy'] else 'unreachable'}")
    click.echo(f"Uptime: {timedelta(seconds=int(health['uptime_seconds']))}")
    click.echo()

    jobs_by_status: Dict[str, int] = health.get('jobs_by_status') or {}
    click.echo("Jobs:")
    click.echo(f"  Total: {jobs_by_status.get('total', 0)}")
    for status in ('queued', 'running', 'completed', 'failed', 'cancelled'):
        click.echo(f"  {status.title()}: {jobs_by_status.get(status, 0)}")
    click.echo()

    click.echo("Dispatcher:")
    click.echo(f"  Queue Size: {health['queue_size']}")
    click.echo(f"  Running Jobs: {health['running_jobs']}")
    click.echo(f"  Active Schedules: {health['active_schedules']}")

    if verbose:
        click.echo(f"Timestamp: {health['timestamp']}")


def main():
    """Main CLI entry point"""
    cli()


if __name__ == '__main__':
    main()
