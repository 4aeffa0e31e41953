"""Main CLI entry point."""

import getpass
import sys
import threading
import time
from datetime import datetime
from typing import List, Optional

import click
from botocore.exceptions import BotoCoreError, ClientError
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from daycycle.config.models import OperationType
from daycycle.config.parser import Config, ConfigValidationError, ServiceRegistry
from daycycle.orchestrator.dependency_graph import DependencyResolver, ValidationResult
from daycycle.orchestrator.service import OperationService
from daycycle.remote.banking import EOD_PHASES
from daycycle.scheduler.scheduler import OperationScheduler
from daycycle.state.models import (
    OperationRequest,
    OperationStatus,
    ScheduleRequest,
    ScheduleUpdate,
)
from daycycle.state.store import StateStore
from daycycle.utils.aws_client import AWSClientManager
from daycycle.utils.errors import OrchestrationError
from daycycle.utils.logging import get_logger, setup_logging

console = Console()
logger = get_logger(__name__)

STATUS_STYLES = {
    "Initiated": "cyan",
    "Running": "cyan",
    "Completed": "green",
    "Failed": "red",
    "Cancelled": "yellow",
    "RolledBack": "yellow",
    "Pending": "dim",
    "Skipped": "yellow",
    "Active": "green",
    "Paused": "yellow",
}


@click.group()
@click.option('--config', 'config_path', default='daycycle.yaml', help='Path to configuration file')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.pass_context
def cli(ctx, config_path, log_level):
    """Start of Day / End of Day operation orchestrator."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['log_level'] = log_level


def load_config(ctx) -> Config:
    """Load and validate configuration file, then set up logging from it."""
    config_path = ctx.obj['config_path']
    try:
        config = Config(config_path).load()
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Configuration file not found: {config_path}")
        sys.exit(1)
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e))
        sys.exit(1)

    setup_logging(ctx.obj['log_level'], config.project.log_dir)
    return config


def build_service(ctx) -> OperationService:
    config = load_config(ctx)
    try:
        return OperationService.from_config(config)
    except OrchestrationError as e:
        console.print(f"[red]Error:[/red] {e.to_user_message()}")
        sys.exit(1)


def split_names(value: Optional[str]) -> List[str]:
    return [name.strip() for name in (value or "").split(",") if name.strip()]


def styled(status) -> str:
    return f"[{STATUS_STYLES.get(status.value, 'white')}]{status.value}[/]"


def fail(error: OrchestrationError):
    console.print(f"[red]Error:[/red] {error.to_user_message()}")
    sys.exit(1)


@cli.command()
@click.pass_context
def validate(ctx):
    """Validate the configuration and service dependencies."""
    config = load_config(ctx)
    registry = ServiceRegistry.from_config(config)
    resolver = DependencyResolver(registry)

    services = registry.get_services()
    enabled = registry.get_enabled_services()
    console.print(
        f"[green]✓[/green] Configuration valid: {len(services)} services, {len(enabled)} enabled"
    )

    overall = ValidationResult()
    for operation_type in OperationType:
        result = resolver.validate_dependency_constraints(operation_type)
        for error in result.errors:
            console.print(f"  [red]✗[/red] {operation_type.value}: {error}")
        for warning in result.warnings:
            console.print(f"  [yellow]⚠[/yellow] {operation_type.value}: {warning}")
        if result.is_valid:
            console.print(f"[green]✓[/green] {operation_type.value} dependencies valid")
        overall.merge(result)

    if config.remote.executor == 'ssm':
        manager = AWSClientManager.from_remote_config(config.remote)
        try:
            credentials = manager.validate_credentials()
        except (BotoCoreError, ClientError) as e:
            overall.add_error(f"AWS credentials: {e}")
            console.print(f"  [red]✗[/red] AWS credentials: {e}")
        else:
            console.print(
                f"[green]✓[/green] AWS account {credentials.account_id} ({credentials.region})"
            )

    if not overall.is_valid:
        sys.exit(1)


@cli.command()
@click.option('--type', 'operation_type', type=click.Choice(['SOD', 'EOD'], case_sensitive=False), default='SOD')
@click.option('--services', help='Comma-separated service names to include')
@click.pass_context
def plan(ctx, operation_type, services):
    """Show the execution plan without running anything."""
    config = load_config(ctx)
    operation_type = OperationType(operation_type.upper())

    if operation_type == OperationType.EOD:
        table = Table(title="End of Day steps", show_header=True, header_style="bold")
        table.add_column("Phase", style="cyan")
        table.add_column("Tasks")
        table.add_row("Pre-Validation", "")
        table.add_row("Transaction Cutoff", "halt intake, process pending")
        table.add_row("In-Flight Transaction Wait", "poll until nothing is pending")
        for phase_name, tasks in EOD_PHASES.items():
            table.add_row(phase_name, ", ".join(tasks))
        console.print(table)
        return

    service = OperationService.from_config(config)
    try:
        execution_plan = service.sod.create_plan(split_names(services))
    except OrchestrationError as e:
        fail(e)
    finally:
        service.shutdown(wait=False)

    table = Table(title=f"{operation_type.value} execution plan", show_header=True, header_style="bold")
    table.add_column("Phase", justify="right", style="cyan")
    table.add_column("Services")
    table.add_column("Mode")
    table.add_column("Est. (s)", justify="right")
    for phase in execution_plan.phases:
        table.add_row(
            str(phase.phase_number),
            ", ".join(phase.service_names),
            "parallel" if phase.can_execute_in_parallel else "sequential",
            str(phase.estimated_duration),
        )
    console.print(table)
    console.print(
        f"{execution_plan.total_services} services ({execution_plan.critical_services} critical), "
        f"estimated {execution_plan.estimated_minutes} min"
    )
    if execution_plan.unplaced_services:
        console.print(
            f"[red]Could not place:[/red] {', '.join(execution_plan.unplaced_services)}"
        )
        sys.exit(1)


def run_operation(ctx, operation_type: OperationType, request: OperationRequest, user: str):
    service = build_service(ctx)

    console.print(Panel.fit(
        f"[bold]{operation_type.value} for {request.environment}[/bold]\n"
        f"Services: {', '.join(request.services_filter) or 'all'}\n"
        f"Dry run: {'yes' if request.dry_run else 'no'}\n"
        f"Force: {'yes' if request.force_execution else 'no'}",
        title="Operation",
        border_style="cyan"
    ))

    try:
        result = service.start(operation_type, request, user)
    except OrchestrationError as e:
        fail(e)

    console.print(
        f"Operation [cyan]{result.operation_id}[/cyan] initiated, "
        f"estimated {result.estimated_duration_minutes} min"
    )

    try:
        follow(service, result.operation_id)
    except KeyboardInterrupt:
        console.print("[yellow]Cancelling...[/yellow]")
        service.cancel_operation(result.operation_id, user)
        service.wait(result.operation_id)
    finally:
        service.shutdown(wait=True)

    report = service.get_operation_status(result.operation_id)
    print_report(report)
    if report.status != OperationStatus.COMPLETED:
        sys.exit(1)


def follow(service: OperationService, operation_id: str, interval: float = 0.5):
    """Show a progress bar until the operation reaches a terminal state."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console
    ) as progress:
        task_id = progress.add_task("[cyan]Starting...", total=100)
        while True:
            report = service.get_operation_status(operation_id)
            progress.update(
                task_id,
                completed=report.progress_percentage,
                description=f"[cyan]{report.current_step}[/cyan]"
            )
            if report.status.is_terminal:
                break
            time.sleep(interval)


def print_report(report):
    border = "green" if report.status == OperationStatus.COMPLETED else "red"
    lines = [
        f"Status: {styled(report.status)}",
        f"Progress: {report.progress_percentage}%",
        f"Started: {report.start_time:%Y-%m-%d %H:%M:%S}",
    ]
    if report.end_time:
        lines.append(f"Ended: {report.end_time:%Y-%m-%d %H:%M:%S}")
    if report.error_message:
        lines.append(f"\n[red]{report.error_message}[/red]")
    console.print(Panel.fit(
        "\n".join(lines),
        title=f"{report.operation_type.value} {report.operation_id}",
        border_style=border
    ))

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Details")
    for step in report.steps:
        table.add_row(
            str(step.step_order),
            step.step_name,
            styled(step.status),
            step.error_message or step.details,
        )
    console.print(table)


def operation_options(func):
    func = click.option('--user', default=getpass.getuser, help='Operator recorded as initiator')(func)
    func = click.option('--force', is_flag=True, help='Proceed despite failed pre-validation checks')(func)
    func = click.option('--dry-run', is_flag=True, help='Walk the steps without remote changes')(func)
    func = click.option('--services', help='Comma-separated service names to include')(func)
    func = click.option('--env', required=True, help='Environment name')(func)
    return func


@cli.command()
@operation_options
@click.pass_context
def sod(ctx, env, services, dry_run, force, user):
    """Run Start of Day."""
    request = OperationRequest(
        environment=env, services_filter=split_names(services),
        dry_run=dry_run, force_execution=force
    )
    run_operation(ctx, OperationType.SOD, request, user)


@cli.command()
@operation_options
@click.option('--cutoff', type=click.DateTime(), help='Transaction cutoff time (defaults to now)')
@click.pass_context
def eod(ctx, env, services, dry_run, force, user, cutoff: Optional[datetime]):
    """Run End of Day."""
    request = OperationRequest(
        environment=env, services_filter=split_names(services),
        dry_run=dry_run, force_execution=force, cutoff_time=cutoff
    )
    run_operation(ctx, OperationType.EOD, request, user)


@cli.command()
@click.argument('operation_id')
@click.pass_context
def status(ctx, operation_id):
    """Show the status and steps of an operation."""
    service = build_service(ctx)
    try:
        print_report(service.get_operation_status(operation_id))
    except OrchestrationError as e:
        fail(e)
    finally:
        service.shutdown(wait=False)


@cli.command()
@click.argument('operation_id')
@click.option('--user', default=getpass.getuser, help='Operator recorded as canceller')
@click.pass_context
def cancel(ctx, operation_id, user):
    """Cancel an initiated or running operation."""
    service = build_service(ctx)
    try:
        result = service.cancel_operation(operation_id, user)
    except OrchestrationError as e:
        fail(e)
    finally:
        service.shutdown(wait=False)
    console.print(f"[yellow]{result.message}[/yellow] ({styled(result.status)})")


@cli.command()
@click.option('--page', default=1, type=click.IntRange(min=1))
@click.option('--page-size', default=20, type=click.IntRange(min=1, max=200))
@click.option('--type', 'operation_type', type=click.Choice(['SOD', 'EOD'], case_sensitive=False))
@click.option('--env', help='Environment name')
@click.pass_context
def operations(ctx, page, page_size, operation_type, env):
    """List operations, newest first."""
    config = load_config(ctx)
    store = StateStore(config.project.state_path)
    items, total = store.list_operations(
        page, page_size,
        OperationType(operation_type.upper()) if operation_type else None,
        env
    )

    if not items:
        console.print("[dim]No operations found[/dim]")
        return

    table = Table(title=f"Operations (page {page}, {total} total)", show_header=True, header_style="bold")
    table.add_column("Operation ID", style="cyan")
    table.add_column("Type")
    table.add_column("Environment")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("By")
    for op in items:
        table.add_row(
            op.operation_id,
            op.operation_type.value,
            op.environment,
            styled(op.status),
            f"{op.start_time:%Y-%m-%d %H:%M:%S}",
            f"{op.initiated_by} ({op.initiation_method.value})",
        )
    console.print(table)


@cli.group()
def schedule():
    """Manage scheduled SOD/EOD operations."""
    pass


def build_scheduler(ctx) -> OperationScheduler:
    service = build_service(ctx)
    return OperationScheduler(service.store, service)


@schedule.command('add')
@click.option('--type', 'operation_type', type=click.Choice(['SOD', 'EOD'], case_sensitive=False), required=True)
@click.option('--env', required=True, help='Environment name')
@click.option('--cron', 'cron_expression', required=True, help="Cron expression, e.g. '0 6 * * 1-5'")
@click.option('--tz', 'time_zone', default='UTC', help='IANA time zone the expression is written in')
@click.option('--services', help='Comma-separated service names to include')
@click.option('--dry-run', is_flag=True)
@click.option('--disabled', is_flag=True, help='Create the schedule paused')
@click.option('--comments')
@click.option('--user', default=getpass.getuser)
@click.pass_context
def schedule_add(ctx, operation_type, env, cron_expression, time_zone, services, dry_run, disabled, comments, user):
    """Create a scheduled definition."""
    scheduler = build_scheduler(ctx)
    request = ScheduleRequest(
        environment=env,
        cron_expression=cron_expression,
        time_zone=time_zone,
        services_filter=split_names(services),
        dry_run=dry_run,
        is_enabled=not disabled,
        comments=comments,
    )
    try:
        if operation_type.upper() == OperationType.SOD.value:
            result = scheduler.schedule_sod(request, user)
        else:
            result = scheduler.schedule_eod(request, user)
    except OrchestrationError as e:
        fail(e)
    finally:
        scheduler.service.shutdown(wait=False)

    console.print(
        f"[green]✓[/green] {result.message}: [cyan]{result.schedule_id}[/cyan] "
        f"next at {result.next_execution_time:%Y-%m-%d %H:%M} UTC ({styled(result.status)})"
    )


@schedule.command('list')
@click.option('--env', help='Environment name')
@click.pass_context
def schedule_list(ctx, env):
    """List scheduled definitions by next execution time."""
    config = load_config(ctx)
    definitions = StateStore(config.project.state_path).list_schedules(env)

    if not definitions:
        console.print("[dim]No schedules found[/dim]")
        return

    table = Table(title="Schedules", show_header=True, header_style="bold")
    table.add_column("Schedule ID", style="cyan")
    table.add_column("Type")
    table.add_column("Environment")
    table.add_column("Cron")
    table.add_column("Next (UTC)")
    table.add_column("Status")
    table.add_column("Runs", justify="right")
    for d in definitions:
        table.add_row(
            d.schedule_id,
            d.operation_type.value,
            d.environment,
            f"{d.cron_expression} ({d.time_zone})",
            f"{d.next_execution_time:%Y-%m-%d %H:%M}",
            styled(d.status),
            f"{d.success_count}/{d.execution_count}",
        )
    console.print(table)


@schedule.command('update')
@click.argument('schedule_id')
@click.option('--cron', 'cron_expression')
@click.option('--tz', 'time_zone')
@click.option('--services', help='Comma-separated service names to include')
@click.option('--dry-run/--no-dry-run', default=None)
@click.option('--enable/--disable', 'is_enabled', default=None)
@click.option('--comments')
@click.option('--user', default=getpass.getuser)
@click.pass_context
def schedule_update(ctx, schedule_id, cron_expression, time_zone, services, dry_run, is_enabled, comments, user):
    """Update a scheduled definition."""
    scheduler = build_scheduler(ctx)
    update = ScheduleUpdate(
        cron_expression=cron_expression,
        time_zone=time_zone,
        services_filter=split_names(services) if services is not None else None,
        dry_run=dry_run,
        is_enabled=is_enabled,
        comments=comments,
    )
    try:
        result = scheduler.update_schedule(schedule_id, update, user)
    except OrchestrationError as e:
        fail(e)
    finally:
        scheduler.service.shutdown(wait=False)

    console.print(
        f"[green]✓[/green] {result.message}: next at "
        f"{result.next_execution_time:%Y-%m-%d %H:%M} UTC ({styled(result.status)})"
    )


@schedule.command('cancel')
@click.argument('schedule_id')
@click.option('--user', default=getpass.getuser)
@click.pass_context
def schedule_cancel(ctx, schedule_id, user):
    """Cancel a scheduled definition."""
    scheduler = build_scheduler(ctx)
    try:
        result = scheduler.cancel_schedule(schedule_id, user)
    except OrchestrationError as e:
        fail(e)
    finally:
        scheduler.service.shutdown(wait=False)
    console.print(f"[yellow]{result.message}[/yellow]")


@cli.group()
def scheduler():
    """Run the schedule loop."""
    pass


@scheduler.command('run')
@click.option('--interval', type=click.FloatRange(min=1), help='Seconds between ticks')
@click.pass_context
def scheduler_run(ctx, interval):
    """Fire due schedules until interrupted."""
    config = load_config(ctx)
    service = OperationService.from_config(config)
    loop = OperationScheduler(service.store, service)
    stop_event = threading.Event()

    interval = interval or config.orchestration.scheduler_interval
    console.print(f"[cyan]Scheduler running[/cyan], checking every {interval:.0f}s (Ctrl-C to stop)")
    try:
        loop.run(stop_event, interval)
    except KeyboardInterrupt:
        stop_event.set()
        running = service.active_operations()
        console.print(f"[yellow]Stopping; waiting for {len(running)} running operations...[/yellow]")
    finally:
        service.shutdown(wait=True)


@scheduler.command('tick')
@click.pass_context
def scheduler_tick(ctx):
    """Fire due schedules once and wait for the started operations."""
    scheduler_ = build_scheduler(ctx)
    try:
        result = scheduler_.tick()
    finally:
        scheduler_.service.shutdown(wait=True)

    for schedule_id, operation_id in result.started:
        console.print(f"[green]✓[/green] {schedule_id}: started {operation_id}")
    for schedule_id, error in result.failed:
        console.print(f"[red]✗[/red] {schedule_id}: {error}")
    if not result.fired:
        console.print("[dim]Nothing due[/dim]")
    if result.failed:
        sys.exit(1)


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
