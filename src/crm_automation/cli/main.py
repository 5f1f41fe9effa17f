"""Main CLI for the CRM automation engine."""

import asyncio
import json
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.table import Table

from ..collaborators.local import build_local_collaborators
from ..core.config import EngineConfig, load_config, load_workflow_file
from ..core.engine import WorkflowEngine
from ..core.enrollment import EnrollmentStatus, StepExecutionStatus
from ..core.errors import WorkflowEngineError, WorkflowValidationError
from ..core.events import DomainEvent, EventKind
from ..runtime.worker_pool import WorkerPool
from ..utils.rich_logging import setup_rich_logging
from ..workflow.lifecycle import validate_for_activation
from ..workflow.models import WorkflowStatus


console = Console()

STATUS_STYLES = {
    "active": "green",
    "completed": "cyan",
    "paused": "yellow",
    "exited": "dim",
    "failed": "red",
    "draft": "dim",
    "archived": "dim",
}


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/]"


def _load_engine_config(ctx) -> EngineConfig:
    workspace = ctx.obj["workspace"]
    config_path = ctx.obj["config_path"] or workspace / "config" / "crm-automation.yaml"
    config = load_config(config_path)
    config = config.model_copy(update={"workspace": workspace})
    return config


def _build_engine(ctx) -> WorkflowEngine:
    config = _load_engine_config(ctx)
    collaborators = build_local_collaborators(config.workspace / config.storage.records_file)
    return WorkflowEngine(config, collaborators, worker_id="cli")


@click.group()
@click.option("--workspace", "-w", default=".", help="Workspace directory")
@click.option("--config", "-c", "config_path", default=None, help="Config file (default: config/crm-automation.yaml)")
@click.pass_context
def cli(ctx, workspace, config_path):
    """CRM Automation - trigger-driven workflows for contacts and deals."""
    ctx.ensure_object(dict)
    ctx.obj["workspace"] = Path(workspace)
    ctx.obj["config_path"] = Path(config_path) if config_path else None


@cli.command()
@click.pass_context
def init(ctx):
    """Initialize a workspace with a default config and an empty records file."""
    workspace = ctx.obj["workspace"]
    console.print("[bold green]Initializing CRM automation workspace...[/]")

    config_dir = workspace / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    (workspace / "workflows").mkdir(exist_ok=True)

    config_file = config_dir / "crm-automation.yaml"
    if not config_file.exists():
        defaults = EngineConfig().model_dump(mode="json", exclude={"workspace"})
        config_file.write_text(yaml.safe_dump(defaults, sort_keys=False))
        console.print(f"  Created {config_file}")

    records_file = workspace / EngineConfig().storage.records_file
    if not records_file.exists():
        records_file.write_text(json.dumps({"default": []}, indent=2))
        console.print(f"  Created {records_file}")

    console.print("[green]✓ Initialization complete![/]")
    console.print("\nNext steps:")
    console.print("1. Add contacts to records.json")
    console.print("2. Write a workflow definition under workflows/")
    console.print("3. Run 'crm-automation import-workflow' then 'crm-automation activate'")


@cli.command("import-workflow")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def import_workflow(ctx, path):
    """Save a workflow definition from a YAML or JSON file."""
    engine = _build_engine(ctx)
    try:
        workflow = engine.save_workflow(load_workflow_file(path))
    except (WorkflowEngineError, ValueError) as e:
        console.print(f"[red]Error: {e}[/]")
        ctx.exit(1)
        return
    finally:
        engine.close()

    console.print(
        f"[green]✓ Saved workflow {workflow.id} (version {workflow.version}, "
        f"{len(workflow.steps)} steps, {_styled(workflow.status.value)})[/]"
    )


@cli.command()
@click.option("--status", "-s", type=click.Choice([s.value for s in WorkflowStatus]), help="Filter by status")
@click.pass_context
def workflows(ctx, status):
    """List workflow definitions."""
    engine = _build_engine(ctx)
    try:
        items = engine.workflows.list(status=WorkflowStatus(status) if status else None)
    finally:
        engine.close()

    table = Table(title="Workflows")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Trigger")
    table.add_column("Steps", justify="right")
    table.add_column("Version", justify="right")

    for workflow in items:
        table.add_row(
            workflow.id,
            workflow.name,
            _styled(workflow.status.value),
            workflow.trigger.type,
            str(len(workflow.steps)),
            str(workflow.version),
        )
    console.print(table)


@cli.command()
@click.argument("workflow_id")
@click.pass_context
def validate(ctx, workflow_id):
    """Report every activation problem without changing the workflow."""
    engine = _build_engine(ctx)
    try:
        errors = validate_for_activation(engine.workflows.get(workflow_id))
    except WorkflowEngineError as e:
        console.print(f"[red]Error: {e}[/]")
        ctx.exit(1)
        return
    finally:
        engine.close()

    if not errors:
        console.print(f"[green]✓ Workflow {workflow_id} is ready to activate[/]")
        return
    _print_validation_errors(workflow_id, errors)
    ctx.exit(1)


def _print_validation_errors(workflow_id: str, errors):
    console.print(f"[red]Workflow {workflow_id} cannot be activated:[/]")
    for error in errors:
        console.print(f"  [red]•[/] {error}")


@cli.command()
@click.argument("workflow_id")
@click.pass_context
def activate(ctx, workflow_id):
    """Validate and activate a workflow."""
    engine = _build_engine(ctx)
    try:
        workflow = engine.activate_workflow(workflow_id)
    except WorkflowValidationError as e:
        _print_validation_errors(workflow_id, e.errors)
        ctx.exit(1)
        return
    except WorkflowEngineError as e:
        console.print(f"[red]Error: {e}[/]")
        ctx.exit(1)
        return
    finally:
        engine.close()

    console.print(f"[green]✓ Workflow {workflow.id} is {workflow.status.value}[/]")


def _transition_command(name: str, help_text: str, method: str):
    @cli.command(name, help=help_text)
    @click.argument("workflow_id")
    @click.pass_context
    def command(ctx, workflow_id):
        engine = _build_engine(ctx)
        try:
            workflow = getattr(engine, method)(workflow_id)
        except WorkflowEngineError as e:
            console.print(f"[red]Error: {e}[/]")
            ctx.exit(1)
            return
        finally:
            engine.close()
        console.print(f"[green]✓ Workflow {workflow.id} is {workflow.status.value}[/]")

    return command


pause = _transition_command("pause", "Pause a workflow; open enrollments wait for reactivation.", "pause_workflow")
archive = _transition_command("archive", "Archive a workflow and exit its open enrollments.", "archive_workflow")
restore = _transition_command("restore", "Move an archived workflow back to draft.", "restore_workflow")


@cli.command()
@click.argument("workflow_id")
@click.option("--new-id", default=None, help="Id for the copy (default: <id>-copy)")
@click.pass_context
def duplicate(ctx, workflow_id, new_id):
    """Copy a workflow into a new draft named "<name> (Copy)"."""
    engine = _build_engine(ctx)
    try:
        workflow = engine.duplicate_workflow(workflow_id, new_id=new_id)
    except WorkflowEngineError as e:
        console.print(f"[red]Error: {e}[/]")
        ctx.exit(1)
        return
    finally:
        engine.close()

    console.print(f"[green]✓ Created {workflow.id} ({workflow.name}, {_styled(workflow.status.value)})[/]")


def _print_results(results):
    table = Table()
    table.add_column("Subject")
    table.add_column("Result")
    table.add_column("Enrollment")
    table.add_column("Status")

    for result in results:
        if result.enrolled:
            enrollment = result.enrollment
            table.add_row(
                enrollment.subject_id,
                "[green]enrolled[/]",
                enrollment.id,
                _styled(EnrollmentStatus(enrollment.status).value),
            )
        else:
            table.add_row("", f"[yellow]{result.rejection.value}[/]", "", result.message)
    console.print(table)


@cli.command()
@click.argument("workflow_id")
@click.argument("subject_ids", nargs=-1, required=True)
@click.pass_context
def enroll(ctx, workflow_id, subject_ids):
    """Manually enroll one or more contacts in an active workflow."""
    engine = _build_engine(ctx)
    try:
        results = engine.enroll_manually(workflow_id, subject_ids)
    except WorkflowEngineError as e:
        console.print(f"[red]Error: {e}[/]")
        ctx.exit(1)
        return
    finally:
        engine.close()

    console.print(f"[bold]{sum(1 for r in results if r.enrolled)} of {len(results)} enrolled[/]")
    _print_results(results)


@cli.command()
@click.argument("kind", type=click.Choice([k.value for k in EventKind]))
@click.argument("subject_id")
@click.option("--workspace-id", default="default", help="CRM workspace of the subject")
@click.option("--field", "fields", multiple=True, help="Changed field (record_updated)")
@click.option("--tag", "tags", multiple=True, help="Tag id (tag_added / tag_removed)")
@click.option("--payload", default=None, help="Extra event payload as JSON")
@click.pass_context
def emit(ctx, kind, subject_id, workspace_id, fields, tags, payload):
    """Feed a domain event to the trigger matcher."""
    try:
        data = json.loads(payload) if payload else {}
    except json.JSONDecodeError as e:
        console.print(f"[red]Error: --payload is not valid JSON: {e}[/]")
        ctx.exit(1)
        return
    if tags:
        data["tag_ids"] = list(tags)

    event = DomainEvent(
        kind=EventKind(kind),
        workspace_id=workspace_id,
        subject_id=subject_id,
        changed_fields=list(fields),
        payload=data,
    )
    engine = _build_engine(ctx)
    try:
        results = engine.handle_event(event)
    finally:
        engine.close()

    if not results:
        console.print(f"[dim]Event {event.event_id} matched no active workflow[/]")
        return
    console.print(f"[bold]Event {event.event_id} matched {len(results)} workflows[/]")
    _print_results(results)


@cli.command("submit-form")
@click.argument("form_id")
@click.argument("subject_id")
@click.option("--workspace-id", default="default", help="CRM workspace of the subject")
@click.option("--data", default=None, help="Submitted values as JSON")
@click.pass_context
def submit_form(ctx, form_id, subject_id, workspace_id, data):
    """Record a form submission and enroll the contact in matching workflows."""
    try:
        submission = json.loads(data) if data else {}
    except json.JSONDecodeError as e:
        console.print(f"[red]Error: --data is not valid JSON: {e}[/]")
        ctx.exit(1)
        return

    engine = _build_engine(ctx)
    try:
        results = engine.handle_form_submission(workspace_id, form_id, subject_id, submission)
    finally:
        engine.close()

    if not results:
        console.print(f"[dim]No active workflow watches form {form_id}[/]")
        return
    _print_results(results)


@cli.command()
@click.argument("workflow_id")
@click.option("--status", "-s", default="all", type=click.Choice(["all"] + [s.value for s in EnrollmentStatus]))
@click.option("--page", "-p", default=1, help="Page number")
@click.option("--page-size", "-n", default=25, help="Enrollments per page (max 100)")
@click.pass_context
def enrollments(ctx, workflow_id, status, page, page_size):
    """List a workflow's enrollments, newest first."""
    engine = _build_engine(ctx)
    try:
        result = engine.list_enrollments(workflow_id, status=status, page=page, page_size=page_size)
    finally:
        engine.close()

    table = Table(title=f"Enrollments for {workflow_id} (page {result.page}/{max(result.total_pages, 1)})")
    table.add_column("Enrollment")
    table.add_column("Subject")
    table.add_column("Status")
    table.add_column("Step")
    table.add_column("Next run")
    table.add_column("Error")

    for enrollment in result.enrollments:
        table.add_row(
            enrollment.id,
            enrollment.subject_id,
            _styled(enrollment.status),
            enrollment.current_step_id or "",
            enrollment.next_step_at.isoformat() if enrollment.next_step_at else "",
            enrollment.last_error or "",
        )
    console.print(table)

    breakdown = ", ".join(f"{k}: {v}" for k, v in result.status_breakdown.items() if v)
    console.print(f"Total: {result.total}" + (f" ({breakdown})" if breakdown else ""))


@cli.command()
@click.argument("enrollment_id")
@click.pass_context
def show(ctx, enrollment_id):
    """Show one enrollment and its step history."""
    engine = _build_engine(ctx)
    try:
        enrollment = engine.get_enrollment(enrollment_id)
        workflow = engine.workflows.find(enrollment.workflow_id)
    except WorkflowEngineError as e:
        console.print(f"[red]Error: {e}[/]")
        ctx.exit(1)
        return
    finally:
        engine.close()

    step = workflow.get_step(enrollment.current_step_id) if workflow and enrollment.current_step_id else None
    step_label = f"{step.id} ({step.type})" if step else (enrollment.current_step_id or "-")

    console.print(f"[bold]{enrollment.id}[/] {_styled(enrollment.status)}")
    console.print(f"  Workflow: {enrollment.workflow_id}")
    console.print(f"  Subject:  {enrollment.subject_id}")
    console.print(f"  Step:     {step_label}")
    if enrollment.failure_reason:
        console.print(f"  [red]Failure: {enrollment.failure_reason} ({enrollment.last_error})[/]")
    if enrollment.exit_reason:
        console.print(f"  Exit reason: {enrollment.exit_reason}")

    table = Table(title="Step history")
    table.add_column("Step")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Started at")
    table.add_column("Error")
    for execution in enrollment.step_history:
        table.add_row(
            execution.step_id,
            execution.step_type,
            StepExecutionStatus(execution.status).value,
            execution.started_at.isoformat(),
            execution.error or "",
        )
    console.print(table)


def _enrollment_command(name: str, help_text: str, method: str, with_reason: bool = False):
    @click.argument("enrollment_id")
    @click.pass_context
    def command(ctx, enrollment_id, reason=None):
        engine = _build_engine(ctx)
        try:
            args = (enrollment_id, reason) if with_reason else (enrollment_id,)
            enrollment = getattr(engine, method)(*args)
        except WorkflowEngineError as e:
            console.print(f"[red]Error: {e}[/]")
            ctx.exit(1)
            return
        finally:
            engine.close()
        console.print(f"Enrollment {enrollment.id} is {_styled(enrollment.status)}")

    if with_reason:
        command = click.option("--reason", "-r", default=None, help="Why the subject is leaving")(command)
    return cli.command(name, help=help_text)(command)


exit_enrollment = _enrollment_command(
    "exit", "Remove a subject from its workflow.", "exit_enrollment", with_reason=True
)
pause_enrollment = _enrollment_command(
    "pause-enrollment", "Pause one enrollment.", "pause_enrollment"
)
resume_enrollment = _enrollment_command(
    "resume-enrollment", "Resume a paused enrollment.", "resume_enrollment"
)


@cli.command()
@click.pass_context
def tick(ctx):
    """Run one scheduler cycle: date triggers, then every due enrollment."""
    engine = _build_engine(ctx)
    try:
        report = engine.tick()
    finally:
        engine.close()

    console.print(
        f"Processed {report.processed}: [green]{report.succeeded} succeeded[/], "
        f"[red]{report.failed} failed[/], [dim]{report.skipped} skipped[/] "
        f"in {report.duration_ms}ms"
    )
    if report.remaining:
        console.print(f"[yellow]{report.remaining} due enrollments left for the next pass[/]")
    for error in report.errors:
        console.print(f"  [red]{error['enrollment_id']}: {error['error']}[/]")


@cli.command()
@click.pass_context
def status(ctx):
    """Show due and active enrollment counts and upcoming date-trigger runs."""
    engine = _build_engine(ctx)
    try:
        snapshot = engine.status()
    finally:
        engine.close()

    table = Table(title=f"Scheduler status at {snapshot.timestamp.isoformat()}")
    table.add_column("Metric")
    table.add_column("Count", justify="right")
    table.add_row("Pending enrollments (due now)", str(snapshot.pending_enrollments))
    table.add_row("Active enrollments", str(snapshot.active_enrollments))
    table.add_row("Active workflows", str(snapshot.active_workflows))
    console.print(table)

    for workflow_id, run_at in sorted(snapshot.next_date_runs.items()):
        due = " [yellow](due now)[/]" if run_at <= snapshot.timestamp else ""
        console.print(f"  Date trigger {workflow_id}: next run {run_at.isoformat()}{due}")


@cli.command()
@click.option("--workers", "-n", type=int, default=None, help="Worker threads (default: workers.count)")
@click.option("--worker-id", default="worker", help="Name used in logs and lease holders")
@click.pass_context
def run(ctx, workers, worker_id):
    """Run the worker loop until interrupted."""
    config = _load_engine_config(ctx)
    agent_logger = setup_rich_logging(
        worker_id,
        config.workspace,
        log_level=config.logging.level,
        use_file=config.logging.use_file,
        use_json=config.logging.use_json,
    )
    collaborators = build_local_collaborators(config.workspace / config.storage.records_file)
    engine = WorkflowEngine(config, collaborators, worker_id=worker_id, agent_logger=agent_logger)
    pool = WorkerPool(engine, workers=workers)
    pool.setup_signal_handlers()

    console.print(f"[bold green]Starting {pool.workers} workers[/] (poll every {pool.poll_interval}s)")
    console.print("[dim]Press Ctrl+C to stop[/]")
    try:
        asyncio.run(pool.run())
    finally:
        pool.close()
        engine.close()
    console.print("[yellow]Stopped[/]")


if __name__ == "__main__":
    cli()
