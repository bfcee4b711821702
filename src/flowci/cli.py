# cli.py
from __future__ import annotations

import getpass
import json
import os
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import click

from flowci.client import APIClient, APIError
from flowci.dispatch import Dispatcher
from flowci.errors import FlowError, SchemaError
from flowci.executor import ShellStepExecutor
from flowci.git_facts.git import changed_since, current_ref, head_sha, remote_url
from flowci.model import Event, EventKind, RunStatus, WorkflowDefinition
from flowci.parser import load_workflow, load_workflows
from flowci.runner import RunCoordinator
from flowci.schedule import scheduled_events
from flowci.scheduler import JobGraphScheduler
from flowci.server.settings import Settings, load_settings
from flowci.store import MemoryRunStore, RunStore, SqlRunStore
from flowci.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW_FILE = "flowci_workflow.json"
SECRET_PREFIX = "FLOWCI_SECRET_"


# ---------------------------------------------------------------------
# Discovery & wiring
# ---------------------------------------------------------------------

def find_workflow_files(workflow_dir: str) -> list[Path]:
    """
    Find workflow documents for the current directory.

    `<workflow_dir>/*.json` wins; otherwise a single flowci_workflow.json.
    """
    directory = Path(workflow_dir)
    if directory.is_dir():
        files = sorted(directory.glob("*.json"))
        if files:
            return files
    default_workflow = Path(DEFAULT_WORKFLOW_FILE)
    if default_workflow.exists():
        return [default_workflow]
    return []


def discover_workflows(workflow_arg: str | None, settings: Settings) -> List[WorkflowDefinition]:
    """
    Load workflows from an explicit file/directory or by discovery.

    Raises:
        SystemExit: nothing found
        SchemaError: a document is invalid
    """
    console = get_console()

    if workflow_arg:
        path = Path(workflow_arg)
        if path.is_dir():
            return load_workflows(path)
        if not path.exists():
            console.print_error(
                "Workflow not found",
                f"Could not find workflow file or directory: {workflow_arg}",
                suggestion="Specify a different path:\n  flowci run --workflows .flowci/workflows",
            )
            sys.exit(1)
        return [load_workflow(path)]

    files = find_workflow_files(settings.workflow_dir)
    if not files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow documents.",
            details=[
                "Looked for:",
                f"  {settings.workflow_dir}/*.json",
                f"  {DEFAULT_WORKFLOW_FILE}",
            ],
            suggestion=f"Create a workflow document:\n  {settings.workflow_dir}/ci.json",
        )
        sys.exit(1)
    return [load_workflow(p) for p in files]


def secrets_from_env(environ: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """FLOWCI_SECRET_DEPLOY_TOKEN=... becomes secrets.DEPLOY_TOKEN."""
    env = os.environ if environ is None else environ
    return {k[len(SECRET_PREFIX):]: v for k, v in env.items() if k.startswith(SECRET_PREFIX) and v}


def parse_pairs(pairs: tuple, option: str) -> Dict[str, str]:
    result: Dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint=option)
        key, value = pair.split("=", 1)
        result[key.strip()] = value
    return result


def make_store(database_url: Optional[str]) -> RunStore:
    if not database_url or database_url == "memory":
        return MemoryRunStore()
    return SqlRunStore(database_url)


def make_coordinator(settings: Settings, *, workers: Optional[int], database_url: Optional[str]) -> RunCoordinator:
    return RunCoordinator(
        ShellStepExecutor(),
        store=make_store(database_url),
        max_concurrency=workers or settings.max_jobs,
        secrets=secrets_from_env(),
        console=get_console(),
    )


def event_from_git(kind: EventKind, ref: Optional[str], inputs: Dict[str, str], compare_ref: str) -> Event:
    """Describe the local checkout as an event; git facts that are unavailable are left out."""
    console = get_console()
    payload: Dict[str, object] = {"actor": getpass.getuser()}
    try:
        ref = ref or current_ref()
        payload["sha"] = head_sha()
        payload["repository"] = remote_url("origin").rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        console.print_debug(f"git facts unavailable: {e}")
        payload.setdefault("repository", Path(".").resolve().name)
    if kind is EventKind.PUSH:
        try:
            payload["changed_files"] = changed_since(compare_ref)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            console.print_debug(f"changed files unavailable: {e}")
    if inputs:
        payload["inputs"] = inputs
    return Event(kind=kind, ref=ref or "", payload=payload)


def _fail_with(ctx: click.Context, e: BaseException) -> None:
    console = get_console()
    if isinstance(e, SchemaError):
        console.print_error("Invalid workflow", str(e))
    elif isinstance(e, FlowError):
        console.print_error("flowci error", str(e))
    elif isinstance(e, APIError):
        console.print_error("API request failed", str(e))
    else:
        console.print_exception(e)
    sys.exit(1)


EVENT_CHOICE = click.Choice([k.value for k in EventKind])


# ---------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------

@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print errors and results")
@click.pass_context
def cli(ctx, debug, quiet):
    """flowci: event-driven workflow runner."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = load_settings()


@cli.command()
@click.argument("paths", nargs=-1, type=click.Path())
@click.pass_context
def validate(ctx, paths):
    """Validate workflow documents."""
    console = get_console()
    settings = ctx.obj["settings"]
    files = [Path(p) for p in paths] or find_workflow_files(settings.workflow_dir)
    if not files:
        discover_workflows(None, settings)

    failed = 0
    for path in files:
        try:
            wf = load_workflow(path)
        except (SchemaError, FileNotFoundError) as e:
            failed += 1
            console.print_error("Invalid workflow", str(e))
            continue
        console.print_info(f"✓ {path}: '{wf.name}' ({len(wf.jobs)} job(s))")
    if failed:
        sys.exit(1)


@cli.command()
@click.argument("path", required=False, type=click.Path())
@click.pass_context
def plan(ctx, path):
    """Print the stages each workflow's jobs run in."""
    console = get_console()
    try:
        for wf in discover_workflows(path, ctx.obj["settings"]):
            sched = JobGraphScheduler(wf)
            levels = [[key for job_id in level for key in sched.by_job[job_id]] for level in sched.plan()]
            console.print_plan(wf.name, levels)
    except (FlowError, FileNotFoundError) as e:
        _fail_with(ctx, e)


@cli.command()
@click.option("--workflows", "workflow_arg", default=None, help="Workflow file or directory")
@click.option("--event", "event_kind", type=EVENT_CHOICE, default="push", show_default=True)
@click.option("--ref", default=None, help="Git ref (defaults to the checked out branch)")
@click.option("--input", "inputs", multiple=True, help="Manual input KEY=VALUE (repeatable)")
@click.option("--workers", default=None, type=int, help="Maximum jobs running at once")
@click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against for paths filters")
@click.option("--db", "database_url", default=None, help="Run store URL ('memory' to keep nothing)")
@click.pass_context
def run(ctx, workflow_arg, event_kind, ref, inputs, workers, compare_ref, database_url):
    """Run the workflows that react to an event on the local checkout."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    coordinator = None

    try:
        workflows = discover_workflows(workflow_arg, settings)
        event = event_from_git(EventKind(event_kind), ref, parse_pairs(inputs, "--input"), compare_ref)
        coordinator = make_coordinator(settings, workers=workers, database_url=database_url or settings.database_url)
        result = Dispatcher(workflows, coordinator).dispatch(event)

        for error in result.errors:
            console.print_error("Workflow not started", error)
        if not result.run_ids:
            if not result.errors:
                console.print_error(
                    "Nothing to run",
                    f"No workflow reacts to {event.kind.value} on '{event.ref or '?'}'.",
                    suggestion="Pick another event or ref:\n  flowci run --event manual",
                )
            sys.exit(1)

        runs = [coordinator.wait(run_id) for run_id in result.run_ids]
        if result.errors or any(r.status is not RunStatus.SUCCESS for r in runs):
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        if coordinator is not None:
            for run_id in coordinator.active_runs():
                coordinator.cancel(run_id)
                coordinator.wait(run_id, timeout=10)
        sys.exit(130)
    except (FlowError, FileNotFoundError) as e:
        _fail_with(ctx, e)


@cli.command()
@click.argument("run_id")
@click.option("--api", default=None, help="API base URL (reads the local run store otherwise)")
@click.option("--db", "database_url", default=None, help="Run store URL")
@click.option("--output/--no-output", "show_output", default=False, help="Include captured step output")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the run as JSON")
@click.pass_context
def show(ctx, run_id, api, database_url, show_output, as_json):
    """Show a run and its jobs and steps."""
    console = get_console()
    try:
        if api:
            found = APIClient(api).get_run(run_id)
        else:
            store = make_store(database_url or ctx.obj["settings"].database_url)
            found = store.get(run_id)
            if found is None:
                console.print_error("Run not found", f"No run with id {run_id}")
                sys.exit(1)
    except (APIError, FlowError) as e:
        _fail_with(ctx, e)
        return
    if as_json:
        console.print_info(json.dumps(found.to_dict(), indent=2))
    else:
        console.print_run_detail(found, show_output=show_output)


@cli.command()
@click.argument("run_id")
@click.option("--api", required=True, help="API base URL (e.g., http://127.0.0.1:8080)")
@click.pass_context
def cancel(ctx, run_id, api):
    """Cancel a run on a flowci server."""
    console = get_console()
    try:
        cancelled = APIClient(api).cancel_run(run_id)
    except APIError as e:
        _fail_with(ctx, e)
        return
    if cancelled:
        console.print_info(f"Cancellation requested for run {run_id}")
    else:
        console.print_info(f"Run {run_id} already finished")


@cli.command()
@click.option("--api", default=None, help="API base URL to POST the event to")
@click.option("--redis-url", default=None, help="Push the event onto the Redis queue instead")
@click.option("--event", "event_kind", type=EVENT_CHOICE, default="push", show_default=True)
@click.option("--ref", default=None, help="Git ref (defaults to the checked out branch)")
@click.option("--input", "inputs", multiple=True, help="Manual input KEY=VALUE (repeatable)")
@click.option("--payload", default=None, help="Extra JSON object merged into the event payload")
@click.option("--compare-ref", default="origin/main", show_default=True)
@click.pass_context
def submit(ctx, api, redis_url, event_kind, ref, inputs, payload, compare_ref):
    """Submit an event to a flowci server or queue."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    redis_url = redis_url or (settings.redis_url if not api else None)
    if not api and not redis_url:
        console.print_error(
            "No destination",
            "Neither --api nor --redis-url (FLOWCI_REDIS_URL) is set.",
            suggestion="flowci submit --api http://127.0.0.1:8080",
        )
        sys.exit(1)

    event = event_from_git(EventKind(event_kind), ref, parse_pairs(inputs, "--input"), compare_ref)
    if payload:
        try:
            event.payload.update(json.loads(payload))
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            raise click.BadParameter(f"not a JSON object: {e}", param_hint="--payload")

    if api:
        try:
            result = APIClient(api).submit_event(event)
        except APIError as e:
            _fail_with(ctx, e)
            return
        console.print_info(f"\nSuccessfully submitted {event.kind.value} event to {api}")
        for run_id in result.get("run_ids", []):
            console.print_info(f"  Run ID: {run_id}")
        for error in result.get("errors", []):
            console.print_error("Workflow not started", error)
        return

    from flowci.server.queue import EventQueue

    queue = EventQueue.from_url(redis_url, settings.queue_name)
    queue.push(event)
    console.print_info(f"Queued {event.kind.value} event on '{settings.queue_name}' ({len(queue)} pending)")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8080, type=int, show_default=True)
@click.option("--workflows", "workflow_arg", default=None, help="Workflow file or directory")
@click.option("--workers", default=None, type=int, help="Maximum jobs running at once per run")
@click.pass_context
def serve(ctx, host, port, workflow_arg, workers):
    """Serve the HTTP API (events in, runs out)."""
    import uvicorn

    from flowci.server.app import create_app

    settings: Settings = ctx.obj["settings"]
    try:
        workflows = discover_workflows(workflow_arg, settings)
    except (FlowError, FileNotFoundError) as e:
        _fail_with(ctx, e)
        return
    coordinator = make_coordinator(settings, workers=workers, database_url=settings.database_url)
    app = create_app(Dispatcher(workflows, coordinator))
    uvicorn.run(app, host=host, port=port)


@cli.command()
@click.option("--redis-url", default=None, help="Redis URL (defaults to FLOWCI_REDIS_URL)")
@click.option("--workflows", "workflow_arg", default=None, help="Workflow file or directory")
@click.option("--workers", default=None, type=int, help="Maximum jobs running at once per run")
@click.option("--poll-interval", default=5, type=int, help="Seconds to block waiting for an event")
@click.option("--once", is_flag=True, default=False, help="Handle one event, wait for its runs, then exit")
@click.pass_context
def worker(ctx, redis_url, workflow_arg, workers, poll_interval, once):
    """Consume events from the Redis queue and run matching workflows."""
    from flowci.server.queue import EventQueue

    console = get_console()
    settings: Settings = ctx.obj["settings"]
    redis_url = redis_url or settings.redis_url
    if not redis_url:
        console.print_error("No queue", "Set --redis-url or FLOWCI_REDIS_URL.")
        sys.exit(1)

    try:
        workflows = discover_workflows(workflow_arg, settings)
    except (FlowError, FileNotFoundError) as e:
        _fail_with(ctx, e)
        return
    coordinator = make_coordinator(settings, workers=workers, database_url=settings.database_url)
    dispatcher = Dispatcher(workflows, coordinator)
    queue = EventQueue.from_url(redis_url, settings.queue_name)
    console.print_info(f"Worker listening on '{settings.queue_name}'")

    try:
        while True:
            event = queue.pop(timeout_s=poll_interval)
            if event is None:
                continue
            result = dispatcher.dispatch(event)
            for error in result.errors:
                console.print_error("Workflow not started", error)
            console.print_info(f"{event.kind.value} {event.ref}: {len(result.run_ids)} run(s) started")
            if once:
                for run_id in result.run_ids:
                    coordinator.wait(run_id)
                return
    except KeyboardInterrupt:
        console.print_info("\nWorker stopped by user")
        for run_id in coordinator.active_runs():
            coordinator.cancel(run_id)
        sys.exit(0)


@cli.command()
@click.option("--at", "at", default=None, help="ISO time to evaluate cron expressions at (default: now, UTC)")
@click.option("--workflows", "workflow_arg", default=None, help="Workflow file or directory")
@click.option("--redis-url", default=None, help="Queue due events instead of running them here")
@click.option("--ref", default="", help="Ref recorded on the schedule events")
@click.pass_context
def tick(ctx, at, workflow_arg, redis_url, ref):
    """Emit schedule events for cron expressions due at the current minute."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    try:
        when = datetime.fromisoformat(at) if at else datetime.now(timezone.utc)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--at")
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)

    try:
        workflows = discover_workflows(workflow_arg, settings)
    except (FlowError, FileNotFoundError) as e:
        _fail_with(ctx, e)
        return
    events = scheduled_events(workflows, when, ref=ref)
    if not events:
        console.print_info(f"No schedules due at {when.isoformat()}")
        return

    if redis_url:
        from flowci.server.queue import EventQueue

        queue = EventQueue.from_url(redis_url, settings.queue_name)
        for event in events:
            queue.push(event)
            console.print_info(f"Queued schedule event '{event.payload['schedule']}'")
        return

    coordinator = make_coordinator(settings, workers=None, database_url=settings.database_url)
    dispatcher = Dispatcher(workflows, coordinator)
    run_ids: List[str] = []
    for event in events:
        run_ids.extend(dispatcher.dispatch(event).run_ids)
    runs = [coordinator.wait(run_id) for run_id in run_ids]
    if any(r.status is not RunStatus.SUCCESS for r in runs):
        sys.exit(1)


if __name__ == "__main__":
    cli()
