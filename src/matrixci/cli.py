# cli.py
from __future__ import annotations

import subprocess
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click

from matrixci.cache import DEFAULT_CACHE_DIR, DEFAULT_REDIS_TIMEOUT, FileCacheStore, RedisCacheStore
from matrixci.config import EngineConfig
from matrixci.errors import ConfigInvalid
from matrixci.git import current_branch, head_sha
from matrixci.matrix import empty_axes, expand
from matrixci.model import Event, EventKind, RunResult, WorkflowSpec
from matrixci.scheduler import Scheduler
from matrixci.triggers import next_scheduled_tick
from matrixci.ui.console import Console, get_console, set_console
from matrixci.workflow import load_workflow

DEFAULT_WORKFLOW = Path(".github/workflows/ci.yml")
WORKFLOW_DIR = Path(".matrixci")

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def find_workflow_files() -> list[Path]:
    """
    Find candidate workflow files in the current directory.

    Returns:
        .github/workflows/ci.yml if present, otherwise every *.yml/*.yaml in .matrixci/
    """
    if DEFAULT_WORKFLOW.exists():
        return [DEFAULT_WORKFLOW]
    if not WORKFLOW_DIR.is_dir():
        return []
    return sorted([*WORKFLOW_DIR.glob("*.yml"), *WORKFLOW_DIR.glob("*.yaml")])


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Specify a different path:\n  matrixci run --workflow .github/workflows/ci.yml",
            )
            sys.exit(EXIT_CONFIG)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW}",
                f"  {WORKFLOW_DIR}/*.yml",
            ],
            suggestion="Create a workflow file or specify one explicitly:\n  matrixci run --workflow ci.yml",
        )
        sys.exit(EXIT_CONFIG)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  matrixci run --workflow {workflow_files[0]}",
        )
        sys.exit(EXIT_CONFIG)

    return workflow_files[0]


def _load(workflow_arg: str | None) -> WorkflowSpec:
    console = get_console()
    path = discover_workflow(workflow_arg)
    try:
        return load_workflow(path)
    except ConfigInvalid as e:
        console.print_error("Invalid workflow", e.message, details=[f"file: {e.source or path}", *e.details])
        sys.exit(EXIT_CONFIG)


def _parse_tick(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc).replace(second=0, microsecond=0)
    try:
        tick = datetime.fromisoformat(value)
    except ValueError:
        raise click.BadParameter(f"not an ISO timestamp: {value}", param_hint="--at")
    return tick if tick.tzinfo else tick.replace(tzinfo=timezone.utc)


def build_event(kind: Optional[str], branch: Optional[str], at: Optional[str]) -> Optional[Event]:
    """Event for the CLI flags, or None for a manual run (always admitted)."""
    if kind is None:
        return None
    event_kind = EventKind.parse(kind)
    if event_kind == EventKind.PULL_REQUEST:
        return Event.pull_request(branch)
    if event_kind == EventKind.PUSH:
        if not branch:
            try:
                branch = current_branch()
            except (subprocess.CalledProcessError, FileNotFoundError):
                branch = None
        if not branch:
            raise click.UsageError("push events need a branch: pass --branch or run inside a git checkout")
        return Event.push(branch)
    return Event.scheduled(_parse_tick(at))


def _cache_store(cache_dir: str, cache_url: Optional[str], no_cache: bool, cache_timeout: float = DEFAULT_REDIS_TIMEOUT):
    if no_cache:
        return None
    if cache_url:
        return RedisCacheStore(cache_url, timeout=cache_timeout)
    return FileCacheStore(cache_dir)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    envvar="MATRIXCI_DEBUG",
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: run a matrix CI workflow locally."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to .github/workflows/ci.yml)")
@click.option(
    "--event",
    "event_kind",
    type=click.Choice(["pull_request", "push", "schedule"]),
    default=None,
    help="Event to evaluate against the triggers (omit for a manual run)",
)
@click.option("--branch", default=None, help="Branch for push/pull_request events (push defaults to the current branch)")
@click.option("--at", default=None, help="ISO timestamp of the scheduled tick (defaults to now, UTC)")
@click.option("--job", "jobs", multiple=True, help="Only run these jobs (repeatable)")
@click.option("--workers", default=None, type=int, envvar="MATRIXCI_WORKERS", help="Max concurrent job instances")
@click.option("--timeout", default=None, type=float, envvar="MATRIXCI_TIMEOUT", help="Per-instance timeout in seconds")
@click.option("--cache-dir", default=DEFAULT_CACHE_DIR, envvar="MATRIXCI_CACHE_DIR", show_default=True, help="Cache directory")
@click.option("--cache-url", default=None, envvar="MATRIXCI_CACHE_URL", help="Redis URL for a shared cache store")
@click.option(
    "--cache-timeout",
    default=DEFAULT_REDIS_TIMEOUT,
    type=float,
    envvar="MATRIXCI_CACHE_TIMEOUT",
    show_default=True,
    help="Seconds before a Redis cache call gives up (the cache is then disabled for the run)",
)
@click.option("--no-cache", is_flag=True, default=False, help="Run without cache restore/save")
@click.pass_context
def run(ctx, workflow, event_kind, branch, at, jobs, workers, timeout, cache_dir, cache_url, cache_timeout, no_cache):
    """Run a workflow."""
    console = get_console()
    spec = _load(workflow)
    event = build_event(event_kind, branch, at)

    try:
        commit = head_sha()
        console.print_debug(f"commit: {commit}")
    except (subprocess.CalledProcessError, FileNotFoundError):
        console.print_debug("not a git checkout")

    config = EngineConfig.for_workflow(spec, max_workers=workers, instance_timeout=timeout)
    scheduler = Scheduler(config, cache_store=_cache_store(cache_dir, cache_url, no_cache, cache_timeout), console=console)

    outcome: dict = {}

    def _target() -> None:
        try:
            outcome["result"] = scheduler.run(spec, event, jobs=jobs or None)
        except BaseException as e:
            outcome["error"] = e

    # run on a worker thread so Ctrl-C can cancel in-flight instances
    worker = threading.Thread(target=_target, name="matrixci-run")
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user, cancelling run")
        scheduler.cancel()
        worker.join()
        sys.exit(EXIT_INTERRUPTED)

    if "error" in outcome:
        e = outcome["error"]
        if isinstance(e, ConfigInvalid):
            console.print_error("Invalid workflow", e.message, details=e.details)
            sys.exit(EXIT_CONFIG)
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    result: RunResult = outcome["result"]
    if not result.admitted:
        return
    if not result.ok:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to .github/workflows/ci.yml)")
def plan(workflow):
    """Show triggers and the expanded job matrix without running anything."""
    console = get_console()
    spec = _load(workflow)
    triggers = spec.triggers

    console.print_header(f"Workflow: {spec.name}")
    console.print_info(f"pull_request: {'yes' if triggers.pull_request else 'no'}")
    if not triggers.push_enabled:
        console.print_info("push: no")
    elif triggers.push_branches is None:
        console.print_info("push: any branch")
    else:
        console.print_info(f"push: {', '.join(triggers.push_branches)}")
    for cron in triggers.schedules:
        console.print_info(f"schedule: {cron}")
    tick = next_scheduled_tick(spec, datetime.now(timezone.utc))
    if tick is not None:
        console.print_info(f"next scheduled run: {tick.isoformat()}")

    console.print_header("Instances")
    total = 0
    for template in spec.jobs:
        empty = empty_axes(template)
        if empty:
            console.print_matrix_empty(template.name, empty)
            continue
        for inst in expand(template):
            total += 1
            cache = f", cache={inst.cache.namespace}" if inst.cache else ""
            console.print_info(f"  {inst.id}: os={inst.os}, steps={len(inst.steps)}{cache}")
    console.print_info(f"{total} instance(s)")


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to .github/workflows/ci.yml)")
def check(workflow):
    """Validate a workflow declaration."""
    spec = _load(workflow)
    get_console().print_info(f"OK: {spec.name} ({len(spec.jobs)} job(s))")


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to .github/workflows/ci.yml)")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--workers", default=None, type=int, envvar="MATRIXCI_WORKERS", help="Max concurrent job instances")
@click.option("--cache-dir", default=DEFAULT_CACHE_DIR, envvar="MATRIXCI_CACHE_DIR", show_default=True)
@click.option("--cache-url", default=None, envvar="MATRIXCI_CACHE_URL", help="Redis URL for a shared cache store")
@click.option(
    "--cache-timeout",
    default=DEFAULT_REDIS_TIMEOUT,
    type=float,
    envvar="MATRIXCI_CACHE_TIMEOUT",
    show_default=True,
    help="Seconds before a Redis cache call gives up (the cache is then disabled for the run)",
)
@click.option("--ticks/--no-ticks", default=True, show_default=True, help="Deliver scheduled events every minute")
def serve(workflow, host, port, workers, cache_dir, cache_url, cache_timeout, ticks):
    """Receive events over HTTP and start runs."""
    import uvicorn

    from matrixci.server import create_app

    spec = _load(workflow)
    config = EngineConfig.for_workflow(spec, max_workers=workers)
    app = create_app(
        spec,
        config,
        cache_store=_cache_store(cache_dir, cache_url, False, cache_timeout),
        console=get_console(),
        schedule_ticks=ticks,
    )
    uvicorn.run(app, host=host, port=port)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
