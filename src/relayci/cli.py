# cli.py
from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path
from typing import Dict, Tuple

import click

from relayci.errors import ConfigurationError
from relayci.git_facts.git import current_ref, repo_name
from relayci.model import Event, EventKind, Pipeline, Status
from relayci.runner import Orchestrator, Scheduler, load_workflow
from relayci.settings import Settings
from relayci.ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130

EVENT_CHOICES = [k.value for k in EventKind]


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / "relayci_workflow.py"
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  relayci run --workflow my_workflow.py",
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
                "  relayci_workflow.py",
                "  *_workflow.py",
            ],
            suggestion="Create a workflow file:\n  relayci_workflow.py\n\nOr specify a workflow explicitly:\n  relayci run --workflow my_workflow.py",
        )
        sys.exit(EXIT_CONFIG)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  relayci run --workflow relayci_workflow.py",
        )
        sys.exit(EXIT_CONFIG)

    return workflow_files[0]


def parse_inputs(pairs: Tuple[str, ...]) -> Dict[str, str]:
    """('publish=true', 'x=1') -> {'publish': 'true', 'x': '1'}"""
    out: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--input")
        out[key.strip()] = value
    return out


def build_event(event_kind: str, ref: str | None, inputs: Tuple[str, ...]) -> Event:
    console = get_console()
    if not ref:
        try:
            ref = current_ref()
            console.print_debug(f"Using git ref: {ref}")
        except (subprocess.CalledProcessError, FileNotFoundError):
            ref = ""
            console.print_debug("Could not determine git ref; using an empty ref")
    return Event(kind=EventKind(event_kind), ref=ref, inputs=parse_inputs(inputs))


def _load(workflow: str | None) -> Tuple[Path, Pipeline]:
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        return workflow_path, load_workflow(workflow_path)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if console.debug:
            console.print_exception(e)
        sys.exit(EXIT_CONFIG)


def _settings(**overrides) -> Settings:
    return Settings.from_env().override(**overrides)


def _event_options(fn):
    fn = click.option(
        "--input",
        "inputs",
        multiple=True,
        metavar="KEY=VALUE",
        help="Manual dispatch input (repeatable)",
    )(fn)
    fn = click.option("--ref", default=None, help="Branch/tag ref (defaults to the current git branch)")(fn)
    fn = click.option(
        "--event",
        "event_kind",
        type=click.Choice(EVENT_CHOICES),
        default=EventKind.PUSH.value,
        show_default=True,
        help="Event that triggers the run",
    )(fn)
    fn = click.option(
        "--workflow",
        default=None,
        help="Workflow file path (defaults to relayci_workflow.py if present)",
    )(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and captured step output)",
)
@click.pass_context
def cli(ctx, debug):
    """relayci: matrix CI pipelines with artifact handoff and gated publish."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@_event_options
@click.option("--workers", default=None, type=int, help="Max concurrent job instances [env: RELAYCI_WORKERS]")
@click.option("--timeout", default=None, type=float, help="Per-instance budget in seconds, 0 = none [env: RELAYCI_JOB_TIMEOUT]")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Stop running instances after the first failure [env: RELAYCI_FAIL_FAST]")
@click.option("--work-dir", default=None, help="Instance workspaces root [env: RELAYCI_WORK_DIR]")
@click.option("--artifact-dir", default=None, help="Artifact store root, or 'memory' [env: RELAYCI_ARTIFACT_DIR]")
@click.option("--source", default=".", show_default=True, help="Source tree copied into each workspace")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the final run as JSON")
@click.pass_context
def run(ctx, workflow, event_kind, ref, inputs, workers, timeout, fail_fast, work_dir, artifact_dir, source, as_json):
    """Run a relayci pipeline for one event."""
    console = get_console()
    workflow_path, pipeline = _load(workflow)

    try:
        settings = _settings(
            max_workers=workers,
            job_timeout=timeout,
            fail_fast=fail_fast,
            work_dir=work_dir,
            artifact_dir=artifact_dir,
        )
        event = build_event(event_kind, ref, inputs)
        orchestrator = Orchestrator(pipeline, settings, source_dir=source, console=console)

        console.print_info(f"Repository: {repo_name()}")
        console.print_info(f"Workflow: {workflow_path.name}")

        decision, result = orchestrator.trigger(event)
        if result is None:
            if as_json:
                click.echo(json.dumps({"started": False, "reason": decision.reason}))
            sys.exit(0)

        console.print_results(result)
        if as_json:
            click.echo(json.dumps(result.to_dict(), indent=2))

        if result.status == Status.CANCELLED:
            sys.exit(EXIT_CANCELLED)
        if result.status != Status.SUCCEEDED:
            sys.exit(EXIT_FAILED)

    except ConfigurationError as e:
        console.print_error("Invalid pipeline configuration", e.message, details=[f"{k}={v}" for k, v in e.details.items()])
        sys.exit(EXIT_CONFIG)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_CANCELLED)


@cli.command()
@_event_options
@click.pass_context
def plan(ctx, workflow, event_kind, ref, inputs):
    """Show the trigger decision, stages and expanded instances without running anything."""
    console = get_console()
    _workflow_path, pipeline = _load(workflow)

    try:
        scheduler = Scheduler(pipeline.groups, console=console)
        event = build_event(event_kind, ref, inputs)
        orchestrator = Orchestrator(pipeline, _settings(artifact_dir="memory"), console=console)
        decision = orchestrator.decide(event)
    except ConfigurationError as e:
        console.print_error("Invalid pipeline configuration", e.message, details=[f"{k}={v}" for k, v in e.details.items()])
        sys.exit(EXIT_CONFIG)

    console.print_decision(decision)
    if decision.start:
        for key, value in decision.bindings.items():
            console.print_info(f"  {key} = {value}")
    console.print_plan(scheduler.stages(), scheduler.plan())


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (defaults to relayci_workflow.py if present)")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8080, show_default=True, type=int)
@click.option("--source", default=".", show_default=True, help="Source tree copied into each workspace")
@click.pass_context
def serve(ctx, workflow, host, port, source):
    """Serve the webhook trigger endpoint (POST /events)."""
    import uvicorn

    from relayci.server import create_app

    console = get_console()
    _workflow_path, pipeline = _load(workflow)
    try:
        orchestrator = Orchestrator(pipeline, _settings(), source_dir=source, console=console)
    except ConfigurationError as e:
        console.print_error("Invalid pipeline configuration", e.message)
        sys.exit(EXIT_CONFIG)

    uvicorn.run(create_app(orchestrator), host=host, port=port)


if __name__ == "__main__":
    cli()
