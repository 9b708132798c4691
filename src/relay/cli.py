# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Main CLI entry point for relay.

Dumb trigger: parses args, compiles the workflow, executes, renders output.
No pipeline logic - all of it lives in unit and workflow definitions.
"""

import logging
import os
import signal
from pathlib import Path
from typing import Dict, List, Optional

import typer

from relay import __version__
from relay.artifacts import LocalArtifactStore
from relay.compiler import (
    compile_workflow,
    lint_workflow,
    list_workflows,
    load_workflow_yaml,
    referenced_secrets,
)
from relay.config import ConfigError, RelayConfig, load_config
from relay.contracts import load_units
from relay.errors import CompileError
from relay.event_client import EventClient
from relay.executor import Orchestrator, render_plan, render_run_record
from relay.triggers import EVENT_KINDS


app = typer.Typer(
    name="relay",
    help="Compose and run reusable CI/CD workflow units",
    no_args_is_help=True,
)


def _parse_kv_args(args: Optional[List[str]]) -> dict:
    """Parse key=value arguments into a dict.

    Supports:
    - Booleans: true, false
    - Nulls: null, none
    - Numbers: integers and floats
    - JSON: values starting with { or [ are parsed as JSON
    - Strings: everything else
    """
    import json

    if not args:
        return {}
    result = {}
    for arg in args:
        if "=" in arg:
            key, value = arg.split("=", 1)
            # Try to parse as int/float/bool/json
            if value.lower() == "true":
                result[key] = True
            elif value.lower() == "false":
                result[key] = False
            elif value.lower() == "null" or value.lower() == "none":
                result[key] = None
            elif value.startswith("{") or value.startswith("["):
                # Try JSON parsing for objects and arrays
                try:
                    result[key] = json.loads(value)
                except json.JSONDecodeError:
                    result[key] = value
            else:
                try:
                    result[key] = int(value)
                except ValueError:
                    try:
                        result[key] = float(value)
                    except ValueError:
                        result[key] = value
        else:
            typer.echo(f"Ignoring argument without '=': {arg}", err=True)
    return result


def _collect_secrets(declared: List[str], mappings: Optional[List[str]]) -> Dict[str, str]:
    """Read declared workflow secrets from the environment.

    A secret NAME is read from $NAME unless remapped with --secret NAME=ENV_VAR.
    Values are returned for the orchestrator and never echoed.
    """
    sources = {name: name for name in declared}
    for mapping in mappings or []:
        name, _, env_var = mapping.partition("=")
        if name not in sources:
            typer.echo(f"Error: workflow does not declare secret '{name}'", err=True)
            raise typer.Exit(1)
        sources[name] = env_var or name

    return {
        name: os.environ[env_var]
        for name, env_var in sources.items()
        if env_var in os.environ
    }


def _config(ctx: typer.Context) -> RelayConfig:
    return ctx.obj["config"]


@app.callback()
def main_callback(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Compose and run reusable CI/CD workflow units."""
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ConfigError) as e:
        typer.echo(f"Config error: {e}", err=True)
        raise typer.Exit(1)

    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, config.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config": config, "verbose": verbose}


@app.command()
def run(
    ctx: typer.Context,
    workflow: str = typer.Argument(..., help="Workflow ID or path to a workflow YAML"),
    args: Optional[List[str]] = typer.Argument(None, help="key=value workflow inputs (manual trigger)"),
    event: str = typer.Option("push", "--event", "-e", help=f"Trigger event: {', '.join(EVENT_KINDS)}"),
    branch: Optional[str] = typer.Option(None, "--branch", "-b", help="Branch for trigger filters"),
    secret: Optional[List[str]] = typer.Option(None, "--secret", "-s", help="Secret source as NAME=ENV_VAR"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would run without executing"),
    max_workers: Optional[int] = typer.Option(None, "--max-workers", "-j", help="Concurrent nodes"),
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w", help="Working directory for steps"),
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json, csv"),
):
    """Run a workflow for a trigger event."""
    config = _config(ctx)
    inputs = _parse_kv_args(args)

    try:
        workflow_def = load_workflow_yaml(workflow, config.workflows_dir)
        secrets = _collect_secrets(referenced_secrets(workflow_def), secret)
        units = load_units(config.units_dir)

        # Compile: validate contracts, expand matrices, order the graph
        plan = compile_workflow(
            workflow_def,
            units,
            event=event,
            branch=branch,
            inputs=inputs,
            available_secrets=None if dry_run else secrets.keys(),
            default_timeout_minutes=config.default_timeout_minutes,
        )
    except CompileError as e:
        typer.echo(f"Compile error: {e}", err=True)
        raise typer.Exit(1)

    if not plan.order:
        typer.echo(f"Nothing to run: {plan.workflow_id} is not triggered on this branch")
        return

    orchestrator = Orchestrator(
        plan,
        LocalArtifactStore(config.artifacts_dir),
        secrets=secrets,
        workspace=workspace,
        max_workers=max_workers or config.max_workers,
        retention_days=config.retention_days,
        dry_run=dry_run,
        verbose=ctx.obj["verbose"],
        event_client=EventClient(config.events_log),
    )

    previous = signal.signal(signal.SIGINT, lambda signum, frame: orchestrator.cancel())
    try:
        record = orchestrator.run()
    finally:
        signal.signal(signal.SIGINT, previous)

    render_run_record(record, format_type=format)
    if not record.success:
        raise typer.Exit(1)


@app.command()
def plan(
    ctx: typer.Context,
    workflow: str = typer.Argument(..., help="Workflow ID or path to a workflow YAML"),
    args: Optional[List[str]] = typer.Argument(None, help="key=value workflow inputs (manual trigger)"),
    event: str = typer.Option("push", "--event", "-e", help="Trigger event"),
    branch: Optional[str] = typer.Option(None, "--branch", "-b", help="Branch for trigger filters"),
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json, csv"),
):
    """Show the nodes a trigger would run, in execution order."""
    config = _config(ctx)
    try:
        workflow_def = load_workflow_yaml(workflow, config.workflows_dir)
        compiled = compile_workflow(
            workflow_def,
            load_units(config.units_dir),
            event=event,
            branch=branch,
            inputs=_parse_kv_args(args),
        )
    except CompileError as e:
        typer.echo(f"Compile error: {e}", err=True)
        raise typer.Exit(1)
    render_plan(compiled, format_type=format)


@app.command()
def lint(
    ctx: typer.Context,
    workflows: Optional[List[str]] = typer.Argument(None, help="Workflows to check (default: all)"),
):
    """Validate units and workflows without running anything."""
    config = _config(ctx)
    names = workflows or list_workflows(config.workflows_dir)
    failures = 0

    try:
        units = load_units(config.units_dir)
    except CompileError as e:
        typer.echo(f"Unit error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"{len(units)} units ok")

    for name in names:
        try:
            plans = lint_workflow(load_workflow_yaml(name, config.workflows_dir), units)
        except CompileError as e:
            failures += 1
            typer.echo(f"FAIL {name}: {e}", err=True)
            continue
        summary = ", ".join(f"{event}: {len(p.order)} nodes" for event, p in plans.items())
        typer.echo(f"ok   {name} ({summary})")

    if failures:
        raise typer.Exit(1)


@app.command()
def units(ctx: typer.Context):
    """List available units and their contracts."""
    config = _config(ctx)
    try:
        contracts = load_units(config.units_dir)
    except CompileError as e:
        typer.echo(f"Unit error: {e}", err=True)
        raise typer.Exit(1)

    for name, contract in contracts.items():
        typer.echo(f"{name}: {contract.description}")
        for spec in contract.inputs.values():
            flag = " (required)" if spec.required and spec.default is None else ""
            default = f" = {spec.default!r}" if spec.default is not None else ""
            typer.echo(f"    input  {spec.name}: {spec.type}{default}{flag}")
        for secret_name in sorted(contract.secrets):
            typer.echo(f"    secret {secret_name}")
        for artifact in sorted(contract.artifacts):
            typer.echo(f"    artifact {artifact}")


@app.command()
def workflows(ctx: typer.Context):
    """List available workflows."""
    for name in list_workflows(_config(ctx).workflows_dir):
        typer.echo(name)


@app.command()
def version():
    """Show version information."""
    typer.echo(f"relay version {__version__}")


# Static commands (config, artifacts)
from relay.commands import artifacts, config  # noqa: E402

app.add_typer(config.app, name="config")
app.add_typer(artifacts.app, name="artifacts")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
