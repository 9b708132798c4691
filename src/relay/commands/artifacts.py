# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Artifacts command for relay.

Inspect and garbage-collect the local artifact store.
"""

import typer

from relay.artifacts import LocalArtifactStore

app = typer.Typer(help="Inspect and clean up published artifacts")


def _store(ctx: typer.Context) -> LocalArtifactStore:
    return LocalArtifactStore(ctx.obj["config"].artifacts_dir)


@app.command("list")
def list_command(ctx: typer.Context):
    """List live artifacts with their producer and expiry."""
    handles = _store(ctx).list()
    if not handles:
        typer.echo("No artifacts.")
        return
    for handle in handles:
        typer.echo(f"{handle.name}")
        typer.echo(f"    producer: {handle.producer}")
        typer.echo(f"    created:  {handle.created_at.isoformat()}")
        typer.echo(f"    retained: {handle.retention_days} days")


@app.command("gc")
def gc_command(ctx: typer.Context):
    """Remove expired artifacts and superseded versions."""
    removed = _store(ctx).gc()
    if not removed:
        typer.echo("Nothing to remove.")
        return
    for name in removed:
        typer.echo(f"Removed {name}")
