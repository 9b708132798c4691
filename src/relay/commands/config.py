# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Config command for relay.

Provides basic configuration validation.
"""

import typer

from relay.config import ConfigError, load_config

app = typer.Typer(help="Manage and validate configuration")


@app.command()
def validate(
    config_path: str = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """
    Validate configuration file.

    Checks that the config file exists, is valid YAML and only uses known keys.
    """
    typer.echo("Validating configuration...")
    typer.echo()

    try:
        config = load_config(config_path)
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except ConfigError as e:
        typer.echo(f"Validation failed: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Source: {config.source or '(defaults)'}")
    typer.echo(f"Units: {config.units_dir}")
    typer.echo(f"Workflows: {config.workflows_dir}")
    typer.echo(f"Artifacts: {config.artifacts_dir}")
    typer.echo(f"Max workers: {config.max_workers}")
    typer.echo(f"Default timeout: {config.default_timeout_minutes} minutes")
    typer.echo(f"Retention: {config.retention_days} days")
    typer.echo()
    typer.echo("Configuration validation complete!")
