"""
CLI: ``keeper config``: show the resolved settings.
"""

from __future__ import annotations

import typer
from rich.table import Table

from keeper.cli.utils import console, err_console
from keeper.core.errors import ConfigError

app = typer.Typer(no_args_is_help=False, invoke_without_command=True)


@app.callback(invoke_without_command=True)
def show(ctx: typer.Context) -> None:
    """Print the settings read from the environment and ``.env``."""
    if ctx.invoked_subcommand is not None:
        return

    from keeper.core.settings import load_settings

    try:
        settings = load_settings()
    except ConfigError as e:
        err_console.print(f"[red]Configuration Error:[/red] {e}")
        raise typer.Exit(1) from e

    table = Table(title="keeper settings")
    table.add_column("Setting")
    table.add_column("Value")
    for key, value in settings.model_dump().items():
        table.add_row(key, str(value))
    console.print(table)


@app.command("validate")
def validate_config() -> None:
    """Validate configuration and exit non-zero on errors."""
    from keeper.core.settings import load_settings

    try:
        load_settings()
    except ConfigError as e:
        err_console.print(f"[red]Configuration Error:[/red] {e}")
        raise typer.Exit(1) from e

    console.print("[green]✓ Configuration is valid[/green]")
