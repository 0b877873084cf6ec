"""
Root Typer application for the keeper CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

app = Typer(
    name="keeper",
    help="keeper: poll due tasks and execute them with bounded concurrency.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from keeper import __version__

        typer.echo(f"keeper {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """keeper CLI: run the polling loop, inspect configuration."""


# ── Sub-command registration ─────────────────────────────────────────────

from keeper.cli.config import app as config_app  # noqa: E402
from keeper.cli.run import run  # noqa: E402

app.command("run")(run)
app.add_typer(config_app, name="config", help="Show resolved configuration")


if __name__ == "__main__":
    app()
