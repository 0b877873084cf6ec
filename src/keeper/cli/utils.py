"""
CLI utility helpers: consoles and argument parsing.
"""

from __future__ import annotations

from rich.console import Console

console = Console()
err_console = Console(stderr=True)


def parse_task_ids(raw: str | None) -> list[str]:
    """Split a comma-separated ``--tasks`` value, dropping blanks."""
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]
