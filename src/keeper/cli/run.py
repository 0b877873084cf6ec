"""
CLI: ``keeper run``: start the polling loop.
"""

from __future__ import annotations

import asyncio

import typer

from keeper.cli.utils import console, err_console, parse_task_ids
from keeper.core.errors import ConfigError


def run(
    tasks: str = typer.Option("", "--tasks", "-t", help="Comma-separated task ids returned on every poll"),
    concurrency: int | None = typer.Option(  # noqa: UP007
        None, "--concurrency", "-c", help="Max concurrent executions (default: MAX_CONCURRENT_EXECUTIONS)"
    ),
    poll_interval: float | None = typer.Option(  # noqa: UP007
        None, "--poll-interval", help="Seconds between polls (default: POLL_INTERVAL_SECONDS)"
    ),
    delay: float = typer.Option(0.5, "--delay", help="Seconds the demo executor spends per task"),
    cycles: int | None = typer.Option(None, "--cycles", "-n", help="Stop after this many polls"),  # noqa: UP007
) -> None:
    """Run the keeper loop against a static task list.

    Each poll hands the same task ids to the execution queue; the demo
    executor just sleeps ``--delay`` seconds per task.  SIGINT / SIGTERM
    drain the queue before exiting.

    Example::

        keeper run --tasks 1,2,3,4 --concurrency 2 --poll-interval 10
        keeper run --tasks a,b --cycles 1
    """
    from keeper.core.logging import configure_logging
    from keeper.core.settings import load_settings
    from keeper.execution import (
        ExecutionQueue,
        KeeperLoop,
        StaticTaskSource,
        log_queue_events,
        sleep_executor,
    )

    try:
        settings = load_settings()
        configure_logging(
            level=settings.log_level,
            json_format=settings.json_logs,
            service=settings.service_name,
        )
        queue = ExecutionQueue(concurrency, settings=settings)
        loop = KeeperLoop(
            queue,
            StaticTaskSource(parse_task_ids(tasks)),
            sleep_executor(delay),
            poll_interval=poll_interval,
            max_polls=cycles,
            settings=settings,
        )
    except ConfigError as exc:
        err_console.print(f"[red]Configuration Error:[/red] {exc}")
        raise typer.Exit(code=2) from exc

    log_queue_events(queue)
    console.print(
        f"[bold green]Starting keeper[/bold green] "
        f"(concurrency={queue.max_concurrency}, poll={loop.poll_interval}s)"
    )

    try:
        stats = asyncio.run(loop.run(install_signals=True))
    except KeyboardInterrupt:
        console.print("\n[yellow]Keeper stopped by user[/yellow]")
        return

    console.print(
        f"Keeper stopped: cycles={stats.cycles_run} completed={stats.tasks_completed} "
        f"failed={stats.tasks_failed} cancelled={stats.tasks_cancelled}"
    )
