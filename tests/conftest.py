"""
Shared pytest fixtures and configuration for keeper tests.

This module provides:
- Settings/environment isolation for every test
- structlog reset so configured loggers never leak between tests
- Small executor helpers with observable concurrency

Usage:
    Fixtures are auto-discovered by pytest. Use them as function arguments.
"""

import asyncio
import sys
from collections.abc import Generator
from pathlib import Path

import pytest
import structlog

# Ensure keeper package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from keeper.core.settings import clear_settings_cache  # noqa: E402
from keeper.execution import ExecutionQueue  # noqa: E402

_KEEPER_ENV_VARS = (
    "MAX_CONCURRENT_EXECUTIONS",
    "POLL_INTERVAL_SECONDS",
    "LOG_LEVEL",
    "LOG_FORMAT",
    "KEEPER_SERVICE_NAME",
)


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark all tests without explicit markers as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Drop keeper env vars and the cached settings around each test."""
    for name in _KEEPER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture(autouse=True)
def reset_structlog() -> Generator[None, None, None]:
    """Undo any configure_logging() call made by a test."""
    yield
    structlog.reset_defaults()


# =============================================================================
# Queue Fixtures
# =============================================================================


@pytest.fixture
def queue() -> ExecutionQueue:
    """Execution queue with a ceiling of 2."""
    return ExecutionQueue(max_concurrency=2)


class ConcurrencyProbe:
    """Executor that records how many invocations overlap.

    Tasks listed in ``fail`` raise ``RuntimeError``.
    """

    def __init__(self, delay: float = 0.02, fail: tuple = ()) -> None:
        self.delay = delay
        self.fail = set(fail)
        self.running = 0
        self.max_running = 0
        self.calls: list = []

    async def __call__(self, task_id) -> None:
        self.calls.append(task_id)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(self.delay)
            if task_id in self.fail:
                raise RuntimeError(f"boom: {task_id}")
        finally:
            self.running -= 1


@pytest.fixture
def probe() -> ConcurrencyProbe:
    return ConcurrencyProbe()


@pytest.fixture
def make_probe() -> type[ConcurrencyProbe]:
    """Factory for probes with custom delay / failing tasks."""
    return ConcurrencyProbe
