"""Tests for ExecutionQueue: cycles, bookkeeping, failure memo, events."""

from __future__ import annotations

import asyncio

import pytest

from keeper.core.errors import (
    InvalidConfigError,
    InvalidTaskBatchError,
    TaskExecutionError,
)
from keeper.core.settings import KeeperSettings
from keeper.execution import (
    CycleComplete,
    ExecutionQueue,
    QueueEventType,
    TaskFailed,
    TaskStarted,
    TaskState,
    TaskSucceeded,
)


async def _noop(task_id) -> None:
    return None


def _failing_on(*bad):
    async def _executor(task_id) -> None:
        if task_id in bad:
            raise RuntimeError(f"Task {task_id} failed")

    return _executor


# ── Construction ─────────────────────────────────────────────────────────


class TestConstruction:
    def test_explicit_ceiling(self):
        assert ExecutionQueue(5).max_concurrency == 5

    def test_default_ceiling_from_settings(self):
        assert ExecutionQueue().max_concurrency == 3

    def test_ceiling_from_environment(self, monkeypatch):
        monkeypatch.setenv("MAX_CONCURRENT_EXECUTIONS", "2")
        assert ExecutionQueue().max_concurrency == 2

    def test_ceiling_from_settings_object(self):
        settings = KeeperSettings(max_concurrent_executions=7)
        assert ExecutionQueue(settings=settings).max_concurrency == 7

    def test_invalid_environment_ceiling(self, monkeypatch):
        monkeypatch.setenv("MAX_CONCURRENT_EXECUTIONS", "0")
        with pytest.raises(InvalidConfigError):
            ExecutionQueue()

    @pytest.mark.parametrize("value", [0, -3, 2.5, "4"])
    def test_invalid_explicit_ceiling(self, value):
        with pytest.raises(InvalidConfigError):
            ExecutionQueue(value)

    def test_initial_state(self):
        queue = ExecutionQueue(2)
        assert queue.stats.to_dict() == {
            "depth": 0, "in_flight": 0, "completed": 0, "failed": 0, "cancelled": 0,
        }
        assert queue.failed_tasks == frozenset()
        assert not queue.is_running
        assert not queue.is_draining
        assert queue.current_cycle_id is None


# ── Cycles ───────────────────────────────────────────────────────────────


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_respects_concurrency_limit(self, queue, probe):
        await queue.enqueue(["task1", "task2", "task3", "task4"], probe)
        assert probe.max_running <= 2
        assert sorted(probe.calls) == ["task1", "task2", "task3", "task4"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ceiling", [1, 2, 4])
    async def test_max_active_never_exceeds_ceiling(self, ceiling, make_probe):
        probe = make_probe(delay=0.01)
        queue = ExecutionQueue(ceiling)
        await queue.enqueue([f"t{i}" for i in range(10)], probe)
        assert probe.max_running == ceiling

    @pytest.mark.asyncio
    async def test_cycle_stats_with_one_failure(self, queue):
        result = await queue.enqueue(["a", "b", "c"], _failing_on("c"))
        stats = result.stats
        assert (stats.completed, stats.failed, stats.depth, stats.in_flight) == (2, 1, 0, 0)
        assert result.total == 3

    @pytest.mark.asyncio
    async def test_tracks_cycle_completions(self, queue):
        events: list[CycleComplete] = []
        queue.subscribe(events.append, QueueEventType.CYCLE_COMPLETE)
        executor = _failing_on("task_fail")

        await queue.enqueue(["task1", "task2", "task_fail", "task3"], executor)
        assert len(events) == 1
        assert events[0].stats.to_dict() == {
            "depth": 0, "in_flight": 0, "completed": 3, "failed": 1, "cancelled": 0,
        }

        await queue.enqueue(["task_fail", "task4"], executor)
        assert len(events) == 2
        assert events[1].stats.completed == 1
        assert events[1].stats.failed == 0
        assert events[1].stats.depth == 0
        assert events[1].stats.in_flight == 0

    @pytest.mark.asyncio
    async def test_failed_task_excluded_from_next_cycle(self, queue, make_probe):
        probe = make_probe(delay=0, fail=("fail",))
        await queue.enqueue(["x", "y", "fail"], probe)
        result = await queue.enqueue(["fail", "z"], probe)

        assert result.stats.completed == 1
        assert result.stats.failed == 0
        assert result.skipped == ["fail"]
        assert [r.task_id for r in result.records] == ["z"]
        assert probe.calls.count("fail") == 1

    @pytest.mark.asyncio
    async def test_failed_task_never_reinvoked(self, queue, make_probe):
        probe = make_probe(delay=0, fail=("broken",))
        for _ in range(5):
            await queue.enqueue(["broken", "ok"], probe)
        assert probe.calls.count("broken") == 1
        assert probe.calls.count("ok") == 5
        assert queue.failed_tasks == frozenset({"broken"})

    @pytest.mark.asyncio
    async def test_counters_reset_between_cycles(self, queue):
        await queue.enqueue(["a", "b"], _failing_on("a"))
        assert queue.stats.completed == 0
        assert queue.stats.failed == 0
        assert "a" in queue.failed_tasks

        result = await queue.enqueue(["c"], _noop)
        assert result.stats.completed == 1
        assert result.stats.failed == 0

    @pytest.mark.asyncio
    async def test_failures_never_raise(self, queue):
        async def _explode(task_id):
            raise KeyError(task_id)

        result = await queue.enqueue(["a", "b", "c"], _explode)
        assert result.stats.failed == 3
        assert result.by_state(TaskState.FAILED) == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_records_capture_outcomes(self, queue):
        result = await queue.enqueue(["ok", "bad"], _failing_on("bad"))
        ok, bad = result.records

        assert ok.state is TaskState.SUCCEEDED
        assert ok.error is None
        assert ok.duration_seconds is not None

        assert bad.state is TaskState.FAILED
        assert isinstance(bad.error, TaskExecutionError)
        assert isinstance(bad.error.cause, RuntimeError)
        assert bad.error.context.cycle_id == result.cycle_id
        assert bad.error.task_id == "bad"

    @pytest.mark.asyncio
    async def test_empty_batch(self, queue):
        events: list[CycleComplete] = []
        queue.subscribe(events.append, QueueEventType.CYCLE_COMPLETE)
        result = await queue.enqueue([], _noop)
        assert result.total == 0
        assert len(events) == 1
        assert events[0].stats.completed == 0

    @pytest.mark.asyncio
    async def test_all_tasks_already_failed(self, queue):
        await queue.enqueue(["a"], _failing_on("a"))
        result = await queue.enqueue(["a", "a"], _noop)
        assert result.total == 0
        assert result.skipped == ["a", "a"]

    @pytest.mark.asyncio
    async def test_accepts_any_iterable(self, queue):
        result = await queue.enqueue((i for i in range(3)), _noop)
        assert result.stats.completed == 3

    @pytest.mark.asyncio
    async def test_sync_executor_is_supported(self, queue):
        seen: list[str] = []
        result = await queue.enqueue(["a", "b"], seen.append)
        assert seen == ["a", "b"]
        assert result.stats.completed == 2

    @pytest.mark.asyncio
    async def test_depth_and_in_flight_observed_mid_cycle(self, queue):
        gate = asyncio.Event()

        async def _wait(task_id):
            await gate.wait()

        cycle = asyncio.create_task(queue.enqueue(["a", "b", "c", "d", "e"], _wait))
        await asyncio.sleep(0.01)

        assert queue.is_running
        assert queue.in_flight == 2
        assert queue.depth == 3
        assert queue.active_count == 2
        assert queue.pending_count == 3

        gate.set()
        result = await cycle
        assert result.stats.completed == 5
        assert queue.depth == 0
        assert queue.in_flight == 0


# ── Input validation ─────────────────────────────────────────────────────


class TestValidation:
    @pytest.mark.asyncio
    async def test_rejects_string_batch(self, queue):
        with pytest.raises(InvalidTaskBatchError):
            await queue.enqueue("abc", _noop)

    @pytest.mark.asyncio
    async def test_rejects_non_iterable(self, queue):
        with pytest.raises(InvalidTaskBatchError):
            await queue.enqueue(42, _noop)

    @pytest.mark.asyncio
    async def test_rejects_non_callable_executor(self, queue):
        with pytest.raises(InvalidTaskBatchError, match="executor"):
            await queue.enqueue(["a"], "not-callable")

    @pytest.mark.asyncio
    async def test_rejects_unhashable_ids(self, queue):
        with pytest.raises(InvalidTaskBatchError, match="hashable"):
            await queue.enqueue([["a"]], _noop)


# ── Events ───────────────────────────────────────────────────────────────


class TestEvents:
    @pytest.mark.asyncio
    async def test_event_sequence_single_task(self, queue):
        events = []
        queue.subscribe(events.append)
        result = await queue.enqueue(["a"], _noop)

        assert [type(e) for e in events] == [TaskStarted, TaskSucceeded, CycleComplete]
        assert all(e.cycle_id == result.cycle_id for e in events)
        assert events[0].task_id == "a"

    @pytest.mark.asyncio
    async def test_failed_event_carries_reason(self, queue):
        failures: list[TaskFailed] = []
        queue.subscribe(failures.append, "task:failed")
        await queue.enqueue(["a", "b"], _failing_on("b"))

        assert len(failures) == 1
        assert failures[0].task_id == "b"
        assert isinstance(failures[0].error, TaskExecutionError)
        assert str(failures[0].reason) == "Task b failed"

    @pytest.mark.asyncio
    async def test_cycle_complete_fires_after_every_task(self, queue, make_probe):
        probe = make_probe(delay=0.01)
        log: list[str] = []
        queue.subscribe(lambda e: log.append(e.event_type.value))
        await queue.enqueue(["a", "b", "c", "d"], probe)

        assert log[-1] == "cycle:complete"
        assert log.count("task:started") == 4
        assert log.count("task:success") == 4

    @pytest.mark.asyncio
    async def test_async_listener_is_awaited(self, queue):
        seen: list = []

        async def _listener(event):
            await asyncio.sleep(0)
            seen.append(event.task_id)

        queue.subscribe(_listener, QueueEventType.TASK_STARTED)
        await queue.enqueue(["a", "b"], _noop)
        assert sorted(seen) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_raising_listener_does_not_break_bookkeeping(self, queue):
        def _bad_listener(event):
            raise RuntimeError("listener bug")

        queue.subscribe(_bad_listener)
        result = await queue.enqueue(["a", "b"], _noop)
        assert result.stats.completed == 2
        assert result.stats.failed == 0
        assert queue.failed_tasks == frozenset()

    @pytest.mark.asyncio
    async def test_unsubscribe(self, queue):
        events = []
        sub_id = queue.subscribe(events.append)
        assert queue.unsubscribe(sub_id) is True
        assert queue.unsubscribe(sub_id) is False
        await queue.enqueue(["a"], _noop)
        assert events == []


# ── Failure memo reset ───────────────────────────────────────────────────


class TestResetFailed:
    @pytest.mark.asyncio
    async def test_reset_all(self, queue):
        await queue.enqueue(["a", "b", "c"], _failing_on("a", "b"))
        assert queue.reset_failed() == 2
        assert queue.failed_tasks == frozenset()

        result = await queue.enqueue(["a", "b"], _noop)
        assert result.stats.completed == 2

    @pytest.mark.asyncio
    async def test_reset_selected(self, queue):
        await queue.enqueue(["a", "b"], _failing_on("a", "b"))
        assert queue.reset_failed(["a", "missing"]) == 1
        assert queue.failed_tasks == frozenset({"b"})

    def test_reset_on_empty_memo(self, queue):
        assert queue.reset_failed() == 0


# ── Serialized cycles ────────────────────────────────────────────────────


class TestSerializedCycles:
    @pytest.mark.asyncio
    async def test_overlapping_enqueue_calls_run_one_after_another(self, make_probe):
        probe = make_probe(delay=0.02)
        queue = ExecutionQueue(2)
        order: list[tuple[str, str]] = []
        queue.subscribe(lambda e: order.append((e.event_type.value, getattr(e, "task_id", "-"))))

        first, second = await asyncio.gather(
            queue.enqueue(["a1", "a2", "a3"], probe),
            queue.enqueue(["b1", "b2"], probe),
        )

        assert first.stats.completed == 3
        assert second.stats.completed == 2
        assert first.cycle_id != second.cycle_id
        assert probe.max_running <= 2

        first_complete = order.index(("cycle:complete", "-"))
        assert all(task.startswith("a") for _, task in order[:first_complete])
        assert all(task.startswith("b") or task == "-" for _, task in order[first_complete + 1:])

    @pytest.mark.asyncio
    async def test_second_cycle_sees_memo_from_first(self):
        queue = ExecutionQueue(1)
        calls: list[str] = []

        async def _executor(task_id):
            calls.append(task_id)
            if task_id == "bad":
                raise RuntimeError("bad")

        _, second = await asyncio.gather(
            queue.enqueue(["bad"], _executor),
            queue.enqueue(["bad", "good"], _executor),
        )
        assert calls == ["bad", "good"]
        assert second.skipped == ["bad"]


# ── Caller cancellation ──────────────────────────────────────────────────


class TestCallerCancellation:
    @pytest.mark.asyncio
    async def test_timed_out_cycle_does_not_leak_into_next_cycle(self, queue, make_probe):
        probe = make_probe(delay=0.1)
        completions: list[CycleComplete] = []
        queue.subscribe(completions.append, QueueEventType.CYCLE_COMPLETE)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(queue.enqueue(["a", "b", "c"], probe), timeout=0.03)

        assert probe.running == 0
        assert queue.in_flight == 0
        assert queue.pending_count == 0
        assert not queue.is_running
        assert completions[0].stats.completed == 2
        assert completions[0].stats.cancelled == 1

        second = await queue.enqueue(["z"], probe)
        assert second.stats.completed == 1
        assert second.stats.cancelled == 0
        assert second.stats.in_flight == 0
        assert second.stats.depth == 0

    @pytest.mark.asyncio
    async def test_cancelled_caller_waits_for_running_tasks(self, queue, make_probe):
        probe = make_probe(delay=0.05)
        cycle = asyncio.create_task(queue.enqueue(["a", "b", "c"], probe))
        await asyncio.sleep(0.01)

        cycle.cancel()
        with pytest.raises(asyncio.CancelledError):
            await cycle

        assert probe.calls == ["a", "b"]
        assert probe.running == 0
        assert queue.in_flight == 0
        assert queue.stats.completed == 0


class TestExecutorRaisedCancellation:
    @pytest.mark.asyncio
    async def test_counts_as_failure(self, queue):
        seen: list[str] = []
        queue.subscribe(lambda e: seen.append(e.event_type.value))

        async def _executor(task_id):
            if task_id == "x":
                fut = asyncio.get_running_loop().create_future()
                fut.cancel()
                await fut

        result = await queue.enqueue(["x", "y"], _executor)

        assert result.stats.failed == 1
        assert result.stats.completed == 1
        assert result.stats.cancelled == 0
        assert queue.failed_tasks == {"x"}
        assert seen.count("task:failed") == 1
        assert seen[-1] == "cycle:complete"

        record = next(r for r in result.records if r.task_id == "x")
        assert record.state is TaskState.FAILED
        assert isinstance(record.error.cause, asyncio.CancelledError)


def test_repr():
    queue = ExecutionQueue(2)
    assert "max_concurrency=2" in repr(queue)
