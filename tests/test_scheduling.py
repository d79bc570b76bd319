"""
Tests for task scopes, delayed tasks and observable values.
"""

import asyncio

import pytest

from entitlements.services.observable import ObservableValue
from entitlements.services.scheduling import DelayedTask, TaskScope


class TestTaskScope:
    """Tests for TaskScope."""

    @pytest.mark.asyncio
    async def test_spawned_task_runs(self):
        """Test a spawned task runs and leaves the scope when done."""
        scope = TaskScope("test")
        task = scope.spawn(asyncio.sleep(0, result="done"))

        assert await task == "done"
        await asyncio.sleep(0)
        assert len(scope) == 0

    @pytest.mark.asyncio
    async def test_close_cancels_running_tasks(self):
        """Test closing the scope cancels every task."""
        scope = TaskScope("test")
        task = scope.spawn(asyncio.sleep(60))

        await scope.close()

        assert task.cancelled()
        assert scope.closed

    @pytest.mark.asyncio
    async def test_spawn_after_close_rejected(self):
        """Test a closed scope refuses new tasks."""
        scope = TaskScope("test")
        await scope.close()

        with pytest.raises(RuntimeError, match="closed"):
            scope.spawn(asyncio.sleep(0))

    @pytest.mark.asyncio
    async def test_failed_task_does_not_break_scope(self):
        """Test a failing task is logged and the scope keeps working."""
        scope = TaskScope("test")

        async def boom() -> None:
            raise ValueError("boom")

        failed = scope.spawn(boom())
        await asyncio.wait({failed})
        ok = scope.spawn(asyncio.sleep(0, result=1))

        assert await ok == 1
        await scope.close()


class TestDelayedTask:
    """Tests for DelayedTask."""

    @pytest.mark.asyncio
    async def test_action_runs_after_delay(self):
        """Test the scheduled action runs once."""
        calls = []

        async def action() -> None:
            calls.append(True)

        delayed = DelayedTask("test")
        delayed.schedule(0.01, action)
        assert delayed.pending

        await asyncio.sleep(0.05)

        assert calls == [True]
        assert not delayed.pending

    @pytest.mark.asyncio
    async def test_schedule_replaces_pending(self):
        """Test rescheduling cancels the previous action."""
        calls = []

        async def first() -> None:
            calls.append("first")

        async def second() -> None:
            calls.append("second")

        delayed = DelayedTask("test")
        delayed.schedule(0.01, first)
        delayed.schedule(0.01, second)
        await asyncio.sleep(0.05)

        assert calls == ["second"]

    @pytest.mark.asyncio
    async def test_cancel(self):
        """Test a cancelled action never runs."""
        calls = []

        async def action() -> None:
            calls.append(True)

        delayed = DelayedTask("test")
        delayed.schedule(0.01, action)
        delayed.cancel()
        await asyncio.sleep(0.05)

        assert calls == []
        assert not delayed.pending

    @pytest.mark.asyncio
    async def test_action_can_reschedule_slot(self):
        """Test a running action that cancels and reschedules the slot survives."""
        calls = []
        delayed = DelayedTask("test")

        async def action() -> None:
            delayed.cancel()
            await asyncio.sleep(0)
            calls.append(len(calls))
            if len(calls) < 3:
                delayed.schedule(0.001, action)

        delayed.schedule(0.001, action)
        await asyncio.sleep(0.1)

        assert calls == [0, 1, 2]
        assert not delayed.pending


class TestObservableValue:
    """Tests for ObservableValue."""

    def test_callbacks_receive_changes(self):
        """Test subscribers see each distinct value once."""
        value = ObservableValue(0)
        seen = []
        value.subscribe(seen.append)

        value.set(1)
        value.set(1)
        value.set(2)

        assert seen == [1, 2]
        assert value.value == 2

    def test_unsubscribe(self):
        """Test an unsubscribed callback stops receiving values."""
        value = ObservableValue("a")
        seen = []
        unsubscribe = value.subscribe(seen.append)

        unsubscribe()
        value.set("b")

        assert seen == []

    @pytest.mark.asyncio
    async def test_updates_stream_starts_with_current(self):
        """Test the async stream yields the current value then changes."""
        value = ObservableValue(False)
        stream = value.updates()

        assert await stream.__anext__() is False
        value.set(True)
        assert await stream.__anext__() is True
        await stream.aclose()
