"""Tests for volume_autoscaler.controller.queue: keyed reconcile queue."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from volume_autoscaler.controller.queue import ReconcileQueue
from volume_autoscaler.controller.reconciler import ReconcileResult


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


class TestReconcileQueue:
    async def test_processes_added_key(self) -> None:
        seen: list[str] = []

        async def reconcile(key: str) -> ReconcileResult:
            seen.append(key)
            return ReconcileResult.done()

        queue = ReconcileQueue(reconcile, workers=2)
        await queue.start()
        try:
            queue.add("db/pg")
            await _wait_for(lambda: seen == ["db/pg"])
            assert queue.scheduled == {}
        finally:
            await queue.stop()

    async def test_duplicate_adds_collapse(self) -> None:
        gate = asyncio.Event()
        seen: list[str] = []

        async def reconcile(key: str) -> ReconcileResult:
            seen.append(key)
            await gate.wait()
            return ReconcileResult.done()

        queue = ReconcileQueue(reconcile, workers=1)
        await queue.start()
        try:
            queue.add("db/blocker")
            await _wait_for(lambda: seen == ["db/blocker"])
            queue.add("db/pg")
            queue.add("db/pg")
            queue.add("db/pg")
            assert len(queue) == 1
            gate.set()
            await _wait_for(lambda: seen == ["db/blocker", "db/pg"])
            await asyncio.sleep(0.02)
            assert seen == ["db/blocker", "db/pg"]
        finally:
            await queue.stop()

    async def test_key_is_never_processed_concurrently(self) -> None:
        active = 0
        max_active = 0
        runs = 0
        gate = asyncio.Event()

        async def reconcile(key: str) -> ReconcileResult:
            nonlocal active, max_active, runs
            active += 1
            max_active = max(max_active, active)
            runs += 1
            if runs == 1:
                await gate.wait()
            active -= 1
            return ReconcileResult.done()

        queue = ReconcileQueue(reconcile, workers=4)
        await queue.start()
        try:
            queue.add("db/pg")
            await _wait_for(lambda: runs == 1)
            # Re-added while in flight: marked dirty, re-run afterwards.
            queue.add("db/pg")
            queue.add("db/pg")
            await asyncio.sleep(0.02)
            assert runs == 1
            gate.set()
            await _wait_for(lambda: runs == 2)
            assert max_active == 1
        finally:
            await queue.stop()

    async def test_distinct_keys_run_in_parallel(self) -> None:
        started: set[str] = set()
        gate = asyncio.Event()

        async def reconcile(key: str) -> ReconcileResult:
            started.add(key)
            await gate.wait()
            return ReconcileResult.done()

        queue = ReconcileQueue(reconcile, workers=2)
        await queue.start()
        try:
            queue.add("db/a")
            queue.add("db/b")
            await _wait_for(lambda: started == {"db/a", "db/b"})
        finally:
            gate.set()
            await queue.stop()

    async def test_requeue_after_schedules_next_wake(self) -> None:
        async def reconcile(key: str) -> ReconcileResult:
            return ReconcileResult(requeue_after=60.0)

        queue = ReconcileQueue(reconcile)
        await queue.start()
        try:
            queue.add("db/pg")
            await _wait_for(lambda: "db/pg" in queue.scheduled)
            loop = asyncio.get_running_loop()
            assert queue.scheduled["db/pg"] == pytest.approx(loop.time() + 60.0, abs=1.0)
        finally:
            await queue.stop()

    async def test_delayed_add_fires(self) -> None:
        seen: list[str] = []

        async def reconcile(key: str) -> ReconcileResult:
            seen.append(key)
            return ReconcileResult.done()

        queue = ReconcileQueue(reconcile)
        await queue.start()
        try:
            queue.add_after("db/pg", 0.01)
            assert "db/pg" in queue.scheduled
            await _wait_for(lambda: seen == ["db/pg"])
            assert queue.scheduled == {}
        finally:
            await queue.stop()

    async def test_earlier_wake_replaces_later(self) -> None:
        async def reconcile(key: str) -> ReconcileResult:
            return ReconcileResult.done()

        queue = ReconcileQueue(reconcile)
        await queue.start()
        try:
            loop = asyncio.get_running_loop()
            queue.add_after("db/pg", 300.0)
            queue.add_after("db/pg", 30.0)
            assert queue.scheduled["db/pg"] == pytest.approx(loop.time() + 30.0, abs=1.0)
            queue.add_after("db/pg", 600.0)
            assert queue.scheduled["db/pg"] == pytest.approx(loop.time() + 30.0, abs=1.0)
        finally:
            await queue.stop()

    async def test_forget_cancels_pending_wake(self) -> None:
        seen: list[str] = []

        async def reconcile(key: str) -> ReconcileResult:
            seen.append(key)
            return ReconcileResult.done()

        queue = ReconcileQueue(reconcile)
        await queue.start()
        try:
            queue.add_after("db/pg", 0.02)
            queue.forget("db/pg")
            assert queue.scheduled == {}
            await asyncio.sleep(0.05)
            assert seen == []
        finally:
            await queue.stop()

    async def test_error_result_is_requeued(self) -> None:
        async def reconcile(key: str) -> ReconcileResult:
            return ReconcileResult(requeue_after=15.0, error=ValueError("bad target"))

        queue = ReconcileQueue(reconcile, error_backoff=99.0)
        await queue.start()
        try:
            queue.add("db/pg")
            await _wait_for(lambda: "db/pg" in queue.scheduled)
            loop = asyncio.get_running_loop()
            assert queue.scheduled["db/pg"] == pytest.approx(loop.time() + 15.0, abs=1.0)
        finally:
            await queue.stop()

    async def test_exception_is_requeued_with_error_backoff(self) -> None:
        async def reconcile(key: str) -> ReconcileResult:
            raise RuntimeError("boom")

        queue = ReconcileQueue(reconcile, error_backoff=45.0)
        await queue.start()
        try:
            queue.add("db/pg")
            await _wait_for(lambda: "db/pg" in queue.scheduled)
            loop = asyncio.get_running_loop()
            assert queue.scheduled["db/pg"] == pytest.approx(loop.time() + 45.0, abs=1.0)
        finally:
            await queue.stop()

    async def test_stop_before_start_is_safe(self) -> None:
        async def reconcile(key: str) -> ReconcileResult:
            return ReconcileResult.done()

        queue = ReconcileQueue(reconcile)
        await queue.stop()
        queue.add("db/pg")
        assert len(queue) == 0
