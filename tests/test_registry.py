"""Tests for the per-client job registry."""

from __future__ import annotations

import asyncio
import logging

import pytest

from perfwatch.audits.client import AuditEngineError
from perfwatch.scheduling.cron import InvalidScheduleExpression
from perfwatch.scheduling.registry import JobRegistry
from perfwatch.store.store import AuditStore

from conftest import FakeOrchestrator

EVERY_SECOND = "* * * * * *"


async def _wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.05)
    return predicate()


class TestStartStop:
    def test_start_marks_active(self, store: AuditStore) -> None:
        async def scenario() -> None:
            registry = JobRegistry(FakeOrchestrator(), store)
            registry.start(1, "*/5 * * * *")
            assert registry.is_active(1)
            assert registry.expression(1) == "*/5 * * * *"
            assert not registry.is_active(2)
            await registry.shutdown()

        asyncio.run(scenario())

    def test_start_twice_replaces_timer(self, store: AuditStore) -> None:
        async def scenario() -> None:
            registry = JobRegistry(FakeOrchestrator(), store)
            registry.start(1, "*/5 * * * *")
            first = registry._jobs[1].task
            registry.start(1, "0 * * * *")
            second = registry._jobs[1].task

            await asyncio.gather(first, return_exceptions=True)
            assert first.cancelled()
            assert not second.done()
            assert registry.active_ids() == [1]
            assert registry.expression(1) == "0 * * * *"
            await registry.shutdown()

        asyncio.run(scenario())

    def test_invalid_expression_leaves_existing_job(self, store: AuditStore) -> None:
        async def scenario() -> None:
            registry = JobRegistry(FakeOrchestrator(), store)
            registry.start(1, "*/5 * * * *")
            with pytest.raises(InvalidScheduleExpression):
                registry.start(1, "not-a-cron")
            assert registry.is_active(1)
            assert registry.expression(1) == "*/5 * * * *"
            await registry.shutdown()

        asyncio.run(scenario())

    def test_stop_is_idempotent(self, store: AuditStore) -> None:
        async def scenario() -> None:
            registry = JobRegistry(FakeOrchestrator(), store)
            registry.start(1, "*/5 * * * *")
            assert registry.stop(1) is True
            assert registry.is_active(1) is False
            assert registry.stop(1) is False
            assert registry.is_active(1) is False
            assert registry.active_ids() == []

        asyncio.run(scenario())

    def test_shutdown_stops_everything(self, store: AuditStore) -> None:
        async def scenario() -> None:
            registry = JobRegistry(FakeOrchestrator(), store)
            for cid in (1, 2, 3):
                registry.start(cid, "0 * * * *")
            await registry.shutdown()
            assert registry.active_ids() == []

        asyncio.run(scenario())


class TestFiring:
    def test_timer_fires_with_default_form_factor(self, store: AuditStore) -> None:
        orchestrator = FakeOrchestrator()

        async def scenario() -> None:
            registry = JobRegistry(orchestrator, store)
            registry.start(7, EVERY_SECOND)
            assert await _wait_for(lambda: orchestrator.completed)
            await registry.shutdown()

        asyncio.run(scenario())
        assert orchestrator.calls[0] == (7, "mobile")

    def test_failures_never_stop_the_timer(self, store: AuditStore, caplog) -> None:
        orchestrator = FakeOrchestrator(error=AuditEngineError("Chrome crashed", 500))

        async def scenario() -> None:
            registry = JobRegistry(orchestrator, store)
            registry.start(1, EVERY_SECOND)
            assert await _wait_for(lambda: len(orchestrator.calls) >= 2, timeout=4.0)
            assert registry.is_active(1)
            await registry.shutdown()

        with caplog.at_level(logging.ERROR, logger="perfwatch.scheduling.registry"):
            asyncio.run(scenario())
        assert "Scheduled audit failed for client 1: Chrome crashed" in caplog.text

    def test_overlapping_firing_is_skipped(self, store: AuditStore, caplog) -> None:
        orchestrator = FakeOrchestrator(delay=5.0)

        async def scenario() -> None:
            registry = JobRegistry(orchestrator, store)
            registry._fire(1)
            await asyncio.sleep(0)
            registry._fire(1)
            await asyncio.sleep(0)
            assert len(orchestrator.calls) == 1
            await registry.shutdown()

        with caplog.at_level(logging.WARNING, logger="perfwatch.scheduling.registry"):
            asyncio.run(scenario())
        assert "previous run still in flight" in caplog.text

    def test_stop_lets_in_flight_audit_finish(self, store: AuditStore) -> None:
        orchestrator = FakeOrchestrator(delay=0.2)

        async def scenario() -> None:
            registry = JobRegistry(orchestrator, store)
            registry.start(1, "0 0 1 1 *")
            registry._fire(1)
            await asyncio.sleep(0)
            assert orchestrator.calls == [(1, "mobile")]

            registry.stop(1)
            assert not registry.is_active(1)
            assert await _wait_for(lambda: orchestrator.completed == [1], timeout=2.0)

        asyncio.run(scenario())


class TestRecoverAll:
    def test_restores_valid_skips_bad_ignores_unscheduled(self, store: AuditStore, caplog) -> None:
        c1 = store.create_client("One", "https://one.com")
        c2 = store.create_client("Two", "https://two.com")
        c3 = store.create_client("Three", "https://three.com")
        store.set_schedule(c1.id, "*/5 * * * *", True)
        store.set_schedule(c2.id, "not-a-cron", True)

        async def scenario() -> int:
            registry = JobRegistry(FakeOrchestrator(), store)
            restored = await registry.recover_all()
            assert registry.active_ids() == [c1.id]
            assert not registry.is_active(c2.id)
            assert not registry.is_active(c3.id)
            await registry.shutdown()
            return restored

        with caplog.at_level(logging.WARNING, logger="perfwatch.scheduling.registry"):
            assert asyncio.run(scenario()) == 1
        assert f"Bad schedule for client {c2.id}" in caplog.text

    def test_disabled_schedules_stay_off(self, store: AuditStore) -> None:
        client = store.create_client("One", "https://one.com")
        store.set_schedule(client.id, "*/5 * * * *", False)

        async def scenario() -> int:
            registry = JobRegistry(FakeOrchestrator(), store)
            restored = await registry.recover_all()
            assert registry.active_ids() == []
            return restored

        assert asyncio.run(scenario()) == 0
