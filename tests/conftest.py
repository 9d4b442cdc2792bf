"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from perfwatch.audits.client import AuditResult, AuditScores
from perfwatch.config import settings
from perfwatch.store.store import AuditStore


def make_result(
    url: str = "https://example.com",
    form_factor: str = "mobile",
    audit_id: int | None = 1,
) -> AuditResult:
    return AuditResult(
        success=True,
        url=url,
        form_factor=form_factor,
        scores=AuditScores(performance=91, accessibility=88, best_practices=100, seo=92, pwa=30),
        audit_id=audit_id,
    )


class FakeOrchestrator:
    """Stands in for AuditOrchestrator inside the job registry."""

    def __init__(self, delay: float = 0.0, error: Exception | None = None) -> None:
        self.delay = delay
        self.error = error
        self.calls: list[tuple[int, str]] = []
        self.completed: list[int] = []

    async def run(self, client_id: int, requested_form_factor: str = "mobile") -> Any:
        self.calls.append((client_id, requested_form_factor))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        self.completed.append(client_id)
        return make_result()


class FakeEngine:
    """Stands in for AuditEngineClient; records every audit request."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[str, str, int | None]] = []

    def run_audit(self, url: str, form_factor: str, client_id: int | None = None) -> AuditResult:
        self.calls.append((url, form_factor, client_id))
        if self.error:
            raise self.error
        return make_result(url=url, form_factor=form_factor)


@pytest.fixture
def store(tmp_path) -> AuditStore:
    """AuditStore backed by a temp SQLite file."""
    return AuditStore(tmp_path / "test_perfwatch.db")


@pytest.fixture
def app_settings(tmp_path, monkeypatch):
    """Point the app at a temp database and skip boot-time retry waits."""
    monkeypatch.setattr(settings, "db_path", str(tmp_path / "app.db"))
    monkeypatch.setattr(settings, "db_connect_retries", 1)
    monkeypatch.setattr(settings, "db_connect_delay", 0.0)
    return settings
