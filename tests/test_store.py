"""Tests for the SQLite audit store."""

from __future__ import annotations

import sqlite3
from unittest.mock import patch

import pytest

from perfwatch.store.models import AuditRun, Client, is_valid_url
from perfwatch.store.store import AuditStore, DuplicateClient, StoreUnavailable

SCORES = {"performance": 91, "accessibility": 88, "best_practices": 100, "seo": 92, "pwa": 30}
METRICS = {"fcp_ms": 1200.5, "lcp_ms": 2400.0, "tbt_ms": 150.0, "si_ms": 1800.0, "tti_ms": 3100.0, "cls": 0.02}


class TestModels:
    def test_client_from_row(self) -> None:
        c = Client.from_row({
            "id": 3, "name": "Acme", "url": "https://a.com", "platform": "mobile",
            "schedule": "*/5 * * * *", "schedule_enabled": 1, "created_at": "2025-01-01T00:00:00+00:00",
        })
        assert c.schedule_enabled is True
        assert c.platform == "mobile"

    def test_audit_run_parses_report(self) -> None:
        run = AuditRun.from_row({"id": 1, "client_id": 2, "report_json": '{"lighthouseVersion": "12.0.0"}'})
        assert run.report == {"lighthouseVersion": "12.0.0"}
        assert "report" not in run.to_dict()
        assert run.to_dict(include_report=True)["report"]["lighthouseVersion"] == "12.0.0"

    def test_is_valid_url(self) -> None:
        assert is_valid_url("https://a.com")
        assert is_valid_url("http://localhost:8080/path?q=1")
        assert not is_valid_url("a.com")
        assert not is_valid_url("not a url")
        assert not is_valid_url("ftp://a.com")
        assert not is_valid_url("http://[bad")


class TestClients:
    def test_create_and_get(self, store: AuditStore) -> None:
        client = store.create_client("Acme", "https://a.com")
        assert client.id
        assert client.platform == "both"
        fetched = store.get_client(client.id)
        assert fetched is not None
        assert fetched.name == "Acme"
        assert fetched.schedule is None
        assert fetched.schedule_enabled is False

    def test_get_missing(self, store: AuditStore) -> None:
        assert store.get_client(999) is None

    def test_duplicate_name(self, store: AuditStore) -> None:
        store.create_client("Acme", "https://a.com")
        with pytest.raises(DuplicateClient) as exc:
            store.create_client("Acme", "https://b.com")
        assert exc.value.field == "name"

    def test_same_url_once_per_platform(self, store: AuditStore) -> None:
        store.create_client("A mobile", "https://a.com", "mobile")
        store.create_client("A desktop", "https://a.com", "desktop")
        with pytest.raises(DuplicateClient) as exc:
            store.create_client("A mobile again", "https://a.com", "mobile")
        assert exc.value.field == "url_platform"
        assert "mobile client for this URL" in str(exc.value)

    def test_list_clients_with_last_audit(self, store: AuditStore) -> None:
        a = store.create_client("A", "https://a.com")
        b = store.create_client("B", "https://b.com")
        audit_id = store.create_running_audit(a.id, "mobile")
        store.complete_audit(audit_id, SCORES, METRICS, {"ok": True})

        clients = {c["id"]: c for c in store.list_clients()}
        assert clients[a.id]["last_performance"] == 91
        assert clients[a.id]["last_audited"]
        assert clients[b.id]["last_audited"] is None
        # newest client first
        assert [c["id"] for c in store.list_clients()] == [b.id, a.id]

    def test_delete_cascades_audits(self, store: AuditStore) -> None:
        client = store.create_client("A", "https://a.com")
        ids = [store.create_running_audit(client.id, "mobile") for _ in range(3)]
        assert store.delete_client(client.id) is True
        assert store.get_client(client.id) is None
        assert all(store.get_audit(i) is None for i in ids)

    def test_delete_missing(self, store: AuditStore) -> None:
        assert store.delete_client(42) is False


class TestSchedules:
    def test_set_and_clear(self, store: AuditStore) -> None:
        client = store.create_client("A", "https://a.com")
        assert store.set_schedule(client.id, "*/5 * * * *", True) is True
        fetched = store.get_client(client.id)
        assert fetched.schedule == "*/5 * * * *"
        assert fetched.schedule_enabled is True

        assert store.clear_schedule(client.id) is True
        fetched = store.get_client(client.id)
        assert fetched.schedule is None
        assert fetched.schedule_enabled is False

    def test_set_schedule_missing_client(self, store: AuditStore) -> None:
        assert store.set_schedule(7, "* * * * *", True) is False

    def test_enabled_schedules_only(self, store: AuditStore) -> None:
        a = store.create_client("A", "https://a.com")
        b = store.create_client("B", "https://b.com")
        store.create_client("C", "https://c.com")
        store.set_schedule(a.id, "*/5 * * * *", True)
        store.set_schedule(b.id, "0 * * * *", False)

        assert [c.id for c in store.list_enabled_schedules()] == [a.id]
        assert [c.name for c in store.list_schedules()] == ["A", "B"]

    def test_toggle(self, store: AuditStore) -> None:
        client = store.create_client("A", "https://a.com")
        store.set_schedule(client.id, "0 3 * * *", False)
        store.set_schedule_enabled(client.id, True)
        assert store.get_client(client.id).schedule_enabled is True


class TestAuditRuns:
    def test_running_then_completed(self, store: AuditStore) -> None:
        client = store.create_client("A", "https://a.com")
        audit_id = store.create_running_audit(client.id, "desktop")
        run = store.get_audit(audit_id)
        assert run.status == "running"
        assert all(v is None for v in run.scores.values())

        assert store.complete_audit(audit_id, SCORES, METRICS, {"categories": {}}) is True
        run = store.get_audit(audit_id)
        assert run.status == "completed"
        assert run.form_factor == "desktop"
        assert all(v is not None for v in run.scores.values())
        assert run.lcp_ms == 2400.0
        assert run.report == {"categories": {}}
        assert run.error_message is None

    def test_running_then_failed(self, store: AuditStore) -> None:
        client = store.create_client("A", "https://a.com")
        audit_id = store.create_running_audit(client.id, "mobile")
        assert store.fail_audit(audit_id, "Chrome crashed") is True
        run = store.get_audit(audit_id)
        assert run.status == "failed"
        assert run.error_message == "Chrome crashed"
        assert all(v is None for v in run.scores.values())

    def test_terminal_state_is_final(self, store: AuditStore) -> None:
        client = store.create_client("A", "https://a.com")
        audit_id = store.create_running_audit(client.id, "mobile")
        store.fail_audit(audit_id, "boom")
        assert store.complete_audit(audit_id, SCORES, METRICS, {}) is False
        assert store.fail_audit(audit_id, "again") is False
        run = store.get_audit(audit_id)
        assert run.status == "failed"
        assert run.error_message == "boom"

    def test_insert_completed(self, store: AuditStore) -> None:
        client = store.create_client("A", "https://a.com")
        audit_id = store.insert_completed_audit(client.id, "mobile", SCORES, METRICS, {"x": 1})
        run = store.get_audit(audit_id)
        assert run.status == "completed"
        assert run.performance == 91

    def test_running_audit_needs_existing_client(self, store: AuditStore) -> None:
        with pytest.raises(sqlite3.IntegrityError):
            store.create_running_audit(999, "mobile")

    def test_list_audits_capped_and_newest_first(self, store: AuditStore) -> None:
        client = store.create_client("A", "https://a.com")
        for _ in range(55):
            store.create_running_audit(client.id, "mobile")

        audits = store.list_audits(client.id, limit=500)
        assert len(audits) == 50
        stamps = [a.audited_at for a in audits]
        assert stamps == sorted(stamps, reverse=True)
        assert audits[0].id > audits[-1].id
        assert all(a.report is None for a in audits)

    def test_dashboard_latest_audit(self, store: AuditStore) -> None:
        a = store.create_client("A", "https://a.com")
        store.create_client("B", "https://b.com")
        first = store.create_running_audit(a.id, "mobile")
        store.fail_audit(first, "boom")
        second = store.create_running_audit(a.id, "mobile")
        store.complete_audit(second, SCORES, METRICS, {})

        rows = {r["name"]: r for r in store.dashboard()}
        assert rows["A"]["status"] == "completed"
        assert rows["A"]["seo"] == 92
        assert rows["B"]["status"] is None


class TestReadiness:
    def test_ready(self, store: AuditStore) -> None:
        store.wait_until_ready(retries=1, delay=0)

    def test_unavailable_after_retries(self, store: AuditStore) -> None:
        with patch(
            "perfwatch.store.store.sqlite3.connect",
            side_effect=sqlite3.OperationalError("unable to open database file"),
        ) as mock_connect:
            with pytest.raises(StoreUnavailable):
                store.wait_until_ready(retries=3, delay=0)
        assert mock_connect.call_count == 3
