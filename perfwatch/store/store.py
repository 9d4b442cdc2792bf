"""Audit store — SQLite-backed clients + audit runs.

Shared by the API and the audit engine. Audit runs cascade-delete with
their client; recent-run lookups are indexed per client by timestamp.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import METRIC_FIELDS, SCORE_FIELDS, AuditRun, AuditStatus, Client, Platform

logger = logging.getLogger(__name__)

MAX_RECENT_AUDITS = 50

# Backoff constants for the boot-time readiness probe
_BACKOFF_FACTOR = 2.0
_MAX_DELAY = 30.0


class StoreUnavailable(Exception):
    """Raised when the database cannot be opened or queried."""


class ClientNotFound(LookupError):
    """Raised when an operation names a client id that does not exist."""

    def __init__(self, client_id: int) -> None:
        self.client_id = client_id
        super().__init__(f"Client not found: {client_id}")


class DuplicateClient(Exception):
    """Raised when a client's name or (url, platform) pair is already taken."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field  # "name" | "url_platform"
        super().__init__(message)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuditStore:
    """SQLite-backed storage for clients and their audit runs."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _conn(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(str(self._db_path), timeout=10.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(f"Cannot open database {self._db_path}: {e}") from e
        return conn

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS clients (
                    id               INTEGER PRIMARY KEY AUTOINCREMENT,
                    name             TEXT NOT NULL UNIQUE,
                    url              TEXT NOT NULL,
                    platform         TEXT NOT NULL DEFAULT 'both'
                                     CHECK (platform IN ('mobile', 'desktop', 'both')),
                    schedule         TEXT,
                    schedule_enabled INTEGER NOT NULL DEFAULT 0,
                    created_at       TEXT NOT NULL,
                    UNIQUE (url, platform)
                );

                CREATE TABLE IF NOT EXISTS audits (
                    id             INTEGER PRIMARY KEY AUTOINCREMENT,
                    client_id      INTEGER NOT NULL
                                   REFERENCES clients(id) ON DELETE CASCADE,
                    form_factor    TEXT NOT NULL DEFAULT 'mobile',
                    performance    REAL,
                    accessibility  REAL,
                    best_practices REAL,
                    seo            REAL,
                    pwa            REAL,
                    fcp_ms         REAL,
                    lcp_ms         REAL,
                    tbt_ms         REAL,
                    si_ms          REAL,
                    tti_ms         REAL,
                    cls            REAL,
                    report_json    TEXT,
                    status         TEXT NOT NULL DEFAULT 'running'
                                   CHECK (status IN ('running', 'completed', 'failed')),
                    error_message  TEXT,
                    audited_at     TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_audits_client
                    ON audits (client_id, audited_at DESC);

                CREATE INDEX IF NOT EXISTS idx_audits_audited_at
                    ON audits (audited_at DESC);
            """)

    def wait_until_ready(self, retries: int = 10, delay: float = 3.0) -> None:
        """Probe the database until it answers, backing off between attempts."""
        for attempt in range(1, retries + 1):
            try:
                with self._conn() as conn:
                    conn.execute("SELECT 1")
                logger.info("Database ready: %s", self._db_path)
                return
            except (StoreUnavailable, sqlite3.Error) as e:
                logger.info("Waiting for database (%d/%d): %s", attempt, retries, e)
                if attempt < retries:
                    time.sleep(delay)
                    delay = min(delay * _BACKOFF_FACTOR, _MAX_DELAY)
        raise StoreUnavailable(f"Could not connect to database after {retries} attempts")

    # ── Clients ───────────────────────────────────────────────────────────

    def create_client(self, name: str, url: str, platform: str = Platform.BOTH.value) -> Client:
        """Insert a new client. Raises DuplicateClient on a name or url+platform clash."""
        created_at = _now()
        try:
            with self._conn() as conn:
                cursor = conn.execute(
                    "INSERT INTO clients (name, url, platform, created_at) VALUES (?, ?, ?, ?)",
                    (name, url, platform, created_at),
                )
        except sqlite3.IntegrityError as e:
            msg = str(e)
            if "clients.name" in msg:
                raise DuplicateClient(
                    "name",
                    f'A client named "{name}" already exists. Please use a different name.',
                ) from e
            if "clients.url" in msg:
                raise DuplicateClient(
                    "url_platform",
                    f"A {platform} client for this URL already exists. "
                    "You can still add it with a different platform.",
                ) from e
            raise
        return Client(
            id=cursor.lastrowid, name=name, url=url, platform=platform, created_at=created_at,
        )

    def get_client(self, client_id: int) -> Client | None:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM clients WHERE id = ?", (client_id,)).fetchone()
        return Client.from_row(dict(row)) if row else None

    def list_clients(self) -> list[dict[str, Any]]:
        """All clients, newest first, with the last audit's timestamp + performance."""
        with self._conn() as conn:
            rows = conn.execute("""
                SELECT c.*,
                       (SELECT audited_at FROM audits WHERE client_id = c.id
                        ORDER BY audited_at DESC, id DESC LIMIT 1) AS last_audited,
                       (SELECT performance FROM audits WHERE client_id = c.id
                        ORDER BY audited_at DESC, id DESC LIMIT 1) AS last_performance
                FROM clients c
                ORDER BY c.created_at DESC, c.id DESC
            """).fetchall()
        result = []
        for r in rows:
            d = dict(r)
            d["schedule_enabled"] = bool(d["schedule_enabled"])
            result.append(d)
        return result

    def delete_client(self, client_id: int) -> bool:
        """Delete a client; its audit runs go with it."""
        with self._conn() as conn:
            cursor = conn.execute("DELETE FROM clients WHERE id = ?", (client_id,))
        return cursor.rowcount > 0

    def dashboard(self) -> list[dict[str, Any]]:
        """Clients joined with their single most recent audit."""
        with self._conn() as conn:
            rows = conn.execute("""
                SELECT c.id, c.name, c.url, c.platform, c.schedule, c.schedule_enabled,
                       a.performance, a.accessibility, a.best_practices, a.seo, a.pwa,
                       a.status, a.audited_at
                FROM clients c
                LEFT JOIN audits a ON a.id = (
                    SELECT id FROM audits WHERE client_id = c.id
                    ORDER BY audited_at DESC, id DESC LIMIT 1
                )
                ORDER BY c.created_at DESC, c.id DESC
            """).fetchall()
        result = []
        for r in rows:
            d = dict(r)
            d["schedule_enabled"] = bool(d["schedule_enabled"])
            result.append(d)
        return result

    # ── Schedules ─────────────────────────────────────────────────────────

    def set_schedule(self, client_id: int, expression: str, enabled: bool) -> bool:
        with self._conn() as conn:
            cursor = conn.execute(
                "UPDATE clients SET schedule = ?, schedule_enabled = ? WHERE id = ?",
                (expression, int(enabled), client_id),
            )
        return cursor.rowcount > 0

    def clear_schedule(self, client_id: int) -> bool:
        with self._conn() as conn:
            cursor = conn.execute(
                "UPDATE clients SET schedule = NULL, schedule_enabled = 0 WHERE id = ?",
                (client_id,),
            )
        return cursor.rowcount > 0

    def set_schedule_enabled(self, client_id: int, enabled: bool) -> bool:
        with self._conn() as conn:
            cursor = conn.execute(
                "UPDATE clients SET schedule_enabled = ? WHERE id = ?",
                (int(enabled), client_id),
            )
        return cursor.rowcount > 0

    def list_schedules(self) -> list[Client]:
        """Clients with a stored expression, enabled or not, ordered by name."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM clients WHERE schedule IS NOT NULL ORDER BY name"
            ).fetchall()
        return [Client.from_row(dict(r)) for r in rows]

    def list_enabled_schedules(self) -> list[Client]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM clients WHERE schedule IS NOT NULL AND schedule_enabled = 1 "
                "ORDER BY id"
            ).fetchall()
        return [Client.from_row(dict(r)) for r in rows]

    # ── Audit runs ────────────────────────────────────────────────────────

    def create_running_audit(self, client_id: int, form_factor: str) -> int:
        with self._conn() as conn:
            cursor = conn.execute(
                "INSERT INTO audits (client_id, form_factor, status, audited_at) "
                "VALUES (?, ?, ?, ?)",
                (client_id, form_factor, AuditStatus.RUNNING.value, _now()),
            )
        return cursor.lastrowid

    def complete_audit(
        self,
        audit_id: int,
        scores: dict[str, float],
        metrics: dict[str, float | None],
        report: dict[str, Any],
    ) -> bool:
        """Move a running audit to completed. No-op if it already left `running`."""
        values: dict[str, Any] = {name: scores.get(name) for name in SCORE_FIELDS}
        values.update({name: metrics.get(name) for name in METRIC_FIELDS})
        values.update(
            report_json=json.dumps(report),
            status=AuditStatus.COMPLETED.value,
            audited_at=_now(),
            id=audit_id,
            running=AuditStatus.RUNNING.value,
        )
        set_clause = ", ".join(
            f"{k} = :{k}" for k in (*SCORE_FIELDS, *METRIC_FIELDS, "report_json", "status", "audited_at")
        )
        with self._conn() as conn:
            cursor = conn.execute(
                f"UPDATE audits SET {set_clause} WHERE id = :id AND status = :running", values,
            )
        return cursor.rowcount > 0

    def fail_audit(self, audit_id: int, message: str) -> bool:
        """Move a running audit to failed. No-op if it already left `running`."""
        with self._conn() as conn:
            cursor = conn.execute(
                "UPDATE audits SET status = ?, error_message = ? WHERE id = ? AND status = ?",
                (AuditStatus.FAILED.value, message, audit_id, AuditStatus.RUNNING.value),
            )
        return cursor.rowcount > 0

    def insert_completed_audit(
        self,
        client_id: int,
        form_factor: str,
        scores: dict[str, float],
        metrics: dict[str, float | None],
        report: dict[str, Any],
    ) -> int:
        """Record a finished audit whose `running` row was never created."""
        values: dict[str, Any] = {name: scores.get(name) for name in SCORE_FIELDS}
        values.update({name: metrics.get(name) for name in METRIC_FIELDS})
        values.update(
            client_id=client_id,
            form_factor=form_factor,
            report_json=json.dumps(report),
            status=AuditStatus.COMPLETED.value,
            audited_at=_now(),
        )
        columns = ", ".join(values)
        placeholders = ", ".join(f":{k}" for k in values)
        with self._conn() as conn:
            cursor = conn.execute(
                f"INSERT INTO audits ({columns}) VALUES ({placeholders})", values,
            )
        return cursor.lastrowid

    def get_audit(self, audit_id: int) -> AuditRun | None:
        """Get a single audit run, including its report."""
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM audits WHERE id = ?", (audit_id,)).fetchone()
        return AuditRun.from_row(dict(row)) if row else None

    def list_audits(self, client_id: int, limit: int = MAX_RECENT_AUDITS) -> list[AuditRun]:
        """Most recent audit runs for a client, newest first, without reports."""
        limit = max(0, min(limit, MAX_RECENT_AUDITS))
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT id, client_id, form_factor, "
                "performance, accessibility, best_practices, seo, pwa, "
                "fcp_ms, lcp_ms, tbt_ms, si_ms, tti_ms, cls, "
                "status, error_message, audited_at "
                "FROM audits WHERE client_id = ? "
                "ORDER BY audited_at DESC, id DESC LIMIT ?",
                (client_id, limit),
            ).fetchall()
        return [AuditRun.from_row(dict(r)) for r in rows]

    def close(self) -> None:
        """No-op — connections are created per-call."""
        pass
