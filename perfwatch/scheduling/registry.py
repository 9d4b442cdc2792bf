"""Job registry — one recurring cron timer per client.

Each job is an asyncio task that sleeps until the next cron firing and
then spawns a separate firing task that runs the audit. Stopping a job
cancels only its timer; an audit already in flight is left to finish and
record its result.

Invariants:
- at most one timer per client id; ``start`` replaces before it inserts
- a firing never raises out of the timer, however often audits fail
- a firing is skipped while the previous scheduled audit for the same
  client is still running

All operations must be called from the event loop thread.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from ..store.models import FormFactor
from ..store.store import AuditStore
from .cron import InvalidScheduleExpression, next_fire_time, seconds_until, validate_expression

logger = logging.getLogger(__name__)


class AuditRunner(Protocol):
    async def run(self, client_id: int, requested_form_factor: str = ...) -> Any: ...


@dataclass
class ScheduledJob:
    client_id: int
    expression: str
    task: asyncio.Task[None]


class JobRegistry:
    """Owns every live schedule timer in the process."""

    def __init__(self, orchestrator: AuditRunner, store: AuditStore) -> None:
        self.orchestrator = orchestrator
        self.store = store
        self._jobs: dict[int, ScheduledJob] = {}
        self._in_flight: dict[int, asyncio.Task[None]] = {}
        self._lock = threading.Lock()
        # Held by route handlers across their store write and start/stop pair
        self.update_lock = asyncio.Lock()

    # ── Public API ────────────────────────────────────────────────────────

    def start(self, client_id: int, expression: str) -> None:
        """Schedule recurring audits for a client, replacing any existing job.

        Raises InvalidScheduleExpression before touching the registry.
        """
        validate_expression(expression)
        loop = asyncio.get_running_loop()
        with self._lock:
            replaced = self._stop_locked(client_id)
            task = loop.create_task(
                self._timer_loop(client_id, expression),
                name=f"schedule-{client_id}",
            )
            self._jobs[client_id] = ScheduledJob(client_id, expression, task)
        logger.info(
            "%s client %s: \"%s\"",
            "Rescheduled" if replaced else "Scheduled", client_id, expression,
        )

    def stop(self, client_id: int) -> bool:
        """Cancel a client's timer. Returns False if there was none."""
        with self._lock:
            stopped = self._stop_locked(client_id)
        if stopped:
            logger.info("Stopped schedule for client %s", client_id)
        return stopped

    def is_active(self, client_id: int) -> bool:
        job = self._jobs.get(client_id)
        return job is not None and not job.task.done()

    def expression(self, client_id: int) -> str | None:
        job = self._jobs.get(client_id)
        return job.expression if job else None

    def active_ids(self) -> list[int]:
        return sorted(cid for cid in self._jobs if self.is_active(cid))

    async def recover_all(self) -> int:
        """Start a job for every enabled stored schedule.

        A client whose stored expression no longer parses is logged and
        skipped; the rest still load. Returns the number of jobs restored.
        """
        loop = asyncio.get_running_loop()
        clients = await loop.run_in_executor(None, self.store.list_enabled_schedules)
        restored = 0
        for client in clients:
            try:
                self.start(client.id, client.schedule or "")
                restored += 1
            except InvalidScheduleExpression as e:
                logger.warning("Bad schedule for client %s: %s", client.id, e)
        logger.info("Restored %d scheduled job(s)", restored)
        return restored

    async def shutdown(self) -> None:
        """Stop every timer and cancel audits still in flight."""
        with self._lock:
            tasks = [job.task for job in self._jobs.values()]
            tasks.extend(self._in_flight.values())
            self._jobs.clear()
            self._in_flight.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Job registry stopped (%d task(s) cancelled)", len(tasks))

    # ── Internals ─────────────────────────────────────────────────────────

    def _stop_locked(self, client_id: int) -> bool:
        job = self._jobs.pop(client_id, None)
        if job is None:
            return False
        job.task.cancel()
        return True

    async def _timer_loop(self, client_id: int, expression: str) -> None:
        """Sleep until each cron firing and hand it off; runs until cancelled."""
        last_fire: datetime | None = None
        while True:
            # Naive local wall-clock time; the UTC offset is resolved per firing
            now = datetime.now()
            base = max(now, last_fire) if last_fire else now
            fire_at = next_fire_time(expression, base)
            await asyncio.sleep(max(seconds_until(fire_at), 0))
            last_fire = fire_at
            self._fire(client_id)

    def _fire(self, client_id: int) -> None:
        previous = self._in_flight.get(client_id)
        if previous is not None and not previous.done():
            logger.warning(
                "Skipping scheduled audit for client %s: previous run still in flight",
                client_id,
            )
            return

        logger.info("Scheduled audit firing for client %s", client_id)
        task = asyncio.get_running_loop().create_task(
            self._run_scheduled_audit(client_id),
            name=f"audit-{client_id}",
        )
        self._in_flight[client_id] = task

        def _forget(t: asyncio.Task[None]) -> None:
            if self._in_flight.get(client_id) is t:
                del self._in_flight[client_id]

        task.add_done_callback(_forget)

    async def _run_scheduled_audit(self, client_id: int) -> None:
        try:
            await self.orchestrator.run(client_id, FormFactor.MOBILE.value)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Scheduled audit failed for client %s: %s", client_id, e)
