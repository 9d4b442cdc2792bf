"""Audit orchestration — resolve a client's form factor and run the engine.

The engine owns the audit run's lifecycle (running → completed / failed);
this layer only resolves inputs and surfaces the outcome. There is no
retry: the next scheduled firing is the retry.
"""

from __future__ import annotations

import asyncio
import logging

from ..store.models import FormFactor, Platform
from ..store.store import AuditStore, ClientNotFound
from .client import AuditEngineClient, AuditResult

logger = logging.getLogger(__name__)


def resolve_form_factor(platform: str, requested: str = FormFactor.MOBILE.value) -> str:
    """Pick the form factor to audit with.

    A client pinned to mobile or desktop always gets that profile; ``both``
    honours the request, falling back to mobile for anything but desktop.
    """
    if platform == Platform.MOBILE.value:
        return FormFactor.MOBILE.value
    if platform == Platform.DESKTOP.value:
        return FormFactor.DESKTOP.value
    if requested == FormFactor.DESKTOP.value:
        return FormFactor.DESKTOP.value
    return FormFactor.MOBILE.value


class AuditOrchestrator:
    """Runs one audit for one client."""

    def __init__(self, store: AuditStore, engine: AuditEngineClient) -> None:
        self.store = store
        self.engine = engine

    async def run(
        self, client_id: int, requested_form_factor: str = FormFactor.MOBILE.value,
    ) -> AuditResult:
        """Audit a client. Raises ClientNotFound or AuditEngineError."""
        loop = asyncio.get_running_loop()
        client = await loop.run_in_executor(None, self.store.get_client, client_id)
        if client is None:
            raise ClientNotFound(client_id)

        form_factor = resolve_form_factor(client.platform, requested_form_factor)
        logger.info("Auditing client %s [%s]: %s", client_id, form_factor, client.url)

        result = await loop.run_in_executor(
            None, self.engine.run_audit, client.url, form_factor, client_id,
        )
        logger.info(
            "Audit %s complete for client %s: performance=%d",
            result.audit_id, client_id, result.scores.performance,
        )
        return result
