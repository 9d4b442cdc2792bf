"""Schedule management routes.

Each handler holds the registry's update lock across its store calls (run
in the default executor) and the matching start/stop, so two concurrent
updates for one client cannot interleave and a locked database never
stalls the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from ..scheduling.cron import InvalidScheduleExpression, validate_expression
from ..scheduling.registry import JobRegistry
from ..store.store import AuditStore

logger = logging.getLogger(__name__)

schedule_router = APIRouter(tags=["schedules"])


class ScheduleBody(BaseModel):
    expression: str | None = None
    enabled: bool = True


def _get_store(request: Request) -> AuditStore:
    return request.app.state.store  # type: ignore[no-any-return]


def _get_registry(request: Request) -> JobRegistry:
    return request.app.state.registry  # type: ignore[no-any-return]


@schedule_router.put("/clients/{client_id}/schedule")
async def set_schedule(client_id: int, body: ScheduleBody, request: Request) -> dict[str, Any]:
    """Store a cron expression and start (or stop) the client's job."""
    if not body.expression:
        raise HTTPException(status_code=400, detail="expression is required")
    try:
        expression = validate_expression(body.expression.strip())
    except InvalidScheduleExpression as e:
        raise HTTPException(status_code=400, detail=str(e))

    store = _get_store(request)
    registry = _get_registry(request)
    loop = asyncio.get_running_loop()
    async with registry.update_lock:
        updated = await loop.run_in_executor(
            None, store.set_schedule, client_id, expression, body.enabled,
        )
        if not updated:
            raise HTTPException(status_code=404, detail="Client not found")
        if body.enabled:
            registry.start(client_id, expression)
        else:
            registry.stop(client_id)
        active = registry.is_active(client_id)
    return {
        "success": True,
        "client_id": client_id,
        "expression": expression,
        "enabled": body.enabled,
        "job_active": active,
    }


@schedule_router.delete("/clients/{client_id}/schedule")
async def clear_schedule(client_id: int, request: Request) -> dict[str, Any]:
    """Stop the job and forget the expression."""
    store = _get_store(request)
    registry = _get_registry(request)
    loop = asyncio.get_running_loop()
    async with registry.update_lock:
        registry.stop(client_id)
        if not await loop.run_in_executor(None, store.clear_schedule, client_id):
            raise HTTPException(status_code=404, detail="Client not found")
    return {"success": True}


@schedule_router.patch("/clients/{client_id}/schedule/toggle")
async def toggle_schedule(client_id: int, request: Request) -> dict[str, Any]:
    """Flip schedule_enabled for the stored expression."""
    store = _get_store(request)
    registry = _get_registry(request)
    loop = asyncio.get_running_loop()
    async with registry.update_lock:
        client = await loop.run_in_executor(None, store.get_client, client_id)
        if client is None:
            raise HTTPException(status_code=404, detail="Client not found")
        if not client.schedule:
            raise HTTPException(status_code=400, detail="No schedule set")

        enabled = not client.schedule_enabled
        if enabled:
            try:
                validate_expression(client.schedule)
            except InvalidScheduleExpression as e:
                raise HTTPException(status_code=400, detail=str(e))

        await loop.run_in_executor(None, store.set_schedule_enabled, client_id, enabled)
        if enabled:
            registry.start(client_id, client.schedule)
        else:
            registry.stop(client_id)
        active = registry.is_active(client_id)
    return {
        "success": True,
        "enabled": enabled,
        "job_active": active,
    }


@schedule_router.get("/schedules")
def list_schedules(request: Request) -> list[dict[str, Any]]:
    """Every client with a stored expression, enabled or not."""
    registry = _get_registry(request)
    result = []
    for client in _get_store(request).list_schedules():
        d = client.to_dict()
        d["job_active"] = registry.is_active(client.id)
        result.append(d)
    return result
