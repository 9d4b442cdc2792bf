"""Client + audit API routes.

Endpoints:
  GET    /api/clients                — clients with last audit + job_active
  POST   /api/clients                — register a client
  DELETE /api/clients/{id}           — stop its job, delete it (cascades audits)
  GET    /api/clients/{id}/audits    — 50 most recent audit runs, newest first
  POST   /api/clients/{id}/audit     — run an audit now
  GET    /api/audits/{id}/report     — full Lighthouse report
  GET    /api/dashboard              — clients joined with their latest audit
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, field_validator

from ..audits.client import AuditEngineError
from ..audits.orchestrator import AuditOrchestrator
from ..scheduling.registry import JobRegistry
from ..store.models import FormFactor, is_valid_url
from ..store.store import AuditStore, ClientNotFound, DuplicateClient

logger = logging.getLogger(__name__)

client_router = APIRouter(tags=["clients"])


# ── Request models ───────────────────────────────────────────────────────

class CreateClientBody(BaseModel):
    name: str
    url: str
    platform: Literal["mobile", "desktop", "both"] = "both"

    @field_validator("name", "url")
    @classmethod
    def _required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name and url required")
        return v

    @field_validator("url")
    @classmethod
    def _valid_url(cls, v: str) -> str:
        if not is_valid_url(v):
            raise ValueError("Invalid URL format")
        return v


class RunAuditBody(BaseModel):
    form_factor: str = FormFactor.MOBILE.value

    @field_validator("form_factor", mode="before")
    @classmethod
    def _desktop_or_mobile(cls, v: Any) -> str:
        # Anything but the exact string "desktop" means mobile
        return FormFactor.DESKTOP.value if v == FormFactor.DESKTOP.value else FormFactor.MOBILE.value


# ── Helpers ──────────────────────────────────────────────────────────────

def _get_store(request: Request) -> AuditStore:
    return request.app.state.store  # type: ignore[no-any-return]


def _get_registry(request: Request) -> JobRegistry:
    return request.app.state.registry  # type: ignore[no-any-return]


def _get_orchestrator(request: Request) -> AuditOrchestrator:
    return request.app.state.orchestrator  # type: ignore[no-any-return]


# ── Clients ──────────────────────────────────────────────────────────────

@client_router.get("/clients")
def list_clients(request: Request) -> list[dict[str, Any]]:
    registry = _get_registry(request)
    clients = _get_store(request).list_clients()
    for c in clients:
        c["job_active"] = registry.is_active(c["id"])
    return clients


@client_router.post("/clients", status_code=201)
def create_client(body: CreateClientBody, request: Request) -> dict[str, Any]:
    """Register a client. 409 on a duplicate name or url+platform pair."""
    try:
        client = _get_store(request).create_client(body.name, body.url, body.platform)
    except DuplicateClient as e:
        raise HTTPException(status_code=409, detail=str(e))
    logger.info("Client %s registered: %s [%s]", client.id, client.url, client.platform)
    return client.to_dict()


@client_router.delete("/clients/{client_id}")
async def delete_client(client_id: int, request: Request) -> dict[str, Any]:
    """Stop the client's job first, then delete it along with its audits."""
    store = _get_store(request)
    registry = _get_registry(request)
    loop = asyncio.get_running_loop()
    async with registry.update_lock:
        registry.stop(client_id)
        if not await loop.run_in_executor(None, store.delete_client, client_id):
            raise HTTPException(status_code=404, detail="Client not found")
    logger.info("Client %s deleted", client_id)
    return {"success": True}


# ── Audits ───────────────────────────────────────────────────────────────

@client_router.get("/clients/{client_id}/audits")
def list_audits(client_id: int, request: Request) -> list[dict[str, Any]]:
    store = _get_store(request)
    if store.get_client(client_id) is None:
        raise HTTPException(status_code=404, detail="Client not found")
    return [a.to_dict() for a in store.list_audits(client_id)]


@client_router.post("/clients/{client_id}/audit")
async def run_audit(
    client_id: int, request: Request, body: RunAuditBody | None = None,
) -> dict[str, Any]:
    """Run an audit now and wait for its result.

    Not serialized against a scheduled firing for the same client; both
    may run at once, each recording its own audit run.
    """
    requested = body.form_factor if body else FormFactor.MOBILE.value
    try:
        result = await _get_orchestrator(request).run(client_id, requested)
    except ClientNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AuditEngineError as e:
        logger.error("Manual audit failed for client %s: %s", client_id, e)
        raise HTTPException(status_code=502, detail=e.message)
    return result.model_dump()


@client_router.get("/audits/{audit_id}/report")
def get_report(audit_id: int, request: Request) -> dict[str, Any]:
    audit = _get_store(request).get_audit(audit_id)
    if audit is None:
        raise HTTPException(status_code=404, detail="Audit not found")
    if not audit.report:
        raise HTTPException(status_code=404, detail="No report saved for this audit")
    return audit.report


@client_router.get("/dashboard")
def dashboard(request: Request) -> list[dict[str, Any]]:
    return _get_store(request).dashboard()
