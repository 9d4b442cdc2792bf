"""FastAPI server for the audit dashboard API."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..audits.client import AuditEngineClient
from ..audits.orchestrator import AuditOrchestrator
from ..config import settings
from ..scheduling.registry import JobRegistry
from ..store.store import AuditStore, StoreUnavailable
from .client_routes import client_router
from .schedule_routes import schedule_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire shared resources on startup, restore schedules, stop timers on shutdown."""
    store = AuditStore(settings.db_path)
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(
        None, store.wait_until_ready, settings.db_connect_retries, settings.db_connect_delay,
    )
    app.state.store = store

    engine = AuditEngineClient(
        base_url=settings.audit_engine_url,
        timeout=settings.audit_timeout_seconds,
    )
    app.state.engine = engine

    orchestrator = AuditOrchestrator(store, engine)
    app.state.orchestrator = orchestrator

    registry = JobRegistry(orchestrator, store)
    app.state.registry = registry

    try:
        await registry.recover_all()
    except Exception:
        logger.exception("Failed to restore schedules")

    yield

    # Shutdown
    await registry.shutdown()
    store.close()


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies as 400 with a readable message."""
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())[1:])
        msg = str(err.get("msg", "invalid value")).removeprefix("Value error, ")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return JSONResponse(status_code=400, content={"detail": "; ".join(parts) or "Invalid request"})


async def _store_unavailable(request: Request, exc: StoreUnavailable) -> JSONResponse:
    logger.error("Store unavailable: %s", exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


def create_app() -> FastAPI:
    app = FastAPI(
        title="perfwatch - Scheduled Lighthouse Audits",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RequestValidationError, _validation_error)
    app.add_exception_handler(StoreUnavailable, _store_unavailable)

    app.include_router(client_router, prefix="/api")
    app.include_router(schedule_router, prefix="/api")

    return app


app = create_app()
