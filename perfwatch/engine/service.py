"""Audit engine HTTP service.

Endpoints:
  GET /health                                       — liveness
  GET /audit?url=...&client_id=...&form_factor=...  — run one Lighthouse audit

With a client_id, a `running` audit row is created before the browser is
launched and moved to `completed` or `failed` afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..config import settings
from ..store.models import FormFactor, is_valid_url
from ..store.store import AuditStore
from .lighthouse import run_lighthouse

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = AuditStore(settings.db_path)
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(
        None, store.wait_until_ready, settings.db_connect_retries, settings.db_connect_delay,
    )
    app.state.store = store
    logger.info("Audit engine ready")

    yield

    store.close()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Bad query params get the same {success, error} body as every other failure."""
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())[1:])
        msg = str(err.get("msg", "invalid value"))
        parts.append(f"{loc}: {msg}" if loc else msg)
    return _error(400, "; ".join(parts) or "Invalid request")


def create_engine_app() -> FastAPI:
    app = FastAPI(
        title="perfwatch - Audit Engine",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(RequestValidationError, _validation_error)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": "lighthouse"}

    @app.get("/audit")
    def audit(
        request: Request,
        url: str | None = None,
        client_id: int | None = None,
        form_factor: str | None = None,
    ) -> Any:
        """Run one audit. Blocks for the whole Lighthouse run (threadpool)."""
        if not url:
            return _error(400, "`url` query param is required")
        if not is_valid_url(url):
            return _error(400, "Invalid URL format")
        ff = FormFactor.DESKTOP.value if form_factor == FormFactor.DESKTOP.value else FormFactor.MOBILE.value

        store: AuditStore = request.app.state.store
        audit_id: int | None = None
        if client_id is not None:
            try:
                audit_id = store.create_running_audit(client_id, ff)
            except Exception as e:
                logger.error("Failed to create audit record for client %s: %s", client_id, e)

        logger.info("Auditing [%s]: %s", ff, url)
        try:
            run = run_lighthouse(url, ff)
            if audit_id is not None:
                store.complete_audit(audit_id, run.scores, run.metrics, run.report)
            elif client_id is not None:
                audit_id = store.insert_completed_audit(
                    client_id, ff, run.scores, run.metrics, run.report,
                )
        except Exception as e:
            logger.error("Audit failed for %s: %s", url, e)
            if audit_id is not None:
                try:
                    store.fail_audit(audit_id, str(e))
                except Exception:
                    logger.exception("Could not mark audit %s as failed", audit_id)
            return _error(500, str(e))

        logger.info("Audit complete [%s] for %s: %s", ff, url, run.scores)
        return {
            "success": True,
            "url": url,
            "form_factor": ff,
            "scores": run.scores,
            "audit_id": audit_id,
        }

    return app
