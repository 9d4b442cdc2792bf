"""httpx-based client for the audit engine service.

All methods return typed responses or raise AuditEngineError.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class AuditEngineError(Exception):
    """Raised when an audit cannot be obtained from the engine.

    ``status_code`` is None when the engine was unreachable or timed out.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(message)


# ── Responses ────────────────────────────────────────────────────────────────


class AuditScores(BaseModel):
    performance: int
    accessibility: int
    best_practices: int
    seo: int
    pwa: int


class AuditResult(BaseModel):
    success: bool
    url: str
    form_factor: str
    scores: AuditScores
    audit_id: int | None = None


class AuditEngineClient:
    """Synchronous httpx client for the Lighthouse audit engine."""

    def __init__(self, base_url: str, timeout: float = 180.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def _get(
        self,
        path: str,
        params: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """Perform a GET request to the engine."""
        timeout = timeout or self._timeout
        try:
            with httpx.Client(timeout=timeout) as client:
                resp = client.get(f"{self._base_url}{path}", params=params)
        except httpx.TimeoutException:
            raise AuditEngineError(f"Audit engine timed out after {timeout:.0f}s")
        except httpx.TransportError as e:
            raise AuditEngineError(f"Audit engine is offline or unreachable: {e}")

        if resp.status_code >= 400:
            detail = resp.text
            try:
                body = resp.json()
                detail = body.get("error") or body.get("detail") or resp.text
            except Exception:
                pass
            raise AuditEngineError(str(detail) or "Audit failed", resp.status_code)
        return resp

    # ── High-level methods ───────────────────────────────────────────────

    def health(self) -> dict[str, Any]:
        """GET /health"""
        resp = self._get("/health", timeout=5.0)
        return resp.json()

    def run_audit(self, url: str, form_factor: str, client_id: int | None = None) -> AuditResult:
        """GET /audit?url=...&form_factor=...&client_id=..."""
        params = {"url": url, "form_factor": form_factor}
        if client_id is not None:
            params["client_id"] = str(client_id)
        resp = self._get("/audit", params=params)
        try:
            return AuditResult(**resp.json())
        except Exception as e:
            raise AuditEngineError(f"Malformed audit engine response: {e}", resp.status_code)
