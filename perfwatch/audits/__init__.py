"""Audit subsystem — engine client and per-client orchestration."""

from .client import AuditEngineClient, AuditEngineError, AuditResult, AuditScores
from .orchestrator import AuditOrchestrator, resolve_form_factor
