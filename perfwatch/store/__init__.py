"""Persistence gateway — clients, audit runs, SQLite storage."""

from .models import AuditRun, AuditStatus, Client, FormFactor, Platform
from .store import AuditStore, ClientNotFound, DuplicateClient, StoreUnavailable

__all__ = [
    "AuditRun",
    "AuditStatus",
    "AuditStore",
    "Client",
    "ClientNotFound",
    "DuplicateClient",
    "FormFactor",
    "Platform",
    "StoreUnavailable",
]
