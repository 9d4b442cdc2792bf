"""Record types held by the audit store."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any
from urllib.parse import urlparse


class Platform(str, Enum):
    MOBILE = "mobile"
    DESKTOP = "desktop"
    BOTH = "both"


class FormFactor(str, Enum):
    MOBILE = "mobile"
    DESKTOP = "desktop"


class AuditStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


SCORE_FIELDS = ("performance", "accessibility", "best_practices", "seo", "pwa")
METRIC_FIELDS = ("fcp_ms", "lcp_ms", "tbt_ms", "si_ms", "tti_ms", "cls")


def is_valid_url(url: str) -> bool:
    """Absolute http(s) URL with a host."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


@dataclass
class Client:
    """A registered site audited on demand or on a schedule."""

    id: int
    name: str
    url: str
    platform: str = Platform.BOTH.value
    schedule: str | None = None
    schedule_enabled: bool = False
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Client":
        return cls(
            id=row["id"],
            name=row["name"],
            url=row["url"],
            platform=row.get("platform", Platform.BOTH.value),
            schedule=row.get("schedule"),
            schedule_enabled=bool(row.get("schedule_enabled", 0)),
            created_at=row.get("created_at", ""),
        )


@dataclass
class AuditRun:
    """One execution of the audit engine against a client."""

    id: int
    client_id: int
    form_factor: str = FormFactor.MOBILE.value
    status: str = AuditStatus.RUNNING.value
    performance: float | None = None
    accessibility: float | None = None
    best_practices: float | None = None
    seo: float | None = None
    pwa: float | None = None
    fcp_ms: float | None = None
    lcp_ms: float | None = None
    tbt_ms: float | None = None
    si_ms: float | None = None
    tti_ms: float | None = None
    cls: float | None = None
    error_message: str | None = None
    audited_at: str = ""
    report: dict[str, Any] | None = None

    def to_dict(self, include_report: bool = False) -> dict[str, Any]:
        d = asdict(self)
        if not include_report:
            d.pop("report")
        return d

    @property
    def scores(self) -> dict[str, float | None]:
        return {name: getattr(self, name) for name in SCORE_FIELDS}

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AuditRun":
        report = row.get("report_json")
        if isinstance(report, str):
            try:
                report = json.loads(report)
            except ValueError:
                report = None
        values = {name: row.get(name) for name in SCORE_FIELDS + METRIC_FIELDS}
        return cls(
            id=row["id"],
            client_id=row["client_id"],
            form_factor=row.get("form_factor", FormFactor.MOBILE.value),
            status=row.get("status", AuditStatus.RUNNING.value),
            error_message=row.get("error_message"),
            audited_at=row.get("audited_at", ""),
            report=report,
            **values,
        )
