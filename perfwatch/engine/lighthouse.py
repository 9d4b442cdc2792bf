"""Lighthouse runner — one headless Chromium per audit, always torn down.

Chromium is launched with a remote-debugging port and the Lighthouse CLI
is pointed at it with a per-form-factor config (network/CPU throttling,
screen + user-agent emulation). Scores are category score x 100, rounded.
"""

from __future__ import annotations

import json
import logging
import shutil
import socket
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from ..config import settings

logger = logging.getLogger(__name__)

CATEGORIES = ("performance", "accessibility", "best-practices", "seo", "pwa")

# Lighthouse audit id → (stored column, decimal places)
METRIC_AUDITS = {
    "first-contentful-paint": ("fcp_ms", 1),
    "largest-contentful-paint": ("lcp_ms", 1),
    "total-blocking-time": ("tbt_ms", 1),
    "speed-index": ("si_ms", 1),
    "interactive": ("tti_ms", 1),
    "cumulative-layout-shift": ("cls", 4),
}

MOBILE_SETTINGS: dict[str, Any] = {
    "formFactor": "mobile",
    "throttling": {
        "rttMs": 150,
        "throughputKbps": 1638.4,
        "cpuSlowdownMultiplier": 4,
        "requestLatencyMs": 562.5,
        "downloadThroughputKbps": 1474.56,
        "uploadThroughputKbps": 675,
    },
    "screenEmulation": {
        "mobile": True,
        "width": 360,
        "height": 640,
        "deviceScaleFactor": 2.625,
        "disabled": False,
    },
    "emulatedUserAgent": (
        "Mozilla/5.0 (Linux; Android 11; moto g power (2022)) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36"
    ),
}

DESKTOP_SETTINGS: dict[str, Any] = {
    "formFactor": "desktop",
    "throttling": {
        "rttMs": 40,
        "throughputKbps": 10240,
        "cpuSlowdownMultiplier": 1,
        "requestLatencyMs": 0,
        "downloadThroughputKbps": 0,
        "uploadThroughputKbps": 0,
    },
    "screenEmulation": {
        "mobile": False,
        "width": 1350,
        "height": 940,
        "deviceScaleFactor": 1,
        "disabled": False,
    },
    "emulatedUserAgent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
}


class LighthouseError(Exception):
    """Raised when the browser or the Lighthouse run fails."""


@dataclass
class LighthouseRun:
    scores: dict[str, int]
    metrics: dict[str, float | None]
    report: dict[str, Any] = field(repr=False)


def lighthouse_config(form_factor: str) -> dict[str, Any]:
    """Full Lighthouse config for a form factor; anything but desktop is mobile."""
    base = DESKTOP_SETTINGS if form_factor == "desktop" else MOBILE_SETTINGS
    return {
        "extends": "lighthouse:default",
        "settings": {**base, "onlyCategories": list(CATEGORIES)},
    }


def extract_scores(lhr: dict[str, Any]) -> dict[str, int]:
    """0–100 integer scores; a missing or null category counts as 0."""
    categories = lhr.get("categories") or {}
    scores = {}
    for name in CATEGORIES:
        raw = (categories.get(name) or {}).get("score") or 0
        scores[name.replace("-", "_")] = int(raw * 100 + 0.5)
    return scores


def extract_metrics(lhr: dict[str, Any]) -> dict[str, float | None]:
    audits = lhr.get("audits") or {}
    metrics: dict[str, float | None] = {}
    for audit_id, (column, digits) in METRIC_AUDITS.items():
        value = (audits.get(audit_id) or {}).get("numericValue")
        metrics[column] = round(float(value), digits) if value is not None else None
    return metrics


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class ChromeInstance:
    """Headless Chromium with a DevTools port, killed on every exit path."""

    def __init__(
        self,
        chrome_path: str | None = None,
        flags: list[str] | None = None,
        startup_timeout: float | None = None,
    ) -> None:
        self.chrome_path = chrome_path or settings.chrome_path
        self.flags = list(flags if flags is not None else settings.chrome_flags)
        self.startup_timeout = startup_timeout or settings.chrome_startup_timeout
        self.port: int = 0
        self._proc: subprocess.Popen[bytes] | None = None
        self._profile_dir: str | None = None

    def __enter__(self) -> "ChromeInstance":
        try:
            self.launch()
        except BaseException:
            self.kill()
            raise
        return self

    def __exit__(self, *exc: Any) -> None:
        self.kill()

    def launch(self) -> None:
        self.port = _free_port()
        self._profile_dir = tempfile.mkdtemp(prefix="perfwatch-chrome-")
        cmd = [
            self.chrome_path,
            *self.flags,
            f"--remote-debugging-port={self.port}",
            f"--user-data-dir={self._profile_dir}",
            "about:blank",
        ]
        try:
            self._proc = subprocess.Popen(
                cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
            )
        except FileNotFoundError:
            raise LighthouseError(f"Chrome not found at '{self.chrome_path}'")
        self._wait_ready()
        logger.debug("Chrome started on port %d (pid %s)", self.port, self._proc.pid)

    def _wait_ready(self) -> None:
        deadline = time.monotonic() + self.startup_timeout
        url = f"http://127.0.0.1:{self.port}/json/version"
        while time.monotonic() < deadline:
            if self._proc is not None and self._proc.poll() is not None:
                raise LighthouseError(f"Chrome exited during startup (code {self._proc.returncode})")
            try:
                if httpx.get(url, timeout=1.0).status_code == 200:
                    return
            except httpx.TransportError:
                pass
            time.sleep(0.2)
        raise LighthouseError(f"Chrome did not open its debugging port within {self.startup_timeout:.0f}s")

    def kill(self) -> None:
        if self._proc is not None and self._proc.poll() is None:
            self._proc.terminate()
            try:
                self._proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._proc.kill()
                self._proc.wait()
        self._proc = None
        if self._profile_dir:
            shutil.rmtree(self._profile_dir, ignore_errors=True)
            self._profile_dir = None


def run_lighthouse(url: str, form_factor: str, timeout: float | None = None) -> LighthouseRun:
    """Audit *url* in a fresh browser and return scores, metrics and the report."""
    timeout = timeout or settings.lighthouse_timeout_seconds
    with ChromeInstance() as chrome, tempfile.TemporaryDirectory(prefix="perfwatch-lh-") as tmp:
        config_path = Path(tmp) / "config.json"
        config_path.write_text(json.dumps(lighthouse_config(form_factor)), encoding="utf-8")
        cmd = [
            settings.lighthouse_cmd,
            url,
            f"--port={chrome.port}",
            f"--config-path={config_path}",
            "--output=json",
            "--output-path=stdout",
            "--quiet",
        ]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise LighthouseError(f"Lighthouse timed out after {timeout:.0f}s")
        except FileNotFoundError:
            raise LighthouseError(f"Lighthouse CLI not found at '{settings.lighthouse_cmd}'")

    if proc.returncode != 0:
        stderr = proc.stderr.strip().splitlines()
        raise LighthouseError(stderr[-1] if stderr else f"Lighthouse exited with code {proc.returncode}")
    try:
        lhr = json.loads(proc.stdout)
    except ValueError as e:
        raise LighthouseError(f"Lighthouse produced unreadable output: {e}")

    runtime_error = lhr.get("runtimeError")
    if runtime_error:
        raise LighthouseError(runtime_error.get("message") or runtime_error.get("code", "Lighthouse runtime error"))

    return LighthouseRun(scores=extract_scores(lhr), metrics=extract_metrics(lhr), report=lhr)
