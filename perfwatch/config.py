from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Storage (SQLite file shared by the API and the audit engine)
    db_path: str = "data/perfwatch.db"
    db_connect_retries: int = 10
    db_connect_delay: float = 3.0  # seconds before the first retry, doubles after

    # Audit engine (consumed by the API)
    audit_engine_url: str = "http://127.0.0.1:3001"
    audit_timeout_seconds: float = 180.0  # a full Lighthouse run can take minutes

    # Audit engine (the Lighthouse runner itself)
    lighthouse_cmd: str = "lighthouse"  # assumes the lighthouse CLI is on PATH
    chrome_path: str = "/usr/bin/chromium"
    chrome_flags: list[str] = [
        "--headless",
        "--no-sandbox",
        "--disable-gpu",
        "--disable-dev-shm-usage",
        "--disable-setuid-sandbox",
        "--no-zygote",
    ]
    chrome_startup_timeout: float = 20.0
    # Kill budget for one lighthouse run; with chrome_startup_timeout it must
    # stay below audit_timeout_seconds so the engine answers before the API gives up
    lighthouse_timeout_seconds: float = 150.0

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 2000

    # Engine service
    engine_host: str = "0.0.0.0"
    engine_port: int = 3001

    # Logging
    log_level: str = "INFO"


settings = Settings()
