"""Entry point for perfwatch — API server, audit engine, one-off audits."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from perfwatch.audits.client import AuditEngineClient, AuditEngineError
from perfwatch.audits.orchestrator import AuditOrchestrator
from perfwatch.config import settings
from perfwatch.store.store import AuditStore, ClientNotFound

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)


def run_server() -> None:
    """Start the dashboard API (and the schedule registry)."""
    console.print(Panel("Starting perfwatch API Server", style="bold green"))
    uvicorn.run(
        "perfwatch.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


def run_engine() -> None:
    """Start the Lighthouse audit engine service."""
    console.print(Panel("Starting perfwatch Audit Engine", style="bold green"))
    uvicorn.run(
        "perfwatch.engine.service:create_engine_app",
        factory=True,
        host=settings.engine_host,
        port=settings.engine_port,
        reload=False,
    )


def run_audit(client_id: int, form_factor: str) -> int:
    """Audit one client through the engine and print its scores."""
    store = AuditStore(settings.db_path)
    engine = AuditEngineClient(settings.audit_engine_url, timeout=settings.audit_timeout_seconds)
    orchestrator = AuditOrchestrator(store, engine)

    try:
        with console.status(f"[bold green]Auditing client {client_id}..."):
            result = asyncio.run(orchestrator.run(client_id, form_factor))
    except (ClientNotFound, AuditEngineError) as e:
        console.print(f"[bold red]Audit failed:[/bold red] {e}")
        return 1

    table = Table(title=f"{result.url} [{result.form_factor}]")
    table.add_column("Category")
    table.add_column("Score", justify="right")
    for category, score in result.scores.model_dump().items():
        table.add_row(category.replace("_", " "), str(score))
    console.print(table)
    console.print(f"[dim]Audit id: {result.audit_id}[/dim]")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="perfwatch — scheduled Lighthouse audits")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the API server")
    sub.add_parser("engine", help="Start the audit engine service")

    audit_parser = sub.add_parser("audit", help="Run one audit for a client")
    audit_parser.add_argument("client_id", type=int, help="Client to audit")
    audit_parser.add_argument(
        "--form-factor", choices=["mobile", "desktop"], default="mobile",
        help="Requested form factor (ignored unless the client's platform is 'both')",
    )

    args = parser.parse_args()

    if args.command == "serve":
        run_server()
    elif args.command == "engine":
        run_engine()
    elif args.command == "audit":
        sys.exit(run_audit(args.client_id, args.form_factor))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
