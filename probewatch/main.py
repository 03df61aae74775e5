"""Entry point for the probewatch service monitor."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from probewatch.api.server import build_components
from probewatch.config import settings
from probewatch.health.models import CheckResult, CheckStatus

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)

_STATUS_STYLE = {
    CheckStatus.OK: "green",
    CheckStatus.FAIL: "yellow",
    CheckStatus.ERROR: "red",
    CheckStatus.TIMEOUT: "magenta",
}


def run_server() -> None:
    """Start the FastAPI server (scheduler starts in the app lifespan)."""
    console.print(Panel("Starting probewatch API Server", style="bold green"))
    uvicorn.run(
        "probewatch.api.server:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


async def _check_once(config_path: str | None) -> list[CheckResult]:
    cfg = settings.model_copy(update={"services_file": config_path}) if config_path else settings
    store, _, scheduler = build_components(cfg)
    await store.initialize()
    return await scheduler.run_checks()


def run_check(config_path: str | None = None) -> int:
    """Run every enabled check once and print a results table."""
    with console.status("[bold green]Running checks..."):
        results = asyncio.run(_check_once(config_path))

    if not results:
        console.print("[yellow]No enabled services configured.[/yellow]")
        return 0

    table = Table(title="Service checks")
    table.add_column("Service")
    table.add_column("Status")
    table.add_column("Time (ms)", justify="right")
    table.add_column("Answer / message")
    for r in results:
        style = _STATUS_STYLE.get(r.status, "white")
        table.add_row(
            r.name,
            f"[{style}]{r.status.value}[/{style}]",
            f"{r.response_time:.0f}",
            r.answer if r.status == CheckStatus.OK else (r.message or ""),
        )
    console.print(table)

    failed = sum(1 for r in results if r.status != CheckStatus.OK)
    console.print(f"\n[dim]{len(results) - failed}/{len(results)} ok[/dim]")
    return 1 if failed else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="probewatch service monitor")
    sub = parser.add_subparsers(dest="command")

    # Server mode
    sub.add_parser("serve", help="Start the API server and scheduler")

    # One-shot mode
    check_parser = sub.add_parser("check", help="Run every enabled check once")
    check_parser.add_argument(
        "--config", help="Path to a services file (default: settings.services_file)",
    )

    args = parser.parse_args()

    if args.command == "serve":
        run_server()
    elif args.command == "check":
        if args.config and not Path(args.config).is_file():
            console.print(f"[red]Config file not found: {args.config}[/red]")
            sys.exit(2)
        sys.exit(run_check(args.config))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
