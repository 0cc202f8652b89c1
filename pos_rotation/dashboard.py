#!/usr/bin/env python3
"""
pos_rotation/dashboard.py - Rich CLI dashboard of credential rotation state.

Usage:
    python -m pos_rotation.dashboard                   # all providers
    python -m pos_rotation.dashboard --provider fudo
    python -m pos_rotation.dashboard --watch           # auto-refresh every 30s

Shows one row per credential (expiry, last rotation, failure streak, backoff)
and one row per circuit breaker scope.
"""
import argparse
import time
from datetime import datetime, timezone

from rich.console import Console, Group
from rich.live import Live
from rich.table import Table
from rich.text import Text

from pos_rotation.config import RotationSettings
from pos_rotation.models import BreakerRow, BreakerStatus, CredentialStatus, CredentialStatusRow
from pos_rotation.store import RotationStore, get_store

console = Console()

EXPIRY_WARN_HOURS = 24


def format_when(value: datetime | None, now: datetime) -> str:
    """Short relative rendering: '3h ago', 'in 2d', or '-'."""
    if value is None:
        return "-"
    delta = value - now
    seconds = abs(delta.total_seconds())
    if seconds >= 86400:
        span = f"{int(seconds // 86400)}d"
    elif seconds >= 3600:
        span = f"{int(seconds // 3600)}h"
    else:
        span = f"{int(seconds // 60)}m"
    return f"in {span}" if delta.total_seconds() > 0 else f"{span} ago"


def credential_status(row: CredentialStatusRow, now: datetime) -> Text:
    if row.status == CredentialStatus.INVALID.value:
        return Text("INVALID", style="bold red")
    if row.consecutive_failures > 0:
        return Text(f"FAILING x{row.consecutive_failures}", style="bold yellow")
    if row.expires_at is not None and row.expires_at <= now:
        return Text("EXPIRED", style="bold red")
    if row.expires_at is None or (row.expires_at - now).total_seconds() < EXPIRY_WARN_HOURS * 3600:
        return Text("DUE", style="yellow")
    return Text("OK", style="green")


def breaker_status(row: BreakerRow) -> Text:
    if row.state == BreakerStatus.OPEN:
        return Text("OPEN", style="bold red")
    if row.state == BreakerStatus.HALF_OPEN:
        return Text("HALF-OPEN", style="bold yellow")
    return Text("CLOSED", style="green")


def build_credentials_table(rows: list[CredentialStatusRow], now: datetime) -> Table:
    table = Table(
        title="POS Credential Rotation",
        show_header=True,
        header_style="bold cyan",
        border_style="blue",
        expand=True,
    )
    table.add_column("Location", style="dim", min_width=20)
    table.add_column("Provider", justify="center")
    table.add_column("Expires", justify="center")
    table.add_column("Last Rotated", justify="center")
    table.add_column("Next Attempt", justify="center")
    table.add_column("Status", justify="center", min_width=10)

    for row in rows:
        table.add_row(
            row.location_id,
            row.provider,
            format_when(row.expires_at, now),
            format_when(row.last_rotated_at, now),
            format_when(row.next_attempt_at, now),
            credential_status(row, now),
        )
    if not rows:
        table.caption = "[dim]No credentials stored[/dim]"
    return table


def build_breakers_table(rows: list[BreakerRow], now: datetime) -> Table:
    table = Table(
        title="Circuit Breakers",
        show_header=True,
        header_style="bold cyan",
        border_style="blue",
        expand=True,
    )
    table.add_column("Scope", style="dim", min_width=20)
    table.add_column("State", justify="center")
    table.add_column("Failures", justify="center")
    table.add_column("Resume", justify="center")

    for row in rows:
        table.add_row(
            row.scope_key,
            breaker_status(row),
            str(row.failure_count),
            format_when(row.resume_at, now),
        )
    return table


def build_dashboard(store: RotationStore, provider: str | None = None) -> Group:
    now = datetime.now(timezone.utc)
    return Group(
        build_credentials_table(store.list_credentials(provider), now),
        build_breakers_table(store.list_breakers(), now),
    )


def main(argv: list[str] | None = None) -> None:
    settings = RotationSettings.from_env()
    parser = argparse.ArgumentParser(description="POS credential rotation dashboard")
    parser.add_argument("--provider", help="Only show one provider")
    parser.add_argument("--database-url", default=settings.database_url, help="Override DATABASE_URL")
    parser.add_argument("--watch", action="store_true", help="Auto-refresh every 30s")
    parser.add_argument("--interval", type=int, default=30, help="Refresh interval in seconds")
    args = parser.parse_args(argv)

    store = get_store(args.database_url)

    if args.watch:
        with Live(console=console, refresh_per_second=0.1) as live:
            while True:
                live.update(build_dashboard(store, args.provider))
                time.sleep(args.interval)
    else:
        console.print(build_dashboard(store, args.provider))
        console.print("\n[dim]Commands:[/dim]")
        console.print("  [cyan]python -m pos_rotation.rotate --provider fudo[/cyan]")
        console.print("  [cyan]python -m pos_rotation.failure_monitor[/cyan]")


if __name__ == "__main__":
    main()
