#!/usr/bin/env python3
"""
RiskAnalysis CLI
================

Security score dashboard from the command line.

Usage:
    riskanalysis init-db                 # Create tables
    riskanalysis seed                    # Write first-use defaults
    riskanalysis scan                    # Run one security scan
    riskanalysis dashboard               # Score, threats, activity, recommendations

Examples:
    riskanalysis scan --ticks 3 --interval 0.5
    riskanalysis scan --probe-url http://127.0.0.1:8765
    riskanalysis register user@riskanalysis.io
"""

import asyncio
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from riskanalysis import __version__
from riskanalysis.config import settings
from riskanalysis.exceptions import AuthError, StoreError

app = typer.Typer(
    name="riskanalysis",
    help="RiskAnalysis - Security Score Dashboard",
    add_completion=False,
    rich_markup_mode="rich",
)
console = Console()

LEVEL_STYLES = {"high": "red", "medium": "yellow", "low": "green"}


@app.callback()
def setup():
    """Configure logging for every command."""
    from riskanalysis.logging_config import configure_logging
    configure_logging()


def _level(value: str) -> str:
    style = LEVEL_STYLES.get(value, "white")
    return f"[{style}]{value}[/{style}]"


# ============== DATABASE COMMANDS ==============

@app.command("init-db")
def init_db_command():
    """Create the database tables."""
    from riskanalysis.db.database import close_db, init_db

    async def _run():
        await init_db()
        await close_db()

    asyncio.run(_run())
    console.print("[green]Database initialized[/green]")


@app.command()
def seed():
    """Write default metrics, threats and recommendations on first use."""
    from riskanalysis.db.database import close_db, init_db
    from riskanalysis.services.recommendations import RECOMMENDATIONS_COLLECTION
    from riskanalysis.services.seeding import ensure_default_data
    from riskanalysis.services.store import DocumentStore

    async def _run() -> Optional[bool]:
        await init_db()
        try:
            store = DocumentStore()
            if await store.query(RECOMMENDATIONS_COLLECTION):
                return None
            return await ensure_default_data(store)
        finally:
            await close_db()

    try:
        written = asyncio.run(_run())
    except StoreError as e:
        console.print(f"[red][!] Error: {e}[/red]")
        raise typer.Exit(code=2)

    if written is None:
        console.print("[dim]Recommendations already present, nothing seeded[/dim]")
    elif written:
        console.print("[green]Default data written[/green]")
    else:
        console.print("[red][!] Seeding failed[/red]")
        raise typer.Exit(code=1)


# ============== SCAN COMMAND ==============

@app.command()
def scan(
    ticks: Optional[int] = typer.Option(
        None, "--ticks", "-t", min=1,
        help="Number of probe ticks (default from settings)"
    ),
    interval: Optional[float] = typer.Option(
        None, "--interval", "-i", min=0,
        help="Seconds between ticks (default from settings)"
    ),
    probe_url: Optional[str] = typer.Option(
        None, "--probe-url",
        help="Query an on-device agent instead of the static probe"
    ),
):
    """
    Run one security scan to completion.

    Each tick records a device snapshot and an activity entry; the final
    snapshot decides which recommendations are added.
    """
    try:
        outcome, run = asyncio.run(_run_scan(ticks, interval, probe_url))
    except KeyboardInterrupt:
        console.print("\n[yellow][!] Interrupted[/yellow]")
        raise typer.Exit(code=130)
    except StoreError as e:
        console.print(f"\n[red][!] Error: {e}[/red]")
        raise typer.Exit(code=2)

    if not outcome.succeeded:
        console.print(f"\n[red][!] Scan {outcome.status.value} after {outcome.ticks_completed} ticks: {outcome.error}[/red]")
        raise typer.Exit(code=1)

    console.print(f"\n[green]Scan {outcome.scan_id} completed[/green]")
    console.print(f"[dim]started {run.started_at}, finished {run.completion_time}[/dim]")
    if not outcome.recommendations:
        console.print("[dim]No new recommendations[/dim]")
        return

    table = Table(title="New Recommendations", box=box.ROUNDED)
    table.add_column("Title", style="cyan")
    table.add_column("Priority")
    table.add_column("Description")
    for rec in outcome.recommendations:
        table.add_row(rec.title, _level(rec.priority), rec.description)
    console.print(table)


async def _run_scan(ticks: Optional[int], interval: Optional[float], probe_url: Optional[str]):
    from riskanalysis.db.database import close_db, init_db
    from riskanalysis.schemas import ScanRun
    from riskanalysis.services.probe import HttpDeviceProbe, get_probe
    from riskanalysis.services.scan import SCANS_COLLECTION, ScanEventType, ScanOrchestrator
    from riskanalysis.services.store import DocumentStore

    if probe_url:
        probe = HttpDeviceProbe(probe_url, timeout=settings.probe_timeout_seconds)
    else:
        probe = get_probe(settings)

    def on_event(event):
        if event.type == ScanEventType.STARTED:
            console.print(f"[bold]Scanning[/bold] [dim]({event.scan_id})[/dim]")
        elif event.type == ScanEventType.TICK:
            snap = event.snapshot
            console.print(
                f"  tick {event.tick}: encrypted={snap.device_encrypted} "
                f"sdk={snap.sdk_version} patch={snap.security_patch} "
                f"network={snap.network_name}"
            )

    await init_db()
    try:
        store = DocumentStore()
        orchestrator = ScanOrchestrator(store, probe, tick_count=ticks, interval=interval)
        orchestrator.add_listener(on_event)
        await orchestrator.start_scan()
        outcome = await orchestrator.wait()

        if not outcome.succeeded:
            return outcome, None
        record = await store.get(f"{SCANS_COLLECTION}/{outcome.scan_id}")
        return outcome, ScanRun.model_validate(record.data)
    finally:
        await probe.aclose()
        await close_db()


# ============== DASHBOARD COMMANDS ==============

@app.command()
def dashboard():
    """Show the security score, threats, recent activity and recommendations."""
    from riskanalysis.db.database import close_db, init_db
    from riskanalysis.services.dashboard import Dashboard
    from riskanalysis.services.probe import StaticDeviceProbe
    from riskanalysis.services.scan import ScanOrchestrator
    from riskanalysis.services.store import DocumentStore

    async def _run():
        await init_db()
        store = DocumentStore()
        board = Dashboard(store, ScanOrchestrator(store, StaticDeviceProbe.from_settings(settings)))
        try:
            return await board.refresh()
        finally:
            await board.close()
            await close_db()

    state = asyncio.run(_run())

    console.print(f"[bold]Security Score:[/bold] [green]{state.secure_score:g}[/green]   "
                  f"[bold]Risk Score:[/bold] [red]{state.risk_score:g}[/red]\n")

    threats = Table(title="Threat Categories", box=box.ROUNDED)
    threats.add_column("Title", style="cyan")
    threats.add_column("Level")
    threats.add_column("Type")
    for threat in state.threats:
        threats.add_row(threat.title, _level(threat.level), threat.type)
    console.print(threats)

    activity = Table(title="Recent Activity", box=box.ROUNDED)
    activity.add_column("Time", style="dim")
    activity.add_column("Title")
    activity.add_column("Type")
    for entry in state.recent_activity:
        activity.add_row(entry.time or "", entry.title, entry.type)
    console.print(activity)

    recs = Table(title="Recommendations", box=box.ROUNDED)
    recs.add_column("Title", style="cyan")
    recs.add_column("Priority")
    recs.add_column("Description")
    for rec in state.recommendations:
        recs.add_row(rec.title, _level(rec.priority), rec.description)
    console.print(recs)


@app.command()
def activity(
    limit: Optional[int] = typer.Option(None, "--limit", "-n", min=1, help="Show at most N entries"),
):
    """Show the activity history, newest first."""
    from riskanalysis.db.database import close_db, init_db
    from riskanalysis.services.dashboard import Dashboard
    from riskanalysis.services.probe import StaticDeviceProbe
    from riskanalysis.services.scan import ScanOrchestrator
    from riskanalysis.services.store import DocumentStore

    async def _run():
        await init_db()
        try:
            store = DocumentStore()
            board = Dashboard(store, ScanOrchestrator(store, StaticDeviceProbe()))
            return await board.activity_history()
        finally:
            await close_db()

    entries = asyncio.run(_run())
    if limit is not None:
        entries = entries[:limit]

    if not entries:
        console.print("[dim]No activity recorded[/dim]")
        return

    table = Table(title="Activity History", box=box.ROUNDED)
    table.add_column("Time", style="dim")
    table.add_column("Title")
    table.add_column("Type")
    for entry in entries:
        table.add_row(entry.time or "", entry.title, entry.type)
    console.print(table)


# ============== IDENTITY COMMANDS ==============

@app.command()
def register(
    email: str = typer.Argument(..., help="Account email"),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
):
    """Create an account."""
    from riskanalysis.db.database import close_db, init_db
    from riskanalysis.services.identity import IdentityProvider

    async def _run():
        await init_db()
        try:
            return await IdentityProvider().sign_up(email, password)
        finally:
            await close_db()

    try:
        user = asyncio.run(_run())
    except AuthError as e:
        console.print(f"[red][!] {e.message}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[green]Registration successful for {user.email}[/green]")


@app.command()
def login(
    email: str = typer.Argument(..., help="Account email"),
    password: str = typer.Option(..., prompt=True, hide_input=True),
):
    """Check credentials and record the sign-in."""
    from riskanalysis.db.database import close_db, init_db
    from riskanalysis.services.identity import IdentityProvider

    async def _run():
        await init_db()
        try:
            return await IdentityProvider().sign_in(email, password)
        finally:
            await close_db()

    try:
        user = asyncio.run(_run())
    except AuthError as e:
        console.print(f"[red][!] {e.message}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[green]Signed in as {user.email}[/green]")


# ============== UTILITY COMMANDS ==============

@app.command()
def version():
    """Show version information."""
    from riskanalysis.db.database import check_db_health, close_db

    async def _health() -> dict:
        try:
            return await check_db_health()
        finally:
            await close_db()

    console.print(f"[bold]RiskAnalysis[/bold] v{__version__}")
    console.print(f"[dim]Database: {settings.database_url}[/dim]")

    health = asyncio.run(_health())
    if health["connected"]:
        console.print(f"  [green]✓[/green] {health['database_type']} reachable")
    else:
        console.print(f"  [red]✗[/red] database unreachable: {health['error']}")


# ============== ENTRY POINT ==============

def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
