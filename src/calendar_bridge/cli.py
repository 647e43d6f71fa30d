"""
Command-line interface for Calendar Bridge.
"""

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from datetime import date
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from calendar_bridge.bridges.http import build_http_client
from calendar_bridge.config import AppConfig
from calendar_bridge.config import load_config
from calendar_bridge.db import BridgeStore
from calendar_bridge.models import DEFAULT_CONFIG
from calendar_bridge.models import CalendarBridgeError
from calendar_bridge.models import QueueType
from calendar_bridge.models import SyncDirection
from calendar_bridge.models import SyncOptions
from calendar_bridge.models import SyncResult
from calendar_bridge.resources import ResourceMappingService
from calendar_bridge.sync import BridgeOrchestrator

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Synchronize events between calendar backends (Outlook, booking systems).",
)
resources_app = typer.Typer(no_args_is_help=True, help="Manage resource mappings.")
app.add_typer(resources_app, name="resources")

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path | None = None
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path | None,
        typer.Option("--state-db", help="State DB path (overrides the config file)"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _load_app_config() -> AppConfig:
    try:
        cfg = load_config(state.config_path)
    except CalendarBridgeError as e:
        console.print(f"[bold red]Configuration error:[/] {e}")
        raise typer.Exit(1) from None
    if state.state_db is not None:
        cfg.engine = replace(cfg.engine, state_db_path=state.state_db)
    return cfg


@contextmanager
def _store() -> Iterator[BridgeStore]:
    """State database only, for commands that never call a bridge."""
    cfg = _load_app_config()
    with BridgeStore(cfg.engine.state_db_path) as store:
        yield store


@contextmanager
def _orchestrator() -> Iterator[BridgeOrchestrator]:
    cfg = _load_app_config()
    try:
        with build_http_client(cfg.engine.http_timeout) as client, BridgeStore(cfg.engine.state_db_path) as store:
            yield BridgeOrchestrator.from_config(cfg, store, client)
    except CalendarBridgeError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None


def _parse_day(value: str | None) -> datetime:
    if not value:
        today = date.today()
    else:
        try:
            today = date.fromisoformat(value)
        except ValueError:
            console.print(f"[bold red]Error:[/] Invalid date: {value!r}")
            raise typer.Exit(1) from None
    return datetime(today.year, today.month, today.day, tzinfo=timezone.utc)


def _fmt_ts(ts: float | None) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S") if ts else "—"


def _error_cell(count: int) -> Text:
    cell = Text(str(count))
    if count == 0:
        cell.append(" ✓", style="green")
    else:
        cell.stylize("bold red")
    return cell


def _print_results(results: list[SyncResult], dry_run: bool) -> None:
    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Pass")
    table.add_column("Found", justify="right")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Deletion checks", justify="right")
    table.add_column("Errors", justify="right")
    for r in results:
        table.add_row(
            f"{r.source_bridge} → {r.target_bridge}",
            str(r.source_events_found),
            str(r.created),
            str(r.updated),
            str(r.skipped),
            str(r.deletion_checks_queued),
            _error_cell(len(r.errors)),
        )
    title = "[bold]Results[/bold]" + ("  [magenta](DRY RUN)[/magenta]" if dry_run else "")
    console.print(Panel(table, title=title, expand=False))
    for r in results:
        for failure in r.errors:
            console.print(f"  [red]✗[/] {failure.get('event_id') or '(fetch)'}: {failure['error']}")


_DRY_RUN = Annotated[bool, typer.Option("--dry-run", "-n", help="Preview changes without applying")]
_FROM_DATE = Annotated[
    str | None,
    typer.Option("--from-date", help="Window start YYYY-MM-DD (default: configured days back)"),
]
_DAYS = Annotated[int | None, typer.Option("--days", help="Window length in days")]


def _window(cfg: AppConfig, from_date: str | None, days: int | None) -> tuple[datetime | None, datetime | None]:
    if from_date is None and days is None:
        return None, None
    start = (
        _parse_day(from_date)
        if from_date
        else _parse_day(None) - timedelta(days=cfg.engine.sync_days_back)
    )
    return start, start + timedelta(days=days or cfg.engine.sync_days_ahead)


# ---------------------------------------------------------------------------
# Subcommands: sync / sync-resources
# ---------------------------------------------------------------------------


@app.command()
def sync(
    source: Annotated[str, typer.Argument(help="Source bridge name")],
    source_calendar: Annotated[str, typer.Argument(help="Calendar or resource id on the source")],
    target: Annotated[str, typer.Argument(help="Target bridge name")],
    target_calendar: Annotated[str, typer.Argument(help="Calendar or resource id on the target")],
    dry_run: _DRY_RUN = False,
    handle_deletions: Annotated[
        bool, typer.Option("--handle-deletions", help="Queue deletion checks for vanished events")
    ] = False,
    skip_updates: Annotated[bool, typer.Option("--skip-updates", help="Only create new events")] = False,
    direction: Annotated[
        SyncDirection, typer.Option("--direction", help="Direction recorded on new mappings")
    ] = SyncDirection.SOURCE_TO_TARGET,
    from_date: _FROM_DATE = None,
    days: _DAYS = None,
) -> None:
    """Run one sync pass from a source calendar to a target calendar."""
    start, end = _window(_load_app_config(), from_date, days)
    options = SyncOptions(
        dry_run=dry_run,
        handle_deletions=handle_deletions,
        skip_updates=skip_updates,
        sync_direction=direction,
    )
    with _orchestrator() as orch:
        result = orch.sync_between_bridges(
            source, target, source_calendar, target_calendar, start, end, options
        )
    _print_results([result], dry_run)
    if not result.success:
        raise typer.Exit(1)


@app.command("sync-resources")
def sync_resources(
    dry_run: _DRY_RUN = False,
    handle_deletions: Annotated[
        bool,
        typer.Option("--handle-deletions/--no-handle-deletions", help="Queue deletion checks"),
    ] = True,
    from_date: _FROM_DATE = None,
    days: _DAYS = None,
) -> None:
    """Sync every active resource mapping."""
    start, end = _window(_load_app_config(), from_date, days)
    with _orchestrator() as orch:
        results = orch.sync_resource_mappings(
            start, end, SyncOptions(dry_run=dry_run, handle_deletions=handle_deletions)
        )
    if not results:
        console.print("[yellow]No active resource mappings.[/] Add one with [cyan]calendar-bridge resources add[/].")
        return
    _print_results(results, dry_run)
    if not all(r.success for r in results):
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommands: worker / reconcile / webhook
# ---------------------------------------------------------------------------


@app.command()
def worker(
    limit: Annotated[int | None, typer.Option("--limit", help="Stop after this many items")] = None,
    queue_type: Annotated[
        list[QueueType] | None, typer.Option("--type", help="Only process these queue types")
    ] = None,
) -> None:
    """Drain the work queue with a bounded worker pool."""
    with _orchestrator() as orch:
        stats = orch.drain_queue(queue_type or None, limit)
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Processed", str(stats.processed))
    results.add_row("Completed", str(stats.completed))
    results.add_row("Failed", _error_cell(stats.failed))
    console.print(Panel(results, title="[bold]Queue[/bold]", expand=False))


@app.command()
def reconcile(
    backstop: Annotated[
        bool, typer.Option("--backstop", help="Also poll bridges that support webhooks")
    ] = False,
    retry_errors: Annotated[
        bool, typer.Option("--retry-errors", help="Reset errored mappings to pending first")
    ] = False,
) -> None:
    """Run the reconciliation job: deletions, cancellations and re-enables."""
    with _orchestrator() as orch:
        if retry_errors:
            orch.reconciler.retry_failed_mappings()
        results = orch.reconciler.run_reconciliation(backstop=backstop)
    if results is None:
        console.print("[yellow]Another reconciliation run holds the lock; nothing done.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Step")
    for column in ("Checked", "Deleted", "Cancelled", "Re-enabled", "Requeued", "Errors"):
        table.add_column(column, justify="right")
    errors = 0
    for step, stats in results.items():
        errors += stats.errors
        table.add_row(
            step.replace("_", " "),
            str(stats.checked),
            str(stats.deleted),
            str(stats.cancelled),
            str(stats.reenabled),
            str(stats.queued),
            _error_cell(stats.errors),
        )
    console.print(Panel(table, title="[bold]Reconciliation[/bold]", expand=False))
    if errors:
        raise typer.Exit(1)


@app.command()
def webhook(
    bridge: Annotated[str, typer.Argument(help="Bridge the notification came from")],
    payload: Annotated[
        Path | None, typer.Argument(help="JSON file with the notification body (default: stdin)")
    ] = None,
) -> None:
    """Ingest a webhook notification and queue the work it implies."""
    raw = payload.read_text() if payload else sys.stdin.read()
    try:
        body = json.loads(raw)
    except json.JSONDecodeError as e:
        console.print(f"[bold red]Error:[/] Invalid JSON: {e}")
        raise typer.Exit(1) from None
    with _orchestrator() as orch:
        item_ids = orch.reconciler.handle_webhook(bridge, body)
    console.print(f"Queued {len(item_ids)} item(s): {', '.join(map(str, item_ids)) or '—'}")


# ---------------------------------------------------------------------------
# Subcommands: health / status / calendars
# ---------------------------------------------------------------------------

_STATUS_STYLE = {"healthy": "green", "degraded": "yellow", "unhealthy": "red"}


@app.command()
def health() -> None:
    """Probe every configured bridge."""
    with _orchestrator() as orch:
        info = orch.get_all_bridges_info()

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Bridge")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Calendars", justify="right")
    table.add_column("Latency", justify="right")
    table.add_column("Webhooks")
    for name, bridge in info["bridges"].items():
        table.add_row(
            name,
            bridge["type"],
            Text(bridge["status"], style=_STATUS_STYLE.get(bridge["status"], "")),
            str(bridge.get("calendars_count", "—")),
            f"{bridge['response_time_ms']} ms",
            "yes" if bridge["capabilities"]["supports_webhooks"] else "poll",
        )
    overall = info["status"]
    title = f"[bold]Health[/bold]  [{_STATUS_STYLE[overall]}]{overall}[/]"
    console.print(Panel(table, title=title, expand=False))
    for name, bridge in info["bridges"].items():
        if bridge.get("error"):
            console.print(f"  [red]✗[/] {name}: {bridge['error']}")
    if overall == "unhealthy":
        raise typer.Exit(1)


@app.command()
def status() -> None:
    """Show mapping, queue and sync-log statistics."""
    with _orchestrator() as orch:
        stats = orch.get_statistics()

    summary = Table.grid(padding=(0, 2))
    summary.add_column(style="bold")
    summary.add_column(justify="right")
    for name, count in stats["mappings"].items():
        summary.add_row(f"Mappings {name}", str(count))
    summary.add_row("Orphaned mappings", str(stats["orphaned_mappings"]))
    summary.add_row("Cancelled (24h)", str(stats["cancellations"]["cancelled_last_24h"]))
    for name, count in stats["queue"].items():
        summary.add_row(f"Queue {name}", str(count))
    summary.add_row(
        "Resource mappings",
        f"{stats['resource_mappings']['syncing']} syncing / {stats['resource_mappings']['total']}",
    )
    console.print(Panel(summary, title="[bold]Calendar Bridge — Status[/bold]", expand=False))

    if not stats["sync_logs"]:
        console.print("[yellow]No syncs recorded yet.[/]")
        return
    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Pair")
    table.add_column("Operation")
    table.add_column("Runs", justify="right")
    table.add_column("OK", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Avg ms", justify="right")
    table.add_column("Events", justify="right")
    table.add_column("Last run")
    for row in stats["sync_logs"]:
        table.add_row(
            f"{row['source_bridge']} → {row['target_bridge']}",
            row["operation"],
            str(row["runs"]),
            str(row["successes"]),
            str(row["failures"]),
            str(row["avg_duration_ms"]),
            str(row["events"]),
            _fmt_ts(row["last_run_at"]),
        )
    console.print(Panel(table, title="[bold]Sync log[/bold]", expand=False))


@app.command()
def calendars(
    bridge: Annotated[str | None, typer.Argument(help="Only list this bridge")] = None,
) -> None:
    """List the calendars and resources each bridge can see."""
    with _orchestrator() as orch:
        names = [bridge] if bridge else orch.bridge_names()
        for name in names:
            table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
            table.add_column("Id", overflow="fold")
            table.add_column("Name")
            table.add_column("Type")
            for cal in orch.get_bridge(name).get_calendars():
                table.add_row(str(cal["id"]), cal.get("name") or "", cal.get("type") or "")
            console.print(Panel(table, title=f"[bold]{name}[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommands: subscribe / cleanup
# ---------------------------------------------------------------------------


@app.command()
def subscribe(
    webhook_url: Annotated[
        str | None, typer.Option("--webhook-url", help="Notification URL (default: from config)")
    ] = None,
    renew: Annotated[bool, typer.Option("--renew", help="Renew expiring subscriptions instead")] = False,
) -> None:
    """Subscribe resource-mapped calendars to change notifications."""
    with _orchestrator() as orch:
        if renew:
            count = orch.renew_subscriptions()
            console.print(f"Renewed {count} subscription(s)")
            return
        results = orch.subscribe_all(webhook_url)
    for entry in results:
        style = {"subscribed": "green", "polling": "yellow"}.get(entry["status"], "red")
        detail = entry.get("subscription_id") or entry.get("error", "")
        console.print(
            f"  [{style}]{entry['status']:<10}[/] {entry['bridge']}/{entry['calendar_id']}  [dim]{detail}[/dim]"
        )
    if any(entry["status"] == "error" for entry in results):
        raise typer.Exit(1)


@app.command()
def cleanup(
    days: Annotated[
        int | None, typer.Option("--days", help="Keep this many days of sync logs (default: config)")
    ] = None,
) -> None:
    """Delete old sync-log rows."""
    cfg = _load_app_config()
    with _store() as store:
        removed = store.cleanup_old_logs(days if days is not None else cfg.engine.log_retention_days)
    console.print(f"Removed {removed} sync log row(s)")


# ---------------------------------------------------------------------------
# Subcommands: resources
# ---------------------------------------------------------------------------


def _resource_service(store: BridgeStore) -> ResourceMappingService:
    return ResourceMappingService(store)


@resources_app.command("add")
def resources_add(
    bridge_from: Annotated[str, typer.Argument(help="Bridge holding the resource")],
    resource_id: Annotated[str, typer.Argument(help="Resource id on that bridge")],
    bridge_to: Annotated[str, typer.Argument(help="Bridge holding the calendar")],
    calendar_id: Annotated[str, typer.Argument(help="Calendar id on that bridge")],
    direction: Annotated[
        SyncDirection, typer.Option("--direction", help="Which way events flow")
    ] = SyncDirection.BIDIRECTIONAL,
    disabled: Annotated[bool, typer.Option("--disabled", help="Create with sync switched off")] = False,
) -> None:
    """Pair a resource on one bridge with a calendar on another."""
    with _store() as store:
        try:
            rm = _resource_service(store).create(
                bridge_from, bridge_to, resource_id, calendar_id, direction, sync_enabled=not disabled
            )
        except CalendarBridgeError as e:
            console.print(f"[bold red]Error:[/] {e}")
            raise typer.Exit(1) from None
    console.print(f"[green]Created resource mapping {rm.id}[/]")


@resources_app.command("list")
def resources_list(
    all_: Annotated[bool, typer.Option("--all", help="Include inactive mappings")] = False,
    bridge: Annotated[str | None, typer.Option("--bridge", help="Only mappings touching this bridge")] = None,
) -> None:
    """List resource mappings."""
    with _store() as store:
        mappings = _resource_service(store).list_mappings(active_only=not all_, bridge=bridge)
    if not mappings:
        console.print("[yellow]No resource mappings.[/]")
        return
    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Id", justify="right")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Direction")
    table.add_column("Sync")
    table.add_column("Last sync")
    for rm in mappings:
        sync_state = "on" if rm.sync_enabled else "off"
        if not rm.is_active:
            sync_state = "inactive"
        table.add_row(
            str(rm.id),
            f"{rm.bridge_from}:{rm.resource_id}",
            f"{rm.bridge_to}:{rm.calendar_id}",
            rm.sync_direction.value,
            sync_state,
            _fmt_ts(rm.last_synced_at),
        )
    console.print(table)


@resources_app.command("update")
def resources_update(
    mapping_id: Annotated[int, typer.Argument(help="Resource mapping id")],
    direction: Annotated[SyncDirection | None, typer.Option("--direction")] = None,
    sync_enabled: Annotated[bool | None, typer.Option("--sync/--no-sync")] = None,
    active: Annotated[bool | None, typer.Option("--active/--inactive")] = None,
) -> None:
    """Change a resource mapping's direction or switches."""
    changes = {}
    if direction is not None:
        changes["sync_direction"] = direction
    if sync_enabled is not None:
        changes["sync_enabled"] = sync_enabled
    if active is not None:
        changes["is_active"] = active
    with _store() as store:
        try:
            rm = _resource_service(store).update(mapping_id, **changes)
        except CalendarBridgeError as e:
            console.print(f"[bold red]Error:[/] {e}")
            raise typer.Exit(1) from None
    console.print(f"[green]Updated resource mapping {rm.id}[/]")


@resources_app.command("remove")
def resources_remove(
    mapping_id: Annotated[int, typer.Argument(help="Resource mapping id")],
) -> None:
    """Deactivate a resource mapping (the row is kept)."""
    with _store() as store:
        removed = _resource_service(store).deactivate(mapping_id)
    if not removed:
        console.print(f"[yellow]Resource mapping {mapping_id} is not active.[/]")
        raise typer.Exit(1)
    console.print(f"[green]Deactivated resource mapping {mapping_id}[/]")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
