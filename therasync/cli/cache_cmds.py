"""CLI commands: stats, inspect, clear."""

from __future__ import annotations

import click
from rich.panel import Panel
from rich.table import Table

from therasync.cli import _run_async, cli, console, get_snapshots
from therasync.keys import key_to_str
from therasync.persistence import key_from_json
from therasync.temporal import ms_to_iso


@cli.command()
@click.option("--db", default=None, help="Database path")
def stats(db) -> None:
    """Summary of the persisted cache snapshot."""
    snapshot = _run_async(get_snapshots(db).load())
    if snapshot is None:
        console.print("[dim]No snapshot stored.[/]")
        return

    tiers: dict[str, int] = {}
    for entry in snapshot.entries:
        tiers[entry.tier] = tiers.get(entry.tier, 0) + 1
    tier_lines = "\n".join(f"  {tier}: {count}" for tier, count in sorted(tiers.items())) or "  (none)"
    last_updated = ms_to_iso(snapshot.last_updated) if snapshot.last_updated else "never"
    filters = ", ".join(f"{k}={v}" for k, v in snapshot.view.filters.items()) or "none"

    console.print(
        Panel(
            f"[bold]Entries:[/] {len(snapshot.entries)}\n"
            f"{tier_lines}\n"
            f"[bold]Saved at:[/] {ms_to_iso(snapshot.saved_at)}\n"
            f"[bold]Last updated:[/] {last_updated}\n"
            f"[bold]Version:[/] {snapshot.buster}\n"
            f"[bold]Filters:[/] {filters}\n"
            f"[bold]Sort:[/] {snapshot.view.sort.field} {snapshot.view.sort.order}",
            title="therasync snapshot",
            border_style="blue",
        )
    )


@cli.command()
@click.option("--db", default=None, help="Database path")
@click.option("--prefix", default=None, help="Only keys under this root (e.g. clients)")
def inspect(db, prefix) -> None:
    """List persisted cache entries."""
    snapshot = _run_async(get_snapshots(db).load())
    if snapshot is None:
        console.print("[dim]No snapshot stored.[/]")
        return

    entries = snapshot.entries
    if prefix:
        entries = [e for e in entries if e.key and str(e.key[0]) == prefix]
    if not entries:
        console.print("[dim]No matching entries.[/]")
        return

    table = Table(title=f"Cached entries ({len(entries)})")
    table.add_column("Key", style="cyan")
    table.add_column("Tier", style="magenta")
    table.add_column("Fetched at")
    table.add_column("Items", justify="right")
    for entry in sorted(entries, key=lambda e: e.fetched_at):
        items = str(len(entry.data)) if isinstance(entry.data, list) else "-"
        table.add_row(
            key_to_str(key_from_json(entry.key)),
            entry.tier,
            ms_to_iso(entry.fetched_at),
            items,
        )
    console.print(table)


@cli.command()
@click.option("--db", default=None, help="Database path")
@click.option("--yes", is_flag=True, help="Skip confirmation")
def clear(db, yes) -> None:
    """Delete the persisted snapshot."""
    if not yes and not click.confirm("Delete the stored cache snapshot?"):
        console.print("[dim]Aborted.[/]")
        return
    removed = _run_async(get_snapshots(db).clear())
    if removed:
        console.print("[green]✓[/] Snapshot deleted")
    else:
        console.print("[dim]No snapshot stored.[/]")
