"""
therasync CLI — Package init.

Re-exports the main CLI group and shared utilities.
"""

from __future__ import annotations

import asyncio
import logging

import click
from rich.console import Console
from rich.logging import RichHandler

from therasync import __version__, config
from therasync.persistence import SnapshotStore

console = Console()


def get_snapshots(db: str | None = None) -> SnapshotStore:
    """Create a snapshot store for *db* (default: ``THERASYNC_DB``)."""
    return SnapshotStore(db or config.DB_PATH)


def _run_async(coro):
    """Helper to run async coroutines from sync CLI."""
    return asyncio.run(coro)


# ─── Main Group ──────────────────────────────────────────────────

@click.group()
@click.version_option(__version__, prog_name="therasync")
@click.option("--verbose", "-v", is_flag=True, help="Log to the console")
def cli(verbose: bool) -> None:
    """therasync — offline cache inspector for the therapy practice client."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )


# ─── Register all sub-modules ───────────────────────────────────
from therasync.cli import cache_cmds  # noqa: E402, F401


if __name__ == "__main__":
    cli()
