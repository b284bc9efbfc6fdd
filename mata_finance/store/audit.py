"""
Activity log audit command.

Re-verifies the activity hash chain outside the API process and, with
``--verbose``, lists the newest entries. Exits non-zero when the chain
is broken.

Usage:
    mata-finance-audit
    mata-finance-audit --database-url postgresql+psycopg2://... --verbose
"""

from __future__ import annotations

import argparse
import sys

from rich.console import Console
from rich.table import Table

from mata_finance.config import settings
from mata_finance.store.activity import ActivityLog
from mata_finance.store.database import Database
from mata_finance.store.models import ActivityLogDB

console = Console()


def entries_table(entries: list[ActivityLogDB]) -> Table:
    """One row per entry, oldest first; entity and hash shortened."""
    table = Table(title="Recent activity")
    for column in ("Seq", "Action", "Role", "Entity", "Hash", "At"):
        table.add_column(column)
    for entry in sorted(entries, key=lambda e: e.sequence_number):
        table.add_row(
            str(entry.sequence_number),
            entry.action,
            entry.actor_role,
            str(entry.entity_id)[:8] if entry.entity_id else "-",
            entry.entry_hash[:12],
            f"{entry.timestamp:%Y-%m-%d %H:%M}",
        )
    return table


def run_audit(database_url: str, verbose: bool = False, limit: int = 50) -> bool:
    """Verify the chain behind ``database_url``; returns whether it is intact."""
    database = Database(database_url)
    try:
        activity_log = ActivityLog(database)
        is_valid, verified, message = activity_log.verify_chain()
        if is_valid:
            console.print(f"[green]activity chain intact[/green] ({verified} entries)")
        else:
            console.print(f"[red]activity chain broken[/red] at entry {verified}: {message}")
        if verbose:
            console.print(entries_table(activity_log.get_latest_entries(limit=limit)))
        return is_valid
    finally:
        database.dispose()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Verify the Mata Finance activity log")
    parser.add_argument("--database-url", help="defaults to the configured store")
    parser.add_argument("--verbose", "-v", action="store_true", help="list recent entries")
    parser.add_argument("--limit", type=int, default=50)
    args = parser.parse_args(argv)

    is_valid = run_audit(
        args.database_url or settings.database_url_sync, verbose=args.verbose, limit=args.limit
    )
    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
