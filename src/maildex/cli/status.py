"""Status command."""

import sys

import click
import humanize
from click import echo, option, style
from rich.console import Console
from rich.table import Table

from ..config import find_root, get_sync_state_path, load_config
from ..index import read_status
from ..sync_state import YamlSyncStateStore

from .utils import database_path, db_option, handle_errors


@click.command()
@handle_errors
@db_option
@option('-c', '--check', is_flag=True, help="Run the full integrity check (slow on large indexes)")
@option('-w', '--watermarks', is_flag=True, help="Show per-folder sync watermarks")
def status(db_path: str | None, check: bool, watermarks: bool):
    """Show index size, freshness, health and archive breakdown.

    Opens the index read-only; safe to run while an index is in progress.
    """
    path = database_path(db_path)
    st = read_status(path, thorough=check)

    echo(f"Index:            {path}")
    if not st.exists:
        echo(style("No index yet. Run 'maildex index' to build it.", fg="yellow"))
        return

    echo(f"Size:             {humanize.naturalsize(st.database_size)}")
    if not st.healthy:
        echo(style("Health:           CORRUPT (run 'maildex rebuild')", fg="red"))
        sys.exit(1)
    echo(style("Health:           ok", fg="green"))
    echo(f"Total emails:     {st.total_emails:,}")
    if st.last_indexed:
        echo(f"Last indexed:     {st.last_indexed.astimezone():%Y-%m-%d %H:%M:%S} "
             f"({humanize.naturaltime(st.last_indexed.astimezone().replace(tzinfo=None))})")
    else:
        echo("Last indexed:     never")

    stats = st.statistics
    if stats:
        echo(f"Unique messages:  {stats['unique_messages']:,}")
        echo(f"Unique senders:   {stats['unique_senders']:,}")
        echo(f"With attachments: {stats['with_attachments']:,}")
        if stats['oldest']:
            echo(f"Date range:       {stats['oldest']:%Y-%m-%d} to {stats['newest']:%Y-%m-%d}")

        table = Table(title="By account / folder")
        table.add_column("Account")
        table.add_column("Emails", justify="right")
        for acct, n in stats['accounts'].items():
            table.add_row(acct or "(none)", f"{n:,}")
        for folder, n in stats['folders'].items():
            table.add_row(f"  {folder or '(none)'}", f"{n:,}")
        Console().print(table)

    root = find_root()
    if watermarks and root:
        config = load_config(root)
        echo()
        echo("Sync watermarks:")
        for name in sorted(config.accounts):
            store = YamlSyncStateStore(get_sync_state_path(name, root))
            for folder in store.folders():
                wm = store.get(folder)
                echo(f"  {name}/{folder}: UID {wm.last_uid:,} (UIDVALIDITY {wm.uidvalidity})")
