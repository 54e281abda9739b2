"""Index and rebuild commands."""

import sys
from pathlib import Path

import click
from click import echo, option, style
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from ..config import find_root
from ..errors import ConfigurationError
from ..index import IndexManager, IndexResult, SearchDatabase
from ..lock import RunLock
from ..models import RunStatus
from ..scanner import count

from .utils import cancel_on_interrupt, database_path, db_option, handle_errors, lock_dir


def _archive_path(path: str | None) -> Path:
    if path:
        archive = Path(path).expanduser()
    else:
        root = find_root()
        if not root:
            raise ConfigurationError("No archive path given and not in a maildex project.")
        archive = root
    if not archive.is_dir():
        raise ConfigurationError(f"Archive path does not exist: {archive}")
    return archive.resolve()


def _run(db: SearchDatabase, archive: Path, include_body: bool, full: bool) -> IndexResult:
    """Index with a progress bar. Ctrl-C stops at the next file."""
    total = count(archive)
    console = Console()
    with RunLock(lock_dir(db.db_path), "index"), cancel_on_interrupt() as cancel:
        with Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]Indexing"),
            BarColumn(),
            TaskProgressColumn(),
            TextColumn("{task.completed}/{task.total}"),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("index", total=total)

            def progress_cb(done: int):
                progress.update(task, completed=done)

            manager = IndexManager(db)
            if full:
                return manager.rebuild(archive, include_body=include_body, cancel=cancel, progress=progress_cb)
            db.connect()
            return manager.index(archive, include_body=include_body, cancel=cancel, progress=progress_cb)


def _report(result: IndexResult) -> None:
    echo()
    echo(f"Indexed:  {result.indexed:,}")
    echo(f"Skipped:  {result.skipped:,}")
    if result.removed:
        echo(f"Removed:  {result.removed:,}")
    if result.errors:
        echo(style(f"Errors:   {result.errors:,}", fg="red"))
    echo(f"Elapsed:  {result.elapsed:.1f}s")

    if result.status is RunStatus.CANCELLED:
        echo(style("Cancelled; committed batches are kept.", fg="yellow"))
        sys.exit(130)
    if result.status is RunStatus.FAILED:
        echo(style("Indexing failed; run 'maildex rebuild' if the index is damaged.", fg="red"))
        sys.exit(1)


@click.command()
@handle_errors
@option('-c', '--content', 'include_body', is_flag=True, help="Index full body text for full-text search")
@db_option
@option('-F', '--full', is_flag=True, help="Drop the index and re-parse every file")
@click.argument('path', required=False)
def index(include_body: bool, db_path: str | None, full: bool, path: str | None):
    """Index new and changed messages in the archive.

    \b
    Examples:
      maildex index                 # incremental (only changed files)
      maildex index -c              # include body text
      maildex index -F              # full rebuild
      maildex index ~/mail -d ~/mail.db

    Files whose modification time matches the index are skipped without
    being read, so re-running on an unchanged archive does no work.
    """
    archive = _archive_path(path)
    db = SearchDatabase(database_path(db_path))
    try:
        echo(f"Archive: {archive}")
        echo(f"Index:   {db.db_path}")
        result = _run(db, archive, include_body, full)
    finally:
        db.disconnect()
    _report(result)


@click.command()
@handle_errors
@option('-c', '--content', 'include_body', is_flag=True, help="Index full body text for full-text search")
@db_option
@click.argument('path', required=False)
def rebuild(include_body: bool, db_path: str | None, path: str | None):
    """Drop and rebuild the search index from the archive.

    Use this to recover from corruption or after a schema change; it also
    works when the index file is unreadable.
    """
    archive = _archive_path(path)
    db = SearchDatabase(database_path(db_path))
    try:
        echo(f"Rebuilding {db.db_path} from {archive}")
        result = _run(db, archive, include_body, full=True)
    finally:
        db.disconnect()
    _report(result)
