"""Sync command: download new mail from IMAP into the archive."""

import sys

import click
from click import argument, echo, option, style
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from ..config import MAILDEX_DIR, get_account, get_failures_path, get_sync_state_path, load_config
from ..imap import IMAPClient
from ..lock import RunLock
from ..models import RunStatus
from ..resilience import CircuitBreaker, RetryConfig
from ..storage import MaildirStore
from ..sync import SyncEngine, SyncOptions
from ..sync_state import FailureLedger, YamlSyncStateStore

from .utils import cancel_on_interrupt, handle_errors, project_root, require_init


@click.command(no_args_is_help=True)
@require_init
@handle_errors
@option('-a', '--all-folders', is_flag=True, help="Sync every selectable folder")
@option('-b', '--batch', 'batch_size', type=int, help="Messages per checkpoint (default from config, 50)")
@option('-e', '--end-date', type=click.DateTime(formats=["%Y-%m-%d"]), help="Only messages before or on this date")
@option('-f', '--folder', 'folders', multiple=True, help="Folder to sync (repeatable, default INBOX)")
@option('-F', '--full', is_flag=True, help="Forget watermarks and re-check every message")
@option('-l', '--limit', type=int, help="Max messages to process")
@option('-s', '--start-date', type=click.DateTime(formats=["%Y-%m-%d"]), help="Only messages on or after this date")
@argument('account')
def sync(
    all_folders: bool,
    batch_size: int | None,
    end_date,
    folders: tuple[str, ...],
    full: bool,
    limit: int | None,
    start_date,
    account: str,
):
    """Download new messages from an IMAP account.

    \b
    Examples:
      maildex sync work                     # INBOX only
      maildex sync work -a                  # every folder
      maildex sync work -f Sent -f Archive  # specific folders
      maildex sync work -s 2024-01-01 -e 2024-03-31

    Only messages newer than each folder's watermark are fetched. Messages
    already in a folder are skipped. Date-bounded runs leave watermarks alone.
    """
    root = project_root()
    acct = get_account(account, root)
    settings = load_config(root).sync

    state = YamlSyncStateStore(get_sync_state_path(account, root))
    if full:
        state.clear()
        echo("Watermarks cleared, checking all messages")

    engine = SyncEngine(
        client_factory=lambda: IMAPClient(acct.host, acct.user, acct.password, acct.port),
        store=MaildirStore(root, account),
        state=state,
        retry=RetryConfig(
            max_attempts=settings.max_attempts,
            initial_delay=settings.initial_delay,
            max_delay=settings.max_delay,
        ),
        breaker=CircuitBreaker(
            failure_threshold=settings.failure_threshold,
            cooldown=settings.cooldown,
        ),
        failures=lambda folder: FailureLedger(get_failures_path(account, folder, root)),
    )
    options = SyncOptions(
        folders=list(folders) or None,
        all_folders=all_folders,
        start_date=start_date.date() if start_date else None,
        end_date=end_date.date() if end_date else None,
        batch_size=batch_size or settings.batch_size,
        limit=limit,
    )

    echo(f"Account: {account} ({acct.user}@{acct.host})")
    echo(f"Folders: {'all' if all_folders else ', '.join(options.folders or ['INBOX'])}")
    echo()

    console = Console()
    with RunLock(root / MAILDEX_DIR, "sync"), cancel_on_interrupt() as cancel:
        with Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TextColumn("{task.completed}/{task.total}"),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Connecting", total=None)

            def on_progress(folder: str, done: int, total: int):
                progress.update(task, description=folder, completed=done, total=total)

            result = engine.run(options, cancel=cancel, progress=on_progress)

    echo(f"Downloaded: {result.downloaded:,}")
    echo(f"Skipped:    {result.skipped:,}")
    if result.errors:
        echo(style(f"Errors:     {result.errors:,}", fg="red"))
    for folder, error in result.folder_errors.items():
        echo(style(f"Folder {folder} skipped: {error}", fg="red"))
    echo(f"Elapsed:    {result.elapsed:.1f}s")

    if result.status is RunStatus.CANCELLED:
        echo(style("Cancelled; progress up to the last checkpoint is saved.", fg="yellow"))
        sys.exit(130)
    if result.status is RunStatus.FAILED:
        echo(style(f"Sync failed: {result.error}", fg="red"))
        sys.exit(1)
