"""Project initialization."""

from pathlib import Path

import click
from click import echo

from ..config import FAILURES_DIR, MAILDEX_DIR, SYNC_STATE_DIR, MaildexConfig, save_config


@click.command()
def init():
    """Initialize a maildex archive in the current directory.

    \b
    Creates:
      .maildex/config.yaml     accounts and sync settings
      .maildex/sync-state/     per-account folder watermarks
      .maildex/failures/       UIDs that failed to download

    Messages are archived under <account>/<folder>/cur/ beside .maildex/.
    """
    root = Path.cwd()
    control_dir = root / MAILDEX_DIR
    config_path = control_dir / "config.yaml"

    if config_path.exists():
        echo(f"Already initialized: {control_dir}")
        return

    control_dir.mkdir(parents=True, exist_ok=True)
    (control_dir / SYNC_STATE_DIR).mkdir(exist_ok=True)
    (control_dir / FAILURES_DIR).mkdir(exist_ok=True)
    save_config(MaildexConfig(), root)

    echo(f"Initialized maildex archive: {root}")
    echo("  Add an account: maildex account add <name> <user> -H <host>")
