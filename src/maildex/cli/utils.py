"""Shared CLI utilities and helpers."""

import logging
import signal
import sys
import threading
from contextlib import contextmanager
from functools import wraps
from pathlib import Path

import click
from click import prompt
from rich.console import Console
from rich.logging import RichHandler

from ..config import MAILDEX_DIR, find_root, resolve_database_path
from ..errors import MaildexError


def err(*args, **kwargs):
    """Print to stderr."""
    print(*args, file=sys.stderr, **kwargs)


def setup_logging(verbose: int = 0) -> None:
    """Route library logging through rich, on stderr."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG

    logger = logging.getLogger("maildex")
    logger.setLevel(level)
    logger.handlers.clear()
    handler = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    logger.addHandler(handler)
    logger.propagate = False


def get_password(password_opt: str | None) -> str:
    """Get password from option, stdin (if piped), or prompt."""
    if password_opt:
        return password_opt
    elif not sys.stdin.isatty():
        return sys.stdin.readline().rstrip("\n")
    else:
        return prompt("Password", hide_input=True)


def project_root() -> Path:
    root = find_root()
    if not root:
        raise click.ClickException("Not in a maildex project. Run 'maildex init' first.")
    return root


def database_path(db_opt: str | None) -> Path:
    """Search store for this invocation (--db, env, config, or project default)."""
    if db_opt:
        return resolve_database_path(db_opt)
    return resolve_database_path(root=project_root())


def lock_dir(db_path: Path) -> Path:
    """Where run locks live: the project control dir, else beside the store."""
    root = find_root()
    return root / MAILDEX_DIR if root else db_path.parent


# =============================================================================
# Decorators and Click helpers
# =============================================================================


def require_init(f):
    """Decorator that requires .maildex directory to exist."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        if not find_root():
            err("Not in a maildex project. Run 'maildex init' first.")
            sys.exit(1)
        return f(*args, **kwargs)
    return wrapper


def handle_errors(f):
    """Turn maildex errors into a message on stderr and exit status 1."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except MaildexError as e:
            err(click.style(f"Error: {e}", fg="red"))
            sys.exit(1)
    return wrapper


@contextmanager
def cancel_on_interrupt():
    """Yield an Event that Ctrl-C sets, so runs stop at the next boundary."""
    cancel = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    def handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        err("\nStopping after the current message (Ctrl-C again to abort)...")
        cancel.set()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


# Shared options
db_option = click.option('-d', '--db', 'db_path', help="Search index path (default: .maildex/search.db)")


class AliasGroup(click.Group):
    """Click Group that supports command aliases."""

    def __init__(self, *args, aliases: dict[str, str] | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.aliases = aliases or {}
        self._cmd_aliases: dict[str, list[str]] = {}
        for alias, cmd in self.aliases.items():
            self._cmd_aliases.setdefault(cmd, []).append(alias)

    def get_command(self, ctx, cmd_name):
        cmd_name = self.aliases.get(cmd_name, cmd_name)
        return super().get_command(ctx, cmd_name)

    def resolve_command(self, ctx, args):
        _, cmd_name, args = super().resolve_command(ctx, args)
        cmd_name = self.aliases.get(cmd_name, cmd_name)
        return _, cmd_name, args

    def format_commands(self, ctx, formatter):
        """Write all commands with their aliases to the formatter."""
        commands = []
        for subcommand in self.list_commands(ctx):
            cmd = self.get_command(ctx, subcommand)
            if cmd is None or cmd.hidden:
                continue
            aliases = self._cmd_aliases.get(subcommand, [])
            if aliases:
                name = f"{subcommand} ({', '.join(sorted(aliases))})"
            else:
                name = subcommand
            help_text = cmd.get_short_help_str(limit=formatter.width)
            commands.append((name, help_text))

        if commands:
            with formatter.section("Commands"):
                formatter.write_dl(commands)
