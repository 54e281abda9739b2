"""Account management commands."""

import sys

import click
from click import argument, echo, option

from ..config import AccountConfig, get_config_path, load_config, save_config

from .utils import AliasGroup, err, get_password, project_root, require_init


@click.group(cls=AliasGroup, aliases={
    'a': 'add',
    'l': 'ls',
    'r': 'rm',
})
def account():
    """Manage IMAP accounts."""
    pass


@account.command("add", no_args_is_help=True)
@require_init
@option('-H', '--host', required=True, help="IMAP host")
@option('-p', '--password', 'password_opt', help="Password (prompts if not provided)")
@option('-P', '--port', type=int, default=993, help="IMAP port (SSL)")
@argument('name')
@argument('user')
def account_add(
    host: str,
    password_opt: str | None,
    port: int,
    name: str,
    user: str,
):
    """Add or update an account.

    \b
    Examples:
      maildex account add work me@example.com -H imap.example.com
      echo "$PASS" | maildex account add gmail me@gmail.com -H imap.gmail.com
      maildex a a home me@example.org -H mail.example.org -P 1993
    """
    password = get_password(password_opt)
    root = project_root()

    config = load_config(root)
    config.accounts[name] = AccountConfig(
        name=name,
        host=host,
        user=user,
        password=password,
        port=port,
    )
    save_config(config, root)
    echo(f"Account '{name}' saved ({user}@{host}) [config.yaml]")


@account.command("ls")
@require_init
def account_ls():
    """List accounts."""
    root = project_root()
    config = load_config(root)
    if not config.accounts:
        echo("No accounts configured.")
        return

    echo(f"Accounts ({get_config_path(root)}):\n")
    for name, acct in sorted(config.accounts.items()):
        port = f":{acct.port}" if acct.port != 993 else ""
        echo(f"  {name:20} {acct.user:30} {acct.host}{port}")


@account.command("rm", no_args_is_help=True)
@require_init
@argument('name')
def account_rm(name: str):
    """Remove an account (archived mail and watermarks are kept)."""
    root = project_root()
    config = load_config(root)
    if name not in config.accounts:
        err(f"Account '{name}' not found.")
        sys.exit(1)
    del config.accounts[name]
    save_config(config, root)
    echo(f"Account '{name}' removed.")
