"""CLI package for maildex.

This package organizes CLI commands into modules:
- account.py: Account management (add, ls, rm)
- sync_cmds.py: Download mail from IMAP
- index_cmds.py: Index and rebuild the search store
- search_cmds.py: Query the search store
- status.py: Index status and statistics
- misc.py: init
- utils.py: Shared utilities and helpers
"""

import click
from click import option
from dotenv import load_dotenv

from .utils import AliasGroup, setup_logging

from .account import account
from .index_cmds import index, rebuild
from .misc import init
from .search_cmds import search
from .status import status
from .sync_cmds import sync


@click.group(cls=AliasGroup, aliases={
    'a': 'account',
    'i': 'index',
    's': 'search',
    'st': 'status',
    'y': 'sync',
})
@option('-v', '--verbose', count=True, help="Log more (-v info, -vv debug)")
def main(verbose: int):
    """Archive IMAP mail locally and search it."""
    load_dotenv()
    setup_logging(verbose)


main.add_command(account)
main.add_command(index)
main.add_command(init)
main.add_command(rebuild)
main.add_command(search)
main.add_command(status)
main.add_command(sync)


__all__ = [
    'main',
    'account',
    'index',
    'init',
    'rebuild',
    'search',
    'status',
    'sync',
]
