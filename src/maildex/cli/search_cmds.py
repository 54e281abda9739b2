"""Search command."""

import csv
import json
import sys

import click
from click import argument, echo, option
from rich.console import Console
from rich.table import Table
from rich.text import Text

from ..index import SearchDatabase
from ..query import parse_query
from ..search import SearchEngine, SearchResult

from .utils import database_path, db_option, err, handle_errors


def _result_dict(r: SearchResult) -> dict:
    return {
        "message_id": r.message_id,
        "file_path": r.file_path,
        "subject": r.subject,
        "from": r.from_address,
        "from_name": r.from_name,
        "to": r.to_addresses,
        "date": r.date_sent.isoformat() if r.date_sent else None,
        "account": r.account,
        "folder": r.folder,
        "has_attachments": r.has_attachments,
        "snippet": r.snippet,
    }


@click.command(no_args_is_help=True)
@handle_errors
@db_option
@option('-f', '--format', 'fmt', type=click.Choice(['table', 'json', 'csv']), default='table', help="Output format")
@option('-l', '--limit', type=click.IntRange(min=1), default=20, help="Results per page")
@option('-o', '--offset', type=click.IntRange(min=0), default=0, help="Skip this many results")
@argument('query', nargs=-1, required=True)
def search(db_path: str | None, fmt: str, limit: int, offset: int, query: tuple[str, ...]):
    """Search the archive.

    \b
    Query syntax:
      from:alice@example.com   sender address or name (* wildcard)
      to:bob                   recipient (To or Cc)
      subject:"weekly report"  subject contains
      account:work folder:INBOX
      date:2024-01-15          that day
      date:2024-01-01..2024-01-31
      after:2024-01-01 before:2024-02-01
      anything else            full-text terms (term* for prefix)

    \b
    Examples:
      maildex search budget from:alice
      maildex search 'subject:"weekly report" after:2024-01-01' -f json
    """
    text = " ".join(query)
    path = database_path(db_path)
    if not path.exists():
        err("No search index. Run 'maildex index' first.")
        sys.exit(1)

    with SearchDatabase(path, readonly=True) as db:
        results = SearchEngine(db).search(text, limit=limit, offset=offset)

    if fmt == 'json':
        echo(json.dumps({
            "total": results.total_count,
            "offset": results.offset,
            "limit": results.limit,
            "has_more": results.has_more,
            "elapsed": round(results.elapsed, 4),
            "results": [_result_dict(r) for r in results.results],
        }, indent=2))
        return

    if fmt == 'csv':
        writer = csv.writer(sys.stdout)
        writer.writerow(["date", "from", "subject", "account", "folder", "file_path"])
        for r in results.results:
            writer.writerow([
                r.date_sent.strftime("%Y-%m-%d %H:%M") if r.date_sent else "",
                r.from_address,
                r.subject,
                r.account or "",
                r.folder or "",
                r.file_path,
            ])
        return

    if not results.results:
        echo(f"No results ({results.total_count:,} matches)")
        return

    terms = [t.strip('"*') for t in parse_query(text).terms]
    table = Table(show_lines=True)
    table.add_column("Date", no_wrap=True)
    table.add_column("From")
    table.add_column("Subject / snippet")
    table.add_column("Folder", no_wrap=True)
    for r in results.results:
        body = Text(r.subject or "(no subject)", style="bold")
        if r.snippet:
            snippet = Text(r.snippet, style="dim")
            snippet.highlight_words([t for t in terms if t], style="bold yellow", case_sensitive=False)
            body.append("\n")
            body.append_text(snippet)
        table.add_row(
            r.date_sent.strftime("%Y-%m-%d") if r.date_sent else "?",
            r.from_name or r.from_address,
            body,
            f"{r.account}/{r.folder}" if r.account else (r.folder or ""),
        )

    console = Console()
    console.print(table)
    end = results.offset + len(results.results)
    more = f" (next page: -o {end})" if results.has_more else ""
    echo(f"Showing {results.offset + 1:,}-{end:,} of {results.total_count:,} in {results.elapsed * 1000:.0f}ms{more}")
