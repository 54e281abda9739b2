"""Query execution, pagination, and snippets."""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence

from .index import SearchDatabase
from .query import SearchQuery, parse_query


logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 200
CONTEXT_PADDING = 50
ELLIPSIS = "..."


@dataclass
class SearchResult:
    """One matching index record."""
    id: int
    message_id: str
    file_path: str
    subject: str
    from_address: str
    from_name: str
    to_addresses: list[str]
    date_sent: datetime | None
    date_received: datetime | None
    account: str | None
    folder: str | None
    has_attachments: bool
    attachment_names: list[str]
    snippet: str | None = None
    rank: float | None = None


@dataclass
class SearchResultSet:
    """A page of results plus the total match count."""
    results: list[SearchResult] = field(default_factory=list)
    total_count: int = 0
    offset: int = 0
    limit: int = 0
    elapsed: float = 0.0

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.results) < self.total_count


def fts_query(terms: Sequence[str]) -> str:
    """Build an FTS5 MATCH expression from free-text terms.

    Each term is quoted (internal quotes doubled) so FTS syntax in user input
    is taken literally; terms are ANDed. A trailing * makes a prefix term.
    """
    parts = []
    for term in terms:
        prefix = term.endswith("*")
        term = term.rstrip("*")
        if not term:
            continue
        quoted = '"' + term.replace('"', '""') + '"'
        parts.append(quoted + "*" if prefix else quoted)
    return " ".join(parts)


def _like_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _contains(value: str) -> str:
    return f"%{_like_escape(value)}%"


def _wildcard(value: str) -> str:
    return _like_escape(value).replace("*", "%")


def build_filter(query: SearchQuery) -> tuple[str, str, list]:
    """Return (FROM clause, WHERE clause, params) shared by the page and count queries."""
    source = "emails e"
    clauses: list[str] = []
    params: list = []

    match = fts_query(query.terms)
    if match:
        source = "emails_fts JOIN emails e ON e.id = emails_fts.rowid"
        clauses.append("emails_fts MATCH ?")
        params.append(match)

    if query.from_address:
        if "*" in query.from_address:
            clauses.append("e.from_address LIKE ? ESCAPE '\\'")
            params.append(_wildcard(query.from_address))
        else:
            clauses.append("(e.from_address LIKE ? ESCAPE '\\' OR e.from_name LIKE ? ESCAPE '\\')")
            params.extend([_contains(query.from_address)] * 2)

    if query.to_address:
        pattern = _wildcard(query.to_address) if "*" in query.to_address else _contains(query.to_address)
        clauses.append("(e.to_addresses LIKE ? ESCAPE '\\' OR e.cc_addresses LIKE ? ESCAPE '\\')")
        params.extend([pattern, pattern])

    if query.subject:
        clauses.append("e.subject LIKE ? ESCAPE '\\'")
        params.append(_contains(query.subject))

    if query.account:
        clauses.append("e.account = ? COLLATE NOCASE")
        params.append(query.account)

    if query.folder:
        clauses.append("e.folder = ? COLLATE NOCASE")
        params.append(query.folder)

    if query.date_from:
        clauses.append("e.date_sent_unix >= ?")
        params.append(int(query.date_from.timestamp()))

    if query.date_to:
        clauses.append("e.date_sent_unix < ?")
        params.append(int(query.date_to.timestamp()))

    where = " AND ".join(clauses) if clauses else "1=1"
    return source, where, params


class SearchEngine:
    """Runs parsed queries against a SearchDatabase."""

    def __init__(self, db: SearchDatabase):
        self.db = db

    def search(self, text: str, limit: int = 50, offset: int = 0) -> SearchResultSet:
        """Parse and run a query string. A blank query matches nothing."""
        return self.search_query(parse_query(text), limit=limit, offset=offset)

    def search_query(self, query: SearchQuery, limit: int = 50, offset: int = 0) -> SearchResultSet:
        start = time.monotonic()
        limit = max(limit, 1)
        offset = max(offset, 0)
        terms = query.terms
        match = fts_query(terms)
        # Free text made only of wildcards leaves nothing to match on
        if not match and not query.has_filters():
            return SearchResultSet(offset=offset, limit=limit)

        source, where, params = build_filter(query)
        if match:
            score = "bm25(emails_fts)"
            order = "score, e.date_sent_unix DESC, e.id DESC"
        else:
            score = "NULL"
            order = "e.date_sent_unix DESC, e.id DESC"

        rows = self.db.conn.execute(
            f"SELECT e.*, {score} AS score FROM {source} WHERE {where} "
            f"ORDER BY {order} LIMIT ? OFFSET ?",
            [*params, limit, offset],
        ).fetchall()
        total = self.db.conn.execute(
            f"SELECT COUNT(*) FROM {source} WHERE {where}", params
        ).fetchone()[0]

        results = [self._row_to_result(row, terms) for row in rows]
        elapsed = time.monotonic() - start
        logger.debug("Query %r: %d of %d in %.3fs", query, len(results), total, elapsed)
        return SearchResultSet(
            results=results,
            total_count=total,
            offset=offset,
            limit=limit,
            elapsed=elapsed,
        )

    def _row_to_result(self, row, terms: Sequence[str]) -> SearchResult:
        body = row["body_text"] if terms and row["body_text"] else row["body_preview"]
        return SearchResult(
            id=row["id"],
            message_id=row["message_id"],
            file_path=row["file_path"],
            subject=row["subject"] or "",
            from_address=row["from_address"] or "",
            from_name=row["from_name"] or "",
            to_addresses=json.loads(row["to_addresses"] or "[]"),
            date_sent=_from_unix(row["date_sent_unix"]),
            date_received=_from_unix(row["date_received_unix"]),
            account=row["account"],
            folder=row["folder"],
            has_attachments=bool(row["has_attachments"]),
            attachment_names=json.loads(row["attachment_names"] or "[]"),
            snippet=generate_snippet(body, terms),
            rank=row["score"],
        )


def _from_unix(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None


def generate_snippet(body: str | None, terms: Sequence[str] = ()) -> str | None:
    """Excerpt of body around the first occurrence of any term.

    The window starts CONTEXT_PADDING characters before the match, spans
    SNIPPET_LENGTH characters, and is widened to whole words. Ellipses mark
    clipped ends. Without a match, the body prefix is used. Returns None for
    an empty or missing body.
    """
    if not body or not body.strip():
        return None

    lower = body.lower()
    first = -1
    for term in terms:
        needle = term.strip('"*').lower()
        if not needle:
            continue
        idx = lower.find(needle)
        if idx >= 0 and (first < 0 or idx < first):
            first = idx

    if first < 0:
        return truncate(body, SNIPPET_LENGTH)

    start = max(0, first - CONTEXT_PADDING)
    end = min(len(body), start + SNIPPET_LENGTH)

    if start > 0:
        space = body.rfind(" ", 0, start)
        start = space + 1 if space >= 0 else 0
    if end < len(body):
        space = body.find(" ", end)
        end = space if space >= 0 else len(body)

    snippet = body[start:end].strip()
    if start > 0:
        snippet = ELLIPSIS + snippet
    if end < len(body):
        snippet = snippet + ELLIPSIS
    return snippet


def truncate(text: str, length: int = SNIPPET_LENGTH) -> str:
    """Cut text to length, preferring a word boundary in the second half."""
    text = text.strip()
    if len(text) <= length:
        return text
    cut = text[:length]
    space = cut.rfind(" ")
    if space > length // 2:
        cut = cut[:space]
    return cut.rstrip() + ELLIPSIS
