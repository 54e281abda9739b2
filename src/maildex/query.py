"""Field-prefixed query language.

    from:alice@example.com subject:"weekly report" budget
    date:2024-01-01..2024-01-31 folder:INBOX after:2023-06-01

Prefix keywords are case-insensitive; values keep their case. Quoted values
may contain spaces. Anything not consumed by a field is free text.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


_TOKEN_RE = re.compile(
    r'(?<!\S)(?P<key>from|to|subject|account|folder|date|after|before):'
    r'(?:"(?P<quoted>[^"]*)"|(?P<bare>\S+))',
    re.IGNORECASE,
)
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TERM_RE = re.compile(r'"([^"]+)"|(\S+)')

TEXT_FIELDS = ("from", "to", "subject", "account", "folder")


@dataclass
class SearchQuery:
    """Structured filter plus free text.

    Date bounds are UTC; date_from is inclusive and date_to exclusive.
    """
    from_address: str | None = None
    to_address: str | None = None
    subject: str | None = None
    account: str | None = None
    folder: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    free_text: str | None = None

    @property
    def terms(self) -> list[str]:
        """Free-text terms; a quoted phrase counts as one term."""
        if not self.free_text:
            return []
        return [quoted or bare for quoted, bare in _TERM_RE.findall(self.free_text)]

    def has_filters(self) -> bool:
        return any((
            self.from_address, self.to_address, self.subject, self.account,
            self.folder, self.date_from, self.date_to,
        ))

    def is_empty(self) -> bool:
        return not self.has_filters() and not self.free_text


def parse_day(value: str) -> datetime | None:
    """Parse YYYY-MM-DD as midnight UTC, or None if malformed."""
    if not _DATE_RE.match(value):
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_date_filter(key: str, value: str) -> tuple[datetime | None, datetime | None] | None:
    """Return the (from, to) bounds a date token sets, or None if malformed.

    A bound left as None is not touched by the token.
    """
    day = timedelta(days=1)
    if key == "date":
        if ".." in value:
            start_s, _, end_s = value.partition("..")
            start, end = parse_day(start_s), parse_day(end_s)
            if not start or not end or end < start:
                return None
            return start, end + day
        start = parse_day(value)
        return (start, start + day) if start else None

    parsed = parse_day(value)
    if not parsed:
        return None
    if key == "after":
        return parsed, None
    return None, parsed


def parse_query(text: str | None) -> SearchQuery:
    """Parse a query string into a SearchQuery.

    Malformed date values are not errors: the whole token is left in the
    free text. A repeated field keeps its last value.
    """
    query = SearchQuery()
    if not text:
        return query

    leftovers: list[str] = []
    pos = 0
    for match in _TOKEN_RE.finditer(text):
        key = match.group("key").lower()
        quoted = match.group("quoted")
        value = quoted if quoted is not None else match.group("bare")

        if key in TEXT_FIELDS:
            value = value.strip()
            if value:
                attr = {"from": "from_address", "to": "to_address"}.get(key, key)
                setattr(query, attr, value)
        else:
            bounds = _parse_date_filter(key, value)
            if bounds is None:
                continue  # left in place, becomes free text
            start, end = bounds
            if start is not None:
                query.date_from = start
            if end is not None:
                query.date_to = end

        leftovers.append(text[pos:match.start()])
        pos = match.end()
    leftovers.append(text[pos:])

    free = " ".join(" ".join(leftovers).split())
    query.free_text = free or None
    return query
