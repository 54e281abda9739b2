"""IMAP mailbox access for sync runs."""

import imaplib
import logging
import re
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Protocol

from .errors import AuthenticationError, RemoteError


logger = logging.getLogger(__name__)

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_LIST_RE = re.compile(r'\(([^)]*)\)\s+(?:"([^"]*)"|NIL)\s+"?((?:[^"\\]|\\.)*)"?')


@dataclass
class FolderInfo:
    """Result of selecting a folder."""
    name: str
    exists: int
    uidvalidity: int


@dataclass
class FetchedMessage:
    """A raw message fetched by UID."""
    uid: int
    raw: bytes
    internal_date: datetime | None


class MailboxClient(Protocol):
    """The operations the sync engine needs from a remote mailbox."""

    def connect(self) -> None: ...

    def disconnect(self) -> None: ...

    def list_folders(self) -> list[str]: ...

    def select_folder(self, folder: str) -> FolderInfo: ...

    def search_uids(
        self,
        after_uid: int = 0,
        since: date | None = None,
        before: date | None = None,
    ) -> list[int]: ...

    def fetch(self, uid: int) -> FetchedMessage | None: ...


def imap_date(d: date) -> str:
    """Format a date for IMAP SEARCH (locale independent)."""
    return f"{d.day:02d}-{_MONTHS[d.month - 1]}-{d.year}"


def quote_mailbox(name: str) -> str:
    """Quote a mailbox name for IMAP commands."""
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class IMAPClient:
    """IMAP-over-SSL mailbox client.

    imaplib failures are translated into RemoteError (transient) or
    AuthenticationError (configuration), so callers only deal with maildex
    errors.
    """

    def __init__(
        self,
        host: str,
        user: str,
        password: str,
        port: int = 993,
        timeout: float = 60.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self._password = password
        self.timeout = timeout
        self._conn: imaplib.IMAP4_SSL | None = None

    @property
    def conn(self) -> imaplib.IMAP4_SSL:
        if not self._conn:
            raise RuntimeError("Not connected")
        return self._conn

    def connect(self) -> None:
        try:
            self._conn = imaplib.IMAP4_SSL(self.host, self.port, timeout=self.timeout)
        except OSError as e:
            raise RemoteError(f"Cannot connect to {self.host}:{self.port}: {e}") from e

        try:
            self._conn.login(self.user, self._password)
        except imaplib.IMAP4.abort as e:
            self._conn = None
            raise RemoteError(f"Connection dropped during login: {e}") from e
        except imaplib.IMAP4.error as e:
            self._conn = None
            raise AuthenticationError(self.host, f"Login failed for {self.user}: {e}") from e
        except OSError as e:
            self._conn = None
            raise RemoteError(f"Login to {self.host} failed: {e}") from e
        logger.debug("Connected to %s as %s", self.host, self.user)

    def disconnect(self) -> None:
        if self._conn:
            try:
                self._conn.logout()
            except (imaplib.IMAP4.error, OSError) as e:
                logger.debug("Ignoring logout error: %s", e)
            self._conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args):
        self.disconnect()

    def _command(self, name: str, func, *args):
        """Run an imaplib call, raising RemoteError on transport or NO/BAD."""
        try:
            typ, data = func(*args)
        except (imaplib.IMAP4.error, OSError) as e:
            raise RemoteError(f"{name} failed: {e}") from e
        if typ != "OK":
            raise RemoteError(f"{name} failed: {data}")
        return data

    def list_folders(self) -> list[str]:
        """List selectable folder names."""
        data = self._command("LIST", self.conn.list)
        folders = []
        for item in data:
            if item is None:
                continue
            # Parse: b'(\\HasNoChildren) "/" "INBOX"'
            decoded = item.decode(errors="replace") if isinstance(item, bytes) else str(item)
            match = _LIST_RE.match(decoded)
            if not match:
                logger.debug("Unparseable LIST line: %s", decoded)
                continue
            flags, _delim, name = match.groups()
            if "\\noselect" in flags.lower():
                continue
            folders.append(name.replace('\\"', '"').replace("\\\\", "\\"))
        return folders

    def select_folder(self, folder: str) -> FolderInfo:
        """Select a folder read-only, return its size and UIDVALIDITY."""
        data = self._command(f"SELECT {folder}", self.conn.select, quote_mailbox(folder), True)
        try:
            exists = int(data[0])
        except (TypeError, ValueError, IndexError):
            exists = 0

        _, validity = self.conn.response("UIDVALIDITY")
        try:
            uidvalidity = int(validity[0])
        except (TypeError, ValueError, IndexError) as e:
            raise RemoteError(f"No UIDVALIDITY for {folder}") from e
        return FolderInfo(name=folder, exists=exists, uidvalidity=uidvalidity)

    def search_uids(
        self,
        after_uid: int = 0,
        since: date | None = None,
        before: date | None = None,
    ) -> list[int]:
        """Return UIDs greater than after_uid, optionally within a date range."""
        criteria = [f"UID {after_uid + 1}:*"]
        if since:
            criteria.append(f"SINCE {imap_date(since)}")
        if before:
            criteria.append(f"BEFORE {imap_date(before)}")
        data = self._command("UID SEARCH", self.conn.uid, "SEARCH", None, *criteria)

        # "n:*" always matches the highest UID, even when it is below n
        uids = [int(u) for u in (data[0] or b"").split()]
        return sorted(u for u in uids if u > after_uid)

    def fetch(self, uid: int) -> FetchedMessage | None:
        """Fetch a full message by UID without setting \\Seen.

        Returns None if the server has no message with this UID anymore.
        """
        data = self._command(
            f"UID FETCH {uid}",
            self.conn.uid,
            "FETCH",
            str(uid),
            "(UID INTERNALDATE BODY.PEEK[])",
        )
        for item in data:
            if isinstance(item, tuple) and len(item) >= 2:
                meta, raw = item[0], item[1]
                return FetchedMessage(uid=uid, raw=raw, internal_date=_internal_date(meta))
        return None


def _internal_date(meta: bytes) -> datetime | None:
    parsed = imaplib.Internaldate2tuple(meta)
    if not parsed:
        return None
    return datetime.fromtimestamp(time.mktime(parsed), tz=timezone.utc)
