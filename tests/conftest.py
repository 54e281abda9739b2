"""Shared fixtures and fakes."""

from datetime import date, datetime, timezone
from email.message import EmailMessage
from email.utils import format_datetime

import pytest

from maildex.errors import AuthenticationError, RemoteError
from maildex.imap import FetchedMessage, FolderInfo


def make_message(
    message_id: str | None = "<abc@example.com>",
    subject: str = "Hello",
    body: str = "Hello there",
    from_addr: str = "Alice Example <alice@example.com>",
    to_addr: str = "bob@example.com",
    cc_addr: str | None = None,
    date: datetime | None = None,
    attachments: dict[str, bytes] | None = None,
    html: str | None = None,
) -> bytes:
    """Build raw RFC 822 bytes for a test message."""
    msg = EmailMessage()
    if message_id:
        msg["Message-ID"] = message_id
    msg["From"] = from_addr
    msg["To"] = to_addr
    if cc_addr:
        msg["Cc"] = cc_addr
    msg["Subject"] = subject
    msg["Date"] = format_datetime(date or datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc))
    msg.set_content(body)
    if html:
        msg.add_alternative(html, subtype="html")
    for name, data in (attachments or {}).items():
        msg.add_attachment(data, maintype="application", subtype="octet-stream", filename=name)
    return msg.as_bytes()


def write_eml(path, raw: bytes, mtime: float | None = None):
    """Write a message file, optionally pinning its mtime."""
    import os

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(raw)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


class FakeMailbox:
    """In-memory MailboxClient.

    folders: {name: (uidvalidity, {uid: raw bytes})}
    """

    def __init__(self, folders: dict[str, tuple[int, dict[int, bytes]]] | None = None):
        self.folders = folders or {}
        self.connected = False
        self.connects = 0
        self.selected: str | None = None
        self.fetched: list[tuple[str, int]] = []
        self.searches: list[tuple[str, int, date | None, date | None]] = []
        # Failure injection
        self.fail_connect = 0
        self.fail_fetch: dict[int, int] = {}
        self.fail_select: set[str] = set()
        self.reject_login = False
        self.on_fetch = None

    def factory(self):
        return self

    def connect(self) -> None:
        if self.reject_login:
            raise AuthenticationError("fake", "bad password")
        if self.fail_connect:
            self.fail_connect -= 1
            raise RemoteError("connection refused")
        self.connected = True
        self.connects += 1

    def disconnect(self) -> None:
        self.connected = False
        self.selected = None

    def list_folders(self) -> list[str]:
        assert self.connected
        return list(self.folders)

    def select_folder(self, folder: str) -> FolderInfo:
        assert self.connected
        if folder in self.fail_select:
            raise RemoteError(f"cannot select {folder}")
        uidvalidity, messages = self.folders[folder]
        self.selected = folder
        return FolderInfo(name=folder, exists=len(messages), uidvalidity=uidvalidity)

    def search_uids(self, after_uid=0, since=None, before=None) -> list[int]:
        assert self.connected and self.selected
        self.searches.append((self.selected, after_uid, since, before))
        _, messages = self.folders[self.selected]
        return sorted(u for u in messages if u > after_uid)

    def fetch(self, uid: int) -> FetchedMessage | None:
        assert self.connected and self.selected
        if self.fail_fetch.get(uid):
            self.fail_fetch[uid] -= 1
            raise RemoteError(f"fetch {uid} timed out")
        _, messages = self.folders[self.selected]
        self.fetched.append((self.selected, uid))
        if self.on_fetch:
            self.on_fetch(uid)
        raw = messages.get(uid)
        if raw is None:
            return None
        return FetchedMessage(
            uid=uid,
            raw=raw,
            internal_date=datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc),
        )


@pytest.fixture
def archive(tmp_path):
    root = tmp_path / "archive"
    root.mkdir()
    return root
