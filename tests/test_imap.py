"""Tests for the imaplib-backed mailbox client."""

import imaplib
from datetime import date, datetime, timezone

import pytest

from maildex import imap
from maildex.errors import AuthenticationError, RemoteError
from maildex.imap import IMAPClient, imap_date, quote_mailbox


class FakeIMAP4:
    """Stand-in for imaplib.IMAP4_SSL."""

    login_error: Exception | None = None

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.commands = []
        self.logged_out = False

    def login(self, user, password):
        if self.login_error:
            raise self.login_error
        return "OK", [b"Logged in"]

    def logout(self):
        self.logged_out = True
        return "BYE", [b""]

    def list(self):
        return "OK", [
            b'(\\HasNoChildren) "/" "INBOX"',
            b'(\\HasChildren \\Noselect) "/" "[Gmail]"',
            b'(\\HasNoChildren) "/" "[Gmail]/Sent Mail"',
            b'(\\HasNoChildren) "." Archive',
            None,
        ]

    def select(self, mailbox, readonly=False):
        self.commands.append(("SELECT", mailbox, readonly))
        if mailbox == '"Missing"':
            return "NO", [b"Mailbox does not exist"]
        return "OK", [b"42"]

    def response(self, code):
        return code, [b"1700000000"]

    def uid(self, command, *args):
        self.commands.append((command, *args))
        if command == "SEARCH":
            return "OK", [b"5 6 7"]
        if args[0] == "404":
            return "OK", [None]
        return "OK", [
            (b'1 (UID 6 INTERNALDATE "15-Jan-2024 12:00:00 +0000" BODY[] {5}', b"hello"),
            b")",
        ]


@pytest.fixture
def fake_imap(monkeypatch):
    monkeypatch.setattr(imap.imaplib, "IMAP4_SSL", FakeIMAP4)
    FakeIMAP4.login_error = None
    yield FakeIMAP4
    FakeIMAP4.login_error = None


@pytest.fixture
def client(fake_imap):
    c = IMAPClient("imap.example.com", "me", "secret")
    c.connect()
    yield c
    c.disconnect()


class TestHelpers:
    def test_imap_date(self):
        assert imap_date(date(2024, 3, 5)) == "05-Mar-2024"

    def test_quote_mailbox(self):
        assert quote_mailbox("INBOX") == '"INBOX"'
        assert quote_mailbox('a"b\\c') == '"a\\"b\\\\c"'


class TestConnect:
    def test_bad_credentials(self, fake_imap):
        fake_imap.login_error = imaplib.IMAP4.error("AUTHENTICATIONFAILED")
        with pytest.raises(AuthenticationError):
            IMAPClient("imap.example.com", "me", "wrong").connect()

    def test_abort_is_transient(self, fake_imap):
        fake_imap.login_error = imaplib.IMAP4.abort("socket closed")
        with pytest.raises(RemoteError):
            IMAPClient("imap.example.com", "me", "pw").connect()

    def test_unreachable_host(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(imap.imaplib, "IMAP4_SSL", refuse)
        with pytest.raises(RemoteError):
            IMAPClient("imap.example.com", "me", "pw").connect()

    def test_disconnect_logs_out(self, client):
        conn = client.conn
        client.disconnect()
        assert conn.logged_out
        with pytest.raises(RuntimeError):
            client.conn


class TestCommands:
    def test_list_folders(self, client):
        assert client.list_folders() == ["INBOX", "[Gmail]/Sent Mail", "Archive"]

    def test_select_folder(self, client):
        info = client.select_folder("INBOX")
        assert info.exists == 42
        assert info.uidvalidity == 1700000000
        assert client.conn.commands[-1] == ("SELECT", '"INBOX"', True)

    def test_select_missing(self, client):
        with pytest.raises(RemoteError):
            client.select_folder("Missing")

    def test_search_filters_below_cursor(self, client):
        assert client.search_uids(6) == [7]
        assert client.conn.commands[-1] == ("SEARCH", None, "UID 7:*")

    def test_search_with_dates(self, client):
        client.search_uids(0, since=date(2024, 1, 1), before=date(2024, 2, 1))
        assert client.conn.commands[-1] == (
            "SEARCH", None, "UID 1:*", "SINCE 01-Jan-2024", "BEFORE 01-Feb-2024",
        )

    def test_fetch(self, client):
        msg = client.fetch(6)
        assert msg.uid == 6
        assert msg.raw == b"hello"
        assert msg.internal_date == datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
        assert "BODY.PEEK[]" in client.conn.commands[-1][-1]

    def test_fetch_missing(self, client):
        assert client.fetch(404) is None
