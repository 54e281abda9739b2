"""Tests for query execution, pagination and snippets."""

from datetime import datetime, timezone

import pytest

from maildex.index import IndexManager, SearchDatabase
from maildex.models import ContentId, EmailDocument, LocationId
from maildex.query import parse_query
from maildex.search import (
    SearchEngine,
    build_filter,
    fts_query,
    generate_snippet,
    truncate,
)

from conftest import make_message, write_eml


def day(d, hour=12):
    return datetime(2024, 1, d, hour, tzinfo=timezone.utc)


MESSAGES = [
    # name, folder, from, to, subject, body, date
    ("m1", "INBOX", "Alice Smith <alice@example.com>", "bob@example.com", "Budget review", "The budget for Q3 is attached.", day(5)),
    ("m2", "INBOX", "carol@example.com", "bob@example.com", "Lunch", "Lunch on Friday?", day(10)),
    ("m3", "Sent", "bob@example.com", "alice@example.com", "Re: Budget review", "Budget looks fine to me.", day(15)),
    ("m4", "INBOX", "dave_x@example.org", "team@example.com", "100% done", "Project finished.", day(20)),
    ("m5", "INBOX", "alice@example.com", "bob@example.com", "Budgeting tips", "Spreadsheets help.", day(25)),
]


@pytest.fixture
def engine(tmp_path):
    archive = tmp_path / "archive"
    for name, folder, frm, to, subject, body, date in MESSAGES:
        write_eml(
            archive / "work" / folder / "cur" / f"{name}.eml",
            make_message(f"<{name}@x>", subject=subject, body=body, from_addr=frm, to_addr=to, date=date),
        )
    db = SearchDatabase(tmp_path / "search.db")
    db.connect()
    IndexManager(db).index(archive, include_body=True)
    yield SearchEngine(db)
    db.disconnect()


def ids(results):
    return [r.message_id for r in results.results]


class TestFieldFilters:
    def test_from_address(self, engine):
        assert set(ids(engine.search("from:alice@example.com"))) == {"m1@x", "m5@x"}

    def test_from_matches_display_name(self, engine):
        assert ids(engine.search("from:smith")) == ["m1@x"]

    def test_from_wildcard(self, engine):
        assert set(ids(engine.search("from:*@example.org"))) == {"m4@x"}

    def test_to(self, engine):
        assert ids(engine.search("to:team")) == ["m4@x"]

    def test_subject_like_is_escaped(self, engine):
        assert ids(engine.search('subject:"100%"')) == ["m4@x"]
        assert ids(engine.search("subject:%")) == ["m4@x"]

    def test_underscore_is_literal(self, engine):
        assert ids(engine.search("from:dave_x")) == ["m4@x"]
        assert ids(engine.search("from:d_ve")) == []

    def test_folder_case_insensitive(self, engine):
        assert ids(engine.search("folder:sent")) == ["m3@x"]

    def test_account(self, engine):
        assert engine.search("account:work").total_count == 5
        assert engine.search("account:home").total_count == 0

    def test_date_range(self, engine):
        results = engine.search("date:2024-01-10..2024-01-20")
        assert ids(results) == ["m4@x", "m3@x", "m2@x"]

    def test_single_date(self, engine):
        assert ids(engine.search("date:2024-01-15")) == ["m3@x"]

    def test_after_before(self, engine):
        assert ids(engine.search("after:2024-01-15 before:2024-01-25")) == ["m4@x", "m3@x"]


class TestFullText:
    def test_term(self, engine):
        assert set(ids(engine.search("spreadsheets"))) == {"m5@x"}

    def test_stemming(self, engine):
        assert set(ids(engine.search("finish"))) == {"m4@x"}

    def test_prefix(self, engine):
        assert set(ids(engine.search("budg*"))) == {"m1@x", "m3@x", "m5@x"}

    def test_terms_are_anded(self, engine):
        assert ids(engine.search("budget attached")) == ["m1@x"]

    def test_combined_with_filter(self, engine):
        assert ids(engine.search("budget folder:Sent")) == ["m3@x"]

    def test_fts_syntax_is_literal(self, engine):
        assert engine.search('budget OR "lunch').total_count == 0
        assert engine.search("NEAR(budget)").total_count == 0

    def test_ranked(self, engine):
        results = engine.search("budget")
        assert all(r.rank is not None for r in results.results)
        scores = [r.rank for r in results.results]
        assert scores == sorted(scores)

    def test_filter_only_not_ranked(self, engine):
        results = engine.search("folder:INBOX")
        assert all(r.rank is None for r in results.results)
        assert ids(results) == ["m5@x", "m4@x", "m2@x", "m1@x"]


class TestPagination:
    @pytest.mark.parametrize("limit", [1, 2, 3, 10])
    def test_pages_cover_all(self, engine, limit):
        everything = ids(engine.search("account:work", limit=100))
        collected = []
        offset = 0
        while True:
            page = engine.search("account:work", limit=limit, offset=offset)
            assert page.total_count == 5
            collected.extend(ids(page))
            if not page.has_more:
                break
            offset += limit
        assert collected == everything

    def test_offset_past_end(self, engine):
        page = engine.search("account:work", limit=10, offset=50)
        assert page.results == []
        assert page.total_count == 5
        assert not page.has_more

    def test_blank_query(self, engine):
        page = engine.search("   ")
        assert page.results == []
        assert page.total_count == 0

    @pytest.mark.parametrize("text", ["*", "**", "* **"])
    def test_wildcard_only_query(self, engine, text):
        page = engine.search(text)
        assert page.results == []
        assert page.total_count == 0

    def test_wildcard_with_filter_uses_filter(self, engine):
        assert set(ids(engine.search("* folder:Sent"))) == {"m3@x"}


class TestResults:
    def test_fields(self, engine):
        [r] = engine.search("from:smith").results
        assert r.subject == "Budget review"
        assert r.from_address == "alice@example.com"
        assert r.from_name == "Alice Smith"
        assert r.to_addresses == ["bob@example.com"]
        assert r.date_sent == day(5)
        assert r.account == "work"
        assert r.folder == "INBOX"
        assert r.file_path.endswith("m1.eml")

    def test_snippet_from_body(self, engine):
        [r] = engine.search("spreadsheets").results
        assert r.snippet == "Spreadsheets help."

    def test_snippet_for_filter_only(self, engine):
        [r] = engine.search("folder:Sent").results
        assert r.snippet == "Budget looks fine to me."


class TestBuildFilter:
    def test_no_filters(self):
        source, where, params = build_filter(parse_query("folder:x"))
        assert source == "emails e"
        assert "e.folder = ?" in where
        assert params == ["x"]

    def test_fts_join(self):
        source, where, params = build_filter(parse_query("hello world"))
        assert "emails_fts" in source
        assert params == ['"hello" "world"']


class TestFtsQuery:
    def test_quotes_terms(self):
        assert fts_query(["a", "b"]) == '"a" "b"'

    def test_doubles_quotes(self):
        assert fts_query(['say"hi']) == '"say""hi"'

    def test_prefix(self):
        assert fts_query(["budg*"]) == '"budg"*'

    def test_bare_star_dropped(self):
        assert fts_query(["*", "x"]) == '"x"'


class TestSnippet:
    def test_empty(self):
        assert generate_snippet(None) is None
        assert generate_snippet("   ") is None

    def test_short_body_whole(self):
        assert generate_snippet("short body", ["body"]) == "short body"

    def test_no_match_uses_prefix(self):
        body = "word " * 100
        snippet = generate_snippet(body, ["missing"])
        assert snippet.endswith("...")
        assert len(snippet) <= 203

    def test_window_around_match(self):
        body = " ".join(f"w{i}" for i in range(200)) + " needle " + " ".join(f"v{i}" for i in range(200))
        snippet = generate_snippet(body, ["needle"])
        assert snippet.startswith("...")
        assert snippet.endswith("...")
        assert "needle" in snippet
        inner = snippet[3:-3]
        # Whole words only
        assert inner.split()[0] in body.split()
        assert inner.split()[-1] in body.split()

    def test_match_near_start(self):
        body = "needle " + "x " * 300
        snippet = generate_snippet(body, ["NEEDLE"])
        assert snippet.startswith("needle")
        assert snippet.endswith("...")

    def test_truncate(self):
        assert truncate("abc", 10) == "abc"
        assert truncate("aaaa bbbb cccc", 10) == "aaaa bbbb..."


class TestUnicodeRecipients:
    @pytest.fixture
    def db(self, tmp_path):
        database = SearchDatabase(tmp_path / "search.db")
        database.connect()
        database.upsert_batch([
            EmailDocument(
                content_id=ContentId("u@x"),
                location=LocationId(str(tmp_path / "u.eml")),
                mtime_ns=1,
                subject="Bonjour",
                to_addresses=["josé@example.com"],
                cc_addresses=["zoë@example.com"],
                attachment_names=["reçu.pdf"],
            ),
        ])
        yield database
        database.disconnect()

    def test_stored_unescaped(self, db):
        row = db.conn.execute("SELECT to_addresses, attachment_names FROM emails").fetchone()
        assert row[0] == '["josé@example.com"]'
        assert row[1] == '["reçu.pdf"]'

    def test_to_filter(self, db):
        engine = SearchEngine(db)
        assert engine.search("to:josé").total_count == 1
        assert engine.search("to:zoë").total_count == 1

    def test_result_round_trip(self, db):
        result = SearchEngine(db).search("to:josé").results[0]
        assert result.to_addresses == ["josé@example.com"]
        assert result.attachment_names == ["reçu.pdf"]
