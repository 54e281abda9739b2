"""Tests for maildex CLI commands."""

import json

import pytest
import yaml
from click.testing import CliRunner

from maildex.cli import main

from conftest import FakeMailbox, make_message, write_eml


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def project(tmp_path, monkeypatch):
    """Create an initialized project in a temp directory."""
    for var in ("MAILDEX_ROOT", "MAILDEX_DATABASE", "MAILDEX_PASSWORD"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    result = runner.invoke(main, ["init"])
    assert result.exit_code == 0
    assert (tmp_path / ".maildex" / "config.yaml").exists()
    return tmp_path


def add_messages(root, count=3, folder="INBOX"):
    for i in range(count):
        write_eml(
            root / "work" / folder / "cur" / f"m{i}@x.eml",
            make_message(
                f"<m{i}@x>",
                subject=f"Invoice {i}",
                body=f"Payment number {i} is due",
                from_addr="Billing <billing@example.com>",
            ),
        )


class TestInit:
    def test_init(self, runner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(main, ["init"])
        assert result.exit_code == 0
        assert "Initialized" in result.output
        assert (tmp_path / ".maildex" / "config.yaml").exists()
        assert (tmp_path / ".maildex" / "sync-state").is_dir()
        assert (tmp_path / ".maildex" / "failures").is_dir()

    def test_init_twice(self, runner, project):
        result = runner.invoke(main, ["init"])
        assert result.exit_code == 0
        assert "Already initialized" in result.output


class TestAccount:
    def test_add_and_list(self, runner, project):
        result = runner.invoke(main, ["account", "add", "work", "me@example.com", "-H", "imap.example.com", "-p", "pw"])
        assert result.exit_code == 0
        assert "Account 'work' saved" in result.output

        config = yaml.safe_load((project / ".maildex" / "config.yaml").read_text())
        assert config["accounts"]["work"] == {
            "host": "imap.example.com",
            "user": "me@example.com",
            "password": "pw",
        }

        result = runner.invoke(main, ["account", "ls"])
        assert "work" in result.output
        assert "imap.example.com" in result.output

    def test_password_from_stdin(self, runner, project):
        result = runner.invoke(main, ["a", "a", "home", "me", "-H", "h", "-P", "1993"], input="s3cret\n")
        assert result.exit_code == 0
        config = yaml.safe_load((project / ".maildex" / "config.yaml").read_text())
        assert config["accounts"]["home"]["password"] == "s3cret"
        assert config["accounts"]["home"]["port"] == 1993

    def test_ls_empty(self, runner, project):
        result = runner.invoke(main, ["account", "ls"])
        assert "No accounts configured." in result.output

    def test_rm(self, runner, project):
        runner.invoke(main, ["account", "add", "work", "me", "-H", "h", "-p", "pw"])
        result = runner.invoke(main, ["account", "rm", "work"])
        assert result.exit_code == 0
        assert "removed" in result.output
        result = runner.invoke(main, ["account", "rm", "work"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_requires_init(self, runner, tmp_path, monkeypatch):
        monkeypatch.delenv("MAILDEX_ROOT", raising=False)
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(main, ["account", "ls"])
        assert result.exit_code == 1
        assert "maildex init" in result.output


class TestSync:
    @pytest.fixture
    def mailbox(self, monkeypatch):
        box = FakeMailbox({
            "INBOX": (7, {1: make_message("<one@x>"), 2: make_message("<two@x>")}),
            "Sent": (8, {1: make_message("<three@x>")}),
        })
        monkeypatch.setattr(
            "maildex.cli.sync_cmds.IMAPClient",
            lambda host, user, password, port: box,
        )
        return box

    @pytest.fixture
    def account(self, runner, project):
        result = runner.invoke(main, ["account", "add", "work", "me", "-H", "imap.example.com", "-p", "pw"])
        assert result.exit_code == 0

    def test_sync_inbox(self, runner, project, account, mailbox):
        result = runner.invoke(main, ["sync", "work"])
        assert result.exit_code == 0, result.output
        assert "Downloaded: 2" in result.output
        assert (project / "work" / "INBOX" / "cur" / "one@x.eml").exists()

        state = yaml.safe_load((project / ".maildex" / "sync-state" / "work.yaml").read_text())
        assert state == {"INBOX": {"uidvalidity": 7, "last_uid": 2}}

    def test_resync_is_noop(self, runner, project, account, mailbox):
        runner.invoke(main, ["sync", "work"])
        result = runner.invoke(main, ["sync", "work"])
        assert result.exit_code == 0
        assert "Downloaded: 0" in result.output

    def test_all_folders(self, runner, project, account, mailbox):
        result = runner.invoke(main, ["y", "work", "-a"])
        assert result.exit_code == 0, result.output
        assert "Downloaded: 3" in result.output
        assert (project / "work" / "Sent" / "cur" / "three@x.eml").exists()

    def test_full_clears_watermarks(self, runner, project, account, mailbox):
        runner.invoke(main, ["sync", "work"])
        result = runner.invoke(main, ["sync", "work", "-F"])
        assert "Watermarks cleared" in result.output
        assert "Skipped:    2" in result.output

    def test_unknown_account(self, runner, project):
        result = runner.invoke(main, ["sync", "nope"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_then_index_and_search(self, runner, project, account, mailbox):
        runner.invoke(main, ["sync", "work", "-a"])
        result = runner.invoke(main, ["index"])
        assert result.exit_code == 0, result.output
        assert "Indexed:  3" in result.output

        result = runner.invoke(main, ["search", "folder:Sent", "-f", "json"])
        data = json.loads(result.stdout)
        assert data["total"] == 1
        assert data["results"][0]["message_id"] == "three@x"
        assert data["results"][0]["account"] == "work"


class TestIndex:
    def test_index(self, runner, project):
        add_messages(project)
        result = runner.invoke(main, ["index"])
        assert result.exit_code == 0, result.output
        assert "Indexed:  3" in result.output
        assert (project / ".maildex" / "search.db").exists()

    def test_reindex_skips(self, runner, project):
        add_messages(project)
        runner.invoke(main, ["index"])
        result = runner.invoke(main, ["i"])
        assert "Indexed:  0" in result.output
        assert "Skipped:  3" in result.output

    def test_explicit_paths(self, runner, tmp_path, monkeypatch):
        monkeypatch.delenv("MAILDEX_ROOT", raising=False)
        monkeypatch.delenv("MAILDEX_DATABASE", raising=False)
        monkeypatch.chdir(tmp_path)
        archive = tmp_path / "mail"
        add_messages(archive)
        db = tmp_path / "out" / "idx.db"
        result = runner.invoke(main, ["index", str(archive), "-d", str(db)])
        assert result.exit_code == 0, result.output
        assert db.exists()

    def test_missing_archive(self, runner, project):
        result = runner.invoke(main, ["index", str(project / "nope")])
        assert result.exit_code == 1
        assert "does not exist" in result.output

    def test_rebuild(self, runner, project):
        add_messages(project)
        runner.invoke(main, ["index"])
        result = runner.invoke(main, ["rebuild"])
        assert result.exit_code == 0, result.output
        assert "Indexed:  3" in result.output

    def test_rebuild_corrupt(self, runner, project):
        add_messages(project)
        (project / ".maildex" / "search.db").write_bytes(b"garbage" * 500)
        result = runner.invoke(main, ["rebuild"])
        assert result.exit_code == 0, result.output
        assert "Indexed:  3" in result.output


class TestSearch:
    @pytest.fixture
    def indexed(self, runner, project):
        add_messages(project, count=5)
        result = runner.invoke(main, ["index", "-c"])
        assert result.exit_code == 0, result.output
        return project

    def test_table(self, runner, indexed):
        result = runner.invoke(main, ["search", "payment"])
        assert result.exit_code == 0, result.output
        assert "Showing 1-5 of 5" in result.output

    def test_json(self, runner, indexed):
        result = runner.invoke(main, ["s", "from:billing", "-f", "json", "-l", "2", "-o", "2"])
        data = json.loads(result.stdout)
        assert data["total"] == 5
        assert data["offset"] == 2
        assert data["has_more"] is True
        assert len(data["results"]) == 2

    def test_csv(self, runner, indexed):
        result = runner.invoke(main, ["search", "subject:\"Invoice 3\"", "-f", "csv"])
        lines = result.stdout.strip().splitlines()
        assert lines[0].startswith("date,from,subject")
        assert len(lines) == 2
        assert "Invoice 3" in lines[1]

    def test_no_results(self, runner, indexed):
        result = runner.invoke(main, ["search", "nonexistentword"])
        assert result.exit_code == 0
        assert "No results" in result.output

    def test_no_index(self, runner, project):
        result = runner.invoke(main, ["search", "hello"])
        assert result.exit_code == 1
        assert "No search index" in result.output


class TestStatus:
    def test_no_index(self, runner, project):
        result = runner.invoke(main, ["status"])
        assert result.exit_code == 0
        assert "No index yet" in result.output

    def test_with_index(self, runner, project):
        add_messages(project)
        runner.invoke(main, ["index"])
        result = runner.invoke(main, ["st"])
        assert result.exit_code == 0, result.output
        assert "Total emails:     3" in result.output
        assert "Health:           ok" in result.output
        assert "INBOX" in result.output

    def test_full_check(self, runner, project):
        add_messages(project)
        runner.invoke(main, ["index"])
        result = runner.invoke(main, ["status", "-c"])
        assert result.exit_code == 0, result.output
        assert "Health:           ok" in result.output

    def test_watermarks(self, runner, project):
        add_messages(project)
        runner.invoke(main, ["index"])
        runner.invoke(main, ["account", "add", "work", "me", "-H", "h", "-p", "pw"])
        state = project / ".maildex" / "sync-state" / "work.yaml"
        state.write_text("INBOX:\n  uidvalidity: 9\n  last_uid: 12\n")
        result = runner.invoke(main, ["status", "-w"])
        assert "work/INBOX: UID 12 (UIDVALIDITY 9)" in result.output

    def test_corrupt(self, runner, project):
        (project / ".maildex" / "search.db").write_bytes(b"garbage" * 500)
        result = runner.invoke(main, ["status"])
        assert result.exit_code == 1
        assert "CORRUPT" in result.output


class TestAliases:
    def test_help_lists_aliases(self, runner):
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "search (s)" in result.output
        assert "sync (y)" in result.output
