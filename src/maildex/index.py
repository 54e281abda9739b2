"""SQLite full-text search index over the archive."""

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

from .errors import IndexCorruptionError, MessageParseError
from .models import EmailDocument, RunStatus
from .parsing import parse_email
from .scanner import scan


logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
BATCH_SIZE = 100

META_LAST_INDEXED = "last_indexed_time"
META_BODY_INDEXED = "body_indexed"

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS emails (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        message_id TEXT NOT NULL,
        file_path TEXT NOT NULL UNIQUE,
        from_address TEXT,
        from_name TEXT,
        to_addresses TEXT,
        cc_addresses TEXT,
        bcc_addresses TEXT,
        subject TEXT,
        date_sent_unix INTEGER,
        date_received_unix INTEGER,
        folder TEXT,
        account TEXT,
        has_attachments INTEGER NOT NULL DEFAULT 0,
        attachment_names TEXT,
        body_preview TEXT,
        body_text TEXT,
        indexed_at_unix INTEGER NOT NULL,
        last_modified_ns INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_emails_message_id ON emails(message_id);
    CREATE INDEX IF NOT EXISTS idx_emails_from ON emails(from_address);
    CREATE INDEX IF NOT EXISTS idx_emails_date ON emails(date_sent_unix);
    CREATE INDEX IF NOT EXISTS idx_emails_folder ON emails(folder);
    CREATE INDEX IF NOT EXISTS idx_emails_account ON emails(account);

    CREATE TABLE IF NOT EXISTS index_metadata (
        key TEXT PRIMARY KEY,
        value TEXT
    );

    CREATE VIRTUAL TABLE IF NOT EXISTS emails_fts USING fts5(
        subject,
        body_text,
        from_address,
        to_addresses,
        content='emails',
        content_rowid='id',
        tokenize='porter unicode61'
    );

    -- The FTS table is only ever written by these triggers
    CREATE TRIGGER IF NOT EXISTS emails_ai AFTER INSERT ON emails BEGIN
        INSERT INTO emails_fts(rowid, subject, body_text, from_address, to_addresses)
        VALUES (new.id, new.subject, new.body_text, new.from_address, new.to_addresses);
    END;

    CREATE TRIGGER IF NOT EXISTS emails_ad AFTER DELETE ON emails BEGIN
        INSERT INTO emails_fts(emails_fts, rowid, subject, body_text, from_address, to_addresses)
        VALUES ('delete', old.id, old.subject, old.body_text, old.from_address, old.to_addresses);
    END;

    CREATE TRIGGER IF NOT EXISTS emails_au AFTER UPDATE ON emails BEGIN
        INSERT INTO emails_fts(emails_fts, rowid, subject, body_text, from_address, to_addresses)
        VALUES ('delete', old.id, old.subject, old.body_text, old.from_address, old.to_addresses);
        INSERT INTO emails_fts(rowid, subject, body_text, from_address, to_addresses)
        VALUES (new.id, new.subject, new.body_text, new.from_address, new.to_addresses);
    END;
"""

_DROP = """
    DROP TRIGGER IF EXISTS emails_ai;
    DROP TRIGGER IF EXISTS emails_ad;
    DROP TRIGGER IF EXISTS emails_au;
    DROP TABLE IF EXISTS emails_fts;
    DROP TABLE IF EXISTS emails;
    DROP TABLE IF EXISTS index_metadata;
"""

# Upsert keyed on the file path: one row per physical copy
_UPSERT = """
    INSERT INTO emails (
        message_id, file_path, from_address, from_name,
        to_addresses, cc_addresses, bcc_addresses, subject,
        date_sent_unix, date_received_unix, folder, account,
        has_attachments, attachment_names, body_preview, body_text,
        indexed_at_unix, last_modified_ns
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(file_path) DO UPDATE SET
        message_id = excluded.message_id,
        from_address = excluded.from_address,
        from_name = excluded.from_name,
        to_addresses = excluded.to_addresses,
        cc_addresses = excluded.cc_addresses,
        bcc_addresses = excluded.bcc_addresses,
        subject = excluded.subject,
        date_sent_unix = excluded.date_sent_unix,
        date_received_unix = excluded.date_received_unix,
        folder = excluded.folder,
        account = excluded.account,
        has_attachments = excluded.has_attachments,
        attachment_names = excluded.attachment_names,
        body_preview = excluded.body_preview,
        body_text = excluded.body_text,
        indexed_at_unix = excluded.indexed_at_unix,
        last_modified_ns = excluded.last_modified_ns
"""


def _unix(dt: datetime | None) -> int | None:
    return int(dt.timestamp()) if dt else None


def _sidecar_files(db_path: Path) -> list[Path]:
    return [db_path, db_path.with_name(db_path.name + "-wal"), db_path.with_name(db_path.name + "-shm")]


class SearchDatabase:
    """Persistent SQLite search store.

    One row per archived file, keyed by file path. The FTS5 shadow table
    `emails_fts` is kept in sync by triggers, so callers never touch it.
    Writes are funneled through batched transactions; WAL mode lets a
    reader query while an indexer writes without seeing partial batches.
    """

    def __init__(self, db_path: Path, readonly: bool = False):
        self._db_path = Path(db_path)
        self._readonly = readonly
        self._conn: sqlite3.Connection | None = None

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def readonly(self) -> bool:
        return self._readonly

    def connect(self) -> None:
        """Open database connection and create schema if needed.

        Read-only connections never create the file or the schema.
        """
        if self._readonly:
            if not self._db_path.exists():
                raise FileNotFoundError(f"No search index at {self._db_path}")
            uri = f"{self._db_path.resolve().as_uri()}?mode=ro"
            self._conn = sqlite3.connect(uri, uri=True, timeout=30.0)
            self._conn.row_factory = sqlite3.Row
            return

        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._ensure_schema()

    def disconnect(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if not self._conn:
            raise RuntimeError("Not connected")
        return self._conn

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args):
        self.disconnect()

    def schema_version(self) -> int:
        return self.conn.execute("PRAGMA user_version").fetchone()[0]

    def _ensure_schema(self) -> None:
        version = self.schema_version()
        has_tables = self.conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'emails'"
        ).fetchone() is not None

        if has_tables and version != SCHEMA_VERSION:
            raise IndexCorruptionError(
                f"Index schema version {version} does not match {SCHEMA_VERSION}; "
                "run 'maildex rebuild'"
            )
        self._create_schema()

    def _create_schema(self) -> None:
        """Create database schema."""
        self.conn.executescript(_SCHEMA)
        self.conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        self.conn.commit()

    def get_metadata(self, key: str) -> str | None:
        """Get metadata value."""
        try:
            cur = self.conn.execute(
                "SELECT value FROM index_metadata WHERE key = ?", (key,)
            )
        except sqlite3.OperationalError:
            # Read-only connection to a store without schema
            return None
        row = cur.fetchone()
        return row["value"] if row else None

    def set_metadata(self, key: str, value: str) -> None:
        """Set metadata value."""
        self.conn.execute(
            "INSERT OR REPLACE INTO index_metadata (key, value) VALUES (?, ?)",
            (key, value),
        )
        self.conn.commit()

    def get_known_files(self) -> dict[str, int]:
        """Snapshot of indexed files: file_path -> mtime (ns) at last index."""
        cur = self.conn.execute("SELECT file_path, last_modified_ns FROM emails")
        return {row[0]: row[1] for row in cur}

    def email_count(self) -> int:
        """Get number of indexed files."""
        try:
            cur = self.conn.execute("SELECT COUNT(*) FROM emails")
        except sqlite3.OperationalError:
            return 0
        return cur.fetchone()[0]

    def upsert_batch(self, docs: Iterable[EmailDocument]) -> int:
        """Insert or update a batch of records in one transaction.

        Either the whole batch commits or none of it does.
        """
        now = int(time.time())
        rows = [self._doc_params(doc, now) for doc in docs]
        if not rows:
            return 0
        try:
            self.conn.executemany(_UPSERT, rows)
            self.conn.commit()
        except sqlite3.Error:
            self.conn.rollback()
            raise
        return len(rows)

    def remove_paths(self, paths: Iterable[str]) -> int:
        """Delete records for files no longer in the archive."""
        params = [(p,) for p in paths]
        if not params:
            return 0
        try:
            cur = self.conn.executemany("DELETE FROM emails WHERE file_path = ?", params)
            self.conn.commit()
        except sqlite3.Error:
            self.conn.rollback()
            raise
        return cur.rowcount

    def _doc_params(self, doc: EmailDocument, now: int) -> tuple:
        return (
            doc.content_id,
            doc.location,
            doc.from_address,
            doc.from_name,
            json.dumps(doc.to_addresses, ensure_ascii=False),
            json.dumps(doc.cc_addresses, ensure_ascii=False),
            json.dumps(doc.bcc_addresses, ensure_ascii=False),
            doc.subject,
            _unix(doc.date_sent),
            _unix(doc.date_received),
            doc.folder,
            doc.account,
            int(doc.has_attachments),
            json.dumps(doc.attachment_names, ensure_ascii=False),
            doc.body_preview,
            doc.body_text,
            now,
            doc.mtime_ns,
        )

    def is_healthy(self, thorough: bool = False) -> bool:
        """Run SQLite's quick check, or the full integrity check if thorough.

        The full check also verifies index contents and takes time
        proportional to the store size.
        """
        pragma = "integrity_check" if thorough else "quick_check"
        try:
            row = self.conn.execute(f"PRAGMA {pragma}").fetchone()
        except sqlite3.DatabaseError as e:
            logger.warning("Integrity check failed: %s", e)
            return False
        return row is not None and row[0] == "ok"

    def rebuild(self) -> None:
        """Drop and recreate the store, forcing every file to be re-parsed.

        If the file is too damaged to drop tables from, it is deleted
        (with its WAL and shared-memory files) and created fresh.
        """
        if self._readonly:
            raise RuntimeError("Cannot rebuild a read-only index")
        try:
            if self._conn is None:
                self._conn = sqlite3.connect(self._db_path, timeout=30.0)
                self._conn.row_factory = sqlite3.Row
            self.conn.executescript(_DROP)
            self.conn.execute("PRAGMA user_version = 0")
            self.conn.commit()
            self.conn.execute("VACUUM")
            self.conn.execute("PRAGMA journal_mode=WAL")
            self._create_schema()
        except sqlite3.DatabaseError as e:
            logger.warning("Index unusable (%s); recreating %s", e, self._db_path)
            self.disconnect()
            for path in _sidecar_files(self._db_path):
                path.unlink(missing_ok=True)
            self.connect()

    def database_size(self) -> int:
        """Bytes on disk, including the WAL."""
        return sum(p.stat().st_size for p in _sidecar_files(self._db_path)[:2] if p.exists())

    def statistics(self) -> dict:
        """Aggregate counts for status reports."""
        row = self.conn.execute("""
            SELECT
                COUNT(*) AS total_emails,
                COUNT(DISTINCT from_address) AS unique_senders,
                SUM(has_attachments) AS with_attachments,
                MIN(date_sent_unix) AS oldest,
                MAX(date_sent_unix) AS newest,
                COUNT(DISTINCT message_id) AS unique_messages
            FROM emails
        """).fetchone()

        accounts = {
            r["account"] or "": r["n"]
            for r in self.conn.execute("""
                SELECT account, COUNT(*) AS n FROM emails
                GROUP BY account ORDER BY n DESC
            """)
        }
        folders = {
            r["folder"] or "": r["n"]
            for r in self.conn.execute("""
                SELECT folder, COUNT(*) AS n FROM emails
                GROUP BY folder ORDER BY n DESC LIMIT 20
            """)
        }

        def ts(value):
            return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None

        return {
            "total_emails": row["total_emails"],
            "unique_messages": row["unique_messages"],
            "unique_senders": row["unique_senders"],
            "with_attachments": row["with_attachments"] or 0,
            "oldest": ts(row["oldest"]),
            "newest": ts(row["newest"]),
            "accounts": accounts,
            "folders": folders,
        }


@dataclass
class IndexResult:
    """Counts for one indexing run."""
    indexed: int = 0
    skipped: int = 0
    errors: int = 0
    removed: int = 0
    elapsed: float = 0.0
    status: RunStatus = RunStatus.COMPLETED
    error_paths: list[str] = field(default_factory=list)


@dataclass
class IndexStatus:
    """Read-only summary of the search store."""
    db_path: Path
    exists: bool
    total_emails: int = 0
    database_size: int = 0
    last_indexed: datetime | None = None
    healthy: bool = True
    statistics: dict = field(default_factory=dict)


# Called with the number of files processed so far
IndexProgress = Callable[[int], None]


class IndexManager:
    """Incremental indexer: re-parses only files whose mtime changed."""

    def __init__(self, db: SearchDatabase, batch_size: int = BATCH_SIZE):
        self.db = db
        self.batch_size = max(batch_size, 1)

    def index(
        self,
        archive: Path,
        include_body: bool = False,
        full: bool = False,
        cancel: threading.Event | None = None,
        progress: IndexProgress | None = None,
    ) -> IndexResult:
        """Index new and changed files under archive.

        Files whose mtime matches the stored value are skipped without being
        read. Records whose file has disappeared are removed at the end of a
        completed run. A cancelled run keeps committed batches and discards
        the batch in progress.
        """
        if full:
            return self.rebuild(archive, include_body=include_body, cancel=cancel, progress=progress)

        start = time.monotonic()
        archive = Path(archive).resolve()
        result = IndexResult()

        known = self.db.get_known_files()
        body_flag = "1" if include_body else "0"
        previous_flag = self.db.get_metadata(META_BODY_INDEXED)
        reparse_all = bool(known) and previous_flag is not None and previous_flag != body_flag
        if reparse_all:
            logger.info("Body indexing changed; re-parsing all files")

        seen: set[str] = set()
        batch: list[EmailDocument] = []
        processed = 0

        logger.info("Indexing %s (%d files known)", archive, len(known))
        for path in scan(archive):
            if cancel and cancel.is_set():
                result.status = RunStatus.CANCELLED
                break

            location = str(path)
            seen.add(location)
            processed += 1
            if progress:
                progress(processed)

            try:
                mtime_ns = path.stat().st_mtime_ns
            except FileNotFoundError:
                seen.discard(location)
                continue

            if not reparse_all and known.get(location) == mtime_ns:
                result.skipped += 1
                continue

            try:
                doc = parse_email(path, archive, include_body=include_body, mtime_ns=mtime_ns)
            except MessageParseError as e:
                logger.warning("Skipping %s", e)
                result.errors += 1
                result.error_paths.append(location)
                continue

            batch.append(doc)
            if len(batch) >= self.batch_size:
                if not self._flush(batch, result):
                    break

        if result.status is RunStatus.COMPLETED and batch:
            self._flush(batch, result)
        elif batch:
            logger.info("Discarding %d uncommitted records", len(batch))

        if result.status is RunStatus.COMPLETED:
            vanished = set(known) - seen
            if vanished:
                result.removed = self.db.remove_paths(sorted(vanished))
            self.db.set_metadata(META_BODY_INDEXED, body_flag)
            self.db.set_metadata(META_LAST_INDEXED, str(int(time.time())))

        result.elapsed = time.monotonic() - start
        logger.info(
            "Index %s: %d indexed, %d skipped, %d errors, %d removed in %.1fs",
            result.status.value, result.indexed, result.skipped, result.errors,
            result.removed, result.elapsed,
        )
        return result

    def rebuild(
        self,
        archive: Path,
        include_body: bool = False,
        cancel: threading.Event | None = None,
        progress: IndexProgress | None = None,
    ) -> IndexResult:
        """Drop the store and index everything from scratch."""
        logger.info("Rebuilding index at %s", self.db.db_path)
        self.db.rebuild()
        return self.index(archive, include_body=include_body, cancel=cancel, progress=progress)

    def status(self) -> IndexStatus:
        """Read-only summary of this manager's store."""
        return read_status(self.db.db_path)

    def _flush(self, batch: list[EmailDocument], result: IndexResult) -> bool:
        """Commit a batch. On failure the batch is rolled back and the run fails."""
        try:
            result.indexed += self.db.upsert_batch(batch)
        except sqlite3.Error as e:
            logger.error("Batch of %d records failed: %s", len(batch), e)
            result.errors += len(batch)
            result.status = RunStatus.FAILED
            return False
        finally:
            batch.clear()
        return True


def read_status(db_path: Path, thorough: bool = False) -> IndexStatus:
    """Summarize the search store without writing to it.

    thorough runs the full integrity check instead of the quick one.
    """
    db_path = Path(db_path)
    if not db_path.exists():
        return IndexStatus(db_path=db_path, exists=False)

    with SearchDatabase(db_path, readonly=True) as db:
        status = IndexStatus(
            db_path=db_path,
            exists=True,
            database_size=db.database_size(),
            healthy=db.is_healthy(thorough=thorough),
        )
        if not status.healthy:
            return status
        status.total_emails = db.email_count()
        last = db.get_metadata(META_LAST_INDEXED)
        if last:
            status.last_indexed = datetime.fromtimestamp(int(last), tz=timezone.utc)
        if status.total_emails:
            status.statistics = db.statistics()
    return status
