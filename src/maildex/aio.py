"""asyncio entry points for sync, index, and search.

The core runs synchronously on a worker thread. Cancelling the awaiting task
sets the run's cancel event, waits for the worker to stop at its next
message or file boundary, then re-raises CancelledError. SQLite connections
are opened inside the worker thread that uses them.
"""

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Callable, TypeVar

from .index import IndexManager, IndexProgress, IndexResult, IndexStatus, SearchDatabase, read_status
from .search import SearchEngine, SearchResultSet
from .sync import SyncEngine, SyncOptions, SyncProgress, SyncResult


T = TypeVar("T")

# SQLite VM instructions between cancel checks during a search
INTERRUPT_CHECK_OPS = 1000


async def run_cancellable(func: Callable[[threading.Event], T], cancel: threading.Event | None = None) -> T:
    """Run func(cancel) on a thread; task cancellation sets the event."""
    cancel = cancel or threading.Event()
    worker = asyncio.ensure_future(asyncio.to_thread(func, cancel))
    try:
        return await asyncio.shield(worker)
    except asyncio.CancelledError:
        cancel.set()
        await worker
        raise


async def sync_async(
    engine: SyncEngine,
    options: SyncOptions | None = None,
    cancel: threading.Event | None = None,
    progress: SyncProgress | None = None,
) -> SyncResult:
    return await run_cancellable(
        lambda ev: engine.run(options, cancel=ev, progress=progress), cancel
    )


async def index_async(
    db_path: Path,
    archive: Path,
    include_body: bool = False,
    full: bool = False,
    cancel: threading.Event | None = None,
    progress: IndexProgress | None = None,
) -> IndexResult:
    def work(ev: threading.Event) -> IndexResult:
        db = SearchDatabase(db_path)
        try:
            if not full:
                db.connect()
            return IndexManager(db).index(
                archive, include_body=include_body, full=full, cancel=ev, progress=progress
            )
        finally:
            db.disconnect()

    return await run_cancellable(work, cancel)


async def rebuild_async(
    db_path: Path,
    archive: Path,
    include_body: bool = False,
    cancel: threading.Event | None = None,
) -> IndexResult:
    return await index_async(db_path, archive, include_body=include_body, full=True, cancel=cancel)


async def search_async(
    db_path: Path,
    text: str,
    limit: int = 50,
    offset: int = 0,
    cancel: threading.Event | None = None,
) -> SearchResultSet:
    """Run a search; a set cancel event interrupts the running statement."""
    def work(ev: threading.Event) -> SearchResultSet:
        cancelled = SearchResultSet(offset=max(offset, 0), limit=max(limit, 1))
        if ev.is_set():
            return cancelled
        with SearchDatabase(db_path, readonly=True) as db:
            db.conn.set_progress_handler(ev.is_set, INTERRUPT_CHECK_OPS)
            try:
                return SearchEngine(db).search(text, limit=limit, offset=offset)
            except sqlite3.OperationalError:
                if ev.is_set():
                    return cancelled
                raise

    return await run_cancellable(work, cancel)


async def status_async(db_path: Path) -> IndexStatus:
    return await asyncio.to_thread(read_status, db_path)
