"""Incremental IMAP → maildir sync."""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, TypeVar

from .errors import CircuitOpenError, RetryError, UidValidityChangedError
from .imap import FetchedMessage, FolderInfo, MailboxClient
from .models import RunStatus, Watermark
from .resilience import CircuitBreaker, RetryConfig, call_with_retry
from .storage import MaildirStore
from .sync_state import FailureLedger, SyncStateStore


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_FOLDER = "INBOX"

# Runs that try a failed UID before it is left in the ledger for good
MAX_FAILURE_ATTEMPTS = 3

# (folder, processed, total) after each message
SyncProgress = Callable[[str, int, int], None]


@dataclass
class SyncOptions:
    """What to sync in one run."""
    folders: list[str] | None = None
    all_folders: bool = False
    start_date: date | None = None
    end_date: date | None = None  # inclusive
    batch_size: int = 50
    limit: int | None = None

    @property
    def date_bounded(self) -> bool:
        return self.start_date is not None or self.end_date is not None


@dataclass
class SyncResult:
    """Counts for one sync run."""
    downloaded: int = 0
    skipped: int = 0
    errors: int = 0
    folder_errors: dict[str, str] = field(default_factory=dict)
    folders_synced: list[str] = field(default_factory=list)
    elapsed: float = 0.0
    status: RunStatus = RunStatus.COMPLETED
    error: str | None = None


class _Cancelled(Exception):
    """Internal signal: stop before the next unit of work."""


class SyncEngine:
    """Pulls messages newer than each folder's watermark into a MaildirStore.

    Watermarks are written only after a batch completes. A UID that fails to
    store either goes into the folder's failure ledger, which is retried at
    the start of later runs, or (without a ledger) stops the watermark before
    it, so an error re-fetches instead of skipping. Re-fetched messages dedup
    against the archive.
    """

    def __init__(
        self,
        client_factory: Callable[[], MailboxClient],
        store: MaildirStore,
        state: SyncStateStore,
        retry: RetryConfig | None = None,
        breaker: CircuitBreaker | None = None,
        failures: Callable[[str], FailureLedger] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            client_factory: Creates an unconnected mailbox client
            store: Destination archive for the account
            state: Watermark store for the account
            retry: Retry policy for remote operations
            breaker: Circuit breaker shared by all remote operations
            failures: Returns the failure ledger for a folder
            sleep: Backoff sleep function
        """
        self._client_factory = client_factory
        self.store = store
        self.state = state
        self.retry = retry or RetryConfig()
        self.breaker = breaker or CircuitBreaker()
        self._failures = failures
        self._sleep = sleep
        self._client: MailboxClient | None = None
        self._selected: str | None = None
        # UIDVALIDITY seen when each folder's sync started
        self._epochs: dict[str, int] = {}

    def run(
        self,
        options: SyncOptions | None = None,
        cancel: threading.Event | None = None,
        progress: SyncProgress | None = None,
    ) -> SyncResult:
        """Sync the requested folders. Remote failures skip a folder, not the run."""
        options = options or SyncOptions()
        cancel = cancel or threading.Event()
        result = SyncResult()
        start = time.monotonic()

        try:
            folders = self._target_folders(options)
        except (RetryError, CircuitOpenError) as e:
            logger.error("Cannot reach mailbox: %s", e)
            result.status = RunStatus.FAILED
            result.error = str(e)
            self._close()
            result.elapsed = time.monotonic() - start
            return result

        remaining = options.limit
        try:
            for folder in folders:
                if cancel.is_set():
                    raise _Cancelled()
                try:
                    fetched = self._sync_folder(folder, options, remaining, cancel, result, progress)
                except (RetryError, CircuitOpenError, UidValidityChangedError) as e:
                    logger.warning("Skipping folder %s: %s", folder, e)
                    result.folder_errors[folder] = str(e)
                    self._drop_client()
                    continue
                result.folders_synced.append(folder)
                if remaining is not None:
                    remaining -= fetched
                    if remaining <= 0:
                        break
        except _Cancelled:
            logger.info("Sync cancelled")
            result.status = RunStatus.CANCELLED
        finally:
            self._close()

        result.elapsed = time.monotonic() - start
        logger.info(
            "Sync %s: %d downloaded, %d skipped, %d errors, %d folders skipped in %.1fs",
            result.status.value, result.downloaded, result.skipped, result.errors,
            len(result.folder_errors), result.elapsed,
        )
        return result

    def _target_folders(self, options: SyncOptions) -> list[str]:
        if options.all_folders:
            return self._remote(lambda c: c.list_folders(), "LIST")
        return list(options.folders or [DEFAULT_FOLDER])

    def _sync_folder(
        self,
        folder: str,
        options: SyncOptions,
        limit: int | None,
        cancel: threading.Event,
        result: SyncResult,
        progress: SyncProgress | None,
    ) -> int:
        """Sync one folder. Returns the number of UIDs processed."""
        info: FolderInfo = self._remote(lambda c: self._select(c, folder), f"SELECT {folder}")
        self._epochs[folder] = info.uidvalidity

        stored = self.state.get(folder)
        last_uid = 0
        if stored and stored.uidvalidity == info.uidvalidity:
            last_uid = stored.last_uid
        elif stored:
            logger.warning(
                "UIDVALIDITY changed for %s (%d → %d), resyncing folder",
                folder, stored.uidvalidity, info.uidvalidity,
            )

        ledger = self._failures(folder) if self._failures else None
        if ledger and stored and stored.uidvalidity != info.uidvalidity:
            ledger.clear()
        if ledger:
            self._retry_failures(folder, ledger, last_uid, cancel, result)

        since = options.start_date
        before = options.end_date + timedelta(days=1) if options.end_date else None
        uids = self._remote(
            lambda c: self._in_folder(c, folder, lambda: c.search_uids(last_uid, since, before)),
            f"SEARCH {folder}",
        )
        if limit is not None:
            uids = uids[:max(limit, 0)]

        total = len(uids)
        logger.info("%s: %d new messages after UID %d", folder, total, last_uid)

        # Date-bounded runs are backfills; they never move the watermark
        persist = not options.date_bounded
        if persist and (stored is None or stored.uidvalidity != info.uidvalidity):
            self.state.set(folder, Watermark(folder, info.uidvalidity, last_uid))

        checkpoint = last_uid
        blocked = False
        processed = 0
        batch_size = max(options.batch_size, 1)

        for i in range(0, total, batch_size):
            batch = uids[i:i + batch_size]
            pending = checkpoint
            for uid in batch:
                if cancel.is_set():
                    raise _Cancelled()

                settled = self._capture(folder, uid, result, ledger)
                if settled and not blocked:
                    pending = uid
                elif not settled:
                    blocked = True

                processed += 1
                if progress:
                    progress(folder, processed, total)

            if persist and pending > checkpoint:
                self.state.set(folder, Watermark(folder, info.uidvalidity, pending))
            checkpoint = pending

        return processed

    def _capture(
        self,
        folder: str,
        uid: int,
        result: SyncResult,
        ledger: FailureLedger | None,
    ) -> bool:
        """Fetch and store one message.

        Returns False if the watermark must stop before this UID: the store
        failed and no failure ledger holds the UID for a later retry.
        """
        msg: FetchedMessage | None = self._remote(
            lambda c: self._in_folder(c, folder, lambda: c.fetch(uid)),
            f"FETCH {folder}:{uid}",
        )
        if msg is None:
            logger.debug("%s: UID %d vanished before fetch", folder, uid)
            result.skipped += 1
            if ledger:
                ledger.discard(uid)
            return True

        try:
            outcome = self.store.store(msg.raw, None, msg.internal_date, folder)
        except Exception as e:
            # One bad message is one error, not a failed run
            logger.warning("%s: failed to store UID %d: %s", folder, uid, e)
            result.errors += 1
            return self._record_failure(folder, uid, str(e), ledger)

        if outcome.stored:
            result.downloaded += 1
        else:
            result.skipped += 1
        if ledger:
            ledger.discard(uid)
        return True

    def _retry_failures(
        self,
        folder: str,
        ledger: FailureLedger,
        last_uid: int,
        cancel: threading.Event,
        result: SyncResult,
    ) -> None:
        """Re-fetch recorded failures the watermark has already moved past.

        UIDs that failed MAX_FAILURE_ATTEMPTS times are left in the ledger and no
        longer fetched.
        """
        for uid, failure in sorted(ledger.load().items()):
            if uid > last_uid:
                continue
            if failure.attempts >= MAX_FAILURE_ATTEMPTS:
                logger.debug("%s: giving up on UID %d after %d attempts", folder, uid, failure.attempts)
                continue
            if cancel.is_set():
                raise _Cancelled()
            logger.info("%s: retrying failed UID %d", folder, uid)
            self._capture(folder, uid, result, ledger)

    def _record_failure(self, folder: str, uid: int, error: str, ledger: FailureLedger | None) -> bool:
        """Record a failed UID. Returns True if the ledger now holds it."""
        if ledger is None:
            return False
        try:
            ledger.add(uid, error)
        except OSError as e:
            logger.warning("%s: cannot record failed UID %d: %s", folder, uid, e)
            return False
        return True

    def _remote(self, op: Callable[[MailboxClient], T], description: str) -> T:
        """Run op against a connected client with retry and circuit breaking.

        A failed attempt drops the connection; the next attempt reconnects.
        """
        def attempt() -> T:
            client = self._ensure_client()
            try:
                return op(client)
            except Exception:
                self._drop_client()
                raise

        return call_with_retry(
            attempt,
            self.retry,
            breaker=self.breaker,
            sleep=self._sleep,
            description=description,
        )

    def _ensure_client(self) -> MailboxClient:
        if self._client is None:
            client = self._client_factory()
            client.connect()
            self._client = client
            self._selected = None
        return self._client

    def _select(self, client: MailboxClient, folder: str) -> FolderInfo:
        info = client.select_folder(folder)
        self._selected = folder
        return info

    def _in_folder(self, client: MailboxClient, folder: str, func: Callable[[], T]) -> T:
        """Re-select folder after a reconnect, then run func.

        Raises:
            UidValidityChangedError: the folder's UIDs were renumbered since
                this folder's sync started
        """
        if self._selected != folder:
            info = self._select(client, folder)
            expected = self._epochs.get(folder)
            if expected is not None and info.uidvalidity != expected:
                raise UidValidityChangedError(folder, expected, info.uidvalidity)
        return func()

    def _drop_client(self) -> None:
        if self._client is not None:
            try:
                self._client.disconnect()
            finally:
                self._client = None
                self._selected = None

    def _close(self) -> None:
        self._drop_client()
