"""File-based locking to keep sync and index runs single-writer."""

import fcntl
import os
import time
from pathlib import Path

from .errors import LockError


class RunLock:
    """fcntl lock file for one kind of run (e.g. "index", "sync-work").

    Supports both no-wait (try once) and wait (retry with timeout) modes.
    The holder's PID is written into the lock file.
    """

    def __init__(self, lock_dir: Path, lock_name: str):
        """
        Args:
            lock_dir: Directory for lock files
            lock_name: Name of this lock
        """
        self.lock_dir = Path(lock_dir)
        self.lock_name = lock_name
        self.lock_file = self.lock_dir / f"maildex-{lock_name}.lock"
        self.lock_fd: int | None = None

    def acquire(self, wait: bool = False, timeout: float = 60) -> bool:
        """Acquire the lock.

        Returns:
            True if lock acquired, False otherwise
        """
        if self.lock_fd is not None:
            return True

        self.lock_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_file, os.O_CREAT | os.O_RDWR, 0o644)

        start_time = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                if not wait or time.monotonic() - start_time >= timeout:
                    os.close(fd)
                    return False
                time.sleep(0.5)
                continue

            os.ftruncate(fd, 0)
            os.write(fd, f"{os.getpid()}\n".encode())
            self.lock_fd = fd
            return True

    def holder_pid(self) -> int | None:
        """PID recorded by the current (or last) holder."""
        try:
            return int(self.lock_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def release(self) -> None:
        """Release the lock."""
        if self.lock_fd is None:
            return
        try:
            fcntl.flock(self.lock_fd, fcntl.LOCK_UN)
            os.close(self.lock_fd)
        finally:
            self.lock_fd = None

    def __enter__(self) -> "RunLock":
        if not self.acquire():
            pid = self.holder_pid()
            holder = f" (PID {pid})" if pid else ""
            raise LockError(f"Another {self.lock_name} run is in progress{holder}")
        return self

    def __exit__(self, *args) -> None:
        self.release()
