"""Per-folder sync watermarks and fetch failure tracking."""

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

import yaml

from .models import Watermark


class SyncStateStore(Protocol):
    """Narrow read/write contract for folder watermarks."""

    def get(self, folder: str) -> Watermark | None: ...

    def set(self, folder: str, watermark: Watermark) -> None: ...


def _dump_yaml_atomic(path: Path, data: dict) -> None:
    """Write YAML to a temp file beside `path`, then rename over it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class MemorySyncStateStore:
    """In-process watermark store."""

    def __init__(self, initial: dict[str, Watermark] | None = None):
        self._state: dict[str, Watermark] = dict(initial or {})

    def get(self, folder: str) -> Watermark | None:
        return self._state.get(folder)

    def set(self, folder: str, watermark: Watermark) -> None:
        self._state[folder] = watermark

    def folders(self) -> list[str]:
        return sorted(self._state)


class YamlSyncStateStore:
    """Watermarks for one account, persisted as a YAML file.

    Layout::

        INBOX:
          uidvalidity: 1700000000
          last_uid: 4213

    Every `set` rewrites the file atomically, so a crash never leaves a
    truncated state file behind.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._cache: dict[str, Watermark] | None = None

    def _load(self) -> dict[str, Watermark]:
        if self._cache is not None:
            return self._cache

        result: dict[str, Watermark] = {}
        if self.path.exists():
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
            for folder, state in data.items():
                if isinstance(state, dict):
                    result[str(folder)] = Watermark(
                        folder=str(folder),
                        uidvalidity=int(state.get("uidvalidity", 0)),
                        last_uid=int(state.get("last_uid", 0)),
                    )
        self._cache = result
        return result

    def get(self, folder: str) -> Watermark | None:
        return self._load().get(folder)

    def set(self, folder: str, watermark: Watermark) -> None:
        state = dict(self._load())
        state[folder] = watermark
        data = {
            name: {"uidvalidity": wm.uidvalidity, "last_uid": wm.last_uid}
            for name, wm in state.items()
        }
        _dump_yaml_atomic(self.path, data)
        self._cache = state

    def folders(self) -> list[str]:
        return sorted(self._load())

    def clear(self) -> None:
        """Drop all watermarks, forcing a full resync."""
        self.path.unlink(missing_ok=True)
        self._cache = {}


@dataclass
class FetchFailure:
    """A failed fetch or store attempt for a specific UID."""
    uid: int
    error: str
    timestamp: str | None = None
    attempts: int = 1


class FailureLedger:
    """UIDs that failed in the current validity epoch of one folder."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> dict[int, FetchFailure]:
        """Load failures. Returns {uid: FetchFailure}."""
        if not self.path.exists():
            return {}

        with open(self.path) as f:
            data = yaml.safe_load(f) or {}

        failures = {}
        for uid, info in data.items():
            if isinstance(info, dict):
                failures[int(uid)] = FetchFailure(
                    uid=int(uid),
                    error=str(info.get("error", "")),
                    timestamp=info.get("timestamp"),
                    attempts=int(info.get("attempts", 1)),
                )
            else:
                failures[int(uid)] = FetchFailure(uid=int(uid), error=str(info))
        return failures

    def save(self, failures: dict[int, FetchFailure]) -> None:
        if not failures:
            self.path.unlink(missing_ok=True)
            return

        data = {}
        for uid, failure in sorted(failures.items()):
            data[uid] = {"error": failure.error, "attempts": failure.attempts}
            if failure.timestamp:
                data[uid]["timestamp"] = failure.timestamp
        _dump_yaml_atomic(self.path, data)

    def add(self, uid: int, error: str) -> None:
        """Record a failure for a specific UID, counting repeat failures."""
        failures = self.load()
        previous = failures.get(uid)
        failures[uid] = FetchFailure(
            uid=uid,
            error=error,
            timestamp=datetime.now().isoformat(),
            attempts=previous.attempts + 1 if previous else 1,
        )
        self.save(failures)

    def discard(self, uid: int) -> None:
        """Remove a failure record (e.g., after successful retry)."""
        failures = self.load()
        if uid in failures:
            del failures[uid]
            self.save(failures)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
