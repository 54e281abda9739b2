"""Maildir-style message storage with atomic writes and JSON sidecars."""

import hashlib
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from email import policy
from email.parser import BytesParser
from pathlib import Path
from typing import BinaryIO

from .layout import (
    MAILDIR_SUBDIRS,
    fallback_content_id,
    folder_dir,
    message_path,
    normalize_message_id,
    sidecar_path,
)
from .models import ContentId


logger = logging.getLogger(__name__)

COPY_CHUNK = 1024 * 1024


@dataclass
class StoreResult:
    """Outcome of a store call."""
    stored: bool
    path: Path
    content_id: ContentId


class MaildirStore:
    """Content-addressed archive for one account.

    Each message lands at ``{root}/{account}/{folder}/cur/{content_id}.eml``.
    A file already present at that exact path means the message was captured
    before, so the store is a no-op. Other folders are never consulted: the
    same message gets one copy per folder it appears in.
    """

    def __init__(self, root: Path, account: str):
        self.root = Path(root)
        self.account = account

    def ensure_folder(self, folder: str) -> Path:
        """Create the cur/new/tmp trio for a folder. Returns the folder dir."""
        base = folder_dir(self.root, self.account, folder)
        for sub in MAILDIR_SUBDIRS:
            (base / sub).mkdir(parents=True, exist_ok=True)
        return base

    def path_for(self, content_id: ContentId, folder: str) -> Path:
        return message_path(self.root, self.account, folder, content_id)

    def exists(self, message_id: str | None, folder: str) -> bool:
        """Check whether a message with this Message-ID is already in folder."""
        content_id = normalize_message_id(message_id)
        if not content_id:
            return False
        return self.path_for(content_id, folder).exists()

    def store(
        self,
        raw: bytes | BinaryIO,
        message_id: str | None,
        received_at: datetime | None,
        folder: str,
    ) -> StoreResult:
        """Store a raw message unless a copy already exists in this folder.

        The message is written to the folder's tmp/ directory, flushed and
        fsynced, stamped with the received time, then renamed into cur/. The
        sidecar is written after the rename. A failure before the rename
        removes the temp file, so no partial message is ever visible.

        Args:
            raw: Raw RFC 822 bytes, or a binary stream of them
            message_id: Message-ID header value; read from the message if empty
            received_at: Server receive time, applied as the file mtime
            folder: Remote folder name (sanitized for the path)
        """
        content_id = normalize_message_id(message_id)
        if content_id:
            target = self.path_for(content_id, folder)
            if target.exists():
                return StoreResult(stored=False, path=target, content_id=content_id)

        base = self.ensure_folder(folder)
        tmp_path = base / "tmp" / f"{int(time.time())}.{uuid.uuid4().hex}.tmp"
        try:
            digest = self._write_temp(raw, tmp_path)
            headers = _read_headers(tmp_path)

            if not content_id:
                content_id = (
                    normalize_message_id(headers.get("message_id"))
                    or fallback_content_id(digest)
                )
                target = self.path_for(content_id, folder)
                if target.exists():
                    tmp_path.unlink()
                    return StoreResult(stored=False, path=target, content_id=content_id)

            if received_at:
                ts = received_at.timestamp()
                os.utime(tmp_path, (ts, ts))

            os.replace(tmp_path, target)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        _fsync_dir(target.parent)
        self._write_sidecar(target, content_id, headers, received_at, folder)
        logger.debug("Stored %s", target)
        return StoreResult(stored=True, path=target, content_id=content_id)

    def _write_temp(self, raw: bytes | BinaryIO, tmp_path: Path) -> str:
        """Write raw message to tmp_path. Returns SHA-256 of the bytes written."""
        sha = hashlib.sha256()
        with open(tmp_path, "wb") as f:
            if isinstance(raw, (bytes, bytearray, memoryview)):
                sha.update(raw)
                f.write(raw)
            else:
                while True:
                    chunk = raw.read(COPY_CHUNK)
                    if not chunk:
                        break
                    sha.update(chunk)
                    f.write(chunk)
            f.flush()
            os.fsync(f.fileno())
        return sha.hexdigest()

    def _write_sidecar(
        self,
        target: Path,
        content_id: ContentId,
        headers: dict,
        received_at: datetime | None,
        folder: str,
    ) -> None:
        """Write {file}.meta.json. A failure here leaves the message stored."""
        meta = {
            "message_id": content_id,
            "subject": headers.get("subject", ""),
            "from": headers.get("from", ""),
            "to": headers.get("to", ""),
            "date": headers.get("date", ""),
            "received_at": _iso(received_at),
            "folder": folder,
            "archived_at": _iso(datetime.now(timezone.utc)),
            "has_attachments": headers.get("has_attachments", False),
        }
        meta_path = sidecar_path(target)
        tmp_meta = meta_path.with_name(meta_path.name + ".tmp")
        try:
            with open(tmp_meta, "w") as f:
                json.dump(meta, f, indent=2, ensure_ascii=False)
            os.replace(tmp_meta, meta_path)
        except OSError as e:
            tmp_meta.unlink(missing_ok=True)
            logger.warning("Failed to write sidecar for %s: %s", target, e)


def read_sidecar(path: Path) -> dict | None:
    """Read the metadata sidecar of an archived message, if present and valid."""
    meta_path = sidecar_path(path)
    try:
        with open(meta_path) as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable sidecar %s: %s", meta_path, e)
        return None
    return data if isinstance(data, dict) else None


def _read_headers(path: Path) -> dict:
    """Extract the sidecar header fields from a stored message.

    Malformed headers come back empty; the raw message is archived as-is.
    """
    with open(path, "rb") as f:
        msg = BytesParser(policy=policy.default).parse(f)

    def header(name: str) -> str:
        try:
            value = msg.get(name)
            return str(value).strip() if value is not None else ""
        except Exception as e:
            # The email package raises assorted errors on malformed headers
            logger.debug("Unreadable %s header in %s: %s", name, path, e)
            return ""

    try:
        has_attachments = any(
            part.get_filename() or part.get_content_disposition() == "attachment"
            for part in msg.walk()
            if not part.is_multipart()
        ) if msg.is_multipart() else False
    except Exception as e:
        logger.debug("Unreadable MIME structure in %s: %s", path, e)
        has_attachments = False

    return {
        "message_id": header("Message-ID"),
        "subject": header("Subject"),
        "from": header("From"),
        "to": header("To"),
        "date": header("Date"),
        "has_attachments": has_attachments,
    }


def _fsync_dir(path: Path) -> None:
    """Persist a rename by fsyncing its directory (POSIX only)."""
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None
