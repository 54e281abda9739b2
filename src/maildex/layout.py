"""On-disk archive layout: identity normalization and path derivation.

Archived messages live at ``{root}/{account}/{folder}/cur/{content_id}.eml``,
with a ``.meta.json`` sidecar beside each file. Both the capture side and
the scanner derive paths from the helpers here.
"""

import hashlib
import re
from pathlib import Path

from .models import ContentId


MAILDIR_SUBDIRS = ("cur", "new", "tmp")
EML_SUFFIX = ".eml"
SIDECAR_SUFFIX = ".meta.json"

MAX_ID_LENGTH = 100
MAX_SEGMENT_LENGTH = 100
HASH_SUFFIX_LENGTH = 16
NO_ID_PREFIX = "noid-"

# Separators, wildcards, quoting, whitespace and control characters
_PATH_HOSTILE = re.compile(r'[\\/:*?"<>|\s\x00-\x1f\x7f]')
_SEGMENT_UNSAFE = re.compile(r"[^\w.\-]")


def content_hash(raw: bytes) -> str:
    """Compute SHA-256 hash of raw email content."""
    return hashlib.sha256(raw).hexdigest()


def normalize_message_id(message_id: str | None) -> ContentId | None:
    """Normalize a Message-ID header value into a filesystem-safe content id.

    - Strip whitespace and surrounding angle brackets
    - Lowercase
    - Replace path-hostile characters with underscore
    - Truncate long ids and append a hash of the full id

    Returns None when nothing usable remains.
    """
    if not message_id:
        return None

    s = message_id.strip().strip("<>").strip().lower()
    s = _PATH_HOSTILE.sub("_", s).strip("_")
    if not s or s in (".", ".."):
        return None

    if len(s) > MAX_ID_LENGTH:
        digest = content_hash(s.encode())[:HASH_SUFFIX_LENGTH]
        s = f"{s[:MAX_ID_LENGTH - HASH_SUFFIX_LENGTH - 1]}-{digest}"

    return ContentId(s)


def fallback_content_id(sha256_hex: str) -> ContentId:
    """Content id for a message without a Message-ID, from its raw bytes hash."""
    return ContentId(f"{NO_ID_PREFIX}{sha256_hex[:24]}")


def sanitize_segment(name: str, max_len: int = MAX_SEGMENT_LENGTH) -> str:
    """Sanitize an account or folder name for use as a single path segment.

    Letters, digits, ``-``, ``_`` and ``.`` are kept; runs of anything else
    collapse to one underscore. Leading dots are dropped so the directory is
    never hidden.
    """
    s = _SEGMENT_UNSAFE.sub("_", name or "")
    s = re.sub(r"_+", "_", s)
    s = s.lstrip(".")
    if len(s) > max_len:
        s = s[:max_len]
    return s or "_"


def folder_dir(root: Path, account: str, folder: str) -> Path:
    """Maildir directory (parent of cur/new/tmp) for an account folder."""
    return root / sanitize_segment(account) / sanitize_segment(folder)


def message_path(root: Path, account: str, folder: str, content_id: ContentId) -> Path:
    """Final path of an archived message."""
    return folder_dir(root, account, folder) / "cur" / f"{content_id}{EML_SUFFIX}"


def sidecar_path(path: Path) -> Path:
    """Metadata sidecar path for an archived message."""
    return path.with_name(path.name + SIDECAR_SUFFIX)


def split_location(path: Path, root: Path) -> tuple[str | None, str | None]:
    """Derive (account, folder) from an archived file's position under root.

    The folder is the directory holding the maildir leaf (cur/new/tmp) and the
    account is the one above it. Without a maildir leaf, the first two
    segments are used. Paths too shallow for both yield (None, None).
    """
    try:
        parts = Path(path).relative_to(root).parts
    except ValueError:
        return None, None

    dirs = parts[:-1]
    for i in range(len(dirs) - 1, -1, -1):
        if dirs[i] in MAILDIR_SUBDIRS:
            if i < 2:
                return None, None
            return dirs[i - 2], dirs[i - 1]

    if len(parts) >= 3:
        return parts[0], parts[1]
    return None, None
