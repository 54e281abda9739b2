"""Parse archived .eml files into index records."""

import html
import re
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime
from pathlib import Path

from .errors import MessageParseError
from .layout import normalize_message_id, split_location
from .models import ContentId, EmailDocument, LocationId
from .storage import read_sidecar


PREVIEW_LENGTH = 500

_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_RE = re.compile(r"(?is)<(script|style)\b.*?</\1\s*>")
_WS_RE = re.compile(r"\s+")


def parse_email(
    path: Path,
    root: Path | None = None,
    include_body: bool = False,
    mtime_ns: int | None = None,
) -> EmailDocument:
    """Parse an archived message into an EmailDocument.

    Args:
        path: The .eml file
        root: Archive root, used to derive account and folder
        include_body: Keep the full body text (for full-text search)
        mtime_ns: File mtime observed by the caller; read from disk if omitted

    Raises:
        MessageParseError: the file is unreadable, empty, or not a message
    """
    path = Path(path)
    try:
        if mtime_ns is None:
            mtime_ns = path.stat().st_mtime_ns
        raw = path.read_bytes()
    except OSError as e:
        raise MessageParseError(path, str(e)) from e
    if not raw.strip():
        raise MessageParseError(path, "empty file")

    sidecar = read_sidecar(path) or {}
    account, folder = split_location(path, root) if root else (None, None)

    try:
        msg = BytesParser(policy=policy.default).parsebytes(raw)
        if not msg.keys():
            raise MessageParseError(path, "no headers")
        return _build_document(msg, path, sidecar, account, folder, include_body, mtime_ns)
    except MessageParseError:
        raise
    except Exception as e:
        # The email package raises assorted errors on malformed headers
        raise MessageParseError(path, f"unparseable message: {type(e).__name__}: {e}") from e


def _build_document(
    msg: EmailMessage,
    path: Path,
    sidecar: dict,
    account: str | None,
    folder: str | None,
    include_body: bool,
    mtime_ns: int,
) -> EmailDocument:
    content_id = (
        normalize_message_id(sidecar.get("message_id"))
        or normalize_message_id(_header(msg, "Message-ID"))
        or ContentId(path.stem.lower())
    )

    from_name, from_address = _first_address(_header(msg, "From"))
    body = extract_body_text(msg)
    attachments = attachment_names(msg)

    return EmailDocument(
        content_id=content_id,
        location=LocationId(str(path)),
        mtime_ns=mtime_ns,
        subject=_header(msg, "Subject"),
        from_address=from_address,
        from_name=from_name,
        to_addresses=_addresses(msg, "To"),
        cc_addresses=_addresses(msg, "Cc"),
        bcc_addresses=_addresses(msg, "Bcc"),
        date_sent=parse_date(_header(msg, "Date")),
        date_received=_received_at(sidecar, mtime_ns),
        account=account,
        folder=folder,
        has_attachments=bool(attachments) or bool(sidecar.get("has_attachments")),
        attachment_names=attachments,
        body_preview=body[:PREVIEW_LENGTH],
        body_text=body if include_body else None,
    )


def extract_body_text(msg: EmailMessage) -> str:
    """Extract a whitespace-normalized plain text body.

    Prefers text/plain parts, falls back to tag-stripped text/html.
    """
    part = msg.get_body(preferencelist=("plain", "html"))
    if part is None:
        return ""

    text = _part_text(part)
    if part.get_content_subtype() == "html":
        text = html_to_text(text)
    return _WS_RE.sub(" ", text).strip()


def html_to_text(s: str) -> str:
    s = _BLOCK_RE.sub(" ", s)
    s = _TAG_RE.sub(" ", s)
    return html.unescape(s)


def attachment_names(msg: EmailMessage) -> list[str]:
    """Filenames of attachment parts."""
    if not msg.is_multipart():
        return []
    names = []
    for part in msg.walk():
        if part.is_multipart():
            continue
        name = part.get_filename()
        if name:
            names.append(str(name))
    return names


def parse_date(value: str) -> datetime | None:
    """Parse an RFC 2822 date header. Naive dates are taken as UTC."""
    if not value:
        return None
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _part_text(part: EmailMessage) -> str:
    try:
        content = part.get_content()
    except (LookupError, ValueError, AssertionError):
        # Unknown charset or broken transfer encoding
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")
    if isinstance(content, bytes):
        return content.decode("utf-8", errors="replace")
    return content if isinstance(content, str) else ""


def _header(msg: EmailMessage, name: str) -> str:
    try:
        value = msg.get(name)
    except (ValueError, TypeError, IndexError):
        value = None
    return _WS_RE.sub(" ", str(value)).strip() if value is not None else ""


def _addresses(msg: EmailMessage, name: str) -> list[str]:
    try:
        values = [str(v) for v in msg.get_all(name, [])]
    except (ValueError, TypeError, IndexError):
        return []
    return [addr.lower() for _, addr in getaddresses(values) if addr]


def _first_address(value: str) -> tuple[str, str]:
    if not value:
        return "", ""
    pairs = getaddresses([value])
    for name, addr in pairs:
        if addr:
            return name, addr.lower()
    return "", value.lower()


def _received_at(sidecar: dict, mtime_ns: int) -> datetime | None:
    received = sidecar.get("received_at")
    if received:
        try:
            dt = datetime.fromisoformat(received)
        except (TypeError, ValueError):
            dt = None
        if dt:
            return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    # Capture stamps the file mtime with the server's receive time
    return datetime.fromtimestamp(mtime_ns / 1e9, tz=timezone.utc)
