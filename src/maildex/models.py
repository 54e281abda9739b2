"""Types shared by the capture, index, and search layers."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import NewType


# A message has two identities. ContentId names the logical message (derived
# from its Message-ID) and drives within-folder dedup on capture. LocationId is
# the path of one physical copy and is the only key of the search index.
ContentId = NewType("ContentId", str)
LocationId = NewType("LocationId", str)


class RunStatus(Enum):
    """Outcome of a sync or index run."""
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class Watermark:
    """Resume point for one remote folder."""
    folder: str
    uidvalidity: int
    last_uid: int


@dataclass
class EmailDocument:
    """One archived file, parsed into the fields the index stores."""
    content_id: ContentId
    location: LocationId
    mtime_ns: int
    subject: str = ""
    from_address: str = ""
    from_name: str = ""
    to_addresses: list[str] = field(default_factory=list)
    cc_addresses: list[str] = field(default_factory=list)
    bcc_addresses: list[str] = field(default_factory=list)
    date_sent: datetime | None = None
    date_received: datetime | None = None
    account: str | None = None
    folder: str | None = None
    has_attachments: bool = False
    attachment_names: list[str] = field(default_factory=list)
    body_preview: str = ""
    body_text: str | None = None
