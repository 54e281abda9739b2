"""Email archiving and full-text search."""

from .index import IndexManager, IndexResult, IndexStatus, SearchDatabase, read_status
from .models import ContentId, EmailDocument, LocationId, RunStatus, Watermark
from .query import SearchQuery, parse_query
from .search import SearchEngine, SearchResult, SearchResultSet, generate_snippet
from .storage import MaildirStore, StoreResult
from .sync import SyncEngine, SyncOptions, SyncResult
from .sync_state import MemorySyncStateStore, SyncStateStore, YamlSyncStateStore

__all__ = [
    "ContentId",
    "EmailDocument",
    "IndexManager",
    "IndexResult",
    "IndexStatus",
    "LocationId",
    "MaildirStore",
    "MemorySyncStateStore",
    "RunStatus",
    "SearchDatabase",
    "SearchEngine",
    "SearchQuery",
    "SearchResult",
    "SearchResultSet",
    "StoreResult",
    "SyncEngine",
    "SyncOptions",
    "SyncResult",
    "SyncStateStore",
    "Watermark",
    "YamlSyncStateStore",
    "generate_snippet",
    "parse_query",
    "read_status",
]
