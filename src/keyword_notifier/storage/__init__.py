"""Storage layer: SQLite record sink, dedup/cursor store and schema."""

from keyword_notifier.storage.connection import get_connection
from keyword_notifier.storage.schema import init_db
from keyword_notifier.storage.sink import SqliteSink
from keyword_notifier.storage.store import DedupCursorStore, StorePartition

__all__ = ["DedupCursorStore", "SqliteSink", "StorePartition", "get_connection", "init_db"]
