"""Dedup & cursor store: per-source cursors and seen-fingerprint sets.

The store is the only state shared between ingestion loops. Every
operation is keyed by source and serialized by that source's lock, so one
source's cursor or fingerprint set never races while other sources proceed
independently. Reads for diagnostics may come from any thread; SQLite's WAL
mode keeps them consistent with committed writes.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from keyword_notifier.errors import StoreCorruption
from keyword_notifier.models import BEGINNING, Cursor, Source
from keyword_notifier.storage.connection import get_connection, translate_errors

logger = logging.getLogger(__name__)

# SQLite's default SQLITE_MAX_VARIABLE_NUMBER on older builds is 999.
_QUERY_CHUNK = 500

_UPSERT_CURSOR_SQL = (
    "INSERT INTO source_cursors (source, position, updated_at) VALUES (?, ?, ?) "
    "ON CONFLICT(source) DO UPDATE SET "
    "position = MAX(position, excluded.position), updated_at = excluded.updated_at"
)

_MARK_SEEN_SQL = (
    "INSERT OR IGNORE INTO seen_fingerprints (source, fingerprint, seen_at) "
    "VALUES (?, ?, ?)"
)


def _chunks(values: list[str], size: int = _QUERY_CHUNK) -> Iterable[list[str]]:
    for i in range(0, len(values), size):
        yield values[i : i + size]


class DedupCursorStore:
    """SQLite-backed store of cursors and fingerprints, partitioned by source."""

    def __init__(self, database_path: str, retention_days: int = 90) -> None:
        self._database_path = database_path
        self._retention_days = retention_days
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def retention_days(self) -> int:
        return self._retention_days

    def _lock_for(self, source: Source) -> threading.Lock:
        key = Source(source).value
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def partition(self, source: Source) -> StorePartition:
        """Return a handle bound to a single source."""
        return StorePartition(self, Source(source))

    # --- Fingerprints ---

    def is_new(self, source: Source, fingerprint: str) -> bool:
        """True if ``fingerprint`` has not been recorded for ``source``."""
        return fingerprint in self.filter_new(source, [fingerprint])

    def filter_new(self, source: Source, fingerprints: Iterable[str]) -> set[str]:
        """Return the subset of ``fingerprints`` not yet seen for ``source``."""
        candidates = sorted(set(fingerprints))
        if not candidates:
            return set()
        seen: set[str] = set()
        with translate_errors("filter_new"), get_connection(self._database_path) as conn:
            for chunk in _chunks(candidates):
                placeholders = ", ".join("?" for _ in chunk)
                rows = conn.execute(
                    "SELECT fingerprint FROM seen_fingerprints "  # noqa: S608
                    f"WHERE source = ? AND fingerprint IN ({placeholders})",
                    (Source(source).value, *chunk),
                ).fetchall()
                seen.update(row["fingerprint"] for row in rows)
        return set(candidates) - seen

    def mark_seen(
        self,
        source: Source,
        fingerprints: Iterable[str],
        seen_at: datetime | None = None,
    ) -> None:
        """Record fingerprints as ingested. Already-seen fingerprints are left as is."""
        values = sorted(set(fingerprints))
        if not values:
            return
        stamp = (seen_at or datetime.now(timezone.utc)).isoformat()
        key = Source(source).value
        with self._lock_for(source):
            with translate_errors("mark_seen"), get_connection(self._database_path) as conn:
                conn.executemany(_MARK_SEEN_SQL, [(key, fp, stamp) for fp in values])

    # --- Cursors ---

    def get_cursor(self, source: Source) -> Cursor:
        """Return the last persisted cursor, or the beginning-of-time sentinel."""
        with translate_errors("get_cursor"), get_connection(self._database_path) as conn:
            row = conn.execute(
                "SELECT position FROM source_cursors WHERE source = ?",
                (Source(source).value,),
            ).fetchone()
        if row is None:
            return BEGINNING
        try:
            return Cursor(int(row["position"]))
        except (TypeError, ValueError) as exc:
            raise StoreCorruption(
                f"Unreadable cursor for {Source(source).value}: {row['position']!r}"
            ) from exc

    def set_cursor(self, source: Source, cursor: Cursor) -> None:
        """Persist ``cursor``. A cursor older than the stored one is ignored."""
        now = datetime.now(timezone.utc).isoformat()
        with self._lock_for(source):
            with translate_errors("set_cursor"), get_connection(self._database_path) as conn:
                conn.execute(_UPSERT_CURSOR_SQL, (Source(source).value, cursor.position, now))

    def advance(
        self,
        source: Source,
        cursor: Cursor,
        fingerprints: Iterable[str],
    ) -> None:
        """Move the cursor and mark fingerprints seen in a single transaction.

        After a crash either both updates are visible or neither is.
        """
        key = Source(source).value
        now = datetime.now(timezone.utc).isoformat()
        rows = [(key, fp, now) for fp in sorted(set(fingerprints))]
        with self._lock_for(source):
            with translate_errors("advance"), get_connection(self._database_path) as conn:
                if rows:
                    conn.executemany(_MARK_SEEN_SQL, rows)
                conn.execute(_UPSERT_CURSOR_SQL, (key, cursor.position, now))

    # --- Retention ---

    def evict_expired(self, source: Source, now: datetime | None = None) -> int:
        """Delete fingerprints older than the retention window. Returns rows removed.

        A retention of 0 days keeps fingerprints forever.
        """
        if self._retention_days <= 0:
            return 0
        cutoff = (
            (now or datetime.now(timezone.utc)) - timedelta(days=self._retention_days)
        ).isoformat()
        with self._lock_for(source):
            with translate_errors("evict_expired"), get_connection(self._database_path) as conn:
                cur = conn.execute(
                    "DELETE FROM seen_fingerprints WHERE source = ? AND seen_at < ?",
                    (Source(source).value, cutoff),
                )
                removed = cur.rowcount
        if removed:
            logger.info(
                "Evicted %d fingerprints older than %d days for %s",
                removed, self._retention_days, Source(source).value,
            )
        return removed

    def cursors(self) -> dict[str, int]:
        """Snapshot of every persisted cursor, keyed by source name."""
        with translate_errors("cursors"), get_connection(self._database_path) as conn:
            rows = conn.execute("SELECT source, position FROM source_cursors").fetchall()
        return {row["source"]: row["position"] for row in rows}


class StorePartition:
    """A store handle bound to one source, owned by that source's loop."""

    def __init__(self, store: DedupCursorStore, source: Source) -> None:
        self._store = store
        self._source = source

    @property
    def source(self) -> Source:
        return self._source

    def is_new(self, fingerprint: str) -> bool:
        return self._store.is_new(self._source, fingerprint)

    def filter_new(self, fingerprints: Iterable[str]) -> set[str]:
        return self._store.filter_new(self._source, fingerprints)

    def mark_seen(self, fingerprints: Iterable[str]) -> None:
        self._store.mark_seen(self._source, fingerprints)

    def get_cursor(self) -> Cursor:
        return self._store.get_cursor(self._source)

    def set_cursor(self, cursor: Cursor) -> None:
        self._store.set_cursor(self._source, cursor)

    def advance(self, cursor: Cursor, fingerprints: Iterable[str]) -> None:
        self._store.advance(self._source, cursor, fingerprints)

    def evict_expired(self, now: datetime | None = None) -> int:
        return self._store.evict_expired(self._source, now)


