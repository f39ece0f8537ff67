"""Record sink: appends normalized records for the serving layer to read."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence

from keyword_notifier.models import Record, Source
from keyword_notifier.storage.connection import get_connection, translate_errors

logger = logging.getLogger(__name__)

_INSERT_SQL = (
    "INSERT OR IGNORE INTO records "
    "(source, external_id, fingerprint, title, url, published_at, payload, fetched_at) "
    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
)


class SqliteSink:
    """Writes record batches into the ``records`` table.

    Each ``write`` call runs in one transaction: either every record of the
    batch is committed or none is. A record whose ``(source, external_id)``
    already exists is skipped, which makes replaying a batch after a crash
    harmless.
    """

    def __init__(self, database_path: str) -> None:
        self._database_path = database_path

    def write(self, source: Source, records: Sequence[Record]) -> int:
        """Persist ``records`` for ``source``. Returns the number of rows inserted.

        Raises StoreUnavailable or StoreCorruption on failure, in which case
        nothing from the batch is visible.
        """
        if not records:
            return 0
        key = Source(source).value
        for record in records:
            if record.source != source:
                raise ValueError(
                    f"Record {record.external_id} belongs to {record.source.value}, not {key}"
                )

        rows = [
            (
                key,
                r.external_id,
                r.fingerprint,
                r.title,
                r.url,
                r.published_at,
                json.dumps(r.payload, sort_keys=True),
                r.fetched_at,
            )
            for r in records
        ]
        with translate_errors("sink write"), get_connection(self._database_path) as conn:
            before = conn.total_changes
            conn.executemany(_INSERT_SQL, rows)
            inserted = conn.total_changes - before

        logger.info("Wrote %d/%d records for %s", inserted, len(records), key)
        return inserted

    def count(self, source: Source | None = None) -> int:
        """Number of stored records, optionally for one source."""
        with translate_errors("sink count"), get_connection(self._database_path) as conn:
            if source is None:
                row = conn.execute("SELECT COUNT(*) AS n FROM records").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM records WHERE source = ?",
                    (Source(source).value,),
                ).fetchone()
        return row["n"]
