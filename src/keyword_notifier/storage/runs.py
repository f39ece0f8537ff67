"""Fetch-cycle history, kept for diagnostics by the serving layer."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from keyword_notifier.errors import IngestionError
from keyword_notifier.models import Source
from keyword_notifier.storage.connection import get_connection, translate_errors

logger = logging.getLogger(__name__)


def record_run(
    database_path: str,
    source: Source,
    started_at: str,
    status: str,
    *,
    items_fetched: int = 0,
    items_written: int = 0,
    cursor: int = 0,
    error: str | None = None,
) -> None:
    """Insert one ingestion_runs row. Never raises.

    Run history is best-effort; a failure here must not turn a successful
    cycle into a failed one.
    """
    finished_at = datetime.now(timezone.utc).isoformat()
    try:
        with translate_errors("record_run"), get_connection(database_path) as conn:
            conn.execute(
                "INSERT INTO ingestion_runs "
                "(id, source, started_at, finished_at, status, "
                "items_fetched, items_written, cursor, error) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    str(uuid.uuid4()),
                    Source(source).value,
                    started_at,
                    finished_at,
                    status,
                    items_fetched,
                    items_written,
                    cursor,
                    error,
                ),
            )
    except IngestionError:
        logger.warning("Could not record %s run for %s", status, Source(source).value, exc_info=True)


def recent_runs(database_path: str, source: Source, limit: int = 20) -> list[dict]:
    """Most recent runs for ``source``, newest first."""
    with translate_errors("recent_runs"), get_connection(database_path) as conn:
        rows = conn.execute(
            "SELECT * FROM ingestion_runs WHERE source = ? "
            "ORDER BY started_at DESC LIMIT ?",
            (Source(source).value, limit),
        ).fetchall()
    return [dict(row) for row in rows]
