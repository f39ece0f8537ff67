"""Database schema definition and initialization."""

from __future__ import annotations

import logging

from keyword_notifier.storage.connection import get_connection

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """\
-- Normalized records, read by the serving layer
CREATE TABLE IF NOT EXISTS records (
    source          TEXT NOT NULL,
    external_id     TEXT NOT NULL,
    fingerprint     TEXT NOT NULL,
    title           TEXT NOT NULL,
    url             TEXT,
    published_at    TEXT,
    payload         TEXT NOT NULL,          -- JSON object
    fetched_at      TEXT NOT NULL,
    PRIMARY KEY (source, external_id)
);

-- Last durably processed position per source
CREATE TABLE IF NOT EXISTS source_cursors (
    source          TEXT PRIMARY KEY,
    position        INTEGER NOT NULL CHECK (position >= 0),
    updated_at      TEXT NOT NULL
);

-- Content fingerprints already ingested, partitioned by source
CREATE TABLE IF NOT EXISTS seen_fingerprints (
    source          TEXT NOT NULL,
    fingerprint     TEXT NOT NULL,
    seen_at         TEXT NOT NULL,
    PRIMARY KEY (source, fingerprint)
);

-- One row per fetch cycle, for diagnostics
CREATE TABLE IF NOT EXISTS ingestion_runs (
    id              TEXT PRIMARY KEY,
    source          TEXT NOT NULL,
    started_at      TEXT NOT NULL,
    finished_at     TEXT NOT NULL,
    status          TEXT NOT NULL CHECK (status IN (
                        'success', 'backoff', 'failed', 'abandoned'
                    )),
    items_fetched   INTEGER NOT NULL DEFAULT 0,
    items_written   INTEGER NOT NULL DEFAULT 0,
    cursor          INTEGER NOT NULL DEFAULT 0,
    error           TEXT
);

-- Indexes: records
CREATE INDEX IF NOT EXISTS idx_records_fetched_at ON records(fetched_at);
CREATE INDEX IF NOT EXISTS idx_records_source_fingerprint ON records(source, fingerprint);

-- Indexes: seen_fingerprints
CREATE INDEX IF NOT EXISTS idx_seen_fingerprints_seen_at ON seen_fingerprints(source, seen_at);

-- Indexes: ingestion_runs
CREATE INDEX IF NOT EXISTS idx_ingestion_runs_source_started_at
    ON ingestion_runs(source, started_at);
"""


def init_db(database_path: str) -> None:
    """Create all tables and indexes if they do not already exist."""
    with get_connection(database_path) as conn:
        conn.executescript(_SCHEMA_SQL)
    logger.info("Database initialized at %s", database_path)
