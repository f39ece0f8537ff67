"""SQLite connection management."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Generator

from keyword_notifier.errors import StoreCorruption, StoreUnavailable

_BUSY_TIMEOUT_SECONDS = 30.0


@contextmanager
def get_connection(database_path: str) -> Generator[sqlite3.Connection, None, None]:
    """Open a SQLite connection with WAL mode and foreign keys enabled.

    Commits on clean exit, rolls back on exception, and always closes.
    """
    conn = sqlite3.connect(database_path, timeout=_BUSY_TIMEOUT_SECONDS)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def translate_errors(operation: str) -> Generator[None, None, None]:
    """Re-raise sqlite3 errors as the store's transient/permanent error types.

    ``OperationalError`` (locked, unreachable, disk I/O) is retryable; any
    other ``DatabaseError`` (malformed image, constraint violations we never
    expect) means the store can no longer be trusted.
    """
    try:
        yield
    except sqlite3.OperationalError as exc:
        raise StoreUnavailable(f"{operation}: {exc}") from exc
    except sqlite3.DatabaseError as exc:
        raise StoreCorruption(f"{operation}: {exc}") from exc
