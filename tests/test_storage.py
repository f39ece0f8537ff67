"""Tests for keyword_notifier.storage: schema, dedup/cursor store and sink."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest

from keyword_notifier.errors import StoreCorruption, StoreUnavailable
from keyword_notifier.models import BEGINNING, Cursor, Record, Source
from keyword_notifier.storage.connection import get_connection, translate_errors
from keyword_notifier.storage.runs import record_run, recent_runs
from keyword_notifier.storage.schema import init_db
from keyword_notifier.storage.sink import SqliteSink
from keyword_notifier.storage.store import DedupCursorStore

EXPECTED_TABLES = {"records", "source_cursors", "seen_fingerprints", "ingestion_runs"}


@pytest.fixture()
def db_path(tmp_path):
    path = str(tmp_path / "test.db")
    init_db(path)
    return path


@pytest.fixture()
def store(db_path):
    return DedupCursorStore(db_path, retention_days=90)


@pytest.fixture()
def sink(db_path):
    return SqliteSink(db_path)


def _record(external_id: str, source: Source = Source.STACKOVERFLOW, fingerprint: str | None = None) -> Record:
    return Record(
        source=source,
        external_id=external_id,
        fingerprint=fingerprint or f"fp-{external_id}",
        title=f"Title {external_id}",
        url=f"https://example.com/{external_id}",
        published_at="2024-05-01T12:00:00+00:00",
        fetched_at="2024-05-01T13:00:00+00:00",
        payload={"text": f"text {external_id}"},
    )


# --- Schema ---


def test_init_db_creates_all_tables(db_path):
    with get_connection(db_path) as conn:
        rows = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        ).fetchall()
    assert {row["name"] for row in rows} == EXPECTED_TABLES


def test_init_db_is_idempotent(db_path):
    init_db(db_path)


def test_wal_mode_enabled(db_path):
    with get_connection(db_path) as conn:
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
    assert mode == "wal"


def test_records_primary_key_is_source_and_external_id(db_path):
    with get_connection(db_path) as conn:
        conn.execute(
            "INSERT INTO records (source, external_id, fingerprint, title, payload, fetched_at) "
            "VALUES ('twitter', 'tw-1', 'a', 't', '{}', 'now')"
        )
        # Same external id under another source is allowed
        conn.execute(
            "INSERT INTO records (source, external_id, fingerprint, title, payload, fetched_at) "
            "VALUES ('stackoverflow', 'tw-1', 'a', 't', '{}', 'now')"
        )
    with pytest.raises(sqlite3.IntegrityError):
        with get_connection(db_path) as conn:
            conn.execute(
                "INSERT INTO records (source, external_id, fingerprint, title, payload, fetched_at) "
                "VALUES ('twitter', 'tw-1', 'b', 't', '{}', 'now')"
            )


# --- Error translation ---


class TestTranslateErrors:
    def test_operational_error_is_unavailable(self):
        with pytest.raises(StoreUnavailable, match="op"):
            with translate_errors("op"):
                raise sqlite3.OperationalError("database is locked")

    def test_database_error_is_corruption(self):
        with pytest.raises(StoreCorruption):
            with translate_errors("op"):
                raise sqlite3.DatabaseError("database disk image is malformed")

    def test_unreachable_database_is_unavailable(self, tmp_path):
        store = DedupCursorStore(str(tmp_path / "missing" / "dir" / "test.db"))
        with pytest.raises(StoreUnavailable):
            store.get_cursor(Source.TWITTER)


# --- Cursors ---


class TestCursors:
    def test_defaults_to_beginning(self, store):
        assert store.get_cursor(Source.TWITTER) == BEGINNING

    def test_set_and_get(self, store):
        store.set_cursor(Source.TWITTER, Cursor(10))
        assert store.get_cursor(Source.TWITTER) == Cursor(10)

    def test_never_moves_backwards(self, store):
        store.set_cursor(Source.TWITTER, Cursor(10))
        store.set_cursor(Source.TWITTER, Cursor(3))
        assert store.get_cursor(Source.TWITTER) == Cursor(10)

    def test_sources_are_independent(self, store):
        store.set_cursor(Source.TWITTER, Cursor(10))
        assert store.get_cursor(Source.STACKOVERFLOW) == BEGINNING

    def test_cursors_snapshot(self, store):
        store.set_cursor(Source.TWITTER, Cursor(7))
        store.set_cursor(Source.STACKOVERFLOW, Cursor(9))
        assert store.cursors() == {"twitter": 7, "stackoverflow": 9}

    def test_negative_cursor_rejected(self):
        with pytest.raises(ValueError):
            Cursor(-1)

    def test_corrupt_cursor_row(self, store, db_path):
        with get_connection(db_path) as conn:
            conn.execute(
                "INSERT INTO source_cursors (source, position, updated_at) VALUES ('twitter', 'abc', 'now')"
            )
        with pytest.raises(StoreCorruption):
            store.get_cursor(Source.TWITTER)


# --- Fingerprints ---


class TestFingerprints:
    def test_unseen_is_new(self, store):
        assert store.is_new(Source.TWITTER, "fp-1") is True

    def test_mark_seen(self, store):
        store.mark_seen(Source.TWITTER, {"fp-1"})
        assert store.is_new(Source.TWITTER, "fp-1") is False

    def test_mark_seen_is_idempotent(self, store, db_path):
        store.mark_seen(Source.TWITTER, {"fp-1"})
        store.mark_seen(Source.TWITTER, {"fp-1"})
        with get_connection(db_path) as conn:
            count = conn.execute("SELECT COUNT(*) FROM seen_fingerprints").fetchone()[0]
        assert count == 1

    def test_partitioned_by_source(self, store):
        store.mark_seen(Source.TWITTER, {"fp-1"})
        assert store.is_new(Source.STACKOVERFLOW, "fp-1") is True

    def test_filter_new(self, store):
        store.mark_seen(Source.TWITTER, {"a", "b"})
        assert store.filter_new(Source.TWITTER, ["a", "c", "d", "c"]) == {"c", "d"}

    def test_filter_new_handles_large_batches(self, store):
        seen = {f"fp-{i}" for i in range(0, 1200, 2)}
        store.mark_seen(Source.TWITTER, seen)
        candidates = [f"fp-{i}" for i in range(1200)]
        assert store.filter_new(Source.TWITTER, candidates) == set(candidates) - seen

    def test_filter_new_empty(self, store):
        assert store.filter_new(Source.TWITTER, []) == set()


class TestAdvance:
    def test_sets_cursor_and_fingerprints_together(self, store):
        store.advance(Source.TWITTER, Cursor(42), ["fp-1", "fp-2"])
        assert store.get_cursor(Source.TWITTER) == Cursor(42)
        assert store.filter_new(Source.TWITTER, ["fp-1", "fp-2"]) == set()

    def test_with_no_fingerprints_moves_cursor(self, store):
        store.advance(Source.TWITTER, Cursor(5), [])
        assert store.get_cursor(Source.TWITTER) == Cursor(5)

    def test_failed_advance_changes_nothing(self, store, db_path):
        # A cursor that violates the CHECK constraint aborts the transaction
        # after the fingerprints were inserted; neither must be visible.
        bad = Cursor.__new__(Cursor)
        object.__setattr__(bad, "position", -5)
        with pytest.raises(StoreCorruption):
            store.advance(Source.TWITTER, bad, ["fp-1"])
        assert store.get_cursor(Source.TWITTER) == BEGINNING
        assert store.is_new(Source.TWITTER, "fp-1") is True

    def test_partition_handle(self, store):
        partition = store.partition(Source.STACKOVERFLOW)
        assert partition.source is Source.STACKOVERFLOW
        partition.advance(Cursor(10), ["fp"])
        assert partition.get_cursor() == Cursor(10)
        assert partition.is_new("fp") is False
        assert store.is_new(Source.TWITTER, "fp") is True

    def test_concurrent_sources_do_not_interfere(self, store):
        errors: list[Exception] = []

        def work(source: Source) -> None:
            try:
                for i in range(1, 21):
                    store.advance(source, Cursor(i), [f"{source.value}-{i}"])
            except Exception as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=work, args=(s,)) for s in Source]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        for source in Source:
            assert store.get_cursor(source) == Cursor(20)
            assert store.filter_new(source, [f"{source.value}-{i}" for i in range(1, 21)]) == set()


class TestEviction:
    def test_evicts_only_outside_window(self, store):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        store.mark_seen(Source.TWITTER, {"old"}, seen_at=now - timedelta(days=91))
        store.mark_seen(Source.TWITTER, {"recent"}, seen_at=now - timedelta(days=89))

        removed = store.evict_expired(Source.TWITTER, now=now)

        assert removed == 1
        assert store.is_new(Source.TWITTER, "old") is True
        assert store.is_new(Source.TWITTER, "recent") is False

    def test_eviction_is_per_source(self, store):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        store.mark_seen(Source.STACKOVERFLOW, {"old"}, seen_at=now - timedelta(days=200))
        store.evict_expired(Source.TWITTER, now=now)
        assert store.is_new(Source.STACKOVERFLOW, "old") is False

    def test_zero_retention_keeps_forever(self, db_path):
        store = DedupCursorStore(db_path, retention_days=0)
        store.mark_seen(Source.TWITTER, {"ancient"}, seen_at=datetime(2000, 1, 1, tzinfo=timezone.utc))
        assert store.evict_expired(Source.TWITTER) == 0
        assert store.is_new(Source.TWITTER, "ancient") is False


# --- Sink ---


class TestSink:
    def test_writes_records(self, sink, db_path):
        written = sink.write(Source.STACKOVERFLOW, [_record("so-1"), _record("so-2")])

        assert written == 2
        with get_connection(db_path) as conn:
            rows = conn.execute("SELECT * FROM records ORDER BY external_id").fetchall()
        assert [r["external_id"] for r in rows] == ["so-1", "so-2"]
        assert rows[0]["source"] == "stackoverflow"
        assert json.loads(rows[0]["payload"]) == {"text": "text so-1"}

    def test_existing_external_id_is_skipped(self, sink):
        sink.write(Source.STACKOVERFLOW, [_record("so-1")])
        written = sink.write(Source.STACKOVERFLOW, [_record("so-1", fingerprint="changed"), _record("so-2")])
        assert written == 1
        assert sink.count(Source.STACKOVERFLOW) == 2

    def test_empty_batch(self, sink):
        assert sink.write(Source.TWITTER, []) == 0

    def test_rejects_foreign_records(self, sink):
        with pytest.raises(ValueError):
            sink.write(Source.TWITTER, [_record("so-1", source=Source.STACKOVERFLOW)])
        assert sink.count() == 0

    def test_batch_is_all_or_nothing(self, sink, db_path):
        with get_connection(db_path) as conn:
            conn.execute(
                "CREATE TRIGGER reject_bad BEFORE INSERT ON records "
                "WHEN NEW.external_id = 'so-bad' "
                "BEGIN SELECT RAISE(ABORT, 'bad record'); END"
            )
        with pytest.raises(StoreCorruption):
            sink.write(Source.STACKOVERFLOW, [_record("so-1"), _record("so-bad")])
        assert sink.count() == 0

    def test_count_by_source(self, sink):
        sink.write(Source.STACKOVERFLOW, [_record("so-1")])
        sink.write(Source.TWITTER, [_record("tw-1", source=Source.TWITTER)])
        assert sink.count() == 2
        assert sink.count(Source.TWITTER) == 1


# --- Runs ---


class TestRuns:
    def test_record_and_read_back(self, db_path):
        record_run(
            db_path, Source.TWITTER, "2024-05-01T00:00:00+00:00", "success",
            items_fetched=3, items_written=2, cursor=99,
        )
        runs = recent_runs(db_path, Source.TWITTER)
        assert len(runs) == 1
        assert runs[0]["status"] == "success"
        assert runs[0]["items_written"] == 2
        assert runs[0]["cursor"] == 99

    def test_record_run_never_raises(self, tmp_path):
        record_run(str(tmp_path / "nope" / "x.db"), Source.TWITTER, "now", "success")
