"""Per-source ingestion loop: fetch, deduplicate, write, then advance.

One ``IngestionLoop`` owns one source. ``run_once`` performs a single
cycle of the state machine::

    IDLE -> FETCHING -> DEDUPLICATING -> WRITING -> ADVANCING -> IDLE
                 \\-> BACKOFF (transient error) -> FETCHING on the next tick
    any state -> FAILED (permanent error, terminal)

The cursor only moves after the sink has durably written the batch, and
the cursor and the batch's fingerprints are committed together. A crash
between WRITING and ADVANCING therefore replays the same items on restart;
the sink ignores records it already holds, so the replay writes nothing
twice.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

from keyword_notifier.config import SourceConfig
from keyword_notifier.errors import FetchCancelled, PermanentError, RateLimited, TransientError
from keyword_notifier.ingestion.adapter import SourceAdapter
from keyword_notifier.ingestion.backoff import ExponentialBackoff
from keyword_notifier.ingestion.normalize import RawItem, normalize
from keyword_notifier.models import Cursor, Record, Source
from keyword_notifier.storage.runs import record_run
from keyword_notifier.storage.store import StorePartition

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DEDUPLICATING = "deduplicating"
    WRITING = "writing"
    ADVANCING = "advancing"
    BACKOFF = "backoff"
    FAILED = "failed"


class Sink(Protocol):
    def write(self, source: Source, records: list[Record]) -> int: ...


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one ``run_once`` call.

    ``retry_in`` is set when the next attempt must wait at least that many
    seconds (backoff, or an upstream hint on success).
    """

    source: Source
    state: LoopState
    fetched: int = 0
    written: int = 0
    cursor: Cursor = Cursor()
    retry_in: float | None = None
    error: str | None = None
    abandoned: bool = False


class _Abandoned(Exception):
    """Raised internally when a stop request arrives before WRITING."""


class IngestionLoop:
    """Drives one source adapter through fetch cycles."""

    def __init__(
        self,
        adapter: SourceAdapter,
        config: SourceConfig,
        store: StorePartition,
        sink: Sink,
        backoff: ExponentialBackoff | None = None,
        database_path: str | None = None,
    ) -> None:
        if store.source != adapter.source or config.source != adapter.source:
            raise ValueError(
                f"Adapter for {adapter.source.value} wired to "
                f"{store.source.value}/{config.source.value}"
            )
        self._adapter = adapter
        self._config = config
        self._store = store
        self._sink = sink
        self._backoff = backoff or ExponentialBackoff()
        self._database_path = database_path
        self._state = LoopState.IDLE
        self._configured = False
        self._failure: str | None = None
        self._stop = threading.Event()

    @property
    def source(self) -> Source:
        return self._adapter.source

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def failure(self) -> str | None:
        return self._failure

    @property
    def backoff(self) -> ExponentialBackoff:
        return self._backoff

    def request_stop(self) -> None:
        """Ask the loop to stop. A cycle that has not started writing is abandoned."""
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def _transition(self, new_state: LoopState, **details) -> None:
        old_state = self._state
        self._state = new_state
        extra = " ".join(f"{key}={value}" for key, value in details.items())
        logger.info(
            "source=%s transition %s -> %s%s",
            self.source.value, old_state.value, new_state.value,
            f" {extra}" if extra else "",
        )

    def _fail(self, exc: PermanentError, started_at: str) -> CycleResult:
        self._failure = f"{type(exc).__name__}: {exc}"
        self._transition(LoopState.FAILED, error=type(exc).__name__)
        logger.error("source=%s halted: %s", self.source.value, self._failure)
        self._record(started_at, "failed", error=self._failure)
        return CycleResult(self.source, LoopState.FAILED, error=self._failure)

    def _record(self, started_at: str, status: str, **fields) -> None:
        if self._database_path is not None:
            record_run(self._database_path, self.source, started_at, status, **fields)

    def _check_stop(self) -> None:
        if self._stop.is_set():
            raise _Abandoned

    def deduplicate(self, items: list[RawItem]) -> list[Record]:
        """Normalize items and keep those whose fingerprint has not been seen.

        Invalid items are logged and dropped. Within the batch the first
        occurrence of a fingerprint or external id wins.
        """
        fetched_at = datetime.now(timezone.utc).isoformat()
        candidates: list[Record] = []
        fingerprints: set[str] = set()
        external_ids: set[str] = set()
        for raw in items:
            try:
                record = normalize(raw, self.source, fetched_at=fetched_at)
            except ValueError as exc:
                logger.warning("source=%s skipping invalid item: %s", self.source.value, exc)
                continue
            if record.fingerprint in fingerprints or record.external_id in external_ids:
                continue
            fingerprints.add(record.fingerprint)
            external_ids.add(record.external_id)
            candidates.append(record)

        new = self._store.filter_new(fingerprints)
        return [r for r in candidates if r.fingerprint in new]

    def run_once(self) -> CycleResult:
        """Run one fetch cycle. Never raises for IngestionError subclasses."""
        if self._state is LoopState.FAILED:
            return CycleResult(self.source, LoopState.FAILED, error=self._failure)

        started_at = datetime.now(timezone.utc).isoformat()

        if not self._configured:
            try:
                self._adapter.configure(self._config)
            except PermanentError as exc:
                return self._fail(exc, started_at)
            self._configured = True

        if self._stop.is_set():
            return CycleResult(self.source, self._state, abandoned=True)

        fetched = 0
        written = 0
        cursor = Cursor()
        try:
            self._transition(LoopState.FETCHING)
            cursor = self._store.get_cursor()
            result = self._adapter.fetch(cursor, self._config.batch_limit, self._stop)
            fetched = len(result.items)
            self._check_stop()

            self._transition(LoopState.DEDUPLICATING, fetched=fetched)
            records = self.deduplicate(result.items)
            self._check_stop()

            if records:
                self._transition(LoopState.WRITING, batch=len(records))
                written = self._sink.write(self.source, records)

            new_cursor = max(result.cursor, cursor)
            self._transition(
                LoopState.ADVANCING, cursor=f"{cursor.position}->{new_cursor.position}"
            )
            self._store.advance(new_cursor, [r.fingerprint for r in records])
            self._transition(LoopState.IDLE, written=written)
        except (_Abandoned, FetchCancelled):
            self._transition(LoopState.IDLE, abandoned=True)
            self._record(started_at, "abandoned", items_fetched=fetched, cursor=cursor.position)
            return CycleResult(
                self.source, LoopState.IDLE, fetched=fetched, cursor=cursor, abandoned=True
            )
        except TransientError as exc:
            delay = self._backoff.next_delay()
            if isinstance(exc, RateLimited) and exc.retry_after is not None:
                delay = max(delay, exc.retry_after)
            self._transition(
                LoopState.BACKOFF,
                error=type(exc).__name__,
                attempt=self._backoff.attempt,
                delay=f"{delay:.1f}s",
            )
            logger.warning("source=%s transient failure: %s", self.source.value, exc)
            self._record(
                started_at, "backoff",
                items_fetched=fetched, cursor=cursor.position, error=str(exc),
            )
            return CycleResult(
                self.source, LoopState.BACKOFF,
                fetched=fetched, cursor=cursor, retry_in=delay, error=str(exc),
            )
        except PermanentError as exc:
            return self._fail(exc, started_at)

        self._backoff.reset()
        try:
            self._store.evict_expired()
        except TransientError:
            logger.warning("source=%s fingerprint eviction deferred", self.source.value, exc_info=True)
        except PermanentError as exc:
            return self._fail(exc, started_at)

        self._record(
            started_at, "success",
            items_fetched=fetched, items_written=written, cursor=new_cursor.position,
        )
        return CycleResult(
            self.source, LoopState.IDLE,
            fetched=fetched, written=written, cursor=new_cursor, retry_in=result.retry_hint,
        )
