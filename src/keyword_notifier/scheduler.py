"""Scheduling: one independent interval job per source.

Each source's loop runs as its own APScheduler job with ``max_instances=1``,
so cycles for one source never overlap while different sources run in
parallel worker threads. Backoff delays move the job's next run time;
a failed source has its job removed and the operator is alerted.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from keyword_notifier.alerts import send_source_failed_alert
from keyword_notifier.config import Config
import keyword_notifier.ingestion  # noqa: F401  registers adapters
from keyword_notifier.ingestion.backoff import ExponentialBackoff
from keyword_notifier.ingestion.loop import CycleResult, IngestionLoop, LoopState
from keyword_notifier.ingestion.registry import get_adapter_class
from keyword_notifier.storage.sink import SqliteSink
from keyword_notifier.storage.store import DedupCursorStore

logger = logging.getLogger(__name__)

AlertFn = Callable[[str, str], None]


def build_loops(config: Config) -> list[IngestionLoop]:
    """Create one ingestion loop per enabled source."""
    store = DedupCursorStore(config.database_path, retention_days=config.dedup_retention_days)
    sink = SqliteSink(config.database_path)
    loops: list[IngestionLoop] = []

    for source_config in config.sources:
        if not source_config.enabled:
            logger.info("Source %s disabled, skipping", source_config.source.value)
            continue
        adapter_cls = get_adapter_class(source_config.source)
        if adapter_cls is None:
            logger.warning("No adapter registered for '%s', skipping", source_config.source.value)
            continue
        loops.append(
            IngestionLoop(
                adapter_cls(),
                source_config,
                store.partition(source_config.source),
                sink,
                backoff=ExponentialBackoff(
                    base_delay=config.backoff_base_seconds,
                    max_delay=config.backoff_max_seconds,
                    jitter=config.backoff_jitter,
                ),
                database_path=config.database_path,
            )
        )
    return loops


def _job_id(loop: IngestionLoop) -> str:
    return f"ingest:{loop.source.value}"


class IngestionScheduler:
    """Runs ingestion loops on a background scheduler."""

    def __init__(
        self,
        loops: list[IngestionLoop],
        intervals: dict[str, int],
        alert: AlertFn | None = None,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        self._loops = loops
        self._intervals = intervals
        self._alert = alert
        self._scheduler = scheduler or BackgroundScheduler(timezone=timezone.utc)
        self._failed: set[str] = set()
        self._failed_lock = threading.Lock()
        self.all_failed = threading.Event()

    @classmethod
    def from_config(cls, config: Config, loops: list[IngestionLoop]) -> IngestionScheduler:
        def alert(source: str, reason: str) -> None:
            send_source_failed_alert(
                config.telegram_bot_token, config.telegram_chat_id, source, reason
            )

        intervals = {sc.source.value: sc.interval_seconds for sc in config.sources}
        return cls(loops, intervals, alert=alert)

    @property
    def failed_sources(self) -> set[str]:
        with self._failed_lock:
            return set(self._failed)

    def start(self) -> None:
        """Schedule every loop, first run immediately, and start the scheduler."""
        now = datetime.now(timezone.utc)
        for loop in self._loops:
            # An unusable interval still gets one run so the loop can fail and alert.
            interval = max(self._intervals.get(loop.source.value, 60), 1)
            self._scheduler.add_job(
                self._run_cycle,
                trigger=IntervalTrigger(seconds=interval),
                args=[loop],
                id=_job_id(loop),
                name=f"Ingestion loop ({loop.source.value})",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=interval,
                next_run_time=now,
            )
            logger.info("Scheduled %s every %ds", loop.source.value, interval)
        if not self._loops:
            logger.warning("No sources enabled; nothing to ingest")
            self.all_failed.set()
        self._scheduler.start()

    def shutdown(self) -> None:
        """Stop all loops and wait for in-flight cycles to finish or abandon."""
        for loop in self._loops:
            loop.request_stop()
        self._scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped")

    def _reschedule(self, loop: IngestionLoop, delay: float) -> None:
        next_run = datetime.now(timezone.utc) + timedelta(seconds=delay)
        try:
            self._scheduler.modify_job(_job_id(loop), next_run_time=next_run)
        except JobLookupError:
            logger.debug("Job for %s no longer scheduled", loop.source.value)
            return
        logger.info("source=%s next attempt at %s", loop.source.value, next_run.isoformat())

    def _run_cycle(self, loop: IngestionLoop) -> CycleResult | None:
        """Job body: one cycle, then apply its scheduling consequences."""
        if loop.stopping:
            return None
        try:
            result = loop.run_once()
        except Exception:
            # Unexpected crash: behave like a supervisor restart after a backoff.
            logger.exception("source=%s cycle crashed", loop.source.value)
            self._reschedule(loop, loop.backoff.next_delay())
            return None

        if result.state is LoopState.FAILED:
            self._on_failed(loop, result)
        elif result.state is LoopState.BACKOFF and result.retry_in is not None:
            self._reschedule(loop, result.retry_in)
        elif result.retry_in and result.retry_in > self._intervals.get(loop.source.value, 0):
            self._reschedule(loop, result.retry_in)
        return result

    def _on_failed(self, loop: IngestionLoop, result: CycleResult) -> None:
        try:
            self._scheduler.remove_job(_job_id(loop))
        except JobLookupError:
            pass  # already removed
        reason = result.error or "unknown error"
        logger.error("source=%s stopped; no further fetches until restart", loop.source.value)
        if self._alert is not None:
            self._alert(loop.source.value, reason)
        with self._failed_lock:
            self._failed.add(loop.source.value)
            if len(self._failed) == len(self._loops):
                self.all_failed.set()
