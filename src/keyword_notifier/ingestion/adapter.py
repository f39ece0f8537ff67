"""Source adapter interface."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from keyword_notifier.config import SourceConfig
from keyword_notifier.errors import FetchCancelled, UpstreamPermanentError
from keyword_notifier.ingestion.normalize import RawItem
from keyword_notifier.models import Cursor, Source


@dataclass(frozen=True)
class FetchResult:
    """One adapter response: items strictly newer than the request cursor.

    ``items`` are ordered oldest first. ``cursor`` is where the next fetch
    resumes; it equals the request cursor when nothing new arrived.
    ``retry_hint`` is a minimum wait in seconds the upstream asked for
    before the next request, if any.
    """

    items: list[RawItem] = field(default_factory=list)
    cursor: Cursor = Cursor()
    retry_hint: float | None = None


def check_source_config(config: SourceConfig) -> None:
    """Reject settings that no adapter can fetch with."""
    name = config.source.value
    if config.errors:
        raise UpstreamPermanentError(f"Invalid {name} settings: {'; '.join(config.errors)}")
    if config.batch_limit < 1:
        raise UpstreamPermanentError(f"{name} batch limit must be at least 1, got {config.batch_limit}")
    if config.interval_seconds < 1:
        raise UpstreamPermanentError(
            f"{name} interval must be at least 1 second, got {config.interval_seconds}"
        )


def check_stop(stop: threading.Event | None) -> None:
    """Raise FetchCancelled if ``stop`` is set. Adapters call this before each request."""
    if stop is not None and stop.is_set():
        raise FetchCancelled


class SourceAdapter(ABC):
    """Abstract base class for source adapters.

    Every adapter knows how to fetch and parse items from a specific
    upstream API. The rest of the system is source-agnostic. Adapters hold
    no state across calls beyond their immutable configuration.
    """

    @property
    @abstractmethod
    def source(self) -> Source:
        """The source this adapter serves."""

    @property
    def name(self) -> str:
        """Human-readable adapter name."""
        return self.source.value

    @abstractmethod
    def configure(self, config: SourceConfig) -> None:
        """Accept and validate source configuration.

        Raises UpstreamPermanentError when the configuration can never
        work (missing credentials, empty query, unusable limits).
        """

    @abstractmethod
    def fetch(
        self,
        cursor: Cursor,
        limit: int,
        stop: threading.Event | None = None,
    ) -> FetchResult:
        """Fetch at most ``limit`` items newer than ``cursor``.

        Raises TransientNetworkError, RateLimited or UpstreamPermanentError,
        and FetchCancelled once ``stop`` is set.
        """
