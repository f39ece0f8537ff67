"""Core value types: sources, cursors and normalized records."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Source(str, Enum):
    """External sources the fetchers know about."""

    STACKOVERFLOW = "stackoverflow"
    TWITTER = "twitter"


@dataclass(frozen=True, order=True)
class Cursor:
    """Position in an upstream ordering.

    StackOverflow uses the newest question ``creation_date`` (epoch seconds),
    Twitter the newest tweet id. Both grow monotonically upstream, so the
    position is a plain integer and cursors compare by value.
    """

    position: int = 0

    def __post_init__(self) -> None:
        if self.position < 0:
            raise ValueError(f"cursor position must be >= 0, got {self.position}")

    @property
    def is_beginning(self) -> bool:
        return self.position == 0


BEGINNING = Cursor(0)


@dataclass(frozen=True)
class Record:
    """Normalized unit of fetched content, as stored in the records table."""

    source: Source
    external_id: str
    fingerprint: str
    title: str
    url: str | None
    published_at: str | None
    fetched_at: str
    payload: dict = field(default_factory=dict, compare=False)
