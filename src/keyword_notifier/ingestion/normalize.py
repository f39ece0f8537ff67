"""Normalization: validate raw adapter items and turn them into Records."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from keyword_notifier.ingestion.dedup import compute_fingerprint
from keyword_notifier.models import Record, Source

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawItem:
    """Item emitted by a source adapter, before normalization."""

    external_id: str
    text: str
    author: str | None = None
    created_at: str | None = None
    title: str | None = None
    url: str | None = None
    payload: dict = field(default_factory=dict, compare=False)


def _validate_raw_item(raw: RawItem) -> list[str]:
    """Validate a RawItem against the input contract. Returns a list of errors."""
    errors: list[str] = []
    if not raw.external_id or not raw.external_id.strip():
        errors.append("external_id is required and must be non-empty")
    if not raw.text or not raw.text.strip():
        errors.append("text is required and must be non-empty")
    if raw.created_at is not None:
        try:
            datetime.fromisoformat(raw.created_at)
        except ValueError:
            errors.append(f"created_at '{raw.created_at}' is not valid ISO 8601")
    return errors


def normalize(raw: RawItem, source: Source, fetched_at: str | None = None) -> Record:
    """Transform a RawItem into a Record for ``source``.

    Validates required fields, computes the content fingerprint and falls
    back to the text for the title when the adapter supplied none.

    Raises ValueError if validation fails.
    """
    errors = _validate_raw_item(raw)
    if errors:
        raise ValueError(f"Invalid RawItem: {'; '.join(errors)}")

    source = Source(source)
    title = (raw.title or raw.text).strip()
    return Record(
        source=source,
        external_id=raw.external_id.strip(),
        fingerprint=compute_fingerprint(source.value, raw.text, raw.author, raw.created_at),
        title=title,
        url=raw.url,
        published_at=raw.created_at,
        fetched_at=fetched_at or datetime.now(timezone.utc).isoformat(),
        payload={"text": raw.text, "author": raw.author, **raw.payload},
    )
