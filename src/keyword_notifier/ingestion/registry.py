"""Adapter registry: maps sources to adapter classes."""

from __future__ import annotations

from typing import TYPE_CHECKING

from keyword_notifier.models import Source

if TYPE_CHECKING:
    from keyword_notifier.ingestion.adapter import SourceAdapter

_REGISTRY: dict[Source, type[SourceAdapter]] = {}


def register_adapter(source: Source, cls: type[SourceAdapter]) -> None:
    """Register an adapter class for a given source."""
    _REGISTRY[Source(source)] = cls


def get_adapter_class(source: Source | str) -> type[SourceAdapter] | None:
    """Look up an adapter class by source. Returns None if not found."""
    try:
        return _REGISTRY.get(Source(source))
    except ValueError:
        return None


def registered_sources() -> list[str]:
    """Return a sorted list of all registered source names."""
    return sorted(source.value for source in _REGISTRY)
