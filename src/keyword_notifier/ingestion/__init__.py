"""Ingestion pipeline: source adapters, normalization, dedup and the fetch loop."""

from keyword_notifier.ingestion.registry import register_adapter
from keyword_notifier.ingestion.stackoverflow_adapter import StackOverflowAdapter
from keyword_notifier.ingestion.twitter_adapter import TwitterAdapter
from keyword_notifier.models import Source

register_adapter(Source.STACKOVERFLOW, StackOverflowAdapter)
register_adapter(Source.TWITTER, TwitterAdapter)
