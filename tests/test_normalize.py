"""Tests for keyword_notifier.ingestion.normalize: RawItem to Record."""

from __future__ import annotations

import pytest

from keyword_notifier.ingestion.dedup import compute_fingerprint
from keyword_notifier.ingestion.normalize import RawItem, _validate_raw_item, normalize
from keyword_notifier.models import Source


def _make_raw(**overrides) -> RawItem:
    defaults = {
        "external_id": "so-42",
        "text": "How do I parse JSON?",
        "author": "alice",
        "created_at": "2024-05-01T12:00:00+00:00",
        "title": "How do I parse JSON?",
        "url": "https://stackoverflow.com/q/42",
        "payload": {"status": "unanswered"},
    }
    defaults.update(overrides)
    return RawItem(**defaults)


class TestValidation:
    def test_valid_item_no_errors(self):
        assert _validate_raw_item(_make_raw()) == []

    def test_empty_external_id(self):
        errors = _validate_raw_item(_make_raw(external_id="  "))
        assert any("external_id" in e for e in errors)

    def test_empty_text(self):
        errors = _validate_raw_item(_make_raw(text=""))
        assert any("text" in e for e in errors)

    def test_bad_timestamp(self):
        errors = _validate_raw_item(_make_raw(created_at="yesterday"))
        assert any("created_at" in e for e in errors)

    def test_missing_timestamp_is_allowed(self):
        assert _validate_raw_item(_make_raw(created_at=None)) == []


class TestNormalize:
    def test_builds_record(self):
        record = normalize(_make_raw(), Source.STACKOVERFLOW, fetched_at="2024-05-01T13:00:00+00:00")

        assert record.source is Source.STACKOVERFLOW
        assert record.external_id == "so-42"
        assert record.title == "How do I parse JSON?"
        assert record.url == "https://stackoverflow.com/q/42"
        assert record.published_at == "2024-05-01T12:00:00+00:00"
        assert record.fetched_at == "2024-05-01T13:00:00+00:00"
        assert record.fingerprint == compute_fingerprint(
            "stackoverflow", "How do I parse JSON?", "alice", "2024-05-01T12:00:00+00:00"
        )

    def test_payload_carries_text_author_and_source_fields(self):
        record = normalize(_make_raw(), Source.STACKOVERFLOW)
        assert record.payload["text"] == "How do I parse JSON?"
        assert record.payload["author"] == "alice"
        assert record.payload["status"] == "unanswered"

    def test_title_falls_back_to_text(self):
        record = normalize(_make_raw(title=None, text=" hello "), Source.TWITTER)
        assert record.title == "hello"

    def test_accepts_source_name_string(self):
        record = normalize(_make_raw(), "twitter")
        assert record.source is Source.TWITTER

    def test_fetched_at_defaults_to_now(self):
        record = normalize(_make_raw(), Source.TWITTER)
        assert record.fetched_at.endswith("+00:00")

    def test_invalid_raises(self):
        with pytest.raises(ValueError, match="Invalid RawItem"):
            normalize(_make_raw(text=""), Source.TWITTER)
