"""StackOverflow source adapter: searches new questions matching a keyword."""

from __future__ import annotations

import json
import threading
import logging
import re
from datetime import datetime, timezone
from html import unescape

from keyword_notifier.config import SourceConfig
from keyword_notifier.errors import RateLimited, UpstreamPermanentError
from keyword_notifier.ingestion.adapter import (
    FetchResult,
    SourceAdapter,
    check_source_config,
    check_stop,
)
from keyword_notifier.ingestion.http import get_json
from keyword_notifier.ingestion.normalize import RawItem
from keyword_notifier.models import Cursor, Source

logger = logging.getLogger(__name__)

_MAX_PAGE_SIZE = 100
_MAX_PAGES = 10
_THROTTLE_SECONDS_RE = re.compile(r"available in (\d+) seconds")


def _question_status(question: dict) -> str:
    """Answer state shown next to the question title."""
    if question.get("is_answered"):
        return "answered"
    if question.get("answer_count", 0) > 0:
        return "has_answers"
    return "unanswered"


def _trim_to_boundary(questions: list[dict], limit: int, truncated: bool) -> list[dict]:
    """Cut a creation-ordered list to ``limit`` without splitting a second.

    The cursor is a creation timestamp, so the next fetch starts strictly
    after the last kept question's second. When the batch is truncated,
    questions sharing that second may remain upstream and would never be
    fetched, so they are dropped from this batch instead, unless that
    would empty it.
    """
    kept = questions[:limit]
    if not truncated or not kept:
        return kept
    boundary = kept[-1]["creation_date"]
    if len(questions) > limit and questions[limit]["creation_date"] != boundary:
        return kept
    trimmed = [q for q in kept if q["creation_date"] < boundary]
    return trimmed or kept


class StackOverflowAdapter(SourceAdapter):
    """Adapter for the Stack Exchange ``search/advanced`` API."""

    def __init__(self) -> None:
        self._query = ""
        self._endpoint = ""
        self._api_key: str | None = None
        self._timeout = 30.0
        self._site = "stackoverflow"

    @property
    def source(self) -> Source:
        return Source.STACKOVERFLOW

    def configure(self, config: SourceConfig) -> None:
        check_source_config(config)
        if not config.query.strip():
            raise UpstreamPermanentError("StackOverflow query is empty; set KEYWORD or STACKOVERFLOW_QUERY")
        if not config.endpoint:
            raise UpstreamPermanentError("StackOverflow endpoint is not configured")
        self._query = config.query.strip()
        self._endpoint = config.endpoint.rstrip("/")
        self._api_key = config.api_key
        self._timeout = config.timeout_seconds

    def fetch(
        self,
        cursor: Cursor,
        limit: int,
        stop: threading.Event | None = None,
    ) -> FetchResult:
        questions: list[dict] = []
        retry_hint: float | None = None
        has_more = False
        page = 1

        while page <= _MAX_PAGES:
            check_stop(stop)
            data = self._get_page(cursor, page, min(limit, _MAX_PAGE_SIZE))
            if data.get("backoff"):
                retry_hint = max(retry_hint or 0.0, float(data["backoff"]))
            questions.extend(
                q for q in data.get("items", [])
                if q.get("creation_date", 0) > cursor.position and q.get("question_id")
            )
            has_more = bool(data.get("has_more"))
            # A backoff field forbids hitting the same method again until it passes.
            if len(questions) >= limit or not has_more or retry_hint:
                break
            page += 1

        questions.sort(key=lambda q: (q["creation_date"], q["question_id"]))
        truncated = has_more or len(questions) > limit
        questions = _trim_to_boundary(questions, limit, truncated)

        items = [self._to_raw_item(q) for q in questions]
        new_cursor = Cursor(questions[-1]["creation_date"]) if questions else cursor
        new_cursor = max(new_cursor, cursor)

        logger.info(
            "Fetched %d new StackOverflow questions (cursor %d -> %d)",
            len(items), cursor.position, new_cursor.position,
        )
        return FetchResult(items=items, cursor=new_cursor, retry_hint=retry_hint)

    def _get_page(self, cursor: Cursor, page: int, page_size: int) -> dict:
        params: dict = {
            "site": self._site,
            "q": self._query,
            "sort": "creation",
            "order": "asc",
            "page": page,
            "pagesize": page_size,
        }
        if not cursor.is_beginning:
            params["fromdate"] = cursor.position + 1
        if self._api_key:
            params["key"] = self._api_key

        try:
            return get_json(
                f"{self._endpoint}/search/advanced",
                params=params,
                timeout=self._timeout,
            )
        except UpstreamPermanentError as exc:
            throttle = self._parse_throttle(exc)
            if throttle is not None:
                raise throttle from exc
            raise

    @staticmethod
    def _parse_throttle(exc: UpstreamPermanentError) -> RateLimited | None:
        """Stack Exchange reports throttling as HTTP 400 with ``throttle_violation``."""
        if exc.status_code != 400 or not exc.body:
            return None
        try:
            error = json.loads(exc.body)
        except ValueError:
            return None
        if not isinstance(error, dict) or error.get("error_name") != "throttle_violation":
            return None
        match = _THROTTLE_SECONDS_RE.search(error.get("error_message", ""))
        retry_after = float(match.group(1)) if match else None
        return RateLimited("StackOverflow throttle violation", retry_after=retry_after)

    @staticmethod
    def _to_raw_item(question: dict) -> RawItem:
        title = unescape(question.get("title", "")).strip()
        created_at = datetime.fromtimestamp(
            question["creation_date"], tz=timezone.utc
        ).isoformat()
        owner = question.get("owner") or {}
        return RawItem(
            external_id=f"so-{question['question_id']}",
            text=title,
            author=unescape(owner.get("display_name", "")) or None,
            created_at=created_at,
            title=title,
            url=question.get("link"),
            payload={
                "status": _question_status(question),
                "answer_count": question.get("answer_count", 0),
                "score": question.get("score", 0),
                "tags": question.get("tags", []),
            },
        )
