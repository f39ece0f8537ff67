"""Twitter source adapter: recent-search API v2, paginated via next_token."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime

from keyword_notifier.config import SourceConfig
from keyword_notifier.errors import UpstreamPermanentError
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

_TWEET_URL = "https://twitter.com/twitter/status/{}"
_MIN_RESULTS = 10
_MAX_RESULTS = 100
_MAX_PAGES = 10


def _parse_created_at(value: str | None) -> str | None:
    """Twitter timestamps look like ``2023-05-01T12:00:00.000Z``."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).isoformat()
    except ValueError:
        logger.warning("Unparseable tweet timestamp %r", value)
        return None


def _is_retweet(text: str) -> bool:
    return text.startswith("RT ")


def _tweet_id(tweet: dict) -> int | None:
    try:
        return int(tweet["id"])
    except (KeyError, TypeError, ValueError):
        logger.warning("Skipping tweet without a usable id: %r", tweet)
        return None


def _rejects_since_id(exc: UpstreamPermanentError) -> bool:
    """True for the 400 the API returns when ``since_id`` is too old."""
    if exc.status_code != 400 or not exc.body:
        return False
    try:
        body = json.loads(exc.body)
    except ValueError:
        return False
    if not isinstance(body, dict):
        return False
    for error in body.get("errors") or []:
        if not isinstance(error, dict):
            continue
        if "since_id" in (error.get("parameters") or {}):
            return True
        if "since_id" in str(error.get("message", "")):
            return True
    return False


class TwitterAdapter(SourceAdapter):
    """Adapter for the Twitter API v2 ``tweets/search/recent`` endpoint.

    The endpoint returns tweets newest first and pages backwards in time.
    Every page back to ``since_id`` is collected, the result is sorted
    oldest first and cut to ``limit``; the cursor is the newest tweet id
    kept, so anything cut off is fetched again on the next cycle.
    """

    def __init__(self) -> None:
        self._query = ""
        self._endpoint = ""
        self._bearer: str | None = None
        self._timeout = 30.0

    @property
    def source(self) -> Source:
        return Source.TWITTER

    def configure(self, config: SourceConfig) -> None:
        check_source_config(config)
        if not config.api_key:
            raise UpstreamPermanentError("Twitter bearer token is missing; set TWITTER_API_BEARER")
        if not config.query.strip():
            raise UpstreamPermanentError("Twitter query is empty; set KEYWORD or TWITTER_QUERY")
        if not config.endpoint:
            raise UpstreamPermanentError("Twitter endpoint is not configured")
        self._bearer = config.api_key
        self._query = config.query.strip()
        self._endpoint = config.endpoint.rstrip("/")
        self._timeout = config.timeout_seconds

    def fetch(
        self,
        cursor: Cursor,
        limit: int,
        stop: threading.Event | None = None,
    ) -> FetchResult:
        if self._bearer is None:
            raise UpstreamPermanentError("Twitter adapter used before configure()")

        tweets: dict[int, dict] = {}
        next_token: str | None = None
        since_id = None if cursor.is_beginning else cursor.position
        pages = 0

        while True:
            check_stop(stop)
            try:
                data = self._get_page(since_id, next_token, limit)
            except UpstreamPermanentError as exc:
                if since_id is None or not _rejects_since_id(exc):
                    raise
                # Recent search only accepts a since_id from the last 7 days.
                logger.warning(
                    "Twitter rejected since_id %d; searching the full recent window instead",
                    since_id,
                )
                since_id = None
                next_token = None
                continue
            pages += 1
            for tweet in data.get("data") or []:
                tweet_id = _tweet_id(tweet)
                if tweet_id is not None and tweet_id > cursor.position:
                    tweets[tweet_id] = tweet
            next_token = (data.get("meta") or {}).get("next_token")
            if not next_token:
                break
            if pages >= _MAX_PAGES:
                logger.warning(
                    "Stopped paging Twitter after %d pages; older tweets since %d are skipped",
                    pages, cursor.position,
                )
                break

        kept_ids = sorted(tweets)[:limit]
        new_cursor = Cursor(kept_ids[-1]) if kept_ids else cursor

        items: list[RawItem] = []
        for tweet_id in kept_ids:
            tweet = tweets[tweet_id]
            text = tweet.get("text", "")
            if _is_retweet(text):
                logger.debug("Skipping tweet %s because it is a retweet", tweet_id)
                continue
            items.append(self._to_raw_item(tweet_id, tweet))

        logger.info(
            "Fetched %d new tweets (cursor %d -> %d)",
            len(items), cursor.position, new_cursor.position,
        )
        return FetchResult(items=items, cursor=max(new_cursor, cursor))

    def _get_page(self, since_id: int | None, next_token: str | None, limit: int) -> dict:
        params: dict = {
            "query": f"{self._query} -is:retweet",
            "tweet.fields": "created_at,author_id",
            "max_results": max(_MIN_RESULTS, min(limit, _MAX_RESULTS)),
        }
        if since_id is not None:
            params["since_id"] = str(since_id)
        if next_token:
            params["next_token"] = next_token

        return get_json(
            f"{self._endpoint}/tweets/search/recent",
            params=params,
            headers={"Authorization": f"Bearer {self._bearer}"},
            timeout=self._timeout,
        )

    @staticmethod
    def _to_raw_item(tweet_id: int, tweet: dict) -> RawItem:
        text = tweet.get("text", "")
        return RawItem(
            external_id=f"tw-{tweet_id}",
            text=text,
            author=tweet.get("author_id"),
            created_at=_parse_created_at(tweet.get("created_at")),
            title=text,
            url=_TWEET_URL.format(tweet_id),
            payload={"tweet_id": str(tweet_id)},
        )
