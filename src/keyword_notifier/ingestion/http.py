"""HTTP helper shared by adapters: one GET, classified into the error taxonomy."""

from __future__ import annotations

import logging
import time
from email.utils import parsedate_to_datetime

import httpx

from keyword_notifier.errors import RateLimited, TransientNetworkError, UpstreamPermanentError

logger = logging.getLogger(__name__)

USER_AGENT = "keyword-notifier/0.1"

_RETRYABLE_STATUS = frozenset({500, 502, 503, 504})


def parse_retry_after(headers: httpx.Headers, now: float | None = None) -> float | None:
    """Extract a retry delay in seconds from rate-limit response headers.

    Understands ``Retry-After`` as delta-seconds or an HTTP date, and the
    ``x-rate-limit-reset`` epoch timestamp Twitter sends. Returns None when
    no usable hint is present.
    """
    now = time.time() if now is None else now

    retry_after = headers.get("retry-after")
    if retry_after:
        retry_after = retry_after.strip()
        if retry_after.isdigit():
            return float(retry_after)
        try:
            return max(0.0, parsedate_to_datetime(retry_after).timestamp() - now)
        except (TypeError, ValueError):
            logger.debug("Ignoring unparseable Retry-After header %r", retry_after)

    reset = headers.get("x-rate-limit-reset")
    if reset and reset.strip().isdigit():
        return max(0.0, float(reset) - now)

    return None


def classify_response(response: httpx.Response) -> None:
    """Raise the matching ingestion error for a non-2xx response."""
    status = response.status_code
    if response.is_success:
        return
    if status == 429:
        raise RateLimited(
            f"Rate limited by {response.request.url.host}",
            retry_after=parse_retry_after(response.headers),
        )
    if status in _RETRYABLE_STATUS or status >= 500:
        raise TransientNetworkError(f"{response.request.url.host} responded {status}")
    raise UpstreamPermanentError(
        f"{response.request.url.host} responded {status}: {response.text[:200]}",
        status_code=status,
        body=response.text,
    )


def get_json(
    url: str,
    *,
    params: dict | None = None,
    headers: dict | None = None,
    timeout: float = 30.0,
) -> dict:
    """GET ``url`` and decode a JSON object body.

    Raises TransientNetworkError for transport failures, timeouts, 5xx and
    undecodable bodies; RateLimited for 429; UpstreamPermanentError for
    other 4xx responses.
    """
    request_headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
    if headers:
        request_headers.update(headers)

    try:
        response = httpx.get(
            url,
            params=params,
            headers=request_headers,
            timeout=timeout,
            follow_redirects=True,
        )
    except httpx.HTTPError as exc:
        raise TransientNetworkError(f"Request to {url} failed: {exc}") from exc

    classify_response(response)

    try:
        data = response.json()
    except ValueError as exc:
        raise TransientNetworkError(f"Undecodable response from {url}") from exc
    if not isinstance(data, dict):
        raise TransientNetworkError(f"Unexpected response shape from {url}")
    return data
