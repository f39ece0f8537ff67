"""Error taxonomy shared by adapters, the store and the ingestion loop.

Transient errors are absorbed by the loop's backoff; permanent errors stop
the affected source until the process is restarted.
"""

from __future__ import annotations


class IngestionError(Exception):
    """Base class for every error the ingestion loop knows how to handle."""


class TransientError(IngestionError):
    """Retryable failure. The loop backs off and tries again."""


class PermanentError(IngestionError):
    """Non-retryable failure. The loop for the affected source halts."""


class TransientNetworkError(TransientError):
    """Network timeout, connection failure, 5xx or unreadable upstream response."""


class RateLimited(TransientError):
    """Upstream asked us to slow down.

    ``retry_after`` is the delay in seconds suggested by the upstream, or
    None when it gave no hint and the default backoff applies.
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class StoreUnavailable(TransientError):
    """The database could not be reached or was locked."""


class UpstreamPermanentError(PermanentError):
    """Bad credentials, malformed config or a 4xx that retrying will not fix."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class StoreCorruption(PermanentError):
    """The database returned data or errors that indicate it is damaged."""


class FetchCancelled(Exception):
    """An adapter stopped paging because its loop was asked to stop."""
