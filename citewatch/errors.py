from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from citewatch.models.records import CrawlResult


class CitewatchError(Exception):
    """Base class for pipeline errors."""


class DispatchError(CitewatchError):
    """An AI platform call failed.

    `retryable` separates transient failures (timeouts, 5xx, rate limits) that
    should go back to the queue from terminal ones (auth, malformed request).
    """

    def __init__(self, message: str, *, platform: str, retryable: bool = True):
        super().__init__(message)
        self.platform = platform
        self.retryable = retryable


class CrawlError(CitewatchError):
    """Every crawl tier failed for a URL."""

    def __init__(
        self,
        message: str,
        *,
        url: str,
        status_code: int | None = None,
        attempts: list[CrawlResult] | None = None,
    ):
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.attempts = list(attempts or [])


class SkippedURLError(CrawlError):
    """URL rejected by pre-flight rules; no request was made."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Skipped crawling: {reason}", url=url)
        self.reason = reason


class QueueStoreError(CitewatchError):
    """The queue store is unavailable or rejected an operation."""
