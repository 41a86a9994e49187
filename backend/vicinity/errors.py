"""Exception taxonomy for the search path and the extraction pipeline.

Degraded-input and upstream errors are recovered locally by the search path;
only infrastructure errors (index, storage) propagate to callers.
"""

from __future__ import annotations


class VicinityError(Exception):
    """Base class for all service errors."""

    retryable: bool = False


class UpstreamUnavailable(VicinityError):
    """Embedding or completion provider failed, timed out, or its circuit is open."""

    retryable = True

    def __init__(self, upstream: str, detail: str) -> None:
        super().__init__(f"{upstream} unavailable: {detail}")
        self.upstream = upstream
        self.detail = detail


class MalformedOutput(VicinityError):
    """Completion output could not be decoded or did not match the expected schema."""

    def __init__(self, detail: str, raw: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.raw = raw


class IndexUnavailable(VicinityError):
    """Venue index cannot serve queries. Fatal for the request."""

    retryable = True


class StorageUnavailable(VicinityError):
    """Venue/review storage cannot be reached. Fatal for the request."""

    retryable = True


class IndexBuildError(VicinityError):
    """Venue data violates index invariants (e.g. wrong embedding dimension)."""


class ReviewNotFound(VicinityError):
    def __init__(self, review_id: str) -> None:
        super().__init__(f"Review not found: {review_id}")
        self.review_id = review_id


__all__ = [
    "VicinityError",
    "UpstreamUnavailable",
    "MalformedOutput",
    "IndexUnavailable",
    "StorageUnavailable",
    "IndexBuildError",
    "ReviewNotFound",
]
