from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..completion import CompletionService
from ..errors import MalformedOutput, ReviewNotFound, UpstreamUnavailable
from ..metrics import extraction_attempts_total, extraction_jobs_total
from ..schemas import ReviewAttributes
from ..settings import settings
from ..storage import VenueStore
from ..types import ExtractionStatus
from .aggregation import AttributeAggregator

logger = logging.getLogger(__name__)

INSTRUCTION = (
    "You read one restaurant review and extract what it says about the venue. "
    "Return JSON only. Use null for anything the review does not mention. "
    "noise_level: 1 (very quiet) to 5 (very loud). "
    "vibe: one of romantic, casual, lively, cozy, upscale, family, business. "
    "food_quality and service_quality: one of poor, average, good, excellent."
)


@dataclass
class ExtractionOutcome:
    review_id: str
    status: ExtractionStatus
    attempts: int
    error: str | None = None
    skipped: bool = False


class ReviewExtractor:
    """Extracts attributes for one review with bounded retries, then re-aggregates its venue."""

    def __init__(
        self,
        completion: CompletionService,
        store: VenueStore,
        *,
        aggregator: AttributeAggregator | None = None,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        backoff_max: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.completion = completion
        self.store = store
        self.aggregator = aggregator or AttributeAggregator(store)
        self.max_attempts = max_attempts or settings.EXTRACTION_MAX_ATTEMPTS
        self.backoff_base = (
            settings.EXTRACTION_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        )
        self.backoff_max = backoff_max or settings.EXTRACTION_BACKOFF_MAX_SECONDS
        self._sleep = sleep

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception_type((UpstreamUnavailable, MalformedOutput)),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(
            "Extraction attempt %d failed (%s); retrying in %.1fs",
            retry_state.attempt_number,
            exc,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
        )

    async def _attempt(self, text: str) -> ReviewAttributes:
        try:
            result = await self.completion.complete(INSTRUCTION, text, ReviewAttributes)
        except UpstreamUnavailable:
            extraction_attempts_total.labels(outcome="upstream_error").inc()
            raise
        if not result.ok:
            extraction_attempts_total.labels(outcome="malformed").inc()
            raise MalformedOutput(result.error or "invalid review attributes", result.raw)
        extraction_attempts_total.labels(outcome="ok").inc()
        return result.value

    async def process(self, review_id: str) -> ExtractionOutcome:
        review = await self.store.get_review(review_id)
        if review is None:
            raise ReviewNotFound(review_id)
        if review.status is ExtractionStatus.FAILED_PERMANENT:
            logger.info("Review %s already failed permanently; skipping", review_id)
            return ExtractionOutcome(review_id, review.status, review.attempts, review.last_error, skipped=True)

        attempts = 0
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts += 1
                    attributes = await self._attempt(review.text)
        except (UpstreamUnavailable, MalformedOutput) as exc:
            target = ExtractionStatus.FAILED_PERMANENT
            if not review.status.can_transition_to(target):
                # An already-extracted review keeps its earlier attributes
                logger.warning("Re-extraction of review %s failed; keeping previous result", review_id)
                extraction_jobs_total.labels(outcome="kept_previous").inc()
                return ExtractionOutcome(review_id, review.status, attempts, str(exc), skipped=True)
            await self.store.update_review_extraction(
                review_id, status=target, attributes=None, attempts=attempts, last_error=str(exc)
            )
            extraction_jobs_total.labels(outcome="failed_permanent").inc()
            logger.warning("Review %s failed permanently after %d attempts: %s", review_id, attempts, exc)
            return ExtractionOutcome(review_id, target, attempts, str(exc))

        await self.store.update_review_extraction(
            review_id,
            status=ExtractionStatus.EXTRACTED,
            attributes=attributes.model_dump(mode="json"),
            attempts=attempts,
        )
        await self.aggregator.refresh(review.venue_id)
        extraction_jobs_total.labels(outcome="extracted").inc()
        return ExtractionOutcome(review_id, ExtractionStatus.EXTRACTED, attempts)


__all__ = ["ExtractionOutcome", "INSTRUCTION", "ReviewExtractor"]
