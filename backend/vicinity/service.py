"""
Search facade: query understanding -> retrieval -> ranking -> post-filters.

Upstream (embedding/completion) trouble degrades the result quietly; index
and storage failures propagate as ``IndexUnavailable`` / ``StorageUnavailable``.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace

from .cache import NAMESPACE_RESULTS, TieredCache, get_cache, make_cache_key
from .completion import CompletionService, OpenAICompletionClient
from .embeddings import EmbeddingClient
from .errors import ReviewNotFound
from .logging_config import get_logger
from .metrics import search_duration_seconds
from .pipeline.jobs import JobQueue, get_job_queue
from .query_understanding import QueryParser
from .ranking import HybridScorer
from .retrieval import CandidateRetriever
from .schemas import (
    LocationInput,
    ParsedQuery,
    ReviewSubmittedResponse,
    SearchFilters,
    SearchHit,
    SearchResponse,
)
from .settings import settings
from .storage import VenueStore, get_store
from .types import Candidate

logger = get_logger(__name__)


def results_cache_key(parsed: ParsedQuery, limit: int) -> str:
    return make_cache_key(
        NAMESPACE_RESULTS,
        parsed.constraints.model_dump(mode="json"),
        parsed.embedding,
        limit,
    )


class SearchService:
    def __init__(
        self,
        parser: QueryParser,
        retriever: CandidateRetriever,
        scorer: HybridScorer,
        store: VenueStore,
        queue: JobQueue,
        cache: TieredCache | None = None,
    ) -> None:
        self.parser = parser
        self.retriever = retriever
        self.scorer = scorer
        self.store = store
        self.queue = queue
        self._cache = cache

    @property
    def cache(self) -> TieredCache:
        return self._cache or get_cache()

    async def _hydrate(self, candidates: list[Candidate]) -> list[Candidate]:
        """Swap in current ratings and aggregated attributes; the index snapshot may be older."""
        if not candidates:
            return candidates
        fresh = await self.store.get_venues(c.venue.id for c in candidates)
        out: list[Candidate] = []
        for cand in candidates:
            current = fresh.get(cand.venue.id)
            if current is not None:
                venue = replace(
                    cand.venue, attributes=current.attributes, avg_rating=current.avg_rating
                )
                cand = replace(cand, venue=venue)
            out.append(cand)
        return out

    async def search(
        self,
        raw_query: str,
        location: LocationInput | None = None,
        filters: SearchFilters | None = None,
        limit: int = 20,
    ) -> SearchResponse:
        started = time.perf_counter()
        parsed = await self.parser.parse(raw_query, location, filters)
        parsed_at = time.perf_counter()
        search_duration_seconds.labels(stage="parse").observe(parsed_at - started)

        key = results_cache_key(parsed, limit)
        cached = await self.cache.get(key)
        if cached is not None:
            response = SearchResponse.model_validate(cached)
            response = response.model_copy(update={"query": parsed, "cached": True})
            search_duration_seconds.labels(stage="total").observe(time.perf_counter() - started)
            return response

        # Index search and distance sorting are CPU bound; keep them off the event loop
        loop = asyncio.get_running_loop()
        candidates = await loop.run_in_executor(None, self.retriever.retrieve, parsed)
        candidates = await self._hydrate(candidates)
        retrieved_at = time.perf_counter()
        search_duration_seconds.labels(stage="retrieve").observe(retrieved_at - parsed_at)

        ranked = self.scorer.score(candidates, parsed)[:limit]
        finished = time.perf_counter()
        search_duration_seconds.labels(stage="rank").observe(finished - retrieved_at)
        search_duration_seconds.labels(stage="total").observe(finished - started)

        response = SearchResponse(
            results=[
                SearchHit(
                    venue=item.venue.summary(),
                    score=round(item.score, 6),
                    highlights=item.highlights,
                    relaxed=item.relaxed,
                    components={k: round(v, 6) for k, v in item.components.items()},
                )
                for item in ranked
            ],
            query=parsed,
            total_candidates=len(candidates),
        )
        if not parsed.degraded:
            await self.cache.set(
                key, response.model_dump(mode="json"), ttl=settings.RESULTS_CACHE_TTL_SECONDS
            )
        logger.info(
            "search_completed",
            results=len(response.results),
            candidates=len(candidates),
            confidence=parsed.confidence,
            degraded=parsed.degraded,
            duration_ms=round((finished - started) * 1000, 1),
        )
        return response

    async def on_review_submitted(self, review_id: str) -> ReviewSubmittedResponse:
        """Queue attribute extraction for a review. Never extracts inline."""
        review = await self.store.get_review(review_id)
        if review is None:
            raise ReviewNotFound(review_id)
        queued = await self.queue.enqueue(review_id)
        logger.info("review_submitted", review_id=review_id, queued=queued)
        return ReviewSubmittedResponse(review_id=review_id, queued=queued)


def default_completion() -> CompletionService | None:
    if not settings.OPENAI_API_KEY:
        return None
    return OpenAICompletionClient()


def build_search_service(
    store: VenueStore | None = None,
    queue: JobQueue | None = None,
) -> SearchService:
    return SearchService(
        parser=QueryParser(completion=default_completion(), embedder=EmbeddingClient()),
        retriever=CandidateRetriever(),
        scorer=HybridScorer(),
        store=store or get_store(),
        queue=queue or get_job_queue(),
    )


__all__ = ["SearchService", "build_search_service", "default_completion", "results_cache_key"]
