"""End-to-end search through the service facade on the sample Baku venues."""

import asyncio
import time

import pytest
from backend.vicinity.errors import IndexUnavailable, ReviewNotFound, StorageUnavailable, UpstreamUnavailable
from backend.vicinity.query_understanding import QueryParser
from backend.vicinity.ranking import HybridScorer
from backend.vicinity.retrieval import CandidateRetriever
from backend.vicinity.schemas import LocationInput, SearchFilters
from backend.vicinity.service import SearchService
from backend.vicinity.storage import InMemoryVenueStore
from backend.vicinity.types import AggregatedAttribute
from conftest import NOW, FakeCompletion, make_review


class UnreachableStore(InMemoryVenueStore):
    async def get_venues(self, venue_ids):
        raise StorageUnavailable("connection refused")


class SlowRetriever(CandidateRetriever):
    def __init__(self, index_provider):
        super().__init__(index_provider)
        self.window = None

    def retrieve(self, parsed, limit=None):
        started = time.perf_counter()
        time.sleep(0.2)
        try:
            return super().retrieve(parsed, limit)
        finally:
            self.window = (started, time.perf_counter())


@pytest.fixture
def make_service(cache, embedder, constraint_store, sample_index, venue_store, job_queue):
    def factory(completion=None, store=None, index_provider=None, retriever=None):
        return SearchService(
            parser=QueryParser(completion, embedder, constraint_store, cache),
            retriever=retriever or CandidateRetriever(index_provider or (lambda: sample_index)),
            scorer=HybridScorer(),
            store=store or venue_store,
            queue=job_queue,
            cache=cache,
        )

    return factory


def test_cheap_sushi_near_old_city(make_service):
    response = asyncio.run(make_service().search("cheap sushi near old city"))

    top = response.results[0]
    assert top.venue.id == "v-sakura"
    assert top.relaxed is False
    assert "sushi" in top.highlights
    assert "$" in top.highlights
    # Everything else came from widening or the unfiltered fallback
    assert all(hit.relaxed for hit in response.results[1:])
    assert response.query.confidence == "low"
    assert response.cached is False


def test_results_are_sorted_and_bounded(make_service):
    response = asyncio.run(make_service().search("romantic dinner by the sea", limit=5))

    scores = [hit.score for hit in response.results]
    assert len(scores) == 5
    assert scores == sorted(scores, reverse=True)
    assert all(0.0 <= s <= 1.0 for s in scores)
    assert response.total_candidates >= 5


def test_repeat_search_is_served_from_cache(make_service):
    service = make_service()

    async def scenario():
        first = await service.search("georgian food in old city")
        second = await service.search("Georgian food in Old City")
        return first, second

    first, second = asyncio.run(scenario())
    assert first.cached is False
    assert second.cached is True
    assert [h.venue.id for h in second.results] == [h.venue.id for h in first.results]
    assert second.query.raw_text == "Georgian food in Old City"


def test_degraded_searches_are_not_cached(make_service):
    service = make_service(completion=FakeCompletion(UpstreamUnavailable("completion", "timeout")))

    async def scenario():
        first = await service.search("thai near port baku")
        second = await service.search("thai near port baku")
        return first, second

    first, second = asyncio.run(scenario())
    assert first.query.degraded == ["completion_unavailable"]
    assert second.cached is False
    assert first.results[0].venue.id == "v-port-thai"


def test_caller_location_and_filters_apply(make_service):
    response = asyncio.run(
        make_service().search(
            "dinner",
            location=LocationInput(lat=40.4030, lon=49.8711, radius_m=800),
            filters=SearchFilters(cuisines=["chinese"]),
        )
    )

    assert response.results[0].venue.id == "v-narimanov-dim-sum"
    assert response.results[0].relaxed is False
    assert response.query.constraints.cuisines == ["chinese"]


def test_fresh_attributes_are_used_without_reindexing(make_service, venue_store):
    loud = AggregatedAttribute(value=4.5, confidence=0.6, sample_count=8, updated_at=NOW, reliable=True)
    asyncio.run(venue_store.update_venue_attributes("v-sakura", {"noise_level": loud}))

    response = asyncio.run(make_service().search("quiet cheap sushi near old city"))

    assert "v-sakura" not in [hit.venue.id for hit in response.results]


def test_storage_failure_propagates(make_service, sample_venues):
    service = make_service(store=UnreachableStore(sample_venues))
    with pytest.raises(StorageUnavailable):
        asyncio.run(service.search("sushi"))


def test_missing_index_propagates(make_service):
    def no_index():
        raise IndexUnavailable("venue index has not been built")

    with pytest.raises(IndexUnavailable):
        asyncio.run(make_service(index_provider=no_index).search("sushi"))


def test_review_submission_enqueues_once(make_service, venue_store, job_queue):
    asyncio.run(venue_store.add_review(make_review("r1")))
    service = make_service()

    async def scenario():
        first = await service.on_review_submitted("r1")
        second = await service.on_review_submitted("r1")
        return first, second, await job_queue.pending_count()

    first, second, pending = asyncio.run(scenario())
    assert first.queued is True
    assert second.queued is False
    assert pending == 1


def test_unknown_review_is_rejected(make_service):
    with pytest.raises(ReviewNotFound):
        asyncio.run(make_service().on_review_submitted("missing"))


def test_retrieval_runs_off_the_event_loop(make_service, sample_index):
    retriever = SlowRetriever(lambda: sample_index)
    service = make_service(retriever=retriever)

    async def scenario():
        ticks = []
        task = asyncio.create_task(service.search("sushi near old city"))
        while not task.done():
            ticks.append(time.perf_counter())
            await asyncio.sleep(0.01)
        return await task, ticks

    response, ticks = asyncio.run(scenario())

    started, finished = retriever.window
    assert response.results
    assert any(started < tick < finished for tick in ticks)
