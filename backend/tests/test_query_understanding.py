"""Query parsing: model path, heuristic fallback, caching and caller overrides."""

import asyncio
import json

import pytest
from backend.vicinity.completion import CompletionResult
from backend.vicinity.constraint_store import get_constraint_store, reload_constraint_store
from backend.vicinity.embeddings import EmbeddingBackend, EmbeddingClient
from backend.vicinity.errors import UpstreamUnavailable
from backend.vicinity.query_understanding import QueryParser, apply_overrides
from backend.vicinity.schemas import LocationInput, SearchFilters
from backend.vicinity.settings import settings
from conftest import FakeCompletion

SUSHI_EXTRACTION = {
    "cuisines": ["sushi"],
    "price_min": 1,
    "price_max": 1,
    "place": "old city",
    "party_size": None,
    "open_now": False,
    "attributes": [],
    "residual": "",
}


class FailingBackend(EmbeddingBackend):
    name = "failing"
    dimension = 256

    async def embed_batch(self, texts):
        raise UpstreamUnavailable("embedding", "provider down")


@pytest.fixture
def make_parser(cache, embedder, constraint_store):
    def factory(completion=None, embedding_client=None):
        return QueryParser(
            completion=completion,
            embedder=embedding_client or embedder,
            store=constraint_store,
            cache=cache,
        )

    return factory


def test_model_extraction_is_high_confidence(make_parser):
    parser = make_parser(FakeCompletion(SUSHI_EXTRACTION))

    parsed = asyncio.run(parser.parse("Cheap sushi near Old City"))

    c = parsed.constraints
    assert parsed.confidence == "high"
    assert parsed.source == "model"
    assert parsed.normalized_text == "cheap sushi near old city"
    assert c.cuisines == ["sushi"]
    assert (c.price.min, c.price.max) == (1, 1)
    assert c.place == "old_city"
    assert c.location is not None and c.radius_m == 800
    assert parsed.embedding is not None and len(parsed.embedding) == 256
    assert parsed.degraded == []


def test_malformed_output_falls_back_to_heuristics(make_parser):
    parser = make_parser(FakeCompletion("Sure! Here are some sushi places."))

    parsed = asyncio.run(parser.parse("cheap sushi near old city"))

    assert parsed.confidence == "low"
    assert parsed.source == "heuristic"
    assert parsed.degraded == ["completion_malformed"]
    assert parsed.constraints.cuisines == ["sushi"]
    assert (parsed.constraints.price.min, parsed.constraints.price.max) == (1, 1)
    assert parsed.constraints.place == "old_city"


@pytest.mark.parametrize(
    "overrides",
    [
        {"price_min": 0},
        {"price_max": 7},
        {"price_min": 4, "price_max": 2},
        {"place": "   "},
    ],
)
def test_out_of_range_output_never_leaks(make_parser, overrides):
    parser = make_parser(FakeCompletion({**SUSHI_EXTRACTION, **overrides}))

    parsed = asyncio.run(parser.parse("sushi somewhere nice"))

    assert parsed.confidence == "low"
    price = parsed.constraints.price
    assert price is None or 1 <= price.min <= price.max <= 4


def test_missing_required_keys_are_malformed(make_parser):
    parser = make_parser(FakeCompletion({"cuisines": ["sushi"]}))

    parsed = asyncio.run(parser.parse("sushi"))

    assert parsed.confidence == "low"
    assert "completion_malformed" in parsed.degraded


def test_upstream_failure_falls_back(make_parser):
    parser = make_parser(FakeCompletion(UpstreamUnavailable("completion", "timeout")))

    parsed = asyncio.run(parser.parse("quiet georgian in narimanov"))

    assert parsed.confidence == "low"
    assert parsed.degraded == ["completion_unavailable"]
    assert parsed.constraints.cuisines == ["georgian"]
    assert parsed.constraints.place == "narimanov"
    assert parsed.constraints.attribute_filters[0].name == "noise_level"


def test_cache_hit_skips_the_completion_service(make_parser):
    completion = FakeCompletion(SUSHI_EXTRACTION)
    parser = make_parser(completion)

    async def scenario():
        first = await parser.parse("cheap sushi near old city")
        second = await parser.parse("  CHEAP sushi near old city ")
        return first, second

    first, second = asyncio.run(scenario())

    assert len(completion.calls) == 1
    assert second.constraints == first.constraints
    assert second.embedding == first.embedding
    assert second.raw_text == "  CHEAP sushi near old city "


def test_vocabulary_reload_invalidates_cached_parses(tmp_path, cache, embedder):
    completion = FakeCompletion(SUSHI_EXTRACTION)
    parser = QueryParser(completion=completion, embedder=embedder, cache=cache)
    payload = json.loads(settings.constraints_path.read_text(encoding="utf-8"))
    payload["version"] = "2026-10-02"
    bumped = tmp_path / "constraints.json"
    bumped.write_text(json.dumps(payload), encoding="utf-8")

    async def parse_twice():
        await parser.parse("cheap sushi near old city")
        await parser.parse("cheap sushi near old city")

    try:
        asyncio.run(parse_twice())
        assert len(completion.calls) == 1

        reload_constraint_store(bumped)
        asyncio.run(parse_twice())
        assert parser.store.version == "2026-10-02"
        assert len(completion.calls) == 2
    finally:
        reload_constraint_store()
    assert get_constraint_store().version == "2026-10-01"


def test_degraded_parses_are_not_cached(make_parser):
    completion = FakeCompletion(UpstreamUnavailable("completion", "timeout"))
    parser = make_parser(completion)

    async def scenario():
        await parser.parse("cheap sushi")
        await parser.parse("cheap sushi")

    asyncio.run(scenario())
    assert len(completion.calls) == 2


def test_embedding_failure_leaves_vector_empty(make_parser, cache):
    parser = make_parser(
        FakeCompletion(SUSHI_EXTRACTION),
        embedding_client=EmbeddingClient(FailingBackend(), cache=cache),
    )

    parsed = asyncio.run(parser.parse("cheap sushi near old city"))

    assert parsed.embedding is None
    assert parsed.degraded == ["embedding_unavailable"]
    assert parsed.constraints.cuisines == ["sushi"]


def test_no_completion_service_uses_heuristics_without_degrading(make_parser):
    parser = make_parser(None)

    parsed = asyncio.run(parser.parse("asian food near port baku"))

    assert parsed.source == "heuristic"
    assert parsed.degraded == []
    assert parsed.constraints.cuisines == ["asian"]
    assert parsed.ambiguous is True
    assert any("asian" in reason for reason in parsed.ambiguity_reasons)


def test_unknown_place_is_ambiguous(make_parser):
    parser = make_parser(FakeCompletion({**SUSHI_EXTRACTION, "place": "Atlantis"}))

    parsed = asyncio.run(parser.parse("sushi in atlantis"))

    assert parsed.confidence == "high"
    assert parsed.ambiguous is True
    assert parsed.constraints.location is None
    assert parsed.ambiguity_reasons == ["unknown place 'Atlantis'"]


def test_completion_result_object_is_accepted(make_parser):
    parser = make_parser(FakeCompletion(CompletionResult.malformed("truncated")))

    parsed = asyncio.run(parser.parse("sushi"))

    assert parsed.degraded == ["completion_malformed"]


def test_overrides_win_over_parsed_constraints(make_parser, constraint_store):
    parser = make_parser(None)
    parsed = asyncio.run(parser.parse("fancy pizza in old city"))
    assert (parsed.constraints.price.min, parsed.constraints.price.max) == (3, 4)

    merged = apply_overrides(
        parsed,
        LocationInput(lat=40.4, lon=49.87, radius_m=500),
        SearchFilters(price_max=2, cuisines=["Sushi"], open_now=True),
        constraint_store,
    )

    c = merged.constraints
    assert (c.location.lat, c.location.lon) == (40.4, 49.87)
    assert c.radius_m == 500
    assert (c.price.min, c.price.max) == (2, 2)
    assert c.cuisines == ["sushi"]
    assert c.open_now is True
    # The parsed query itself is untouched
    assert parsed.constraints.cuisines == ["italian"]


def test_location_override_without_radius_uses_default(make_parser, constraint_store):
    parsed = asyncio.run(make_parser(None).parse("sushi"))

    merged = apply_overrides(parsed, LocationInput(lat=40.37, lon=49.84), None, constraint_store)

    assert merged.constraints.radius_m == constraint_store.default_radius_m
