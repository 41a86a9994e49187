"""Venue-level aggregation of per-review attributes."""

import asyncio
import math
from datetime import timedelta

import pytest
from backend.vicinity.pipeline.aggregation import (
    AggregationParams,
    AttributeAggregator,
    aggregate_reviews,
    confidence_for,
    recency_weight,
)
from backend.vicinity.storage import InMemoryVenueStore
from backend.vicinity.types import ExtractionStatus
from conftest import NOW, make_review, make_venue

PARAMS = AggregationParams(half_life_days=180, outlier_z=2.5, confidence_k=5, min_reliable_samples=3)


def extracted(review_id, created_at=NOW, **attributes):
    return make_review(
        review_id,
        status=ExtractionStatus.EXTRACTED,
        attributes={"noise_level": None, "vibe": None, "food_quality": None, **attributes},
        created_at=created_at,
    )


def test_confidence_grows_with_sample_count():
    values = [confidence_for(n, 5) for n in range(0, 20)]
    assert values[0] == 0.0
    assert all(a < b for a, b in zip(values, values[1:]))
    assert values[-1] < 1.0


def test_recency_weight_halves_every_half_life():
    assert recency_weight(NOW, NOW, 180) == 1.0
    assert math.isclose(recency_weight(NOW - timedelta(days=180), NOW, 180), 0.5)
    assert recency_weight(NOW + timedelta(days=3), NOW, 180) == 1.0


def test_outlier_is_excluded_from_numeric_mean():
    reviews = [extracted(f"r{i}", noise_level=2) for i in range(9)]
    reviews.append(extracted("r-outlier", noise_level=5))

    result = aggregate_reviews(reviews, now=NOW, params=PARAMS)["noise_level"]

    assert result.value == 2.0
    assert result.sample_count == 9
    assert result.reliable is True
    assert math.isclose(result.confidence, 9 / 14)


@pytest.mark.parametrize("agreeing", [2, 3, 5, 6])
def test_single_outlier_is_excluded_with_few_reviews(agreeing):
    reviews = [extracted(f"r{i}", noise_level=1) for i in range(agreeing)]
    reviews.append(extracted("r-outlier", noise_level=5))

    result = aggregate_reviews(reviews, now=NOW, params=PARAMS)["noise_level"]

    assert result.value == 1.0
    assert result.sample_count == agreeing
    assert result.reliable is (agreeing >= PARAMS.min_reliable_samples)


def test_split_opinions_are_not_outliers():
    reviews = [extracted(f"r{i}", noise_level=level) for i, level in enumerate([1, 1, 5, 5])]

    result = aggregate_reviews(reviews, now=NOW, params=PARAMS)["noise_level"]

    assert result.sample_count == 4
    assert result.value == 3.0


def test_neighbouring_values_survive_a_tight_cluster():
    reviews = [extracted(f"r{i}", noise_level=level) for i, level in enumerate([2, 2, 2, 3])]

    result = aggregate_reviews(reviews, now=NOW, params=PARAMS)["noise_level"]

    assert result.sample_count == 4
    assert result.value == 2.25


@pytest.mark.parametrize(
    "ages",
    [
        [0, 0, 0, 0, 0, 0, 0, 0],
        [0, 400, 30, 900, 5, 200, 60, 1500],
    ],
    ids=["same-day", "mixed-recency"],
)
def test_confidence_never_drops_as_reviews_accumulate(ages):
    reviews = []
    history: dict[str, list[float]] = {"noise_level": [], "food_quality": [], "vibe": []}

    for i, age in enumerate(ages):
        reviews.append(
            extracted(
                f"r{i}",
                created_at=NOW - timedelta(days=age),
                noise_level=2,
                food_quality="good",
                vibe="romantic",
            )
        )
        result = aggregate_reviews(reviews, now=NOW, params=PARAMS)
        for name, values in history.items():
            values.append(result[name].confidence)

    for name, values in history.items():
        assert all(a <= b for a, b in zip(values, values[1:])), name
        assert values[-1] > values[0], name


def test_recent_reviews_weigh_more():
    reviews = [
        extracted("new", noise_level=1),
        extracted("old", created_at=NOW - timedelta(days=360), noise_level=5),
    ]

    result = aggregate_reviews(reviews, now=NOW, params=PARAMS)["noise_level"]

    # (1 * 1.0 + 5 * 0.25) / 1.25
    assert result.value == 1.8
    assert result.reliable is False


def test_quality_labels_are_mapped_onto_a_scale():
    reviews = [extracted("r1", food_quality="excellent"), extracted("r2", food_quality="good")]

    result = aggregate_reviews(reviews, now=NOW, params=PARAMS)["food_quality"]

    assert result.value == 3.5


def test_categorical_mode_and_share_scaled_confidence():
    reviews = [
        extracted("r1", vibe="romantic"),
        extracted("r2", vibe="romantic"),
        extracted("r3", vibe="lively"),
    ]

    result = aggregate_reviews(reviews, now=NOW, params=PARAMS)["vibe"]

    assert result.value == "romantic"
    assert result.sample_count == 3
    assert math.isclose(result.confidence, (3 / 8) * (2 / 3))


def test_categorical_ties_break_alphabetically():
    reviews = [extracted("r1", vibe="romantic"), extracted("r2", vibe="lively")]
    assert aggregate_reviews(reviews, now=NOW, params=PARAMS)["vibe"].value == "lively"


def test_reliability_threshold():
    two = aggregate_reviews([extracted(f"r{i}", noise_level=3) for i in range(2)], now=NOW, params=PARAMS)
    three = aggregate_reviews([extracted(f"r{i}", noise_level=3) for i in range(3)], now=NOW, params=PARAMS)
    assert two["noise_level"].reliable is False
    assert three["noise_level"].reliable is True


def test_only_extracted_reviews_contribute():
    reviews = [
        extracted("r1", noise_level=2),
        make_review("r2", attributes={"noise_level": 5}),
        make_review("r3", status=ExtractionStatus.FAILED_PERMANENT),
    ]

    result = aggregate_reviews(reviews, now=NOW, params=PARAMS)

    assert result["noise_level"].sample_count == 1
    assert "vibe" not in result


def test_aggregator_refresh_writes_venue_attributes():
    store = InMemoryVenueStore(
        [make_venue("v-sakura", embed=False)],
        [extracted(f"r{i}", noise_level=1) for i in range(3)],
    )
    aggregator = AttributeAggregator(store, PARAMS)

    async def scenario():
        await aggregator.refresh("v-sakura", now=NOW)
        return await store.get_venue("v-sakura")

    venue = asyncio.run(scenario())
    assert venue.attributes["noise_level"].value == 1.0
    assert venue.attributes["noise_level"].reliable is True
    assert venue.attributes["noise_level"].updated_at == NOW
