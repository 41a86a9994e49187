"""
Venue-level attribute aggregation from extracted reviews.

Numeric attributes: recency-weighted mean after dropping samples beyond
``AGGREGATION_OUTLIER_Z`` weighted standard deviations of the remaining samples.
Categorical attributes: recency-weighted mode.
Confidence grows with the number of contributing samples, ``n / (n + k)``;
for categorical values it is scaled by the winning label's weight share.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from ..settings import settings
from ..storage import VenueStore
from ..types import AggregatedAttribute, ExtractionStatus, Review

logger = logging.getLogger(__name__)

QUALITY_SCALE = {"poor": 1, "average": 2, "good": 3, "excellent": 4}
NUMERIC_ATTRIBUTES: dict[str, dict[str, int] | None] = {
    "noise_level": None,
    "food_quality": QUALITY_SCALE,
    "service_quality": QUALITY_SCALE,
}
CATEGORICAL_ATTRIBUTES = ("vibe",)


@dataclass(frozen=True)
class Sample:
    value: float | str
    weight: float
    created_at: datetime


@dataclass(frozen=True)
class AggregationParams:
    half_life_days: float = settings.AGGREGATION_HALF_LIFE_DAYS
    outlier_z: float = settings.AGGREGATION_OUTLIER_Z
    outlier_min_spread: float = settings.AGGREGATION_OUTLIER_MIN_SPREAD
    confidence_k: float = settings.AGGREGATION_CONFIDENCE_K
    min_reliable_samples: int = settings.AGGREGATION_MIN_RELIABLE_SAMPLES


def recency_weight(created_at: datetime, now: datetime, half_life_days: float) -> float:
    age_days = max(0.0, (now - created_at).total_seconds() / 86400.0)
    if half_life_days <= 0:
        return 1.0
    return 0.5 ** (age_days / half_life_days)


def confidence_for(sample_count: int, k: float) -> float:
    if sample_count <= 0:
        return 0.0
    return sample_count / (sample_count + k)


def _weighted_mean(samples: list[Sample]) -> float:
    total = sum(s.weight for s in samples)
    if total <= 0:
        return sum(float(s.value) for s in samples) / len(samples)
    return sum(float(s.value) * s.weight for s in samples) / total


def drop_outliers(samples: list[Sample], z: float, min_spread: float = 0.0) -> list[Sample]:
    """Drop samples further than ``z`` deviations from the rest of the samples.

    Each sample is judged against the weighted mean and spread of the *other*
    samples, so a single extreme review cannot inflate the spread it is
    measured by. ``min_spread`` floors that spread; otherwise a tight cluster
    would reject any neighbouring value.
    """
    if len(samples) < 3 or z <= 0:
        return samples
    total_w = sum(s.weight for s in samples)
    sum_x = sum(s.weight * float(s.value) for s in samples)
    sum_x2 = sum(s.weight * float(s.value) ** 2 for s in samples)

    kept: list[Sample] = []
    for sample in samples:
        value = float(sample.value)
        rest_w = total_w - sample.weight
        if rest_w <= 0:
            kept.append(sample)
            continue
        mean = (sum_x - sample.weight * value) / rest_w
        variance = max(0.0, (sum_x2 - sample.weight * value**2) / rest_w - mean**2)
        spread = max(math.sqrt(variance), min_spread)
        if spread == 0 or abs(value - mean) <= z * spread:
            kept.append(sample)
    return kept or samples


def aggregate_numeric(samples: list[Sample], params: AggregationParams) -> AggregatedAttribute | None:
    if not samples:
        return None
    kept = drop_outliers(samples, params.outlier_z, params.outlier_min_spread)
    count = len(kept)
    return AggregatedAttribute(
        value=round(_weighted_mean(kept), 2),
        confidence=confidence_for(count, params.confidence_k),
        sample_count=count,
        updated_at=max(s.created_at for s in kept),
        reliable=count >= params.min_reliable_samples,
    )


def aggregate_categorical(samples: list[Sample], params: AggregationParams) -> AggregatedAttribute | None:
    if not samples:
        return None
    votes: dict[str, float] = defaultdict(float)
    for sample in samples:
        votes[str(sample.value)] += sample.weight
    total = sum(votes.values())
    label = min(votes, key=lambda key: (-votes[key], key))
    share = votes[label] / total if total > 0 else 1.0 / len(votes)
    count = len(samples)
    return AggregatedAttribute(
        value=label,
        confidence=confidence_for(count, params.confidence_k) * share,
        sample_count=count,
        updated_at=max(s.created_at for s in samples),
        reliable=count >= params.min_reliable_samples,
    )


def collect_samples(
    reviews: Iterable[Review], now: datetime, half_life_days: float
) -> dict[str, list[Sample]]:
    samples: dict[str, list[Sample]] = defaultdict(list)
    for review in reviews:
        if review.status is not ExtractionStatus.EXTRACTED or not review.attributes:
            continue
        weight = recency_weight(review.created_at, now, half_life_days)
        for name, scale in NUMERIC_ATTRIBUTES.items():
            raw = review.attributes.get(name)
            if raw is None:
                continue
            value = scale.get(raw) if scale is not None else raw
            if value is None:
                continue
            samples[name].append(Sample(float(value), weight, review.created_at))
        for name in CATEGORICAL_ATTRIBUTES:
            raw = review.attributes.get(name)
            if raw:
                samples[name].append(Sample(str(raw), weight, review.created_at))
    return samples


def aggregate_reviews(
    reviews: Iterable[Review],
    now: datetime | None = None,
    params: AggregationParams | None = None,
) -> dict[str, AggregatedAttribute]:
    params = params or AggregationParams()
    now = now or datetime.now(UTC)
    out: dict[str, AggregatedAttribute] = {}
    for name, samples in collect_samples(reviews, now, params.half_life_days).items():
        if name in NUMERIC_ATTRIBUTES:
            aggregated = aggregate_numeric(samples, params)
        else:
            aggregated = aggregate_categorical(samples, params)
        if aggregated is not None:
            out[name] = aggregated
    return out


class AttributeAggregator:
    """Recomputes a venue's aggregated attributes from all of its extracted reviews."""

    def __init__(self, store: VenueStore, params: AggregationParams | None = None) -> None:
        self.store = store
        self.params = params or AggregationParams()

    async def refresh(self, venue_id: str, now: datetime | None = None) -> dict[str, AggregatedAttribute]:
        reviews = await self.store.list_reviews(venue_id, ExtractionStatus.EXTRACTED)
        aggregated = aggregate_reviews(reviews, now=now, params=self.params)
        await self.store.update_venue_attributes(venue_id, aggregated)
        logger.debug("Venue %s aggregated from %d reviews", venue_id, len(reviews))
        return aggregated


__all__ = [
    "AggregationParams",
    "AttributeAggregator",
    "QUALITY_SCALE",
    "aggregate_categorical",
    "aggregate_numeric",
    "aggregate_reviews",
    "confidence_for",
    "drop_outliers",
    "recency_weight",
]
