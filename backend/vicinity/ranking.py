from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from .geo import haversine_m
from .schemas import AttributeFilter, ParsedQuery, PriceRange
from .settings import RankingWeights, settings
from .types import Candidate, ScoredVenue, Venue
from .utils import clamp

logger = logging.getLogger(__name__)

NEUTRAL_PROXIMITY = 0.5


def score_semantic(similarity: float) -> float:
    """Map cosine similarity in [-1, 1] onto [0, 1]."""
    return clamp((similarity + 1.0) / 2.0)


def score_proximity(distance_m: float | None, radius_m: float) -> tuple[float, list[str]]:
    if distance_m is None:
        return NEUTRAL_PROXIMITY, []
    normalized = clamp(distance_m / radius_m) if radius_m > 0 else 1.0
    reasons = [f"{distance_m / 1000:.1f} km away" if distance_m >= 1000 else f"{distance_m:.0f} m away"]
    return 1.0 - normalized, reasons


def score_rating(rating: float | None, rating_max: float, rating_neutral: float) -> float:
    value = rating_neutral if rating is None else rating
    return clamp(value / rating_max) if rating_max > 0 else 0.0


def score_price_match(
    price: PriceRange | None, tier: int, decay_per_tier: float
) -> tuple[float, list[str]]:
    if price is None:
        return 1.0, []
    deviation = price.deviation(tier)
    if deviation == 0:
        return 1.0, ["$" * tier]
    return max(0.0, 1.0 - decay_per_tier * deviation), []


def score_cuisine_reasons(desired: Sequence[str], venue: Venue) -> list[str]:
    return sorted(set(desired) & venue.cuisines)


def apply_attribute_filters(
    scored: Iterable[ScoredVenue], filters: Sequence[AttributeFilter]
) -> list[ScoredVenue]:
    """Drop venues whose *reliable* attributes violate a hard filter.

    Unreliable or missing attributes never exclude. Reliable matches are
    reported as highlights.
    """
    out: list[ScoredVenue] = []
    for item in scored:
        excluded = False
        for attr_filter in filters:
            aggregated = item.venue.attributes.get(attr_filter.name)
            if aggregated is None or not aggregated.reliable:
                continue
            if attr_filter.matches(aggregated.value):
                label = attr_filter.label or attr_filter.name.replace("_", " ")
                if label not in item.highlights:
                    item.highlights.append(label)
            elif attr_filter.hard:
                excluded = True
                break
        if not excluded:
            out.append(item)
    return out


class HybridScorer:
    """Pure weighted blend of semantic, proximity, rating and price signals."""

    def __init__(
        self,
        weights: RankingWeights | None = None,
        *,
        rating_max: float | None = None,
        rating_neutral: float | None = None,
        price_decay: float | None = None,
        default_radius_m: float | None = None,
    ) -> None:
        self.weights = (weights or settings.parsed_ranking_weights).normalized()
        self.rating_max = rating_max or settings.RATING_MAX
        self.rating_neutral = settings.RATING_NEUTRAL if rating_neutral is None else rating_neutral
        self.price_decay = settings.PRICE_DECAY_PER_TIER if price_decay is None else price_decay
        self.default_radius_m = default_radius_m or settings.DEFAULT_RADIUS_M

    def score_one(self, candidate: Candidate, parsed: ParsedQuery) -> ScoredVenue:
        c = parsed.constraints
        venue = candidate.venue
        distance = candidate.distance_m
        if distance is None and c.location is not None:
            distance = haversine_m(c.location, venue.location)

        semantic = score_semantic(candidate.similarity)
        proximity, proximity_reasons = score_proximity(distance, c.radius_m or self.default_radius_m)
        rating = score_rating(venue.avg_rating, self.rating_max, self.rating_neutral)
        price, price_reasons = score_price_match(c.price, venue.price_tier, self.price_decay)

        w = self.weights
        total = w.semantic * semantic + w.proximity * proximity + w.rating * rating + w.price * price
        highlights = score_cuisine_reasons(c.cuisines, venue) + price_reasons + proximity_reasons
        return ScoredVenue(
            venue=venue,
            score=total,
            components={
                "semantic": semantic,
                "proximity": proximity,
                "rating": rating,
                "price": price,
            },
            highlights=highlights,
            relaxed=candidate.relaxed,
        )

    def score(self, candidates: Iterable[Candidate], parsed: ParsedQuery) -> list[ScoredVenue]:
        scored = [self.score_one(candidate, parsed) for candidate in candidates]
        scored.sort(key=lambda item: (-item.score, item.venue.id))
        return apply_attribute_filters(scored, parsed.constraints.attribute_filters)


__all__ = [
    "HybridScorer",
    "apply_attribute_filters",
    "score_price_match",
    "score_proximity",
    "score_rating",
    "score_semantic",
]
