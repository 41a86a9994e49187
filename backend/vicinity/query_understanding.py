"""
Query understanding: free text -> ParsedQuery.

The completion service is the primary parser. Any failure on that path
(transport, timeout, open circuit, malformed or out-of-range output) falls back
to a vocabulary scan with ``confidence="low"``. Parsing never blocks on
ambiguity and never raises for degraded upstreams.
"""

from __future__ import annotations

import logging
from hashlib import sha256

from .cache import NAMESPACE_QUERY, TieredCache, get_cache, make_cache_key
from .completion import CompletionService
from .constraint_store import ConstraintStore, get_constraint_store
from .embeddings import EmbeddingClient
from .errors import UpstreamUnavailable
from .metrics import search_degraded_total
from .schemas import (
    PRICE_TIER_MAX,
    PRICE_TIER_MIN,
    AttributeFilter,
    GeoPoint,
    LocationInput,
    ParsedQuery,
    PriceRange,
    QueryConstraints,
    QueryExtraction,
    SearchFilters,
)
from .settings import settings
from .utils import normalize_text

logger = logging.getLogger(__name__)

INSTRUCTION = (
    "You extract structured search constraints from a restaurant search query for Baku. "
    "Return JSON only. Use null for anything the query does not state. "
    "price_min/price_max are tiers 1 (cheap) to 4 (luxury). "
    "place is the neighbourhood or landmark exactly as written, or null. "
    "attributes are words from this list that the query asks for: {attributes}. "
    "Known cuisines: {cuisines}. "
    "residual is whatever descriptive text remains after removing the above."
)


def _fingerprint(text: str) -> str:
    return sha256(text.encode("utf-8")).hexdigest()[:10]


class QueryParser:
    def __init__(
        self,
        completion: CompletionService | None = None,
        embedder: EmbeddingClient | None = None,
        store: ConstraintStore | None = None,
        cache: TieredCache | None = None,
    ) -> None:
        self.completion = completion
        self.embedder = embedder
        self._store = store
        self._cache = cache

    @property
    def store(self) -> ConstraintStore:
        return self._store or get_constraint_store()

    @property
    def cache(self) -> TieredCache:
        return self._cache or get_cache()

    def _instruction(self) -> str:
        store = self.store
        return INSTRUCTION.format(
            attributes=", ".join(store.attribute_words),
            cuisines=", ".join(store.cuisine_names),
        )

    async def parse(
        self,
        raw_text: str,
        location: LocationInput | None = None,
        filters: SearchFilters | None = None,
    ) -> ParsedQuery:
        normalized = normalize_text(raw_text)
        store = self.store
        key = make_cache_key(NAMESPACE_QUERY, store.version, normalized)

        cached = await self.cache.get(key)
        if cached is not None:
            parsed = ParsedQuery.model_validate(cached)
            parsed = parsed.model_copy(update={"raw_text": raw_text})
        else:
            parsed = await self._parse_text(raw_text, normalized, store)
            # Degraded parses are not cached so recovery is visible immediately
            if not parsed.degraded:
                await self.cache.set(
                    key, parsed.model_dump(mode="json"), ttl=settings.QUERY_CACHE_TTL_SECONDS
                )

        return apply_overrides(parsed, location, filters, store)

    async def _parse_text(self, raw_text: str, normalized: str, store: ConstraintStore) -> ParsedQuery:
        degraded: list[str] = []
        extraction: QueryExtraction | None = None

        if self.completion is not None and normalized:
            try:
                result = await self.completion.complete(self._instruction(), normalized, QueryExtraction)
            except UpstreamUnavailable as exc:
                logger.warning("Query parse falling back to heuristics (%s): %s", _fingerprint(normalized), exc)
                degraded.append("completion_unavailable")
            else:
                if result.ok:
                    extraction = result.value
                else:
                    degraded.append("completion_malformed")

        if extraction is not None:
            parsed = self._from_extraction(raw_text, normalized, extraction, store)
        else:
            parsed = self._from_heuristics(raw_text, normalized, store)

        parsed.embedding = await self._embed(parsed, degraded)
        parsed.degraded = degraded
        for reason in degraded:
            search_degraded_total.labels(reason=reason).inc()
        return parsed

    def _from_extraction(
        self, raw_text: str, normalized: str, extraction: QueryExtraction, store: ConstraintStore
    ) -> ParsedQuery:
        constraints = QueryConstraints(
            cuisines=store.canonical_cuisines(extraction.cuisines),
            party_size=extraction.party_size,
            open_now=extraction.open_now,
            residual_text=normalize_text(extraction.residual),
        )
        if extraction.price_min is not None or extraction.price_max is not None:
            constraints.price = PriceRange(
                min=extraction.price_min or PRICE_TIER_MIN,
                max=extraction.price_max or PRICE_TIER_MAX,
            )

        filters: list[AttributeFilter] = []
        for word in extraction.attributes:
            attr_filter = store.attribute_filter(word)
            if attr_filter is not None and attr_filter not in filters:
                filters.append(attr_filter)
        constraints.attribute_filters = filters

        reasons: list[str] = []
        if extraction.place:
            place = store.resolve_place(extraction.place)
            if place is not None:
                constraints.place = place.key
                constraints.location = place.point
                constraints.radius_m = place.radius_m
            else:
                reasons.append(f"unknown place '{extraction.place}'")

        reasons.extend(self._broad_cuisine_reasons(constraints.cuisines, store))
        return ParsedQuery(
            raw_text=raw_text,
            normalized_text=normalized,
            constraints=constraints,
            confidence="high",
            ambiguous=bool(reasons),
            ambiguity_reasons=reasons,
            source="model",
        )

    def _from_heuristics(self, raw_text: str, normalized: str, store: ConstraintStore) -> ParsedQuery:
        scan = store.scan(normalized)
        constraints = QueryConstraints(
            cuisines=scan.cuisines,
            price=scan.price,
            party_size=scan.party_size,
            open_now=scan.open_now,
            residual_text=scan.residual_text,
            attribute_filters=scan.attribute_filters,
        )
        if scan.place is not None:
            constraints.place = scan.place.key
            constraints.location = scan.place.point
            constraints.radius_m = scan.place.radius_m

        reasons = self._broad_cuisine_reasons(constraints.cuisines, store)
        return ParsedQuery(
            raw_text=raw_text,
            normalized_text=normalized,
            constraints=constraints,
            confidence="low",
            ambiguous=bool(reasons),
            ambiguity_reasons=reasons,
            source="heuristic",
        )

    @staticmethod
    def _broad_cuisine_reasons(cuisines: list[str], store: ConstraintStore) -> list[str]:
        return [
            f"cuisine '{cuisine}' is a broad category"
            for cuisine in cuisines
            if store.is_broad_cuisine(cuisine)
        ]

    async def _embed(self, parsed: ParsedQuery, degraded: list[str]) -> list[float] | None:
        if self.embedder is None:
            return None
        text = parsed.constraints.residual_text or parsed.normalized_text
        if not text:
            return None
        try:
            return await self.embedder.embed(text)
        except UpstreamUnavailable as exc:
            logger.warning("Query embedding unavailable: %s", exc)
            degraded.append("embedding_unavailable")
            return None


def apply_overrides(
    parsed: ParsedQuery,
    location: LocationInput | None,
    filters: SearchFilters | None,
    store: ConstraintStore,
) -> ParsedQuery:
    """Merge caller-supplied location and filters over the text-derived constraints."""
    if location is None and filters is None:
        return parsed
    constraints = parsed.constraints.model_copy(deep=True)

    if location is not None:
        constraints.location = GeoPoint(lat=location.lat, lon=location.lon)
        constraints.radius_m = location.radius_m or constraints.radius_m or store.default_radius_m

    if filters is not None:
        if filters.cuisines:
            constraints.cuisines = store.canonical_cuisines(filters.cuisines)
        if filters.price_min is not None or filters.price_max is not None:
            current = constraints.price or PriceRange()
            low = filters.price_min if filters.price_min is not None else current.min
            high = filters.price_max if filters.price_max is not None else current.max
            # An explicit bound wins over the conflicting parsed one
            if low > high:
                if filters.price_max is not None:
                    low = min(low, high)
                else:
                    high = max(low, high)
            constraints.price = PriceRange(min=low, max=high)
        if filters.open_now is not None:
            constraints.open_now = filters.open_now
        for attr_filter in filters.attributes:
            if attr_filter not in constraints.attribute_filters:
                constraints.attribute_filters.append(attr_filter)

    return parsed.model_copy(update={"constraints": constraints})


__all__ = ["INSTRUCTION", "QueryParser", "apply_overrides"]
