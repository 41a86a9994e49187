from __future__ import annotations

import logging
from collections.abc import Callable

import numpy as np

from .errors import IndexUnavailable
from .geo import BoundingBox, haversine_m
from .index import VenueIndex, get_index
from .metrics import retrieval_widenings_total
from .schemas import ParsedQuery
from .settings import settings
from .types import Candidate

logger = logging.getLogger(__name__)


def box_half_size(radius_m: float) -> float:
    return max(radius_m * settings.BOX_EXPANSION, settings.MIN_BOX_RADIUS_M)


class CandidateRetriever:
    """Hard filters, geospatial pre-filter and subset vector search.

    Stages run narrowest first: the original box, up to ``MAX_WIDENINGS``
    widened boxes, then an unfiltered search over the whole index. Anything
    that was not inside the first stage's subset is marked ``relaxed``.
    """

    def __init__(self, index_provider: Callable[[], VenueIndex] = get_index) -> None:
        self._index_provider = index_provider

    def retrieve(self, parsed: ParsedQuery, limit: int | None = None) -> list[Candidate]:
        limit = limit or settings.RETRIEVAL_LIMIT
        index = self._index_provider()
        try:
            return self._retrieve(index, parsed, limit)
        except IndexUnavailable:
            raise
        except (RuntimeError, MemoryError) as exc:
            raise IndexUnavailable(f"retrieval failed: {exc}") from exc

    def _retrieve(self, index: VenueIndex, parsed: ParsedQuery, limit: int) -> list[Candidate]:
        c = parsed.constraints
        center = c.location
        filtered = center is not None or c.price is not None or bool(c.cuisines)
        if not filtered:
            return self._rank(index, parsed, None, limit, strict=None)

        radius = c.radius_m or settings.DEFAULT_RADIUS_M
        half_size = box_half_size(radius)
        stages = settings.MAX_WIDENINGS + 1 if center is not None else 1

        strict: set[int] | None = None
        subset = np.empty(0, dtype=np.int64)
        for stage in range(stages):
            box = BoundingBox.around(center, half_size) if center is not None else None
            subset = index.lookup(price=c.price, cuisines=c.cuisines or None, box=box)
            if strict is None:
                strict = set(subset.tolist())
            if len(subset) >= settings.MIN_CANDIDATES:
                break
            if stage + 1 < stages:
                retrieval_widenings_total.labels(stage="widen").inc()
                half_size *= settings.WIDEN_FACTOR
                logger.debug("Widening box to %.0fm (%d candidates)", half_size, len(subset))

        candidates = self._rank(index, parsed, subset, limit, strict=strict)
        if len(subset) >= settings.MIN_CANDIDATES:
            return candidates

        retrieval_widenings_total.labels(stage="fallback").inc()
        logger.info(
            "Only %d filtered candidates; falling back to unfiltered search", len(subset)
        )
        seen = {cand.venue.id for cand in candidates}
        for cand in self._rank(index, parsed, None, limit, strict=strict):
            if len(candidates) >= limit:
                break
            if cand.venue.id not in seen:
                candidates.append(cand)
                seen.add(cand.venue.id)
        return candidates

    def _rank(
        self,
        index: VenueIndex,
        parsed: ParsedQuery,
        subset: np.ndarray | None,
        limit: int,
        *,
        strict: set[int] | None,
    ) -> list[Candidate]:
        center = parsed.constraints.location
        if parsed.embedding is not None:
            hits = index.search(parsed.embedding, limit, subset)
        else:
            positions = range(len(index)) if subset is None else subset.tolist()
            if center is not None:
                ordered = sorted(
                    positions,
                    key=lambda pos: (haversine_m(center, index.venue_at(pos).location), index.venue_at(pos).id),
                )
            else:
                ordered = sorted(positions, key=lambda pos: index.venue_at(pos).id)
            hits = [(pos, 0.0) for pos in ordered[:limit]]

        out: list[Candidate] = []
        for pos, similarity in hits:
            venue = index.venue_at(pos)
            out.append(
                Candidate(
                    venue=venue,
                    similarity=similarity,
                    distance_m=haversine_m(center, venue.location) if center is not None else None,
                    relaxed=strict is not None and pos not in strict,
                )
            )
        return out


__all__ = ["CandidateRetriever", "box_half_size"]
