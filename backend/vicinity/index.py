"""
Read-only venue index: equality lookups (price tier, cuisine), a grid spatial
index for bounding-box queries and a faiss HNSW index for vector search.

The index is built once from a venue snapshot and never mutated; a rebuild
produces a new object that is swapped in with ``set_index``.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Protocol

import faiss
import numpy as np

from .errors import IndexBuildError, IndexUnavailable
from .geo import BoundingBox
from .schemas import PriceRange
from .settings import settings
from .types import Venue

if TYPE_CHECKING:
    from .storage import VenueStore

logger = logging.getLogger(__name__)

# Subsets at or below this size are scored with an exact dot product
EXACT_SEARCH_MAX = 2048


def venue_document(venue: Venue) -> str:
    """Text embedded for a venue: name, cuisines and description."""
    pieces = [
        venue.name,
        " ".join(sorted(c.replace("_", " ") for c in venue.cuisines)),
        venue.description,
    ]
    return " ".join(p for p in pieces if p)


class VenueIndex(Protocol):
    dimension: int

    def __len__(self) -> int: ...

    def venue_at(self, position: int) -> Venue: ...

    def lookup(
        self,
        *,
        price: PriceRange | None = None,
        cuisines: Sequence[str] | None = None,
        box: BoundingBox | None = None,
    ) -> np.ndarray: ...

    def search(
        self, vector: Sequence[float], k: int, subset: np.ndarray | None = None
    ) -> list[tuple[int, float]]: ...


class FaissVenueIndex:
    def __init__(
        self,
        venues: list[Venue],
        vectors: np.ndarray,
        *,
        cell_degrees: float | None = None,
        hnsw_m: int | None = None,
        ef_construction: int | None = None,
        ef_search: int | None = None,
        exact_threshold: int = EXACT_SEARCH_MAX,
    ) -> None:
        self.venues = venues
        self.vectors = vectors
        self.dimension = int(vectors.shape[1])
        self.cell_degrees = cell_degrees or settings.GRID_CELL_DEGREES
        self.ef_search = ef_search or settings.HNSW_EF_SEARCH
        self.exact_threshold = exact_threshold
        self._positions = {venue.id: pos for pos, venue in enumerate(venues)}

        self._by_price: dict[int, set[int]] = defaultdict(set)
        self._by_cuisine: dict[str, set[int]] = defaultdict(set)
        self._grid: dict[tuple[int, int], list[int]] = defaultdict(list)
        for pos, venue in enumerate(venues):
            self._by_price[venue.price_tier].add(pos)
            for cuisine in venue.cuisines:
                self._by_cuisine[cuisine].add(pos)
            self._grid[self._cell(venue.location.lat, venue.location.lon)].append(pos)

        self._hnsw = faiss.IndexHNSWFlat(
            self.dimension, hnsw_m or settings.HNSW_M, faiss.METRIC_INNER_PRODUCT
        )
        self._hnsw.hnsw.efConstruction = ef_construction or settings.HNSW_EF_CONSTRUCTION
        self._hnsw.hnsw.efSearch = self.ef_search
        if len(venues):
            self._hnsw.add(vectors)
        logger.info(
            "Venue index ready: %d venues, dim=%d, %d grid cells",
            len(venues),
            self.dimension,
            len(self._grid),
        )

    @classmethod
    def build(cls, venues: Iterable[Venue], dimension: int | None = None, **kwargs) -> FaissVenueIndex:
        """Validate embeddings and build the index. Raises IndexBuildError on bad input."""
        dim = dimension or settings.EMBEDDING_DIMENSION
        venue_list = sorted(venues, key=lambda v: v.id)
        seen: set[str] = set()
        rows: list[list[float]] = []
        for venue in venue_list:
            if venue.id in seen:
                raise IndexBuildError(f"duplicate venue id {venue.id!r}")
            seen.add(venue.id)
            if len(venue.embedding) != dim:
                raise IndexBuildError(
                    f"venue {venue.id!r} embedding has {len(venue.embedding)} dims, expected {dim}"
                )
            rows.append(venue.embedding)
        vectors = np.asarray(rows, dtype=np.float32).reshape(len(rows), dim)
        if not np.all(np.isfinite(vectors)):
            raise IndexBuildError("venue embeddings contain non-finite values")
        if len(rows):
            faiss.normalize_L2(vectors)
        return cls(venue_list, vectors, **kwargs)

    @classmethod
    async def from_store(cls, store: VenueStore, dimension: int | None = None, **kwargs) -> FaissVenueIndex:
        venues = await store.list_venues()
        return cls.build(venues, dimension, **kwargs)

    def __len__(self) -> int:
        return len(self.venues)

    def venue_at(self, position: int) -> Venue:
        return self.venues[position]

    def position_of(self, venue_id: str) -> int | None:
        return self._positions.get(venue_id)

    # ---------- filters ----------

    def _cell(self, lat: float, lon: float) -> tuple[int, int]:
        return (math.floor(lat / self.cell_degrees), math.floor(lon / self.cell_degrees))

    def _in_box(self, box: BoundingBox) -> set[int]:
        lat_lo, lon_lo = self._cell(box.min_lat, box.min_lon)
        lat_hi, lon_hi = self._cell(box.max_lat, box.max_lon)
        span = (lat_hi - lat_lo + 1) * (lon_hi - lon_lo + 1)
        if span <= len(self._grid):
            cells = (
                (i, j)
                for i in range(lat_lo, lat_hi + 1)
                for j in range(lon_lo, lon_hi + 1)
            )
        else:
            cells = (
                key
                for key in self._grid
                if lat_lo <= key[0] <= lat_hi and lon_lo <= key[1] <= lon_hi
            )
        out: set[int] = set()
        for cell in cells:
            for pos in self._grid.get(cell, ()):
                if box.contains(self.venues[pos].location):
                    out.add(pos)
        return out

    def lookup(
        self,
        *,
        price: PriceRange | None = None,
        cuisines: Sequence[str] | None = None,
        box: BoundingBox | None = None,
    ) -> np.ndarray:
        """Positions satisfying every given filter, ascending."""
        selected: set[int] | None = None
        if price is not None:
            selected = set()
            for tier in range(price.min, price.max + 1):
                selected |= self._by_price.get(tier, set())
        if cuisines:
            by_cuisine: set[int] = set()
            for cuisine in cuisines:
                by_cuisine |= self._by_cuisine.get(cuisine, set())
            selected = by_cuisine if selected is None else selected & by_cuisine
        if box is not None:
            if selected is None:
                selected = self._in_box(box)
            elif selected:
                selected &= self._in_box(box)
        if selected is None:
            return np.arange(len(self.venues), dtype=np.int64)
        return np.fromiter(sorted(selected), dtype=np.int64, count=len(selected))

    # ---------- vector search ----------

    def _query_vector(self, vector: Sequence[float]) -> np.ndarray:
        query = np.asarray(vector, dtype=np.float32).reshape(1, -1)
        if query.shape[1] != self.dimension:
            raise IndexUnavailable(
                f"query vector has {query.shape[1]} dims, index expects {self.dimension}"
            )
        faiss.normalize_L2(query)
        return query

    def search(
        self, vector: Sequence[float], k: int, subset: np.ndarray | None = None
    ) -> list[tuple[int, float]]:
        """Top-k (position, cosine) pairs, optionally restricted to ``subset`` positions."""
        if k <= 0 or not len(self.venues):
            return []
        query = self._query_vector(vector)
        if subset is not None:
            if not len(subset):
                return []
            if len(subset) <= self.exact_threshold:
                return self._exact(query, subset, k)
        try:
            if subset is None:
                scores, labels = self._hnsw.search(query, min(k, len(self.venues)))
            else:
                ids = np.ascontiguousarray(subset, dtype=np.int64)
                selector = faiss.IDSelectorBatch(len(ids), faiss.swig_ptr(ids))
                params = faiss.SearchParametersHNSW(sel=selector, efSearch=max(self.ef_search, k))
                scores, labels = self._hnsw.search(query, min(k, len(ids)), params=params)
        except RuntimeError as exc:
            raise IndexUnavailable(f"vector search failed: {exc}") from exc
        return [
            (int(label), float(score))
            for label, score in zip(labels[0], scores[0])
            if label >= 0
        ]

    def _exact(self, query: np.ndarray, subset: np.ndarray, k: int) -> list[tuple[int, float]]:
        sims = self.vectors[subset] @ query[0]
        top = min(k, len(subset))
        order = np.argpartition(-sims, top - 1)[:top] if top < len(subset) else np.arange(len(subset))
        ranked = sorted(order, key=lambda i: (-float(sims[i]), int(subset[i])))
        return [(int(subset[i]), float(sims[i])) for i in ranked]


_index: VenueIndex | None = None


def get_index() -> VenueIndex:
    if _index is None:
        raise IndexUnavailable("venue index has not been built")
    return _index


def set_index(index: VenueIndex | None) -> None:
    """Atomically swap the served index; in-flight searches keep the old object."""
    global _index
    _index = index


__all__ = [
    "EXACT_SEARCH_MAX",
    "FaissVenueIndex",
    "VenueIndex",
    "get_index",
    "set_index",
    "venue_document",
]
