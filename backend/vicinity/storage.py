"""
Venue and review storage.

The engine only needs a narrow view of the record store: read venues and
reviews, write extraction results and aggregated attributes. ``SqlVenueStore``
is the SQLAlchemy adapter; ``InMemoryVenueStore`` backs tests and local runs.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from threading import Lock
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db.models import ReviewRecord, VenueRecord
from .errors import ReviewNotFound, StorageUnavailable
from .schemas import GeoPoint
from .types import AggregatedAttribute, ExtractionStatus, Review, Venue

logger = logging.getLogger(__name__)


class VenueStore(Protocol):
    async def get_venue(self, venue_id: str) -> Venue | None: ...

    async def get_venues(self, venue_ids: Iterable[str]) -> dict[str, Venue]: ...

    async def list_venues(self) -> list[Venue]: ...

    async def get_review(self, review_id: str) -> Review | None: ...

    async def list_reviews(
        self, venue_id: str, status: ExtractionStatus | None = None
    ) -> list[Review]: ...

    async def update_review_extraction(
        self,
        review_id: str,
        *,
        status: ExtractionStatus,
        attributes: dict[str, Any] | None,
        attempts: int,
        last_error: str | None = None,
    ) -> Review: ...

    async def update_venue_attributes(
        self, venue_id: str, attributes: dict[str, AggregatedAttribute]
    ) -> None: ...


def _aware(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _record_to_venue(record: VenueRecord) -> Venue:
    return Venue(
        id=record.id,
        name=record.name,
        location=GeoPoint(lat=record.lat, lon=record.lon),
        price_tier=record.price_tier,
        cuisines=set(record.cuisines or []),
        avg_rating=record.avg_rating,
        embedding=list(record.embedding or []),
        attributes={
            name: AggregatedAttribute.from_dict(payload)
            for name, payload in (record.attributes or {}).items()
        },
        description=record.description or "",
    )


def _record_to_review(record: ReviewRecord) -> Review:
    return Review(
        id=record.id,
        venue_id=record.venue_id,
        text=record.text,
        rating=record.rating,
        created_at=_aware(record.created_at),
        status=ExtractionStatus(record.status),
        attributes=record.attributes,
        attempts=record.attempts or 0,
        last_error=record.last_error,
    )


class SqlVenueStore:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession] | None = None) -> None:
        if sessionmaker is None:
            from .db.core import SessionLocal

            sessionmaker = SessionLocal
        self._sessionmaker = sessionmaker

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessionmaker() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("Storage error: %s", exc)
            raise StorageUnavailable(str(exc)) from exc

    async def get_venue(self, venue_id: str) -> Venue | None:
        async with self._session() as session:
            record = await session.get(VenueRecord, venue_id)
            return _record_to_venue(record) if record else None

    async def get_venues(self, venue_ids: Iterable[str]) -> dict[str, Venue]:
        ids = list(dict.fromkeys(venue_ids))
        if not ids:
            return {}
        async with self._session() as session:
            rows = await session.execute(select(VenueRecord).where(VenueRecord.id.in_(ids)))
            return {record.id: _record_to_venue(record) for record in rows.scalars()}

    async def list_venues(self) -> list[Venue]:
        async with self._session() as session:
            rows = await session.execute(select(VenueRecord).order_by(VenueRecord.id))
            return [_record_to_venue(record) for record in rows.scalars()]

    async def get_review(self, review_id: str) -> Review | None:
        async with self._session() as session:
            record = await session.get(ReviewRecord, review_id)
            return _record_to_review(record) if record else None

    async def list_reviews(
        self, venue_id: str, status: ExtractionStatus | None = None
    ) -> list[Review]:
        stmt = select(ReviewRecord).where(ReviewRecord.venue_id == venue_id)
        if status is not None:
            stmt = stmt.where(ReviewRecord.status == status.value)
        async with self._session() as session:
            rows = await session.execute(stmt.order_by(ReviewRecord.created_at, ReviewRecord.id))
            return [_record_to_review(record) for record in rows.scalars()]

    async def update_review_extraction(
        self,
        review_id: str,
        *,
        status: ExtractionStatus,
        attributes: dict[str, Any] | None,
        attempts: int,
        last_error: str | None = None,
    ) -> Review:
        async with self._session() as session:
            record = await session.get(ReviewRecord, review_id)
            if record is None:
                raise ReviewNotFound(review_id)
            record.status = status.value
            record.attributes = attributes
            record.attempts = attempts
            record.last_error = (last_error or "")[:255] or None
            await session.commit()
            await session.refresh(record)
            return _record_to_review(record)

    async def update_venue_attributes(
        self, venue_id: str, attributes: dict[str, AggregatedAttribute]
    ) -> None:
        async with self._session() as session:
            record = await session.get(VenueRecord, venue_id)
            if record is None:
                logger.warning("Aggregated attributes for unknown venue %s dropped", venue_id)
                return
            record.attributes = {name: attr.to_dict() for name, attr in attributes.items()}
            await session.commit()

    async def add_venue(self, venue: Venue) -> None:
        async with self._session() as session:
            await session.merge(
                VenueRecord(
                    id=venue.id,
                    name=venue.name,
                    lat=venue.location.lat,
                    lon=venue.location.lon,
                    price_tier=venue.price_tier,
                    cuisines=sorted(venue.cuisines),
                    avg_rating=venue.avg_rating,
                    description=venue.description,
                    embedding=list(venue.embedding) or None,
                    attributes={name: attr.to_dict() for name, attr in venue.attributes.items()},
                )
            )
            await session.commit()

    async def add_review(self, review: Review) -> None:
        async with self._session() as session:
            await session.merge(
                ReviewRecord(
                    id=review.id,
                    venue_id=review.venue_id,
                    text=review.text,
                    rating=review.rating,
                    created_at=review.created_at,
                    status=review.status.value,
                    attributes=review.attributes,
                    attempts=review.attempts,
                    last_error=review.last_error,
                )
            )
            await session.commit()


class InMemoryVenueStore:
    """Process-local store. Returns copies so callers cannot mutate stored state."""

    def __init__(self, venues: Iterable[Venue] = (), reviews: Iterable[Review] = ()) -> None:
        self._venues: dict[str, Venue] = {v.id: copy.deepcopy(v) for v in venues}
        self._reviews: dict[str, Review] = {r.id: copy.deepcopy(r) for r in reviews}
        self._lock = Lock()

    async def get_venue(self, venue_id: str) -> Venue | None:
        with self._lock:
            venue = self._venues.get(venue_id)
            return copy.deepcopy(venue) if venue else None

    async def get_venues(self, venue_ids: Iterable[str]) -> dict[str, Venue]:
        with self._lock:
            return {
                vid: copy.deepcopy(self._venues[vid]) for vid in venue_ids if vid in self._venues
            }

    async def list_venues(self) -> list[Venue]:
        with self._lock:
            return [copy.deepcopy(self._venues[vid]) for vid in sorted(self._venues)]

    async def get_review(self, review_id: str) -> Review | None:
        with self._lock:
            review = self._reviews.get(review_id)
            return copy.deepcopy(review) if review else None

    async def list_reviews(
        self, venue_id: str, status: ExtractionStatus | None = None
    ) -> list[Review]:
        with self._lock:
            reviews = [
                r
                for r in self._reviews.values()
                if r.venue_id == venue_id and (status is None or r.status is status)
            ]
            reviews.sort(key=lambda r: (r.created_at, r.id))
            return copy.deepcopy(reviews)

    async def update_review_extraction(
        self,
        review_id: str,
        *,
        status: ExtractionStatus,
        attributes: dict[str, Any] | None,
        attempts: int,
        last_error: str | None = None,
    ) -> Review:
        with self._lock:
            review = self._reviews.get(review_id)
            if review is None:
                raise ReviewNotFound(review_id)
            review.status = status
            review.attributes = copy.deepcopy(attributes)
            review.attempts = attempts
            review.last_error = last_error
            return copy.deepcopy(review)

    async def update_venue_attributes(
        self, venue_id: str, attributes: dict[str, AggregatedAttribute]
    ) -> None:
        with self._lock:
            venue = self._venues.get(venue_id)
            if venue is None:
                logger.warning("Aggregated attributes for unknown venue %s dropped", venue_id)
                return
            venue.attributes = copy.deepcopy(attributes)

    async def add_venue(self, venue: Venue) -> None:
        with self._lock:
            self._venues[venue.id] = copy.deepcopy(venue)

    async def add_review(self, review: Review) -> None:
        with self._lock:
            self._reviews[review.id] = copy.deepcopy(review)


_store: VenueStore | None = None


def get_store() -> VenueStore:
    global _store
    if _store is None:
        _store = SqlVenueStore()
    return _store


def set_store(store: VenueStore | None) -> None:
    global _store
    _store = store


__all__ = [
    "InMemoryVenueStore",
    "SqlVenueStore",
    "VenueStore",
    "get_store",
    "set_store",
]
