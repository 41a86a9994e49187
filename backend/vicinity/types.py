from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .schemas import GeoPoint, VenueSummary


class ExtractionStatus(str, Enum):
    PENDING = "pending"
    EXTRACTED = "extracted"
    FAILED_PERMANENT = "failed_permanent"

    def can_transition_to(self, target: ExtractionStatus) -> bool:
        if self is ExtractionStatus.PENDING:
            return target is not ExtractionStatus.PENDING
        # Re-extraction after redelivery overwrites in place
        return self is target


@dataclass
class AggregatedAttribute:
    value: float | str
    confidence: float
    sample_count: int
    updated_at: datetime
    reliable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "confidence": self.confidence,
            "sample_count": self.sample_count,
            "updated_at": self.updated_at.isoformat(),
            "reliable": self.reliable,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AggregatedAttribute:
        updated = payload.get("updated_at")
        if isinstance(updated, str):
            updated_at = datetime.fromisoformat(updated)
        elif isinstance(updated, datetime):
            updated_at = updated
        else:
            updated_at = datetime.now(UTC)
        return cls(
            value=payload["value"],
            confidence=float(payload.get("confidence", 0.0)),
            sample_count=int(payload.get("sample_count", 0)),
            updated_at=updated_at,
            reliable=bool(payload.get("reliable", False)),
        )


@dataclass
class Venue:
    id: str
    name: str
    location: GeoPoint
    price_tier: int
    cuisines: set[str] = field(default_factory=set)
    avg_rating: float | None = None
    embedding: list[float] = field(default_factory=list)
    attributes: dict[str, AggregatedAttribute] = field(default_factory=dict)
    description: str = ""

    def summary(self) -> VenueSummary:
        return VenueSummary(
            id=self.id,
            name=self.name,
            lat=self.location.lat,
            lon=self.location.lon,
            price_tier=self.price_tier,
            cuisines=sorted(self.cuisines),
            avg_rating=self.avg_rating,
        )


@dataclass
class Review:
    id: str
    venue_id: str
    text: str
    rating: float
    created_at: datetime
    status: ExtractionStatus = ExtractionStatus.PENDING
    attributes: dict[str, Any] | None = None
    attempts: int = 0
    last_error: str | None = None


@dataclass
class Candidate:
    venue: Venue
    similarity: float
    distance_m: float | None = None
    relaxed: bool = False


@dataclass
class ScoredVenue:
    venue: Venue
    score: float
    components: dict[str, float] = field(default_factory=dict)
    highlights: list[str] = field(default_factory=list)
    relaxed: bool = False
