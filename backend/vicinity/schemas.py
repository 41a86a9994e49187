from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PRICE_TIER_MIN = 1
PRICE_TIER_MAX = 4

VIBES = ("romantic", "casual", "lively", "cozy", "upscale", "family", "business")
QUALITY_LABELS = ("poor", "average", "good", "excellent")
PartySize = Literal["small", "medium", "large"]
Vibe = Literal["romantic", "casual", "lively", "cozy", "upscale", "family", "business"]
Quality = Literal["poor", "average", "good", "excellent"]


class GeoPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)


class PriceRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: int = Field(default=PRICE_TIER_MIN, ge=PRICE_TIER_MIN, le=PRICE_TIER_MAX)
    max: int = Field(default=PRICE_TIER_MAX, ge=PRICE_TIER_MIN, le=PRICE_TIER_MAX)

    @model_validator(mode="after")
    def _ordered(self) -> PriceRange:
        if self.min > self.max:
            raise ValueError("price range min must not exceed max")
        return self

    def contains(self, tier: int) -> bool:
        return self.min <= tier <= self.max

    def deviation(self, tier: int) -> int:
        if tier < self.min:
            return self.min - tier
        if tier > self.max:
            return tier - self.max
        return 0


class AttributeFilter(BaseModel):
    """Post-scoring constraint on an aggregated venue attribute (e.g. quiet -> noise_level <= 2)."""

    model_config = ConfigDict(frozen=True)

    name: str
    max_value: float | None = None
    min_value: float | None = None
    equals: str | None = None
    hard: bool = True
    label: str | None = None

    def matches(self, value: float | str) -> bool:
        if self.equals is not None:
            return str(value) == self.equals
        if isinstance(value, str):
            return False
        if self.max_value is not None and value > self.max_value:
            return False
        if self.min_value is not None and value < self.min_value:
            return False
        return True


class QueryConstraints(BaseModel):
    cuisines: list[str] = Field(default_factory=list)
    price: PriceRange | None = None
    location: GeoPoint | None = None
    radius_m: float | None = Field(default=None, gt=0)
    place: str | None = None
    party_size: PartySize | None = None
    open_now: bool = False
    residual_text: str = ""
    attribute_filters: list[AttributeFilter] = Field(default_factory=list)


class ParsedQuery(BaseModel):
    raw_text: str
    normalized_text: str
    constraints: QueryConstraints = Field(default_factory=QueryConstraints)
    embedding: list[float] | None = None
    confidence: Literal["high", "low"] = "high"
    ambiguous: bool = False
    ambiguity_reasons: list[str] = Field(default_factory=list)
    source: Literal["model", "heuristic"] = "model"
    degraded: list[str] = Field(default_factory=list)


# ---------- completion-service output schemas ----------


class QueryExtraction(BaseModel):
    """Schema the completion service must fill for a search query.

    Keys are required (values may be null) so a truncated or free-form reply
    fails validation instead of silently producing an empty query.
    """

    model_config = ConfigDict(extra="ignore")

    cuisines: list[str]
    price_min: int | None = Field(..., ge=PRICE_TIER_MIN, le=PRICE_TIER_MAX)
    price_max: int | None = Field(..., ge=PRICE_TIER_MIN, le=PRICE_TIER_MAX)
    place: str | None = Field(...)
    party_size: PartySize | None = None
    open_now: bool = False
    attributes: list[str] = Field(default_factory=list)
    residual: str = ""

    @field_validator("place")
    @classmethod
    def _place_not_blank(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if not value.strip():
            raise ValueError("place must be non-empty or null")
        return value.strip()

    @model_validator(mode="after")
    def _price_ordered(self) -> QueryExtraction:
        if (
            self.price_min is not None
            and self.price_max is not None
            and self.price_min > self.price_max
        ):
            raise ValueError("price_min must not exceed price_max")
        return self


class ReviewAttributes(BaseModel):
    """Per-review attributes extracted from free text. Null means "not mentioned"."""

    model_config = ConfigDict(extra="ignore")

    noise_level: int | None = Field(..., ge=1, le=5)
    vibe: Vibe | None = Field(...)
    food_quality: Quality | None = Field(...)
    service_quality: Quality | None = None


# ---------- API payloads ----------


class SearchFilters(BaseModel):
    cuisines: list[str] | None = None
    price_min: int | None = Field(default=None, ge=PRICE_TIER_MIN, le=PRICE_TIER_MAX)
    price_max: int | None = Field(default=None, ge=PRICE_TIER_MIN, le=PRICE_TIER_MAX)
    open_now: bool | None = None
    attributes: list[AttributeFilter] = Field(default_factory=list)

    @model_validator(mode="after")
    def _price_ordered(self) -> SearchFilters:
        if (
            self.price_min is not None
            and self.price_max is not None
            and self.price_min > self.price_max
        ):
            raise ValueError("price_min must not exceed price_max")
        return self


class LocationInput(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    radius_m: float | None = Field(default=None, gt=0, le=50_000)


class SearchRequest(BaseModel):
    query: str = Field(min_length=1, max_length=500)
    location: LocationInput | None = None
    filters: SearchFilters | None = None
    limit: int = Field(default=20, ge=1, le=100)


class VenueSummary(BaseModel):
    id: str
    name: str
    lat: float
    lon: float
    price_tier: int
    cuisines: list[str]
    avg_rating: float | None = None


class SearchHit(BaseModel):
    venue: VenueSummary
    score: float
    highlights: list[str] = Field(default_factory=list)
    relaxed: bool = False
    components: dict[str, float] = Field(default_factory=dict)


class SearchResponse(BaseModel):
    results: list[SearchHit]
    query: ParsedQuery
    total_candidates: int = 0
    cached: bool = False


class ReviewSubmittedResponse(BaseModel):
    review_id: str
    queued: bool = True
