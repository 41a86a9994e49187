import json
import os
import sys
from datetime import UTC, datetime
from pathlib import Path

import pytest
import sentry_sdk

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Disable outbound Sentry calls during tests
sentry_sdk.init = lambda *args, **kwargs: None  # type: ignore[assignment]
os.environ["SENTRY_DSN"] = ""
test_data_dir = ROOT / "artifacts" / "test-data"
test_data_dir.mkdir(parents=True, exist_ok=True)
os.environ["DATA_DIR"] = str(test_data_dir)
os.environ["DATABASE_URL"] = f"sqlite:///{test_data_dir / 'vicinity-test.db'}"
os.environ["REDIS_ENABLED"] = "false"
os.environ["RUN_WORKERS_IN_APP"] = "false"
os.environ["EMBEDDING_BACKEND"] = "hash"
os.environ.pop("OPENAI_API_KEY", None)

from backend.vicinity.cache import TieredCache, TTLCache  # noqa: E402
from backend.vicinity.circuit_breaker import reset_all_breakers  # noqa: E402
from backend.vicinity.completion import CompletionResult, validate_output  # noqa: E402
from backend.vicinity.constraint_store import ConstraintStore  # noqa: E402
from backend.vicinity.embeddings import EmbeddingClient, HashingEmbedder  # noqa: E402
from backend.vicinity.index import FaissVenueIndex, venue_document  # noqa: E402
from backend.vicinity.pipeline.jobs import InMemoryJobQueue  # noqa: E402
from backend.vicinity.schemas import GeoPoint  # noqa: E402
from backend.vicinity.settings import PACKAGE_DATA_DIR, settings  # noqa: E402
from backend.vicinity.storage import InMemoryVenueStore  # noqa: E402
from backend.vicinity.types import Review, Venue  # noqa: E402

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)
OLD_CITY = GeoPoint(lat=40.3664, lon=49.8372)


class FakeCompletion:
    """Scripted completion service. The last scripted reply repeats once the script runs out."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls: list[str] = []

    async def complete(self, instruction, text, schema):
        self.calls.append(text)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, CompletionResult):
            return reply
        if isinstance(reply, dict):
            reply = json.dumps(reply)
        return validate_output(reply, schema)


def embed_text(text: str) -> list[float]:
    return HashingEmbedder()._embed(text)


def make_venue(
    venue_id: str,
    *,
    lat: float = 40.3664,
    lon: float = 49.8372,
    price_tier: int = 2,
    cuisines=("azerbaijani",),
    avg_rating: float | None = 4.0,
    description: str = "",
    name: str | None = None,
    embed: bool = True,
) -> Venue:
    venue = Venue(
        id=venue_id,
        name=name or venue_id,
        location=GeoPoint(lat=lat, lon=lon),
        price_tier=price_tier,
        cuisines=set(cuisines),
        avg_rating=avg_rating,
        description=description,
    )
    if embed:
        venue.embedding = embed_text(venue_document(venue))
    return venue


def make_review(review_id: str, venue_id: str = "v-sakura", text: str = "Lovely quiet dinner", **kwargs) -> Review:
    kwargs.setdefault("rating", 4.0)
    kwargs.setdefault("created_at", NOW)
    return Review(id=review_id, venue_id=venue_id, text=text, **kwargs)


def load_sample_venues() -> list[Venue]:
    rows = json.loads((PACKAGE_DATA_DIR / "venues.sample.json").read_text(encoding="utf-8"))
    return [
        make_venue(
            row["id"],
            name=row["name"],
            lat=row["lat"],
            lon=row["lon"],
            price_tier=row["price_tier"],
            cuisines=row["cuisines"],
            avg_rating=row.get("avg_rating"),
            description=row.get("description", ""),
        )
        for row in rows
    ]


@pytest.fixture(autouse=True)
def reset_breakers():
    reset_all_breakers()
    yield
    reset_all_breakers()


@pytest.fixture
def cache() -> TieredCache:
    return TieredCache(TTLCache("test", max_size=256, default_ttl=60), None)


@pytest.fixture(scope="session")
def constraint_store() -> ConstraintStore:
    return ConstraintStore.load()


@pytest.fixture
def embedder(cache) -> EmbeddingClient:
    return EmbeddingClient(HashingEmbedder(), cache=cache)


@pytest.fixture(scope="session")
def sample_venues() -> list[Venue]:
    return load_sample_venues()


@pytest.fixture
def venue_store(sample_venues) -> InMemoryVenueStore:
    return InMemoryVenueStore(sample_venues)


@pytest.fixture
def sample_index(sample_venues) -> FaissVenueIndex:
    return FaissVenueIndex.build(sample_venues, settings.EMBEDDING_DIMENSION)


@pytest.fixture
def job_queue() -> InMemoryJobQueue:
    return InMemoryJobQueue(visibility_timeout=30)
