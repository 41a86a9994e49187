"""Load venues into the store, embed any that lack vectors, and verify the index builds.

Usage:
    python backend/scripts/build_index.py --seed backend/vicinity/data/venues.sample.json
    python backend/scripts/build_index.py --query "cheap sushi near old city"
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.vicinity.cache import init_cache  # noqa: E402
from backend.vicinity.db.core import init_db  # noqa: E402
from backend.vicinity.embeddings import EmbeddingClient  # noqa: E402
from backend.vicinity.index import FaissVenueIndex, set_index, venue_document  # noqa: E402
from backend.vicinity.logging_config import configure_structlog  # noqa: E402
from backend.vicinity.schemas import GeoPoint  # noqa: E402
from backend.vicinity.service import build_search_service  # noqa: E402
from backend.vicinity.storage import SqlVenueStore  # noqa: E402
from backend.vicinity.types import Venue  # noqa: E402

logger = logging.getLogger("build_index")


def load_seed(path: Path) -> list[Venue]:
    rows = json.loads(path.read_text(encoding="utf-8"))
    return [
        Venue(
            id=str(row["id"]),
            name=row["name"],
            location=GeoPoint(lat=row["lat"], lon=row["lon"]),
            price_tier=int(row["price_tier"]),
            cuisines=set(row.get("cuisines") or []),
            avg_rating=row.get("avg_rating"),
            description=row.get("description") or "",
        )
        for row in rows
    ]


async def run(args: argparse.Namespace) -> int:
    await init_db()
    store = SqlVenueStore()
    init_cache(use_redis=False)

    if args.seed:
        for venue in load_seed(Path(args.seed)):
            existing = await store.get_venue(venue.id)
            if existing is not None:
                venue = replace(venue, attributes=existing.attributes, embedding=existing.embedding)
            await store.add_venue(venue)
        logger.info("Seeded venues from %s", args.seed)

    venues = await store.list_venues()
    client = EmbeddingClient()
    stale = [v for v in venues if args.reembed or len(v.embedding) != client.dimension]
    if stale:
        logger.info("Embedding %d venues with %s", len(stale), client.backend.name)
        vectors = await client.embed_many([venue_document(v) for v in stale])
        for venue, vector in zip(stale, vectors):
            await store.add_venue(replace(venue, embedding=vector))

    index = await FaissVenueIndex.from_store(store, client.dimension)
    set_index(index)
    logger.info("Index OK: %d venues, dimension %d", len(index), index.dimension)

    if args.query:
        service = build_search_service(store)
        response = await service.search(args.query, limit=args.limit)
        print(json.dumps(response.model_dump(mode="json"), indent=2, ensure_ascii=False))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Build and verify the venue search index.")
    parser.add_argument("--seed", help="JSON file of venues to upsert before building")
    parser.add_argument("--reembed", action="store_true", help="Recompute every venue embedding")
    parser.add_argument("--query", help="Run one search against the fresh index and print it")
    parser.add_argument("-k", "--limit", type=int, default=5, help="Results to show with --query")
    args = parser.parse_args()

    configure_structlog()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
