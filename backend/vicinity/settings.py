from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

REPO_ROOT = Path(__file__).resolve().parents[2]
ENV_FILE = REPO_ROOT / ".env"
PACKAGE_DATA_DIR = Path(__file__).resolve().parent / "data"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE), env_file_encoding="utf-8", extra="ignore"
    )

    DEBUG: bool = False
    JSON_LOGS: bool | None = None
    ENVIRONMENT: str = "development"

    # storage collaborator
    DATABASE_URL: str | None = None
    DATA_DIR: Path | None = None

    # Upstream model providers
    OPENAI_API_KEY: str | None = None
    OPENAI_API_BASE: str = "https://api.openai.com/v1"
    COMPLETION_MODEL: str = "gpt-4o-mini"
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_BACKEND: Literal["hash", "openai"] = "hash"
    EMBEDDING_DIMENSION: int = 256
    UPSTREAM_TIMEOUT_SECONDS: float = 3.0
    UPSTREAM_CONNECT_TIMEOUT_SECONDS: float = 1.0
    UPSTREAM_FAILURE_THRESHOLD: int = 3
    UPSTREAM_COOLDOWN_SECONDS: float = 60.0

    # Constraint store
    CONSTRAINTS_PATH: Path | None = None
    DEFAULT_RADIUS_M: float = 1500.0

    # Cache
    LOCAL_CACHE_MAX_SIZE: int = 2048
    LOCAL_CACHE_TTL_SECONDS: float = 120.0
    EMBEDDING_CACHE_TTL_SECONDS: int = 7 * 24 * 3600
    QUERY_CACHE_TTL_SECONDS: int = 6 * 3600
    RESULTS_CACHE_TTL_SECONDS: int = 600
    CACHE_KEY_PREFIX: str = "vicinity"
    REDIS_URL: str | None = None  # e.g. "redis://localhost:6379/0"
    REDIS_ENABLED: bool = False

    # Retrieval
    RETRIEVAL_LIMIT: int = 150
    MIN_CANDIDATES: int = 10
    BOX_EXPANSION: float = 1.5
    MIN_BOX_RADIUS_M: float = 750.0
    WIDEN_FACTOR: float = 2.0
    MAX_WIDENINGS: int = 2
    GRID_CELL_DEGREES: float = 0.01
    HNSW_M: int = 32
    HNSW_EF_CONSTRUCTION: int = 80
    HNSW_EF_SEARCH: int = 64

    # Ranking
    RANKING_WEIGHTS: str = "semantic=0.40,proximity=0.30,rating=0.20,price=0.10"
    RATING_MAX: float = 5.0
    RATING_NEUTRAL: float = 2.5
    PRICE_DECAY_PER_TIER: float = 0.34

    # Attribute extraction pipeline
    EXTRACTION_MAX_ATTEMPTS: int = 4
    EXTRACTION_BACKOFF_BASE_SECONDS: float = 1.0
    EXTRACTION_BACKOFF_MAX_SECONDS: float = 30.0
    JOB_VISIBILITY_TIMEOUT_SECONDS: float = 120.0
    JOB_QUEUE_NAME: str = "review-extraction"
    WORKER_CONCURRENCY: int = 4
    AGGREGATION_HALF_LIFE_DAYS: float = 180.0
    AGGREGATION_OUTLIER_Z: float = 2.5
    AGGREGATION_OUTLIER_MIN_SPREAD: float = 0.5
    AGGREGATION_CONFIDENCE_K: float = 5.0
    AGGREGATION_MIN_RELIABLE_SAMPLES: int = 3
    PIPELINE_LIVENESS_WINDOW_SECONDS: float = 900.0
    RUN_WORKERS_IN_APP: bool = True

    # Observability
    SENTRY_DSN: str | None = None
    SENTRY_RELEASE: str | None = None
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1

    @property
    def data_dir(self) -> Path:
        if self.DATA_DIR is not None:
            candidate = Path(self.DATA_DIR).expanduser()
            if str(candidate).strip() not in {"", ".", "./"}:
                candidate.mkdir(parents=True, exist_ok=True)
                return candidate.resolve()
        fallback = Path.home() / ".vicinity-data"
        fallback.mkdir(parents=True, exist_ok=True)
        return fallback

    @property
    def constraints_path(self) -> Path:
        if self.CONSTRAINTS_PATH is not None:
            return Path(self.CONSTRAINTS_PATH).expanduser()
        return PACKAGE_DATA_DIR / "constraints.json"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"sqlite:///{self.data_dir / 'vicinity.db'}"

    @property
    def async_database_url(self) -> str:
        url = self.database_url
        if url.startswith("sqlite:///"):
            return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url

    @property
    def json_logs(self) -> bool:
        if self.JSON_LOGS is not None:
            return self.JSON_LOGS
        return not self.DEBUG

    @property
    def parsed_ranking_weights(self) -> RankingWeights:
        return RankingWeights.from_string(self.RANKING_WEIGHTS)


@dataclass(slots=True, frozen=True)
class RankingWeights:
    semantic: float = 0.40
    proximity: float = 0.30
    rating: float = 0.20
    price: float = 0.10

    @classmethod
    def from_string(cls, payload: str | None) -> RankingWeights:
        base = cls()
        if not payload:
            return base
        mapping: dict[str, float] = {}
        for part in payload.split(","):
            if "=" not in part:
                continue
            key, value = part.split("=", 1)
            key = key.strip().lower()
            try:
                mapping[key] = float(value.strip())
            except ValueError:
                continue
        return cls(
            semantic=mapping.get("semantic", base.semantic),
            proximity=mapping.get("proximity", base.proximity),
            rating=mapping.get("rating", base.rating),
            price=mapping.get("price", base.price),
        ).normalized()

    @property
    def total(self) -> float:
        return self.semantic + self.proximity + self.rating + self.price

    def normalized(self) -> RankingWeights:
        """Rescale so the four weights sum to 1.0; negative weights are clamped to 0."""
        parts = [max(0.0, w) for w in (self.semantic, self.proximity, self.rating, self.price)]
        total = sum(parts)
        if total <= 0:
            return RankingWeights()
        if abs(total - 1.0) < 1e-9:
            return RankingWeights(*parts)
        return RankingWeights(*(w / total for w in parts))


settings = Settings()
