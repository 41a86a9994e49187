from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import numpy as np

from .cache import NAMESPACE_EMBEDDING, TieredCache, get_cache, make_cache_key
from .circuit_breaker import CircuitBreaker, CircuitOpenError, get_circuit_breaker
from .errors import UpstreamUnavailable
from .metrics import upstream_calls_total
from .openai_async import post_json
from .settings import settings
from .utils import normalize_text

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def l2_normalize(vector: Sequence[float]) -> list[float]:
    arr = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        return arr.tolist()
    return (arr / norm).tolist()


class EmbeddingBackend:
    name: str = "base"
    dimension: int = 0

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        raise NotImplementedError


class HashingEmbedder(EmbeddingBackend):
    """Deterministic hashing-trick embedder (unigrams + bigrams). No network, no model download."""

    def __init__(self, dimension: int | None = None) -> None:
        self.dimension = dimension or settings.EMBEDDING_DIMENSION
        self.name = f"hash-{self.dimension}"

    def _embed(self, text: str) -> list[float]:
        tokens = _TOKEN_RE.findall(text.lower())
        vec = np.zeros(self.dimension, dtype=np.float32)
        features = tokens + [f"{a}_{b}" for a, b in zip(tokens, tokens[1:])]
        for feature in features:
            h = int(hashlib.sha1(feature.encode("utf-8")).hexdigest(), 16)
            sign = 1.0 if (h >> 1) & 1 else -1.0
            vec[h % self.dimension] += sign
        return l2_normalize(vec)

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        return [self._embed(t or "") for t in texts]


class OpenAIEmbedder(EmbeddingBackend):
    """Embeddings endpoint over httpx; ``dimensions`` pins the vector length."""

    def __init__(
        self,
        model: str | None = None,
        dimension: int | None = None,
        *,
        post: Callable[..., Awaitable[dict[str, Any]]] = post_json,
    ) -> None:
        self.model = model or settings.EMBEDDING_MODEL
        self.dimension = dimension or settings.EMBEDDING_DIMENSION
        self.name = f"{self.model}-{self.dimension}"
        self._post = post

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        payload = {
            "model": self.model,
            "input": [text[:2000] for text in texts],
            "dimensions": self.dimension,
        }
        response = await self._post(
            "/embeddings", payload, timeout=settings.UPSTREAM_TIMEOUT_SECONDS
        )
        try:
            ordered = sorted(response["data"], key=lambda d: d["index"])
            vectors = [l2_normalize(item["embedding"]) for item in ordered]
        except (KeyError, TypeError) as exc:
            raise UpstreamUnavailable("embedding", "unexpected response shape") from exc
        if len(vectors) != len(texts) or any(len(v) != self.dimension for v in vectors):
            raise UpstreamUnavailable("embedding", "vector count or dimension mismatch")
        return vectors


def get_default_embedder() -> EmbeddingBackend:
    if settings.EMBEDDING_BACKEND == "openai":
        if settings.OPENAI_API_KEY:
            return OpenAIEmbedder()
        logger.warning("EMBEDDING_BACKEND=openai but no OPENAI_API_KEY; using hashing embedder")
    return HashingEmbedder()


class EmbeddingClient:
    """Cache-first, breaker-guarded ``embed(text) -> vector``.

    Deterministic for identical input, so results are cached by normalized text
    and backend name.
    """

    name = "embedding"

    def __init__(
        self,
        backend: EmbeddingBackend | None = None,
        cache: TieredCache | None = None,
        breaker: CircuitBreaker | None = None,
        timeout: float | None = None,
    ) -> None:
        self.backend = backend or get_default_embedder()
        self._cache = cache
        self._breaker = breaker or get_circuit_breaker(self.name)
        self._timeout = timeout if timeout is not None else settings.UPSTREAM_TIMEOUT_SECONDS

    @property
    def cache(self) -> TieredCache:
        return self._cache or get_cache()

    @property
    def dimension(self) -> int:
        return self.backend.dimension

    def _key(self, normalized: str) -> str:
        return make_cache_key(NAMESPACE_EMBEDDING, self.backend.name, normalized)

    async def _call_backend(self, texts: list[str]) -> list[list[float]]:
        try:
            return await asyncio.wait_for(self.backend.embed_batch(texts), self._timeout + 0.5)
        except TimeoutError as exc:
            raise UpstreamUnavailable(self.name, f"no reply within {self._timeout:.1f}s") from exc

    async def embed(self, text: str) -> list[float]:
        normalized = normalize_text(text)
        key = self._key(normalized)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached
        try:
            vector = (await self._breaker.call(self._call_backend, [normalized]))[0]
        except CircuitOpenError as exc:
            upstream_calls_total.labels(upstream=self.name, outcome="rejected").inc()
            raise UpstreamUnavailable(self.name, str(exc)) from exc
        except UpstreamUnavailable:
            upstream_calls_total.labels(upstream=self.name, outcome="error").inc()
            raise
        upstream_calls_total.labels(upstream=self.name, outcome="ok").inc()
        await self.cache.set(key, vector, ttl=settings.EMBEDDING_CACHE_TTL_SECONDS)
        return vector

    async def embed_many(self, texts: Sequence[str], batch_size: int = 32) -> list[list[float]]:
        """Embed documents for index builds. Bypasses the cache; failures propagate."""
        vectors: list[list[float]] = []
        for start in range(0, len(texts), batch_size):
            batch = [normalize_text(t) for t in texts[start : start + batch_size]]
            vectors.extend(await self._call_backend(batch))
        return vectors


__all__ = [
    "EmbeddingBackend",
    "EmbeddingClient",
    "HashingEmbedder",
    "OpenAIEmbedder",
    "get_default_embedder",
    "l2_normalize",
]
