"""Completion service client: schema-constrained extraction over a chat-completions API.

Model output is untrusted. Every reply is decoded and validated against a
pydantic schema and returned as a tagged ``CompletionResult`` (parsed value or
malformed reason). Transport problems raise ``UpstreamUnavailable``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from hashlib import sha256
from typing import Any, Generic, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from .circuit_breaker import CircuitBreaker, CircuitOpenError, get_circuit_breaker
from .errors import MalformedOutput, UpstreamUnavailable
from .json_utils import extract_json_object
from .metrics import upstream_calls_total
from .openai_async import post_json
from .settings import settings

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

PostJson = Callable[..., Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class CompletionResult(Generic[M]):
    value: M | None = None
    error: str | None = None
    raw: str | None = None

    @property
    def ok(self) -> bool:
        return self.value is not None

    @classmethod
    def parsed(cls, value: M, raw: str | None = None) -> CompletionResult[M]:
        return cls(value=value, raw=raw)

    @classmethod
    def malformed(cls, error: str, raw: str | None = None) -> CompletionResult[M]:
        return cls(error=error, raw=raw)


class CompletionService(Protocol):
    async def complete(
        self, instruction: str, text: str, schema: type[M]
    ) -> CompletionResult[M]: ...


def _fingerprint(text: str) -> str:
    return sha256(text.encode("utf-8")).hexdigest()[:10]


def validate_output(content: Any, schema: type[M]) -> CompletionResult[M]:
    """Decode and validate raw completion content against ``schema``."""
    try:
        payload = extract_json_object(content)
    except MalformedOutput as exc:
        return CompletionResult.malformed(exc.detail, raw=content if isinstance(content, str) else None)
    try:
        return CompletionResult.parsed(schema.model_validate(payload), raw=content)
    except ValidationError as exc:
        fields = ",".join(".".join(str(p) for p in err["loc"]) for err in exc.errors()) or "root"
        return CompletionResult.malformed(f"schema validation failed: {fields}", raw=content)


class OpenAICompletionClient:
    """Chat-completions client in JSON mode with the schema embedded in the prompt."""

    name = "completion"

    def __init__(
        self,
        model: str | None = None,
        *,
        post: PostJson = post_json,
        breaker: CircuitBreaker | None = None,
        timeout: float | None = None,
    ) -> None:
        self.model = model or settings.COMPLETION_MODEL
        self._post = post
        self._breaker = breaker or get_circuit_breaker(self.name)
        self._timeout = timeout if timeout is not None else settings.UPSTREAM_TIMEOUT_SECONDS

    def _payload(self, instruction: str, text: str, schema: type[BaseModel]) -> dict[str, Any]:
        schema_doc = json.dumps(schema.model_json_schema(), separators=(",", ":"))
        return {
            "model": self.model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "max_tokens": 300,
            "messages": [
                {
                    "role": "system",
                    "content": f"{instruction}\nRespond with one JSON object matching this schema: {schema_doc}",
                },
                {"role": "user", "content": text},
            ],
        }

    async def _bounded_post(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            return await asyncio.wait_for(
                self._post("/chat/completions", payload, timeout=self._timeout),
                self._timeout + 0.5,
            )
        except TimeoutError as exc:
            raise UpstreamUnavailable(self.name, f"no reply within {self._timeout:.1f}s") from exc

    async def complete(self, instruction: str, text: str, schema: type[M]) -> CompletionResult[M]:
        payload = self._payload(instruction, text, schema)
        try:
            response = await self._breaker.call(self._bounded_post, payload)
        except CircuitOpenError as exc:
            upstream_calls_total.labels(upstream=self.name, outcome="rejected").inc()
            raise UpstreamUnavailable(self.name, str(exc)) from exc
        except UpstreamUnavailable:
            upstream_calls_total.labels(upstream=self.name, outcome="error").inc()
            raise

        choices = response.get("choices") or []
        content = None
        if choices and isinstance(choices[0], dict):
            content = (choices[0].get("message") or {}).get("content")
        result = validate_output(content, schema)
        if not result.ok:
            upstream_calls_total.labels(upstream=self.name, outcome="malformed").inc()
            logger.warning(
                "Completion output rejected (%s): %s", _fingerprint(text), result.error
            )
        else:
            upstream_calls_total.labels(upstream=self.name, outcome="ok").inc()
        return result


__all__ = [
    "CompletionResult",
    "CompletionService",
    "OpenAICompletionClient",
    "validate_output",
]
