from __future__ import annotations

import logging
import re
import unicodedata
from contextvars import ContextVar
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

# Request (or job) ID visible to every log line emitted while handling it
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")

_WS_RE = re.compile(r"\s+")


def normalize_text(value: str | None) -> str:
    """NFKC-normalize, lowercase and collapse whitespace. Used for cache keys and lookups."""
    if not value:
        return ""
    folded = unicodedata.normalize("NFKC", value).lower()
    return _WS_RE.sub(" ", folded).strip()


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if value != value:  # NaN
        return low
    return max(low, min(high, value))


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Reuse an incoming X-Request-ID or mint one, and echo it on the response."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        token = request_id_ctx.set(request_id)
        request.state.request_id = request_id
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestIDLogFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        request_id = request_id_ctx.get("")
        record.request_id = request_id if request_id else "-"  # type: ignore[attr-defined]
        return True


def add_request_id_tracing(app) -> None:
    app.add_middleware(RequestIDMiddleware)
    logging.getLogger().addFilter(RequestIDLogFilter())
