from __future__ import annotations

import asyncio
from typing import Any

import httpx

from .errors import UpstreamUnavailable
from .settings import settings

_client: httpx.AsyncClient | None = None
_client_lock = asyncio.Lock()


def _headers() -> dict[str, str]:
    if not settings.OPENAI_API_KEY:
        raise UpstreamUnavailable("openai", "OPENAI_API_KEY not configured")
    return {
        "Authorization": f"Bearer {settings.OPENAI_API_KEY}",
        "Content-Type": "application/json",
    }


async def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is None:
        async with _client_lock:
            if _client is None:
                timeout = httpx.Timeout(
                    settings.UPSTREAM_TIMEOUT_SECONDS,
                    connect=settings.UPSTREAM_CONNECT_TIMEOUT_SECONDS,
                )
                base_url = settings.OPENAI_API_BASE.rstrip("/") or "https://api.openai.com/v1"
                _client = httpx.AsyncClient(base_url=base_url, timeout=timeout)
    return _client


async def post_json(
    path: str, payload: dict[str, Any], *, timeout: float | None = None
) -> dict[str, Any]:
    """POST to the provider and return the decoded body.

    Transport errors, timeouts, non-2xx statuses and non-JSON bodies all raise
    UpstreamUnavailable; the caller decides whether to retry or degrade.
    """
    headers = _headers()
    client = await _get_client()
    try:
        response = await client.post(
            path,
            json=payload,
            headers=headers,
            timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )
    except httpx.TimeoutException as exc:
        raise UpstreamUnavailable("openai", f"timeout calling {path}") from exc
    except httpx.HTTPError as exc:
        raise UpstreamUnavailable("openai", f"request failed: {exc}") from exc
    if response.status_code >= 400:
        raise UpstreamUnavailable(
            "openai", f"status {response.status_code}: {response.text[:200]}"
        )
    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamUnavailable("openai", "invalid JSON body") from exc


async def close_async_client() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
