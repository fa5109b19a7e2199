"""
Shared long-lived httpx.AsyncClient for the Nadeo, Trackmania OAuth and Exchange APIs.
Initialized in app lifespan (or by the worker entry point) to reuse connections across jobs.
"""
from __future__ import annotations

import httpx

from record_alerts.config import settings

_http_client: httpx.AsyncClient | None = None


def get_http_client() -> httpx.AsyncClient:
    """Return the shared async HTTP client. Must be initialized via init_http_client() first."""
    if _http_client is None:
        raise RuntimeError("HTTP client not initialized; ensure app lifespan has run init_http_client().")
    return _http_client


def init_http_client(
    timeout: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create and store the shared client. ``transport`` lets tests plug in httpx.MockTransport."""
    global _http_client
    if _http_client is not None:
        return _http_client
    _http_client = httpx.AsyncClient(
        timeout=timeout if timeout is not None else settings.leaderboard_request_timeout_seconds,
        headers={"User-Agent": settings.nadeo_user_agent},
        transport=transport,
    )
    return _http_client


async def close_http_client() -> None:
    """Close the shared client. Call from app lifespan shutdown."""
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None
