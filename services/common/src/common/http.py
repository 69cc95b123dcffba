"""Standard HTTP client helpers for upstream integrations."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import httpx

USER_AGENT = "waifu-mirror/1.0"


def _build_headers(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    headers: Dict[str, str] = {"User-Agent": USER_AGENT}
    if extra:
        headers.update(extra)
    return headers


def build_client(
    timeout: float = 30.0,
    headers: Optional[Dict[str, str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Create an async client with the service defaults.

    ``transport`` is exposed so tests can swap in ``httpx.MockTransport``.
    """

    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout, connect=10.0),
        headers=_build_headers(headers),
        follow_redirects=True,
        transport=transport,
    )


@asynccontextmanager
async def http_client(
    timeout: float = 30.0,
    headers: Optional[Dict[str, str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[httpx.AsyncClient]:
    """Provide a configured async HTTP client that is closed on exit."""

    async with build_client(timeout=timeout, headers=headers, transport=transport) as client:
        yield client


__all__ = ["USER_AGENT", "build_client", "http_client"]
