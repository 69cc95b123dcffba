# noqa: D104
"""Pytest fixtures for mirror tests."""

from __future__ import annotations

import random
from collections import Counter
from io import BytesIO
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Dict, List

import httpx
import pytest
import pytest_asyncio
from PIL import Image

from waifu_mirror.catalog import ImageCatalog
from waifu_mirror.fetcher import RateLimitedFetcher


# ============================================================================
# Clocks and limiters
# ============================================================================

class FakeClock:
    """Synthetic monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 100.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class CountingLimiter:
    """Limiter double that grants every token and counts acquisitions."""

    def __init__(self) -> None:
        self.acquired = 0

    async def acquire(self) -> None:
        self.acquired += 1


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter() -> CountingLimiter:
    return CountingLimiter()


# ============================================================================
# Scripted upstream
# ============================================================================

class FakeUpstream:
    """Scripted upstream served through ``httpx.MockTransport``.

    Each URL maps to a list of replies consumed in order; the last reply
    repeats. A reply is an int status, bytes (200 body), a dict/list (200
    JSON) or an exception instance to raise as a transport failure.
    Unknown URLs answer 404.
    """

    def __init__(self) -> None:
        self.routes: Dict[str, List[Any]] = {}
        self.calls: Counter = Counter()
        self.requests: List[httpx.Request] = []

    def add(self, url: str, *replies: Any) -> None:
        self.routes[url] = list(replies)

    def handler(self, request: httpx.Request) -> httpx.Response:
        key = str(request.url)
        self.calls[key] += 1
        self.requests.append(request)

        script = self.routes.get(key)
        if not script:
            return httpx.Response(404)
        reply = script.pop(0) if len(script) > 1 else script[0]

        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, int):
            return httpx.Response(reply)
        if isinstance(reply, (bytes, bytearray)):
            return httpx.Response(200, content=bytes(reply))
        return httpx.Response(200, json=reply)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest_asyncio.fixture
async def http(upstream: FakeUpstream) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with upstream.client() as client:
        yield client


@pytest.fixture
def make_fetcher(
    http: httpx.AsyncClient, clock: FakeClock
) -> Callable[..., RateLimitedFetcher]:
    """Build fetchers that back off on the fake clock with fixed jitter."""

    def factory(upstream: str = "test", limiter: Any = None, **kwargs: Any) -> RateLimitedFetcher:
        return RateLimitedFetcher(
            upstream=upstream,
            limiter=limiter or CountingLimiter(),
            client=http,
            sleep=clock.sleep,
            rng=random.Random(7),
            **kwargs,
        )

    return factory


# ============================================================================
# Images and storage
# ============================================================================

@pytest.fixture
def make_image() -> Callable[..., bytes]:
    """Encode a solid-colour test image."""

    def factory(
        width: int = 64,
        height: int = 48,
        color: Any = (200, 30, 90),
        fmt: str = "PNG",
        mode: str = "RGB",
    ) -> bytes:
        image = Image.new(mode, (width, height), color)
        buffer = BytesIO()
        image.save(buffer, format=fmt)
        return buffer.getvalue()

    return factory


@pytest_asyncio.fixture
async def catalog(tmp_path: Path) -> AsyncGenerator[ImageCatalog, None]:
    """Open a fresh on-disk catalog."""
    db = await ImageCatalog.open(tmp_path / "catalog.db")
    try:
        yield db
    finally:
        await db.close()


@pytest.fixture
def image_dir(tmp_path: Path) -> Path:
    path = tmp_path / "images"
    path.mkdir()
    return path
