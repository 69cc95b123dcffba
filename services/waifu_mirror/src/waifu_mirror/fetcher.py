"""
Rate-limited HTTP fetching with bounded exponential backoff.

Every upstream (each API plus the raw image download path) gets its own
``RateLimitedFetcher`` wrapping its own ``TokenBucket``. A fetch:

- takes a token before every attempt, retries included
- retries 429, 5xx and transport failures up to ``max_attempts`` in total
- fails at once on requests the client cannot send (bad scheme, malformed request)
- treats any other non-2xx status as terminal
- reads the body under a hard byte cap
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from common.logging import get_logger

from .ratelimit import TokenBucket

LOGGER = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
API_BODY_LIMIT = 1 << 20  # 1 MiB
IMAGE_BODY_LIMIT = 10 << 20  # 10 MiB

RETRYABLE_STATUS = 429


class FetchError(Exception):
    """Base class for fetch failures; ``upstream`` names the budget involved."""

    def __init__(self, upstream: str, message: str) -> None:
        super().__init__(f"{upstream}: {message}")
        self.upstream = upstream


class UpstreamStatusError(FetchError):
    """Upstream answered with a non-success status."""

    def __init__(self, upstream: str, status_code: int) -> None:
        super().__init__(upstream, f"returned HTTP {status_code}")
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code == RETRYABLE_STATUS or self.status_code >= 500


class ResponseTooLargeError(FetchError):
    """Response body exceeded the configured byte cap."""

    def __init__(self, upstream: str, limit: int) -> None:
        super().__init__(upstream, f"response body exceeds {limit} bytes")
        self.limit = limit


class RetryExhaustedError(FetchError):
    """All attempts failed with transient errors."""

    def __init__(self, upstream: str, attempts: int, last_error: Optional[BaseException]) -> None:
        super().__init__(upstream, f"after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class RateLimitedFetcher:
    """Performs requests against one upstream under its own rate budget."""

    def __init__(
        self,
        upstream: str,
        limiter: TokenBucket,
        client: httpx.AsyncClient,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        max_body_bytes: int = API_BODY_LIMIT,
        backoff_base: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        """
        Initialize fetcher.

        Args:
            upstream: Name used in logs and errors (e.g. "waifu.im")
            limiter: Token bucket owned by this upstream
            client: Shared async HTTP client
            max_attempts: Total attempts including the first
            max_body_bytes: Hard cap on the response body
            backoff_base: Delay before the first retry, doubled per retry
            sleep: Backoff sleeper (injectable for tests)
            rng: Jitter source (injectable for tests)
        """
        self.upstream = upstream
        self.limiter = limiter
        self.client = client
        self.max_attempts = max(1, int(max_attempts))
        self.max_body_bytes = int(max_body_bytes)
        self.backoff_base = float(backoff_base)
        self._sleep = sleep
        self._rng = rng or random.Random()

    def backoff_delay(self, retry: int) -> float:
        """Delay before retry number ``retry`` (1-based): base*2^(retry-1) plus jitter in [0, base/2)."""
        base = self.backoff_base * (2 ** (retry - 1))
        return base + self._rng.random() * (base / 2)

    async def fetch(
        self,
        method: str,
        url: str,
        json_body: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> bytes:
        """Run one logical exchange and return the response body.

        Raises:
            FetchError: request could not be sent at all
            UpstreamStatusError: terminal non-success status
            ResponseTooLargeError: body over ``max_body_bytes``
            RetryExhaustedError: every attempt failed transiently
        """
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                delay = self.backoff_delay(attempt - 1)
                LOGGER.info(
                    "Retrying request",
                    upstream=self.upstream,
                    url=url,
                    attempt=attempt,
                    delay_seconds=round(delay, 2),
                )
                await self._sleep(delay)

            await self.limiter.acquire()

            try:
                return await self._attempt(method, url, json_body, headers)
            except UpstreamStatusError as exc:
                if not exc.retryable:
                    raise
                last_error = exc
            except (httpx.UnsupportedProtocol, httpx.LocalProtocolError) as exc:
                # The request itself is malformed; another attempt cannot help
                raise FetchError(self.upstream, f"request rejected: {exc}") from exc
            except httpx.TransportError as exc:
                last_error = exc

            LOGGER.warning(
                "Transient upstream failure",
                upstream=self.upstream,
                url=url,
                attempt=attempt,
                max_attempts=self.max_attempts,
                error=repr(last_error),
            )

        raise RetryExhaustedError(self.upstream, self.max_attempts, last_error) from last_error

    async def _attempt(
        self,
        method: str,
        url: str,
        json_body: Optional[Any],
        headers: Optional[Dict[str, str]],
    ) -> bytes:
        async with self.client.stream(method, url, json=json_body, headers=headers) as response:
            if not response.is_success:
                raise UpstreamStatusError(self.upstream, response.status_code)
            return await self._read_capped(response)

    async def _read_capped(self, response: httpx.Response) -> bytes:
        declared = response.headers.get("Content-Length")
        if declared and declared.isdigit() and int(declared) > self.max_body_bytes:
            raise ResponseTooLargeError(self.upstream, self.max_body_bytes)

        buffer = bytearray()
        async for chunk in response.aiter_bytes():
            buffer += chunk
            if len(buffer) > self.max_body_bytes:
                raise ResponseTooLargeError(self.upstream, self.max_body_bytes)
        return bytes(buffer)


__all__ = [
    "API_BODY_LIMIT",
    "DEFAULT_MAX_ATTEMPTS",
    "FetchError",
    "IMAGE_BODY_LIMIT",
    "RateLimitedFetcher",
    "ResponseTooLargeError",
    "RetryExhaustedError",
    "UpstreamStatusError",
]
