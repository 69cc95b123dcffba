"""
Base source interface for upstream image APIs.

Every upstream adapter inherits from ImageSource: it builds the request,
sends it through its own RateLimitedFetcher and turns the upstream-specific
JSON into a uniform list of Candidate objects.
"""

from __future__ import annotations

import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Sequence

from ..fetcher import RateLimitedFetcher


class Category(str, Enum):
    """Content classification governing which endpoint is queried."""

    SFW = "sfw"
    NSFW = "nsfw"


class SourceName(str, Enum):
    """Supported upstreams."""

    WAIFU_IM = "waifu.im"
    WAIFU_PICS = "waifu.pics"


@dataclass(frozen=True)
class Candidate:
    """An unfetched reference to a possible image."""

    url: str
    source: SourceName
    category: Category
    # 0 when the upstream does not report dimensions
    width: int = 0
    height: int = 0


class SourceParseError(ValueError):
    """Upstream response could not be turned into candidates."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


# Largest value the catalog stores in an INTEGER column
MAX_DIMENSION = 2**31 - 1


def coerce_dimension(value: Any) -> int:
    """Return a non-negative integer dimension, 0 when absent or unusable."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    return min(MAX_DIMENSION, max(0, int(value)))


class ImageSource(ABC):
    """
    Abstract base class for upstream image sources.

    Subclasses must implement:
    - name: Property returning the SourceName
    - _request: Issue the list/search request and return the raw body
    - parse: Turn a decoded JSON payload into candidates
    """

    categories: Sequence[Category] = (Category.SFW, Category.NSFW)

    def __init__(self, fetcher: RateLimitedFetcher):
        """
        Initialize source.

        Args:
            fetcher: Fetcher bound to this upstream's rate budget
        """
        self.fetcher = fetcher

    @property
    @abstractmethod
    def name(self) -> SourceName:
        """Source name for logging and provenance."""
        pass

    @abstractmethod
    async def _request(self, category: Category) -> bytes:
        """Fetch the raw list/search response for ``category``."""
        pass

    @abstractmethod
    def parse(self, payload: Any, category: Category) -> List[Candidate]:
        """
        Convert a decoded upstream response into candidates.

        Raises:
            SourceParseError: payload does not have the expected shape
        """
        pass

    async def fetch_candidates(self, category: Category) -> List[Candidate]:
        """
        Query the upstream once and return the candidates it offers.

        Returns:
            Candidates for ``category``; empty when the upstream has nothing

        Raises:
            FetchError: request failed after retries or terminally
            SourceParseError: response was not valid JSON of the right shape
        """
        body = await self._request(category)
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise SourceParseError(self.name.value, f"malformed JSON: {exc}") from exc
        return self.parse(payload, category)

    def _candidate(self, url: str, category: Category, width: Any = 0, height: Any = 0) -> Candidate:
        return Candidate(
            url=url,
            source=self.name,
            category=category,
            width=coerce_dimension(width),
            height=coerce_dimension(height),
        )
