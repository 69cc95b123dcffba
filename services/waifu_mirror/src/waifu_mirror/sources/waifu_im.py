"""
waifu.im search API adapter.

GET /images?included_tags=waifu&is_nsfw=<bool>&page_size=N returns
{"items": [{"url": ..., "width": ..., "height": ...}, ...]}.
"""

from __future__ import annotations

from typing import Any, List

from ..fetcher import RateLimitedFetcher
from .base import Candidate, Category, ImageSource, SourceName, SourceParseError

DEFAULT_URL = "https://api.waifu.im/images"


class WaifuImSource(ImageSource):
    """Search-style upstream reporting image dimensions."""

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        base_url: str = DEFAULT_URL,
        page_size: int = 30,
        tag: str = "waifu",
    ):
        super().__init__(fetcher)
        self.base_url = base_url
        self.page_size = page_size
        self.tag = tag

    @property
    def name(self) -> SourceName:
        return SourceName.WAIFU_IM

    def build_url(self, category: Category) -> str:
        is_nsfw = "true" if category is Category.NSFW else "false"
        return f"{self.base_url}?included_tags={self.tag}&is_nsfw={is_nsfw}&page_size={self.page_size}"

    async def _request(self, category: Category) -> bytes:
        return await self.fetcher.fetch(
            "GET",
            self.build_url(category),
            headers={"Accept": "application/json"},
        )

    def parse(self, payload: Any, category: Category) -> List[Candidate]:
        if not isinstance(payload, dict):
            raise SourceParseError(self.name.value, "expected a JSON object")
        items = payload.get("items") or []
        if not isinstance(items, list):
            raise SourceParseError(self.name.value, "'items' is not a list")

        candidates = []
        for item in items:
            if not isinstance(item, dict):
                continue
            url = item.get("url")
            if not url or not isinstance(url, str):
                continue
            candidates.append(
                self._candidate(url, category, item.get("width"), item.get("height"))
            )
        return candidates
