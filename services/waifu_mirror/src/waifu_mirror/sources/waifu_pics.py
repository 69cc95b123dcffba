"""waifu.pics batch API adapter (POST /many/<category>/waifu -> {"files": [...]})."""

from __future__ import annotations

from typing import Any, List

from ..fetcher import RateLimitedFetcher
from .base import Candidate, Category, ImageSource, SourceName, SourceParseError

DEFAULT_URL = "https://api.waifu.pics/many"


class WaifuPicsSource(ImageSource):
    """Random-batch upstream; it never reports dimensions."""

    def __init__(self, fetcher: RateLimitedFetcher, base_url: str = DEFAULT_URL, tag: str = "waifu"):
        super().__init__(fetcher)
        self.base_url = base_url.rstrip("/")
        self.tag = tag

    @property
    def name(self) -> SourceName:
        return SourceName.WAIFU_PICS

    def build_url(self, category: Category) -> str:
        return f"{self.base_url}/{category.value}/{self.tag}"

    async def _request(self, category: Category) -> bytes:
        return await self.fetcher.fetch(
            "POST",
            self.build_url(category),
            json_body={"exclude": []},
            headers={"Accept": "application/json"},
        )

    def parse(self, payload: Any, category: Category) -> List[Candidate]:
        if not isinstance(payload, dict):
            raise SourceParseError(self.name.value, "expected a JSON object")
        files = payload.get("files") or []
        if not isinstance(files, list):
            raise SourceParseError(self.name.value, "'files' is not a list")
        return [self._candidate(url, category) for url in files if isinstance(url, str) and url]
