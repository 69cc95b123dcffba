"""Tests for the upstream source adapters."""

from __future__ import annotations

import json

import pytest

from waifu_mirror.fetcher import RetryExhaustedError
from waifu_mirror.sources import (
    Candidate,
    Category,
    SourceName,
    SourceParseError,
    WaifuImSource,
    WaifuPicsSource,
)
from waifu_mirror.sources.base import MAX_DIMENSION, coerce_dimension

IM_SFW = "https://api.waifu.im/images?included_tags=waifu&is_nsfw=false&page_size=30"
IM_NSFW = "https://api.waifu.im/images?included_tags=waifu&is_nsfw=true&page_size=30"
PICS_SFW = "https://api.waifu.pics/many/sfw/waifu"


class TestWaifuIm:
    """Tests for the waifu.im adapter."""

    def test_build_url(self):
        source = WaifuImSource(None)

        assert source.build_url(Category.SFW) == IM_SFW
        assert source.build_url(Category.NSFW) == IM_NSFW

    def test_parse_items(self):
        """Should map every item to a candidate with its dimensions."""
        source = WaifuImSource(None)
        payload = {
            "items": [
                {"url": "https://cdn.waifu.im/1.jpg", "width": 1200, "height": 1600},
                {"url": "https://cdn.waifu.im/2.png", "width": 800, "height": 600},
            ]
        }

        candidates = source.parse(payload, Category.NSFW)

        assert candidates == [
            Candidate("https://cdn.waifu.im/1.jpg", SourceName.WAIFU_IM, Category.NSFW, 1200, 1600),
            Candidate("https://cdn.waifu.im/2.png", SourceName.WAIFU_IM, Category.NSFW, 800, 600),
        ]

    def test_parse_missing_dimensions(self):
        """Should default absent or unusable dimensions to 0."""
        source = WaifuImSource(None)
        payload = {
            "items": [
                {"url": "https://cdn.waifu.im/a.jpg"},
                {"url": "https://cdn.waifu.im/b.jpg", "width": "wide", "height": -3},
            ]
        }

        candidates = source.parse(payload, Category.SFW)

        assert [(c.width, c.height) for c in candidates] == [(0, 0), (0, 0)]

    def test_parse_non_finite_dimensions(self):
        """Should treat overflowing or NaN dimensions as unknown, keeping the page."""
        source = WaifuImSource(None)
        payload = json.loads(
            '{"items": ['
            '{"url": "https://a/1.png", "width": 1e999, "height": 5},'
            '{"url": "https://a/2.png", "width": NaN, "height": -Infinity}'
            ']}'
        )

        candidates = source.parse(payload, Category.SFW)

        assert [(c.url, c.width, c.height) for c in candidates] == [
            ("https://a/1.png", 0, 5),
            ("https://a/2.png", 0, 0),
        ]

    def test_parse_skips_entries_without_url(self):
        source = WaifuImSource(None)
        payload = {"items": [{"width": 10}, "junk", {"url": ""}, {"url": "https://x/y.gif"}]}

        assert [c.url for c in source.parse(payload, Category.SFW)] == ["https://x/y.gif"]

    def test_parse_empty(self):
        source = WaifuImSource(None)

        assert source.parse({"items": []}, Category.SFW) == []
        assert source.parse({}, Category.SFW) == []

    def test_parse_wrong_shape(self):
        """Should reject payloads that are not an object with an item list."""
        source = WaifuImSource(None)

        with pytest.raises(SourceParseError):
            source.parse([1, 2, 3], Category.SFW)
        with pytest.raises(SourceParseError):
            source.parse({"items": "nope"}, Category.SFW)

    @pytest.mark.asyncio
    async def test_fetch_candidates(self, upstream, make_fetcher):
        """Should GET the search endpoint and return parsed candidates."""
        upstream.add(IM_SFW, {"items": [{"url": "https://cdn.waifu.im/1.jpg", "width": 10, "height": 20}]})
        source = WaifuImSource(make_fetcher(upstream="waifu.im"))

        candidates = await source.fetch_candidates(Category.SFW)

        assert len(candidates) == 1
        assert candidates[0].source is SourceName.WAIFU_IM
        assert upstream.requests[0].method == "GET"

    @pytest.mark.asyncio
    async def test_fetch_malformed_json(self, upstream, make_fetcher):
        upstream.add(IM_SFW, b"<html>maintenance</html>")
        source = WaifuImSource(make_fetcher())

        with pytest.raises(SourceParseError) as excinfo:
            await source.fetch_candidates(Category.SFW)
        assert excinfo.value.source == "waifu.im"

    @pytest.mark.asyncio
    async def test_fetch_failure_propagates(self, upstream, make_fetcher):
        upstream.add(IM_SFW, 502)
        source = WaifuImSource(make_fetcher())

        with pytest.raises(RetryExhaustedError):
            await source.fetch_candidates(Category.SFW)


class TestWaifuPics:
    """Tests for the waifu.pics adapter."""

    def test_build_url(self):
        source = WaifuPicsSource(None, base_url="https://api.waifu.pics/many/")

        assert source.build_url(Category.SFW) == PICS_SFW
        assert source.build_url(Category.NSFW) == "https://api.waifu.pics/many/nsfw/waifu"

    def test_parse_files(self):
        """Should emit dimensionless candidates for every non-empty URL."""
        source = WaifuPicsSource(None)
        payload = {"files": ["https://i.waifu.pics/a.png", "", None, "https://i.waifu.pics/b.jpg"]}

        candidates = source.parse(payload, Category.SFW)

        assert [c.url for c in candidates] == ["https://i.waifu.pics/a.png", "https://i.waifu.pics/b.jpg"]
        assert all(c.width == 0 and c.height == 0 for c in candidates)
        assert all(c.source is SourceName.WAIFU_PICS for c in candidates)

    def test_parse_wrong_shape(self):
        source = WaifuPicsSource(None)

        with pytest.raises(SourceParseError):
            source.parse("files", Category.SFW)
        with pytest.raises(SourceParseError):
            source.parse({"files": {"a": 1}}, Category.SFW)

    @pytest.mark.asyncio
    async def test_fetch_candidates_posts_exclude(self, upstream, make_fetcher):
        """Should POST an empty exclude list to the batch endpoint."""
        upstream.add(PICS_SFW, {"files": ["https://i.waifu.pics/a.png"]})
        source = WaifuPicsSource(make_fetcher(upstream="waifu.pics"))

        candidates = await source.fetch_candidates(Category.SFW)

        assert [c.url for c in candidates] == ["https://i.waifu.pics/a.png"]
        request = upstream.requests[0]
        assert request.method == "POST"
        assert json.loads(request.content) == {"exclude": []}

    @pytest.mark.asyncio
    async def test_fetch_empty(self, upstream, make_fetcher):
        upstream.add(PICS_SFW, {"files": []})
        source = WaifuPicsSource(make_fetcher())

        assert await source.fetch_candidates(Category.SFW) == []


def test_coerce_dimension():
    assert coerce_dimension(640) == 640
    assert coerce_dimension(640.9) == 640
    assert coerce_dimension(None) == 0
    assert coerce_dimension(True) == 0
    assert coerce_dimension(-1) == 0
    assert coerce_dimension(10**30) == MAX_DIMENSION
    assert coerce_dimension(float("inf")) == 0
