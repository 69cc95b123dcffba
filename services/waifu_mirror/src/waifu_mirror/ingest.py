"""
Ingest orchestration.

Fetches candidates from every upstream, downloads them under the download
budget, deduplicates by content hash, optimizes for terminal rendering and
commits the result to the image directory and the catalog.

Failures are contained at the smallest scope that preserves progress: a bad
image skips that image, a broken upstream contributes nothing for the cycle,
and neither stops the rest of the cycle.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import httpx

from common.config import Settings, get_settings
from common.http import http_client
from common.logging import get_logger, log_context

from .catalog import ImageCatalog
from .fetcher import API_BODY_LIMIT, IMAGE_BODY_LIMIT, RateLimitedFetcher
from .hashing import content_hash
from .models import StoredImage
from .optimize import OUTPUT_FORMAT, OptimizedImage, for_terminal
from .ratelimit import RateLimitConfig, TokenBucket
from .sources import Candidate, Category, ImageSource, WaifuImSource, WaifuPicsSource

LOGGER = get_logger(__name__)

# Same-hash candidates are serialized on one of these locks.
HASH_LOCK_STRIPES = 64

Transform = Callable[[bytes, int], OptimizedImage]


class IngestError(Exception):
    """A single candidate could not be committed."""


class Ingester:
    """
    Runs ingest cycles across all configured sources.

    One cycle queries every (source, category) pair, then processes each
    candidate: download -> hash -> dedup -> optimize -> write -> insert.
    """

    def __init__(
        self,
        catalog: ImageCatalog,
        image_dir: Path,
        sources: Sequence[ImageSource],
        downloader: RateLimitedFetcher,
        max_width: int = 480,
        max_concurrency: int = 1,
        transform: Transform = for_terminal,
    ):
        """
        Initialize ingester.

        Args:
            catalog: Metadata store used for dedup and commits
            image_dir: Directory holding ``<hash>.webp`` blobs
            sources: Upstream adapters, each with its own rate budget
            downloader: Fetcher bound to the image download budget
            max_width: Bound passed to the optimizer
            max_concurrency: Candidates processed at once (1 = sequential)
            transform: Optimizer, replaceable for tests
        """
        self.catalog = catalog
        self.image_dir = Path(image_dir)
        self.sources = list(sources)
        self.downloader = downloader
        self.max_width = max_width
        self.max_concurrency = max(1, int(max_concurrency))
        self._transform = transform
        self._hash_locks = [asyncio.Lock() for _ in range(HASH_LOCK_STRIPES)]
        self.cycles = 0

    async def run(self) -> int:
        """
        Perform one ingest cycle.

        Returns:
            Number of images newly stored across all sources
        """
        self.image_dir.mkdir(parents=True, exist_ok=True)

        self.cycles += 1
        total = 0
        with log_context(cycle=self.cycles):
            for source in self.sources:
                for category in source.categories:
                    total += await self.ingest_source(source, category)

            LOGGER.info("Ingest cycle complete", new_images=total)
        return total

    async def ingest_source(self, source: ImageSource, category: Category) -> int:
        """Ingest everything one source offers for ``category``; never raises."""
        try:
            candidates = await source.fetch_candidates(category)
        except Exception as exc:  # noqa: BLE001
            LOGGER.error(
                "Source failed",
                source=source.name.value,
                category=category.value,
                error=str(exc),
            )
            return 0

        LOGGER.info(
            "Fetched candidates",
            source=source.name.value,
            category=category.value,
            candidates=len(candidates),
        )
        count = await self._process_all(candidates)
        if count:
            LOGGER.info(
                "Stored new images",
                source=source.name.value,
                category=category.value,
                new_images=count,
            )
        return count

    async def _process_all(self, candidates: Sequence[Candidate]) -> int:
        if self.max_concurrency == 1:
            count = 0
            for candidate in candidates:
                count += await self._process_safely(candidate)
            return count

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def worker(candidate: Candidate) -> int:
            async with semaphore:
                return await self._process_safely(candidate)

        results = await asyncio.gather(*(worker(c) for c in candidates))
        return sum(results)

    async def _process_safely(self, candidate: Candidate) -> int:
        try:
            return await self.process_candidate(candidate)
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("Failed to process image", url=candidate.url, error=str(exc))
            return 0

    async def process_candidate(self, candidate: Candidate) -> int:
        """
        Download, deduplicate, optimize and store a single candidate.

        Returns:
            1 if the image was new and stored, 0 if it was a duplicate
        """
        data = await self.downloader.fetch("GET", candidate.url)
        digest = content_hash(data)

        if await self.catalog.has_hash(digest):
            return 0

        async with self._lock_for(digest):
            # Another worker may have committed the same content meanwhile
            if await self.catalog.has_hash(digest):
                return 0

            payload, width, height = await self._optimize(data, candidate)
            filename = f"{digest}.{OUTPUT_FORMAT}"
            image = StoredImage(
                hash=digest,
                source=candidate.source.value,
                source_url=candidate.url,
                category=candidate.category.value,
                width=width,
                height=height,
                size_bytes=len(payload),
                filename=filename,
            )
            return await self._commit(image, payload)

    def _lock_for(self, digest: str) -> asyncio.Lock:
        return self._hash_locks[int(digest[:8], 16) % HASH_LOCK_STRIPES]

    async def _optimize(self, data: bytes, candidate: Candidate) -> Tuple[bytes, int, int]:
        """Return optimized bytes and size, or the original bytes on failure."""
        try:
            result = await asyncio.to_thread(self._transform, data, self.max_width)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning(
                "Optimization failed, storing original bytes",
                url=candidate.url,
                error=str(exc),
            )
            return data, candidate.width, candidate.height
        LOGGER.debug(
            "Optimized image",
            url=candidate.url,
            source_format=result.source_format,
            original_bytes=len(data),
            optimized_bytes=len(result.data),
        )
        return result.data, result.width, result.height

    async def _commit(self, image: StoredImage, payload: bytes) -> int:
        """Write the blob and insert its row as one uninterruptible step.

        A cancellation that arrives mid-commit waits for the commit to settle
        before propagating, so a file never outlives a failed insert.
        """
        task = asyncio.ensure_future(self._write_and_insert(image, payload))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            await asyncio.wait({task})
            if not task.cancelled() and task.exception() is not None:
                LOGGER.warning("Commit failed during cancellation", hash=image.hash)
            raise

    async def _write_and_insert(self, image: StoredImage, payload: bytes) -> int:
        path = self.image_dir / image.filename
        created = self._publish(path, payload)
        if not created:
            # Another writer published this hash first; its blob is kept as is
            LOGGER.info("Image file already present, keeping it", hash=image.hash)
            image = replace(image, size_bytes=path.stat().st_size)

        try:
            row_id = await self.catalog.insert(image)
        except Exception:
            if created:
                path.unlink(missing_ok=True)
                LOGGER.error("Catalog insert failed, removed image file", hash=image.hash)
            else:
                LOGGER.error("Catalog insert failed", hash=image.hash)
            raise

        if row_id is None:
            return 0
        LOGGER.debug("Stored image", hash=image.hash, width=image.width, height=image.height)
        return 1

    def _publish(self, path: Path, payload: bytes) -> bool:
        """Write ``payload`` to ``path`` unless it already exists.

        The blob directory is write-once: the temp file is hard-linked into
        place, which fails instead of overwriting.

        Returns:
            True if this call created ``path``
        """
        fd, tmp_name = tempfile.mkstemp(dir=self.image_dir, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
            os.link(tmp_name, path)
        except FileExistsError:
            return False
        except OSError as exc:
            raise IngestError(f"write image: {exc}") from exc
        finally:
            Path(tmp_name).unlink(missing_ok=True)
        return True


# ==============================================================================
# Wiring
# ==============================================================================

def build_sources(settings: Settings, client: httpx.AsyncClient) -> List[ImageSource]:
    """Create one adapter per upstream, each with an independent budget."""
    waifu_im = RateLimitedFetcher(
        upstream="waifu.im",
        limiter=TokenBucket(RateLimitConfig(settings.waifu_im_rps, burst=1), name="waifu.im"),
        client=client,
        max_body_bytes=API_BODY_LIMIT,
    )
    waifu_pics = RateLimitedFetcher(
        upstream="waifu.pics",
        limiter=TokenBucket(RateLimitConfig(settings.waifu_pics_rps, burst=1), name="waifu.pics"),
        client=client,
        max_body_bytes=API_BODY_LIMIT,
    )
    return [
        WaifuImSource(waifu_im, base_url=settings.waifu_im_url, page_size=settings.waifu_im_page_size),
        WaifuPicsSource(waifu_pics, base_url=settings.waifu_pics_url),
    ]


def build_ingester(
    settings: Settings,
    catalog: ImageCatalog,
    client: httpx.AsyncClient,
) -> Ingester:
    """Assemble an Ingester from settings around an open catalog and client."""
    downloader = RateLimitedFetcher(
        upstream="download",
        limiter=TokenBucket(
            RateLimitConfig(settings.download_rps, burst=settings.download_burst),
            name="download",
        ),
        client=client,
        max_body_bytes=IMAGE_BODY_LIMIT,
    )
    return Ingester(
        catalog=catalog,
        image_dir=settings.image_dir,
        sources=build_sources(settings, client),
        downloader=downloader,
        max_width=settings.mirror_max_width,
        max_concurrency=settings.mirror_max_concurrency,
    )


async def ingest_once(settings: Optional[Settings] = None) -> int:
    """Open the catalog, run a single cycle and close everything again."""
    settings = settings or get_settings()
    catalog = await ImageCatalog.open(settings.catalog_path)
    try:
        async with http_client(timeout=settings.mirror_http_timeout_seconds) as client:
            return await build_ingester(settings, catalog, client).run()
    finally:
        await catalog.close()


__all__ = ["IngestError", "Ingester", "build_ingester", "build_sources", "ingest_once"]
