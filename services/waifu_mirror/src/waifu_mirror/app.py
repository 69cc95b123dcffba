"""
Mirror FastAPI application.

Read-only projection over the catalog:

    GET /api/random?category=sfw     Random image metadata
    GET /api/image/{hash}            Optimized image bytes
    GET /api/health                  Service health + catalog stats

The lifespan opens the catalog and, when enabled, starts periodic ingest.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import FileResponse

from common.config import Settings, get_settings
from common.http import build_client
from common.logging import get_logger

from . import __version__
from .catalog import CatalogEmptyError, CatalogError, ImageCatalog
from .hashing import is_content_hash
from .ingest import build_ingester
from .models import HealthResponse, RandomImageResponse
from .scheduler import IngestScheduler
from .sources import Category

LOGGER = get_logger(__name__)

IMAGE_MEDIA_TYPE = "image/webp"
IMAGE_CACHE_CONTROL = "public, max-age=86400"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings: Settings = app.state.settings

    owns_catalog = app.state.catalog is None
    if owns_catalog:
        app.state.catalog = await ImageCatalog.open(settings.catalog_path)
        LOGGER.info("Catalog opened", path=str(settings.catalog_path))

    client = None
    scheduler = None
    if app.state.enable_ingest:
        client = build_client(timeout=settings.mirror_http_timeout_seconds)
        ingester = build_ingester(settings, app.state.catalog, client)
        scheduler = IngestScheduler(ingester, interval_minutes=settings.mirror_ingest_interval_minutes)
        await scheduler.start()
        app.state.scheduler = scheduler

    try:
        yield
    finally:
        if scheduler:
            await scheduler.stop()
        if client:
            await client.aclose()
        if owns_catalog:
            await app.state.catalog.close()
            LOGGER.info("Catalog closed")


def _catalog(request: Request) -> ImageCatalog:
    return request.app.state.catalog


def create_app(
    settings: Optional[Settings] = None,
    catalog: Optional[ImageCatalog] = None,
    enable_ingest: Optional[bool] = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Configuration (defaults to the process settings)
        catalog: Already-open catalog; when omitted the lifespan opens one
        enable_ingest: Override ``mirror_enable_periodic_ingest``
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Waifu Mirror",
        description="Deduplicated, terminal-optimized mirror of upstream waifu APIs",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.catalog = catalog
    app.state.scheduler = None
    app.state.enable_ingest = (
        settings.mirror_enable_periodic_ingest if enable_ingest is None else enable_ingest
    )

    # ==========================================================================
    # Routes
    # ==========================================================================

    @app.get("/api/random", response_model=RandomImageResponse)
    async def random_image(request: Request, category: str = Query(default=Category.SFW.value)):
        """Return metadata for a random image in ``category``."""
        if category not in {c.value for c in Category}:
            raise HTTPException(status_code=400, detail="category must be sfw or nsfw")

        try:
            record = await _catalog(request).random(category)
        except CatalogEmptyError:
            raise HTTPException(status_code=503, detail="no images available")
        except CatalogError as e:
            LOGGER.error("Random lookup failed", error=str(e))
            raise HTTPException(status_code=503, detail="no images available")

        return RandomImageResponse(
            url=f"/api/image/{record.hash}",
            id=record.filename,
            width=record.width,
            height=record.height,
            hash=record.hash,
        )

    @app.get("/api/image/{image_hash}")
    async def image(request: Request, image_hash: str):
        """Serve optimized image bytes by content hash."""
        if not is_content_hash(image_hash):
            raise HTTPException(status_code=400, detail="invalid hash")

        try:
            record = await _catalog(request).get(image_hash)
        except CatalogError as e:
            LOGGER.error("Image lookup failed", hash=image_hash, error=str(e))
            raise HTTPException(status_code=500, detail="read error")
        if record is None:
            raise HTTPException(status_code=404, detail="image not found")

        path = request.app.state.settings.image_dir / record.filename
        if not path.is_file():
            LOGGER.warning("Catalog row without file", hash=image_hash)
            raise HTTPException(status_code=404, detail="image not found")

        return FileResponse(
            path,
            media_type=IMAGE_MEDIA_TYPE,
            headers={"Cache-Control": IMAGE_CACHE_CONTROL},
        )

    @app.get("/api/health", response_model=HealthResponse)
    async def health(request: Request):
        """Service health check with catalog statistics."""
        try:
            stats = await _catalog(request).stats()
        except CatalogError as e:
            LOGGER.error("Stats failed", error=str(e))
            raise HTTPException(status_code=500, detail="stats error")

        return HealthResponse(
            status="ok",
            sfw_count=stats.sfw_count,
            nsfw_count=stats.nsfw_count,
            total_mb=stats.total_bytes / (1024 * 1024),
            last_ingest=stats.last_ingest,
        )

    return app


__all__ = ["create_app", "lifespan"]
