"""
Image catalog storage layer.

Tracks ingested images in SQLite: content hashes for deduplication,
dimensions and provenance for retrieval. The unique index on ``hash`` is the
single source of truth for "have we seen this content before".
"""

from __future__ import annotations

import random
from dataclasses import asdict
from pathlib import Path
from typing import List, Optional, Union

from sqlalchemy import event, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from common.logging import get_logger

from .models import Base, CatalogStats, ImageRecord, StoredImage
from .sources.base import Category

LOGGER = get_logger(__name__)


class CatalogError(Exception):
    """Catalog operation failed."""


class CatalogEmptyError(CatalogError):
    """No image matches the request."""


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:  # noqa: ARG001
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


class ImageCatalog:
    """
    Image metadata store.

    Inserts are idempotent by hash: a second insert of the same content is a
    silent no-op, never an error and never a second row.
    """

    def __init__(self, database_url: str, engine: Optional[AsyncEngine] = None):
        """
        Initialize catalog.

        Args:
            database_url: Async SQLAlchemy URL (``sqlite+aiosqlite:///...``)
            engine: Pre-built engine, mainly for tests
        """
        self.database_url = database_url
        self.engine = engine or create_async_engine(database_url, echo=False)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine.sync_engine, "connect", _set_sqlite_pragmas)
        self.async_session_maker = async_sessionmaker(self.engine, expire_on_commit=False)

    @classmethod
    async def open(cls, path: Union[str, Path]) -> "ImageCatalog":
        """Create or open the catalog database file at ``path``."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        catalog = cls(f"sqlite+aiosqlite:///{path}")
        try:
            await catalog.init()
        except Exception:
            await catalog.close()
            raise
        return catalog

    async def init(self) -> None:
        """Create the schema if it does not exist."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            raise CatalogError(f"catalog: migrate: {exc}") from exc
        LOGGER.info("Catalog ready", database=self.database_url)

    async def close(self) -> None:
        await self.engine.dispose()

    async def has_hash(self, content_hash: str) -> bool:
        """Check whether an image with the given content hash exists."""
        try:
            async with self.async_session_maker() as session:
                result = await session.execute(
                    select(func.count()).select_from(ImageRecord).where(ImageRecord.hash == content_hash)
                )
                return result.scalar_one() > 0
        except SQLAlchemyError as exc:
            raise CatalogError(f"catalog: has_hash: {exc}") from exc

    async def insert(self, image: StoredImage) -> Optional[int]:
        """
        Add an image to the catalog.

        Returns:
            New row ID, or None when the hash was already present
        """
        stmt = (
            sqlite_insert(ImageRecord.__table__)
            .values(**asdict(image))
            .on_conflict_do_nothing(index_elements=["hash"])
        )
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise CatalogError(f"catalog: insert: {exc}") from exc

        if not result.rowcount:
            LOGGER.debug("Duplicate insert ignored", hash=image.hash)
            return None
        return result.inserted_primary_key[0]

    async def get(self, content_hash: str) -> Optional[ImageRecord]:
        """Return the record for ``content_hash`` if present."""
        try:
            async with self.async_session_maker() as session:
                result = await session.execute(
                    select(ImageRecord).where(ImageRecord.hash == content_hash)
                )
                return result.scalars().first()
        except SQLAlchemyError as exc:
            raise CatalogError(f"catalog: get: {exc}") from exc

    async def random(self, category: Union[Category, str]) -> ImageRecord:
        """
        Return a random image from ``category``.

        Raises:
            CatalogEmptyError: category has no images
        """
        category_value = Category(category).value
        try:
            async with self.async_session_maker() as session:
                count = (
                    await session.execute(
                        select(func.count())
                        .select_from(ImageRecord)
                        .where(ImageRecord.category == category_value)
                    )
                ).scalar_one()
                if count == 0:
                    raise CatalogEmptyError(f"catalog: no images in category {category_value!r}")

                offset = random.randrange(count)
                result = await session.execute(
                    select(ImageRecord)
                    .where(ImageRecord.category == category_value)
                    .order_by(ImageRecord.id)
                    .offset(offset)
                    .limit(1)
                )
                record = result.scalars().first()
        except SQLAlchemyError as exc:
            raise CatalogError(f"catalog: random: {exc}") from exc

        if record is None:
            # Rows removed between the count and the read
            raise CatalogEmptyError(f"catalog: no images in category {category_value!r}")
        return record

    async def stats(self) -> CatalogStats:
        """Return catalog statistics for the health endpoint."""
        try:
            async with self.async_session_maker() as session:
                per_category = dict(
                    (
                        await session.execute(
                            select(ImageRecord.category, func.count()).group_by(ImageRecord.category)
                        )
                    ).all()
                )
                total_bytes, last_ingest = (
                    await session.execute(
                        select(
                            func.coalesce(func.sum(ImageRecord.size_bytes), 0),
                            func.max(ImageRecord.created_at),
                        )
                    )
                ).one()
        except SQLAlchemyError as exc:
            raise CatalogError(f"catalog: stats: {exc}") from exc

        return CatalogStats(
            sfw_count=per_category.get(Category.SFW.value, 0),
            nsfw_count=per_category.get(Category.NSFW.value, 0),
            total_bytes=int(total_bytes or 0),
            last_ingest=last_ingest,
        )

    async def count(self) -> int:
        """Return the total number of images."""
        try:
            async with self.async_session_maker() as session:
                result = await session.execute(select(func.count()).select_from(ImageRecord))
                return result.scalar_one()
        except SQLAlchemyError as exc:
            raise CatalogError(f"catalog: count: {exc}") from exc

    async def filenames(self) -> List[str]:
        """Return every stored filename, ordered by insertion."""
        try:
            async with self.async_session_maker() as session:
                result = await session.execute(select(ImageRecord.filename).order_by(ImageRecord.id))
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise CatalogError(f"catalog: filenames: {exc}") from exc


__all__ = ["CatalogEmptyError", "CatalogError", "ImageCatalog"]
