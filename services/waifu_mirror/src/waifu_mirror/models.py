"""
Mirror data models.

SQLAlchemy ORM table for the catalog plus the Pydantic API response models.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import DateTime, Index, Integer, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .optimize import OUTPUT_FORMAT


class Base(DeclarativeBase):
    pass


class ImageRecord(Base):
    """One stored image; ``hash`` is the dedup key and filename stem."""

    __tablename__ = "images"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    source_url: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str] = mapped_column(String(8), nullable=False, default="sfw")
    width: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    height: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    format: Mapped[str] = mapped_column(String(8), nullable=False, default=OUTPUT_FORMAT)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    filename: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.current_timestamp()
    )

    __table_args__ = (Index("idx_images_category", "category"),)


@dataclass(frozen=True)
class StoredImage:
    """Values the ingester supplies for a new catalog row.

    ``id`` and ``created_at`` are assigned by the store.
    """

    hash: str
    source: str
    source_url: str
    category: str
    width: int
    height: int
    size_bytes: int
    filename: str
    format: str = OUTPUT_FORMAT


@dataclass(frozen=True)
class CatalogStats:
    sfw_count: int
    nsfw_count: int
    total_bytes: int
    last_ingest: Optional[datetime]


# ==============================================================================
# Pydantic API Models
# ==============================================================================

class RandomImageResponse(BaseModel):
    """Random image metadata."""
    url: str
    id: str
    width: int
    height: int
    hash: str


class HealthResponse(BaseModel):
    """Service health and catalog statistics."""
    status: str
    sfw_count: int
    nsfw_count: int
    total_mb: float
    last_ingest: Optional[datetime] = None
