"""Application-wide configuration management using Pydantic settings."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_data_dir() -> Path:
    xdg = os.getenv("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "waifu-mirror"
    return Path.home() / ".local" / "share" / "waifu-mirror"


class Settings(BaseSettings):
    """Central configuration for the mirror service.

    Every field can be overridden through the environment (``MIRROR_PORT=9000``)
    or a ``.env`` file in the working directory.
    """

    model_config = SettingsConfigDict(env_file=".env", env_nested_delimiter="__", extra="ignore")

    environment: str = "development"
    service_name: str = "waifu-mirror"
    log_level: str = "INFO"

    # Storage
    mirror_data_dir: Path = Field(default_factory=_default_data_dir)

    # HTTP API
    mirror_host: str = "0.0.0.0"
    mirror_port: int = 8420

    # Ingest
    mirror_ingest_interval_minutes: int = 60
    mirror_enable_periodic_ingest: bool = True
    mirror_max_concurrency: int = 1
    mirror_max_width: int = 480
    mirror_http_timeout_seconds: float = 30.0

    # Upstream rate budgets (requests per second)
    waifu_im_rps: float = 5.0  # documented API limit
    waifu_pics_rps: float = 1.0  # undocumented, conservative
    download_rps: float = 10.0
    download_burst: int = 3

    # Upstream endpoints
    waifu_im_url: str = "https://api.waifu.im/images"
    waifu_im_page_size: int = 30
    waifu_pics_url: str = "https://api.waifu.pics/many"

    @property
    def image_dir(self) -> Path:
        return self.mirror_data_dir / "images"

    @property
    def catalog_path(self) -> Path:
        return self.mirror_data_dir / "catalog.db"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and cache configuration for the current process."""

    return Settings()  # type: ignore[arg-type]


__all__ = ["Settings", "get_settings"]
