"""Upstream image sources."""
from .base import (
    Candidate,
    Category,
    ImageSource,
    SourceName,
    SourceParseError,
)
from .waifu_im import WaifuImSource
from .waifu_pics import WaifuPicsSource

__all__ = [
    "Candidate",
    "Category",
    "ImageSource",
    "SourceName",
    "SourceParseError",
    "WaifuImSource",
    "WaifuPicsSource",
]
