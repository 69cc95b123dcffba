"""Resize and re-encode images for terminal rendering.

Output is always WebP at a fixed quality, at most ``max_width`` pixels wide,
with 24-bit colour (plus alpha when the source has it) preserved for
halfblock/Kitty protocol renderers.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from typing import List, Tuple

from PIL import Image, UnidentifiedImageError

OUTPUT_FORMAT = "webp"
OUTPUT_QUALITY = 85
DEFAULT_MAX_WIDTH = 480


class TransformError(RuntimeError):
    """Raised when an image cannot be optimized."""


class UnsupportedImageError(TransformError):
    """No decoder accepted the payload."""


class EncodeError(TransformError):
    """Encoding to the output format failed."""


@dataclass(frozen=True)
class Decoder:
    """A decoder capability: our short name and the Pillow plugin that backs it."""

    name: str
    pil_format: str


# Tried in order; append to support more formats.
DECODERS: Tuple[Decoder, ...] = (
    Decoder("jpeg", "JPEG"),
    Decoder("png", "PNG"),
    Decoder("gif", "GIF"),
    Decoder("webp", "WEBP"),
    Decoder("bmp", "BMP"),
)


@dataclass(frozen=True)
class OptimizedImage:
    data: bytes
    width: int
    height: int
    source_format: str


def decode_image(data: bytes) -> Tuple[Image.Image, str]:
    """Return the decoded image and the name of the decoder that accepted it."""

    if not data:
        raise UnsupportedImageError("image payload is empty")

    failures: List[str] = []
    for decoder in DECODERS:
        try:
            image = Image.open(BytesIO(data), formats=[decoder.pil_format])
            image.load()
        except (UnidentifiedImageError, OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
            failures.append(f"{decoder.name}: {exc}")
            continue
        return image, decoder.name

    raise UnsupportedImageError("unsupported image format (" + "; ".join(failures) + ")")


def target_size(width: int, height: int, max_width: int) -> Tuple[int, int]:
    """Scale down to ``max_width`` keeping aspect ratio; never upscale.

    Height is rounded half-up from the same ratio and kept at least 1px.
    """

    if width <= max_width:
        return width, height
    new_height = (2 * height * max_width + width) // (2 * width)
    return max_width, max(1, new_height)


def _has_alpha(image: Image.Image) -> bool:
    return image.mode in ("RGBA", "LA", "PA") or "transparency" in image.info


def for_terminal(data: bytes, max_width: int = DEFAULT_MAX_WIDTH) -> OptimizedImage:
    """Decode, downsize and encode ``data`` as WebP.

    Raises:
        UnsupportedImageError: no decoder accepted the input
        EncodeError: the resized image could not be encoded
    """

    if max_width < 1:
        raise ValueError("max_width must be positive")

    image, source_format = decode_image(data)
    image = image.convert("RGBA" if _has_alpha(image) else "RGB")

    width, height = image.size
    new_width, new_height = target_size(width, height, max_width)
    if (new_width, new_height) != (width, height):
        # Pillow's bicubic filter is Catmull-Rom (a = -0.5)
        image = image.resize((new_width, new_height), Image.Resampling.BICUBIC)

    buffer = BytesIO()
    try:
        image.save(buffer, format="WEBP", quality=OUTPUT_QUALITY)
    except (OSError, ValueError) as exc:
        raise EncodeError(f"encode webp: {exc}") from exc

    return OptimizedImage(
        data=buffer.getvalue(),
        width=new_width,
        height=new_height,
        source_format=source_format,
    )


__all__ = [
    "DECODERS",
    "DEFAULT_MAX_WIDTH",
    "Decoder",
    "EncodeError",
    "OUTPUT_FORMAT",
    "OUTPUT_QUALITY",
    "OptimizedImage",
    "TransformError",
    "UnsupportedImageError",
    "decode_image",
    "for_terminal",
    "target_size",
]
