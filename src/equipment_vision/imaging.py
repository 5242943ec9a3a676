"""Image metadata helpers."""

from __future__ import annotations

import io
from dataclasses import dataclass

from PIL import Image


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int
    mime_type: str | None


def read_image_metadata(data: bytes) -> ImageMetadata:
    """Read dimensions and MIME type from encoded image bytes without decoding pixels."""

    with Image.open(io.BytesIO(data)) as image:
        width, height = image.size
        mime_type = Image.MIME.get(image.format or "")
    return ImageMetadata(width=width, height=height, mime_type=mime_type)


__all__ = ["ImageMetadata", "read_image_metadata"]
