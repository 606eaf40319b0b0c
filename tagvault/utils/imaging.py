"""Raster helpers for thumbnail pools and item images.

A thumbnail pool is a single image holding ``rows x columns`` equally sized
slots.  Slot ``index`` lives at row ``index // columns`` and column
``index % columns``.  Placing a thumbnail only rewrites the pixels of its
own slot, so re-encoding the pool losslessly keeps every other slot
byte-identical across incremental edits.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from .. import config
from ..errors import ImageCodecFailure
from ..serialization import ImageSize

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ImageFormatSpecification:
    """Codec and encryption layout of one image role.

    Attributes:
        format: Pillow format name used to encode the image
        extension: File extension used for archive members
        header_length: Number of leading bytes left unencrypted
    """

    format: str
    extension: str
    header_length: int


THUMBNAIL_FORMAT = ImageFormatSpecification(
    format=config.THUMBNAIL_FORMAT_NAME,
    extension=config.THUMBNAIL_EXTENSION,
    header_length=config.THUMBNAIL_HEADER_LENGTH,
)
IMAGE_FORMAT = ImageFormatSpecification(
    format=config.IMAGE_FORMAT_NAME,
    extension=config.IMAGE_EXTENSION,
    header_length=config.IMAGE_HEADER_LENGTH,
)


@dataclass(frozen=True, slots=True)
class LoadedImage:
    """A user supplied image resized into its two stored shapes.

    Attributes:
        image: Encoded full image (``IMAGE_FORMAT``)
        thumbnail: Decoded thumbnail ready to be placed into a pool
        thumbnail_bytes: Encoded thumbnail used for display caching
    """

    image: bytes
    thumbnail: Image.Image
    thumbnail_bytes: bytes


def to_thumbnail_size(size: ImageSize) -> ImageSize:
    """Return the thumbnail size for a full image of ``size``."""
    return ImageSize(
        width=max(size.width // config.THUMBNAIL_DOWNSCALE, 1),
        height=max(size.height // config.THUMBNAIL_DOWNSCALE, 1),
    )


def slot_offset(index: int, slot_size: ImageSize, columns: int = config.POOL_COLUMNS) -> Tuple[int, int]:
    """Pixel offset of the top-left corner of slot ``index``."""
    row, column = divmod(index, columns)
    return column * slot_size.width, row * slot_size.height


def create_empty_pool(
    slot_size: ImageSize,
    rows: int = config.POOL_ROWS,
    columns: int = config.POOL_COLUMNS,
) -> Image.Image:
    """Create a blank, fully transparent pool able to hold ``rows * columns`` slots."""
    return Image.new("RGBA", (slot_size.width * columns, slot_size.height * rows), (0, 0, 0, 0))


def place_into_pool(
    pool: Image.Image,
    index: int,
    source: Image.Image,
    slot_size: ImageSize,
    columns: int = config.POOL_COLUMNS,
) -> Image.Image:
    """Return a copy of ``pool`` with ``source`` drawn into slot ``index``."""
    offset = slot_offset(index, slot_size, columns)
    if offset[0] + slot_size.width > pool.width or offset[1] + slot_size.height > pool.height:
        raise ValueError(f"Slot {index} lies outside of the pool")
    target_size = (slot_size.width, slot_size.height)
    if source.size != target_size:
        source = source.resize(target_size, Image.Resampling.LANCZOS)
    updated = pool.convert("RGBA") if pool.mode != "RGBA" else pool.copy()
    updated.paste(source.convert("RGBA"), offset)
    return updated


def crop_slot(
    pool: Image.Image,
    index: int,
    slot_size: ImageSize,
    columns: int = config.POOL_COLUMNS,
) -> Image.Image:
    """Extract the thumbnail stored in slot ``index``."""
    left, top = slot_offset(index, slot_size, columns)
    return pool.crop((left, top, left + slot_size.width, top + slot_size.height))


def encode_image(image: Image.Image, spec: ImageFormatSpecification) -> bytes:
    """Encode ``image`` with the codec of ``spec``."""
    save_params: Dict[str, Any] = {"format": spec.format}
    if spec.format == "WEBP":
        save_params.update({"quality": config.WEBP_QUALITY, "method": 6})
    elif spec.format == "PNG":
        save_params.update({"compress_level": 6})
    buffer = io.BytesIO()
    try:
        image.save(buffer, **save_params)
    except (OSError, ValueError, KeyError) as exc:
        raise ImageCodecFailure(f"Failed to encode image as {spec.format}", str(exc)) from exc
    return buffer.getvalue()


def decode_image(data: bytes) -> Image.Image:
    """Decode image bytes into a fully loaded RGBA image."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            return img.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise ImageCodecFailure("Failed to decode image", str(exc)) from exc


def load_image(source: bytes, image_size: ImageSize) -> LoadedImage:
    """Resize a user supplied image into the full image and its thumbnail."""
    try:
        with Image.open(io.BytesIO(source)) as img:
            img = ImageOps.exif_transpose(img)
            img = img.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise ImageCodecFailure("Cannot operate image", str(exc)) from exc

    full = img.resize((image_size.width, image_size.height), Image.Resampling.LANCZOS)
    thumbnail_size = to_thumbnail_size(image_size)
    thumbnail = img.resize((thumbnail_size.width, thumbnail_size.height), Image.Resampling.LANCZOS)
    LOGGER.debug("Loaded image %sx%s into %s", img.width, img.height, image_size)
    return LoadedImage(
        image=encode_image(full, IMAGE_FORMAT),
        thumbnail=thumbnail,
        thumbnail_bytes=encode_image(thumbnail, IMAGE_FORMAT),
    )


__all__ = [
    "ImageFormatSpecification",
    "IMAGE_FORMAT",
    "THUMBNAIL_FORMAT",
    "LoadedImage",
    "to_thumbnail_size",
    "slot_offset",
    "create_empty_pool",
    "place_into_pool",
    "crop_slot",
    "encode_image",
    "decode_image",
    "load_image",
]
