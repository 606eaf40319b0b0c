# managers/images.py
"""
Image repository: decrypted thumbnail pools plus per-item image caches.

Pools are kept decoded in memory once fetched, since placing a thumbnail
rewrites a single slot and the pool is re-encoded on save.  Item
thumbnails (cropped out of their pool) and full images are cached as
encoded WebP bytes keyed by runtime id.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from PIL import Image

from .. import config
from ..cache import ImageCache
from ..crypto import decrypt_image
from ..errors import ImageCodecFailure, NetworkFailure, TagVaultError, ValidationFailure
from ..fetching import Fetcher
from ..serialization import DataItem, ImageSize, Slot
from ..utils.imaging import (
    IMAGE_FORMAT,
    THUMBNAIL_FORMAT,
    ImageFormatSpecification,
    create_empty_pool,
    crop_slot,
    decode_image,
    encode_image,
    place_into_pool,
    to_thumbnail_size,
)

LOGGER = logging.getLogger(__name__)


def _log_release(key: str, _value: Any) -> None:
    LOGGER.debug("Released cached image for %s", key)


class ImageRepository:
    """Loads, caches and updates images of one opened datasource."""

    def __init__(
        self,
        image_size: ImageSize,
        key: bytes,
        fetcher: Optional[Fetcher] = None,
        *,
        rows: int = config.POOL_ROWS,
        columns: int = config.POOL_COLUMNS,
        thumbnail_cache_size: int = config.THUMBNAIL_CACHE_SIZE,
    ) -> None:
        self.image_size = image_size
        self.slot_size = to_thumbnail_size(image_size)
        self.key = key
        self.fetcher = fetcher
        self.rows = rows
        self.columns = columns
        self._pools: Dict[str, Image.Image] = {}
        self.thumbnails = ImageCache(
            max_size=thumbnail_cache_size,
            cleanup_threshold=config.CACHE_CLEANUP_THRESHOLD,
            on_release=_log_release,
        )
        # may hold the only copy of an unsaved image
        self.images = ImageCache(max_size=None, on_release=_log_release)

    async def _load(self, name: str, spec: ImageFormatSpecification) -> bytes:
        """Fetch ``name`` and decrypt it with the runtime data key."""
        if self.fetcher is None:
            raise NetworkFailure(f"Failed to fetch {name}", "no image fetcher configured")
        try:
            encrypted = await self.fetcher(name)
        except TagVaultError:
            raise
        except Exception as exc:
            raise NetworkFailure(f"Failed to fetch {name}", str(exc)) from exc
        return decrypt_image(bytes(encrypted), spec, self.key)

    @property
    def pool_size(self) -> tuple[int, int]:
        return (self.slot_size.width * self.columns, self.slot_size.height * self.rows)

    def has_pool(self, name: str) -> bool:
        return name in self._pools

    def add_empty_pool(self, name: str) -> None:
        """Register a blank pool; used when the allocator creates a pool."""
        self._pools[name] = create_empty_pool(self.slot_size, self.rows, self.columns)

    async def get_thumbnail_pool(self, name: str) -> Image.Image:
        """Return the decoded pool ``name``, fetching it on first use."""
        pool = self._pools.get(name)
        if pool is not None:
            return pool
        raw = await self._load(f"{name}{THUMBNAIL_FORMAT.extension}", THUMBNAIL_FORMAT)
        pool = decode_image(raw)
        if pool.size != self.pool_size:
            raise ImageCodecFailure(
                f"Thumbnail pool {name} has an unexpected size",
                f"{pool.width}x{pool.height}, expected {self.pool_size[0]}x{self.pool_size[1]}",
            )
        self._pools[name] = pool
        LOGGER.debug("Loaded thumbnail pool %s", name)
        return pool

    def place_thumbnail(self, thumbnail: Image.Image, slot: Slot) -> None:
        """Draw ``thumbnail`` into ``slot`` of an already loaded pool."""
        pool = self._pools[slot.name]
        self._pools[slot.name] = place_into_pool(pool, slot.index, thumbnail, self.slot_size, self.columns)

    def place_image_cache(
        self,
        runtime_id: str,
        *,
        image: Optional[bytes] = None,
        thumbnail: Optional[bytes] = None,
    ) -> None:
        if image is not None:
            self.images.put(runtime_id, image)
        if thumbnail is not None:
            self.thumbnails.put(runtime_id, thumbnail)

    def cached_image(self, runtime_id: str) -> Optional[bytes]:
        return self.images.get(runtime_id)

    async def get_thumbnail(self, runtime_id: str, item: DataItem) -> bytes:
        """Return the WebP thumbnail of ``item``, cropping it from its pool."""
        cached = self.thumbnails.get(runtime_id)
        if cached is not None:
            return cached
        if item.image is None:
            raise ValidationFailure("Item has no image", runtime_id)
        pool = await self.get_thumbnail_pool(item.image.name)
        thumbnail = encode_image(
            crop_slot(pool, item.image.index, self.slot_size, self.columns),
            IMAGE_FORMAT,
        )
        self.thumbnails.put(runtime_id, thumbnail)
        return thumbnail

    async def get_image(self, runtime_id: str) -> bytes:
        """Return the full WebP image of an item, fetching it on cache miss."""
        cached = self.images.get(runtime_id)
        if cached is not None:
            return cached
        image = await self._load(f"{runtime_id}{IMAGE_FORMAT.extension}", IMAGE_FORMAT)
        self.images.put(runtime_id, image)
        return image

    def release_item(self, runtime_id: str) -> None:
        self.thumbnails.pop(runtime_id)
        self.images.pop(runtime_id)

    def reset(self) -> None:
        self._pools.clear()
        self.thumbnails.clear()
        self.images.clear()
