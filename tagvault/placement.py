"""Transactional placement of data item batches.

Placing a batch either applies every request or none of them.  The work is
split into stages that each return the failures they found; a stage only
runs when every earlier stage reported none, and nothing observable is
mutated before :func:`commit`:

1. :func:`check_uniqueness` validates unique string entries across the
   batch and against the database;
2. :func:`resolve_requests` assigns runtime ids, validates image references
   and drops requests that would not change anything;
3. :func:`prefetch_pools` loads every existing pool the batch will draw
   into, since loading is the only operation that may still fail;
4. :func:`commit` applies the batch and cannot fail.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, ClassVar, Dict, List, Optional, Sequence, Set, Union

from .errors import TagVaultError
from .managers.images import ImageRepository
from .managers.modification import ModificationTracker
from .pools import ImagePoolAllocator
from .serialization import Configurations, DataItem, StringEntry
from .tag_patch import TagPatch
from .utils.imaging import LoadedImage

LOGGER = logging.getLogger(__name__)


@dataclass
class PlacementRequest:
    """One element of a batch; omit ``runtime_id`` to create a new item."""

    source: DataItem
    runtime_id: Optional[str] = None
    images: Optional[LoadedImage] = None


@dataclass(frozen=True)
class DuplicatedValue:
    kind: ClassVar[str] = "duplicated_value"

    entry_name: str
    value: str


@dataclass(frozen=True)
class ImageFetchFailed:
    kind: ClassVar[str] = "image_fetch_failed"

    description: str


@dataclass(frozen=True)
class InvalidImageReference:
    kind: ClassVar[str] = "invalid_image_reference"

    description: str


@dataclass(frozen=True)
class DatasourceUnavailable:
    kind: ClassVar[str] = "datasource_unavailable"

    description: str


FailureReason = Union[DuplicatedValue, ImageFetchFailed, InvalidImageReference, DatasourceUnavailable]


@dataclass(frozen=True)
class PlacementFailure:
    """A rejected request, reported at its index in the batch."""

    index: int
    reason: FailureReason

    @property
    def kind(self) -> str:
        return self.reason.kind


@dataclass(frozen=True)
class UniquenessCheck:
    failures: List[PlacementFailure]
    # entry name -> values the batch brings in
    pending: Dict[str, Set[str]]


@dataclass(frozen=True)
class StagedItem:
    index: int
    runtime_id: str
    source: DataItem
    images: Optional[LoadedImage]


@dataclass(frozen=True)
class Resolution:
    failures: List[PlacementFailure]
    modified: List[StagedItem]


@dataclass
class PlacementContext:
    """State of the store a placement works on."""

    configurations: Configurations
    items: Dict[str, DataItem]
    unique_index: Dict[str, Set[str]]
    tracker: ModificationTracker
    new_runtime_id: Callable[[], str]
    allocator: Optional[ImagePoolAllocator] = None
    repository: Optional[ImageRepository] = None
    tag_patch: Optional[TagPatch] = None

    @property
    def has_image(self) -> bool:
        return self.allocator is not None and self.repository is not None


def _string_value(item: DataItem, entry_name: str) -> Optional[str]:
    entry = item.entries.get(entry_name)
    if isinstance(entry, StringEntry):
        return entry.value
    return None


def _is_duplicated(
    context: PlacementContext,
    request: PlacementRequest,
    entry_name: str,
    value: str,
    batch_values: Set[str],
) -> bool:
    if value in batch_values:
        return True
    if value not in context.unique_index.get(entry_name, set()):
        return False
    # the value is taken; only the item already holding it may keep it
    if request.runtime_id is None:
        return True
    existing = context.items.get(request.runtime_id)
    if existing is None:
        return True
    return _string_value(existing, entry_name) != value


def check_uniqueness(context: PlacementContext, requests: Sequence[PlacementRequest]) -> UniquenessCheck:
    """Reject requests whose unique values collide within the batch or the database."""
    failures: List[PlacementFailure] = []
    pending: Dict[str, Set[str]] = {}
    for entry_name in context.unique_index:
        batch_values: Set[str] = set()
        for index, request in enumerate(requests):
            value = _string_value(request.source, entry_name)
            if value is None:
                continue
            if _is_duplicated(context, request, entry_name, value, batch_values):
                failures.append(PlacementFailure(index, DuplicatedValue(entry_name, value)))
                continue
            batch_values.add(value)
        pending[entry_name] = batch_values
    return UniquenessCheck(failures=failures, pending=pending)


def resolve_requests(context: PlacementContext, requests: Sequence[PlacementRequest]) -> Resolution:
    """Assign runtime ids, check image references and keep only real changes."""
    failures: List[PlacementFailure] = []
    modified: List[StagedItem] = []
    for index, request in enumerate(requests):
        runtime_id = request.runtime_id or context.new_runtime_id()
        existing = context.items.get(runtime_id)
        source = request.source
        images = request.images
        if not context.has_image:
            source = replace(source, image=None) if source.image is not None else source
            images = None
        else:
            current_slot = existing.image if existing is not None else None
            if source.image is None and current_slot is not None:
                source = replace(source, image=current_slot)
            if source.image is not None and (
                source.image != current_slot or not context.allocator.is_allocated(source.image)
            ):
                failures.append(PlacementFailure(
                    index,
                    InvalidImageReference(f"slot {source.image.name}#{source.image.index} is not held by this item"),
                ))
                continue
            if source.image is None and images is None:
                failures.append(PlacementFailure(index, InvalidImageReference("a new item requires an image")))
                continue
        if existing is None or existing != source or images is not None:
            modified.append(StagedItem(index, runtime_id, source, images))
    return Resolution(failures=failures, modified=modified)


async def prefetch_pools(context: PlacementContext, staged: Sequence[StagedItem]) -> List[PlacementFailure]:
    """Load every existing pool that :func:`commit` will draw into."""
    if not context.has_image:
        return []
    targets: List[tuple[int, str]] = []
    fresh: List[StagedItem] = []
    for item in staged:
        if item.images is None:
            continue
        if item.source.image is not None:
            targets.append((item.index, item.source.image.name))
        else:
            fresh.append(item)
    for item, name in zip(fresh, context.allocator.planned_pools(len(fresh))):
        if name is not None:
            targets.append((item.index, name))

    failures: List[PlacementFailure] = []
    for index, name in sorted(targets):
        try:
            await context.repository.get_thumbnail_pool(name)
        except TagVaultError as exc:
            LOGGER.warning("Failed to prefetch thumbnail pool %s: %s", name, exc)
            failures.append(PlacementFailure(index, ImageFetchFailed(str(exc))))
    return failures


def commit(context: PlacementContext, staged: Sequence[StagedItem], pending: Dict[str, Set[str]]) -> None:
    """Apply a validated batch."""
    if staged:
        context.tracker.mark_core_dirty()
    if context.tag_patch is not None:
        context.tag_patch.confirm()

    written: List[StagedItem] = []
    for item in staged:
        source = item.source
        if context.has_image and item.images is not None:
            slot = source.image if source.image is not None else context.allocator.allocate_slot()
            context.repository.place_thumbnail(item.images.thumbnail, slot)
            context.tracker.mark_images_dirty([slot.name])
            source = replace(source, image=slot)
            context.repository.place_image_cache(
                item.runtime_id,
                image=item.images.image,
                thumbnail=item.images.thumbnail_bytes,
            )
            context.tracker.mark_images_dirty([item.runtime_id])
        written.append(replace(item, source=source))

    for entry_name, values in context.unique_index.items():
        for item in written:
            previous = context.items.get(item.runtime_id)
            old_value = None if previous is None else _string_value(previous, entry_name)
            if old_value is not None and old_value != _string_value(item.source, entry_name):
                values.discard(old_value)
        values.update(pending.get(entry_name, set()))

    for item in written:
        context.items[item.runtime_id] = item.source
    LOGGER.info("Placed %d item(s)", len(written))


async def place_items(context: PlacementContext, requests: Sequence[PlacementRequest]) -> List[PlacementFailure]:
    """Run every stage; a non-empty result means nothing was changed."""
    uniqueness = check_uniqueness(context, requests)
    if uniqueness.failures:
        return uniqueness.failures
    resolution = resolve_requests(context, requests)
    if resolution.failures:
        return resolution.failures
    failures = await prefetch_pools(context, resolution.modified)
    if failures:
        return failures
    commit(context, resolution.modified, uniqueness.pending)
    return []
