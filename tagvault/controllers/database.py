"""Database store: the single owner of an opened datasource.

:class:`DatabaseStore` mediates between front ends and the datasource.  It
keeps the items, tag registry, pool allocation and image caches of one
decrypted datasource, and exposes the operations callers may perform on
them.  Operations report failures as :class:`~tagvault.errors.Result`
values (or, for batch placement, a list of per-item failures) rather than
raising.  Committed mutations are announced through the Qt signals of
:class:`~tagvault.signals.StoreSignals`.
"""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set

from .. import config
from ..errors import ParseError, Result, TagVaultError, ValidationFailure
from ..fetching import Fetcher
from ..managers.images import ImageRepository
from ..managers.modification import ModificationTracker, PseudoVersionNumbers
from ..managers.saving import SaveOutcome, SavePipeline
from ..migrant import DumpedItem, load_dumped_item
from ..packing import PackageBuilder, ZipPackageBuilder
from ..placement import DatasourceUnavailable, PlacementContext, PlacementFailure, PlacementRequest, place_items
from ..pools import ImagePoolAllocator, PoolAllocation
from ..serialization import Configurations, DataItem, Datasource, PoolRecord, StringEntry
from ..signals import StoreSignals
from ..tag_patch import TagPatch

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreSnapshot:
    """Read-only copy of the store state for inspection and tests."""

    items: Dict[str, DataItem]
    tags: Dict[str, List[str]]
    pools: List[PoolRecord]
    unique_values: Dict[str, Set[str]]
    encrypted_counter: int
    versions: Dict[str, PseudoVersionNumbers]
    revision: int
    encrypts_to_be_done: int
    rotation_staged: bool


def _new_uuid() -> str:
    return str(uuid.uuid4())


class DatabaseStore:
    """Owns one opened datasource and every piece of runtime state derived from it."""

    def __init__(
        self,
        *,
        signals: Optional[StoreSignals] = None,
        builder_factory: Callable[[str], PackageBuilder] = ZipPackageBuilder,
        name_factory: Callable[[], str] = _new_uuid,
    ) -> None:
        self.signals = signals if signals is not None else StoreSignals()
        self._builder_factory = builder_factory
        self._name_factory = name_factory
        self._tracker = ModificationTracker()
        self._datasource: Optional[Datasource] = None
        self._unique_index: Dict[str, Set[str]] = {}
        self._tag_patch: Optional[TagPatch] = None
        self._allocator: Optional[ImagePoolAllocator] = None
        self._repository: Optional[ImageRepository] = None
        self._pipeline: Optional[SavePipeline] = None
        # runtime ids handed out, committed or not
        self._issued_ids: Set[str] = set()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_loaded(self) -> Datasource:
        if self._datasource is None:
            raise ValidationFailure("No datasource loaded")
        return self._datasource

    def _emit_changed(self) -> None:
        self.signals.changed.emit(self._tracker.revision)

    def _drop_tag_patch(self) -> None:
        self._tag_patch = None

    def _generate_id(self, taken: Callable[[str], bool]) -> str:
        while True:
            candidate = self._name_factory()
            if not taken(candidate):
                return candidate

    def _name_taken(self, candidate: str) -> bool:
        if candidate in self._issued_ids:
            return True
        if self._datasource is not None and candidate in self._datasource.data:
            return True
        return self._allocator is not None and candidate in self._allocator

    def _new_pool_name(self) -> str:
        return self._generate_id(self._name_taken)

    def _build_unique_index(self, datasource: Datasource) -> Dict[str, Set[str]]:
        index: Dict[str, Set[str]] = {}
        for entry_config in datasource.configurations.entries:
            if entry_config.type != "string" or not entry_config.unique:
                continue
            values: Set[str] = set()
            for item in datasource.data.values():
                entry = item.entries.get(entry_config.name)
                # optional entries may be missing
                if isinstance(entry, StringEntry):
                    values.add(entry.value)
            index[entry_config.name] = values
        return index

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    @property
    def loaded(self) -> bool:
        return self._datasource is not None

    @property
    def has_image(self) -> bool:
        return self._datasource is not None and self._datasource.has_image

    @property
    def configurations(self) -> Optional[Configurations]:
        return None if self._datasource is None else self._datasource.configurations

    @property
    def encrypts_to_be_done(self) -> int:
        return 0 if self._pipeline is None else self._pipeline.encrypts_to_be_done

    def build_runtime_database(self, datasource: Datasource, fetcher: Optional[Fetcher] = None) -> Result[None]:
        """Take ownership of a decrypted datasource.

        ``fetcher`` loads the encrypted images saved alongside the record;
        it is only needed when the schema declares images.
        """
        self.reset()
        allocator: Optional[ImagePoolAllocator] = None
        repository: Optional[ImageRepository] = None
        if datasource.has_image:
            repository = ImageRepository(datasource.configurations.image_size, datasource.runtime.key, fetcher)
            allocator = ImagePoolAllocator(
                self._tracker,
                name_factory=self._new_pool_name,
                on_pool_created=repository.add_empty_pool,
            )
            try:
                allocator.load(datasource.pools or [])
            except ValueError as exc:
                return Result.failure(ParseError("Invalid pool directory", str(exc)))
            if datasource.pools is None:
                datasource.pools = []
        if datasource.tags is None:
            datasource.tags = {}

        self._datasource = datasource
        self._allocator = allocator
        self._repository = repository
        self._unique_index = self._build_unique_index(datasource)
        self._pipeline = SavePipeline(
            datasource,
            self._tracker,
            allocator=allocator,
            repository=repository,
            builder_factory=self._builder_factory,
            on_rekey_required=self.signals.rekey_required.emit,
        )
        LOGGER.info(
            "Opened datasource %s with %d item(s) and %d pool(s)",
            datasource.configurations.name,
            len(datasource.data),
            0 if allocator is None else len(allocator),
        )
        self._emit_changed()
        return Result.ok()

    def reset(self) -> None:
        """Close the datasource and drop all runtime state."""
        if self._tag_patch is not None:
            self._tag_patch.cancel()
        if self._repository is not None:
            self._repository.reset()
        if self._allocator is not None:
            self._allocator.clear()
        self._tracker.reset()
        self._unique_index = {}
        self._issued_ids = set()
        self._allocator = None
        self._repository = None
        self._pipeline = None
        was_loaded = self._datasource is not None
        self._datasource = None
        if was_loaded:
            LOGGER.info("Datasource closed")
            self._emit_changed()

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------
    def acquire_new_runtime_id(self) -> str:
        self._require_loaded()
        runtime_id = self._generate_id(self._name_taken)
        self._issued_ids.add(runtime_id)
        return runtime_id

    def prepare_tag_registration(self) -> TagPatch:
        """Return the pending tag patch, creating it on first use."""
        datasource = self._require_loaded()
        if self._tag_patch is None:
            self._tag_patch = TagPatch(datasource.tags, on_cancel=self._drop_tag_patch)
        return self._tag_patch

    def parse_dumped_item(self, text: str, image: Optional[bytes] = None) -> Result[DumpedItem]:
        """Build a placement-ready item from dumped JSON and an optional image."""
        try:
            datasource = self._require_loaded()
            return Result.ok(load_dumped_item(datasource.configurations, text, image, self.prepare_tag_registration()))
        except TagVaultError as exc:
            return Result.failure(exc)

    async def place_items(self, requests: Iterable[PlacementRequest]) -> List[PlacementFailure]:
        """Place a batch of items; a non-empty result means nothing changed."""
        batch = list(requests)
        datasource = self._datasource
        if datasource is None:
            reason = DatasourceUnavailable("No datasource loaded")
            return [PlacementFailure(index, reason) for index in range(len(batch))]
        revision = self._tracker.revision
        context = PlacementContext(
            configurations=datasource.configurations,
            items=datasource.data,
            unique_index=self._unique_index,
            tracker=self._tracker,
            new_runtime_id=self.acquire_new_runtime_id,
            allocator=self._allocator,
            repository=self._repository,
            tag_patch=self._tag_patch,
        )
        failures = await place_items(context, batch)
        if failures:
            LOGGER.info("Rejected batch of %d item(s) with %d failure(s)", len(batch), len(failures))
            return failures
        if self._tracker.revision != revision:
            self._emit_changed()
        return []

    def remove_items(self, runtime_ids: Iterable[str]) -> Result[int]:
        """Remove items, freeing their slots; unknown ids reject the whole call."""
        try:
            datasource = self._require_loaded()
            ids = list(dict.fromkeys(runtime_ids))
            unknown = [runtime_id for runtime_id in ids if runtime_id not in datasource.data]
            if unknown:
                raise ValidationFailure("Unknown runtime id", ", ".join(unknown))
        except TagVaultError as exc:
            return Result.failure(exc)
        if not ids:
            return Result.ok(0)

        for runtime_id in ids:
            item = datasource.data.pop(runtime_id)
            if item.image is not None and self._allocator is not None:
                self._allocator.free_slot(item.image)
            for entry_name, values in self._unique_index.items():
                entry = item.entries.get(entry_name)
                if isinstance(entry, StringEntry):
                    values.discard(entry.value)
            if self._repository is not None:
                self._repository.release_item(runtime_id)
        self._tracker.mark_core_dirty()
        LOGGER.info("Removed %d item(s)", len(ids))
        self._emit_changed()
        return Result.ok(len(ids))

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    def _image_target(self, runtime_id: str) -> DataItem:
        datasource = self._require_loaded()
        if self._repository is None:
            raise ValidationFailure("Datasource has no images")
        item = datasource.data.get(runtime_id)
        if item is None:
            raise ValidationFailure("Unknown runtime id", runtime_id)
        return item

    async def get_thumbnail(self, runtime_id: str) -> Result[bytes]:
        """Return the item thumbnail as WebP bytes."""
        try:
            item = self._image_target(runtime_id)
            return Result.ok(await self._repository.get_thumbnail(runtime_id, item))
        except TagVaultError as exc:
            LOGGER.warning("Failed to load thumbnail of %s: %s", runtime_id, exc)
            return Result.failure(exc)

    async def get_image(self, runtime_id: str) -> Result[bytes]:
        """Return the full item image as WebP bytes."""
        try:
            self._image_target(runtime_id)
            return Result.ok(await self._repository.get_image(runtime_id))
        except TagVaultError as exc:
            LOGGER.warning("Failed to load image of %s: %s", runtime_id, exc)
            return Result.failure(exc)

    def query_pool_allocation(self) -> List[PoolAllocation]:
        if self._allocator is None:
            return []
        return self._allocator.query_allocation()

    # ------------------------------------------------------------------
    # Modification state
    # ------------------------------------------------------------------
    def is_modified(self) -> bool:
        return self._tracker.is_modified()

    def is_unsaved(self) -> bool:
        return self._tracker.is_unsaved()

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------
    async def _save(self, names: List[str], package_name: str) -> Result[SaveOutcome]:
        try:
            self._require_loaded()
        except TagVaultError as exc:
            return Result.failure(exc)
        result = await self._pipeline.save(names, package_name)
        if result.is_ok and not result.value.deferred:
            self.signals.saved.emit(package_name)
            self._emit_changed()
        return result

    async def save_delta(self) -> Result[SaveOutcome]:
        """Save the record plus every image modified since loading."""
        return await self._save(list(self._tracker.modified_images()), config.DELTA_PACKAGE_NAME)

    async def save_all(self) -> Result[SaveOutcome]:
        """Save the record plus every pool and item image."""
        names: List[str] = []
        if self._allocator is not None and self._datasource is not None:
            names = [*self._allocator.names(), *self._datasource.data]
        return await self._save(names, config.FULL_PACKAGE_NAME)

    def update_data_key(self, encrypted_key: bytes, nonce: bytes, key: Optional[bytes] = None) -> Result[None]:
        """Store a new wrapped data key; pass ``key`` when the key itself was rotated."""
        try:
            self._require_loaded()
        except TagVaultError as exc:
            return Result.failure(exc)
        self._pipeline.update_data_key(encrypted_key, nonce, key)
        self._emit_changed()
        return Result.ok()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def snapshot(self) -> StoreSnapshot:
        datasource = self._datasource
        return StoreSnapshot(
            items={} if datasource is None else dict(datasource.data),
            tags={} if datasource is None else copy.deepcopy(datasource.tags or {}),
            pools=[] if self._allocator is None else self._allocator.to_records(),
            unique_values={name: set(values) for name, values in self._unique_index.items()},
            encrypted_counter=0 if datasource is None else datasource.encrypted_counter,
            versions=self._tracker.snapshot(),
            revision=self._tracker.revision,
            encrypts_to_be_done=self.encrypts_to_be_done,
            rotation_staged=self._pipeline is not None and self._pipeline.new_key is not None,
        )
