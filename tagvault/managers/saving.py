# managers/saving.py
"""Save pipeline with structured logging and metrics.

:class:`SavePipeline` assembles an exportable package: the selected images,
re-encoded and encrypted, plus the encrypted datasource record.  Every save
is logged with a correlation identifier (``cid``) and recorded in the
``save_metrics`` collector (success, failure and deferred counts plus
observed durations).

The data key may only encrypt a limited number of messages.  A save that
would cross the limit is deferred instead of attempted: nothing is encrypted
and the ``on_rekey_required`` callback receives the number of messages the
save needed, so that a new data key can be generated first.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

from .. import config
from ..crypto import encrypt_datasource, encrypt_image
from ..errors import NetworkFailure, Result, TagVaultError, ValidationFailure
from ..fetching import attempts_to
from ..packing import PackageBuilder, ZipPackageBuilder
from ..pools import ImagePoolAllocator
from ..serialization import Datasource
from ..utils.imaging import IMAGE_FORMAT, THUMBNAIL_FORMAT, encode_image
from .images import ImageRepository
from .modification import ModificationTracker

LOGGER = logging.getLogger(__name__)


class _SaveMetrics:
    """Simple in-memory metrics collector."""

    def __init__(self) -> None:
        self.counters: Counter[str] = Counter()
        self.durations: list[float] = []

    def record(self, name: str, duration: float | None = None) -> None:
        self.counters[name] += 1
        if duration is not None:
            self.durations.append(duration)


save_metrics = _SaveMetrics()


@dataclass(frozen=True)
class SaveOutcome:
    """Result of a save; ``archive`` is ``None`` when the save was deferred."""

    package_name: str
    archive: Optional[bytes]
    deferred: bool
    messages: int


class SavePipeline:
    """Builds packages for one opened datasource."""

    def __init__(
        self,
        datasource: Datasource,
        tracker: ModificationTracker,
        *,
        allocator: Optional[ImagePoolAllocator] = None,
        repository: Optional[ImageRepository] = None,
        builder_factory: Callable[[str], PackageBuilder] = ZipPackageBuilder,
        on_rekey_required: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._datasource = datasource
        self._tracker = tracker
        self._allocator = allocator
        self._repository = repository
        self._builder_factory = builder_factory
        self._on_rekey_required = on_rekey_required
        # staged rotated key; the runtime key still decrypts stored images
        self.new_key: Optional[bytes] = None
        self.encrypts_to_be_done = 0

    @property
    def encryption_key(self) -> bytes:
        return self.new_key if self.new_key is not None else self._datasource.runtime.key

    def _select(self, names: Iterable[str], log: logging.LoggerAdapter) -> List[str]:
        if self._allocator is None or self._repository is None:
            return []
        selected: List[str] = []
        for name in names:
            if name in self._allocator or name in self._datasource.data:
                selected.append(name)
            else:
                log.info("Skipping image %s which no longer exists", name)
        return selected

    def _stamp(self) -> Tuple[int, bytes, bytes, bytes, int]:
        runtime = self._datasource.runtime
        return (
            self._tracker.revision,
            self.encryption_key,
            runtime.encrypted_key,
            runtime.key_nonce,
            self._datasource.encrypted_counter,
        )

    async def _encrypt_member(self, name: str, key: bytes) -> Tuple[str, bytes]:
        if name in self._allocator:
            pool = await self._repository.get_thumbnail_pool(name)
            encoded = encode_image(pool, THUMBNAIL_FORMAT)
            return f"{name}{THUMBNAIL_FORMAT.extension}", encrypt_image(encoded, THUMBNAIL_FORMAT, key)
        image = await self._repository.get_image(name)
        return f"{name}{IMAGE_FORMAT.extension}", encrypt_image(image, IMAGE_FORMAT, key)

    async def save(self, names: Iterable[str], package_name: str) -> Result[SaveOutcome]:
        """Encrypt the selected images and the record into one package.

        On failure no package is produced and the datasource is unchanged.
        """
        cid = uuid.uuid4().hex
        log = logging.LoggerAdapter(LOGGER, {"cid": cid})
        start = time.perf_counter()

        selected = self._select(names, log)
        messages = len(selected) + 1
        counter = self._datasource.encrypted_counter
        if counter + messages > config.ENCRYPT_MESSAGE_LIMIT:
            self.encrypts_to_be_done = messages
            save_metrics.record("deferred")
            log.warning(
                "save of %s deferred: %d message(s) would exceed the data key quota at counter %d",
                package_name,
                messages,
                counter,
            )
            if self._on_rekey_required is not None:
                self._on_rekey_required(messages)
            return Result.ok(SaveOutcome(package_name, None, True, messages))

        key = self.encryption_key
        # the record must be written with the key and counter the images were encrypted for
        stamp = self._stamp()
        attempts = await attempts_to(
            [lambda name=name: self._encrypt_member(name, key) for name in selected],
            max_retry=0,
        )
        failed = [attempt.reason for attempt in attempts if not attempt.succeeded]
        if failed:
            save_metrics.record("failure", (time.perf_counter() - start) * 1000)
            detail = "\n".join(str(reason) for reason in failed)
            log.error("save of %s failed while loading images: %s", package_name, detail)
            first = failed[0]
            if isinstance(first, TagVaultError):
                error = first if len(failed) == 1 else type(first)("Failed to load all images", detail)
            else:
                error = NetworkFailure("Failed to load all images", detail)
            return Result.failure(error)

        if self._stamp() != stamp:
            save_metrics.record("failure", (time.perf_counter() - start) * 1000)
            log.warning("save of %s aborted: the datasource changed while images were loading", package_name)
            return Result.failure(ValidationFailure("Datasource changed during save", "save again"))

        try:
            builder = self._builder_factory(package_name)
            for attempt in attempts:
                member, data = attempt.result
                builder.add_from_bytes(member, data)
            if self._allocator is not None:
                self._datasource.pools = self._allocator.to_records()
            record = encrypt_datasource(self._datasource, key, encrypted_counter=counter + messages)
            builder.add_from_text(config.DATA_MEMBER_NAME, record)
            archive = builder.finalize()
        except TagVaultError as exc:
            save_metrics.record("failure", (time.perf_counter() - start) * 1000)
            log.error("save of %s failed: %s", package_name, exc)
            return Result.failure(exc)

        # the counter bump is a modification of its own
        self._tracker.mark_core_dirty()
        self._datasource.encrypted_counter = counter + messages
        self._tracker.mark_saved()
        self.encrypts_to_be_done = 0

        duration = (time.perf_counter() - start) * 1000
        save_metrics.record("success", duration)
        log.info(
            "save of %s complete: %d image(s), %d bytes in %.1f ms",
            package_name,
            len(selected),
            len(archive),
            duration,
        )
        return Result.ok(SaveOutcome(package_name, archive, False, messages))

    def update_data_key(self, encrypted_key: bytes, key_nonce: bytes, key: Optional[bytes] = None) -> None:
        """Replace the wrapped data key, staging a rotated key when ``key`` is given.

        A rotated key marks every image dirty so the next save re-encrypts
        all of them, and restarts the encryption counter.
        """
        if key is not None:
            if self._allocator is not None:
                self._tracker.mark_images_dirty([*self._datasource.data, *self._allocator.names()])
            self.new_key = key
            self._datasource.encrypted_counter = 0
            LOGGER.info("Rotated data key staged")
        self._tracker.mark_core_dirty()
        runtime = self._datasource.runtime
        runtime.encrypted_key = encrypted_key
        runtime.key_nonce = key_nonce
