# managers/modification.py
"""
ModificationTracker: records how many times the datasource was modified.

The tracker does not care what a modification is, only how often each file
of the package was touched.  It holds a pseudo version number for the core
record and for each image file (thumbnail pool or full image), bumped by one
on every modification, plus a snapshot of those numbers taken when the
datasource was last saved.  Comparing the two answers both "was anything
modified since loading" and "is the latest modification unsaved".
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Optional

LOGGER = logging.getLogger(__name__)


@dataclass
class PseudoVersionNumbers:
    """Version counter for the core record and each image file."""

    core: int = 0
    images: Dict[str, int] = field(default_factory=dict)

    def clone(self) -> "PseudoVersionNumbers":
        return PseudoVersionNumbers(core=self.core, images=dict(self.images))


class ModificationTracker:
    """Tracks current versus last-saved pseudo version numbers."""

    def __init__(self, on_change: Optional[Callable[[int], None]] = None) -> None:
        self._current = PseudoVersionNumbers()
        self._saved = PseudoVersionNumbers()
        self._revision = 0
        self._listeners: List[Callable[[int], None]] = []
        if on_change is not None:
            self._listeners.append(on_change)

    @property
    def revision(self) -> int:
        """Bumped after every state change; usable for polling observers."""
        return self._revision

    def add_listener(self, listener: Callable[[int], None]) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        self._revision += 1
        for listener in list(self._listeners):
            listener(self._revision)

    def modified_images(self) -> Iterator[str]:
        """Names of every image modified since the datasource was loaded."""
        return iter(list(self._current.images))

    def is_modified(self) -> bool:
        return self._current.core > 0 or bool(self._current.images)

    def is_unsaved(self) -> bool:
        if not self.is_modified():
            return False
        if self._saved.core < self._current.core:
            return True
        for name, version in self._current.images.items():
            saved_version = self._saved.images.get(name)
            if saved_version is None or saved_version < version:
                return True
        return False

    def mark_images_dirty(self, names: Iterable[str]) -> None:
        for name in names:
            self._current.images[name] = self._current.images.get(name, 0) + 1
        self._notify()

    def mark_core_dirty(self) -> None:
        self._current.core += 1
        self._notify()

    def mark_saved(self) -> None:
        """Take the saved snapshot in a single assignment."""
        self._saved = self._current.clone()
        LOGGER.debug("Modification state saved at core version %d", self._saved.core)
        self._notify()

    def reset(self) -> None:
        self._current = PseudoVersionNumbers()
        self._saved = PseudoVersionNumbers()
        self._revision = 0

    def snapshot(self) -> Dict[str, PseudoVersionNumbers]:
        """Copies of both version sets, for inspection only."""
        return {"current": self._current.clone(), "saved": self._saved.clone()}
