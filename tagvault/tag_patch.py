"""Staging area for tag registration.

Placing a batch of items must leave the datasource untouched when the batch
is rejected, yet items may reference brand-new tags before validation has
run.  New tags are therefore only recorded in a :class:`TagPatch` and merged
into the tag registry once the batch is committed.
"""
from __future__ import annotations

from typing import Callable, Dict, List, MutableMapping, Optional, Sequence


class TagPatch:
    """Tags waiting to be registered, per entry name."""

    def __init__(
        self,
        registry: MutableMapping[str, List[str]],
        on_cancel: Optional[Callable[[], None]] = None,
    ) -> None:
        self._registry = registry
        self._staged: Dict[str, Dict[str, int]] = {}
        self._on_cancel = on_cancel

    def register(self, entry_name: str, new_tags: Sequence[str]) -> List[int]:
        """Return an id for every tag in ``new_tags``, in input order.

        Tags already in the registry keep their id, tags already staged in
        this patch reuse the staged id, anything else gets the next free id.
        """
        staged = self._staged.setdefault(entry_name, {})
        existing = self._registry.get(entry_name, [])
        ids: List[int] = []
        for tag in new_tags:
            if tag in existing:
                ids.append(existing.index(tag))
                continue
            if tag not in staged:
                staged[tag] = len(existing) + len(staged)
            ids.append(staged[tag])
        return ids

    def staged(self) -> Dict[str, Dict[str, int]]:
        return {name: dict(tags) for name, tags in self._staged.items()}

    def confirm(self) -> None:
        """Append staged tags to the registry in ascending id order."""
        for entry_name, new_tags in self._staged.items():
            if not new_tags:
                continue
            ordered = [tag for tag, _ in sorted(new_tags.items(), key=lambda item: item[1])]
            self._registry.setdefault(entry_name, []).extend(ordered)
        self._staged.clear()

    def cancel(self) -> None:
        """Drop staged tags without touching the registry."""
        self._staged.clear()
        if self._on_cancel is not None:
            self._on_cancel()
