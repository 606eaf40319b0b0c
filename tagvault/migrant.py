"""Import of dumped items.

A dumped item is a JSON object mapping entry names to plain values::

    {"title": "Sunset", "color": ["red", "orange"], "score": {"score": 4}}

:func:`load_dumped_item` validates it against the entry schema, registers
new tags through a :class:`~tagvault.tag_patch.TagPatch` and loads the
accompanying image, producing what a placement request needs.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import ParseError, ValidationFailure
from .serialization import Configurations, DataItem, EntryConfiguration, EntryData, RatingEntry, StringEntry, TagEntry
from .tag_patch import TagPatch
from .utils.imaging import LoadedImage, load_image

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DumpedItem:
    data: DataItem
    images: Optional[LoadedImage] = None


def _invalid(detail: str) -> ValidationFailure:
    return ValidationFailure("Invalid data format", detail)


def _load_string(value: Any, entry_config: EntryConfiguration) -> StringEntry:
    if not isinstance(value, str):
        raise _invalid(f"{entry_config.name}: expected a string")
    if not value and not entry_config.optional:
        raise _invalid(f"missing required entry {entry_config.name}")
    return StringEntry(value=value)


def _load_tags(value: Any, entry_config: EntryConfiguration) -> List[str]:
    if not isinstance(value, list):
        raise _invalid(f"{entry_config.name}: expected an array")
    if any(not isinstance(tag, str) or not tag for tag in value):
        raise _invalid(f"{entry_config.name}: expected non-empty strings")
    if entry_config.exclusive and len(value) > 1:
        raise _invalid(f"{entry_config.name}: only one tag may be chosen")
    if not value and not entry_config.optional:
        raise _invalid(f"missing required entry {entry_config.name}")
    return list(value)


def _load_rating(value: Any, entry_config: EntryConfiguration) -> RatingEntry:
    if not isinstance(value, dict) or "score" not in value:
        raise _invalid(f"{entry_config.name}: invalid rating entry")
    score = value["score"]
    if isinstance(score, bool) or not isinstance(score, int):
        raise _invalid(f"{entry_config.name}: score must be an integer")
    if score == 0 and not entry_config.optional:
        raise _invalid(f"missing required entry {entry_config.name}")
    comment = value.get("comment")
    if comment is not None and not isinstance(comment, str):
        raise _invalid(f"{entry_config.name}: comment must be a string")
    return RatingEntry(score=score, comment=comment)


_LOADERS: Dict[str, Callable[[Any, EntryConfiguration], EntryData]] = {
    "string": _load_string,
    "rating": _load_rating,
}


def load_dumped_item(
    configurations: Configurations,
    text: str,
    image: Optional[bytes],
    tag_patch: TagPatch,
) -> DumpedItem:
    """Parse ``text`` into a data item and load ``image`` if the schema has one.

    Tags are only registered once the whole item, image included, is valid.
    """
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError("Cannot parse JSON", str(exc)) from exc
    if not isinstance(payload, dict):
        raise ParseError("Invalid data format", "the top-level must be an object")

    entries: Dict[str, EntryData] = {}
    tag_values: List[Tuple[str, List[str]]] = []
    for entry_config in configurations.entries:
        value = payload.get(entry_config.name)
        if value is None:
            if not entry_config.optional:
                raise _invalid(f"missing required entry {entry_config.name}")
            continue
        if entry_config.type == "tag":
            tag_values.append((entry_config.name, _load_tags(value, entry_config)))
            continue
        entries[entry_config.name] = _LOADERS[entry_config.type](value, entry_config)

    images: Optional[LoadedImage] = None
    if configurations.image_size is not None:
        if image is None:
            raise _invalid("image not found")
        images = load_image(image, configurations.image_size)

    for entry_name, tags in tag_values:
        entries[entry_name] = TagEntry(tags=tuple(tag_patch.register(entry_name, tags)))
    # keep schema order
    ordered = {e.name: entries[e.name] for e in configurations.entries if e.name in entries}
    LOGGER.debug("Loaded dumped item with %d entries", len(ordered))
    return DumpedItem(data=DataItem(entries=ordered), images=images)
