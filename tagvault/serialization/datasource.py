"""Datasource model and its JSON-safe payload representation.

The persisted record uses two conventions so that it survives a plain JSON
round trip:

* binary fields are written as ``"base64://<data>"`` strings,
* mappings (items, item entries, tag registry) are written as ordered lists
  ``["map://", [key, value], ...]`` so insertion order and non-string keys
  are preserved.

Entry values carry no type marker; they are decoded against the entry
schema of the datasource.
"""
from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .. import config
from ..errors import ParseError

LOGGER = logging.getLogger(__name__)

BYTES_PREFIX = "base64://"
MAP_MARKER = "map://"

ENTRY_TYPES = ("string", "tag", "rating")


def encode_bytes(value: bytes) -> str:
    """Encode binary data into a prefixed base64 string."""
    return BYTES_PREFIX + base64.b64encode(bytes(value)).decode("ascii")


def decode_bytes(value: Any) -> bytes:
    """Decode a prefixed base64 string back into bytes."""
    if not isinstance(value, str) or not value.startswith(BYTES_PREFIX):
        raise ParseError("Invalid binary field", f"expected {BYTES_PREFIX!r} prefix")
    try:
        return base64.b64decode(value[len(BYTES_PREFIX):], validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ParseError("Invalid binary field", str(exc)) from exc


def pack_map(mapping: Mapping[Any, Any], encode: Callable[[Any], Any] = lambda v: v) -> List[Any]:
    """Encode a mapping as an explicit ordered key/value list."""
    packed: List[Any] = [MAP_MARKER]
    for key, value in mapping.items():
        packed.append([key, encode(value)])
    return packed


def unpack_map(value: Any, decode: Callable[[Any], Any] = lambda v: v) -> Dict[Any, Any]:
    """Decode a list produced by :func:`pack_map`."""
    if not isinstance(value, list) or not value or value[0] != MAP_MARKER:
        raise ParseError("Invalid mapping field", f"expected list starting with {MAP_MARKER!r}")
    result: Dict[Any, Any] = {}
    for pair in value[1:]:
        if not isinstance(pair, list) or len(pair) != 2:
            raise ParseError("Invalid mapping field", "entries must be [key, value] pairs")
        key, raw = pair
        result[key] = decode(raw)
    return result


def _require(payload: Mapping[str, Any], key: str) -> Any:
    try:
        return payload[key]
    except (KeyError, TypeError) as exc:
        raise ParseError("Malformed datasource payload", f"missing field {key!r}") from exc


@dataclass(eq=True, frozen=True)
class ImageSize:
    """Pixel size of a full image."""

    width: int
    height: int

    def to_payload(self) -> Dict[str, int]:
        return {"width": self.width, "height": self.height}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ImageSize":
        return cls(width=int(_require(payload, "width")), height=int(_require(payload, "height")))


@dataclass(eq=True, frozen=True)
class Slot:
    """Location of a thumbnail inside a pool."""

    name: str
    index: int

    def to_payload(self) -> Dict[str, Any]:
        return {"name": self.name, "index": self.index}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Slot":
        return cls(name=str(_require(payload, "name")), index=int(_require(payload, "index")))


@dataclass(eq=True, frozen=True)
class StringEntry:
    value: str

    def to_payload(self) -> Dict[str, Any]:
        return {"value": self.value}


@dataclass(eq=True, frozen=True)
class RatingEntry:
    score: int
    comment: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"score": self.score}
        if self.comment is not None:
            payload["comment"] = self.comment
        return payload


@dataclass(eq=True, frozen=True)
class TagEntry:
    """Tag ids referencing the registry list of the entry, ascending."""

    tags: Tuple[int, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "tags", tuple(sorted(self.tags)))

    def to_payload(self) -> Dict[str, Any]:
        return {"tags": list(self.tags)}


EntryData = Union[StringEntry, RatingEntry, TagEntry]


def entry_from_payload(entry_type: str, payload: Mapping[str, Any]) -> EntryData:
    """Decode entry data according to the configured entry type."""
    if entry_type == "string":
        return StringEntry(value=str(_require(payload, "value")))
    if entry_type == "rating":
        comment = payload.get("comment")
        return RatingEntry(score=int(_require(payload, "score")), comment=comment)
    if entry_type == "tag":
        return TagEntry(tags=tuple(int(tag) for tag in _require(payload, "tags")))
    raise ParseError("Unknown entry type", entry_type)


@dataclass(eq=True, frozen=True)
class EntryConfiguration:
    """A named, typed field of the item schema.

    Fields not understood by this package are preserved in ``extra`` so they
    survive a load/save cycle.
    """

    name: str
    type: str
    optional: bool = False
    unique: bool = False
    exclusive: bool = False
    extra: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        payload.update({"name": self.name, "type": self.type, "optional": self.optional})
        if self.type == "string":
            payload["unique"] = self.unique
        if self.type == "tag":
            payload["exclusive"] = self.exclusive
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "EntryConfiguration":
        entry_type = str(_require(payload, "type"))
        if entry_type not in ENTRY_TYPES:
            raise ParseError("Unknown entry type", entry_type)
        known = {"name", "type", "optional", "unique", "exclusive"}
        return cls(
            name=str(_require(payload, "name")),
            type=entry_type,
            optional=bool(payload.get("optional", False)),
            unique=bool(payload.get("unique", False)),
            exclusive=bool(payload.get("exclusive", False)),
            extra={k: v for k, v in payload.items() if k not in known},
        )


@dataclass(eq=True, frozen=True)
class Configurations:
    """Global settings plus the entry schema."""

    name: str
    entries: Tuple[EntryConfiguration, ...] = ()
    image_size: Optional[ImageSize] = None
    extra: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def entry(self, name: str) -> Optional[EntryConfiguration]:
        for entry_config in self.entries:
            if entry_config.name == name:
                return entry_config
        return None

    def to_payload(self) -> Dict[str, Any]:
        global_payload: Dict[str, Any] = dict(self.extra)
        global_payload["name"] = self.name
        entry_payload: Dict[str, Any] = {"entries": [e.to_payload() for e in self.entries]}
        if self.image_size is not None:
            entry_payload["image_size"] = self.image_size.to_payload()
        return {"global": global_payload, "entry": entry_payload}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Configurations":
        global_payload = _require(payload, "global")
        entry_payload = _require(payload, "entry")
        image_size = entry_payload.get("image_size")
        return cls(
            name=str(_require(global_payload, "name")),
            entries=tuple(EntryConfiguration.from_payload(e) for e in entry_payload.get("entries", [])),
            image_size=None if image_size is None else ImageSize.from_payload(image_size),
            extra={k: v for k, v in global_payload.items() if k != "name"},
        )


@dataclass(eq=True, frozen=True)
class DataItem:
    """A data item; its runtime id is the key it is stored under."""

    entries: Mapping[str, EntryData] = field(default_factory=dict)
    image: Optional[Slot] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "entries": pack_map(self.entries, lambda entry: entry.to_payload()),
        }
        if self.image is not None:
            payload["image"] = self.image.to_payload()
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], configurations: Configurations) -> "DataItem":
        types = {e.name: e.type for e in configurations.entries}
        raw_entries = payload.get("entries")
        entries: Dict[str, EntryData] = {}
        if raw_entries is not None:
            for name, raw in unpack_map(raw_entries).items():
                if name not in types:
                    raise ParseError("Unknown entry in data item", str(name))
                entries[name] = entry_from_payload(types[name], raw)
        image = payload.get("image")
        return cls(entries=entries, image=None if image is None else Slot.from_payload(image))


@dataclass(eq=True, frozen=True)
class PoolRecord:
    """Persisted allocation bitmap of one thumbnail pool."""

    name: str
    bitmap: bytes

    def to_payload(self) -> Dict[str, Any]:
        return {"name": self.name, "bitmap": encode_bytes(self.bitmap)}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PoolRecord":
        return cls(name=str(_require(payload, "name")), bitmap=decode_bytes(_require(payload, "bitmap")))


@dataclass(eq=True, frozen=True)
class Argon2Parameters:
    """Password hashing parameters stored next to the encrypted data key."""

    salt: bytes
    time_cost: int = config.ARGON2_TIME_COST
    memory_cost: int = config.ARGON2_MEMORY_COST
    parallelism: int = config.ARGON2_PARALLELISM

    def to_payload(self) -> Dict[str, Any]:
        return {
            "salt": encode_bytes(self.salt),
            "time_cost": self.time_cost,
            "memory_cost": self.memory_cost,
            "parallelism": self.parallelism,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Argon2Parameters":
        return cls(
            salt=decode_bytes(_require(payload, "salt")),
            time_cost=int(payload.get("time_cost", config.ARGON2_TIME_COST)),
            memory_cost=int(payload.get("memory_cost", config.ARGON2_MEMORY_COST)),
            parallelism=int(payload.get("parallelism", config.ARGON2_PARALLELISM)),
        )


@dataclass(eq=False)
class RuntimeProtection:
    """Key material that only exists in memory."""

    key: bytes
    encrypted_key: bytes
    key_nonce: bytes
    argon2: Argon2Parameters

    def __repr__(self) -> str:
        return f"RuntimeProtection(argon2={self.argon2!r})"


@dataclass(eq=False)
class Datasource:
    """The fully decrypted datasource.

    ``runtime`` is never serialized; only :meth:`to_payload` output is
    encrypted and persisted.
    """

    configurations: Configurations
    runtime: RuntimeProtection
    encrypted_counter: int = 0
    data: Dict[str, DataItem] = field(default_factory=dict)
    tags: Optional[Dict[str, List[str]]] = None
    pools: Optional[List[PoolRecord]] = None

    @property
    def has_image(self) -> bool:
        return self.configurations.image_size is not None

    def to_payload(self, *, encrypted_counter: Optional[int] = None) -> Dict[str, Any]:
        counter = self.encrypted_counter if encrypted_counter is None else encrypted_counter
        payload: Dict[str, Any] = {
            "protection": {"encrypted_counter": counter},
            "configurations": self.configurations.to_payload(),
            "data": pack_map(self.data, lambda item: item.to_payload()),
        }
        if self.pools is not None:
            payload["images"] = {"pools": [pool.to_payload() for pool in self.pools]}
        if self.tags:
            payload["tags"] = pack_map(self.tags, list)
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], runtime: RuntimeProtection) -> "Datasource":
        configurations = Configurations.from_payload(_require(payload, "configurations"))
        protection = _require(payload, "protection")
        images = payload.get("images")
        tags = payload.get("tags")
        data = unpack_map(
            _require(payload, "data"),
            lambda raw: DataItem.from_payload(raw, configurations),
        )
        return cls(
            configurations=configurations,
            runtime=runtime,
            encrypted_counter=int(_require(protection, "encrypted_counter")),
            data=data,
            tags=None if tags is None else {k: [str(t) for t in v] for k, v in unpack_map(tags).items()},
            pools=None if images is None else [PoolRecord.from_payload(p) for p in images.get("pools", [])],
        )


@dataclass(eq=True, frozen=True)
class EncryptedDatasource:
    """Persisted projection of a datasource."""

    encrypted_key: bytes
    key_nonce: bytes
    data_nonce: bytes
    argon2: Argon2Parameters
    internals: bytes

    def to_payload(self) -> Dict[str, Any]:
        return {
            "protection": {
                "encrypted_key": encode_bytes(self.encrypted_key),
                "key_nonce": encode_bytes(self.key_nonce),
                "data_nonce": encode_bytes(self.data_nonce),
                "argon2": self.argon2.to_payload(),
            },
            "internals": encode_bytes(self.internals),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "EncryptedDatasource":
        protection = _require(payload, "protection")
        return cls(
            encrypted_key=decode_bytes(_require(protection, "encrypted_key")),
            key_nonce=decode_bytes(_require(protection, "key_nonce")),
            data_nonce=decode_bytes(_require(protection, "data_nonce")),
            argon2=Argon2Parameters.from_payload(_require(protection, "argon2")),
            internals=decode_bytes(_require(payload, "internals")),
        )
