"""Serialization helpers for tagvault."""

from .datasource import (
    Argon2Parameters,
    Configurations,
    DataItem,
    Datasource,
    EncryptedDatasource,
    EntryConfiguration,
    EntryData,
    ImageSize,
    PoolRecord,
    RatingEntry,
    RuntimeProtection,
    Slot,
    StringEntry,
    TagEntry,
    decode_bytes,
    encode_bytes,
    entry_from_payload,
    pack_map,
    unpack_map,
)

__all__ = [
    "Argon2Parameters",
    "Configurations",
    "DataItem",
    "Datasource",
    "EncryptedDatasource",
    "EntryConfiguration",
    "EntryData",
    "ImageSize",
    "PoolRecord",
    "RatingEntry",
    "RuntimeProtection",
    "Slot",
    "StringEntry",
    "TagEntry",
    "decode_bytes",
    "encode_bytes",
    "entry_from_payload",
    "pack_map",
    "unpack_map",
]
