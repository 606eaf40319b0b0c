"""Zip package builder used by the save pipeline.

A package is a flat zip archive holding ``data.json`` and encrypted image
members.  Image members are already compressed and encrypted, so they are
stored without further compression; the JSON record is deflated.
"""
from __future__ import annotations

import io
import logging
import zipfile
from typing import Dict, Protocol

from . import config
from .utils.validation import validate_member_name

LOGGER = logging.getLogger(__name__)

_ALLOWED_EXTENSIONS = (config.THUMBNAIL_EXTENSION, config.IMAGE_EXTENSION, ".json")


class PackageBuilder(Protocol):
    """Collaborator contract consumed by the save pipeline."""

    def add_from_bytes(self, name: str, data: bytes) -> None: ...

    def add_from_text(self, name: str, text: str) -> None: ...

    def finalize(self) -> bytes: ...


class ZipPackageBuilder:
    """Collects members in memory and produces the zip archive bytes."""

    def __init__(self, package_name: str) -> None:
        self.package_name = package_name
        self._members: Dict[str, tuple[bytes, int]] = {}
        self._finalized = False

    def _add(self, name: str, data: bytes, compression: int) -> None:
        if self._finalized:
            raise RuntimeError("Package already finalized")
        validate_member_name(name, _ALLOWED_EXTENSIONS)
        if name in self._members:
            LOGGER.warning("Replacing duplicated package member %s", name)
        self._members[name] = (bytes(data), compression)

    def add_from_bytes(self, name: str, data: bytes) -> None:
        self._add(name, data, zipfile.ZIP_STORED)

    def add_from_text(self, name: str, text: str) -> None:
        self._add(name, text.encode("utf-8"), zipfile.ZIP_DEFLATED)

    def finalize(self) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            for name, (data, compression) in self._members.items():
                archive.writestr(name, data, compress_type=compression)
        self._finalized = True
        LOGGER.debug("Finalized package %s with %d members", self.package_name, len(self._members))
        return buffer.getvalue()
