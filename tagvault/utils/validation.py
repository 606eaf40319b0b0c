"""Input validation helpers for package members and fetch locations."""
from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import Iterable, Union
from urllib.parse import urlparse

from ..errors import ParseError


def _has_url_scheme(path_str: str) -> bool:
    """Return True if *path_str* looks like a URL with a scheme.

    Single-letter schemes such as ``"C"`` are treated as drive letters on
    Windows and therefore ignored.
    """
    parsed = urlparse(path_str)
    return bool(parsed.scheme and len(parsed.scheme) > 1)


def validate_member_name(name: str, allowed_exts: Iterable[str]) -> str:
    """Validate the name of an archive member.

    Members are flat: the name must not contain directory components, must
    not look like a URL and must carry one of the allowed extensions.
    Returns the name unchanged.
    """
    if not name or _has_url_scheme(name):
        raise ParseError("Invalid member name", repr(name))
    if "\\" in name or PurePosixPath(name).name != name or name in {".", ".."}:
        raise ParseError("Member name must not contain directories", repr(name))
    suffix = PurePosixPath(name).suffix.lower()
    if suffix not in {ext.lower() for ext in allowed_exts}:
        raise ParseError("Unsupported member extension", suffix or repr(name))
    return name


def validate_directory(path: Union[str, Path]) -> Path:
    """Validate a local directory used as an image source.

    The path must not include a URL scheme and must point to an existing
    directory.  Returns the resolved ``Path``.
    """
    path_str = str(path)
    if _has_url_scheme(path_str):
        raise ParseError("URLs are not allowed", path_str)

    p = Path(path_str).expanduser()
    try:
        p = p.resolve(strict=True)
    except FileNotFoundError as exc:
        raise ParseError("Directory does not exist", path_str) from exc

    if not p.is_dir():
        raise ParseError("Not a directory", path_str)
    return p
