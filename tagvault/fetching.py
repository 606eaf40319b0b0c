"""Byte fetchers used to load persisted, encrypted images.

The store consumes any coroutine function ``fetch(name) -> bytes`` that
raises on failure.  This module provides the two local implementations used
by the command line and tests, plus the bounded-retry helpers that callers
may layer on top of a flaky fetcher.  The store itself never retries.
"""
from __future__ import annotations

import asyncio
import io
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar, Union

from . import config
from .errors import NetworkFailure, ParseError
from .utils.validation import validate_directory, validate_member_name

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Fetcher = Callable[[str], Awaitable[bytes]]

_MEMBER_EXTENSIONS = (config.THUMBNAIL_EXTENSION, config.IMAGE_EXTENSION, ".json")


@dataclass(frozen=True)
class Attempt(Generic[T]):
    """Outcome of one task run by :func:`attempts_to`."""

    succeeded: bool
    result: Optional[T] = None
    reason: Optional[BaseException] = None


async def attempts_to(
    callables: Sequence[Callable[[], Awaitable[T]]],
    *,
    max_retry: int = config.FETCH_MAX_RETRY,
    retry_delay: float = config.FETCH_RETRY_DELAY_SECS,
) -> List[Attempt[T]]:
    """Run every task concurrently, retrying failed ones.

    Like ``asyncio.gather(..., return_exceptions=True)`` but each failing
    task is relaunched up to ``max_retry`` times, waiting ``retry_delay``
    seconds between rounds.  The result list matches ``callables`` in order.
    """
    outcomes: List[Optional[Attempt[T]]] = [None] * len(callables)
    pending = list(range(len(callables)))
    retries_remaining = max_retry
    while pending:
        results = await asyncio.gather(
            *(callables[index]() for index in pending),
            return_exceptions=True,
        )
        failed: List[int] = []
        for index, result in zip(pending, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                failed.append(index)
                outcomes[index] = Attempt(succeeded=False, reason=result)
            else:
                outcomes[index] = Attempt(succeeded=True, result=result)
        if not failed or retries_remaining <= 0:
            break
        LOGGER.warning("Retrying %d failed task(s), %d retries left", len(failed), retries_remaining)
        retries_remaining -= 1
        pending = failed
        await asyncio.sleep(retry_delay)
    return [outcome for outcome in outcomes if outcome is not None]


def retrying_fetcher(
    fetcher: Fetcher,
    *,
    max_retry: int = config.FETCH_MAX_RETRY,
    retry_delay: float = config.FETCH_RETRY_DELAY_SECS,
) -> Fetcher:
    """Wrap ``fetcher`` so every call is retried on failure."""

    async def fetch(name: str) -> bytes:
        (attempt,) = await attempts_to(
            [lambda: fetcher(name)],
            max_retry=max_retry,
            retry_delay=retry_delay,
        )
        if not attempt.succeeded:
            raise NetworkFailure(f"Failed to fetch {name}", str(attempt.reason)) from attempt.reason
        return attempt.result  # type: ignore[return-value]

    return fetch


class DirectoryFetcher:
    """Fetch package members from an extracted package directory."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = validate_directory(root)

    async def __call__(self, name: str) -> bytes:
        validate_member_name(name, _MEMBER_EXTENSIONS)
        path = self.root / name
        try:
            return path.read_bytes()
        except OSError as exc:
            raise NetworkFailure(f"Failed to fetch {name}", str(exc)) from exc


class ArchiveFetcher:
    """Fetch package members from the bytes of a saved zip package."""

    def __init__(self, archive: bytes) -> None:
        try:
            self._zip = zipfile.ZipFile(io.BytesIO(archive))
        except zipfile.BadZipFile as exc:
            raise ParseError("Invalid package archive", str(exc)) from exc

    def names(self) -> List[str]:
        return self._zip.namelist()

    def read_text(self, name: str) -> str:
        try:
            return self._zip.read(name).decode("utf-8")
        except KeyError as exc:
            raise ParseError("Invalid package archive", f"missing member {name}") from exc
        except UnicodeDecodeError as exc:
            raise ParseError("Invalid package archive", f"{name} is not UTF-8 text") from exc

    async def __call__(self, name: str) -> bytes:
        validate_member_name(name, _MEMBER_EXTENSIONS)
        try:
            return self._zip.read(name)
        except KeyError as exc:
            raise NetworkFailure(f"Failed to fetch {name}", "member not found in package") from exc

    def close(self) -> None:
        self._zip.close()

    def __enter__(self) -> "ArchiveFetcher":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
