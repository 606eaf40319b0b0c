"""Error taxonomy and the explicit result type returned by the store.

Internal layers raise subclasses of :class:`TagVaultError`.  Public
operations of :class:`tagvault.controllers.DatabaseStore` never raise across
the boundary; they convert failures into a :class:`Result` carrying a short
machine-checkable ``kind`` plus a human-readable detail string.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class TagVaultError(Exception):
    """Base class for all failures raised by tagvault."""

    kind = "error"

    def __init__(self, message: str, detail: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message


class ParseError(TagVaultError):
    """Malformed JSON, URL or payload structure."""

    kind = "parse_error"


class AuthenticationFailure(TagVaultError):
    """Wrong password or corrupted ciphertext."""

    kind = "authentication_failure"


class NetworkFailure(TagVaultError):
    """A fetch collaborator could not provide the requested bytes."""

    kind = "network_failure"


class ValidationFailure(TagVaultError):
    """Duplicated unique value, unknown reference or malformed entry data."""

    kind = "validation_failure"


class QuotaExceeded(TagVaultError):
    """The data key reached its encryption-use limit and must be rotated."""

    kind = "quota_exceeded"


class ImageCodecFailure(TagVaultError):
    """An image could not be decoded or encoded."""

    kind = "image_codec_failure"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success value or failure, never both."""

    value: Optional[T] = None
    error: Optional[TagVaultError] = None

    @classmethod
    def ok(cls, value: Any = None) -> "Result[Any]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: TagVaultError) -> "Result[Any]":
        return cls(error=error)

    @property
    def is_ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> Optional[str]:
        return None if self.error is None else self.error.kind

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


__all__ = [
    "TagVaultError",
    "ParseError",
    "AuthenticationFailure",
    "NetworkFailure",
    "ValidationFailure",
    "QuotaExceeded",
    "ImageCodecFailure",
    "Result",
]
