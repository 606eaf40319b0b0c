"""Controller layer exposing the datasource store to front ends."""

from .database import DatabaseStore, StoreSnapshot

__all__ = [
    "DatabaseStore",
    "StoreSnapshot",
]
