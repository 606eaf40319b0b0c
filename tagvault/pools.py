"""Slot allocation for thumbnail pools.

Each pool is tracked by an allocation bitmap of ``rows`` bytes.  Byte ``r``
describes row ``r`` of the pool grid and bit ``c`` (least significant bit
first) is set when the slot at column ``c`` is occupied, so slot
``index = r * columns + c``.  The allocator is UI agnostic and works on
plain bytes so it can be unit tested without any image codec.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from . import config
from .managers.modification import ModificationTracker
from .serialization import PoolRecord, Slot

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolAllocation:
    """Occupancy of one pool in slot order."""

    name: str
    occupied: List[bool]

    def to_dict(self) -> Dict[str, object]:
        return {"name": self.name, "occupied": list(self.occupied)}


class ImagePoolAllocator:
    """Allocate and free thumbnail slots across pools."""

    def __init__(
        self,
        tracker: ModificationTracker,
        *,
        rows: int = config.POOL_ROWS,
        columns: int = config.POOL_COLUMNS,
        name_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        on_pool_created: Optional[Callable[[str], None]] = None,
    ) -> None:
        if rows <= 0 or columns <= 0 or columns > 8:
            raise ValueError("Pool grid must have positive dimensions and at most 8 columns")
        self.rows = rows
        self.columns = columns
        self._tracker = tracker
        self._name_factory = name_factory
        self._on_pool_created = on_pool_created
        self._full_row = (1 << columns) - 1
        self._pools: Dict[str, bytearray] = {}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _check_bitmap(self, name: str, bitmap: bytes) -> None:
        if len(bitmap) != self.rows:
            raise ValueError(f"Bitmap of pool {name} has {len(bitmap)} rows, expected {self.rows}")

    def _first_free_index(self, bitmap: bytearray) -> Optional[int]:
        for row, value in enumerate(bitmap):
            if value & self._full_row == self._full_row:
                continue
            for column in range(self.columns):
                if not value & (1 << column):
                    bitmap[row] = value | (1 << column)
                    return row * self.columns + column
        return None

    def _new_name(self) -> str:
        while True:
            name = self._name_factory()
            if name not in self._pools:
                return name

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def load(self, records: Iterable[PoolRecord]) -> None:
        """Replace the pool directory with persisted records."""
        pools: Dict[str, bytearray] = {}
        for record in records:
            self._check_bitmap(record.name, record.bitmap)
            pools[record.name] = bytearray(record.bitmap)
        self._pools = pools

    def names(self) -> List[str]:
        return list(self._pools)

    def __contains__(self, name: object) -> bool:
        return name in self._pools

    def __len__(self) -> int:
        return len(self._pools)

    def is_allocated(self, slot: Slot) -> bool:
        bitmap = self._pools.get(slot.name)
        if bitmap is None or not 0 <= slot.index < self.rows * self.columns:
            return False
        row, column = divmod(slot.index, self.columns)
        return bool(bitmap[row] & (1 << column))

    def allocate_slot(self) -> Slot:
        """Take the lowest free slot, creating a new pool when all are full."""
        # the bitmap is part of the core record
        self._tracker.mark_core_dirty()
        for name, bitmap in self._pools.items():
            index = self._first_free_index(bitmap)
            if index is not None:
                self._tracker.mark_images_dirty([name])
                return Slot(name=name, index=index)

        name = self._new_name()
        bitmap = bytearray(self.rows)
        bitmap[0] = 1
        self._pools[name] = bitmap
        LOGGER.info("Created thumbnail pool %s", name)
        if self._on_pool_created is not None:
            self._on_pool_created(name)
        self._tracker.mark_images_dirty([name])
        return Slot(name=name, index=0)

    def planned_pools(self, count: int) -> List[Optional[str]]:
        """Pools the next ``count`` allocations would land in, without allocating.

        ``None`` stands for a pool that does not exist yet.
        """
        planned: List[Optional[str]] = []
        for name, bitmap in self._pools.items():
            free = sum(
                1
                for value in bitmap
                for column in range(self.columns)
                if not value & (1 << column)
            )
            planned.extend([name] * free)
            if len(planned) >= count:
                return planned[:count]
        planned.extend([None] * (count - len(planned)))
        return planned

    def free_slot(self, slot: Slot) -> None:
        """Release ``slot``; the pool is kept even when it becomes empty."""
        bitmap = self._pools.get(slot.name)
        if bitmap is None:
            raise KeyError(f"Unknown pool {slot.name}")
        if not 0 <= slot.index < self.rows * self.columns:
            raise ValueError(f"Slot index {slot.index} out of range")
        row, column = divmod(slot.index, self.columns)
        bitmap[row] &= ~(1 << column) & 0xFF
        self._tracker.mark_core_dirty()

    def occupied_count(self) -> int:
        return sum(bin(value).count("1") for bitmap in self._pools.values() for value in bitmap)

    def query_allocation(self) -> List[PoolAllocation]:
        """Return parsed occupancy for every pool, in slot order."""
        allocations: List[PoolAllocation] = []
        for name, bitmap in self._pools.items():
            occupied = [
                bool(value & (1 << column))
                for value in bitmap
                for column in range(self.columns)
            ]
            allocations.append(PoolAllocation(name=name, occupied=occupied))
        return allocations

    def to_records(self) -> List[PoolRecord]:
        return [PoolRecord(name=name, bitmap=bytes(bitmap)) for name, bitmap in self._pools.items()]

    def clear(self) -> None:
        self._pools.clear()
