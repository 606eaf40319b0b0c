import pytest
from PIL import Image

from conftest import sequential_names
from tagvault.managers.modification import ModificationTracker
from tagvault.pools import ImagePoolAllocator
from tagvault.serialization import ImageSize, PoolRecord, Slot
from tagvault.utils.imaging import create_empty_pool, crop_slot, place_into_pool, slot_offset


def make_allocator(**kwargs):
    tracker = ModificationTracker()
    created = []
    allocator = ImagePoolAllocator(
        tracker,
        name_factory=sequential_names(),
        on_pool_created=created.append,
        **kwargs,
    )
    return allocator, tracker, created


def test_first_allocation_creates_pool():
    allocator, tracker, created = make_allocator()

    assert allocator.allocate_slot() == Slot("pool-0", 0)
    assert created == ["pool-0"]
    assert tracker.is_modified()
    assert list(tracker.modified_images()) == ["pool-0"]


def test_allocations_fill_lowest_free_slot_in_order():
    allocator, _, created = make_allocator()

    slots = [allocator.allocate_slot() for _ in range(65)]

    assert [slot.index for slot in slots[:64]] == list(range(64))
    assert {slot.name for slot in slots[:64]} == {"pool-0"}
    assert slots[64] == Slot("pool-1", 0)
    assert created == ["pool-0", "pool-1"]
    assert allocator.occupied_count() == 65


def test_bitmap_is_row_major_lsb_first():
    allocator, _, _ = make_allocator()
    for _ in range(10):
        allocator.allocate_slot()

    (record,) = allocator.to_records()
    assert record.bitmap == bytes([0xFF, 0x03, 0, 0, 0, 0, 0, 0])


def test_free_slot_keeps_pool_and_is_reused():
    allocator, tracker, _ = make_allocator()
    for _ in range(3):
        allocator.allocate_slot()
    tracker.mark_saved()

    allocator.free_slot(Slot("pool-0", 1))

    assert tracker.is_unsaved()
    assert "pool-0" in allocator
    assert not allocator.is_allocated(Slot("pool-0", 1))
    assert allocator.allocate_slot() == Slot("pool-0", 1)

    for index in range(3):
        allocator.free_slot(Slot("pool-0", index))
    assert allocator.occupied_count() == 0
    assert len(allocator) == 1


def test_free_slot_rejects_unknown_slots():
    allocator, _, _ = make_allocator()
    allocator.allocate_slot()
    with pytest.raises(KeyError):
        allocator.free_slot(Slot("missing", 0))
    with pytest.raises(ValueError):
        allocator.free_slot(Slot("pool-0", 64))


def test_load_and_query_allocation():
    allocator, _, _ = make_allocator()
    allocator.load([PoolRecord("a", bytes([0b101, 0, 0, 0, 0, 0, 0, 0])), PoolRecord("b", bytes(8))])

    allocation = allocator.query_allocation()
    assert [entry.name for entry in allocation] == ["a", "b"]
    assert len(allocation[0].occupied) == 64
    assert allocation[0].occupied[:3] == [True, False, True]
    assert allocation[0].to_dict()["name"] == "a"
    assert allocator.allocate_slot() == Slot("a", 1)

    with pytest.raises(ValueError):
        allocator.load([PoolRecord("short", bytes(3))])


def test_planned_pools_does_not_allocate():
    allocator, _, _ = make_allocator(rows=1, columns=2)
    allocator.load([PoolRecord("a", bytes([0b01])), PoolRecord("b", bytes([0b00]))])

    assert allocator.planned_pools(4) == ["a", "b", "b", None]
    assert allocator.occupied_count() == 1


def test_grid_dimensions_are_validated():
    with pytest.raises(ValueError):
        ImagePoolAllocator(ModificationTracker(), columns=9)


def test_place_into_pool_only_touches_its_slot():
    slot_size = ImageSize(4, 3)
    pool = create_empty_pool(slot_size)
    assert pool.size == (32, 24)

    red = Image.new("RGBA", (4, 3), (255, 0, 0, 255))
    first = place_into_pool(pool, 9, red, slot_size)
    blue = Image.new("RGBA", (4, 3), (0, 0, 255, 255))
    second = place_into_pool(first, 10, blue, slot_size)

    assert slot_offset(9, slot_size) == (4, 3)
    assert crop_slot(second, 9, slot_size).tobytes() == red.tobytes()
    assert crop_slot(second, 10, slot_size).tobytes() == blue.tobytes()
    for index in range(64):
        if index not in (9, 10):
            assert crop_slot(second, index, slot_size).tobytes() == crop_slot(pool, index, slot_size).tobytes()
    # the source pool is left untouched
    assert crop_slot(pool, 9, slot_size).getpixel((0, 0)) == (0, 0, 0, 0)


def test_place_into_pool_resizes_and_checks_bounds():
    slot_size = ImageSize(4, 3)
    pool = create_empty_pool(slot_size)
    large = Image.new("RGB", (40, 30), (0, 255, 0))

    updated = place_into_pool(pool, 0, large, slot_size)
    assert crop_slot(updated, 0, slot_size).getpixel((1, 1)) == (0, 255, 0, 255)
    with pytest.raises(ValueError):
        place_into_pool(pool, 64, large, slot_size)
