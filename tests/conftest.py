import io
from typing import Dict, Iterable, List, Optional, Tuple

import pytest
from PIL import Image

from tagvault.controllers import DatabaseStore
from tagvault.crypto import create_protection, encrypt_image, new_argon2_parameters
from tagvault.serialization import (
    Configurations,
    DataItem,
    Datasource,
    EntryConfiguration,
    ImageSize,
    PoolRecord,
    Slot,
    StringEntry,
)
from tagvault.utils.imaging import (
    THUMBNAIL_FORMAT,
    LoadedImage,
    create_empty_pool,
    encode_image,
    load_image,
    to_thumbnail_size,
)

PASSWORD = "correct horse battery staple"
IMAGE_SIZE = ImageSize(width=40, height=30)


def image_bytes(size: Tuple[int, int] = (80, 60), color=(200, 30, 30), fmt: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color=color).save(buffer, format=fmt)
    return buffer.getvalue()


def loaded_image(color=(200, 30, 30)) -> LoadedImage:
    return load_image(image_bytes(color=color), IMAGE_SIZE)


def encrypted_empty_pool(key: bytes) -> bytes:
    pool = create_empty_pool(to_thumbnail_size(IMAGE_SIZE))
    return encrypt_image(encode_image(pool, THUMBNAIL_FORMAT), THUMBNAIL_FORMAT, key)


def item(title: str, image: Optional[Slot] = None) -> DataItem:
    return DataItem(entries={"title": StringEntry(title)}, image=image)


def sequential_names(prefix: str = "pool"):
    counter = iter(range(1_000_000))
    return lambda: f"{prefix}-{next(counter)}"


class MemoryFetcher:
    """Async fetcher serving members from a dict and recording requests."""

    def __init__(self, members: Optional[Dict[str, bytes]] = None) -> None:
        self.members = dict(members or {})
        self.calls: List[str] = []

    async def __call__(self, name: str) -> bytes:
        self.calls.append(name)
        if name not in self.members:
            raise OSError(f"{name} not available")
        return self.members[name]


@pytest.fixture
def argon2_params():
    return new_argon2_parameters(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def protection(argon2_params):
    return create_protection(PASSWORD, argon2_params)


def schema(with_image: bool = True, entries: Iterable[EntryConfiguration] = ()) -> Configurations:
    entries = tuple(entries) or (
        EntryConfiguration(name="title", type="string", unique=True),
        EntryConfiguration(name="color", type="tag", optional=True),
        EntryConfiguration(name="score", type="rating", optional=True),
    )
    return Configurations(
        name="library",
        entries=entries,
        image_size=IMAGE_SIZE if with_image else None,
    )


@pytest.fixture
def datasource(protection):
    return Datasource(configurations=schema(), runtime=protection)


@pytest.fixture
def plain_datasource(protection):
    return Datasource(configurations=schema(with_image=False), runtime=protection)


@pytest.fixture
def persisted_datasource(protection):
    """Datasource whose pool ``stored`` and item ``item-a`` exist only remotely."""
    return Datasource(
        configurations=schema(),
        runtime=protection,
        data={"item-a": item("A", Slot("stored", 0))},
        pools=[PoolRecord(name="stored", bitmap=bytes([1, 0, 0, 0, 0, 0, 0, 0]))],
    )


@pytest.fixture
def store():
    return DatabaseStore(name_factory=sequential_names("id"))


@pytest.fixture
def events(store):
    recorded: Dict[str, list] = {"changed": [], "rekey_required": [], "saved": []}
    store.signals.changed.connect(lambda value: recorded["changed"].append(value))
    store.signals.rekey_required.connect(lambda value: recorded["rekey_required"].append(value))
    store.signals.saved.connect(lambda value: recorded["saved"].append(value))
    return recorded
