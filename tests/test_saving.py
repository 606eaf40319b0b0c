"""Save pipeline behaviour through the database store."""
from __future__ import annotations

import asyncio
import io
import logging
import zipfile

import pytest

from conftest import PASSWORD, MemoryFetcher, encrypted_empty_pool, image_bytes, item, loaded_image, sequential_names
from tagvault import config
from tagvault.controllers import DatabaseStore
from tagvault.crypto import encrypt_image, open_datasource, regenerate_data_key
from tagvault.fetching import ArchiveFetcher
from tagvault.managers.saving import save_metrics
from tagvault.placement import PlacementRequest
from tagvault.serialization import Slot
from tagvault.utils.imaging import IMAGE_FORMAT, decode_image


@pytest.fixture(autouse=True)
def reset_metrics():
    save_metrics.counters.clear()
    save_metrics.durations.clear()
    yield


async def populated(store, datasource, count=2):
    store.build_runtime_database(datasource).unwrap()
    failures = await store.place_items([
        PlacementRequest(item(f"title-{index}"), images=loaded_image((index * 40, 10, 10)))
        for index in range(count)
    ])
    assert failures == []


def members(archive):
    with zipfile.ZipFile(io.BytesIO(archive)) as handle:
        return sorted(handle.namelist())


@pytest.mark.asyncio
async def test_save_all_round_trip(store, datasource, events, caplog):
    await populated(store, datasource)
    runtime_ids = sorted(store.snapshot().items)
    pool_name = store.query_pool_allocation()[0].name
    caplog.set_level(logging.INFO)

    result = await store.save_all()

    outcome = result.unwrap()
    assert not outcome.deferred
    assert outcome.package_name == config.FULL_PACKAGE_NAME
    assert outcome.messages == 4
    assert members(outcome.archive) == sorted(
        ["data.json", f"{pool_name}.png", *(f"{runtime_id}.webp" for runtime_id in runtime_ids)]
    )
    assert not store.is_unsaved()
    assert store.snapshot().encrypted_counter == 4
    assert events["saved"] == [config.FULL_PACKAGE_NAME]
    assert save_metrics.counters["success"] == 1
    assert any("cid" in record.__dict__ for record in caplog.records)

    with ArchiveFetcher(outcome.archive) as fetcher:
        restored = open_datasource(fetcher.read_text(config.DATA_MEMBER_NAME), PASSWORD)
        assert restored.encrypted_counter == 4
        reopened = DatabaseStore()
        reopened.build_runtime_database(restored, fetcher).unwrap()
        assert reopened.snapshot().items == store.snapshot().items
        assert reopened.query_pool_allocation()[0].occupied[:3] == [True, True, False]
        for runtime_id in runtime_ids:
            thumbnail = (await reopened.get_thumbnail(runtime_id)).unwrap()
            assert decode_image(thumbnail).size == (4, 3)
            image = (await reopened.get_image(runtime_id)).unwrap()
            assert image == (await store.get_image(runtime_id)).unwrap()


@pytest.mark.asyncio
async def test_save_delta_only_contains_modified_images(store, persisted_datasource):
    fetcher = MemoryFetcher({"stored.png": encrypted_empty_pool(persisted_datasource.runtime.key)})
    store.build_runtime_database(persisted_datasource, fetcher).unwrap()
    assert await store.place_items([PlacementRequest(item("B"), images=loaded_image())]) == []
    (new_id,) = [runtime_id for runtime_id in store.snapshot().items if runtime_id != "item-a"]
    assert store.snapshot().items[new_id].image == Slot("stored", 1)

    outcome = (await store.save_delta()).unwrap()

    assert outcome.package_name == config.DELTA_PACKAGE_NAME
    assert members(outcome.archive) == sorted(["data.json", "stored.png", f"{new_id}.webp"])
    assert fetcher.calls == ["stored.png"]


@pytest.mark.asyncio
async def test_save_without_images_counts_one_message(store, plain_datasource):
    store.build_runtime_database(plain_datasource).unwrap()
    assert await store.place_items([PlacementRequest(item("A"))]) == []

    outcome = (await store.save_all()).unwrap()

    assert outcome.messages == 1
    assert members(outcome.archive) == ["data.json"]
    assert store.is_modified() and not store.is_unsaved()


@pytest.mark.asyncio
async def test_quota_defers_save(store, datasource, events):
    datasource.encrypted_counter = config.ENCRYPT_MESSAGE_LIMIT - 1
    await populated(store, datasource, count=1)

    result = await store.save_delta()

    outcome = result.unwrap()
    assert outcome.deferred
    assert outcome.archive is None
    assert events["rekey_required"] == [3]
    assert events["saved"] == []
    assert store.encrypts_to_be_done == 3
    assert store.snapshot().encrypted_counter == config.ENCRYPT_MESSAGE_LIMIT - 1
    assert store.is_unsaved()
    assert save_metrics.counters["deferred"] == 1


@pytest.mark.asyncio
async def test_failed_image_load_aborts_without_mutation(persisted_datasource):
    built = []

    class RecordingBuilder:
        def __init__(self, name):
            built.append(name)

    store = DatabaseStore(builder_factory=RecordingBuilder, name_factory=sequential_names("id"))
    store.build_runtime_database(persisted_datasource, MemoryFetcher()).unwrap()
    before = store.snapshot()

    result = await store.save_all()

    assert not result.is_ok
    assert result.kind == "network_failure"
    assert built == []
    after = store.snapshot()
    assert after.encrypted_counter == before.encrypted_counter
    assert after.versions == before.versions
    assert save_metrics.counters["failure"] == 1


@pytest.mark.asyncio
async def test_rotated_key_reencrypts_everything(store, datasource):
    await populated(store, datasource)
    first = (await store.save_all()).unwrap()
    runtime = datasource.runtime
    replacement = regenerate_data_key(PASSWORD, runtime.argon2)

    store.update_data_key(replacement.encrypted_key, replacement.key_nonce, replacement.key).unwrap()

    snapshot = store.snapshot()
    assert snapshot.rotation_staged
    assert snapshot.encrypted_counter == 0
    assert store.is_unsaved()

    outcome = (await store.save_delta()).unwrap()
    assert members(outcome.archive) == members(first.archive)
    with ArchiveFetcher(outcome.archive) as fetcher:
        restored = open_datasource(fetcher.read_text(config.DATA_MEMBER_NAME), PASSWORD)
        assert restored.runtime.key == replacement.key
        reopened = DatabaseStore()
        reopened.build_runtime_database(restored, fetcher).unwrap()
        for runtime_id in restored.data:
            assert (await reopened.get_image(runtime_id)).is_ok


@pytest.mark.asyncio
async def test_removed_items_are_skipped_by_delta(store, datasource):
    await populated(store, datasource)
    victim = sorted(store.snapshot().items)[0]

    assert store.remove_items([victim]).unwrap() == 1
    assert store.query_pool_allocation()[0].occupied[:2].count(True) == 1
    assert store.remove_items(["missing"]).kind == "validation_failure"

    outcome = (await store.save_delta()).unwrap()
    assert f"{victim}.webp" not in members(outcome.archive)
    assert outcome.messages == 3


class GatedFetcher(MemoryFetcher):
    """Holds every fetch until ``release`` is set."""

    def __init__(self, members):
        super().__init__(members)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, name):
        self.started.set()
        await self.release.wait()
        return await super().__call__(name)


@pytest.mark.asyncio
async def test_key_rotation_during_save_aborts_it(store, persisted_datasource):
    key = persisted_datasource.runtime.key
    fetcher = GatedFetcher({
        "stored.png": encrypted_empty_pool(key),
        "item-a.webp": encrypt_image(image_bytes((40, 30), fmt="WEBP"), IMAGE_FORMAT, key),
    })
    store.build_runtime_database(persisted_datasource, fetcher).unwrap()
    replacement = regenerate_data_key(PASSWORD, persisted_datasource.runtime.argon2)

    pending = asyncio.create_task(store.save_all())
    await fetcher.started.wait()
    store.update_data_key(replacement.encrypted_key, replacement.key_nonce, replacement.key).unwrap()
    fetcher.release.set()
    result = await pending

    assert result.kind == "validation_failure"
    assert store.snapshot().encrypted_counter == 0
    assert store.is_unsaved()
    assert save_metrics.counters["failure"] == 1

    outcome = (await store.save_all()).unwrap()
    assert store.snapshot().encrypted_counter == 3
    with ArchiveFetcher(outcome.archive) as package:
        restored = open_datasource(package.read_text(config.DATA_MEMBER_NAME), PASSWORD)
        assert restored.runtime.key == replacement.key
        assert restored.encrypted_counter == 3


@pytest.mark.asyncio
async def test_rewrapped_key_only_dirties_the_record(store, datasource):
    await populated(store, datasource)
    await store.save_all()
    before = store.snapshot()
    runtime = datasource.runtime
    rewrapped = regenerate_data_key(PASSWORD, runtime.argon2)

    store.update_data_key(rewrapped.encrypted_key, rewrapped.key_nonce).unwrap()

    after = store.snapshot()
    assert not after.rotation_staged
    assert after.encrypted_counter == before.encrypted_counter
    assert after.versions["current"].core == before.versions["current"].core + 1
    assert after.versions["current"].images == before.versions["current"].images
    assert runtime.encrypted_key == rewrapped.encrypted_key
    assert runtime.key_nonce == rewrapped.key_nonce
    assert store.is_unsaved()
