import logging

import pytest
import pytest_asyncio

from conftest import PASSWORD, loaded_image
from tagvault import config, main
from tagvault.placement import PlacementRequest
from tagvault.serialization import DataItem, StringEntry, TagEntry


@pytest.fixture
def isolated_logger(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "LOG_PATH", str(tmp_path / "logs" / "tagvault.log"))
    logger = logging.getLogger(main.LOGGER_NAME)
    yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest_asyncio.fixture
async def saved_package(store, datasource, tmp_path):
    store.build_runtime_database(datasource).unwrap()
    patch = store.prepare_tag_registration()
    requests = []
    for index, title in enumerate(["A", "B", "C"]):
        entries = {
            "title": StringEntry(title),
            "color": TagEntry(tuple(patch.register("color", [title.lower()]))),
        }
        requests.append(PlacementRequest(DataItem(entries=entries), images=loaded_image((index * 50, 0, 0))))
    assert await store.place_items(requests) == []
    outcome = (await store.save_all()).unwrap()
    path = tmp_path / config.FULL_PACKAGE_NAME
    path.write_bytes(outcome.archive)
    return path


def test_configure_logging_is_idempotent(isolated_logger, tmp_path):
    logger = main.configure_logging()
    again = main.configure_logging()

    assert logger is again is isolated_logger
    assert len(logger.handlers) == 2
    assert not logger.propagate
    assert (tmp_path / "logs" / "tagvault.log").exists()


@pytest.mark.asyncio
async def test_inspect_package_reports_statistics(saved_package):
    report = main.inspect_package(saved_package.read_bytes(), PASSWORD)

    assert report["name"] == "library"
    assert report["items"] == 3
    assert report["tags"] == {"color": 3}
    assert report["pools"] == 1
    assert report["occupied_slots"] == 3
    assert report["encrypted_counter"] == 5
    assert report["members"] == 5


@pytest.mark.asyncio
async def test_main_prints_report(saved_package, isolated_logger, monkeypatch, capsys):
    monkeypatch.setenv(main.PASSWORD_ENV, PASSWORD)

    assert main.main(["inspect", str(saved_package)]) == 0

    output = capsys.readouterr().out
    assert "Items: 3" in output
    assert "Thumbnail pools: 1 (3 slots occupied)" in output


@pytest.mark.asyncio
async def test_main_rejects_wrong_password(saved_package, isolated_logger, monkeypatch, capsys):
    monkeypatch.setenv(main.PASSWORD_ENV, "wrong password")

    assert main.main(["inspect", str(saved_package)]) == 1
    assert "Items:" not in capsys.readouterr().out


def test_main_reports_missing_package(isolated_logger, monkeypatch, tmp_path):
    monkeypatch.setenv(main.PASSWORD_ENV, PASSWORD)

    assert main.main(["inspect", str(tmp_path / "absent.zip")]) == 1
