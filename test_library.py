"""
Tests for the RuneLibrary boundary.
"""

import sqlite3
import threading
from pathlib import Path

import pytest
import pytest_asyncio

from rune.errors import StorageError
from rune.events import IMAGE_TAGS_UPDATED
from rune.library import RuneLibrary, is_supported_image
from rune.models import AVAILABLE_VL_MODELS, OperationResult, RuntimeState, TagStatus


@pytest.fixture
def sources(tmp_path):
    folder = tmp_path / "incoming"
    folder.mkdir()
    paths = []
    for name in ["sunrise.jpg", "sunset.png", "mountain.png"]:
        path = folder / name
        path.write_bytes(name.encode() * 10)
        paths.append(path)
    return paths


@pytest_asyncio.fixture
async def library(settings, http_client):
    lib = RuneLibrary(settings.library_path, settings=settings, http_client=http_client)
    yield lib
    await lib.close()


def library_files(settings):
    return sorted(p.name for p in Path(settings.library_path).iterdir() if p.name != ".rune")


@pytest.mark.asyncio
async def test_import_and_search_scenario(library, sources, settings):
    imported = await library.import_images(sources)
    assert imported.ok
    assert len(imported.data) == 3

    result = await library.search("sun", limit=10)

    assert result.ok
    assert [item.original_name for item in result.data.items] == ["sunset.png", "sunrise.jpg"]
    assert result.data.next_cursor is None


@pytest.mark.asyncio
async def test_import_copies_files(library, sources, settings, tmp_path):
    unsupported = tmp_path / "notes.txt"
    unsupported.write_text("hello")

    result = await library.import_images([*sources, unsupported, tmp_path / "missing.png"])

    records = result.data
    assert [r.original_name for r in records] == ["sunrise.jpg", "sunset.png", "mountain.png"]
    assert all(r.ai_tag_status == TagStatus.PENDING for r in records)
    assert records[0].added_at < records[1].added_at < records[2].added_at
    assert library_files(settings) == sorted(r.stored_name for r in records)
    for record, source in zip(records, sources):
        assert Path(record.file_path).read_bytes() == source.read_bytes()
        assert record.bytes == source.stat().st_size
        assert record.stored_name == f"{record.id}{source.suffix}"
    assert all(source.exists() for source in sources)


@pytest.mark.asyncio
async def test_import_failure_removes_copies(library, sources, settings, monkeypatch):
    def broken_insert(records):
        raise StorageError("disk full")

    monkeypatch.setattr(library.index, "insert_images", broken_insert)

    result = await library.import_images(sources)

    assert not result.ok
    assert result.code == "storage"
    assert library_files(settings) == []


@pytest.mark.asyncio
async def test_pagination_scenario(library, sources):
    await library.import_images(sources)

    first = await library.search("", limit=2)
    assert len(first.data.items) == 2
    assert first.data.next_cursor is not None

    second = await library.search("", limit=2, cursor=first.data.next_cursor.to_token())
    assert [item.original_name for item in second.data.items] == ["sunrise.jpg"]
    assert second.data.next_cursor is None


@pytest.mark.asyncio
async def test_delete_image(library, sources, settings):
    records = (await library.import_images(sources)).data
    target = records[1]

    result = await library.delete_image(target.id)

    assert result.ok
    assert not Path(target.file_path).exists()
    names = [item.original_name for item in (await library.search("")).data.items]
    assert "sunset.png" not in names
    assert list((Path(settings.library_path) / ".rune" / "trash").iterdir()) == []

    again = await library.delete_image(target.id)
    assert not again.ok
    assert again.code == "not_found"
    assert (await library.search("")).ok


@pytest.mark.asyncio
async def test_delete_with_missing_file(library, sources):
    record = (await library.import_images(sources[:1])).data[0]
    Path(record.file_path).unlink()

    assert (await library.delete_image(record.id)).ok
    assert library.index.get_image_by_id(record.id) is None


@pytest.mark.asyncio
async def test_delete_restores_file_when_rows_survive(library, sources, monkeypatch):
    record = (await library.import_images(sources[:1])).data[0]

    def broken_delete(image_id):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(library.index, "delete_image_by_id", broken_delete)
    result = await library.delete_image(record.id)

    assert not result.ok
    assert result.code == "internal"
    assert Path(record.file_path).exists()
    assert library.index.get_image_by_id(record.id) is not None


@pytest.mark.asyncio
async def test_reads_run_off_the_event_loop(library, sources, monkeypatch):
    record = (await library.import_images(sources[:1])).data[0]
    loop_thread = threading.get_ident()
    threads = []

    def recording(method):
        def wrapper(*args, **kwargs):
            threads.append(threading.get_ident())
            return method(*args, **kwargs)
        return wrapper

    monkeypatch.setattr(library.index, "search", recording(library.index.search))
    monkeypatch.setattr(library.index, "get_image_by_id", recording(library.index.get_image_by_id))

    found = await library.search("sun")
    fetched = await library.get_image(record.id)

    assert [item.id for item in found.data.items] == [record.id]
    assert fetched.data == record
    assert len(threads) == 2
    assert loop_thread not in threads


@pytest.mark.asyncio
async def test_errors_become_results(library, sources):
    record = (await library.import_images(sources[:1])).data[0]

    bad_cursor = await library.search("", cursor="garbage")
    assert (bad_cursor.ok, bad_cursor.code) == (False, "invalid_input")
    assert bad_cursor.error == "Invalid search cursor."

    not_failed = await library.retry_tagging(record.id)
    assert not_failed.code == "invalid_input"
    assert (await library.retry_tagging("missing")).code == "not_found"
    assert (await library.set_current_model("  ")).code == "invalid_input"


@pytest.mark.asyncio
async def test_retry_emits_update(library, sources):
    record = (await library.import_images(sources[:1])).data[0]
    library.index.update_image_tags(record.id, None, TagStatus.FAILED)
    events = []
    unsubscribe = library.subscribe(IMAGE_TAGS_UPDATED, lambda topic, event: events.append(event))

    result = await library.retry_tagging(record.id)
    unsubscribe()

    assert result.ok
    assert result.data.ai_tag_status == TagStatus.PENDING
    assert [(e.id, e.ai_tag_status) for e in events] == [(record.id, TagStatus.PENDING)]


@pytest.mark.asyncio
async def test_runtime_operations_without_binary(library):
    status = await library.get_status()
    assert status.ok
    assert status.data.status == RuntimeState.NOT_INSTALLED

    pulled = await library.download_model("moondream")
    assert (pulled.ok, pulled.code) == (False, "binary_not_installed")

    # An externally started server is still listed
    assert (await library.list_installed_models()).data == ["qwen2.5vl:3b"]
    assert (await library.cancel_model_download()).data is False
    assert (await library.get_available_models()).data == AVAILABLE_VL_MODELS
    tagging = await library.get_tagging_status()
    assert tagging.ok and not tagging.data.is_processing


def test_operation_result_mapping():
    assert OperationResult.success([1]).data == [1]
    unexpected = OperationResult.failure(KeyError("secret internals"))
    assert (unexpected.ok, unexpected.code) == (False, "internal")
    assert "secret" not in unexpected.error
    storage = OperationResult.failure(StorageError("sqlite detail"))
    assert (storage.code, storage.error) == ("storage", "The library index cannot be opened.")


def test_is_supported_image():
    assert is_supported_image("a.JPG")
    assert is_supported_image("/x/y.webp")
    assert not is_supported_image("a.txt")
    assert not is_supported_image("png")
