import asyncio
import json
from datetime import datetime, timezone

from core.app_store import AppStore
from core.defaults import build_default_data, build_default_payload
from core.exceptions import StorageError
from core.normalization import NORMALIZED_VERSION, SHAPE_LEGACY, SHAPE_NORMALIZED, encode_payload
from core.persistence import (
    CORRUPTED_NOTICE,
    LOAD_FAILED_NOTICE,
    MigrationStatus,
    PersistenceController,
    ProgressCoalescer,
)
from core.storage import JsonFileStore

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FlakyStore(JsonFileStore):
    """First `failures` writes raise StorageError."""

    def __init__(self, path, failures=1):
        super().__init__(path)
        self.failures = failures

    def write(self, payload):
        if self.failures > 0:
            self.failures -= 1
            raise StorageError("disk full", str(self.path))
        super().write(payload)


class BrokenOnceStore(JsonFileStore):
    """First write fails with an error that is not a StorageError."""

    def __init__(self, path):
        super().__init__(path)
        self.broken = True

    def write(self, payload):
        if self.broken:
            self.broken = False
            raise RuntimeError("encoder blew up")
        super().write(payload)


def _controller(storage, debounce=0.01):
    store = AppStore(clock=lambda: NOW)
    return store, PersistenceController(store, storage, debounce_seconds=debounce)


def _rename_user(name):
    def mutate(data, now):
        data.user["name"] = name
    return mutate


def test_first_load_uses_defaults_and_saves(tmp_path):
    storage = JsonFileStore(tmp_path / "finish_os_data.json")
    store, controller = _controller(storage)

    async def scenario():
        await controller.load()
        await controller.flush()

    asyncio.run(scenario())

    assert controller.loaded is True
    assert [g.name for g in store.data.goals] == ["Websites", "Offer", "Game"]
    assert controller.notice is None
    saved = storage.read()
    assert [p["name"] for p in saved["pillars"]] == ["Websites", "Offer", "Game"]


def test_changes_before_load_are_not_saved(tmp_path):
    storage = JsonFileStore(tmp_path / "finish_os_data.json")
    store, controller = _controller(storage)

    async def scenario():
        store.update(_rename_user("early"))
        assert controller.pending is False
        ok = await controller.save_now()
        assert ok is False

    asyncio.run(scenario())
    assert not storage.path.exists()


def test_rapid_changes_coalesce_into_one_save(tmp_path):
    storage = JsonFileStore(tmp_path / "finish_os_data.json")
    storage.write(encode_payload(build_default_data(NOW), SHAPE_NORMALIZED))
    store, controller = _controller(storage, debounce=0.05)

    async def scenario():
        await controller.load()
        assert controller.migration_status == MigrationStatus.SKIPPED
        for name in ("a", "b", "c"):
            store.update(_rename_user(name))
        assert controller.pending is True
        assert controller.save_count == 0
        await asyncio.sleep(0.3)
        await controller.flush()

    asyncio.run(scenario())

    assert controller.save_count == 1
    saved = storage.read()
    assert saved["user"]["name"] == "c"
    assert saved["_version"] == NORMALIZED_VERSION


def test_failed_save_is_retried(tmp_path):
    storage = FlakyStore(tmp_path / "finish_os_data.json")
    storage.path.write_text(json.dumps(encode_payload(build_default_data(NOW), SHAPE_LEGACY)), encoding="utf-8")
    store, controller = _controller(storage, debounce=10)

    async def scenario():
        await controller.load()
        store.update(_rename_user("after failure"))
        assert await controller.save_now() is False
        assert controller.last_error is not None
        await controller.flush()

    asyncio.run(scenario())

    assert controller.save_count == 1
    assert controller.last_error is None
    assert storage.read()["user"]["name"] == "after failure"


def test_unexpected_save_error_on_timer_is_logged_and_retried(tmp_path, caplog):
    storage = BrokenOnceStore(tmp_path / "finish_os_data.json")
    storage.path.write_text(json.dumps(encode_payload(build_default_data(NOW), SHAPE_LEGACY)), encoding="utf-8")
    store, controller = _controller(storage)

    async def scenario():
        await controller.load()
        store.update(_rename_user("after crash"))
        await asyncio.sleep(0.1)
        assert controller.last_error == "RuntimeError: encoder blew up"
        assert controller.save_count == 0
        await controller.flush()

    asyncio.run(scenario())

    assert "Unexpected save failure" in caplog.text
    assert controller.save_count == 1
    assert storage.read()["user"]["name"] == "after crash"


def test_unreadable_blob_falls_back_to_defaults(tmp_path):
    path = tmp_path / "finish_os_data.json"
    path.write_text("{not json", encoding="utf-8")
    storage = JsonFileStore(path)
    store, controller = _controller(storage)

    async def scenario():
        await controller.load()
        await controller.flush()

    asyncio.run(scenario())

    assert controller.notice == LOAD_FAILED_NOTICE
    assert len(store.data.goals) == 3
    assert list(tmp_path.glob("finish_os_data.corrupt_*.json"))
    assert storage.read()["pillars"]


def test_inconsistent_normalized_blob_keeps_data_as_legacy(tmp_path):
    storage = JsonFileStore(tmp_path / "finish_os_data.json")
    blob = encode_payload(build_default_data(NOW), SHAPE_NORMALIZED)
    blob["ids"]["allTaskIds"].append(999)
    storage.write(blob)
    store, controller = _controller(storage)

    async def scenario():
        await controller.load()
        store.update(_rename_user("after"))
        await controller.flush()

    asyncio.run(scenario())

    assert controller.notice == CORRUPTED_NOTICE
    assert controller.shape == SHAPE_LEGACY
    assert controller.migration_status == MigrationStatus.ERROR
    assert [g.name for g in store.data.goals] == ["Websites", "Offer", "Game"]
    assert sum(len(g.tasks) for g in store.data.goals) == 10
    assert list(tmp_path.glob("finish_os_data.corrupt_*.json"))
    saved = storage.read()
    assert [p["name"] for p in saved["pillars"]] == ["Websites", "Offer", "Game"]
    assert saved["user"]["name"] == "after"


def test_legacy_blob_is_migrated_with_backup(tmp_path):
    storage = JsonFileStore(tmp_path / "finish_os_data.json")
    storage.write(build_default_payload())
    store, controller = _controller(storage)

    async def scenario():
        await controller.load()
        await controller.flush()

    asyncio.run(scenario())

    assert controller.migration_status == MigrationStatus.COMPLETED
    assert controller.shape == SHAPE_NORMALIZED
    backups = list(tmp_path.glob("finish_os_data.pre_migration_*.json"))
    assert len(backups) == 1
    assert json.loads(backups[0].read_text(encoding="utf-8"))["version"] == "1.0.0-legacy"
    assert storage.read()["_version"] == NORMALIZED_VERSION


def test_concurrent_loads_share_one_result(tmp_path):
    storage = JsonFileStore(tmp_path / "finish_os_data.json")
    store, controller = _controller(storage)

    async def scenario():
        first, second = await asyncio.gather(controller.load(), controller.load())
        await controller.flush()
        return first, second

    first, second = asyncio.run(scenario())
    assert first is second


def test_import_payload_replaces_state_and_switches_shape(tmp_path):
    storage = JsonFileStore(tmp_path / "finish_os_data.json")
    store, controller = _controller(storage)
    incoming = encode_payload(build_default_data(NOW), SHAPE_NORMALIZED)
    incoming["entities"]["pillars"]["1"]["name"] = "Imported"

    async def scenario():
        await controller.load()
        await controller.import_payload(incoming)
        await controller.flush()

    asyncio.run(scenario())

    assert controller.shape == SHAPE_NORMALIZED
    assert store.data.goals[0].name == "Imported"
    assert storage.read()["entities"]["pillars"]["1"]["name"] == "Imported"


def test_coalescer_without_loop_applies_immediately():
    applied = []
    coalescer = ProgressCoalescer(applied.append, delay_seconds=10)

    coalescer.submit(3, 100)

    assert applied == [{3: 100}]
    assert coalescer.pending == {}


def test_coalescer_keeps_last_value_per_task():
    applied = []
    coalescer = ProgressCoalescer(applied.append, delay_seconds=0.02)

    async def scenario():
        coalescer.submit(3, 100)
        coalescer.submit(3, 0)
        coalescer.submit(4, 100)
        assert coalescer.pending == {3: 0, 4: 100}
        await asyncio.sleep(0.2)

    asyncio.run(scenario())
    assert applied == [{3: 0, 4: 100}]


def test_import_of_inconsistent_normalized_blob_keeps_entities(tmp_path):
    storage = JsonFileStore(tmp_path / "finish_os_data.json")
    store, controller = _controller(storage)
    incoming = encode_payload(build_default_data(NOW), SHAPE_NORMALIZED)
    incoming["entities"]["pillars"]["2"]["name"] = "Imported"
    incoming["ids"]["ideaIds"].append("ghost")

    async def scenario():
        await controller.load()
        await controller.import_payload(incoming)
        await controller.flush()

    asyncio.run(scenario())

    assert controller.notice == CORRUPTED_NOTICE
    assert controller.shape == SHAPE_LEGACY
    assert [g.name for g in store.data.goals] == ["Websites", "Imported", "Game"]
    assert storage.read()["pillars"][1]["name"] == "Imported"
