import json
from datetime import datetime, timezone

import pytest

from core.exceptions import StorageError
from core.normalization import NORMALIZED_VERSION, normalize
from core.storage import (
    EXPORT_VERSION,
    JsonFileStore,
    export_to_file,
    import_from_file,
    unwrap_import,
    wrap_export,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _legacy():
    return {"user": {}, "settings": {}, "pillars": [{"id": 1, "name": "A", "completion": 0, "tasks": []}]}


def test_read_missing_returns_none(tmp_path):
    assert JsonFileStore(tmp_path / "data.json").read() is None


def test_write_then_read(tmp_path):
    store = JsonFileStore(tmp_path / "nested" / "data.json")
    store.write(_legacy())
    assert store.read() == _legacy()
    assert not (tmp_path / "nested" / "data.json.tmp").exists()


def test_read_invalid_json_raises(tmp_path):
    path = tmp_path / "data.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(StorageError):
        JsonFileStore(path).read()


def test_read_non_object_raises(tmp_path):
    path = tmp_path / "data.json"
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(StorageError):
        JsonFileStore(path).read()


def test_backup_is_timestamped_copy(tmp_path):
    store = JsonFileStore(tmp_path / "finish_os_data.json")
    assert store.backup("corrupt", NOW) is None

    store.write(_legacy())
    target = store.backup("corrupt", NOW)

    assert target.name == "finish_os_data.corrupt_20260310_120000.json"
    assert json.loads(target.read_text(encoding="utf-8")) == _legacy()


def test_wrap_export_version_follows_shape():
    assert wrap_export(_legacy(), NOW) == {
        "exportedAt": "2026-03-10T12:00:00.000Z",
        "version": EXPORT_VERSION,
        "data": _legacy(),
    }
    assert wrap_export(normalize(_legacy()), NOW)["version"] == NORMALIZED_VERSION


def test_unwrap_import_accepts_wrapped_and_bare():
    assert unwrap_import(wrap_export(_legacy(), NOW)) == _legacy()
    assert unwrap_import(_legacy()) == _legacy()
    with pytest.raises(StorageError):
        unwrap_import(["not", "an", "object"])


def test_export_import_file(tmp_path):
    path = export_to_file(_legacy(), tmp_path / "export" / "backup.json", NOW)
    assert import_from_file(path) == _legacy()

    broken = tmp_path / "broken.json"
    broken.write_text("nope", encoding="utf-8")
    with pytest.raises(StorageError):
        import_from_file(broken)
