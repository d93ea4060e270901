import copy
from datetime import datetime, timezone

import pytest

from core.defaults import build_default_data, build_default_payload
from core.exceptions import MigrationError
from core.models import GoalType, TaskStatus
from core.normalization import (
    NORMALIZED_VERSION,
    SHAPE_LEGACY,
    SHAPE_NORMALIZED,
    SHAPE_UNKNOWN,
    apply_defaults,
    create_backup,
    decode_payload,
    denormalize,
    detect_shape,
    encode_payload,
    normalize,
    perform_migration,
    restore_backup,
    upgrade_task,
    validate_normalized,
)
from core.utils import to_iso

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _legacy():
    return {
        "user": {"name": "Owner"},
        "settings": {"theme": "dark"},
        "pillars": [
            {"id": 1, "name": "Websites", "completion": 100, "tasks": [
                {"id": 11, "name": "Main site", "progress": 100},
                {"id": 12, "name": "Quiz page", "progress": 40},
            ]},
            {"id": 2, "name": "Offer", "completion": 0, "tasks": []},
        ],
        "ideas": [{"id": "i1", "title": "Podcast"}],
        "onboardingSeen": True,
    }


def test_detect_shape():
    assert detect_shape(_legacy()) == SHAPE_LEGACY
    assert detect_shape(normalize(_legacy())) == SHAPE_NORMALIZED
    assert detect_shape({"foo": 1}) == SHAPE_UNKNOWN
    assert detect_shape([]) == SHAPE_UNKNOWN


def test_normalize_builds_entity_tables():
    normalized = normalize(_legacy())

    assert normalized["_version"] == NORMALIZED_VERSION
    assert set(normalized["entities"]["pillars"]) == {"1", "2"}
    assert set(normalized["entities"]["tasks"]) == {"11", "12"}
    assert "tasks" not in normalized["entities"]["pillars"]["1"]
    assert normalized["ids"]["pillarIds"] == [1, 2]
    assert normalized["ids"]["allTaskIds"] == [11, 12]
    assert normalized["ids"]["pillarTaskIds"] == {"1": [11, 12], "2": []}
    assert normalized["ids"]["ideaIds"] == ["i1"]
    assert normalized["onboardingSeen"] is True
    assert "pillars" not in normalized


def test_normalize_then_denormalize_restores_legacy():
    legacy = _legacy()
    assert denormalize(normalize(legacy)) == legacy


def test_normalize_does_not_modify_input():
    legacy = _legacy()
    snapshot = copy.deepcopy(legacy)
    normalize(legacy)
    assert legacy == snapshot


def test_validate_normalized_reports_count_mismatch():
    normalized = normalize(_legacy())
    normalized["ids"]["pillarIds"].append(99)

    errors = validate_normalized(normalized)

    assert "Pillar count mismatch: entities(2) vs ids(3)" in errors
    assert "Missing pillar entity for ID: 99" in errors


def test_validate_normalized_reports_missing_task_and_user():
    normalized = normalize(_legacy())
    del normalized["entities"]["tasks"]["12"]
    del normalized["user"]

    errors = validate_normalized(normalized)

    assert "Task count mismatch: entities(1) vs ids(2)" in errors
    assert "Missing task entity for pillar 1: 12" in errors
    assert "Missing user data" in errors


def test_corrupt_normalized_blob_is_read_as_legacy():
    normalized = normalize(_legacy())
    normalized["ids"]["pillarIds"].append(99)

    decoded = decode_payload(normalized, NOW)

    assert decoded.corrupted is True
    assert decoded.shape == SHAPE_LEGACY
    assert decoded.source_shape == SHAPE_NORMALIZED
    assert decoded.errors
    assert [g.id for g in decoded.data.goals] == [1, 2]


def test_corrupt_normalized_blob_keeps_goals_tasks_and_ideas():
    normalized = normalize(_legacy())
    normalized["ids"]["allTaskIds"].append(999)

    decoded = decode_payload(normalized, NOW)

    assert decoded.corrupted is True
    assert [g.name for g in decoded.data.goals] == ["Websites", "Offer"]
    assert [t.id for t in decoded.data.goals[0].tasks] == [11, 12]
    assert [i.title for i in decoded.data.ideas] == ["Podcast"]
    assert decoded.data.user["name"] == "Owner"


def test_denormalize_then_normalize_restores_normalized():
    normalized = normalize(_legacy())
    assert normalize(denormalize(normalized)) == normalized


def test_migration_refused_keeps_legacy():
    legacy = _legacy()
    del legacy["user"]

    result = perform_migration(legacy, NOW)

    assert result.success is False
    assert "Missing user data" in result.errors
    assert result.data is None


def test_decode_legacy_with_invalid_pillar_stays_legacy():
    legacy = _legacy()
    legacy["pillars"][1]["name"] = ""

    decoded = decode_payload(legacy, NOW)

    assert decoded.shape == SHAPE_LEGACY
    assert decoded.migration.success is False
    assert "Pillar 1 missing name" in decoded.errors
    assert len(decoded.data.goals) == 2


def test_decode_legacy_migrates_to_normalized():
    decoded = decode_payload(_legacy(), NOW)

    assert decoded.shape == SHAPE_NORMALIZED
    assert decoded.migration.success is True
    assert decoded.migration.backup["data"]["pillars"][0]["name"] == "Websites"
    assert decoded.data.extras == {"onboardingSeen": True}


def test_backup_restore():
    legacy = _legacy()
    backup = create_backup(legacy, NOW)
    assert restore_backup(backup) == legacy

    with pytest.raises(MigrationError):
        restore_backup({"version": "0.1", "data": {}})


def test_upgrade_task_from_done_flag():
    done = upgrade_task({"name": "Old", "done": True}, NOW)
    assert done["progress"] == 100
    assert done["status"] == TaskStatus.DONE.value
    assert done["completedAt"] == to_iso(NOW)
    assert done["progressHistory"] == [{"progress": 100, "timestamp": to_iso(NOW)}]
    assert "done" not in done

    open_task = upgrade_task({"name": "Old", "done": False}, NOW)
    assert open_task["progress"] == 0
    assert "progressHistory" not in open_task


def test_upgrade_task_seeds_history_from_last_update():
    task = upgrade_task({
        "name": "Pricing",
        "progress": 92,
        "createdAt": "2026-02-01T09:00:00.000Z",
        "lastProgressUpdate": "2026-03-01T09:00:00.000Z",
    }, NOW)
    assert task["progressHistory"] == [{"progress": 92, "timestamp": "2026-03-01T09:00:00.000Z"}]


def test_apply_defaults_types_and_ids():
    payload = {
        "pillars": [
            {"id": 1, "name": "A", "completion": 0, "tasks": [{"name": "x", "done": False}, {"id": 4, "name": "y"}]},
            {"id": 2, "name": "B", "completion": 0, "tasks": [{"name": "z"}]},
        ],
    }
    result = apply_defaults(payload, NOW)

    assert [p["type"] for p in result["pillars"]] == [GoalType.MAIN.value, GoalType.SECONDARY.value]
    assert [t["id"] for p in result["pillars"] for t in p["tasks"]] == [5, 4, 6]
    assert result["pillars"][0]["aiTone"] == "psychoeducation"
    assert result["user"] == {}
    assert result["finishSessionsHistory"] == []
    assert "type" not in payload["pillars"][0]


def test_apply_defaults_keeps_single_main():
    payload = {
        "pillars": [
            {"id": 1, "name": "A", "completion": 0, "type": "main", "tasks": []},
            {"id": 2, "name": "B", "completion": 0, "type": "main", "tasks": []},
            {"id": 3, "name": "C", "completion": 0, "type": "bogus", "tasks": []},
        ],
    }
    result = apply_defaults(payload, NOW)
    assert [p["type"] for p in result["pillars"]] == ["main", "secondary", "secondary"]


def test_default_dataset_survives_normalized_encoding():
    data = build_default_data(NOW)

    decoded = decode_payload(encode_payload(data, SHAPE_NORMALIZED), NOW)

    assert decoded.shape == SHAPE_NORMALIZED
    assert decoded.migration is None
    assert decoded.data == data


def test_default_payload_shape():
    payload = build_default_payload()
    assert detect_shape(payload) == SHAPE_LEGACY
    assert [p["name"] for p in payload["pillars"]] == ["Websites", "Offer", "Game"]
