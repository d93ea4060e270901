from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from core.defaults import build_default_data
from core.llm_adapter import RuleBasedAdapter
from core.normalization import NORMALIZED_VERSION, SHAPE_NORMALIZED, encode_payload
from core.runtime import Runtime
from core.storage import JsonFileStore, wrap_export
from web.backend.app import create_app

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def storage(tmp_path):
    return JsonFileStore(tmp_path / "finish_os_data.json")


@pytest.fixture
def runtime(storage):
    return Runtime(
        storage=storage,
        adapter=RuleBasedAdapter({}),
        debounce_seconds=0.01,
        progress_delay_seconds=0.01,
    )


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as c:
        yield c


def test_health_reports_load_state(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["loaded"] is True
    assert body["shape"] == "legacy"
    assert body["notice"] is None


def test_list_and_get_goals(client):
    goals = client.get("/api/v1/goals").json()["goals"]
    assert [g["name"] for g in goals] == ["Websites", "Offer", "Game"]

    active = client.get("/api/v1/goals", params={"include_done": False}).json()["goals"]
    assert [g["id"] for g in active] == [2, 3]

    offer = client.get("/api/v1/goals/2").json()
    assert offer["completion"] == 50
    assert len(offer["tasks"]) == 4

    missing = client.get("/api/v1/goals/99")
    assert missing.status_code == 404
    assert missing.json()["detail"]["field"] == "goal_id"


def test_create_goal_respects_cap(client):
    created = client.post("/api/v1/goals", json={"name": "Podcast", "type": "main"})
    assert created.status_code == 201
    assert created.json()["id"] == 4
    assert client.get("/api/v1/goals/1").json()["type"] == "secondary"

    refused = client.post("/api/v1/goals", json={"name": "Newsletter"})
    assert refused.status_code == 422
    assert refused.json()["detail"]["field"] == "status"


def test_invalid_goal_name(client):
    response = client.post("/api/v1/goals", json={"name": "   "})
    assert response.status_code == 422
    assert response.json()["detail"]["field"] == "name"


def test_task_progress_and_patch(client):
    task = client.post("/api/v1/goals/3/tasks", json={"name": "Write tests", "priority": "high"}).json()
    assert task["id"] == 11
    assert task["priority"] == "high"

    updated = client.put(f"/api/v1/tasks/{task['id']}/progress", json={"progress": 95}).json()
    assert updated["progress"] == 95
    assert [e["progress"] for e in updated["progressHistory"]] == [95]

    patched = client.patch(f"/api/v1/tasks/{task['id']}", json={"status": "done"}).json()
    assert patched["progress"] == 100
    assert patched["status"] == "done"

    detail = client.get(f"/api/v1/tasks/{task['id']}").json()
    assert detail["insight"]["is_stuck"] is False


def test_session_flow(client):
    started = client.post("/api/v1/sessions", json={"task_id": 6})
    assert started.status_code == 201
    session = started.json()
    assert session["pillarId"] == 2
    assert client.get("/api/v1/sessions/current").json()["session"]["id"] == session["id"]

    ended = client.post(
        f"/api/v1/sessions/{session['id']}/end",
        json={"classification": "stuck", "user_note": "pricing copy", "summarize": True},
    ).json()
    assert ended["ended"] is True
    assert ended["session"]["classification"] == {"status": "stuck"}
    assert ended["session"]["aiSummary"].startswith("Stuck at the finish")

    stale = client.post(f"/api/v1/sessions/{session['id']}/end", json={"classification": "done"}).json()
    assert stale == {"ended": False, "session": None}
    assert client.get("/api/v1/tasks/6").json()["status"] == "stuck"

    history = client.get("/api/v1/sessions/history").json()["sessions"]
    assert [s["id"] for s in history] == [session["id"]]


def test_rewards_endpoints(client):
    created = client.post(
        "/api/v1/goals/2/rewards",
        json={"description": "Dinner out", "kind": "milestone_completion_percent_at_least", "value": 40},
    )
    assert created.status_code == 201
    reward = created.json()
    assert reward["condition"] == {"kind": "milestone_completion_percent_at_least", "percent": 40}

    listed = client.get("/api/v1/goals/2/rewards").json()["rewards"]
    assert listed[0]["status"] == "earned"
    assert listed[0]["reason"] == "completion 50% ≥ 40%"

    client.patch(f"/api/v1/goals/2/rewards/{reward['id']}", json={"value": 60})
    listed = client.get("/api/v1/goals/2/rewards").json()["rewards"]
    assert listed[0]["status"] == "not_yet"

    assert client.delete(f"/api/v1/goals/2/rewards/{reward['id']}").json() == {"removed": True}

    bad = client.post("/api/v1/goals/2/rewards", json={"description": "x", "kind": "mystery", "value": 1})
    assert bad.status_code == 422


def test_ideas_endpoints(client):
    idea = client.post("/api/v1/ideas", json={"title": "Podcast", "goal_id": 2, "tags": ["audio"]}).json()
    assert idea["tags"] == ["audio"]

    patched = client.patch(f"/api/v1/ideas/{idea['id']}", json={"goal_id": None}).json()
    assert patched["title"] == "Podcast"
    assert patched["goalId"] is None

    assert len(client.get("/api/v1/ideas").json()["ideas"]) == 1
    assert client.post("/api/v1/ideas", json={"title": "x", "goal_id": 42}).status_code == 404
    assert client.delete(f"/api/v1/ideas/{idea['id']}").json() == {"removed": True}


def test_insights_and_audit(client):
    assert client.get("/api/v1/audit").json() == {"stuck": []}
    assert client.get("/api/v1/audit/nudges").json() == {"nudges": []}

    insights = client.get("/api/v1/insights").json()
    assert insights["total_tasks"] == 10
    assert insights["done_tasks"] == 5

    stats = client.get("/api/v1/stats").json()
    assert stats["sessions_count"] == 0
    assert stats["stuck_resolution"]["rate"] == 0.0

    reply = client.post("/api/v1/coach", json={"message": "what next?"}).json()["reply"]
    assert reply.startswith('Focus on "Offer"')


def test_toggle_is_applied_by_shutdown(runtime, storage):
    with TestClient(create_app(runtime)) as client:
        response = client.post("/api/v1/tasks/6/toggle", json={})
        assert response.status_code == 202
        assert response.json() == {"task_id": 6, "pending_progress": 100}

    assert runtime.service.get_task(6).progress == 100
    saved = storage.read()
    offer_tasks = saved["pillars"][1]["tasks"]
    assert [t["progress"] for t in offer_tasks if t["id"] == 6] == [100]


def test_export_and_import(client, runtime):
    exported = client.get("/api/v1/export").json()
    assert exported["version"] == "1.0"
    assert [p["name"] for p in exported["data"]["pillars"]] == ["Websites", "Offer", "Game"]

    data = build_default_data(NOW)
    data.goals[0].name = "Imported"
    document = wrap_export(encode_payload(data, SHAPE_NORMALIZED), NOW)

    result = client.post("/api/v1/import", json=document).json()
    assert result == {"imported": True, "goals": 3, "shape": SHAPE_NORMALIZED}
    assert client.get("/api/v1/goals/1").json()["name"] == "Imported"
    assert client.get("/api/v1/export").json()["version"] == NORMALIZED_VERSION


def test_unreadable_store_starts_with_notice(storage):
    storage.path.write_text("{broken", encoding="utf-8")
    runtime = Runtime(storage=storage, adapter=RuleBasedAdapter({}), debounce_seconds=0.01)

    with TestClient(create_app(runtime)) as client:
        body = client.get("/health").json()

    assert body["notice"] == "Data could not be loaded, defaults applied"
    assert storage.read()["pillars"]
