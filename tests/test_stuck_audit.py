import asyncio
from datetime import datetime, timedelta, timezone

from core.app_store import AppStore
from core.defaults import build_default_data
from core.goal_service import GoalService
from core.llm_adapter import RuleBasedAdapter
from scheduler.stuck_audit import EVENT_STUCK_AUDIT, LAST_AUDIT_KEY, audit_due, check_and_audit, run_stuck_audit

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _service(now=NOW):
    store = AppStore(build_default_data(now - timedelta(days=10)), clock=lambda: now)
    service = GoalService(store, adapter=RuleBasedAdapter({}))
    return service


def _stuck_service():
    clock = {"now": NOW - timedelta(days=5)}
    store = AppStore(build_default_data(clock["now"]), clock=lambda: clock["now"])
    service = GoalService(store, adapter=RuleBasedAdapter({}))
    service.set_task_progress(6, 95)
    clock["now"] = NOW
    return service


def test_audit_due_respects_hour_and_last_run():
    local = NOW.astimezone()
    today = local.date().isoformat()

    assert audit_due(None, NOW, hour=local.hour) is True
    assert audit_due(today, NOW, hour=local.hour) is False
    assert audit_due("2000-01-01", NOW, hour=local.hour) is True
    if local.hour < 23:
        assert audit_due(None, NOW, hour=local.hour + 1) is False


def test_run_stuck_audit_event():
    service = _stuck_service()

    event = asyncio.run(run_stuck_audit(service))

    assert event["type"] == EVENT_STUCK_AUDIT
    assert event["stuck"] == [
        {"goal_id": 2, "task_id": 6, "task_name": "FAQ section", "progress": 95, "days": 5},
    ]
    assert event["nudges"][0]["task_id"] == 6
    assert "95%" in event["nudges"][0]["message"]


def test_no_nudges_when_disabled():
    event = asyncio.run(run_stuck_audit(_stuck_service(), with_nudges=False))
    assert len(event["stuck"]) == 1
    assert event["nudges"] == []


def test_check_and_audit_runs_once_per_day():
    service = _service()

    ran, event = asyncio.run(check_and_audit(service, force=True))
    assert ran is True
    assert event["stuck"] == []
    assert service.data.extras[LAST_AUDIT_KEY] == event["date"]

    # 同一天再次检查：已运行过
    ran, event = asyncio.run(check_and_audit(service))
    assert ran is False
    assert event is None
