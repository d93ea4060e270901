"""
Dict <-> dataclass mapping for the stored blob (legacy nested shape).

Key names follow the on-disk format: pillar fields are snake_case, task /
session / idea fields are camelCase.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.models import (
    AiTone,
    AppData,
    ClassificationStatus,
    DoneCriterion,
    DoneDefinition,
    FinishSession,
    Goal,
    GoalStatus,
    GoalType,
    Idea,
    ImplementationIntention,
    ProgressEntry,
    Reward,
    RewardCondition,
    RewardConditionKind,
    RewardType,
    SessionClassification,
    SessionStatus,
    Task,
    TaskPriority,
    TaskStatus,
    TaskType,
)
from core.utils import parse_iso, to_iso

# 顶层已知键；其余键作为 extras 原样透传
KNOWN_KEYS = {
    "pillars",
    "currentFinishSession",
    "finishSessionsHistory",
    "ideas",
    "user",
    "settings",
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return to_iso(value) if value is not None else None


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _enum(enum_cls, value: Any, default):
    try:
        return enum_cls(value)
    except ValueError:
        return default


def _progress(value: Any) -> int:
    return max(0, min(100, _int(value, 0)))


# --- Task ---

def task_to_dict(t: Task) -> Dict[str, Any]:
    d = {
        "id": t.id,
        "name": t.name,
        "type": t.type.value,
        "progress": t.progress,
        "priority": t.priority.value,
        "status": t.status.value,
        "stuckAtNinety": t.stuck_at_ninety,
        "lastProgressUpdate": _iso(t.last_progress_update),
        "createdAt": _iso(t.created_at),
        "completedAt": _iso(t.completed_at),
        "dueDate": t.due_date,
        "progressHistory": [
            {"progress": e.progress, "timestamp": to_iso(e.timestamp)} for e in t.progress_history
        ],
        "doneCriteria": [{"item": c.item, "completed": c.completed} for c in t.done_criteria],
        "definitionOfDone": t.definition_of_done,
    }
    if t.implementation_intention is not None:
        ii = t.implementation_intention
        d["implementationIntention"] = {
            "trigger": ii.trigger,
            "action": ii.action,
            "active": ii.active,
            "lastTriggered": _iso(ii.last_triggered),
        }
    return d


def _task_status(raw: Any, progress: int) -> TaskStatus:
    if progress >= 100:
        return TaskStatus.DONE
    try:
        status = TaskStatus(raw)
    except ValueError:
        return TaskStatus.ACTIVE
    # done 但进度不足 100 的旧数据：以进度为准
    if status == TaskStatus.DONE:
        return TaskStatus.ACTIVE
    return status


def dict_to_task(d: Dict[str, Any]) -> Task:
    progress = _progress(d.get("progress", 0))
    created_at = parse_iso(d.get("createdAt"))

    history = []
    for entry in d.get("progressHistory") or []:
        if not isinstance(entry, dict):
            continue
        ts = parse_iso(entry.get("timestamp"))
        if ts is None:
            continue
        history.append(ProgressEntry(progress=_progress(entry.get("progress")), timestamp=ts))
    history.sort(key=lambda e: e.timestamp)

    intention = None
    raw_ii = d.get("implementationIntention")
    if isinstance(raw_ii, dict):
        intention = ImplementationIntention(
            trigger=str(raw_ii.get("trigger") or ""),
            action=str(raw_ii.get("action") or ""),
            active=bool(raw_ii.get("active", True)),
            last_triggered=parse_iso(raw_ii.get("lastTriggered")),
        )

    criteria = [
        DoneCriterion(item=str(c.get("item", "")), completed=bool(c.get("completed", False)))
        for c in (d.get("doneCriteria") or [])
        if isinstance(c, dict)
    ]

    status = _task_status(d.get("status"), progress)
    return Task(
        id=_int(d.get("id")),
        name=str(d.get("name") or ""),
        type=_enum(TaskType, d.get("type"), TaskType.BUILD),
        progress=progress,
        priority=_enum(TaskPriority, d.get("priority"), TaskPriority.MEDIUM),
        status=status,
        created_at=created_at,
        completed_at=parse_iso(d.get("completedAt")),
        due_date=d.get("dueDate"),
        last_progress_update=parse_iso(d.get("lastProgressUpdate")),
        stuck_at_ninety=bool(d.get("stuckAtNinety", False)) and progress < 100,
        progress_history=history,
        implementation_intention=intention,
        done_criteria=criteria,
        definition_of_done=str(d.get("definitionOfDone") or ""),
    )


# --- Reward ---

def reward_to_dict(r: Reward) -> Dict[str, Any]:
    value_key = "percent" if r.condition.kind == RewardConditionKind.COMPLETION_PERCENT else "count"
    return {
        "id": r.id,
        "description": r.description,
        "type": r.type.value,
        "condition": {"kind": r.condition.kind, value_key: r.condition.value},
        "createdAt": _iso(r.created_at),
    }


def dict_to_reward(d: Dict[str, Any]) -> Reward:
    raw_condition = d.get("condition") or {}
    kind = str(raw_condition.get("kind", ""))
    if kind == RewardConditionKind.COMPLETION_PERCENT:
        value = _int(raw_condition.get("percent"), 0)
    else:
        value = _int(raw_condition.get("count"), 1)
    return Reward(
        id=str(d.get("id", "")),
        description=str(d.get("description", "")),
        type=_enum(RewardType, d.get("type"), RewardType.MILESTONE),
        condition=RewardCondition(kind=kind, value=value),
        created_at=parse_iso(d.get("createdAt")),
    )


# --- Goal ---

def goal_to_dict(g: Goal) -> Dict[str, Any]:
    return {
        "id": g.id,
        "name": g.name,
        "description": g.description,
        "status": g.status.value,
        "completion": g.completion,
        "ninety_percent_alert": g.ninety_percent_alert,
        "days_stuck": g.days_stuck,
        "last_activity_date": _iso(g.last_activity_date),
        "done_definition": {
            "tech": g.done_definition.tech,
            "live": g.done_definition.live,
            "battle": g.done_definition.battle,
        },
        "type": g.type.value,
        "strategy": g.strategy,
        "aiTone": g.ai_tone.value,
        "rewards": [reward_to_dict(r) for r in g.rewards],
        "tasks": [task_to_dict(t) for t in g.tasks],
    }


def dict_to_goal(d: Dict[str, Any]) -> Goal:
    raw_dd = d.get("done_definition") or {}
    return Goal(
        id=_int(d.get("id")),
        name=str(d.get("name") or ""),
        description=str(d.get("description") or ""),
        status=_enum(GoalStatus, d.get("status"), GoalStatus.NOT_STARTED),
        completion=_progress(d.get("completion", 0)),
        ninety_percent_alert=bool(d.get("ninety_percent_alert", False)),
        days_stuck=_int(d.get("days_stuck"), 0),
        last_activity_date=parse_iso(d.get("last_activity_date")),
        done_definition=DoneDefinition(
            tech=str(raw_dd.get("tech", "")),
            live=str(raw_dd.get("live", "")),
            battle=str(raw_dd.get("battle", "")),
        ),
        type=_enum(GoalType, d.get("type"), GoalType.SECONDARY),
        strategy=str(d.get("strategy") or ""),
        ai_tone=_enum(AiTone, d.get("aiTone"), AiTone.PSYCHOEDUCATION),
        rewards=[dict_to_reward(r) for r in (d.get("rewards") or []) if isinstance(r, dict)],
        tasks=[dict_to_task(t) for t in (d.get("tasks") or []) if isinstance(t, dict)],
    )


# --- Finish session ---

def session_to_dict(s: FinishSession) -> Dict[str, Any]:
    d = {
        "id": s.id,
        "taskId": s.task_id,
        "pillarId": s.pillar_id,
        "startTime": to_iso(s.start_time),
        "endTime": _iso(s.end_time),
        "status": s.status.value,
    }
    if s.user_note is not None:
        d["userNote"] = s.user_note
    if s.ai_summary is not None:
        d["aiSummary"] = s.ai_summary
    if s.classification is not None:
        d["classification"] = {"status": s.classification.status.value}
        if s.classification.note is not None:
            d["classification"]["note"] = s.classification.note
    return d


def dict_to_session(d: Dict[str, Any]) -> Optional[FinishSession]:
    start = parse_iso(d.get("startTime"))
    if start is None or not d.get("id"):
        return None

    classification = None
    raw_cls = d.get("classification")
    if isinstance(raw_cls, dict):
        try:
            classification = SessionClassification(
                status=ClassificationStatus(raw_cls.get("status")),
                note=raw_cls.get("note"),
            )
        except ValueError:
            classification = None

    return FinishSession(
        id=str(d["id"]),
        task_id=_int(d.get("taskId")),
        pillar_id=_int(d.get("pillarId")),
        start_time=start,
        end_time=parse_iso(d.get("endTime")),
        status=_enum(SessionStatus, d.get("status"), SessionStatus.ABORTED),
        user_note=d.get("userNote"),
        ai_summary=d.get("aiSummary"),
        classification=classification,
    )


# --- Idea ---

def idea_to_dict(i: Idea) -> Dict[str, Any]:
    return {
        "id": i.id,
        "title": i.title,
        "description": i.description,
        "goalId": i.goal_id,
        "tags": list(i.tags),
        "createdAt": _iso(i.created_at),
        "updatedAt": _iso(i.updated_at),
    }


def dict_to_idea(d: Dict[str, Any]) -> Idea:
    goal_id = d.get("goalId")
    return Idea(
        id=str(d.get("id", "")),
        title=str(d.get("title") or ""),
        description=d.get("description"),
        goal_id=_int(goal_id) if goal_id is not None else None,
        tags=[str(t) for t in (d.get("tags") or [])],
        created_at=parse_iso(d.get("createdAt")),
        updated_at=parse_iso(d.get("updatedAt")),
    )


# --- AppData ---

def app_data_to_dict(data: AppData) -> Dict[str, Any]:
    """Encode the canonical state into the legacy nested blob."""
    payload = dict(data.extras)
    payload.update({
        "user": dict(data.user),
        "settings": dict(data.settings),
        "pillars": [goal_to_dict(g) for g in data.goals],
        "currentFinishSession": (
            session_to_dict(data.current_session) if data.current_session else None
        ),
        "finishSessionsHistory": [session_to_dict(s) for s in data.session_history],
        "ideas": [idea_to_dict(i) for i in data.ideas],
    })
    return payload


def dict_to_app_data(payload: Dict[str, Any]) -> AppData:
    """Decode a legacy nested blob (after the defaulting pass)."""
    history: List[FinishSession] = []
    for raw in payload.get("finishSessionsHistory") or []:
        if isinstance(raw, dict):
            session = dict_to_session(raw)
            if session is not None:
                history.append(session)

    current = None
    raw_current = payload.get("currentFinishSession")
    if isinstance(raw_current, dict):
        current = dict_to_session(raw_current)
        if current is not None and not current.is_open:
            current = None

    return AppData(
        goals=[dict_to_goal(g) for g in payload.get("pillars") or [] if isinstance(g, dict)],
        current_session=current,
        session_history=history,
        ideas=[dict_to_idea(i) for i in payload.get("ideas") or [] if isinstance(i, dict)],
        user=dict(payload.get("user") or {}),
        settings=dict(payload.get("settings") or {}),
        extras={k: v for k, v in payload.items() if k not in KNOWN_KEYS and k != "_version"},
    )
