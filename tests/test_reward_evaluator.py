from datetime import datetime, timedelta, timezone

from core.models import (
    ClassificationStatus,
    FinishSession,
    Goal,
    Reward,
    RewardCondition,
    RewardConditionKind,
    RewardType,
    SessionClassification,
    SessionStatus,
)
from core.reward_evaluator import EARNED, NOT_YET, count_stuck_to_done, evaluate

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _reward(kind, value, reward_id="r1"):
    return Reward(
        id=reward_id,
        description="Dinner out",
        type=RewardType.PROCESS,
        condition=RewardCondition(kind=kind, value=value),
    )


def _session(session_id, days_ago, task_id=1, pillar_id=1, status=SessionStatus.COMPLETED, cls=None):
    end = NOW - timedelta(days=days_ago)
    return FinishSession(
        id=session_id,
        task_id=task_id,
        pillar_id=pillar_id,
        start_time=end - timedelta(minutes=25),
        end_time=end,
        status=status,
        classification=SessionClassification(cls) if cls else None,
    )


def test_completion_threshold():
    goal = Goal(id=1, name="Offer", completion=80)
    rewards = [
        _reward(RewardConditionKind.COMPLETION_PERCENT.value, 75, "a"),
        _reward(RewardConditionKind.COMPLETION_PERCENT.value, 90, "b"),
    ]

    a, b = evaluate(goal, rewards, [], NOW)

    assert a.status == EARNED
    assert a.reason == "completion 80% ≥ 75%"
    assert b.status == NOT_YET
    assert b.reason == "completion 80% / 90%"


def test_sessions_in_window_earn_then_expire():
    goal = Goal(id=1, name="Offer")
    reward = _reward(RewardConditionKind.SESSIONS_COMPLETED.value, 2)

    recent = [_session("s1", 2), _session("s2", 2)]
    assert evaluate(goal, [reward], recent, NOW)[0].earned is True

    old = [_session("s1", 8), _session("s2", 8)]
    result = evaluate(goal, [reward], old, NOW)[0]
    assert result.status == NOT_YET
    assert result.reason == "finish sessions (7d) 0 / 2"


def test_only_completed_sessions_of_the_goal_count():
    goal = Goal(id=1, name="Offer")
    reward = _reward(RewardConditionKind.SESSIONS_COMPLETED.value, 2)
    history = [
        _session("s1", 1),
        _session("s2", 1, status=SessionStatus.ABORTED),
        _session("s3", 1, pillar_id=2),
    ]
    assert evaluate(goal, [reward], history, NOW)[0].earned is False


def test_stuck_to_done_counts_distinct_tasks():
    sessions = [
        _session("s1", 3, task_id=5, cls=ClassificationStatus.STUCK),
        _session("s2", 2, task_id=5, cls=ClassificationStatus.IN_PROGRESS),
        _session("s3", 1, task_id=5, cls=ClassificationStatus.DONE),
        _session("s4", 1, task_id=6, cls=ClassificationStatus.DONE),
        _session("s5", 0, task_id=5, cls=ClassificationStatus.DONE),
    ]
    assert count_stuck_to_done(sessions) == 1

    goal = Goal(id=1, name="Offer")
    reward = _reward(RewardConditionKind.STUCK_TO_DONE.value, 1)
    result = evaluate(goal, [reward], sessions, NOW)[0]
    assert result.earned is True
    assert result.reason == "stuck→done (7d) 1 ≥ 1"


def test_unknown_condition_is_not_yet():
    goal = Goal(id=1, name="Offer", completion=100)
    result = evaluate(goal, [_reward("streak_days_at_least", 3)], [], NOW)[0]
    assert result.status == NOT_YET
    assert result.reason == "unknown condition"


def test_no_rewards():
    assert evaluate(Goal(id=1, name="Offer"), [], [], NOW) == []
