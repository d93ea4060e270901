"""
Reward Evaluator

纯函数：根据目标完成度与会话历史判定每个奖励是否达成。
每次调用都从源数据完整重算（滚动窗口），没有持久化的 "已获得" 标志，
窗口移过符合条件的事件后奖励会回到 not_yet。
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from core.config_manager import config
from core.models import (
    ClassificationStatus,
    FinishSession,
    Goal,
    Reward,
    RewardConditionKind,
    SessionStatus,
)
from core.utils import within_last_days

EARNED = "earned"
NOT_YET = "not_yet"


@dataclass
class RewardStatus:
    reward: Reward
    status: str          # earned | not_yet
    reason: str

    @property
    def earned(self) -> bool:
        return self.status == EARNED


def completed_in_window(
    goal_id: int,
    history: List[FinishSession],
    now: datetime,
    days: Optional[int] = None,
) -> List[FinishSession]:
    """目标在滚动窗口内已完成的会话（0 <= now - end_time <= days）"""
    days = config.REWARD_WINDOW_DAYS if days is None else days
    return [
        s for s in history
        if s.status == SessionStatus.COMPLETED
        and s.pillar_id == goal_id
        and within_last_days(s.end_time, days, now)
    ]


def count_stuck_to_done(sessions: List[FinishSession]) -> int:
    """
    统计窗口内出现 "stuck 之后（不要求紧邻）出现 done" 的不同任务数。
    分类事件按 end_time 排序。
    """
    events: Dict[int, List[Tuple[datetime, ClassificationStatus]]] = {}
    for s in sessions:
        if s.classification is None or s.end_time is None:
            continue
        events.setdefault(s.task_id, []).append((s.end_time, s.classification.status))

    count = 0
    for task_events in events.values():
        task_events.sort(key=lambda e: e[0])
        saw_stuck = False
        for _, status in task_events:
            if status == ClassificationStatus.STUCK:
                saw_stuck = True
            elif saw_stuck and status == ClassificationStatus.DONE:
                count += 1
                break
    return count


def _status(ok: bool, label: str, actual, target, unit: str = "") -> Tuple[str, str]:
    if ok:
        return EARNED, f"{label} {actual}{unit} ≥ {target}{unit}"
    return NOT_YET, f"{label} {actual}{unit} / {target}{unit}"


def evaluate(
    goal: Goal,
    rewards: List[Reward],
    history: List[FinishSession],
    now: datetime,
) -> List[RewardStatus]:
    """
    评估奖励列表。

    Args:
        goal: 奖励所属目标
        rewards: 待评估的奖励（通常是 goal.rewards）
        history: 全部会话历史
        now: 当前时间

    Returns:
        与 rewards 顺序一致的 RewardStatus 列表
    """
    if not rewards:
        return []

    window = completed_in_window(goal.id, history, now)
    sessions_count = len(window)
    stuck_to_done = count_stuck_to_done(window)
    days = config.REWARD_WINDOW_DAYS

    results = []
    for reward in rewards:
        kind = reward.condition.kind
        if kind == RewardConditionKind.COMPLETION_PERCENT:
            threshold = max(0, min(100, reward.condition.value))
            status, reason = _status(
                goal.completion >= threshold, "completion", goal.completion, threshold, "%"
            )
        elif kind == RewardConditionKind.SESSIONS_COMPLETED:
            target = max(1, reward.condition.value)
            status, reason = _status(
                sessions_count >= target, f"finish sessions ({days}d)", sessions_count, target
            )
        elif kind == RewardConditionKind.STUCK_TO_DONE:
            target = max(1, reward.condition.value)
            status, reason = _status(
                stuck_to_done >= target, f"stuck→done ({days}d)", stuck_to_done, target
            )
        else:
            status, reason = NOT_YET, "unknown condition"
        results.append(RewardStatus(reward=reward, status=status, reason=reason))

    return results
