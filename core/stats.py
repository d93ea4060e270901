"""
Basic stats over finish sessions and tasks (trailing window).
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from statistics import median
from typing import Dict, List, Set, Tuple

from core.config_manager import config
from core.models import AppData, ClassificationStatus, FinishSession, GoalType, SessionStatus
from core.utils import within_last_days


@dataclass
class StuckResolution:
    stuck_tasks: int = 0          # 窗口内被分类为 stuck 的不同任务
    stuck_to_in_progress: int = 0
    stuck_to_done: int = 0
    rate: float = 0.0             # stuck_to_done / stuck_tasks


@dataclass
class BasicStats:
    sessions_count: int
    total_minutes: int
    avg_minutes: float
    median_minutes: float
    unique_tasks: int
    main_goal_streak_days: int
    tasks_completed_count: int
    stuck_resolution: StuckResolution


def _completed_last_days(history: List[FinishSession], now: datetime, days: int) -> List[FinishSession]:
    return [
        s for s in history
        if s.status == SessionStatus.COMPLETED and within_last_days(s.end_time, days, now)
    ]


def stuck_resolution(sessions: List[FinishSession]) -> StuckResolution:
    by_task: Dict[int, List[Tuple[datetime, ClassificationStatus]]] = {}
    for s in sessions:
        if s.classification is None or s.end_time is None:
            continue
        by_task.setdefault(s.task_id, []).append((s.end_time, s.classification.status))

    stuck: Set[int] = set()
    to_in_progress: Set[int] = set()
    to_done: Set[int] = set()

    for task_id, events in by_task.items():
        events.sort(key=lambda e: e[0])
        saw_stuck = False
        for _, status in events:
            if status == ClassificationStatus.STUCK:
                saw_stuck = True
                stuck.add(task_id)
            elif not saw_stuck:
                continue
            elif status == ClassificationStatus.IN_PROGRESS:
                to_in_progress.add(task_id)
            elif status == ClassificationStatus.DONE:
                # done 之后该任务在本窗口内视为已解决
                to_done.add(task_id)
                break

    return StuckResolution(
        stuck_tasks=len(stuck),
        stuck_to_in_progress=len(to_in_progress),
        stuck_to_done=len(to_done),
        rate=(len(to_done) / len(stuck)) if stuck else 0.0,
    )


def main_goal_streak(data: AppData, now: datetime) -> int:
    """
    连续天数（本地日期，截止到今天）：当天至少有一个 main 目标的会话完成。
    """
    main_ids = {g.id for g in data.goals if g.type == GoalType.MAIN}
    if not main_ids:
        return 0

    days = set()
    for s in data.session_history:
        if s.status != SessionStatus.COMPLETED or s.pillar_id not in main_ids or s.end_time is None:
            continue
        days.add(s.end_time.astimezone().date())

    streak = 0
    cursor = now.astimezone().date()
    while cursor in days:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def compute_basic_stats(data: AppData, now: datetime) -> BasicStats:
    window = config.REWARD_WINDOW_DAYS
    completed = _completed_last_days(data.session_history, now, window)

    minutes = [
        (s.end_time - s.start_time).total_seconds() / 60
        for s in completed
        if s.end_time is not None and s.end_time >= s.start_time
    ]

    return BasicStats(
        sessions_count=len(completed),
        total_minutes=round(sum(minutes)),
        avg_minutes=(sum(minutes) / len(minutes)) if minutes else 0.0,
        median_minutes=median(minutes) if minutes else 0.0,
        unique_tasks=len({s.task_id for s in completed}),
        main_goal_streak_days=main_goal_streak(data, now),
        tasks_completed_count=sum(
            1 for t in data.all_tasks() if within_last_days(t.completed_at, window, now)
        ),
        stuck_resolution=stuck_resolution(completed),
    )
