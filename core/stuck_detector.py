"""
Stuck Detector (Anti-90%)

识别停留在 90-99% 超过宽限期的任务，并计算派生指标。
本模块全部为纯函数：输入任务/目标与 now，输出分析结果，不做任何 I/O。
调用方（AppStore 的派生刷新）负责把 stuck_at_ninety 写回任务。
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from core.config_manager import config
from core.models import AppData, Goal, GoalStatus, Task, TaskStatus
from core.utils import SECONDS_PER_DAY, days_between


class RecommendedAction:
    BREAK_DOWN_REMAINING = "break-down-remaining"
    SET_DEADLINE = "set-deadline"
    GET_ACCOUNTABILITY = "get-accountability"


@dataclass
class TaskInsight:
    is_stuck: bool
    days_in_current_state: int
    plateau_start: datetime
    recommended_action: Optional[str] = None
    completion_velocity: float = 0.0


@dataclass
class StuckTask:
    """审计输出中的一条卡住任务"""
    goal_id: int
    goal_name: str
    task_id: int
    task_name: str
    progress: int
    days_in_current_state: int


@dataclass
class DatasetInsights:
    stuck_count: int
    completion_rate: float           # done / total，0..1
    average_days_to_completion: float
    total_tasks: int
    done_tasks: int


@dataclass
class GoalHealth:
    goal_id: int
    completion_rate: float           # 0..100
    stuck_tasks_count: int
    average_completion_days: float
    health_score: float              # 0..100


@dataclass
class WeeklyReport:
    total_tasks: int
    completed_this_week: int
    stuck_tasks: int
    top_performer_id: Optional[int] = None
    needs_attention_ids: List[int] = field(default_factory=list)


def is_candidate(task: Task) -> bool:
    return config.STUCK_PROGRESS_MIN <= task.progress <= config.STUCK_PROGRESS_MAX


def plateau_start(task: Task) -> datetime:
    """
    任务进入当前进度值的时间点。

    从历史末尾向前走过与当前进度相等的连续记录，取这段记录中最早的时间；
    若最后一条记录与当前进度不同，取最后一条记录的时间；
    没有历史时取 created_at。
    """
    history = task.progress_history
    if not history:
        return task.created_at

    idx = len(history) - 1
    if history[idx].progress != task.progress:
        return history[idx].timestamp

    while idx > 0 and history[idx - 1].progress == task.progress:
        idx -= 1
    return history[idx].timestamp


def days_in_current_state(task: Task, now: datetime) -> int:
    return max(0, days_between(plateau_start(task), now))


def is_stuck(task: Task, now: datetime) -> bool:
    if task.progress >= 100 or task.status in (TaskStatus.DONE, TaskStatus.ABANDONED):
        return False
    return is_candidate(task) and days_in_current_state(task, now) > config.STUCK_THRESHOLD_DAYS


def completion_velocity(task: Task, now: datetime) -> float:
    """每天推进的进度点数，两位小数"""
    if task.progress == 0 or task.created_at is None:
        return 0.0
    days = days_between(task.created_at, now)
    if days <= 0:
        return 0.0
    return round(task.progress / days, 2)


def recommended_action(task: Task, stuck: bool, days_idle: int) -> Optional[str]:
    if stuck:
        return RecommendedAction.BREAK_DOWN_REMAINING
    if days_idle > 7 and task.progress < 50:
        return RecommendedAction.SET_DEADLINE
    if days_idle > 14 and task.progress > 0:
        return RecommendedAction.GET_ACCOUNTABILITY
    return None


def analyze_task(task: Task, now: datetime) -> TaskInsight:
    start = plateau_start(task)
    days = max(0, days_between(start, now))
    stuck = is_stuck(task, now)
    return TaskInsight(
        is_stuck=stuck,
        days_in_current_state=days,
        plateau_start=start,
        recommended_action=recommended_action(task, stuck, days),
        completion_velocity=completion_velocity(task, now),
    )


# --- Derived-field refresh ---

def refresh_task(task: Task, now: datetime) -> None:
    """
    重新计算任务的 stuck_at_ninety。

    只维护标志位与 100% 不变式；状态变更由进度修改和会话分类负责。
    """
    if task.progress >= 100:
        task.stuck_at_ninety = False
        task.status = TaskStatus.DONE
        return
    task.stuck_at_ninety = is_stuck(task, now)


def refresh_goal(goal: Goal, now: datetime) -> None:
    """Recompute completion, alert flag, days_stuck and last activity for one goal."""
    for task in goal.tasks:
        refresh_task(task, now)

    if goal.tasks:
        goal.completion = round(sum(t.progress for t in goal.tasks) / len(goal.tasks))

    stuck_days = [days_in_current_state(t, now) for t in goal.tasks if t.stuck_at_ninety]
    goal.ninety_percent_alert = bool(stuck_days)
    goal.days_stuck = max(stuck_days) if stuck_days else 0

    if goal.status == GoalStatus.NOT_STARTED and any(t.progress > 0 for t in goal.tasks):
        goal.status = GoalStatus.IN_PROGRESS

    updates = [t.last_progress_update for t in goal.tasks if t.progress_history]
    if updates:
        latest = max(updates)
        if goal.last_activity_date is None or latest > goal.last_activity_date:
            goal.last_activity_date = latest


def refresh_all(data: AppData, now: datetime) -> None:
    for goal in data.goals:
        refresh_goal(goal, now)


# --- Aggregates ---

def find_stuck_tasks(data: AppData, now: datetime) -> List[StuckTask]:
    result = []
    for goal, task in data.iter_tasks():
        if is_stuck(task, now):
            result.append(StuckTask(
                goal_id=goal.id,
                goal_name=goal.name,
                task_id=task.id,
                task_name=task.name,
                progress=task.progress,
                days_in_current_state=days_in_current_state(task, now),
            ))
    return result


def _mean_days_to_completion(tasks: List[Task]) -> float:
    spans = [
        (t.completed_at - t.created_at).total_seconds() / SECONDS_PER_DAY
        for t in tasks
        if t.completed_at is not None and t.created_at is not None
    ]
    if not spans:
        return 0.0
    return sum(spans) / len(spans)


def compute_insights(data: AppData, now: datetime) -> DatasetInsights:
    tasks = data.all_tasks()
    done = [t for t in tasks if t.status == TaskStatus.DONE]
    return DatasetInsights(
        stuck_count=sum(1 for t in tasks if is_stuck(t, now)),
        completion_rate=(len(done) / len(tasks)) if tasks else 0.0,
        average_days_to_completion=_mean_days_to_completion(tasks),
        total_tasks=len(tasks),
        done_tasks=len(done),
    )


def analyze_goal(goal: Goal, now: datetime) -> GoalHealth:
    """
    目标健康度：完成率越高、卡住越少越健康。
    health = completion_rate - stuck * 10 (+20 若平均完成天数 < 7)，截断到 0..100
    """
    tasks = goal.tasks
    total = len(tasks)
    completed = sum(1 for t in tasks if t.progress >= 100)
    stuck = sum(1 for t in tasks if is_stuck(t, now))
    completion_rate = (completed / total * 100) if total else 0.0
    average = _mean_days_to_completion(tasks)
    bonus = 20 if average < 7 else 0
    health = max(0.0, min(100.0, completion_rate - stuck * 10 + bonus))
    return GoalHealth(
        goal_id=goal.id,
        completion_rate=completion_rate,
        stuck_tasks_count=stuck,
        average_completion_days=average,
        health_score=health,
    )


def weekly_report(goals: List[Goal], now: datetime) -> WeeklyReport:
    week_ago = now - timedelta(days=config.REWARD_WINDOW_DAYS)
    report = WeeklyReport(total_tasks=0, completed_this_week=0, stuck_tasks=0)
    best_rate = 0.0

    for goal in goals:
        report.total_tasks += len(goal.tasks)
        report.completed_this_week += sum(
            1 for t in goal.tasks if t.completed_at is not None and t.completed_at > week_ago
        )
        stuck = sum(1 for t in goal.tasks if is_stuck(t, now))
        report.stuck_tasks += stuck

        rate = 0.0
        if goal.tasks:
            rate = sum(1 for t in goal.tasks if t.progress >= 100) / len(goal.tasks) * 100
        if rate > best_rate:
            best_rate = rate
            report.top_performer_id = goal.id
        if stuck > 0 or rate < 30:
            report.needs_attention_ids.append(goal.id)

    return report


def insights_by_task(data: AppData, now: datetime) -> Dict[int, TaskInsight]:
    return {task.id: analyze_task(task, now) for task in data.all_tasks()}
