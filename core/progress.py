"""
Task progress mutations.

Keeps the task invariants in one place:
- progress == 100  =>  status == done and stuck_at_ninety == False
- progress history only grows when the value actually changes
"""
from datetime import datetime

from core.models import ProgressEntry, Task, TaskStatus


def clamp_progress(value: int) -> int:
    return max(0, min(100, int(value)))


def apply_progress(task: Task, value: int, now: datetime) -> bool:
    """
    将任务进度设为 value（截断到 0..100），原地修改。

    Returns:
        进度值是否真的发生了变化
    """
    target = clamp_progress(value)
    changed = target != task.progress

    if changed:
        task.progress = target
        task.progress_history.append(ProgressEntry(progress=target, timestamp=now))
        task.last_progress_update = now

    if target >= 100:
        task.status = TaskStatus.DONE
        task.stuck_at_ninety = False
        if task.completed_at is None:
            task.completed_at = now
    elif task.status == TaskStatus.ABANDONED:
        pass
    elif changed or task.status == TaskStatus.DONE:
        # 新进度开启新的平台期；stuck 标志由 refresh_task 重新判定
        task.status = TaskStatus.ACTIVE
        task.stuck_at_ninety = False
        task.completed_at = None

    return changed


def toggle_target(progress: int) -> int:
    """0 <-> 100 的切换目标值"""
    return 0 if progress >= 100 else 100


def apply_status(task: Task, status: TaskStatus, now: datetime) -> None:
    """
    Direct status edits keep progress consistent: marking done pushes
    progress to 100, reopening a done task drops it back below 100.
    """
    if status == TaskStatus.DONE:
        apply_progress(task, 100, now)
        return

    if task.progress >= 100:
        apply_progress(task, 99 if status == TaskStatus.STUCK else 90, now)
    task.status = status
    task.completed_at = None
    if status != TaskStatus.STUCK:
        task.stuck_at_ninety = False
