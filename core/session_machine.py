"""
Finish Session State Machine

状态: NONE -> OPEN -> COMPLETED | ABORTED

AppData.current_session 是唯一的会话槽位，只能通过本模块的转换函数修改。
所有转换都作用于 AppStore 的草稿副本，因此 "abort 旧会话 + 开启新会话"
在同一次状态提交中完成，读者不会观察到中间态。

转换从不抛异常：结束一个非当前会话是静默的 no-op。
"""
import uuid
from datetime import datetime
from typing import List, Optional

from core.config_manager import config
from core.logger import get_logger
from core.models import (
    AppData,
    ClassificationStatus,
    FinishSession,
    SessionClassification,
    SessionStatus,
    Task,
    TaskStatus,
)
from core.progress import apply_progress

logger = get_logger("session_machine")

# 可作为结束状态的取值
END_STATUSES = (SessionStatus.COMPLETED, SessionStatus.ABORTED)


def new_session_id() -> str:
    return str(uuid.uuid4())


def cap_history(history: List[FinishSession], limit: Optional[int] = None) -> List[FinishSession]:
    """保留最近 limit 条（FIFO 淘汰最旧的）"""
    limit = config.MAX_SESSION_HISTORY if limit is None else limit
    if len(history) > limit:
        return history[len(history) - limit:]
    return history


def start_session(
    data: AppData,
    task_id: int,
    pillar_id: int,
    now: datetime,
    session_id: Optional[str] = None,
) -> FinishSession:
    """
    开启新会话。若已有打开的会话，先以 aborted 结束并写入历史。

    Returns:
        新的当前会话
    """
    current = data.current_session
    if current is not None and current.is_open:
        current.status = SessionStatus.ABORTED
        current.end_time = now
        data.session_history.append(current)
        logger.info(f"Session {current.id} aborted by new start (task {current.task_id})")

    session = FinishSession(
        id=session_id or new_session_id(),
        task_id=task_id,
        pillar_id=pillar_id,
        start_time=now,
    )
    data.current_session = session
    data.session_history = cap_history(data.session_history)
    return session


def apply_classification(task: Task, classification: SessionClassification, now: datetime) -> None:
    """
    会话分类对任务的副作用:
    - done: 进度 100，状态 done，completed_at 仅在未设置时写入，清除 stuck 标志
    - stuck: 状态 stuck，不动进度
    - in_progress: 状态 active
    """
    status = classification.status
    if status == ClassificationStatus.DONE:
        previous_completed_at = task.completed_at
        apply_progress(task, 100, now)
        task.status = TaskStatus.DONE
        task.completed_at = previous_completed_at or now
        task.stuck_at_ninety = False
    elif status == ClassificationStatus.STUCK:
        task.status = TaskStatus.STUCK
    else:
        task.status = TaskStatus.ACTIVE


def end_session(
    data: AppData,
    session_id: str,
    status: SessionStatus,
    now: datetime,
    user_note: Optional[str] = None,
    ai_summary: Optional[str] = None,
    classification: Optional[SessionClassification] = None,
) -> Optional[FinishSession]:
    """
    结束当前会话。

    session_id 与当前打开的会话不符时返回 None 且不修改任何状态。
    """
    current = data.current_session
    if current is None or not current.is_open or current.id != session_id:
        logger.debug(f"Ignoring stale end for session {session_id}")
        return None

    if status not in END_STATUSES:
        status = SessionStatus.COMPLETED

    current.end_time = now
    current.status = status
    current.user_note = (user_note or "").strip() or None
    current.ai_summary = (ai_summary or "").strip() or None
    if classification is not None:
        note = (classification.note or "").strip() or None
        current.classification = SessionClassification(status=classification.status, note=note)
    else:
        current.classification = None

    data.session_history.append(current)
    data.session_history = cap_history(data.session_history)
    data.current_session = None

    if current.classification is not None:
        _, task = data.find_task(current.task_id)
        if task is not None:
            apply_classification(task, current.classification, now)
        else:
            logger.warning(f"Session {current.id} classified a missing task {current.task_id}")

    return current


def completed_sessions(history: List[FinishSession]) -> List[FinishSession]:
    return [s for s in history if s.status == SessionStatus.COMPLETED and s.end_time is not None]
