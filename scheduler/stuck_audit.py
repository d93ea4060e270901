"""
Daily stuck audit scheduler for Finish OS.

审计本身是拉取式的（GoalService.run_audit 随时可调用）；这里只决定
"今天是否该跑"，并把最近一次审计日期记在数据集的透传字段里。

事件类型:
- StuckAudit: 当日审计结果（卡住的任务 + 提醒文案）
"""
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from core.config_manager import config
from core.goal_service import GoalService
from core.logger import get_logger
from core.models import AppData

logger = get_logger("stuck_audit")

LAST_AUDIT_KEY = "lastStuckAuditDate"
EVENT_STUCK_AUDIT = "stuck_audit"


def audit_due(last_run_date: Optional[str], now: datetime, hour: Optional[int] = None) -> bool:
    """
    当地时间到达审计小时，且今天还没有跑过。

    Args:
        last_run_date: 上次审计的本地日期 (YYYY-MM-DD)，从未运行为 None
    """
    audit_hour = config.AUDIT_HOUR if hour is None else hour
    local = now.astimezone()
    if local.hour < audit_hour:
        return False
    return last_run_date != local.date().isoformat()


async def run_stuck_audit(service: GoalService, with_nudges: bool = True) -> Dict[str, Any]:
    now = service.now()
    stuck = service.run_audit()
    nudges = await service.stuck_nudges() if with_nudges and stuck else []
    return {
        "type": EVENT_STUCK_AUDIT,
        "date": now.astimezone().date().isoformat(),
        "stuck": [
            {
                "goal_id": s.goal_id,
                "task_id": s.task_id,
                "task_name": s.task_name,
                "progress": s.progress,
                "days": s.days_in_current_state,
            }
            for s in stuck
        ],
        "nudges": nudges,
        "timestamp": now.isoformat(),
    }


async def check_and_audit(
    service: GoalService,
    with_nudges: bool = True,
    force: bool = False,
) -> Tuple[bool, Optional[Dict[str, Any]]]:
    """
    到期则执行审计并记录日期。

    Returns:
        Tuple of (ran: bool, event: dict or None)
    """
    now = service.now()
    last_run = service.data.extras.get(LAST_AUDIT_KEY)
    if not force and not audit_due(last_run, now):
        return False, None

    event = await run_stuck_audit(service, with_nudges=with_nudges)

    def mark(data: AppData, at: datetime) -> None:
        data.extras[LAST_AUDIT_KEY] = event["date"]

    service.store.update(mark)
    logger.info(f"Stuck audit ran: {len(event['stuck'])} stuck task(s)")
    return True, event
