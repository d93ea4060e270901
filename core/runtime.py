"""
Process runtime: the state snapshot, its persistence controller and the goal service.

生命周期: start()（加载一次） -> 服务 -> stop()（合并挂起进度并 flush）。
Web 服务和 CLI 共用同一套装配。
"""
from typing import Optional

from core.app_store import AppStore, Clock
from core.goal_service import GoalService
from core.llm_adapter import BaseLLMAdapter
from core.logger import get_logger
from core.persistence import PersistenceController
from core.storage import JsonFileStore

logger = get_logger("runtime")


class Runtime:
    def __init__(
        self,
        storage: Optional[JsonFileStore] = None,
        adapter: Optional[BaseLLMAdapter] = None,
        clock: Optional[Clock] = None,
        debounce_seconds: Optional[float] = None,
        progress_delay_seconds: Optional[float] = None,
    ):
        self.store = AppStore(clock=clock)
        self.persistence = PersistenceController(self.store, storage, debounce_seconds)
        self.service = GoalService(self.store, adapter, progress_delay_seconds)

    async def start(self) -> None:
        await self.persistence.load()
        if self.persistence.notice:
            logger.warning(self.persistence.notice)

    async def stop(self) -> None:
        self.service.flush_progress()
        await self.persistence.flush()
        self.persistence.close()
        logger.info(f"Runtime stopped after {self.persistence.save_count} save(s)")
