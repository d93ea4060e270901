"""
Persistence Controller

生命周期: init -> load（仅一次，异步） -> 每次状态变更防抖保存 -> 退出前 flush

- loaded 闸门：加载完成前的变更不会触发保存，避免默认数据覆盖真实数据
- 防抖：静默期内的多次变更合并为一次整体写入
- 加载失败：回退默认数据集并给出提示，不中断启动
- 保存失败：记录日志，下一次变更时自然重试（无退避、无队列）
"""
import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from core.app_store import AppStore
from core.config_manager import config
from core.defaults import build_default_data
from core.exceptions import StorageError
from core.logger import get_logger
from core.models import AppData
from core.normalization import (
    SHAPE_LEGACY,
    SHAPE_NORMALIZED,
    decode_payload,
    encode_payload,
)
from core.storage import JsonFileStore

logger = get_logger("persistence")

LOAD_FAILED_NOTICE = "Data could not be loaded, defaults applied"
CORRUPTED_NOTICE = "Stored data had consistency errors, kept as legacy"


class MigrationStatus:
    NOT_STARTED = "not_started"
    COMPLETED = "completed"
    SKIPPED = "skipped"          # 已经是 normalized，无需迁移
    ERROR = "error"              # 迁移被拒绝，继续使用 legacy


class PersistenceController:
    def __init__(
        self,
        store: AppStore,
        storage: Optional[JsonFileStore] = None,
        debounce_seconds: Optional[float] = None,
        default_factory: Callable[[datetime], AppData] = build_default_data,
    ):
        self.store = store
        self.storage = storage or JsonFileStore()
        self.debounce_seconds = (
            config.SAVE_DEBOUNCE_SECONDS if debounce_seconds is None else debounce_seconds
        )
        self._default_factory = default_factory

        self.loaded = False
        self.notice: Optional[str] = None
        self.shape = SHAPE_LEGACY
        self.migration_status = MigrationStatus.NOT_STARTED
        self.save_count = 0
        self.last_error: Optional[str] = None

        self._load_task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._save_task: Optional[asyncio.Task] = None
        self._dirty = False

        self._unsubscribe = store.subscribe(self.notify)

    # ------------------------------------------------------------
    # Load
    # ------------------------------------------------------------

    async def load(self) -> AppData:
        """加载一次；重复调用等待同一次加载结果。"""
        if self._load_task is None:
            self._load_task = asyncio.ensure_future(self._load())
        await self._load_task
        return self.store.data

    async def _load(self) -> None:
        now = self.store.now()
        needs_save = False

        try:
            payload = await asyncio.to_thread(self.storage.read)
        except StorageError as e:
            logger.error(f"Load failed, using defaults: {e}")
            self._backup_unreadable(now)
            self.notice = LOAD_FAILED_NOTICE
            data = self._default_factory(now)
            needs_save = True
        else:
            if payload is None:
                logger.info("No stored data, starting from defaults")
                data = self._default_factory(now)
                needs_save = True
            else:
                data, needs_save = self._decode(payload, now)

        self.store.replace(data, notify=False)
        self.loaded = True
        logger.info(f"Loaded {len(data.goals)} goals (shape={self.shape})")

        if needs_save:
            self._dirty = True
            self._schedule()

    def _decode(self, payload: Dict[str, Any], now: datetime):
        decoded = decode_payload(payload, now)
        self.shape = decoded.shape

        if decoded.corrupted:
            self._backup_unreadable(now)
            self.migration_status = MigrationStatus.ERROR
            self.notice = CORRUPTED_NOTICE
            return decoded.data, False

        if decoded.migration is None:
            self.migration_status = MigrationStatus.SKIPPED
            return decoded.data, False

        if decoded.migration.success:
            self.migration_status = MigrationStatus.COMPLETED
            try:
                self.storage.write_backup(decoded.migration.backup, "pre_migration", now)
            except OSError as e:
                logger.warning(f"Pre-migration backup failed: {e}")
            return decoded.data, True

        self.migration_status = MigrationStatus.ERROR
        return decoded.data, False

    def _backup_unreadable(self, now: datetime) -> None:
        try:
            self.storage.backup("corrupt", now)
        except OSError as e:
            logger.warning(f"Could not back up unreadable blob: {e}")

    # ------------------------------------------------------------
    # Save
    # ------------------------------------------------------------

    def notify(self, data: AppData) -> None:
        """AppStore 订阅回调"""
        if not self.loaded:
            logger.debug("Change before load finished, save suppressed")
            return
        self._dirty = True
        self._schedule()

    def _schedule(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # 没有事件循环（同步调用方）：保持 dirty，由 flush() 落盘
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.debounce_seconds, self._fire)

    def _fire(self) -> None:
        self._timer = None
        self._save_task = asyncio.ensure_future(self.save_now())

    async def save_now(self) -> bool:
        if not self.loaded:
            return False
        self._dirty = False
        try:
            payload = encode_payload(self.store.data, self.shape)
            await asyncio.to_thread(self.storage.write, payload)
        except StorageError as e:
            # 下一次变更会再次触发保存
            self._dirty = True
            self.last_error = str(e)
            logger.error(f"Save failed: {e}")
            return False
        except Exception as e:
            self._dirty = True
            self.last_error = f"{type(e).__name__}: {e}"
            logger.exception(f"Unexpected save failure: {e}")
            return False
        self.save_count += 1
        self.last_error = None
        logger.debug(f"Saved snapshot #{self.save_count} (shape={self.shape})")
        return True

    @property
    def pending(self) -> bool:
        return self._timer is not None

    async def flush(self) -> None:
        """取消防抖计时器并立即写入未保存的变更（退出前调用）"""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._save_task is not None and not self._save_task.done():
            await self._save_task
        if self._dirty:
            await self.save_now()

    async def import_payload(self, payload: Dict[str, Any]) -> AppData:
        """导入外部 blob（任一形态），替换当前状态并保存"""
        decoded = decode_payload(payload, self.store.now())
        if decoded.shape == SHAPE_NORMALIZED:
            self.shape = SHAPE_NORMALIZED
        if decoded.corrupted:
            self.shape = SHAPE_LEGACY
            self.notice = CORRUPTED_NOTICE
        self.store.replace(decoded.data)
        return self.store.data

    def export_payload(self) -> Dict[str, Any]:
        return encode_payload(self.store.data, self.shape)

    def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._unsubscribe()


class ProgressCoalescer:
    """
    进度切换的 last-write-wins 合并器。

    同一任务的多次快速切换只保留最后一个目标值；一个计时器负责把
    所有挂起的任务一起应用，中间值不会单独落盘。
    """

    def __init__(self, apply: Callable[[Dict[int, int]], None], delay_seconds: Optional[float] = None):
        self._apply = apply
        self.delay_seconds = (
            config.PROGRESS_UPDATE_DEBOUNCE_SECONDS if delay_seconds is None else delay_seconds
        )
        self._pending: Dict[int, int] = {}
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> Dict[int, int]:
        return dict(self._pending)

    def submit(self, task_id: int, progress: int) -> None:
        self._pending[task_id] = progress
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.drain()
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.delay_seconds, self.drain)

    def drain(self) -> Dict[int, int]:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        pending, self._pending = self._pending, {}
        if pending:
            self._apply(pending)
        return pending
