"""
AppStore: 进程内唯一的状态快照。

每次变更:
1. 深拷贝当前快照得到草稿
2. 在草稿上执行 mutator（校验失败抛 ValidationError，快照不变）
3. 在草稿上重算派生字段（stuck 标志、目标告警、完成度）
4. 替换快照并通知订阅者（持久化控制器据此防抖保存）

读者永远看不到 "进度已更新但 stuck 标志过期" 的中间态。
"""
import copy
from datetime import datetime
from typing import Callable, List, Optional, TypeVar

from core.logger import get_logger
from core.models import AppData
from core.stuck_detector import refresh_all
from core.utils import utc_now

logger = get_logger("app_store")

T = TypeVar("T")
Clock = Callable[[], datetime]
Subscriber = Callable[[AppData], None]


class AppStore:
    def __init__(self, data: Optional[AppData] = None, clock: Optional[Clock] = None):
        self._clock = clock or utc_now
        self._subscribers: List[Subscriber] = []
        self._data = data if data is not None else AppData()
        refresh_all(self._data, self.now())

    @property
    def data(self) -> AppData:
        """当前快照。调用方只读，修改必须走 update()。"""
        return self._data

    def now(self) -> datetime:
        return self._clock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def update(self, mutator: Callable[[AppData, datetime], T]) -> T:
        """
        Apply mutator to a draft copy and publish it.

        A mutator that leaves the draft equal to the current snapshot
        (e.g. a stale session end) publishes nothing.
        """
        now = self.now()
        draft = copy.deepcopy(self._data)
        result = mutator(draft, now)

        if draft == self._data:
            return result

        refresh_all(draft, now)
        self._data = draft
        self._notify()
        return result

    def replace(self, data: AppData, notify: bool = True) -> None:
        """整体替换快照（加载 / 导入）"""
        refresh_all(data, self.now())
        self._data = data
        if notify:
            self._notify()

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            callback(self._data)
