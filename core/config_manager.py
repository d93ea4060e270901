"""
Configuration Manager for Finish OS.

集中管理系统常量和配置参数。
所有经验值必须显式声明并可配置。

使用方式:
    from core.config_manager import config
    limit = config.MAX_ACTIVE_GOALS
"""
from dataclasses import dataclass
from pathlib import Path

import yaml


CONFIG_DIR = Path(__file__).parent.parent / "config"
RUNTIME_CONFIG_PATH = CONFIG_DIR / "runtime.yaml"


@dataclass
class SystemConfig:
    """
    系统运行时常量配置。

    所有值均为经验值，可通过 config/runtime.yaml 覆盖。
    """

    # === 卡住检测 (Anti-90%) ===

    # 宽限期天数：超过该天数未变化才视为卡住
    # 经验值依据：短暂停留在 90%+ 是正常的收尾节奏
    STUCK_THRESHOLD_DAYS: int = 3

    # 卡住检测的进度区间 [MIN, MAX]
    STUCK_PROGRESS_MIN: int = 90
    STUCK_PROGRESS_MAX: int = 99

    # === 目标约束 ===

    # 同时进行中的目标上限（硬限制，超出直接拒绝）
    # 经验值依据：finish-first，先完成再开新坑
    MAX_ACTIVE_GOALS: int = 3

    # === Finish Mode ===

    # 会话历史上限（FIFO 淘汰最旧的）
    MAX_SESSION_HISTORY: int = 500

    # 奖励与统计的滚动窗口（天）
    REWARD_WINDOW_DAYS: int = 7

    # === 持久化 ===

    # 保存防抖间隔（秒）
    SAVE_DEBOUNCE_SECONDS: float = 0.5

    # 进度切换防抖间隔（秒）
    PROGRESS_UPDATE_DEBOUNCE_SECONDS: float = 0.5

    # === 输入长度限制 ===
    GOAL_NAME_MAX_LENGTH: int = 120
    TASK_NAME_MAX_LENGTH: int = 200
    DESCRIPTION_MAX_LENGTH: int = 2000
    NOTE_MAX_LENGTH: int = 2000
    IDEA_TITLE_MAX_LENGTH: int = 120
    IDEA_MAX_TAGS: int = 12

    # === AI 协作 ===

    # 超时（秒）；超时一律返回无结果，由调用方回退
    AI_TIP_TIMEOUT_SECONDS: float = 10.0
    AI_SUMMARY_TIMEOUT_SECONDS: float = 12.0

    # === 调度 ===

    # 每日卡住审计时间（小时，本地时间）
    AUDIT_HOUR: int = 10


def _load_runtime_config() -> dict:
    """加载运行时配置覆盖（如果存在）。"""
    if not RUNTIME_CONFIG_PATH.exists():
        return {}

    try:
        with open(RUNTIME_CONFIG_PATH, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError):
        return {}


def get_config() -> SystemConfig:
    """
    获取系统配置实例。

    优先级：runtime.yaml > 默认值
    """
    base = SystemConfig()
    overrides = _load_runtime_config()

    for key, value in overrides.items():
        if hasattr(base, key):
            setattr(base, key, value)

    return base


# 全局配置实例（单例模式）
config = get_config()
