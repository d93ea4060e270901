"""
Finish OS 日志配置模块。

输出目标：
- logs/system.log: 常规操作日志 (INFO+)
- logs/error.log: 异常堆栈 (ERROR/CRITICAL)
- logs/corruption_dump.log: 迁移/校验发现的数据不一致明细
- console (stderr): 面向用户的提示 (默认 WARNING+，CLI -v 时 INFO+)

日志目录可通过 FINISH_OS_LOG_DIR 覆盖。
"""
import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable, Optional

ROOT_LOGGER_NAME = "finish_os"

# 单个日志文件上限与保留份数
MAX_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 3

FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
CONSOLE_FORMAT = "[%(levelname)s] %(message)s"


def get_logs_dir() -> Path:
    raw = os.getenv("FINISH_OS_LOG_DIR", "").strip()
    if raw:
        return Path(raw).expanduser()
    return Path(__file__).parent.parent / "logs"


def _rotating_handler(path: Path, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging(
    log_level: int = logging.INFO,
    console_level: int = logging.WARNING,
    logs_dir: Optional[Path] = None,
) -> logging.Logger:
    """
    初始化 finish_os 日志树。重复调用会替换已有 handler。

    Args:
        log_level: system.log 的级别
        console_level: 控制台级别
        logs_dir: 日志目录（默认 get_logs_dir()）
    """
    target_dir = logs_dir or get_logs_dir()
    target_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    root.addHandler(_rotating_handler(target_dir / "system.log", log_level))
    root.addHandler(_rotating_handler(target_dir / "error.log", logging.ERROR))

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root.addHandler(console)

    return root


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """finish_os 命名空间下的模块 logger，如 get_logger("persistence")"""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
    return logging.getLogger(ROOT_LOGGER_NAME)


def log_corruption(source: str, errors: Iterable[str]) -> None:
    """
    把一致性校验错误追加到 corruption_dump.log，并在主日志告警。

    Args:
        source: 出错的数据来源，如 "normalized blob"
        errors: 校验错误列表
    """
    errors = list(errors)
    logs_dir = get_logs_dir()
    logs_dir.mkdir(parents=True, exist_ok=True)

    with open(logs_dir / "corruption_dump.log", "a", encoding="utf-8") as f:
        f.write(f"[{datetime.now().isoformat()}] {source}: {len(errors)} consistency error(s)\n")
        for error in errors:
            f.write(f"  - {error}\n")
        f.write("-" * 50 + "\n")

    get_logger("normalization").warning(f"数据不一致 ({source}): {'; '.join(errors[:5])}")
