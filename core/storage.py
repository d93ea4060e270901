"""
JSON file store for the single data blob.

同步 I/O；异步调用方通过 asyncio.to_thread 使用。
"""
import json
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from core.exceptions import StorageError
from core.logger import get_logger
from core.normalization import is_normalized
from core.paths import get_store_path
from core.utils import to_iso, utc_now

logger = get_logger("storage")

EXPORT_VERSION = "1.0"


class JsonFileStore:
    """Durable store: one JSON document at a fixed path."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path if path is not None else get_store_path()

    def exists(self) -> bool:
        return self.path.exists()

    def read_raw(self) -> Optional[str]:
        if not self.path.exists():
            return None
        try:
            return self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Cannot read {self.path}: {e}", str(self.path)) from e

    def read(self) -> Optional[Dict[str, Any]]:
        """
        读取数据 blob。

        Returns:
            解析后的 dict；文件不存在时返回 None

        Raises:
            StorageError: 文件不可读、不是合法 JSON 或顶层不是对象
        """
        raw = self.read_raw()
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageError(f"Invalid JSON in {self.path}: {e}", str(self.path)) from e
        if not isinstance(payload, dict):
            raise StorageError(f"Unexpected top-level value in {self.path}", str(self.path))
        return payload

    def write(self, payload: Dict[str, Any]) -> None:
        """覆盖写入整个 blob（先写临时文件再替换）"""
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
            tmp.replace(self.path)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Cannot write {self.path}: {e}", str(self.path)) from e

    def backup(self, label: str = "backup", now: Optional[datetime] = None) -> Optional[Path]:
        """Copy the current blob next to itself with a timestamp suffix."""
        if not self.path.exists():
            return None
        stamp = (now or utc_now()).strftime("%Y%m%d_%H%M%S")
        target = self.path.with_name(f"{self.path.stem}.{label}_{stamp}{self.path.suffix}")
        shutil.copy2(self.path, target)
        logger.info(f"Backup written: {target}")
        return target

    def write_backup(self, payload: Dict[str, Any], label: str, now: Optional[datetime] = None) -> Path:
        """Write an in-memory backup document (e.g. the pre-migration copy)."""
        stamp = (now or utc_now()).strftime("%Y%m%d_%H%M%S")
        target = self.path.with_name(f"{self.path.stem}.{label}_{stamp}{self.path.suffix}")
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        logger.info(f"Backup written: {target}")
        return target


# --- Export / import ---

def wrap_export(payload: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    version = payload.get("_version") if is_normalized(payload) else EXPORT_VERSION
    return {
        "exportedAt": to_iso(now or utc_now()),
        "version": version,
        "data": payload,
    }


def unwrap_import(document: Any) -> Dict[str, Any]:
    """
    接受带包装 {"exportedAt", "version", "data"} 或裸 payload。

    Raises:
        StorageError: 文档不是对象
    """
    if not isinstance(document, dict):
        raise StorageError("Import document must be a JSON object")
    inner = document.get("data")
    if isinstance(inner, dict) and ("exportedAt" in document or "version" in document):
        return inner
    return document


def export_to_file(payload: Dict[str, Any], path: Path, now: Optional[datetime] = None) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(wrap_export(payload, now), f, ensure_ascii=False, indent=2)
    return path


def import_from_file(path: Path) -> Dict[str, Any]:
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise StorageError(f"Cannot import {path}: {e}", str(path)) from e
    return unwrap_import(document)
