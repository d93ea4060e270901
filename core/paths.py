"""
Centralized filesystem paths for runtime data.
"""
import os
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent

# 固定存储键：整个数据集保存为单个 JSON blob
STORAGE_KEY = "finish_os_data"


def get_data_dir() -> Path:
    """
    Return runtime data directory.

    Priority:
    1. FINISH_OS_DATA_DIR env var
    2. <project_root>/data
    """
    raw = os.getenv("FINISH_OS_DATA_DIR", "").strip()
    if raw:
        return Path(raw).expanduser()
    return PROJECT_ROOT / "data"


def get_store_path() -> Path:
    """Return the path of the durable data blob."""
    return get_data_dir() / f"{STORAGE_KEY}.json"


DATA_DIR = get_data_dir()
