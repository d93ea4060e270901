import math
import os
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# Prompt 模板目录
PROMPTS_DIR = Path(__file__).parent.parent / "config" / "prompts"

SECONDS_PER_DAY = 24 * 60 * 60

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_TAGS = re.compile(r"<[^>]*>")
_SCRIPT_BLOCKS = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_DANGEROUS_URLS = re.compile(r"(?:javascript|data):\S*", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


# --- Time helpers ---

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso(value: Any) -> Optional[datetime]:
    """
    解析 ISO 时间戳，统一为带时区的 UTC datetime。

    接受 datetime 或字符串（支持 "Z" 后缀）；无时区的值按 UTC 处理。
    无法解析时返回 None。
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Serialize a datetime the way the stored blob expects (UTC, ms, 'Z')."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = moment.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from start to end, floored."""
    return math.floor((end - start).total_seconds() / SECONDS_PER_DAY)


def within_last_days(moment: Optional[datetime], days: int, now: datetime) -> bool:
    """True when 0 <= now - moment <= days (both bounds inclusive)."""
    if moment is None:
        return False
    delta = now - moment
    return timedelta(0) <= delta <= timedelta(days=days)


# --- Text helpers ---

def compact_text(value: Any, max_len: int) -> str:
    """
    压缩文本：去除控制字符、合并空白，超长时以省略号截断。
    非字符串输入返回空字符串。
    """
    if not isinstance(value, str):
        return ""
    cleaned = _WHITESPACE.sub(" ", _CONTROL_CHARS.sub(" ", value)).strip()
    if not cleaned:
        return ""
    if len(cleaned) > max_len:
        return cleaned[: max_len - 1] + "…"
    return cleaned


def sanitize_text(value: Any) -> str:
    """Strip markup, script blocks, dangerous URLs and control characters."""
    if not isinstance(value, str):
        return ""
    text = value.replace("\x00", "")
    text = re.sub(r"[\t\r\n]+", " ", text)
    text = re.sub(r"[\x01-\x08\x0b\x0c\x0e-\x1f\x7f]", "", text)
    text = _SCRIPT_BLOCKS.sub("", text)
    text = _TAGS.sub("", text)
    text = _DANGEROUS_URLS.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def load_prompt(name: str, variables: Optional[Dict[str, Any]] = None) -> str:
    """
    加载 Prompt 模板文件，支持子目录和变量注入。

    Args:
        name: Prompt 名称，支持子目录 (如 "coach/finish_summary")
        variables: 变量字典，用于替换 {var} 占位符

    Returns:
        渲染后的 Prompt 字符串；模板不存在时返回空字符串
    """
    prompt_path = PROMPTS_DIR / f"{name.replace('/', os.sep)}.md"

    if not prompt_path.exists():
        return ""

    template = prompt_path.read_text(encoding="utf-8")

    if variables:
        for key, value in variables.items():
            template = template.replace(f"{{{key}}}", str(value))

    return template.strip()
