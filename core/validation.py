"""
Input validation at the mutation boundary.

每个函数要么返回清洗后的值，要么抛出 ValidationError（字段级）。
调用方在修改草稿前完成校验，失败时状态保持不变。
"""
from typing import Any, Iterable, List, Optional

from core.config_manager import config
from core.exceptions import ValidationError
from core.models import (
    AiTone,
    ClassificationStatus,
    GoalStatus,
    GoalType,
    RewardConditionKind,
    RewardType,
    TaskPriority,
    TaskStatus,
    TaskType,
)
from core.utils import sanitize_text


def require_text(field: str, value: Any, max_len: int) -> str:
    text = sanitize_text(value)
    if not text:
        raise ValidationError(field, f"{field} is required")
    if len(text) > max_len:
        raise ValidationError(
            field,
            f"{field} is too long ({len(text)} > {max_len})",
            hint=f"Keep {field} under {max_len} characters",
        )
    return text


def optional_text(field: str, value: Any, max_len: int) -> Optional[str]:
    if value is None:
        return None
    text = sanitize_text(value)
    if len(text) > max_len:
        raise ValidationError(field, f"{field} is too long ({len(text)} > {max_len})")
    return text or None


def goal_name(value: Any) -> str:
    return require_text("name", value, config.GOAL_NAME_MAX_LENGTH)


def task_name(value: Any) -> str:
    return require_text("name", value, config.TASK_NAME_MAX_LENGTH)


def description(value: Any) -> str:
    return optional_text("description", value, config.DESCRIPTION_MAX_LENGTH) or ""


def note(value: Any) -> Optional[str]:
    return optional_text("note", value, config.NOTE_MAX_LENGTH)


def progress(value: Any) -> int:
    """Progress must be an integer-like number; out-of-range values are clamped."""
    if isinstance(value, bool):
        raise ValidationError("progress", "progress must be a number")
    try:
        number = round(float(value))
    except (TypeError, ValueError):
        raise ValidationError("progress", "progress must be a number")
    return max(0, min(100, int(number)))


def choice(field: str, enum_cls, value: Any):
    """Parse an enum member by value, raising a field-level error on miss."""
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(field, f"invalid {field}: {value!r}", hint=f"Use one of: {allowed}")


def goal_type(value: Any) -> GoalType:
    return choice("type", GoalType, value)


def goal_status(value: Any) -> GoalStatus:
    return choice("status", GoalStatus, value)


def ai_tone(value: Any) -> AiTone:
    return choice("ai_tone", AiTone, value)


def task_type(value: Any) -> TaskType:
    return choice("type", TaskType, value)


def task_status(value: Any) -> TaskStatus:
    return choice("status", TaskStatus, value)


def task_priority(value: Any) -> TaskPriority:
    return choice("priority", TaskPriority, value)


def classification_status(value: Any) -> ClassificationStatus:
    return choice("classification", ClassificationStatus, value)


# --- Ideas ---

def idea_title(value: Any) -> str:
    return require_text("title", value, config.IDEA_TITLE_MAX_LENGTH)


def idea_description(value: Any) -> Optional[str]:
    return optional_text("description", value, config.DESCRIPTION_MAX_LENGTH)


def idea_tags(values: Optional[Iterable[Any]]) -> List[str]:
    """Deduplicate (case-insensitive, first spelling wins) and cap the tag list."""
    if values is None:
        return []
    tags: List[str] = []
    seen = set()
    for raw in values:
        tag = sanitize_text(raw)
        if not tag or tag.lower() in seen:
            continue
        seen.add(tag.lower())
        tags.append(tag)
    if len(tags) > config.IDEA_MAX_TAGS:
        raise ValidationError("tags", f"too many tags ({len(tags)} > {config.IDEA_MAX_TAGS})")
    return tags


# --- Rewards ---

def reward_condition(kind: Any, value: Any):
    """
    校验奖励条件，返回 (kind, value)。

    百分比阈值截断到 0..100，计数至少为 1。
    """
    kind = choice("condition", RewardConditionKind, kind)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError("condition", "condition value must be an integer")
    if kind == RewardConditionKind.COMPLETION_PERCENT:
        number = max(0, min(100, number))
    else:
        number = max(1, number)
    return kind.value, number


def reward_type(value: Any) -> RewardType:
    return choice("type", RewardType, value)
