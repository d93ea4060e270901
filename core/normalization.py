"""
Normalization / Migration Layer

两种磁盘形态:
- legacy: {"pillars": [{..., "tasks": [...]}], "user", "settings", ...}
- normalized: {"_version": "2.0.0-normalized",
               "entities": {"pillars", "tasks", "ideas"},
               "ids": {"pillarIds", "allTaskIds", "pillarTaskIds", "ideaIds"},
               ...透传键}

形态由显式的 _version 判别，每种形态一个 Adapter。
normalized 数据校验失败时按 legacy 处理；legacy -> normalized 的迁移受保护：
任何一步失败都跳过迁移，保持 legacy 原样，绝不产出损坏的 normalized 副本。
"""
import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.codec import app_data_to_dict, dict_to_app_data
from core.exceptions import MigrationError
from core.logger import get_logger, log_corruption
from core.models import AiTone, AppData, GoalType, TaskStatus
from core.utils import parse_iso, to_iso

logger = get_logger("normalization")

NORMALIZED_VERSION = "2.0.0-normalized"
LEGACY_BACKUP_VERSION = "1.0.0-legacy"

SHAPE_LEGACY = "legacy"
SHAPE_NORMALIZED = "normalized"
SHAPE_UNKNOWN = "unknown"

GOAL_TYPES = {t.value for t in GoalType}
AI_TONES = {t.value for t in AiTone}

# normalized 形态中由 entities/ids 承载的键，其余键原样透传
_NESTED_KEYS = {"pillars", "ideas"}
_NORMALIZED_KEYS = {"entities", "ids", "_version"}


# ============================================================
# Detection
# ============================================================

def is_normalized(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    version = payload.get("_version")
    return (
        isinstance(payload.get("entities"), dict)
        and isinstance(payload.get("ids"), dict)
        and isinstance(version, str)
        and "normalized" in version
    )


def is_legacy(payload: Any) -> bool:
    return isinstance(payload, dict) and isinstance(payload.get("pillars"), list) and "entities" not in payload


def detect_shape(payload: Any) -> str:
    if is_normalized(payload):
        return SHAPE_NORMALIZED
    if is_legacy(payload):
        return SHAPE_LEGACY
    return SHAPE_UNKNOWN


# ============================================================
# Normalize / denormalize
# ============================================================

def _task_id(task: Dict[str, Any], pillar_id: Any, index: int) -> int:
    raw = task.get("id")
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    try:
        return int(pillar_id) * 1000 + index
    except (TypeError, ValueError):
        return index


def normalize(legacy: Dict[str, Any]) -> Dict[str, Any]:
    """Legacy nested blob -> normalized entity tables. Input is not modified."""
    pillars_table: Dict[str, Any] = {}
    tasks_table: Dict[str, Any] = {}
    ideas_table: Dict[str, Any] = {}
    pillar_ids: List[Any] = []
    all_task_ids: List[int] = []
    pillar_task_ids: Dict[str, List[int]] = {}
    idea_ids: List[str] = []

    for pillar in legacy.get("pillars") or []:
        pillar = copy.deepcopy(pillar)
        tasks = pillar.pop("tasks", None) or []
        key = str(pillar.get("id"))

        owned = []
        for index, task in enumerate(tasks):
            task_id = _task_id(task, pillar.get("id"), index)
            tasks_table[str(task_id)] = dict(task, id=task_id)
            owned.append(task_id)
            all_task_ids.append(task_id)

        pillars_table[key] = pillar
        pillar_ids.append(pillar.get("id"))
        pillar_task_ids[key] = owned

    for idea in legacy.get("ideas") or []:
        idea_id = str(idea.get("id"))
        ideas_table[idea_id] = copy.deepcopy(idea)
        idea_ids.append(idea_id)

    normalized = {k: copy.deepcopy(v) for k, v in legacy.items() if k not in _NESTED_KEYS}
    normalized.update({
        "_version": NORMALIZED_VERSION,
        "entities": {"pillars": pillars_table, "tasks": tasks_table, "ideas": ideas_table},
        "ids": {
            "pillarIds": pillar_ids,
            "allTaskIds": all_task_ids,
            "pillarTaskIds": pillar_task_ids,
            "ideaIds": idea_ids,
        },
    })

    logger.debug(f"Normalized {len(pillar_ids)} pillars, {len(all_task_ids)} tasks")
    return normalized


def denormalize(normalized: Dict[str, Any]) -> Dict[str, Any]:
    """Normalized entity tables -> legacy nested blob. Dangling ids are skipped."""
    entities = normalized.get("entities") or {}
    ids = normalized.get("ids") or {}
    pillars_table = entities.get("pillars") or {}
    tasks_table = entities.get("tasks") or {}
    ideas_table = entities.get("ideas") or {}
    pillar_task_ids = ids.get("pillarTaskIds") or {}

    pillars = []
    for pillar_id in ids.get("pillarIds") or []:
        pillar = pillars_table.get(str(pillar_id))
        if pillar is None:
            continue
        pillar = copy.deepcopy(pillar)
        pillar["tasks"] = [
            copy.deepcopy(tasks_table[str(task_id)])
            for task_id in pillar_task_ids.get(str(pillar_id)) or []
            if str(task_id) in tasks_table
        ]
        pillars.append(pillar)

    ideas = [
        copy.deepcopy(ideas_table[str(idea_id)])
        for idea_id in ids.get("ideaIds") or []
        if str(idea_id) in ideas_table
    ]

    legacy = {k: copy.deepcopy(v) for k, v in normalized.items() if k not in _NORMALIZED_KEYS}
    legacy["pillars"] = pillars
    legacy["ideas"] = ideas
    return legacy


# ============================================================
# Validation
# ============================================================

def validate_normalized(payload: Dict[str, Any]) -> List[str]:
    """
    一致性校验：entities 与 ids 数量一致、无悬空引用、必需字段存在。

    Returns:
        错误列表（空列表表示通过）
    """
    errors: List[str] = []
    entities = payload.get("entities") or {}
    ids = payload.get("ids") or {}

    pillars_table = entities.get("pillars")
    tasks_table = entities.get("tasks")
    if not isinstance(pillars_table, dict) or not isinstance(tasks_table, dict):
        return ["Missing entity tables"]

    pillar_ids = ids.get("pillarIds")
    all_task_ids = ids.get("allTaskIds")
    pillar_task_ids = ids.get("pillarTaskIds") or {}
    if not isinstance(pillar_ids, list) or not isinstance(all_task_ids, list):
        return ["Missing id indexes"]

    if len(pillars_table) != len(pillar_ids):
        errors.append(
            f"Pillar count mismatch: entities({len(pillars_table)}) vs ids({len(pillar_ids)})"
        )
    for pillar_id in pillar_ids:
        if str(pillar_id) not in pillars_table:
            errors.append(f"Missing pillar entity for ID: {pillar_id}")

    if len(tasks_table) != len(all_task_ids):
        errors.append(
            f"Task count mismatch: entities({len(tasks_table)}) vs ids({len(all_task_ids)})"
        )
    for pillar_id in pillar_ids:
        for task_id in pillar_task_ids.get(str(pillar_id)) or []:
            if str(task_id) not in tasks_table:
                errors.append(f"Missing task entity for pillar {pillar_id}: {task_id}")

    ideas_table = entities.get("ideas")
    idea_ids = ids.get("ideaIds")
    if isinstance(ideas_table, dict) and isinstance(idea_ids, list):
        if len(ideas_table) != len(idea_ids):
            errors.append(f"Idea count mismatch: entities({len(ideas_table)}) vs ids({len(idea_ids)})")

    if not isinstance(payload.get("user"), dict):
        errors.append("Missing user data")
    if not isinstance(payload.get("settings"), dict):
        errors.append("Missing settings")

    return errors


def validate_legacy(payload: Dict[str, Any]) -> List[str]:
    errors: List[str] = []
    pillars = payload.get("pillars")
    if not isinstance(pillars, list):
        errors.append("Invalid pillars data")
        pillars = []

    if not isinstance(payload.get("user"), dict):
        errors.append("Missing user data")
    if not isinstance(payload.get("settings"), dict):
        errors.append("Missing settings")

    for index, pillar in enumerate(pillars):
        if not isinstance(pillar, dict):
            errors.append(f"Pillar {index} is not an object")
            continue
        if pillar.get("id") is None:
            errors.append(f"Pillar {index} missing ID")
        if not pillar.get("name"):
            errors.append(f"Pillar {index} missing name")
        completion = pillar.get("completion")
        if isinstance(completion, bool) or not isinstance(completion, (int, float)):
            errors.append(f"Pillar {index} invalid completion")
    return errors


# ============================================================
# Defaulting pass
# ============================================================

def upgrade_task(task: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """
    旧任务升级:
    - {"done": bool} 形式转为 progress 0/100
    - 缺失 createdAt 时以 now 补齐
    - 有进度但没有历史时，以 lastProgressUpdate / createdAt 播种一条记录
    """
    task = dict(task)
    stamp = to_iso(now)

    if "progress" not in task:
        done = bool(task.pop("done", False))
        task["progress"] = 100 if done else 0
        task["status"] = TaskStatus.DONE.value if done else TaskStatus.ACTIVE.value
        task.setdefault("priority", "medium")
        if done and not task.get("completedAt"):
            task["completedAt"] = stamp
    else:
        task.pop("done", None)

    if parse_iso(task.get("createdAt")) is None:
        task["createdAt"] = stamp

    progress = task.get("progress")
    if not task.get("progressHistory") and isinstance(progress, (int, float)) and progress > 0:
        seed = task.get("lastProgressUpdate") if parse_iso(task.get("lastProgressUpdate")) else task["createdAt"]
        task["progressHistory"] = [{"progress": progress, "timestamp": seed}]

    return task


def _assign_missing_task_ids(pillars: List[Dict[str, Any]]) -> None:
    """最老的数据里任务没有 id：按全局最大 id 递增补齐"""
    def valid(value):
        return isinstance(value, int) and not isinstance(value, bool)

    next_id = max(
        (t["id"] for p in pillars for t in p["tasks"] if valid(t.get("id"))),
        default=0,
    ) + 1
    for pillar in pillars:
        for task in pillar["tasks"]:
            if not valid(task.get("id")):
                task["id"] = next_id
                next_id += 1


def apply_defaults(payload: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """
    每次加载都执行的默认值回填（返回新 dict，不修改输入）。

    - 没有任何合法 type 时：第一个目标为 main，其余 secondary
    - 否则非法 type 回填 secondary；多个 main 时只保留第一个
    - 非法 aiTone 回填 psychoeducation，strategy 缺失回填 ""
    - 缺失的会话 / 想法集合初始化为空
    """
    data = copy.deepcopy(payload)
    raw_pillars = data.get("pillars")
    pillars = [p for p in raw_pillars if isinstance(p, dict)] if isinstance(raw_pillars, list) else []

    legacy_typing = bool(pillars) and all(p.get("type") not in GOAL_TYPES for p in pillars)
    seen_main = False
    for index, pillar in enumerate(pillars):
        if pillar.get("type") not in GOAL_TYPES:
            pillar["type"] = GoalType.MAIN.value if (legacy_typing and index == 0) else GoalType.SECONDARY.value
        if pillar["type"] == GoalType.MAIN.value:
            if seen_main:
                pillar["type"] = GoalType.SECONDARY.value
            seen_main = True

        if pillar.get("aiTone") not in AI_TONES:
            pillar["aiTone"] = AiTone.PSYCHOEDUCATION.value
        if not isinstance(pillar.get("strategy"), str):
            pillar["strategy"] = ""
        if not isinstance(pillar.get("rewards"), list):
            pillar["rewards"] = []

        tasks = pillar.get("tasks") if isinstance(pillar.get("tasks"), list) else []
        pillar["tasks"] = [upgrade_task(t, now) for t in tasks if isinstance(t, dict)]

    _assign_missing_task_ids(pillars)
    data["pillars"] = pillars
    if not isinstance(data.get("currentFinishSession"), dict):
        data["currentFinishSession"] = None
    if not isinstance(data.get("finishSessionsHistory"), list):
        data["finishSessionsHistory"] = []
    if not isinstance(data.get("ideas"), list):
        data["ideas"] = []
    if not isinstance(data.get("user"), dict):
        data["user"] = {}
    if not isinstance(data.get("settings"), dict):
        data["settings"] = {}
    return data


# ============================================================
# Guarded migration
# ============================================================

@dataclass
class MigrationResult:
    success: bool
    data: Optional[Dict[str, Any]] = None
    backup: Optional[Dict[str, Any]] = None
    errors: List[str] = field(default_factory=list)


def create_backup(legacy: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    return {
        "timestamp": to_iso(now),
        "version": LEGACY_BACKUP_VERSION,
        "data": copy.deepcopy(legacy),
    }


def restore_backup(backup: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(backup, dict) or backup.get("version") != LEGACY_BACKUP_VERSION or "data" not in backup:
        raise MigrationError(["Invalid backup format"])
    return copy.deepcopy(backup["data"])


def perform_migration(legacy: Dict[str, Any], now: datetime) -> MigrationResult:
    """
    validate legacy -> backup -> normalize -> validate normalized

    从不抛异常；失败时 success=False，调用方继续使用 legacy。
    """
    try:
        errors = validate_legacy(legacy)
        if errors:
            raise MigrationError(errors)

        backup = create_backup(legacy, now)
        normalized = normalize(legacy)

        errors = validate_normalized(normalized)
        if errors:
            raise MigrationError(errors)
    except MigrationError as e:
        log_corruption("legacy migration", e.errors)
        return MigrationResult(success=False, errors=e.errors)
    except (TypeError, ValueError, AttributeError, KeyError) as e:
        logger.error(f"Migration failed: {e}", exc_info=True)
        return MigrationResult(success=False, errors=[f"Migration failed: {e}"])

    logger.info(f"Migration complete: {len(normalized['ids']['pillarIds'])} pillars")
    return MigrationResult(success=True, data=normalized, backup=backup)


# ============================================================
# Adapters (one per shape)
# ============================================================

class LegacyAdapter:
    """legacy 形态 <-> AppData"""

    shape = SHAPE_LEGACY

    def to_legacy(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return payload

    def decode(self, payload: Dict[str, Any], now: datetime) -> AppData:
        return dict_to_app_data(apply_defaults(self.to_legacy(payload), now))

    def encode(self, data: AppData) -> Dict[str, Any]:
        return app_data_to_dict(data)


class NormalizedAdapter(LegacyAdapter):
    """normalized 形态 <-> AppData（内部经由 legacy 形态）"""

    shape = SHAPE_NORMALIZED

    def validate(self, payload: Dict[str, Any]) -> List[str]:
        return validate_normalized(payload)

    def to_legacy(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return denormalize(payload)

    def encode(self, data: AppData) -> Dict[str, Any]:
        return normalize(app_data_to_dict(data))


ADAPTERS = {
    SHAPE_LEGACY: LegacyAdapter(),
    SHAPE_NORMALIZED: NormalizedAdapter(),
}


def get_adapter(shape: str) -> LegacyAdapter:
    return ADAPTERS.get(shape, ADAPTERS[SHAPE_LEGACY])


@dataclass
class DecodedPayload:
    """
    加载结果。

    shape: 后续保存使用的形态（迁移成功为 normalized，否则 legacy）
    source_shape: 磁盘上读到的形态
    corrupted: normalized 数据未通过校验，已按 legacy 处理
    """
    data: AppData
    shape: str
    source_shape: str
    migration: Optional[MigrationResult] = None
    corrupted: bool = False
    errors: List[str] = field(default_factory=list)


def decode_payload(payload: Dict[str, Any], now: datetime) -> DecodedPayload:
    """
    Select the adapter by the _version discriminator and decode.

    Never raises for consistency problems: an invalid normalized blob is read
    as legacy, a failed legacy migration keeps the legacy shape.
    """
    source_shape = detect_shape(payload)

    if source_shape == SHAPE_NORMALIZED:
        adapter = ADAPTERS[SHAPE_NORMALIZED]
        errors = adapter.validate(payload)
        if not errors:
            return DecodedPayload(
                data=adapter.decode(payload, now),
                shape=SHAPE_NORMALIZED,
                source_shape=source_shape,
            )
        log_corruption("normalized blob", errors)
        # 按 legacy 读取：悬空引用被跳过，其余实体保留
        data = ADAPTERS[SHAPE_LEGACY].decode(denormalize(payload), now)
        return DecodedPayload(
            data=data,
            shape=SHAPE_LEGACY,
            source_shape=source_shape,
            corrupted=True,
            errors=errors,
        )

    defaulted = apply_defaults(payload, now)
    migration = perform_migration(defaulted, now)
    return DecodedPayload(
        data=dict_to_app_data(defaulted),
        shape=SHAPE_NORMALIZED if migration.success else SHAPE_LEGACY,
        source_shape=source_shape,
        migration=migration,
        errors=list(migration.errors),
    )


def encode_payload(data: AppData, shape: str) -> Dict[str, Any]:
    return get_adapter(shape).encode(data)
