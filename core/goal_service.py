"""
Canonical goal domain service.

所有变更入口：校验输入 -> 在 AppStore 草稿上修改 -> 派生字段重算后发布。
校验失败抛 ValidationError，快照保持不变。
读取类方法（洞察、奖励状态、统计）每次都从当前快照重新计算。
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from core import coach
from core import validation as v
from core.app_store import AppStore
from core.config_manager import config
from core.exceptions import NotFoundError, ValidationError
from core.llm_adapter import BaseLLMAdapter
from core.logger import get_logger
from core.models import (
    AppData,
    DoneCriterion,
    DoneDefinition,
    FinishSession,
    Goal,
    GoalStatus,
    GoalType,
    Idea,
    ImplementationIntention,
    Reward,
    RewardCondition,
    RewardConditionKind,
    RewardType,
    SessionClassification,
    SessionStatus,
    Task,
)
from core.persistence import ProgressCoalescer
from core.progress import apply_progress, apply_status, toggle_target
from core.reward_evaluator import RewardStatus, evaluate
from core.session_machine import end_session as _end_session
from core.session_machine import start_session as _start_session
from core.stats import BasicStats, compute_basic_stats
from core.stuck_detector import (
    DatasetInsights,
    GoalHealth,
    StuckTask,
    TaskInsight,
    WeeklyReport,
    analyze_goal,
    analyze_task,
    compute_insights,
    find_stuck_tasks,
    weekly_report,
)

logger = get_logger("goal_service")

_UNSET = object()


class GoalService:
    """Application service for goals, tasks, finish sessions, rewards and ideas."""

    def __init__(
        self,
        store: AppStore,
        adapter: Optional[BaseLLMAdapter] = None,
        progress_delay_seconds: Optional[float] = None,
    ):
        self.store = store
        self.adapter = adapter
        self.coalescer = ProgressCoalescer(self._apply_pending_progress, progress_delay_seconds)

    @property
    def data(self) -> AppData:
        return self.store.data

    def now(self) -> datetime:
        return self.store.now()

    # ---------------------------------------------------------------------
    # Lookup helpers (operate on the draft passed in)
    # ---------------------------------------------------------------------
    @staticmethod
    def _goal(data: AppData, goal_id: int) -> Goal:
        goal = data.find_goal(goal_id)
        if goal is None:
            raise NotFoundError("goal_id", goal_id)
        return goal

    @staticmethod
    def _task(data: AppData, task_id: int) -> Task:
        _, task = data.find_task(task_id)
        if task is None:
            raise NotFoundError("task_id", task_id)
        return task

    @staticmethod
    def _demote_main(data: AppData, keep_id: int) -> None:
        for goal in data.goals:
            if goal.id != keep_id and goal.type == GoalType.MAIN:
                goal.type = GoalType.SECONDARY
                logger.info(f"Goal {goal.id} demoted to secondary")

    @staticmethod
    def _next_task_id(data: AppData) -> int:
        return max((t.id for t in data.all_tasks()), default=0) + 1

    # ---------------------------------------------------------------------
    # Goals
    # ---------------------------------------------------------------------
    def get_goal(self, goal_id: int) -> Goal:
        return self._goal(self.data, goal_id)

    def list_goals(self, include_done: bool = True) -> List[Goal]:
        goals = self.data.goals
        return list(goals) if include_done else [g for g in goals if g.is_active]

    def create_goal(
        self,
        name: str,
        description: str = "",
        goal_type: str = GoalType.SECONDARY.value,
        strategy: str = "",
        ai_tone: Optional[str] = None,
        done_definition: Optional[Dict[str, str]] = None,
    ) -> Goal:
        """
        创建目标。

        Raises:
            ValidationError: 字段非法，或非 done 目标已达上限（拒绝，不排队）
        """
        clean_name = v.goal_name(name)
        clean_description = v.description(description)
        clean_type = v.goal_type(goal_type)
        clean_tone = v.ai_tone(ai_tone) if ai_tone is not None else None
        clean_strategy = v.description(strategy)
        definition = DoneDefinition(**{
            k: v.description((done_definition or {}).get(k, "")) for k in ("tech", "live", "battle")
        })

        def mutate(data: AppData, now: datetime) -> Goal:
            if len(data.active_goals()) >= config.MAX_ACTIVE_GOALS:
                raise ValidationError(
                    "status",
                    f"At most {config.MAX_ACTIVE_GOALS} goals can be active at once",
                    hint="Finish or archive a goal before starting a new one",
                )
            goal = Goal(
                id=max((g.id for g in data.goals), default=0) + 1,
                name=clean_name,
                description=clean_description,
                type=clean_type,
                strategy=clean_strategy,
                done_definition=definition,
                last_activity_date=now,
            )
            if clean_tone is not None:
                goal.ai_tone = clean_tone
            if goal.type == GoalType.MAIN:
                self._demote_main(data, goal.id)
            data.goals.append(goal)
            return goal

        goal = self.store.update(mutate)
        logger.info(f"Goal created: {goal.id} {goal.name!r} ({goal.type.value})")
        return self.get_goal(goal.id)

    def update_goal(self, goal_id: int, **fields: Any) -> Goal:
        """
        Field-level update. Accepted keys: name, description, status, type,
        strategy, ai_tone, completion, done_definition.
        """
        allowed = {"name", "description", "status", "type", "strategy", "ai_tone", "completion", "done_definition"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(sorted(unknown)[0], f"Unknown goal field: {sorted(unknown)[0]}")

        clean: Dict[str, Any] = {}
        if "name" in fields:
            clean["name"] = v.goal_name(fields["name"])
        if "description" in fields:
            clean["description"] = v.description(fields["description"])
        if "status" in fields:
            clean["status"] = v.goal_status(fields["status"])
        if "type" in fields:
            clean["type"] = v.goal_type(fields["type"])
        if "strategy" in fields:
            clean["strategy"] = v.description(fields["strategy"])
        if "ai_tone" in fields:
            clean["ai_tone"] = v.ai_tone(fields["ai_tone"])
        if "completion" in fields:
            clean["completion"] = v.progress(fields["completion"])
        if "done_definition" in fields:
            raw = fields["done_definition"] or {}
            clean["done_definition"] = DoneDefinition(
                **{k: v.description(raw.get(k, "")) for k in ("tech", "live", "battle")}
            )

        def mutate(data: AppData, now: datetime) -> None:
            goal = self._goal(data, goal_id)
            reopening = (
                clean.get("status") not in (None, GoalStatus.DONE) and goal.status == GoalStatus.DONE
            )
            if reopening and len(data.active_goals()) >= config.MAX_ACTIVE_GOALS:
                raise ValidationError(
                    "status",
                    f"At most {config.MAX_ACTIVE_GOALS} goals can be active at once",
                )
            for key, value in clean.items():
                setattr(goal, key, value)
            if goal.type == GoalType.MAIN:
                self._demote_main(data, goal.id)
            goal.last_activity_date = now

        self.store.update(mutate)
        return self.get_goal(goal_id)

    def archive_goal(self, goal_id: int) -> Goal:
        return self.update_goal(goal_id, status=GoalStatus.DONE.value)

    # ---------------------------------------------------------------------
    # Tasks
    # ---------------------------------------------------------------------
    def get_task(self, task_id: int) -> Task:
        return self._task(self.data, task_id)

    def add_task(
        self,
        goal_id: int,
        name: str,
        task_type: str = "build",
        priority: str = "medium",
        due_date: Optional[str] = None,
        definition_of_done: str = "",
        done_criteria: Optional[List[str]] = None,
    ) -> Task:
        clean_name = v.task_name(name)
        clean_type = v.task_type(task_type)
        clean_priority = v.task_priority(priority)
        clean_dod = v.description(definition_of_done)
        criteria = [DoneCriterion(item=v.task_name(item)) for item in (done_criteria or [])]

        def mutate(data: AppData, now: datetime) -> Task:
            goal = self._goal(data, goal_id)
            task = Task(
                id=self._next_task_id(data),
                name=clean_name,
                type=clean_type,
                priority=clean_priority,
                created_at=now,
                last_progress_update=now,
                due_date=due_date,
                definition_of_done=clean_dod,
                done_criteria=criteria,
            )
            goal.tasks.append(task)
            return task

        task = self.store.update(mutate)
        return self.get_task(task.id)

    def set_task_progress(self, task_id: int, progress: Any) -> Task:
        value = v.progress(progress)

        def mutate(data: AppData, now: datetime) -> None:
            apply_progress(self._task(data, task_id), value, now)

        self.store.update(mutate)
        return self.get_task(task_id)

    def toggle_task(self, task_id: int, progress: Any = None) -> int:
        """
        切换任务进度（无显式值时 0 <-> 100），经合并器防抖后生效。

        Returns:
            挂起的目标进度值
        """
        task = self.get_task(task_id)
        if progress is None:
            pending = self.coalescer.pending.get(task_id)
            current = pending if pending is not None else task.progress
            target = toggle_target(current)
        else:
            target = v.progress(progress)
        self.coalescer.submit(task_id, target)
        return target

    def flush_progress(self) -> Dict[int, int]:
        return self.coalescer.drain()

    def _apply_pending_progress(self, pending: Dict[int, int]) -> None:
        def mutate(data: AppData, now: datetime) -> None:
            for task_id, value in pending.items():
                _, task = data.find_task(task_id)
                if task is None:
                    logger.warning(f"Dropping pending progress for missing task {task_id}")
                    continue
                apply_progress(task, value, now)

        self.store.update(mutate)

    def update_task(self, task_id: int, **fields: Any) -> Task:
        """
        Accepted keys: name, type, priority, status, due_date,
        definition_of_done, done_criteria, progress.
        """
        allowed = {
            "name", "type", "priority", "status", "due_date",
            "definition_of_done", "done_criteria", "progress",
        }
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(sorted(unknown)[0], f"Unknown task field: {sorted(unknown)[0]}")

        clean: Dict[str, Any] = {}
        if "name" in fields:
            clean["name"] = v.task_name(fields["name"])
        if "type" in fields:
            clean["type"] = v.task_type(fields["type"])
        if "priority" in fields:
            clean["priority"] = v.task_priority(fields["priority"])
        if "due_date" in fields:
            clean["due_date"] = fields["due_date"] or None
        if "definition_of_done" in fields:
            clean["definition_of_done"] = v.description(fields["definition_of_done"])
        if "done_criteria" in fields:
            clean["done_criteria"] = [
                DoneCriterion(item=v.task_name(c.get("item")), completed=bool(c.get("completed", False)))
                for c in (fields["done_criteria"] or [])
            ]
        status = v.task_status(fields["status"]) if "status" in fields else None
        progress = v.progress(fields["progress"]) if "progress" in fields else None

        def mutate(data: AppData, now: datetime) -> None:
            task = self._task(data, task_id)
            for key, value in clean.items():
                setattr(task, key, value)
            if progress is not None:
                apply_progress(task, progress, now)
            if status is not None:
                apply_status(task, status, now)

        self.store.update(mutate)
        return self.get_task(task_id)

    def set_implementation_intention(
        self,
        task_id: int,
        trigger: Optional[str],
        action: Optional[str] = None,
        active: bool = True,
    ) -> Task:
        """设置 if-then 计划；trigger 为 None 时清除。"""
        intention = None
        if trigger is not None:
            intention = ImplementationIntention(
                trigger=v.require_text("trigger", trigger, config.NOTE_MAX_LENGTH),
                action=v.require_text("action", action, config.NOTE_MAX_LENGTH),
                active=bool(active),
            )

        def mutate(data: AppData, now: datetime) -> None:
            task = self._task(data, task_id)
            if intention is not None and task.implementation_intention is not None:
                intention.last_triggered = task.implementation_intention.last_triggered
            task.implementation_intention = intention

        self.store.update(mutate)
        return self.get_task(task_id)

    def trigger_implementation_intention(self, task_id: int) -> Optional[str]:
        """记录一次 if-then 计划触发，返回 "If X, then Y" 文案；无激活计划时返回 None。"""
        def mutate(data: AppData, now: datetime) -> Optional[str]:
            task = self._task(data, task_id)
            ii = task.implementation_intention
            if ii is None or not ii.active:
                return None
            ii.last_triggered = now
            return f"If {ii.trigger}, then {ii.action}"

        return self.store.update(mutate)

    # ---------------------------------------------------------------------
    # Finish sessions
    # ---------------------------------------------------------------------
    @property
    def current_session(self) -> Optional[FinishSession]:
        return self.data.current_session

    def session_history(self, limit: Optional[int] = None) -> List[FinishSession]:
        history = self.data.session_history
        return list(history[-limit:]) if limit else list(history)

    def start_session(self, task_id: int, pillar_id: Optional[int] = None) -> FinishSession:
        """开启 Finish 会话（若已有打开的会话，先 abort）。"""
        goal, task = self.data.find_task(task_id)
        if task is None:
            raise NotFoundError("task_id", task_id)
        owner_id = goal.id if pillar_id is None else pillar_id
        if self.data.find_goal(owner_id) is None:
            raise NotFoundError("pillar_id", owner_id)

        def mutate(data: AppData, now: datetime) -> FinishSession:
            return _start_session(data, task_id, owner_id, now)

        session = self.store.update(mutate)
        logger.info(f"Session {session.id} started for task {task_id}")
        return self.data.current_session

    def end_session(
        self,
        session_id: str,
        status: str = SessionStatus.COMPLETED.value,
        user_note: Optional[str] = None,
        ai_summary: Optional[str] = None,
        classification: Optional[str] = None,
        classification_note: Optional[str] = None,
    ) -> Optional[FinishSession]:
        """
        结束当前会话。session_id 不是当前会话时为 no-op，返回 None。
        """
        end_status = SessionStatus.ABORTED if status == SessionStatus.ABORTED.value else SessionStatus.COMPLETED
        cls = None
        if classification is not None:
            cls = SessionClassification(
                status=v.classification_status(classification),
                note=v.note(classification_note),
            )
        note = v.note(user_note)
        summary = v.optional_text("ai_summary", ai_summary, config.NOTE_MAX_LENGTH)

        def mutate(data: AppData, now: datetime) -> Optional[FinishSession]:
            return _end_session(
                data, session_id, end_status, now,
                user_note=note, ai_summary=summary, classification=cls,
            )

        ended = self.store.update(mutate)
        if ended is not None:
            logger.info(f"Session {ended.id} ended ({ended.status.value})")
        return ended

    async def end_session_with_summary(
        self,
        session_id: str,
        classification: str,
        user_note: Optional[str] = None,
        classification_note: Optional[str] = None,
    ) -> Optional[FinishSession]:
        """Complete the current session, attaching a coach summary (model text or fallback)."""
        current = self.current_session
        if current is None or current.id != session_id:
            return None
        goal, task = self.data.find_task(current.task_id)
        summary = None
        if task is not None:
            cls = SessionClassification(
                status=v.classification_status(classification),
                note=v.note(classification_note),
            )
            summary = await coach.finish_summary(
                goal, task, cls,
                user_note=user_note,
                start_time=current.start_time,
                end_time=self.now(),
                adapter=self.adapter,
            )
        return self.end_session(
            session_id,
            status=SessionStatus.COMPLETED.value,
            user_note=user_note,
            ai_summary=summary,
            classification=classification,
            classification_note=classification_note,
        )

    # ---------------------------------------------------------------------
    # Rewards
    # ---------------------------------------------------------------------
    def add_reward(
        self,
        goal_id: int,
        description: str,
        kind: str,
        value: Any,
        reward_type: Optional[str] = None,
    ) -> Reward:
        clean_description = v.require_text("description", description, config.DESCRIPTION_MAX_LENGTH)
        clean_kind, clean_value = v.reward_condition(kind, value)
        if reward_type is not None:
            clean_type = v.reward_type(reward_type)
        elif clean_kind == RewardConditionKind.COMPLETION_PERCENT.value:
            clean_type = RewardType.MILESTONE
        else:
            clean_type = RewardType.PROCESS

        def mutate(data: AppData, now: datetime) -> Reward:
            goal = self._goal(data, goal_id)
            reward = Reward(
                id=uuid.uuid4().hex[:12],
                description=clean_description,
                type=clean_type,
                condition=RewardCondition(kind=clean_kind, value=clean_value),
                created_at=now,
            )
            goal.rewards.append(reward)
            return reward

        return self.store.update(mutate)

    def update_reward(
        self,
        goal_id: int,
        reward_id: str,
        description: Optional[str] = None,
        kind: Optional[str] = None,
        value: Any = None,
    ) -> Reward:
        clean_description = (
            v.require_text("description", description, config.DESCRIPTION_MAX_LENGTH)
            if description is not None else None
        )

        def mutate(data: AppData, now: datetime) -> Reward:
            goal = self._goal(data, goal_id)
            reward = next((r for r in goal.rewards if r.id == reward_id), None)
            if reward is None:
                raise NotFoundError("reward_id", reward_id)
            if clean_description is not None:
                reward.description = clean_description
            if kind is not None or value is not None:
                new_kind, new_value = v.reward_condition(
                    kind if kind is not None else reward.condition.kind,
                    value if value is not None else reward.condition.value,
                )
                reward.condition = RewardCondition(kind=new_kind, value=new_value)
            return reward

        return self.store.update(mutate)

    def remove_reward(self, goal_id: int, reward_id: str) -> bool:
        def mutate(data: AppData, now: datetime) -> bool:
            goal = self._goal(data, goal_id)
            before = len(goal.rewards)
            goal.rewards = [r for r in goal.rewards if r.id != reward_id]
            return len(goal.rewards) != before

        return self.store.update(mutate)

    def rewards_with_status(self, goal_id: int) -> List[RewardStatus]:
        goal = self.get_goal(goal_id)
        return evaluate(goal, goal.rewards, self.data.session_history, self.now())

    # ---------------------------------------------------------------------
    # Ideas
    # ---------------------------------------------------------------------
    def list_ideas(self, goal_id: Optional[int] = None) -> List[Idea]:
        ideas = self.data.ideas
        if goal_id is None:
            return list(ideas)
        return [i for i in ideas if i.goal_id == goal_id]

    def add_idea(
        self,
        title: str,
        description: Optional[str] = None,
        goal_id: Optional[int] = None,
        tags: Optional[List[str]] = None,
    ) -> Idea:
        clean_title = v.idea_title(title)
        clean_description = v.idea_description(description)
        clean_tags = v.idea_tags(tags)
        if goal_id is not None and self.data.find_goal(goal_id) is None:
            raise NotFoundError("goal_id", goal_id)

        def mutate(data: AppData, now: datetime) -> Idea:
            idea = Idea(
                id=uuid.uuid4().hex,
                title=clean_title,
                description=clean_description,
                goal_id=goal_id,
                tags=clean_tags,
                created_at=now,
                updated_at=now,
            )
            data.ideas.insert(0, idea)
            return idea

        return self.store.update(mutate)

    def update_idea(
        self,
        idea_id: str,
        title: Any = _UNSET,
        description: Any = _UNSET,
        goal_id: Any = _UNSET,
        tags: Any = _UNSET,
    ) -> Idea:
        clean: Dict[str, Any] = {}
        if title is not _UNSET:
            clean["title"] = v.idea_title(title)
        if description is not _UNSET:
            clean["description"] = v.idea_description(description)
        if tags is not _UNSET:
            clean["tags"] = v.idea_tags(tags)
        if goal_id is not _UNSET:
            if goal_id is not None and self.data.find_goal(goal_id) is None:
                raise NotFoundError("goal_id", goal_id)
            clean["goal_id"] = goal_id

        def mutate(data: AppData, now: datetime) -> Idea:
            idea = data.find_idea(idea_id)
            if idea is None:
                raise NotFoundError("idea_id", idea_id)
            for key, value in clean.items():
                setattr(idea, key, value)
            idea.updated_at = now
            return idea

        return self.store.update(mutate)

    def remove_idea(self, idea_id: str) -> bool:
        def mutate(data: AppData, now: datetime) -> bool:
            before = len(data.ideas)
            data.ideas = [i for i in data.ideas if i.id != idea_id]
            return len(data.ideas) != before

        return self.store.update(mutate)

    # ---------------------------------------------------------------------
    # Insights / audit
    # ---------------------------------------------------------------------
    def run_audit(self) -> List[StuckTask]:
        """拉取式审计：返回当前所有卡住的任务"""
        stuck = find_stuck_tasks(self.data, self.now())
        logger.info(f"Stuck audit: {len(stuck)} task(s)")
        return stuck

    def insights(self) -> DatasetInsights:
        return compute_insights(self.data, self.now())

    def task_insight(self, task_id: int) -> TaskInsight:
        return analyze_task(self.get_task(task_id), self.now())

    def goal_health(self, goal_id: int) -> GoalHealth:
        return analyze_goal(self.get_goal(goal_id), self.now())

    def weekly_report(self) -> WeeklyReport:
        return weekly_report(self.data.goals, self.now())

    def stats(self) -> BasicStats:
        return compute_basic_stats(self.data, self.now())

    async def motivation_tip(self, task_id: int) -> str:
        task = self.get_task(task_id)
        insight = analyze_task(task, self.now())
        return await coach.motivation_tip(
            task, insight.is_stuck, insight.days_in_current_state, adapter=self.adapter
        )

    async def stuck_nudges(self) -> List[Dict[str, Any]]:
        nudges = []
        for item in self.run_audit():
            goal = self.get_goal(item.goal_id)
            task = self.get_task(item.task_id)
            text = await coach.stuck_nudge(goal, task, item.days_in_current_state, adapter=self.adapter)
            nudges.append({"task_id": item.task_id, "goal_id": item.goal_id, "message": text})
        return nudges

    async def coach_reply(self, message: str) -> str:
        v.require_text("message", message, config.NOTE_MAX_LENGTH)
        stuck_names = [s.task_name for s in self.run_audit()]
        return await coach.coach_reply(self.data, message, stuck_names, adapter=self.adapter)
