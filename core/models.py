"""
Core Data Models for Finish OS.
Defines goals (pillars), tasks, progress history, finish sessions, rewards and ideas.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from core.utils import utc_now


class GoalStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    DONE = "done"                 # 归档即 done，核心层从不物理删除


class GoalType(str, Enum):
    MAIN = "main"                 # 全局最多一个
    SECONDARY = "secondary"
    LAB = "lab"


class AiTone(str, Enum):
    MILITARY = "military"
    PSYCHOEDUCATION = "psychoeducation"
    RAW_FACTS = "raw_facts"


class TaskStatus(str, Enum):
    ACTIVE = "active"
    STUCK = "stuck"
    DONE = "done"
    ABANDONED = "abandoned"


class TaskType(str, Enum):
    BUILD = "build"
    CLOSE = "close"


class TaskPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABORTED = "aborted"


class ClassificationStatus(str, Enum):
    DONE = "done"
    IN_PROGRESS = "in_progress"
    STUCK = "stuck"


class RewardType(str, Enum):
    MILESTONE = "milestone"
    PROCESS = "process"


class RewardConditionKind(str, Enum):
    COMPLETION_PERCENT = "milestone_completion_percent_at_least"
    SESSIONS_COMPLETED = "process_finish_sessions_completed_last_7_days_at_least"
    STUCK_TO_DONE = "process_stuck_to_done_last_7_days_at_least"


@dataclass
class ProgressEntry:
    """进度历史中的一条记录（只追加，按时间排序）"""
    progress: int
    timestamp: datetime


@dataclass
class ImplementationIntention:
    """If-then 计划：当 trigger 发生时执行 action"""
    trigger: str
    action: str
    active: bool = True
    last_triggered: Optional[datetime] = None


@dataclass
class DoneCriterion:
    item: str
    completed: bool = False


@dataclass
class Task:
    """目标下的原子任务，进度 0-100"""
    id: int
    name: str
    type: TaskType = TaskType.BUILD
    progress: int = 0
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.ACTIVE
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    due_date: Optional[str] = None
    last_progress_update: Optional[datetime] = None
    stuck_at_ninety: bool = False
    progress_history: List[ProgressEntry] = field(default_factory=list)
    implementation_intention: Optional[ImplementationIntention] = None
    done_criteria: List[DoneCriterion] = field(default_factory=list)
    definition_of_done: str = ""

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = utc_now()
        if self.last_progress_update is None:
            self.last_progress_update = self.created_at


@dataclass
class DoneDefinition:
    """目标级 DONE 定义：技术 / 上线 / 实战检验"""
    tech: str = ""
    live: str = ""
    battle: str = ""


@dataclass
class RewardCondition:
    """
    奖励条件。kind 保留原始字符串，未知类型在评估时判为 not_yet。
    value 对百分比条件是 percent，对计数条件是 count。
    """
    kind: str
    value: int


@dataclass
class Reward:
    id: str
    description: str
    type: RewardType
    condition: RewardCondition
    created_at: Optional[datetime] = None


@dataclass
class Goal:
    """目标（Pillar）：持续数周的目标，由任务组成"""
    id: int
    name: str
    description: str = ""
    status: GoalStatus = GoalStatus.NOT_STARTED
    completion: int = 0
    ninety_percent_alert: bool = False
    days_stuck: int = 0
    last_activity_date: Optional[datetime] = None
    done_definition: DoneDefinition = field(default_factory=DoneDefinition)
    type: GoalType = GoalType.SECONDARY
    strategy: str = ""
    ai_tone: AiTone = AiTone.PSYCHOEDUCATION
    rewards: List[Reward] = field(default_factory=list)
    tasks: List[Task] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status != GoalStatus.DONE


@dataclass
class SessionClassification:
    status: ClassificationStatus
    note: Optional[str] = None


@dataclass
class FinishSession:
    """Finish Mode 会话：针对单个任务的有界专注片段"""
    id: str
    task_id: int
    pillar_id: int
    start_time: datetime
    end_time: Optional[datetime] = None
    status: SessionStatus = SessionStatus.IN_PROGRESS
    user_note: Optional[str] = None
    ai_summary: Optional[str] = None
    classification: Optional[SessionClassification] = None

    @property
    def is_open(self) -> bool:
        return self.status == SessionStatus.IN_PROGRESS and self.end_time is None


@dataclass
class Idea:
    """轻量想法笔记，可选关联目标（弱引用）"""
    id: str
    title: str
    description: Optional[str] = None
    goal_id: Optional[int] = None
    tags: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class AppData:
    """
    内存中的规范数据集。

    user / settings / extras 原样透传（UI 层数据，引擎不解释）。
    """
    goals: List[Goal] = field(default_factory=list)
    current_session: Optional[FinishSession] = None
    session_history: List[FinishSession] = field(default_factory=list)
    ideas: List[Idea] = field(default_factory=list)
    user: Dict[str, Any] = field(default_factory=dict)
    settings: Dict[str, Any] = field(default_factory=dict)
    extras: Dict[str, Any] = field(default_factory=dict)

    def find_goal(self, goal_id: int) -> Optional[Goal]:
        for goal in self.goals:
            if goal.id == goal_id:
                return goal
        return None

    def iter_tasks(self) -> Iterator[Tuple[Goal, Task]]:
        for goal in self.goals:
            for task in goal.tasks:
                yield goal, task

    def find_task(self, task_id: int) -> Tuple[Optional[Goal], Optional[Task]]:
        for goal, task in self.iter_tasks():
            if task.id == task_id:
                return goal, task
        return None, None

    def all_tasks(self) -> List[Task]:
        return [task for _, task in self.iter_tasks()]

    def active_goals(self) -> List[Goal]:
        return [g for g in self.goals if g.is_active]

    def find_idea(self, idea_id: str) -> Optional[Idea]:
        for idea in self.ideas:
            if idea.id == idea_id:
                return idea
        return None
