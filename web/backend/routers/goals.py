from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from core.codec import goal_to_dict, reward_to_dict, task_to_dict
from core.goal_service import GoalService
from web.backend.deps import get_service

router = APIRouter()


class DoneDefinitionBody(BaseModel):
    tech: str = ""
    live: str = ""
    battle: str = ""


class GoalCreateRequest(BaseModel):
    name: str
    description: str = ""
    type: str = "secondary"
    strategy: str = ""
    ai_tone: Optional[str] = None
    done_definition: Optional[DoneDefinitionBody] = None


class GoalUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    type: Optional[str] = None
    strategy: Optional[str] = None
    ai_tone: Optional[str] = None
    completion: Optional[int] = None
    done_definition: Optional[DoneDefinitionBody] = None


class TaskCreateRequest(BaseModel):
    name: str
    type: str = "build"
    priority: str = "medium"
    due_date: Optional[str] = None
    definition_of_done: str = ""
    done_criteria: List[str] = []


class RewardRequest(BaseModel):
    description: str
    kind: str
    value: int
    type: Optional[str] = None


class RewardUpdateRequest(BaseModel):
    description: Optional[str] = None
    kind: Optional[str] = None
    value: Optional[int] = None


@router.get("")
async def list_goals(include_done: bool = True, service: GoalService = Depends(get_service)):
    return {"goals": [goal_to_dict(g) for g in service.list_goals(include_done)]}


@router.post("", status_code=201)
async def create_goal(req: GoalCreateRequest, service: GoalService = Depends(get_service)):
    goal = service.create_goal(
        req.name,
        description=req.description,
        goal_type=req.type,
        strategy=req.strategy,
        ai_tone=req.ai_tone,
        done_definition=req.done_definition.model_dump() if req.done_definition else None,
    )
    return goal_to_dict(goal)


@router.get("/{goal_id}")
async def get_goal(goal_id: int, service: GoalService = Depends(get_service)):
    return goal_to_dict(service.get_goal(goal_id))


@router.patch("/{goal_id}")
async def update_goal(goal_id: int, req: GoalUpdateRequest, service: GoalService = Depends(get_service)):
    fields: Dict[str, Any] = req.model_dump(exclude_unset=True)
    if fields.get("done_definition") is None:
        fields.pop("done_definition", None)
    return goal_to_dict(service.update_goal(goal_id, **fields))


@router.post("/{goal_id}/archive")
async def archive_goal(goal_id: int, service: GoalService = Depends(get_service)):
    """归档即标记为 done"""
    return goal_to_dict(service.archive_goal(goal_id))


@router.get("/{goal_id}/health")
async def goal_health(goal_id: int, service: GoalService = Depends(get_service)):
    return asdict(service.goal_health(goal_id))


@router.post("/{goal_id}/tasks", status_code=201)
async def add_task(goal_id: int, req: TaskCreateRequest, service: GoalService = Depends(get_service)):
    task = service.add_task(
        goal_id,
        req.name,
        task_type=req.type,
        priority=req.priority,
        due_date=req.due_date,
        definition_of_done=req.definition_of_done,
        done_criteria=req.done_criteria,
    )
    return task_to_dict(task)


# --- Rewards ---

@router.get("/{goal_id}/rewards")
async def list_rewards(goal_id: int, service: GoalService = Depends(get_service)):
    return {
        "rewards": [
            {**reward_to_dict(s.reward), "status": s.status, "reason": s.reason}
            for s in service.rewards_with_status(goal_id)
        ]
    }


@router.post("/{goal_id}/rewards", status_code=201)
async def add_reward(goal_id: int, req: RewardRequest, service: GoalService = Depends(get_service)):
    reward = service.add_reward(goal_id, req.description, req.kind, req.value, reward_type=req.type)
    return reward_to_dict(reward)


@router.patch("/{goal_id}/rewards/{reward_id}")
async def update_reward(
    goal_id: int,
    reward_id: str,
    req: RewardUpdateRequest,
    service: GoalService = Depends(get_service),
):
    reward = service.update_reward(
        goal_id, reward_id, description=req.description, kind=req.kind, value=req.value
    )
    return reward_to_dict(reward)


@router.delete("/{goal_id}/rewards/{reward_id}")
async def remove_reward(goal_id: int, reward_id: str, service: GoalService = Depends(get_service)):
    return {"removed": service.remove_reward(goal_id, reward_id)}
