from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from core.codec import task_to_dict
from core.goal_service import GoalService
from web.backend.deps import get_service

router = APIRouter()


class ProgressRequest(BaseModel):
    progress: int


class ToggleRequest(BaseModel):
    progress: Optional[int] = None


class DoneCriterionBody(BaseModel):
    item: str
    completed: bool = False


class TaskUpdateRequest(BaseModel):
    name: Optional[str] = None
    type: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    due_date: Optional[str] = None
    definition_of_done: Optional[str] = None
    done_criteria: Optional[List[DoneCriterionBody]] = None
    progress: Optional[int] = None


class IntentionRequest(BaseModel):
    trigger: Optional[str] = None
    action: Optional[str] = None
    active: bool = True


@router.get("/{task_id}")
async def get_task(task_id: int, service: GoalService = Depends(get_service)):
    task = service.get_task(task_id)
    return {**task_to_dict(task), "insight": asdict(service.task_insight(task_id))}


@router.put("/{task_id}/progress")
async def set_progress(task_id: int, req: ProgressRequest, service: GoalService = Depends(get_service)):
    return task_to_dict(service.set_task_progress(task_id, req.progress))


@router.post("/{task_id}/toggle", status_code=202)
async def toggle_task(task_id: int, req: ToggleRequest, service: GoalService = Depends(get_service)):
    """快速切换：合并后统一落盘，响应只返回挂起的目标值"""
    target = service.toggle_task(task_id, req.progress)
    return {"task_id": task_id, "pending_progress": target}


@router.patch("/{task_id}")
async def update_task(task_id: int, req: TaskUpdateRequest, service: GoalService = Depends(get_service)):
    fields: Dict[str, Any] = req.model_dump(exclude_unset=True)
    return task_to_dict(service.update_task(task_id, **fields))


@router.put("/{task_id}/intention")
async def set_intention(task_id: int, req: IntentionRequest, service: GoalService = Depends(get_service)):
    task = service.set_implementation_intention(task_id, req.trigger, req.action, req.active)
    return task_to_dict(task)


@router.post("/{task_id}/intention/trigger")
async def trigger_intention(task_id: int, service: GoalService = Depends(get_service)):
    return {"message": service.trigger_implementation_intention(task_id)}


@router.get("/{task_id}/tip")
async def motivation_tip(task_id: int, service: GoalService = Depends(get_service)):
    return {"tip": await service.motivation_tip(task_id)}
