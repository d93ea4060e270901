from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from core.codec import idea_to_dict
from core.goal_service import GoalService
from web.backend.deps import get_service

router = APIRouter()


class IdeaRequest(BaseModel):
    title: str
    description: Optional[str] = None
    goal_id: Optional[int] = None
    tags: List[str] = []


class IdeaUpdateRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    goal_id: Optional[int] = None
    tags: Optional[List[str]] = None


@router.get("")
async def list_ideas(goal_id: Optional[int] = None, service: GoalService = Depends(get_service)):
    return {"ideas": [idea_to_dict(i) for i in service.list_ideas(goal_id)]}


@router.post("", status_code=201)
async def add_idea(req: IdeaRequest, service: GoalService = Depends(get_service)):
    idea = service.add_idea(req.title, req.description, req.goal_id, req.tags)
    return idea_to_dict(idea)


@router.patch("/{idea_id}")
async def update_idea(idea_id: str, req: IdeaUpdateRequest, service: GoalService = Depends(get_service)):
    # 只传入请求里出现过的字段；显式 null 表示清空
    fields = req.model_dump(exclude_unset=True)
    return idea_to_dict(service.update_idea(idea_id, **fields))


@router.delete("/{idea_id}")
async def remove_idea(idea_id: str, service: GoalService = Depends(get_service)):
    return {"removed": service.remove_idea(idea_id)}
