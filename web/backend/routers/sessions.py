from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from core.codec import session_to_dict
from core.goal_service import GoalService
from web.backend.deps import get_service

router = APIRouter()


class StartRequest(BaseModel):
    task_id: int
    pillar_id: Optional[int] = None


class EndRequest(BaseModel):
    status: str = "completed"
    classification: Optional[str] = None
    classification_note: Optional[str] = None
    user_note: Optional[str] = None
    ai_summary: Optional[str] = None
    summarize: bool = False


@router.get("/current")
async def current_session(service: GoalService = Depends(get_service)):
    session = service.current_session
    return {"session": session_to_dict(session) if session else None}


@router.get("/history")
async def session_history(limit: Optional[int] = None, service: GoalService = Depends(get_service)):
    return {"sessions": [session_to_dict(s) for s in service.session_history(limit)]}


@router.post("", status_code=201)
async def start_session(req: StartRequest, service: GoalService = Depends(get_service)):
    return session_to_dict(service.start_session(req.task_id, req.pillar_id))


@router.post("/{session_id}/end")
async def end_session(session_id: str, req: EndRequest, service: GoalService = Depends(get_service)):
    """
    结束会话。session_id 已过期（不是当前会话）时不做任何修改，返回 ended=false。
    summarize=true 且带分类时，由教练生成总结文本（模型不可用时使用本地文案）。
    """
    if req.summarize and req.classification and req.status != "aborted":
        ended = await service.end_session_with_summary(
            session_id,
            req.classification,
            user_note=req.user_note,
            classification_note=req.classification_note,
        )
    else:
        ended = service.end_session(
            session_id,
            status=req.status,
            user_note=req.user_note,
            ai_summary=req.ai_summary,
            classification=req.classification,
            classification_note=req.classification_note,
        )
    return {"ended": ended is not None, "session": session_to_dict(ended) if ended else None}
