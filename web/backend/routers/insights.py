from dataclasses import asdict
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from core.goal_service import GoalService
from core.runtime import Runtime
from core.storage import unwrap_import, wrap_export
from web.backend.deps import get_runtime, get_service

router = APIRouter()


class CoachRequest(BaseModel):
    message: str


@router.get("/audit")
async def stuck_audit(service: GoalService = Depends(get_service)):
    """拉取式卡点审计"""
    return {"stuck": [asdict(s) for s in service.run_audit()]}


@router.get("/audit/nudges")
async def stuck_nudges(service: GoalService = Depends(get_service)):
    return {"nudges": await service.stuck_nudges()}


@router.get("/insights")
async def insights(service: GoalService = Depends(get_service)):
    return asdict(service.insights())


@router.get("/insights/weekly")
async def weekly_report(service: GoalService = Depends(get_service)):
    return asdict(service.weekly_report())


@router.get("/stats")
async def stats(service: GoalService = Depends(get_service)):
    return asdict(service.stats())


@router.post("/coach")
async def coach(req: CoachRequest, service: GoalService = Depends(get_service)):
    return {"reply": await service.coach_reply(req.message)}


@router.get("/export")
async def export_data(runtime: Runtime = Depends(get_runtime)):
    runtime.service.flush_progress()
    return wrap_export(runtime.persistence.export_payload(), runtime.store.now())


@router.post("/import")
async def import_data(document: Dict[str, Any] = Body(...), runtime: Runtime = Depends(get_runtime)):
    """导入任一形态的 blob（带或不带导出包装），替换当前状态"""
    runtime.service.flush_progress()
    data = await runtime.persistence.import_payload(unwrap_import(document))
    return {"imported": True, "goals": len(data.goals), "shape": runtime.persistence.shape}
