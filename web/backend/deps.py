from fastapi import Request

from core.goal_service import GoalService
from core.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_service(request: Request) -> GoalService:
    return request.app.state.runtime.service
