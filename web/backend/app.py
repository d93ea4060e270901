import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.exceptions import FinishOSError, NotFoundError, StorageError, ValidationError
from core.logger import get_logger
from core.runtime import Runtime
from web.backend.routers import goals, ideas, insights, sessions, tasks

logger = get_logger("api")


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    runtime = runtime or Runtime()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(title="Finish OS API", version="1.0", lifespan=lifespan)
    app.state.runtime = runtime

    raw_origins = os.getenv("FINISH_OS_ALLOWED_ORIGINS", "*")
    allow_origins = [o.strip() for o in raw_origins.split(",") if o.strip()]
    allow_credentials = "*" not in allow_origins

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": exc.to_dict()})

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": exc.to_dict()})

    @app.exception_handler(StorageError)
    async def storage_handler(request: Request, exc: StorageError):
        logger.error(f"Storage error: {exc.message}")
        return JSONResponse(status_code=500, content={"detail": exc.get_user_message()})

    @app.exception_handler(FinishOSError)
    async def finish_os_handler(request: Request, exc: FinishOSError):
        return JSONResponse(status_code=400, content={"detail": exc.get_user_message()})

    @app.get("/health")
    async def health_check():
        persistence = runtime.persistence
        return {
            "status": "ok",
            "service": "Finish OS",
            "loaded": persistence.loaded,
            "shape": persistence.shape,
            "migration": persistence.migration_status,
            "notice": persistence.notice,
        }

    app.include_router(goals.router, prefix="/api/v1/goals", tags=["goals"])
    app.include_router(tasks.router, prefix="/api/v1/tasks", tags=["tasks"])
    app.include_router(sessions.router, prefix="/api/v1/sessions", tags=["sessions"])
    app.include_router(ideas.router, prefix="/api/v1/ideas", tags=["ideas"])
    app.include_router(insights.router, prefix="/api/v1", tags=["insights"])

    return app
