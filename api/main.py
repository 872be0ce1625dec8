import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routers import chat, course_chat, health, knowledge_base
from kb_chat.logger import GLOBAL_LOGGER as log
from kb_chat.services import Services, build_services, run_collection_sweeper
from kb_chat.utils.config_loader import load_config


def create_app(
    config: Optional[dict] = None,
    services_factory: Callable[[dict], Services] = build_services,
) -> FastAPI:
    config = config if config is not None else load_config()

    # Use lifespan instead of deprecated on_event
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("Application startup initiated")
        services = services_factory(config)
        app.state.services = services

        if not await services.store.ping():
            log.warning("Redis is not reachable at startup")

        kb_cfg = config.get("knowledge_base", {})
        sweeper = None
        interval = kb_cfg.get("sweep_interval_seconds", 0)
        if interval:
            sweeper = asyncio.create_task(run_collection_sweeper(services.kb_manager, interval))

        yield

        if sweeper is not None:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
        await services.store.close()
        log.info("Application shutdown")

    app = FastAPI(title="Knowledge Base Chat Backend", version="1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.get("cors", {}).get("allow_origins", ["*"]),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def count_requests(request: Request, call_next):
        services = getattr(request.app.state, "services", None)
        if services is not None:
            await services.api_tracker.track(request.method, request.url.path)
        return await call_next(request)

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        log.exception("Unhandled error | path=%s | error=%s", request.url.path, str(exc))
        return JSONResponse(
            status_code=500, content={"success": False, "message": "Internal server error"}
        )

    # Router Registration
    app.include_router(health.router, prefix="/health", tags=["health"])
    app.include_router(knowledge_base.router, tags=["knowledge-base"])
    app.include_router(chat.router, tags=["chat"])
    app.include_router(course_chat.router, tags=["course-chat"])

    @app.get("/")
    async def root():
        return {"message": "Backend is running"}

    return app
