from __future__ import annotations

from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from deploy_engine.config import settings
from deploy_engine.database import init_db
from deploy_engine.logging_config import get_logger, setup_logging
from deploy_engine.routes import api_router, ws_router
from deploy_engine.services.build_registry import BuildRegistry
from deploy_engine.services.task_service import TaskService

load_dotenv()
setup_logging(settings.log_format, settings.log_level)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()

    task_service = TaskService()
    app.state.task_service = task_service
    app.state.build_registry = BuildRegistry()
    logger.info("deploy_engine_started", data_dir=str(settings.data_dir))

    try:
        yield
    finally:
        # In-flight builds are cancelled; their processes are killed with them.
        await task_service.shutdown()
        logger.info("deploy_engine_stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Deploy Engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.api_prefix)
    app.include_router(ws_router)

    return app


app = create_app()
