# =============================================================================
# FastAPI Application Entry Point
# =============================================================================
#
# STARTUP (lifespan):
#   1. Build the service container (engine, store, agents, orchestrator)
#   2. Create any missing tables
#   3. Sweep corrupted workflows left behind by a previous process
#      (e.g. "running" rows whose pipeline task died with the server)
#
# SHUTDOWN:
#   Cancel live workflow tasks (they are marked cancelled), close the cache
#   and dispose of the engine.
#
# Run with:  uvicorn app.main:app --reload
# =============================================================================

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api import workflows
from app.api.deps import build_container
from app.config import get_settings
from app.db.engine import create_tables
from app.models.responses import HealthResponse

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    config = get_settings()
    container = build_container(config)
    app.state.container = container

    await create_tables(container.engine)
    repaired = await container.orchestrator.cleanup_corrupted_workflows()
    if repaired:
        logger.warning("Marked %d corrupted workflows failed at startup", len(repaired))

    logger.info("%s %s started", config.app_name, config.app_version)
    try:
        yield
    finally:
        logger.info("Shutting down")
        await container.close()


def create_app() -> FastAPI:
    config = get_settings()
    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        description=(
            "Multi-agent pipeline that turns RFP documents and company knowledge "
            "into requirements, clarification questions, answers and a proposal draft."
        ),
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(workflows.router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        return HealthResponse(version=config.app_version, service=config.app_name)

    return app


app = create_app()
