"""FastAPI application exposing the timer command surface."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from pomodoro_log import __version__
from pomodoro_log.core.config import Config, get_config
from pomodoro_log.core.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


def get_orchestrator(request: Request) -> Orchestrator:
    """Dependency returning the orchestrator started by the lifespan."""
    return request.app.state.orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Run one orchestrator, with its tick, for the lifetime of the app.

    The server claims the PID file like `pomodoro-log run`, so CLI timer
    commands reach this engine through the control file. uvicorn keeps its
    own signal handling.
    """
    logger.info("Starting pomodoro-log API...")
    orchestrator = Orchestrator(app.state.config)
    await orchestrator.start(tick=True, daemon=True, handle_signals=False)
    app.state.orchestrator = orchestrator

    try:
        yield
    finally:
        await orchestrator.stop()
        app.state.orchestrator = None
        logger.info("API shutdown complete")


def create_app(config: Config | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="pomodoro-log",
        description="Pomodoro timer and session history API",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config or get_config()
    app.state.orchestrator = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from pomodoro_log.web.routes import api

    app.include_router(api.router, prefix="/api")

    return app
