"""
FastAPI application factory for the PlanetPlant server API.

``create_app`` binds the app to a ServerRuntime: the runtime and a
BearerAuth built from API_TOKENS are stored on ``app.state`` for route
handlers. The daemon serves the app with uvicorn inside its own event loop,
so API handlers and the MQTT ingestion share one loop and one registry.

CHANGELOG:
- 2026-10-18: Register realtime websocket router (STORY-019)
- 2026-10-18: Initial creation (STORY-018)
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from server.src.api.health import router as health_router
from server.src.api.plants import router as plants_router
from server.src.api.realtime import router as realtime_router
from server.src.api.system import router as system_router
from server.src.auth.bearer import BearerAuth, parse_api_tokens
from server.src.runtime import ServerRuntime

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("PlanetPlant API ready (%d plant(s))", len(app.state.runtime.registry))
    yield
    logger.info("PlanetPlant API shutting down")


def create_app(runtime: ServerRuntime) -> FastAPI:
    """Build the API bound to *runtime*.

    An empty API_TOKENS leaves the read endpoints usable but rejects every
    mutating request with 401.
    """
    token_map = parse_api_tokens(runtime.settings.api_tokens)
    if not token_map:
        logger.warning("API_TOKENS is empty: watering and config endpoints are locked")
    else:
        logger.info("Parsed %d operator token(s) from API_TOKENS", len(token_map))

    app = FastAPI(
        title="PlanetPlant API",
        description="Plant telemetry and watering control.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.auth = BearerAuth(token_map)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime.settings.cors_origin_list,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["Authorization", "Content-Type"],
    )

    app.include_router(health_router)
    app.include_router(plants_router)
    app.include_router(system_router)
    app.include_router(realtime_router)
    return app
