"""
Funnel Hub — API Server
=========================

Sales-funnel analytics served from Pipedrive data fetched through the
``pipedrive-proxy`` Supabase edge function.

Route groups:
  /api/health              - Health check
  /api/pipelines           - Configured pipelines
  /api/funnel/*            - Funnel views, breakdowns, period resolution
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from integrations.pipedrive_proxy import PipedriveProxyClient
from scripts.lib.config import get_settings
from scripts.lib.errors import FunnelHubError
from scripts.lib.logger import setup_logger

logger = setup_logger("funnel_api")

VERSION = "1.0.0"


# ─── Lifespan ─────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app):
    """Application startup and shutdown."""
    logger.info("Starting Funnel Hub...")

    app.state.orchestrators = {}
    try:
        app.state.proxy = PipedriveProxyClient()
        status = "configured" if app.state.proxy.is_configured else "not configured"
        logger.info("Pipedrive proxy: %s", status)
    except FunnelHubError as e:
        logger.warning("Pipedrive proxy not available: %s", e)
        app.state.proxy = None

    logger.info("Funnel Hub ready")
    yield

    logger.info("Shutting down Funnel Hub...")
    for orchestrator in app.state.orchestrators.values():
        orchestrator.close()


# ─── App Setup ────────────────────────────────────────────────

cors_origins = os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://localhost:8001"
).split(",")

app = FastAPI(
    title="Funnel Hub",
    version=VERSION,
    description="Sales funnel analytics for Pipedrive pipelines",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Errors ───────────────────────────────────────────────────

@app.exception_handler(FunnelHubError)
async def funnel_hub_error(request: Request, exc: FunnelHubError):
    """Errors escaping a route become {error, message, details} with their HTTP status."""
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# ─── Include Routers ──────────────────────────────────────────

from dashboard.api.routers.funnel import router as funnel_router

app.include_router(funnel_router)


# ─── Health ───────────────────────────────────────────────────

@app.get("/api/health", tags=["system"])
async def health():
    """Health check with service status."""
    proxy = getattr(app.state, "proxy", None)
    orchestrators = getattr(app.state, "orchestrators", {})

    return {
        "status": "healthy",
        "service": "Funnel Hub",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "integrations": {
            "pipedrive_proxy": proxy.get_status() if proxy is not None else None,
        },
        "active_pipelines": sorted(orchestrators),
    }


@app.get("/api/pipelines", tags=["system"])
async def pipelines():
    """Pipelines available in the selector."""
    settings = get_settings()
    return {
        "default_pipeline_id": settings.default_pipeline_id,
        "results": [
            {**p.model_dump(), "pipedrive_url": settings.pipedrive_url(p.id)}
            for p in settings.pipelines
        ],
    }
