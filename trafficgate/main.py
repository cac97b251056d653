"""
TrafficGate — per-request admission gate in front of a target URL.
Main application entry point.
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.responses import HTMLResponse

from trafficgate.api.geoip import router as geoip_router
from trafficgate.api.redirect import get_engine, router as redirect_router
from trafficgate.config import get_settings
from trafficgate.core.decoy import render_decoy
from trafficgate.core.engine import AdmissionEngine
from trafficgate.middleware.security import SecurityHeadersMiddleware
from trafficgate.models.database import create_schema, dispose_engine, get_session_maker
from trafficgate.models.store import SqlTelemetryStore

import structlog

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer() if get_settings().debug else structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.create_schema:
        await create_schema()
    engine = AdmissionEngine(settings, store=SqlTelemetryStore(get_session_maker()))
    app.state.engine = engine
    engine.start()
    logger.info("trafficgate_starting", param_name=settings.param_name)
    yield
    logger.info("trafficgate_shutting_down", telemetry_pending=engine.sink.pending())
    await engine.stop()
    await dispose_engine()


app = FastAPI(
    title="TrafficGate",
    description="Traffic admission and classification gate.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if get_settings().debug else None,
    redoc_url="/redoc" if get_settings().debug else None,
    openapi_url="/openapi.json" if get_settings().debug else None,
)

app.add_middleware(SecurityHeadersMiddleware)

# --- Routes ---
app.include_router(redirect_router)
app.include_router(geoip_router)


@app.get("/", response_class=HTMLResponse)
async def home(engine: AdmissionEngine = Depends(get_engine)):
    """Bare domain serves the same safe page denied traffic sees."""
    settings = engine.settings
    return await render_decoy(settings.decoy_url, engine.http_client, settings.decoy_fetch_timeout_seconds)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "trafficgate", "version": "0.1.0"}
