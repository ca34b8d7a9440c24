"""
Pixelwatch — pixel tracking admin backend.
Main application entry point.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from pixelwatch.api.admin import router as admin_router
from pixelwatch.api.analytics import router as analytics_router
from pixelwatch.api.diagnostics import router as diagnostics_router
from pixelwatch.api.events import router as events_router
from pixelwatch.config import get_settings
from pixelwatch.core.errors import PixelwatchError
from pixelwatch.jobs.scheduler import build_scheduler
from pixelwatch.models.database import dispose_engine, get_session_maker
from pixelwatch.services.diagnostics import DiagnosticEngine
from pixelwatch.services.events import EventProcessor

import structlog

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer() if get_settings().debug else structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    session_factory = get_session_maker()
    processor = EventProcessor(session_factory)
    engine = DiagnosticEngine(session_factory)
    scheduler = build_scheduler(processor, engine, session_factory)

    app.state.processor = processor
    app.state.diagnostic_engine = engine
    app.state.scheduler = scheduler

    logger.info("pixelwatch_starting", workers=settings.worker_concurrency,
                delivery_endpoint=settings.delivery_endpoint or None)
    scheduler.start()
    yield
    scheduler.stop()
    await processor.drain()
    await dispose_engine()
    logger.info("pixelwatch_shutting_down")


app = FastAPI(
    title="Pixelwatch",
    description="Pixel tracking admin backend — event processing, diagnostics and analytics.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if get_settings().debug else None,
    redoc_url="/redoc" if get_settings().debug else None,
    openapi_url="/openapi.json" if get_settings().debug else None,
)


@app.exception_handler(PixelwatchError)
async def pixelwatch_error_handler(request: Request, exc: PixelwatchError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.message, error_type=type(exc).__name__)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# --- Routes ---
app.include_router(events_router)
app.include_router(analytics_router)
app.include_router(diagnostics_router)
app.include_router(admin_router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "pixelwatch", "version": VERSION}
