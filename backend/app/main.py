"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

or, without the console script:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.delivery.engine import NotificationEngine, build_engine

from backend.app.api.v1.notifications import router as notification_router
from backend.app.api.v1.webhooks import router as webhook_router
from backend.app.api.v1.providers import router as provider_router

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build (or adopt) the engine, run its workers, close providers on exit."""
    logger.info(
        "%s %s starting (environment=%s)",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    engine: Optional[NotificationEngine] = getattr(app.state, "engine", None)
    if engine is None:
        engine = build_engine(settings)
        app.state.engine = engine
    if settings.BACKGROUND_WORKERS_ENABLED:
        await engine.start()
    yield
    await engine.stop()
    logger.info("%s stopped", settings.APP_NAME)


def create_app(engine: Optional[NotificationEngine] = None) -> FastAPI:
    """Application factory; pass an engine to run against custom providers."""
    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Multi-channel notification delivery engine. "
            "Validates recipients per channel, delivers through SMS, email, "
            "push, in-app and chat providers under bounded concurrency, "
            "retries transient failures with backoff, and reconciles "
            "asynchronous delivery receipts from webhooks and polling."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    if engine is not None:
        app.state.engine = engine

    # ── Middleware stack (outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # Handlers, then routers
    register_error_handlers(app)

    app.include_router(notification_router)
    app.include_router(webhook_router)
    app.include_router(provider_router)

    # Service index and probes

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "channels": ["sms", "email", "push", "in_app", "chat"],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check(request: Request, probe_balance: bool = False):
        """Engine and per-provider health; optionally probes balances."""
        report = await run_health_check(request.app.state.engine, probe_balance)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Process is up."""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness(request: Request):
        """503 unless at least one provider can deliver."""
        report = await run_health_check(request.app.state.engine)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
