"""
Fizzy API Server

Entry point for the FastAPI application.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import text

from fizzy.api.v1 import router as api_v1_router
from fizzy.core.broadcast import manager
from fizzy.core.config import get_settings
from fizzy.core.database import engine, init_db
from fizzy.core.errors import FizzyError
from fizzy.core.logging import configure_logging
from fizzy.core.metrics import metrics
from fizzy.core.middleware import RequestContextMiddleware, SecurityHeadersMiddleware
from fizzy.core.redis import close_redis, get_redis

settings = get_settings()
log = structlog.get_logger()


def error_body(code: str, message: str, status: int) -> dict:
    return {"error": {"code": code, "message": message, "status": status}}


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("fizzy.starting", debug=settings.debug)
    if settings.debug:
        await init_db()
    yield
    log.info("fizzy.shutting_down")
    await manager.close_all()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="Fizzy",
        description="Boards, cards and the event fan-out behind them.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Middleware (order matters: outermost first)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.exception_handler(FizzyError)
    async def fizzy_error_handler(request: Request, exc: FizzyError):
        if exc.status >= 500:
            log.error("api.error", code=exc.code, message=exc.message)
        return JSONResponse(
            status_code=exc.status,
            content=error_body(exc.code, exc.message, exc.status),
        )

    # API routes
    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness probes."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check():
        """Readiness check: database and Redis must answer."""
        checks = {}
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception as exc:
            checks["database"] = f"error: {exc}"
        try:
            redis = await get_redis()
            await redis.ping()
            checks["redis"] = "ok"
        except Exception as exc:
            checks["redis"] = f"error: {exc}"

        ready = all(v == "ok" for v in checks.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"status": "ready" if ready else "not_ready", "checks": checks},
        )

    @app.get("/metrics", tags=["System"], response_class=PlainTextResponse)
    async def metrics_endpoint():
        """Prometheus text exposition of this process's counters."""
        return PlainTextResponse(metrics.to_prometheus(), media_type="text/plain; version=0.0.4")

    return app


app = create_app()
