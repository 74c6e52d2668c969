"""
Nearmatch: FastAPI Application Entry Point

Production-ready application with:
- Async lifespan management (database handle, spatial index warm-up)
- CORS, timeout, and structured-logging middleware
- One exception handler for the service's error taxonomy
- Health-check endpoints (liveness + deep readiness)
- Active-request tracking for graceful shutdown
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from app.config import Settings, get_settings
from app.database import Database
from app.errors import NearmatchError
from app.services.spatial_index import SpatialIndex
from app.services.user_directory import UserDirectory

# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def configure_logging(level: str) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger: structlog.stdlib.BoundLogger = structlog.get_logger("nearmatch")

# ---------------------------------------------------------------------------
# Active request counter for graceful shutdown
# ---------------------------------------------------------------------------

_active_requests: int = 0
_active_requests_lock = asyncio.Lock()

DRAIN_TIMEOUT_SECONDS = 15


async def _increment_active() -> None:
    global _active_requests
    async with _active_requests_lock:
        _active_requests += 1


async def _decrement_active() -> None:
    global _active_requests
    async with _active_requests_lock:
        _active_requests -= 1


async def _drain_active_requests() -> None:
    """Wait until all in-flight requests complete or timeout expires."""
    deadline = time.monotonic() + DRAIN_TIMEOUT_SECONDS
    while True:
        async with _active_requests_lock:
            if _active_requests <= 0:
                break
        if time.monotonic() >= deadline:
            logger.warning(
                "drain_timeout_exceeded",
                remaining_requests=_active_requests,
            )
            break
        await asyncio.sleep(0.25)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the database handle and load the spatial index; close on exit."""
    settings: Settings = app.state.settings
    database: Database = app.state.database
    index: SpatialIndex = app.state.spatial_index

    # -- Startup --------------------------------------------------------- #
    logger.info(
        "startup_begin",
        environment=settings.ENVIRONMENT,
        log_level=settings.LOG_LEVEL,
    )

    # 1. Database: optional schema bootstrap, then warm the pool
    if settings.DB_CREATE_ALL:
        await database.create_all()
        logger.info("database_schema_created")
    await database.ping()
    logger.info("database_pool_initialised")

    # 2. Spatial index from the authoritative coordinates
    async with database.session() as session:
        entries = await UserDirectory().located_users(session)
    indexed = await asyncio.to_thread(index.rebuild, entries)

    logger.info("startup_complete", indexed_users=indexed)

    yield

    # -- Shutdown -------------------------------------------------------- #
    logger.info("shutdown_begin")

    # 1. Drain in-flight requests
    await _drain_active_requests()

    # 2. Dispose DB engine (closes the connection pool)
    await database.dispose()

    logger.info("shutdown_complete")


# ---------------------------------------------------------------------------
# Middleware classes
# ---------------------------------------------------------------------------

class TimeoutMiddleware(BaseHTTPMiddleware):
    """Abort requests that exceed a configurable wall-clock timeout."""

    def __init__(self, app, timeout_seconds: float = 30.0) -> None:
        super().__init__(app)
        self.timeout_seconds = timeout_seconds

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        try:
            return await asyncio.wait_for(
                call_next(request),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "request_timeout",
                method=request.method,
                path=request.url.path,
                timeout=self.timeout_seconds,
            )
            return JSONResponse(
                status_code=504,
                content={"detail": "Request timed out", "code": "timeout"},
            )


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status code, and duration."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        start = time.perf_counter()

        await _increment_active()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.exception(
                "request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 2),
            )
            raise
        finally:
            await _decrement_active()

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "request_handled",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
        return response


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

async def handle_nearmatch_error(request: Request, exc: NearmatchError) -> JSONResponse:
    log = logger.bind(
        method=request.method,
        path=request.url.path,
        code=exc.code,
        **exc.context,
    )
    if exc.status_code >= 500:
        log.error("request_failed", status=exc.status_code, message=exc.message)
    else:
        log.info("request_rejected", status=exc.status_code, message=exc.message)

    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers,
    )


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed input as 400 rather than FastAPI's default 422."""
    return JSONResponse(
        status_code=400,
        content={
            "detail": "Invalid request.",
            "code": "invalid_input",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    settings: Settings | None = None,
    database: Database | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="Nearmatch",
        description="Proximity-based user matching",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )
    app.state.settings = settings
    app.state.database = database or Database.from_settings(settings)
    app.state.spatial_index = SpatialIndex(
        cell_size_deg=settings.SPATIAL_CELL_SIZE_DEG,
        lock_timeout=settings.SPATIAL_LOCK_TIMEOUT_SECONDS,
    )

    # -- Middleware (applied in reverse order; last added runs first) ----- #

    app.add_middleware(StructuredLoggingMiddleware)
    app.add_middleware(TimeoutMiddleware, timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(NearmatchError, handle_nearmatch_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)

    # -- Health-check endpoints -------------------------------------------- #

    @app.get("/health", tags=["health"])
    async def health_liveness() -> dict:
        """Lightweight liveness probe: healthy while the process runs."""
        return {"status": "healthy"}

    @app.get("/health/deep", tags=["health"])
    async def health_deep(request: Request) -> dict:
        """Deep readiness probe: database connectivity and index integrity."""
        result: dict = {
            "status": "healthy",
            "database": "connected",
            "spatial_index": "consistent",
        }

        try:
            await request.app.state.database.ping()
        except Exception as exc:
            logger.error("health_db_failure", error=str(exc))
            result["database"] = f"error: {exc}"
            result["status"] = "degraded"

        index: SpatialIndex = request.app.state.spatial_index
        corrupted = await asyncio.to_thread(index.verify)
        result["indexed_users"] = len(index)
        if corrupted:
            result["spatial_index"] = f"corrupted_cells: {len(corrupted)}"
            result["status"] = "degraded"

        return result

    # -- API router ------------------------------------------------------ #

    from app.api.router import router as api_router

    app.include_router(api_router, prefix="/api/v1")
    return app


app = create_app()
