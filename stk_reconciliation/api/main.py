"""
Main FastAPI application.

STK Push payment API with:
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from stk_reconciliation.config import get_settings
from stk_reconciliation.core.exceptions import ReconciliationError
from stk_reconciliation.monitoring.logging import setup_logging

from .dependencies import build_services
from .routes import admin_router, monitoring_router, payment_router, webhook_router

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Builds the shared services on startup unless one was installed already,
    and releases them on shutdown.
    """
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        mpesa_environment=settings.mpesa_environment,
    )

    owned = getattr(app.state, "services", None) is None
    if owned:
        try:
            app.state.services = await build_services(settings)
            logger.info("services_initialized")
        except Exception as e:
            logger.error("services_initialization_failed", error=str(e))
            raise

    yield

    logger.info("application_shutdown")
    if owned:
        try:
            await app.state.services.close()
            app.state.services = None
            logger.info("services_closed")
        except Exception as e:
            logger.error("services_shutdown_error", error=str(e))


# Create FastAPI application
app = FastAPI(
    title="STK Push Reconciliation Service",
    description=(
        "M-Pesa STK Push payments with callback, status-poll and sweep "
        "reconciliation. Every session resolves exactly once."
    ),
    version="1.0.0",
    lifespan=lifespan,
    # Interactive docs are not served in production
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(
    request: Request, exc: ReconciliationError
) -> JSONResponse:
    """Map domain errors to their HTTP status and error code."""
    log = logger.error if exc.http_status >= 500 else logger.warning
    log(
        "request_rejected",
        error_code=exc.error_code,
        error=exc.message,
        status_code=exc.http_status,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


# Include routers
app.include_router(payment_router)
app.include_router(webhook_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.app_env,
        "mpesa_environment": settings.mpesa_environment,
        "docs": None if settings.is_production else "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


def run() -> None:
    import uvicorn

    uvicorn.run(
        "stk_reconciliation.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
    )


if __name__ == "__main__":
    run()
