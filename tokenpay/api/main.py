"""
Main FastAPI application.

Backend for the desktop client with:
- CORS configuration for the app's webview origins
- Service error mapping
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

from tokenpay import __version__
from tokenpay.config import get_settings
from tokenpay.core.errors import ServiceError
from tokenpay.database.connection import close_db, init_db
from tokenpay.monitoring.logging import bind_request_context, clear_request_context, setup_logging

from .dependencies import close_services
from .routes import (
    admin_router,
    catalog_router,
    kyc_router,
    monitoring_router,
    payment_method_router,
    profile_router,
    purchase_router,
    subscription_router,
    token_router,
    webhook_router,
)

setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Creates missing tables on startup; closes services and the engine on shutdown.
    """
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    await close_services()
    await close_db()
    logger.info("database_connections_closed")


app = FastAPI(
    title="tokenpay",
    description=(
        "Onboarding, token packages, subscriptions and contractor KYC backed by Stripe. "
        "Features: idempotent purchases, an append-only token ledger, webhook "
        "deduplication and Prometheus monitoring."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url="/openapi.json",
)

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
    Tag each request with an id for tracing.

    A client-supplied `X-Request-ID` is kept; otherwise one is generated.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()
    bind_request_context(request_id, request.method, request.url.path)

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
        clear_request_context()


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Answer with the error's status and `{"error": {code, message, details}}`."""
    log = logger.warning if exc.http_status < 500 else logger.error
    log(
        "service_error",
        error_code=exc.error_code,
        error=exc.message,
        status_code=exc.http_status,
        path=request.url.path,
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
        exc_info=exc,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "internal_error",
                "message": "An unexpected error occurred. Please try again later.",
            }
        },
    )


app.include_router(profile_router)
app.include_router(catalog_router)
app.include_router(purchase_router)
app.include_router(token_router)
app.include_router(subscription_router)
app.include_router(payment_method_router)
app.include_router(kyc_router)
app.include_router(admin_router)
app.include_router(webhook_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": __version__,
        "status": "operational",
        "environment": settings.app_env,
        "test_mode": settings.is_test_mode,
        "docs": None if settings.is_production else "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


def main() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "tokenpay.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
