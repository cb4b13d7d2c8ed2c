"""
iOS Back - FastAPI Application

App Store receipt verification and subscription entitlement service.
"""
from fastapi import FastAPI, Request
import structlog
import logging
import time
import uuid

from iosback.config import settings
from iosback.iap.routes import router as iap_router


# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        getattr(logging, settings.log_level.upper(), logging.INFO)
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="App Store receipt verification and subscription entitlements",
    version="0.1.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None
)


def extract_client_ip(request: Request) -> str:
    """
    Best-effort client address for logging.

    X-Forwarded-For can be forged by the client, never use it for access
    decisions.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()

    return request.client.host if request.client else ""


@app.middleware("http")
async def usage_middleware(request: Request, call_next):
    """Tag each request with an id and log one usage line for it."""
    request_id = str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(reqid=request_id)

    start = time.monotonic()
    http_status = 500
    try:
        response = await call_next(request)
        http_status = response.status_code
        response.headers["X-Request-ID"] = request_id
        return response
    finally:
        logger.info(
            "usage",
            path=request.url.path,
            client_ip=extract_client_ip(request),
            http_status=http_status,
            took=int((time.monotonic() - start) * 1000)
        )


# Include routers
app.include_router(iap_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": "0.1.0",
        "status": "operational",
        "environment": settings.environment
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.on_event("startup")
async def startup_event():
    """Run on application startup."""
    logger.info(
        "application_starting",
        environment=settings.environment,
        debug=settings.debug,
        apple_sandbox=settings.apple_sandbox,
        apple_secret_configured=bool(settings.apple_shared_secret)
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Run on application shutdown."""
    logger.info("application_shutting_down")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "iosback.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level
    )
