from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sitecheck.api.v1.api import api_router
from sitecheck.core.check_registry_provider import shutdown_check_registry
from sitecheck.core.config import settings
from sitecheck.core.logging_config import configure_logging
from sitecheck.middleware.request_id import RequestIdMiddleware
from sitecheck.middleware.request_size import RequestSizeMiddleware
import time
import structlog

configure_logging(settings.APP_ENV, settings.LOG_LEVEL)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log probe configuration on startup and stop in-flight checks on shutdown."""
    logger.info(
        "Check service starting",
        environment=settings.APP_ENV,
        default_scheme=settings.DEFAULT_SCHEME,
        dns_timeout=settings.DNS_TIMEOUT,
        connect_timeout=settings.CONNECT_TIMEOUT,
        tls_timeout=settings.TLS_TIMEOUT,
        first_byte_timeout=settings.FIRST_BYTE_TIMEOUT,
        download_timeout=settings.DOWNLOAD_TIMEOUT,
        location_lookup=settings.LOCATION_LOOKUP_ENABLED,
    )
    try:
        yield
    finally:
        logger.info("Shutting down check service and stopping running checks...")
        await shutdown_check_registry()
        logger.info("Check service shutdown completed.")


app = FastAPI(
    title=settings.APP_NAME,
    lifespan=lifespan,
    docs_url="/api/v1/docs" if settings.ENABLE_API_DOCS else None,
    redoc_url="/api/v1/redoc" if settings.ENABLE_API_DOCS else None,
    openapi_url="/api/v1/openapi.json" if settings.ENABLE_API_DOCS else None,
)

# Configure CORS using settings from environment
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_METHODS,
    allow_headers=settings.CORS_HEADERS,
    expose_headers=settings.CORS_EXPOSE_HEADERS,
    max_age=settings.CORS_MAX_AGE,
)

# Request size enforcement
app.add_middleware(
    RequestSizeMiddleware,
    max_size=settings.MAX_REQUEST_SIZE,
)

app.add_middleware(RequestIdMiddleware)


# Add middleware to log all requests
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests (headers redacted)."""
    start_time = time.time()

    logger.info(
        "Request received",
        method=request.method,
        path=request.url.path,
        client=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        process_time = time.time() - start_time

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time_ms=round(process_time * 1000, 2),
        )

        return response
    except Exception as e:
        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            exception_type=type(e).__name__,
        )
        raise

# Add exception handler for validation errors
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors (body content redacted)."""
    logger.warning("Validation error", method=request.method, path=request.url.path)
    # Return error locations/types without echoing back the raw body
    safe_errors = [
        {"loc": e.get("loc"), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={"detail": safe_errors},
    )


@app.get("/health")
async def health_check():
    return {"status": "ok"}

# Include API routers
app.include_router(api_router)
