"""Main FastAPI application"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from pathlib import Path
import asyncio
import logging
import traceback
import time
import uuid

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi.responses import Response

from app.config import settings
from app.core.database import init_db, ping_db, SessionLocal
from app.core.exceptions import BaseAPIException, RateLimitExceededError
from app.api.deps import get_client_ip
from app.api.v1 import auth, users
from app.schemas.response import ErrorResponse, HealthResponse
from app.services.rate_limiter import rate_controller

# Configure logging - ensure log directory exists
_log_dir = Path(settings.get_log_file()).parent
_log_dir.mkdir(parents=True, exist_ok=True)
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(settings.get_log_file()),
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)

REQUEST_COUNT = Counter(
    "mcom_auth_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "mcom_auth_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
RATE_LIMITED_COUNT = Counter(
    "mcom_auth_rate_limited_total",
    "Requests rejected by a rate limiter",
    ["limiter"],
)
SLOWDOWN_SECONDS = Counter(
    "mcom_auth_slowdown_seconds_total",
    "Total delay added by the speed limiter",
)

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    debug=settings.DEBUG,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None
)


def _route_path(request: Request) -> str:
    """Route template, so path parameters (reset secrets) never reach logs or metrics."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def _error_response(
    request: Request,
    status_code: int,
    message: str,
    details=None,
    debug=None,
    headers=None,
) -> JSONResponse:
    body = ErrorResponse(
        error=message,
        details=details,
        path=request.url.path,
        debug=debug if not settings.is_production else None,
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


# Admission check: global limit, then progressive delay
@app.middleware("http")
async def rate_limit_admission(request: Request, call_next):
    """Reject over-limit clients and slow down heavy ones before any handler runs"""
    client = get_client_ip(request)

    decision = rate_controller.check_global(client)
    if not decision.allowed:
        RATE_LIMITED_COUNT.labels("global").inc()
        return _error_response(
            request,
            status.HTTP_429_TOO_MANY_REQUESTS,
            "Too many requests from this IP. Please try again after some time.",
            details={"retry_after": decision.retry_after},
            headers={"Retry-After": str(decision.retry_after)},
        )

    delay = rate_controller.slowdown_delay(client)
    if delay > 0:
        SLOWDOWN_SECONDS.inc(delay)
        await asyncio.sleep(delay)

    response = await call_next(request)
    # Auth routes already report their stricter limiter
    if "RateLimit-Limit" not in response.headers:
        response.headers["RateLimit-Limit"] = str(decision.limit)
        response.headers["RateLimit-Remaining"] = str(decision.remaining)
    return response


# Security headers + request timing middleware
@app.middleware("http")
async def add_headers_and_timing(request: Request, call_next):
    """Add security headers and log slow requests"""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id

    start = time.time()
    response = await call_next(request)
    duration = time.time() - start

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Cache-Control"] = "no-store"
    response.headers["X-Request-ID"] = request_id

    path = _route_path(request)
    REQUEST_COUNT.labels(request.method, path, str(response.status_code)).inc()
    REQUEST_LATENCY.labels(request.method, path).observe(duration)

    if duration > 1.0:
        logger.warning(
            "Slow request: %s %s took %.2fs request_id=%s",
            request.method,
            path,
            duration,
            request_id,
        )

    return response


# Registered after the http middlewares above so CORS stays outermost
# GZip compression for large responses
app.add_middleware(GZipMiddleware, minimum_size=500)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


# Exception handlers
@app.exception_handler(BaseAPIException)
async def api_exception_handler(request: Request, exc: BaseAPIException):
    """Handle custom API exceptions"""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        f"API Exception: {exc.message}",
        extra={
            "status_code": exc.status_code,
            "error_type": type(exc).__name__,
            "path": _route_path(request),
            "method": request.method
        }
    )

    headers = None
    if isinstance(exc, RateLimitExceededError):
        RATE_LIMITED_COUNT.labels("auth").inc()
        if exc.retry_after is not None:
            headers = {"Retry-After": str(exc.retry_after)}

    return _error_response(
        request,
        exc.status_code,
        exc.message,
        details=exc.details or None,
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors"""
    errors = []
    for error in exc.errors():
        errors.append({
            "field": ".".join(str(loc) for loc in error["loc"] if loc != "body"),
            "message": error["msg"],
            "type": error["type"]
        })

    logger.warning(
        f"Validation error: {[e['field'] for e in errors]}",
        extra={"path": _route_path(request), "method": request.method}
    )

    return _error_response(request, status.HTTP_400_BAD_REQUEST, "Validation failed", details=errors)


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    """Handle database errors"""
    logger.error(
        f"Database error: {str(exc)}",
        extra={
            "path": _route_path(request),
            "method": request.method,
            "traceback": traceback.format_exc()
        }
    )

    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "A database error occurred. Please try again later.",
        debug={"type": type(exc).__name__, "message": str(exc)},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle all other exceptions"""
    logger.critical(
        f"Unhandled exception: {str(exc)}",
        extra={
            "path": _route_path(request),
            "method": request.method,
            "traceback": traceback.format_exc()
        }
    )

    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An unexpected error occurred.",
        debug={"type": type(exc).__name__, "message": str(exc)},
    )


# Startup event
@app.on_event("startup")
async def startup_event():
    """Initialize application on startup"""
    settings.validate_security_settings()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    # Initialize database
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    # Create admin user if doesn't exist, drop sessions that expired while down
    try:
        from app.services.user_service import user_service
        from app.services.session_service import session_service
        from app.schemas.user import UserCreate, UserRole

        db = SessionLocal()
        try:
            admin = user_service.get_user_by_email(db, settings.ADMIN_EMAIL)
            if not admin:
                user_service.create_user(
                    db,
                    UserCreate(
                        name=settings.ADMIN_NAME,
                        email=settings.ADMIN_EMAIL,
                        password=settings.ADMIN_PASSWORD,
                        role=UserRole.ADMIN
                    )
                )
                logger.info("Created admin user")
            session_service.purge_expired(db)
        finally:
            db.close()
    except Exception as e:
        logger.error(f"Failed to bootstrap admin user: {e}")


# Shutdown event
@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    logger.info(f"Shutting down {settings.APP_NAME}")


# Health check endpoint
@app.get("/health", response_model=HealthResponse)
def health_check():
    """Health check endpoint"""
    db_ok = True
    db_error = None
    try:
        ping_db()
    except Exception as exc:
        db_ok = False
        db_error = str(exc) if not settings.is_production else "unavailable"

    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=settings.APP_VERSION,
        readiness={"database": {"ok": db_ok, "error": db_error}},
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "success": True,
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "status": "running",
    }


# Include routers
app.include_router(auth.router, prefix="/api/v1/auth", tags=["Authentication"])
app.include_router(users.router, prefix="/api/v1/users", tags=["Users"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS
    )
