"""
ASGI entry point.

Builds the FastAPI app: rate limiting, CORS, a correlation-id middleware,
translation of service errors into HTTP responses, health checks for the
orchestrator, and the versioned order/payment/delivery/shipment routers.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from payship.api.limiter import limiter
from payship.api.v1.delivery import router as delivery_router
from payship.api.v1.orders import router as orders_router
from payship.api.v1.payments import router as payments_router
from payship.api.v1.shipments import router as shipments_router
from payship.cache.redis_client import close_redis_client
from payship.core.config import get_settings
from payship.core.exceptions import PayshipError
from payship.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from payship.database.connection import check_database_health, close_database_connections

configure_logging()
logger = get_logger(__name__)
settings = get_settings()

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "Payship API starting",
        environment=settings.environment,
        version=settings.app_version,
        local_zone_size=len(settings.local_postal_codes),
    )
    yield
    with log_performance(logger, "api_shutdown"):
        await close_redis_client()
        await close_database_connections()
    logger.info("Payship API stopped")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Order payment reconciliation, delivery pricing and courier shipments",
    lifespan=lifespan,
    debug=settings.debug,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
    expose_headers=[REQUEST_ID_HEADER],
)


@app.middleware("http")
async def correlate_request(request: Request, call_next):
    """
    Tag the request with an id (taken from the caller when given), echo it
    back and time the handler.
    """
    request_id = set_request_id(request.headers.get(REQUEST_ID_HEADER))
    path = request.url.path
    try:
        with log_performance(logger, "http_request", method=request.method, path=path):
            response = await call_next(request)
    except Exception as e:
        logger.error(
            "Request crashed",
            method=request.method,
            path=path,
            error_type=type(e).__name__,
        )
        raise
    else:
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "Request handled",
            method=request.method,
            path=path,
            status_code=response.status_code,
        )
        return response
    finally:
        clear_context()


def error_body(**fields) -> dict:
    return {**fields, "request_id": get_request_id()}


@app.exception_handler(PayshipError)
async def handle_service_error(request: Request, exc: PayshipError) -> JSONResponse:
    """Service errors that escaped a router keep their category status."""
    log = logger.error if exc.http_status >= 500 else logger.warning
    log(
        "Service error",
        path=request.url.path,
        code=exc.code,
        error=exc.message,
        context=exc.context,
    )
    return JSONResponse(status_code=exc.http_status, content=error_body(detail=exc.to_detail()))


@app.exception_handler(RequestValidationError)
async def handle_invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    logger.warning("Request rejected by validation", path=request.url.path, errors=errors)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_body(error="Validation Error", details=errors),
    )


@app.exception_handler(Exception)
async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error_type=type(exc).__name__,
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(error="Internal Server Error", message="An unexpected error occurred"),
    )


# ============================================================================
# Health checks
# ============================================================================


@app.get("/health", tags=["Health"], summary="Process health")
@limiter.exempt
async def health_check() -> dict[str, str]:
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@app.get("/ready", tags=["Health"], summary="Readiness: database reachable")
@limiter.exempt
async def readiness_check():
    if not await check_database_health(max_retries=1):
        logger.warning("Not ready, database unreachable")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "dependencies_ready": False, "database": "unhealthy"},
        )
    return {"status": "ready", "dependencies_ready": True, "database": "healthy"}


@app.get("/live", tags=["Health"], summary="Liveness")
@limiter.exempt
async def liveness_check() -> dict[str, str]:
    return {"status": "alive", "version": settings.app_version}


for router in (orders_router, payments_router, delivery_router, shipments_router):
    app.include_router(router, prefix=settings.api_v1_prefix)
