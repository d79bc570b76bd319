"""
Main Application - FastAPI application setup.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest

from entitlements.api.routes import router
from entitlements.api.status_routes import router as status_router
from entitlements.config import settings
from entitlements.db.migration_runner import run_migrations
from entitlements.db.session import close_engine, get_engine, get_session_factory
from entitlements.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from entitlements.observability.tracing import instrument_fastapi, instrument_sqlalchemy
from entitlements.services.entitlement_service import EntitlementService

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)

# Scraped or probed every few seconds
UNLOGGED_PATHS = frozenset({"/metrics", "/v1/status"})


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Builds the entitlement service on startup and tears it down on shutdown.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    run_migrations()
    instrument_sqlalchemy(get_engine())

    service = EntitlementService.from_settings(get_session_factory(), settings)
    app.state.entitlement_service = service
    await service.start()

    yield

    logger.info("application_shutting_down")
    await service.close()
    app.state.entitlement_service = None
    await close_engine()
    logger.info("database_engine_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log detailed validation errors for debugging."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        # ctx may contain non-serializable objects
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(status_code=422, content={"detail": sanitized_errors})


# Setup tracing
setup_tracing()
instrument_fastapi(app)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """
    Log and time every request.

    The request id is bound to the log context, so entries written by the
    engine while serving the request carry it too. Metrics are labeled with
    the route template; raw paths embed account ids.
    """
    if request.url.path in UNLOGGED_PATHS:
        return await call_next(request)

    start_time = time.perf_counter()
    method = request.method

    with log_context(request_id=request.headers.get("X-Request-ID", "unknown")):
        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            metrics.record_http_request(_route_template(request), method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")
            logger.error(
                "request_failed",
                method=method,
                path=request.url.path,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise

        duration = time.perf_counter() - start_time
        metrics.record_http_request(_route_template(request), method, response.status_code, duration)
        logger.info(
            "request_completed",
            method=method,
            path=request.url.path,
            status_code=response.status_code,
            duration_seconds=duration,
        )
    return response


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


# Register routes
app.include_router(router)
app.include_router(status_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    if not settings.metrics_enabled:
        return PlainTextResponse("", status_code=404)
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "entitlements.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
