"""
Main Application - FastAPI application setup.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from structlog import get_logger

from adfree.api.dependencies import ServiceContainer
from adfree.api.routes import router
from adfree.config import Settings, settings
from adfree.db.migration_runner import run_migrations
from adfree.db.session import create_engine, create_session_factory
from adfree.observability import metrics, setup_logging, setup_tracing
from adfree.observability.tracing import instrument_fastapi, instrument_sqlalchemy
from adfree.services.entitlement_store import EntitlementStore
from adfree.services.jws import SignedPayloadVerifier
from adfree.services.notification_ingestor import NotificationIngestor
from adfree.services.products import ProductCatalog
from adfree.services.receipt_verifier import ReceiptVerifier

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


def build_services(config: Settings) -> ServiceContainer:
    """Construct the service graph once for the process."""
    engine = create_engine(config)
    instrument_sqlalchemy(engine)
    session_factory = create_session_factory(engine)

    http_client = httpx.AsyncClient(timeout=config.http_timeout_seconds)
    catalog = ProductCatalog.from_settings(config)
    signed_payloads = SignedPayloadVerifier.from_settings(config)
    store = EntitlementStore(session_factory, catalog)

    return ServiceContainer(
        engine=engine,
        session_factory=session_factory,
        http_client=http_client,
        catalog=catalog,
        store=store,
        verifier=ReceiptVerifier(config, catalog, signed_payloads, http_client),
        ingestor=NotificationIngestor(
            store,
            signed_payloads,
            catalog,
            accept_sandbox=config.accept_sandbox_notifications,
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        apple_environment=settings.apple_environment,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.run_migrations_on_startup:
        # alembic/env.py runs its own event loop
        await asyncio.to_thread(run_migrations)

    services = build_services(settings)
    app.state.services = services

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await services.close()
    logger.info("database_engine_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# Add validation error logging handler
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
    return JSONResponse(
        status_code=422,
        content={"detail": sanitized_errors},
    )


# Setup tracing
setup_tracing()
instrument_fastapi(app)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    import time

    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")

    logger.info(
        "request_started",
        method=request.method,
        path=request.url.path,
        request_id=request_id,
    )

    # Track in-progress requests
    endpoint = request.url.path
    method = request.method
    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

    try:
        response = await call_next(request)
        duration = time.time() - start_time

        metrics.record_http_request(endpoint, method, response.status_code, duration)

        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=duration,
            request_id=request_id,
        )

        return response
    except Exception as e:
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")

        logger.error(
            "request_failed",
            method=method,
            path=endpoint,
            error=str(e),
            duration_seconds=duration,
            request_id=request_id,
            exc_info=True,
        )
        raise
    finally:
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


# Register routes
app.include_router(router)


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
        return PlainTextResponse("metrics disabled\n", status_code=404)
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "adfree.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
