"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.base import BaseHTTPMiddleware

from referral_engine.api.dependencies import close_content_verifier, get_content_verifier
from referral_engine.api.routes import router
from referral_engine.config import settings
from referral_engine.db.migration_runner import run_migrations
from referral_engine.db.session import close_engines, get_write_session_factory
from referral_engine.models.domain import RewardPolicy
from referral_engine.observability import (
    get_logger,
    log_context,
    metrics,
    setup_logging,
    setup_tracing,
)
from referral_engine.observability.tracing import instrument_fastapi
from referral_engine.services.stripe_provider import StripeProvider
from referral_engine.services.verification import VerificationService
from referral_engine.services.workflow import WorkflowScheduler

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


def build_workflow_scheduler() -> WorkflowScheduler:
    """Scheduler whose steps each get a fresh VerificationService."""
    policy = RewardPolicy.from_settings()
    billing_provider = StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
    )

    def service_factory(session: AsyncSession) -> VerificationService:
        return VerificationService.build(
            session,
            get_content_verifier(),
            billing_provider,
            policy,
            settings.billing_currency,
        )

    return WorkflowScheduler(
        session_factory=get_write_session_factory(),
        service_factory=service_factory,
        max_attempts=settings.workflow_max_attempts,
        retry_backoff_seconds=settings.workflow_retry_backoff_seconds,
        batch_size=settings.workflow_batch_size,
        concurrency=settings.workflow_concurrency,
        poll_interval_seconds=settings.workflow_poll_interval_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Applies migrations, then starts the rescan scheduler. On shutdown the
    scheduler finishes its current tick before connections are closed.
    """
    # Startup
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        workflow_scheduler_enabled=settings.workflow_scheduler_enabled,
    )

    if settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations)

    scheduler = build_workflow_scheduler()
    app.state.workflow_scheduler = scheduler
    if settings.workflow_scheduler_enabled:
        scheduler.start()

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await scheduler.stop()
    await close_content_verifier()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log rejected payloads (bad post URL, unknown platform) and return 422."""
    errors = [
        {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            # ctx may hold the raised ValueError, which is not JSON serializable
            **({"ctx": {k: str(v) for k, v in error["ctx"].items()}} if "ctx" in error else {}),
        }
        for error in exc.errors()
    ]

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=errors,
    )
    return JSONResponse(status_code=422, content={"detail": errors})


setup_tracing()
instrument_fastapi(app)


class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Honour X-Forwarded-Proto from the load balancer."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto
        return await call_next(request)


app.add_middleware(ProxyHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _route_template(request: Request) -> str:
    """Matched route path so submission ids don't become metric labels."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log every request with timing; request and organization ids bound as context."""
    start_time = time.perf_counter()
    method = request.method

    with log_context(
        request_id=request.headers.get("X-Request-ID", "unknown"),
        organization_id=request.headers.get("X-Organization-ID"),
    ):
        logger.info("request_started", method=method, path=request.url.path)

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            endpoint = _route_template(request)
            metrics.record_http_request(endpoint, method, 500, duration)
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
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "referral_engine.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
