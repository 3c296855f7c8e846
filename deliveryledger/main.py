"""
Delivery Ledger - message delivery tracking and billing reconciliation.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from deliveryledger.config import get_settings
from deliveryledger.api.router import api_router
from deliveryledger.database import dispose_engine
from deliveryledger.utils.cache import close_redis
from deliveryledger.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("deliveryledger")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("Delivery Ledger starting up (env=%s)", settings.app_env)

    if not settings.require_webhook_signatures:
        missing = [
            name for name, value in (
                ("WEBHOOK_SECRET_META", settings.webhook_secret_meta),
                ("WEBHOOK_SECRET_GUPSHUP", settings.webhook_secret_gupshup),
                ("TWILIO_AUTH_TOKEN", settings.twilio_auth_token),
            ) if not value
        ]
        if missing and not settings.webhook_secret:
            logger.warning(
                "Webhook secrets not set (%s) - those providers are accepted unauthenticated. "
                "Set REQUIRE_WEBHOOK_SIGNATURES=true to reject them.",
                ", ".join(missing),
            )

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    worker_tasks: list[asyncio.Task] = []

    if settings.reconciliation_scheduler_enabled:
        from deliveryledger.workers.reconciliation_scheduler import run_reconciliation_scheduler
        worker_tasks.append(asyncio.create_task(run_reconciliation_scheduler()))
        logger.info("Reconciliation scheduler started")
    else:
        logger.info("Reconciliation scheduler disabled (RECONCILIATION_SCHEDULER_ENABLED=false)")

    if settings.orphan_linker_enabled:
        from deliveryledger.workers.orphan_linker import run_orphan_linker
        worker_tasks.append(asyncio.create_task(run_orphan_linker()))
        logger.info("Orphan event linker started")

    yield

    logger.info("Delivery Ledger shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        # Reconciliation marks its in-progress report failed on cancellation
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    await close_redis()
    await dispose_engine()
    logger.info("Delivery Ledger shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="Delivery Ledger",
        description="Message delivery tracking, dispute evidence and billing reconciliation",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.app_base_url],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID",
            "Accept", "Origin", "X-Requested-With",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    application.include_router(api_router)

    return application


app = create_app()
