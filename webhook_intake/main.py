"""
Webhook intake service - Meta and payment gateway webhooks for the booking bot.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from webhook_intake.api.router import build_api_router
from webhook_intake.config import get_settings, validate_startup_config
from webhook_intake.utils.logging import (
    configure_structured_logging,
    sanitize_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("webhook_intake")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = sanitize_correlation_id(request.headers.get("X-Correlation-ID"))
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("Webhook intake starting up (env=%s)", settings.app_env)

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

    if settings.webhooks_enabled and app.state.start_workers:
        from webhook_intake.workers.webhook_worker import run_webhook_workers, run_claim_sweeper
        worker_tasks.append(asyncio.create_task(run_webhook_workers()))
        worker_tasks.append(asyncio.create_task(run_claim_sweeper()))
        logger.info("Webhook workers and claim sweeper started")
    else:
        logger.info("Webhook workers not started")

    yield

    logger.info("Webhook intake shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    from webhook_intake.database import dispose_engine
    from webhook_intake.utils.dedup import close_redis
    await close_redis()
    await dispose_engine()
    logger.info("Webhook intake shutdown complete")


def create_app(start_workers: bool = True) -> FastAPI:
    """
    Application factory.
    Raises ConfigurationError before any route is bound if the webhook
    configuration is unusable (e.g. missing or malformed ENCRYPTION_KEY).
    """
    settings = get_settings()

    configure_structured_logging(settings.log_level)

    validate_startup_config(settings)

    application = FastAPI(
        title="Webhook Intake",
        description="Webhook ingestion and reconciliation for the appointment booking bot",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.state.start_workers = start_workers

    application.add_middleware(CorrelationIdMiddleware)

    application.include_router(build_api_router(settings.webhooks_enabled))

    return application
