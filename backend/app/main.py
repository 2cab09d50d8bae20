"""Cesto payments backend: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# configure_structlog MUST be called before all other app imports:
# structlog caches the processor chain on first use.
from app.core.logging import configure_structlog
from app.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.routes import api_router
from app.core.config import Settings, get_settings
from app.core.rate_limit import RedisRateLimiter
from app.db import close_db, close_redis, get_redis, get_session_factory, init_db, init_redis
from app.integrations.mercadopago import MercadoPagoClient
from app.integrations.whatsapp import Notifier, WhatsAppNotifier
from app.middleware.correlation import (
    setup_correlation_middleware,
    get_correlation_id,
)
from app.payments.finalization import OrderFinalizer
from app.payments.processor import PaymentReconciler
from app.payments.scheduler import ReconciliationScheduler
from app.payments.store import WebhookStore
from app.payments.verification import SignatureVerifier
from app.services.order_service import OrderService
from app.services.storage_service import FileStorage, LocalFileStorage

logger = structlog.get_logger(__name__)


def wire_services(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    redis: Redis,
    settings: Settings,
    client: MercadoPagoClient | None = None,
    notifier: Notifier | None = None,
    storage: FileStorage | None = None,
) -> None:
    """Build the reconciliation pipeline and hang it on ``app.state``."""
    orders = OrderService(session_factory)
    store = WebhookStore(session_factory)
    finalizer = OrderFinalizer(
        orders=orders,
        notifier=notifier or WhatsAppNotifier(settings),
        storage=storage or LocalFileStorage.from_settings(settings),
    )
    reconciler = PaymentReconciler(
        store=store,
        client=client or MercadoPagoClient(settings),
        finalizer=finalizer,
        orders=orders,
        session_factory=session_factory,
    )

    app.state.orders = orders
    app.state.webhook_store = store
    app.state.finalizer = finalizer
    app.state.reconciler = reconciler
    app.state.verifier = SignatureVerifier.from_settings(settings)
    app.state.rate_limiter = RedisRateLimiter(
        redis,
        limit=settings.webhook_rate_limit,
        window_seconds=settings.webhook_rate_window_seconds,
        scope="webhook",
    )
    app.state.scheduler = ReconciliationScheduler(
        reconciler=reconciler,
        store=store,
        finalizer=finalizer,
        orders=orders,
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # SIGTERM flips this so /health returns 503 while connections drain
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    # Startup
    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    await init_db()
    logger.info("db_initialized")

    await init_redis()
    logger.info("redis_initialized")

    if settings.webhook_signature_validation and not settings.mercadopago_webhook_secret:
        logger.warning("mercadopago_webhook_secret_missing", action="webhook_endpoint_returns_503")

    wire_services(app, get_session_factory(), get_redis(), settings)

    if settings.scheduler_enabled:
        await app.state.scheduler.start()
    else:
        logger.info("reconciliation_scheduler_disabled")

    yield

    # Shutdown
    logger.info("shutdown_begin")
    await app.state.scheduler.stop()
    await app.state.rate_limiter.close()
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking.

    Logs errors server-side with full context, returns sanitized response to client.
    """
    debug_id = str(uuid.uuid4())

    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
        headers=getattr(exc, "headers", None),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors with debug_id tracking.

    Logs full exception with traceback, returns generic 500 to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    # No internal details leaked
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Mercado Pago webhook ingestion and order reconciliation",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    # Exception handlers
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router)

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
