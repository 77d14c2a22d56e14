import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from .api.ddos import router as ddos_router
from .api.exceptions import register_exception_handlers
from .api.funding import router as funding_router
from .api.middleware import AbuseProtectionMiddleware
from .api.money_requests import router as requests_router
from .api.routes import router as accounts_router, transfer_router
from .api.users import router as users_router
from .core import db
from .core.config import Settings, get_settings
from .models.db import utcnow
from .services import (
    BackgroundNotifier,
    FundingService,
    PaymentGateway,
    RequestRateLimiter,
    VerificationRepository,
    build_mail_transport,
    build_payment_gateway,
)

logger = logging.getLogger(__name__)


def sweep_expired(
    settings: Settings,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[BackgroundNotifier] = None,
) -> None:
    """Drop expired verification codes and idle per-IP counters, then retry unconfirmed payouts."""
    with db.open_session() as session:
        codes = VerificationRepository(session).purge_expired_codes(utcnow())
        windows = RequestRateLimiter(session, settings).purge_idle()
        session.commit()
    if codes or windows:
        logger.info("sweep.completed", extra={"codes": codes, "windows": windows})

    if gateway is not None and notifier is not None:
        with db.open_session() as session:
            FundingService(session, settings, gateway, notifier).reconcile_payouts()


async def _sweep_forever(app: FastAPI) -> None:
    settings: Settings = app.state.settings
    notifier = BackgroundNotifier(app.state.mail_transport)
    while True:
        await asyncio.sleep(settings.sweep_interval_seconds)
        try:
            await run_in_threadpool(sweep_expired, settings, app.state.payment_gateway, notifier)
        except SQLAlchemyError:
            logger.warning("sweep.failed", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    db.init_db()
    if getattr(app.state, "payment_gateway", None) is None:
        app.state.payment_gateway = build_payment_gateway(settings)
    if getattr(app.state, "mail_transport", None) is None:
        app.state.mail_transport = build_mail_transport(settings)
    sweeper = asyncio.create_task(_sweep_forever(app))
    try:
        yield
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        app.state.payment_gateway.close()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.payment_gateway = None
    app.state.mail_transport = None

    app.include_router(users_router)
    app.include_router(accounts_router)
    app.include_router(transfer_router)
    app.include_router(requests_router)
    app.include_router(funding_router)
    app.include_router(ddos_router)
    app.add_middleware(AbuseProtectionMiddleware)
    register_exception_handlers(app)

    @app.get("/health")
    def read_health() -> dict:
        try:
            database = "ok" if db.ping() else "unavailable"
        except SQLAlchemyError:
            logger.warning("health.database_unavailable", exc_info=True)
            database = "unavailable"
        gateway = app.state.payment_gateway
        providers = gateway.health() if gateway is not None else {}
        return {
            "status": "ok" if database == "ok" else "degraded",
            "database": database,
            "providers": providers,
        }

    return app


app = create_app()
