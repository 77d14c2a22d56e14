"""Per-IP request limiting applied to every route except the health check."""
from __future__ import annotations

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ..core import db
from ..core.config import Settings
from ..core.dependencies import client_ip
from ..core.errors import RateLimitedError
from ..services import RequestRateLimiter
from .exceptions import wallet_error_response

# /ddos/check reports state without adding to it.
EXEMPT_PATHS = frozenset({"/health", "/ddos/check", "/docs", "/openapi.json"})


def _count_request(settings: Settings, identifier: str) -> None:
    with db.open_session() as session:
        RequestRateLimiter(session, settings).hit(identifier)


class AbuseProtectionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        settings = request.app.state.settings
        if not settings.abuse_protection_enabled or request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        try:
            # The limiter talks to the database synchronously.
            await run_in_threadpool(_count_request, settings, client_ip(request))
        except RateLimitedError as exc:
            return wallet_error_response(exc)
        return await call_next(request)
