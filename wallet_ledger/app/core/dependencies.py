from typing import Optional
from uuid import UUID

from fastapi import BackgroundTasks, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from ..models import AccountModel
from ..services import (
    AccountService,
    BackgroundNotifier,
    FundingService,
    LedgerRepository,
    LedgerService,
    LoginLockout,
    MoneyRequestService,
    PaymentGateway,
    RequestRateLimiter,
)
from .config import Settings
from .db import get_session
from .errors import AuthenticationError, PermissionDeniedError
from .security import decode_access_token

bearer_scheme = HTTPBearer(auto_error=False)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def get_notifier(request: Request, background_tasks: BackgroundTasks) -> BackgroundNotifier:
    return BackgroundNotifier(request.app.state.mail_transport, background_tasks)


def get_ledger_service(session: Session = Depends(get_session)) -> LedgerService:
    repository = LedgerRepository(session)
    return LedgerService(session, repository)


def get_account_service(
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
) -> AccountService:
    return AccountService(session, settings)


def get_money_request_service(
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
    notifier: BackgroundNotifier = Depends(get_notifier),
) -> MoneyRequestService:
    return MoneyRequestService(session, settings, notifier)


def get_funding_service(
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: BackgroundNotifier = Depends(get_notifier),
) -> FundingService:
    return FundingService(session, settings, gateway, notifier)


def get_login_lockout(
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
) -> LoginLockout:
    return LoginLockout(session, settings)


def get_rate_limiter(
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
) -> RequestRateLimiter:
    return RequestRateLimiter(session, settings)


def get_current_account(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
) -> AccountModel:
    if credentials is None:
        raise AuthenticationError("Not authenticated")
    account_id = decode_access_token(credentials.credentials, settings)
    account = session.get(AccountModel, account_id) if account_id else None
    if account is None:
        raise AuthenticationError("Invalid or expired token")
    return account


def get_current_account_id(account: AccountModel = Depends(get_current_account)) -> UUID:
    return account.id


def require_admin(account: AccountModel = Depends(get_current_account)) -> AccountModel:
    if not account.is_admin:
        raise PermissionDeniedError("Admin access required")
    return account
