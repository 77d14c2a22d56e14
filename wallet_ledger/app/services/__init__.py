from .abuse import LoginLockout, RequestRateLimiter
from .accounts import AccountService
from .funding import FundingService
from .idempotency import IdempotencyStore
from .ledger import LedgerService
from .money_requests import MoneyRequestService
from .notifications import BackgroundNotifier, build_mail_transport
from .payments import PaymentGateway, build_payment_gateway
from .repository import (
    AttemptRepository,
    LedgerRepository,
    RequestRepository,
    VerificationRepository,
)

__all__ = [
    "AccountService",
    "AttemptRepository",
    "BackgroundNotifier",
    "FundingService",
    "IdempotencyStore",
    "LedgerRepository",
    "LedgerService",
    "LoginLockout",
    "MoneyRequestService",
    "PaymentGateway",
    "RequestRateLimiter",
    "RequestRepository",
    "VerificationRepository",
    "build_mail_transport",
    "build_payment_gateway",
]
