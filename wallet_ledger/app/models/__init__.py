from .db import Account as AccountModel
from .db import AttemptRecord as AttemptRecordModel
from .db import IdempotencyRecord as IdempotencyRecordModel
from .db import LedgerRecord as LedgerRecordModel
from .db import MoneyRequest as MoneyRequestModel
from .db import PaymentOrder as PaymentOrderModel
from .db import RateWindow as RateWindowModel
from .db import VerificationCode as VerificationCodeModel
from .schemas import (
    AccountCreate,
    AccountResponse,
    AccountSummary,
    BlockStatusResponse,
    CodeDispatchResponse,
    CodeVerification,
    DepositInitiate,
    LedgerRecordResponse,
    LoginRequest,
    MoneyRequestCreate,
    MoneyRequestResponse,
    MoneyRequestStatusUpdate,
    PaymentOrderResponse,
    StatementResponse,
    TokenResponse,
    TransferRequest,
    VerificationStatusUpdate,
    VerifyAccountRequest,
    WithdrawalInitiate,
)

__all__ = [
    "AccountCreate",
    "AccountResponse",
    "AccountSummary",
    "BlockStatusResponse",
    "CodeDispatchResponse",
    "CodeVerification",
    "DepositInitiate",
    "LedgerRecordResponse",
    "LoginRequest",
    "MoneyRequestCreate",
    "MoneyRequestResponse",
    "MoneyRequestStatusUpdate",
    "PaymentOrderResponse",
    "StatementResponse",
    "TokenResponse",
    "TransferRequest",
    "VerificationStatusUpdate",
    "VerifyAccountRequest",
    "WithdrawalInitiate",
    "AccountModel",
    "AttemptRecordModel",
    "IdempotencyRecordModel",
    "LedgerRecordModel",
    "MoneyRequestModel",
    "PaymentOrderModel",
    "RateWindowModel",
    "VerificationCodeModel",
]
