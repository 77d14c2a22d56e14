from __future__ import annotations
from datetime import datetime, UTC
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

REQUEST_PENDING = "pending"
REQUEST_ACCEPTED = "accepted"
REQUEST_REJECTED = "rejected"

ORDER_OPEN = "open"
ORDER_PAYOUT_PENDING = "payout_pending"
ORDER_SETTLED = "settled"
ORDER_FAILED = "failed"

KIND_DEPOSIT = "deposit"
KIND_WITHDRAWAL = "withdrawal"


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Account(SQLModel, table=True):
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_account_balance_non_negative"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    first_name: str
    last_name: str
    email: str = Field(index=True, unique=True)
    password_hash: str
    created_at: datetime = Field(default_factory=utcnow)
    balance: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=2)
    is_verified: bool = False
    is_admin: bool = False
    request_delete: bool = False


class LedgerRecord(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    sender_id: UUID = Field(foreign_key="account.id", index=True)
    receiver_id: UUID = Field(foreign_key="account.id", index=True)
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    reference: str
    status: str = "success"
    # Provider order/payout reference; unique so one payment settles once.
    external_ref: Optional[str] = Field(default=None, unique=True)


class MoneyRequest(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
    # requester, paid on acceptance
    sender_id: UUID = Field(foreign_key="account.id", index=True)
    # payer
    receiver_id: UUID = Field(foreign_key="account.id", index=True)
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    description: str = ""
    status: str = Field(default=REQUEST_PENDING, index=True)


class PaymentOrder(SQLModel, table=True):
    reference: str = Field(primary_key=True)
    account_id: UUID = Field(foreign_key="account.id", index=True)
    kind: str
    provider: str
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    destination: Optional[str] = None
    approval_url: Optional[str] = None
    status: str = Field(default=ORDER_OPEN)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, index=True)


class VerificationCode(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    account_id: UUID = Field(foreign_key="account.id", index=True)
    email: str
    external_ref: str = Field(index=True)
    code: str
    expires_at: datetime = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow)


class AttemptRecord(SQLModel, table=True):
    identifier: str = Field(primary_key=True)
    attempts: int = 0
    blocked_count: int = 0
    timeout_until: Optional[datetime] = None
    last_attempt: datetime = Field(default_factory=utcnow)


class RateWindow(SQLModel, table=True):
    identifier: str = Field(primary_key=True)
    window_start: datetime = Field(default_factory=utcnow, index=True)
    hits: int = 0


class IdempotencyRecord(SQLModel, table=True):
    route: str = Field(primary_key=True)
    key: str = Field(primary_key=True)
    request_signature: str
    response_payload: str
