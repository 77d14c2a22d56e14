from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

Amount = Annotated[
    Decimal,
    Field(gt=0, max_digits=12, decimal_places=2, description="Amount in major units, two decimals"),
]


class AccountCreate(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=72)


class AccountResponse(BaseModel):
    id: UUID
    first_name: str
    last_name: str
    email: str
    created_at: datetime
    balance: Decimal = Field(..., ge=0)
    is_verified: bool
    is_admin: bool
    request_delete: bool


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class VerificationStatusUpdate(BaseModel):
    is_verified: bool


class LedgerRecordResponse(BaseModel):
    id: UUID
    created_at: datetime
    sender_id: UUID
    receiver_id: UUID
    amount: Decimal
    reference: str
    status: str
    kind: Literal["transfer", "deposit", "withdrawal"]


class StatementResponse(BaseModel):
    items: list[LedgerRecordResponse]
    next_cursor: Optional[str] = None


class TransferRequest(BaseModel):
    receiver_id: UUID
    amount: Amount
    reference: Optional[str] = Field(default=None, max_length=255)


class VerifyAccountRequest(BaseModel):
    receiver_id: UUID


class AccountSummary(BaseModel):
    id: UUID
    first_name: str
    last_name: str


class MoneyRequestCreate(BaseModel):
    receiver_id: UUID
    amount: Amount
    description: str = Field(default="", max_length=255)


class MoneyRequestStatusUpdate(BaseModel):
    status: Literal["accepted", "rejected"]


class MoneyRequestResponse(BaseModel):
    id: UUID
    created_at: datetime
    sender_id: UUID
    receiver_id: UUID
    amount: Decimal
    description: str
    status: Literal["pending", "accepted", "rejected"]
    message: Optional[str] = None


class DepositInitiate(BaseModel):
    amount: Amount
    provider: Literal["card", "paypal"]
    payment_method: Optional[str] = Field(
        default=None, description="Card token or payment method id for the card rail"
    )
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


class WithdrawalInitiate(BaseModel):
    amount: Amount
    provider: Literal["paypal"] = "paypal"
    destination: EmailStr


class PaymentOrderResponse(BaseModel):
    reference: str
    kind: Literal["deposit", "withdrawal"]
    provider: str
    amount: Decimal
    status: str
    approval_url: Optional[str] = None


class CodeDispatchResponse(BaseModel):
    reference: str
    expires_at: datetime
    message: str = "Verification code sent to your email."


class CodeVerification(BaseModel):
    code: str = Field(..., min_length=1, max_length=12)


class BlockStatusResponse(BaseModel):
    success: bool = True
    message: str = "You are not blocked. You can make requests."
