from __future__ import annotations

from datetime import datetime
from typing import Any, Optional


class WalletError(Exception):
    """Base class for failures reported to API callers.

    The message is shown to the client as-is, so it must never carry
    provider internals or stack details.
    """

    status_code = 400
    code = "wallet_error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)

    default_message = "Request could not be processed"

    @property
    def message(self) -> str:
        return str(self)

    def extras(self) -> dict[str, Any]:
        return {}


class ValidationError(WalletError):
    code = "validation_error"
    default_message = "Invalid request"


class InvalidAccountError(WalletError):
    """Self-transfer, or a counterparty that cannot take part."""

    code = "invalid_account"
    default_message = "Invalid account"


class AccountNotFoundError(InvalidAccountError):
    status_code = 404
    code = "account_not_found"
    default_message = "Account not found"


class InsufficientFundsError(WalletError):
    """Raised when a withdrawal/transfer would drop balance below zero."""

    status_code = 409
    code = "insufficient_funds"
    default_message = "Insufficient funds"


class RequestNotFoundError(WalletError):
    status_code = 404
    code = "request_not_found"
    default_message = "Request not found"


class InvalidRequestStateError(WalletError):
    status_code = 409
    code = "invalid_request_state"
    default_message = "Request has already been resolved"


class PermissionDeniedError(WalletError):
    status_code = 403
    code = "permission_denied"
    default_message = "You are not allowed to perform this action"


class AuthenticationError(WalletError):
    status_code = 401
    code = "authentication_failed"
    default_message = "Invalid email or password"


class AccountNotVerifiedError(WalletError):
    status_code = 403
    code = "account_not_verified"
    default_message = "User is not verified yet or has been suspended"


class InvalidOrExpiredCodeError(WalletError):
    """Wrong, expired and already-used codes all look the same to the caller."""

    code = "invalid_or_expired_code"
    default_message = "Invalid or expired verification code"


class PaymentOrderNotFoundError(WalletError):
    status_code = 404
    code = "payment_order_not_found"
    default_message = "Payment order not found"


class ExternalPaymentError(WalletError):
    status_code = 502
    code = "external_payment_failure"
    default_message = "The payment provider could not complete the payment"


class RateLimitedError(WalletError):
    status_code = 429
    code = "rate_limited"
    default_message = "Your IP is blocked due to too many requests. Please try again later."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        timeout_until: Optional[datetime] = None,
        count: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.timeout_until = timeout_until
        self.count = count

    def extras(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.timeout_until is not None:
            data["timeout_until"] = self.timeout_until.isoformat()
        if self.count is not None:
            data["count"] = self.count
        return data


class LockedOutError(WalletError):
    status_code = 429
    code = "locked_out"

    def __init__(self, remaining_time: int) -> None:
        super().__init__(
            f"Too many incorrect attempts. Retry in {remaining_time} seconds."
        )
        self.remaining_time = remaining_time

    def extras(self) -> dict[str, Any]:
        return {"remaining_time": self.remaining_time}


class DuplicateIdempotencyKeyError(WalletError):
    """Raised when the same idempotency key is reused with different input."""

    status_code = 409
    code = "duplicate_idempotency_key"
    default_message = "Idempotency key was previously used with different parameters"


class PaymentTimeoutError(ExternalPaymentError):
    """The provider did not answer; the movement may or may not have happened."""

    status_code = 504
    code = "external_payment_timeout"
    default_message = "The payment provider did not respond in time"
