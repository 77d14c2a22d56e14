"""
Deposits and withdrawals across the external payment boundary.

Every movement goes through three phases, each committing on its own:

1. initiate: validate and open (or reuse) a provider reference, stored as
   a ``PaymentOrder``; no balance is touched.
2. request code: issue a single-use numeric code for that reference and
   mail it; a new code replaces any earlier one.
3. verify and settle: atomically consume the code, then capture the
   deposit and credit it, or commit the debit and send the payout.

A code is consumed before the provider is called, so a failed capture
never leaves a reusable code behind; the caller starts again at phase 1.
A payout the provider never confirmed stays debited as ``payout_pending``
until ``reconcile_payouts`` settles or refunds it.
"""
from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from ..core.config import Settings
from ..core.errors import (
    AccountNotFoundError,
    ExternalPaymentError,
    InsufficientFundsError,
    InvalidOrExpiredCodeError,
    PaymentOrderNotFoundError,
    PaymentTimeoutError,
    ValidationError,
)
from ..models import (
    AccountModel,
    CodeDispatchResponse,
    DepositInitiate,
    LedgerRecordResponse,
    PaymentOrderModel,
    PaymentOrderResponse,
    WithdrawalInitiate,
)
from ..models.db import (
    KIND_DEPOSIT,
    KIND_WITHDRAWAL,
    ORDER_FAILED,
    ORDER_OPEN,
    ORDER_PAYOUT_PENDING,
    ORDER_SETTLED,
    utcnow,
)
from .idempotency import IdempotencyStore
from .ledger import record_to_response
from .notifications import BackgroundNotifier
from .payments import PaymentGateway
from .repository import LedgerRepository, VerificationRepository

logger = logging.getLogger(__name__)


def generate_code(length: int) -> str:
    """Numeric code of exactly ``length`` digits, no leading zero."""
    low = 10 ** (length - 1)
    return str(low + secrets.randbelow(9 * low))


def order_to_response(order: PaymentOrderModel) -> PaymentOrderResponse:
    return PaymentOrderResponse(
        reference=order.reference,
        kind=order.kind,
        provider=order.provider,
        amount=order.amount,
        status=order.status,
        approval_url=order.approval_url,
    )


class FundingService:
    def __init__(
        self,
        session: Session,
        settings: Settings,
        gateway: PaymentGateway,
        notifier: BackgroundNotifier,
        ledger: Optional[LedgerRepository] = None,
        repository: Optional[VerificationRepository] = None,
    ) -> None:
        self.session = session
        self.gateway = gateway
        self.notifier = notifier
        self.code_ttl = timedelta(seconds=settings.verification_code_ttl_seconds)
        self.code_length = settings.verification_code_length
        self.reconcile_after = timedelta(seconds=settings.payout_reconcile_after_seconds)
        self.ledger = ledger or LedgerRepository(session)
        self.repository = repository or VerificationRepository(session)
        self.idempotency = IdempotencyStore(self.ledger)

    def _get_account(self, account_id: UUID) -> AccountModel:
        account = self.ledger.get_account(account_id)
        if account is None:
            raise AccountNotFoundError("User not found")
        return account

    def _replay(self, route: str, idempotency_key: Optional[str], signature: tuple) -> Optional[PaymentOrderResponse]:
        cached = self.idempotency.replay(route, idempotency_key, signature)
        if cached is None:
            return None
        logger.info("idempotent.%s.hit" % route, extra={"idempotency_key": idempotency_key})
        return PaymentOrderResponse.model_validate_json(cached)

    # ------------------------------------------------------------------
    # Phase 1
    # ------------------------------------------------------------------
    def initiate_deposit(
        self,
        account_id: UUID,
        payload: DepositInitiate,
        idempotency_key: Optional[str] = None,
    ) -> PaymentOrderResponse:
        signature = ("deposit", str(account_id), str(payload.amount), payload.provider)
        replay = self._replay("deposit", idempotency_key, signature)
        if replay is not None:
            return replay

        self._get_account(account_id)
        provider = self.gateway.get(payload.provider)
        # Close the read transaction before calling out over the network.
        self.session.rollback()
        external = provider.create_order(
            payload.amount,
            idempotency_key=idempotency_key or f"deposit-{uuid4().hex}",
            payment_method=payload.payment_method,
            return_url=payload.return_url,
            cancel_url=payload.cancel_url,
        )

        order = self.repository.add_order(
            PaymentOrderModel(
                reference=external.reference,
                account_id=account_id,
                kind=KIND_DEPOSIT,
                provider=provider.name,
                amount=payload.amount,
                approval_url=external.approval_url,
            )
        )
        response = order_to_response(order)
        self.idempotency.remember("deposit", idempotency_key, signature, response)
        self.session.commit()
        logger.info(
            "deposit.initiated",
            extra={"reference": order.reference, "provider": provider.name, "amount": str(payload.amount)},
        )
        return response

    def initiate_withdrawal(
        self,
        account_id: UUID,
        payload: WithdrawalInitiate,
        idempotency_key: Optional[str] = None,
    ) -> PaymentOrderResponse:
        signature = (
            "withdrawal",
            str(account_id),
            str(payload.amount),
            payload.provider,
            str(payload.destination),
        )
        replay = self._replay("withdrawal", idempotency_key, signature)
        if replay is not None:
            return replay

        account = self._get_account(account_id)
        if account.balance < payload.amount:
            raise InsufficientFundsError("Insufficient balance")
        provider = self.gateway.get(payload.provider)

        order = self.repository.add_order(
            PaymentOrderModel(
                reference=f"wd_{uuid4().hex}",
                account_id=account_id,
                kind=KIND_WITHDRAWAL,
                provider=provider.name,
                amount=payload.amount,
                destination=str(payload.destination),
            )
        )
        response = order_to_response(order)
        self.idempotency.remember("withdrawal", idempotency_key, signature, response)
        self.session.commit()
        logger.info(
            "withdrawal.initiated",
            extra={"reference": order.reference, "provider": provider.name, "amount": str(payload.amount)},
        )
        return response

    # ------------------------------------------------------------------
    # Phase 2
    # ------------------------------------------------------------------
    def request_code(self, account_id: UUID, reference: str) -> CodeDispatchResponse:
        order = self.repository.get_order(reference)
        if order is None or order.account_id != account_id or order.status != ORDER_OPEN:
            raise PaymentOrderNotFoundError()
        account = self._get_account(account_id)

        code = generate_code(self.code_length)
        expires_at = utcnow() + self.code_ttl
        self.repository.replace_code(
            account_id=account_id,
            email=account.email,
            external_ref=reference,
            code=code,
            expires_at=expires_at,
        )
        self.session.commit()
        logger.info("verification.code_issued", extra={"reference": reference, "kind": order.kind})

        minutes = int(self.code_ttl.total_seconds() // 60)
        if order.kind == KIND_DEPOSIT:
            subject = f"Deposit Verification Code ({order.provider})"
            action = f"confirming your deposit of ${order.amount}"
        else:
            subject = f"Withdrawal Verification Code ({order.provider})"
            action = f"confirming your withdrawal of ${order.amount} to {order.destination}"
        self.notifier.send(
            account.email,
            subject,
            f"Dear {account.first_name},\n\nYour verification code for {action} is: {code}.\n\n"
            f"Please enter this code within {minutes} minutes. If you did not request this, "
            "please disregard this message and secure your account.",
        )
        return CodeDispatchResponse(reference=reference, expires_at=expires_at)

    # ------------------------------------------------------------------
    # Phase 3
    # ------------------------------------------------------------------
    def verify(self, account_id: UUID, reference: str, code: str) -> LedgerRecordResponse:
        order = self.repository.get_order(reference)
        if order is None or order.account_id != account_id or order.status != ORDER_OPEN:
            raise InvalidOrExpiredCodeError()
        kind, provider_name = order.kind, order.provider
        amount, destination = order.amount, order.destination

        if not self.repository.consume_code(
            account_id=account_id, external_ref=reference, code=code.strip(), now=utcnow()
        ):
            self.session.rollback()
            raise InvalidOrExpiredCodeError()
        self.session.commit()

        provider = self.gateway.get(provider_name)
        if kind == KIND_DEPOSIT:
            record = self._settle_deposit(account_id, reference, amount, provider)
        else:
            record = self._settle_withdrawal(account_id, reference, amount, destination, provider)

        account = self.ledger.get_account(account_id)
        if account is not None:
            self._notify_settled(account, kind, record)
        return record

    def _fail_order(self, reference: str) -> None:
        self.repository.set_order_status(reference, ORDER_FAILED)
        self.session.commit()

    def _settle_deposit(self, account_id, reference, amount: Decimal, provider) -> LedgerRecordResponse:
        try:
            result = provider.capture_order(reference, idempotency_key=f"capture-{reference}")
        except PaymentTimeoutError:
            # Outcome unknown; the order stays open so a fresh code retries
            # the same capture key.
            logger.warning("deposit.capture_unconfirmed", extra={"reference": reference})
            raise
        except ExternalPaymentError:
            self._fail_order(reference)
            logger.warning("deposit.capture_failed", extra={"reference": reference})
            raise
        if not result.succeeded:
            self._fail_order(reference)
            logger.warning(
                "deposit.capture_incomplete", extra={"reference": reference, "status": result.status}
            )
            raise ExternalPaymentError(
                f"The {provider.label} payment was not completed. Please start a new deposit."
            )

        try:
            self.ledger.credit(account_id, amount)
            record = self.ledger.add_record(
                sender_id=account_id,
                receiver_id=account_id,
                amount=amount,
                reference=f"{provider.label} deposit (Order ID: {reference})",
                external_ref=reference,
            )
            self.repository.set_order_status(reference, ORDER_SETTLED)
            self.session.commit()
        except IntegrityError:
            # This reference already credited the ledger.
            self.session.rollback()
            existing = self.ledger.get_record_by_external_ref(reference)
            if existing is None:
                raise
            return record_to_response(existing)

        logger.info(
            "deposit.settled",
            extra={"reference": reference, "record_id": str(record.id), "amount": str(amount)},
        )
        return record_to_response(record)

    def _settle_withdrawal(
        self, account_id, reference, amount: Decimal, destination: Optional[str], provider
    ) -> LedgerRecordResponse:
        if not destination:
            self._fail_order(reference)
            raise ValidationError("PayPal email is required")

        # The debit commits before calling out; no transaction is open while
        # the payout is in flight.
        if not self.ledger.debit_if_sufficient(account_id, amount):
            self.session.rollback()
            self._fail_order(reference)
            raise InsufficientFundsError("Insufficient balance")
        self.repository.set_order_status(reference, ORDER_PAYOUT_PENDING)
        self.session.commit()
        logger.info("withdrawal.debited", extra={"reference": reference, "amount": str(amount)})

        try:
            return self._send_payout(account_id, reference, amount, destination, provider)
        except PaymentTimeoutError as exc:
            raise PaymentTimeoutError(
                f"{provider.label} has not confirmed your withdrawal yet. "
                "It will be completed or refunded automatically."
            ) from exc

    def _send_payout(
        self, account_id, reference, amount: Decimal, destination: str, provider
    ) -> LedgerRecordResponse:
        """Pay out an order whose debit is already committed, then settle or refund it."""
        try:
            payout = provider.payout(destination, amount, idempotency_key=reference)
        except PaymentTimeoutError:
            logger.warning("withdrawal.payout_unconfirmed", extra={"reference": reference})
            raise
        except ExternalPaymentError:
            self._refund_payout(account_id, reference, amount)
            raise
        if not payout.succeeded:
            self._refund_payout(account_id, reference, amount)
            raise ExternalPaymentError(f"Failed to process {provider.label} withdrawal.")

        try:
            if not self.repository.transition_order(reference, ORDER_PAYOUT_PENDING, ORDER_SETTLED):
                self.session.rollback()
                existing = self.ledger.get_record_by_external_ref(reference)
                if existing is None:
                    raise PaymentOrderNotFoundError()
                return record_to_response(existing)
            record = self.ledger.add_record(
                sender_id=account_id,
                receiver_id=account_id,
                amount=amount,
                reference=f"{provider.label} withdrawal to {destination} (Payout ID: {payout.reference})",
                external_ref=reference,
            )
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = self.ledger.get_record_by_external_ref(reference)
            if existing is None:
                raise
            return record_to_response(existing)

        logger.info(
            "withdrawal.settled",
            extra={"reference": reference, "record_id": str(record.id), "amount": str(amount)},
        )
        return record_to_response(record)

    def _refund_payout(self, account_id, reference: str, amount: Decimal) -> None:
        if self.repository.transition_order(reference, ORDER_PAYOUT_PENDING, ORDER_FAILED):
            self.ledger.credit(account_id, amount)
            self.session.commit()
            logger.warning("withdrawal.payout_failed", extra={"reference": reference})
        else:
            self.session.rollback()

    def reconcile_payouts(self) -> int:
        """Resolve withdrawals left debited but unconfirmed by a timeout or crash.

        The payout is resent under the same reference, which the provider
        answers with the original batch. A definite refusal refunds the debit.
        Returns the number of orders resolved.
        """
        stale = self.repository.list_orders(
            ORDER_PAYOUT_PENDING, updated_before=utcnow() - self.reconcile_after
        )
        pending = [
            (order.reference, order.account_id, order.amount, order.destination, order.provider)
            for order in stale
        ]
        self.session.rollback()

        resolved = 0
        for reference, account_id, amount, destination, provider_name in pending:
            try:
                provider = self.gateway.get(provider_name)
                record = self._send_payout(account_id, reference, amount, destination, provider)
            except PaymentTimeoutError:
                continue
            except ExternalPaymentError:
                resolved += 1
                continue
            except ValidationError:
                logger.warning(
                    "withdrawal.reconcile_skipped",
                    extra={"reference": reference, "provider": provider_name},
                )
                continue
            resolved += 1
            account = self.ledger.get_account(account_id)
            if account is not None:
                self._notify_settled(account, KIND_WITHDRAWAL, record)
            self.session.rollback()
        if pending:
            logger.info("withdrawal.reconciled", extra={"pending": len(pending), "resolved": resolved})
        return resolved

    def _notify_settled(self, account: AccountModel, kind: str, record: LedgerRecordResponse) -> None:
        if kind == KIND_DEPOSIT:
            subject = "Deposit Successful"
            summary = f"Your deposit of ${record.amount} has been completed successfully."
        else:
            subject = "Withdrawal Successful"
            summary = f"Your withdrawal of ${record.amount} was successfully processed."
        self.notifier.send(
            account.email,
            subject,
            f"Dear {account.first_name},\n\n{summary}\nTransaction ID: {record.id}\n"
            f"Reference: {record.reference}\nDate: {record.created_at:%Y-%m-%d %H:%M} UTC",
        )
