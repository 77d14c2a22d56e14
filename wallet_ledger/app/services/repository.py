from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ..models import (
    AccountModel,
    AttemptRecordModel,
    IdempotencyRecordModel,
    LedgerRecordModel,
    MoneyRequestModel,
    PaymentOrderModel,
    RateWindowModel,
    VerificationCodeModel,
)
from ..models.db import REQUEST_PENDING, utcnow


class LedgerRepository:
    """Thin data access layer around the SQLModel session.

    Balance changes are expressed as single conditional UPDATE statements
    so the database, not application memory, decides whether funds are
    available. Callers own the transaction (commit/rollback).
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    # Account operations -------------------------------------------------
    def add_account(
        self,
        *,
        first_name: str,
        last_name: str,
        email: str,
        password_hash: str,
    ) -> AccountModel:
        account = AccountModel(
            first_name=first_name,
            last_name=last_name,
            email=email,
            password_hash=password_hash,
        )
        self.session.add(account)
        self.session.flush()
        self.session.refresh(account)
        return account

    def get_account(self, account_id: UUID) -> Optional[AccountModel]:
        return self.session.get(AccountModel, account_id)

    def get_account_by_email(self, email: str) -> Optional[AccountModel]:
        stmt = select(AccountModel).where(AccountModel.email == email)
        return self.session.exec(stmt).first()

    def list_accounts(self) -> list[AccountModel]:
        stmt = select(AccountModel).order_by(AccountModel.created_at.desc())
        return list(self.session.exec(stmt))

    def set_account_flags(self, account_id: UUID, **flags: bool) -> bool:
        stmt = update(AccountModel).where(AccountModel.id == account_id).values(**flags)
        return self.session.exec(stmt).rowcount == 1

    def debit_if_sufficient(self, account_id: UUID, amount: Decimal) -> bool:
        """Decrement-if-sufficient; False when the row is missing or too poor."""
        stmt = (
            update(AccountModel)
            .where(AccountModel.id == account_id)
            .where(AccountModel.balance >= amount)
            .values(balance=AccountModel.balance - amount)
        )
        return self.session.exec(stmt).rowcount == 1

    def credit(self, account_id: UUID, amount: Decimal) -> bool:
        stmt = (
            update(AccountModel)
            .where(AccountModel.id == account_id)
            .values(balance=AccountModel.balance + amount)
        )
        return self.session.exec(stmt).rowcount == 1

    def balance_of(self, account_id: UUID) -> Optional[Decimal]:
        stmt = select(AccountModel.balance).where(AccountModel.id == account_id)
        return self.session.exec(stmt).first()

    # Ledger records -----------------------------------------------------
    def add_record(
        self,
        *,
        sender_id: UUID,
        receiver_id: UUID,
        amount: Decimal,
        reference: str,
        external_ref: Optional[str] = None,
    ) -> LedgerRecordModel:
        record = LedgerRecordModel(
            sender_id=sender_id,
            receiver_id=receiver_id,
            amount=amount,
            reference=reference,
            external_ref=external_ref,
        )
        self.session.add(record)
        self.session.flush()
        self.session.refresh(record)
        return record

    def get_record_by_external_ref(self, external_ref: str) -> Optional[LedgerRecordModel]:
        stmt = select(LedgerRecordModel).where(LedgerRecordModel.external_ref == external_ref)
        return self.session.exec(stmt).first()

    def list_records(self, account_id: UUID) -> list[LedgerRecordModel]:
        stmt = (
            select(LedgerRecordModel)
            .where(
                or_(
                    LedgerRecordModel.sender_id == account_id,
                    LedgerRecordModel.receiver_id == account_id,
                )
            )
            .order_by(LedgerRecordModel.created_at.desc())
        )
        return list(self.session.exec(stmt))

    # Idempotency store --------------------------------------------------
    def fetch_idempotency(
        self, route: str, key: str
    ) -> Optional[IdempotencyRecordModel]:
        stmt = (
            select(IdempotencyRecordModel)
            .where(IdempotencyRecordModel.route == route)
            .where(IdempotencyRecordModel.key == key)
        )
        return self.session.exec(stmt).first()

    def save_idempotency(
        self,
        *,
        route: str,
        key: str,
        signature: str,
        payload: str,
    ) -> None:
        record = IdempotencyRecordModel(
            route=route,
            key=key,
            request_signature=signature,
            response_payload=payload,
        )
        self.session.add(record)


class RequestRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add_request(
        self,
        *,
        sender_id: UUID,
        receiver_id: UUID,
        amount: Decimal,
        description: str,
        status: str = REQUEST_PENDING,
    ) -> MoneyRequestModel:
        request = MoneyRequestModel(
            sender_id=sender_id,
            receiver_id=receiver_id,
            amount=amount,
            description=description,
            status=status,
        )
        self.session.add(request)
        self.session.flush()
        self.session.refresh(request)
        return request

    def get_request(self, request_id: UUID) -> Optional[MoneyRequestModel]:
        return self.session.get(MoneyRequestModel, request_id)

    def list_requests(self, account_id: UUID) -> list[MoneyRequestModel]:
        stmt = (
            select(MoneyRequestModel)
            .where(
                or_(
                    MoneyRequestModel.sender_id == account_id,
                    MoneyRequestModel.receiver_id == account_id,
                )
            )
            .order_by(MoneyRequestModel.created_at.desc())
        )
        return list(self.session.exec(stmt))

    def resolve_if_pending(self, request_id: UUID, status: str) -> bool:
        """Compare-and-set pending -> status; only one caller can win."""
        stmt = (
            update(MoneyRequestModel)
            .where(MoneyRequestModel.id == request_id)
            .where(MoneyRequestModel.status == REQUEST_PENDING)
            .values(status=status, updated_at=utcnow())
        )
        return self.session.exec(stmt).rowcount == 1


class VerificationRepository:
    """Payment orders and the one-time codes that gate them."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def add_order(self, order: PaymentOrderModel) -> PaymentOrderModel:
        self.session.add(order)
        self.session.flush()
        self.session.refresh(order)
        return order

    def get_order(self, reference: str) -> Optional[PaymentOrderModel]:
        return self.session.get(PaymentOrderModel, reference)

    def set_order_status(self, reference: str, status: str) -> None:
        stmt = (
            update(PaymentOrderModel)
            .where(PaymentOrderModel.reference == reference)
            .values(status=status, updated_at=utcnow())
        )
        self.session.exec(stmt)

    def transition_order(self, reference: str, current: str, status: str) -> bool:
        """Compare-and-set on the order status; False when someone else moved it first."""
        stmt = (
            update(PaymentOrderModel)
            .where(PaymentOrderModel.reference == reference)
            .where(PaymentOrderModel.status == current)
            .values(status=status, updated_at=utcnow())
        )
        return self.session.exec(stmt).rowcount == 1

    def list_orders(self, status: str, updated_before: datetime) -> list[PaymentOrderModel]:
        stmt = (
            select(PaymentOrderModel)
            .where(PaymentOrderModel.status == status)
            .where(PaymentOrderModel.updated_at <= updated_before)
            .order_by(PaymentOrderModel.updated_at)
        )
        return list(self.session.exec(stmt))

    def replace_code(
        self,
        *,
        account_id: UUID,
        email: str,
        external_ref: str,
        code: str,
        expires_at: datetime,
    ) -> VerificationCodeModel:
        self.session.exec(
            delete(VerificationCodeModel).where(
                VerificationCodeModel.external_ref == external_ref
            )
        )
        record = VerificationCodeModel(
            account_id=account_id,
            email=email,
            external_ref=external_ref,
            code=code,
            expires_at=expires_at,
        )
        self.session.add(record)
        self.session.flush()
        return record

    def consume_code(
        self, *, account_id: UUID, external_ref: str, code: str, now: datetime
    ) -> bool:
        """Atomic find-and-delete of a live code; True only for the one winner."""
        stmt = (
            delete(VerificationCodeModel)
            .where(VerificationCodeModel.account_id == account_id)
            .where(VerificationCodeModel.external_ref == external_ref)
            .where(VerificationCodeModel.code == code)
            .where(VerificationCodeModel.expires_at > now)
            .execution_options(synchronize_session=False)
        )
        return self.session.exec(stmt).rowcount == 1

    def purge_expired_codes(self, now: datetime) -> int:
        stmt = (
            delete(VerificationCodeModel)
            .where(VerificationCodeModel.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        return self.session.exec(stmt).rowcount


class AttemptRepository:
    """Per-identifier counters shared by the login lockout and the IP limiter."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, identifier: str) -> Optional[AttemptRecordModel]:
        return self.session.get(AttemptRecordModel, identifier)

    def _insert_or_update(self, identifier: str, update_stmt, factory) -> None:
        if self.session.exec(update_stmt).rowcount == 1:
            return
        try:
            with self.session.begin_nested():
                self.session.add(factory())
        except IntegrityError:
            # Created concurrently; apply the update to the winner's row.
            self.session.exec(update_stmt)

    def increment_attempts(self, identifier: str, now: datetime) -> None:
        stmt = (
            update(AttemptRecordModel)
            .where(AttemptRecordModel.identifier == identifier)
            .values(attempts=AttemptRecordModel.attempts + 1, last_attempt=now)
        )
        self._insert_or_update(
            identifier,
            stmt,
            lambda: AttemptRecordModel(identifier=identifier, attempts=1, last_attempt=now),
        )

    def lock_if_threshold(
        self, identifier: str, threshold: int, until: datetime
    ) -> bool:
        stmt = (
            update(AttemptRecordModel)
            .where(AttemptRecordModel.identifier == identifier)
            .where(AttemptRecordModel.attempts >= threshold)
            .values(
                attempts=0,
                timeout_until=until,
                blocked_count=AttemptRecordModel.blocked_count + 1,
            )
        )
        return self.session.exec(stmt).rowcount == 1

    def block(self, identifier: str, until: datetime, now: datetime) -> None:
        stmt = (
            update(AttemptRecordModel)
            .where(AttemptRecordModel.identifier == identifier)
            .values(
                blocked_count=AttemptRecordModel.blocked_count + 1,
                timeout_until=until,
                last_attempt=now,
            )
        )
        self._insert_or_update(
            identifier,
            stmt,
            lambda: AttemptRecordModel(
                identifier=identifier,
                blocked_count=1,
                timeout_until=until,
                last_attempt=now,
            ),
        )

    def delete(self, identifier: str) -> None:
        self.session.exec(
            delete(AttemptRecordModel).where(AttemptRecordModel.identifier == identifier)
        )

    # Fixed-window request counters ------------------------------------
    def hit_window(self, identifier: str, now: datetime, window: timedelta) -> int:
        """Count one request in the identifier's current window and return the total."""
        cutoff = now - window
        for _ in range(3):
            bumped = self.session.exec(
                update(RateWindowModel)
                .where(RateWindowModel.identifier == identifier)
                .where(RateWindowModel.window_start > cutoff)
                .values(hits=RateWindowModel.hits + 1)
                .execution_options(synchronize_session=False)
            )
            if bumped.rowcount == 1:
                break
            restarted = self.session.exec(
                update(RateWindowModel)
                .where(RateWindowModel.identifier == identifier)
                .where(RateWindowModel.window_start <= cutoff)
                .values(hits=1, window_start=now)
                .execution_options(synchronize_session=False)
            )
            if restarted.rowcount == 1:
                break
            try:
                with self.session.begin_nested():
                    self.session.add(
                        RateWindowModel(identifier=identifier, window_start=now, hits=1)
                    )
                break
            except IntegrityError:
                continue
        stmt = select(RateWindowModel.hits).where(RateWindowModel.identifier == identifier)
        return self.session.exec(stmt).one()

    def purge_idle_windows(self, older_than: datetime) -> int:
        stmt = (
            delete(RateWindowModel)
            .where(RateWindowModel.window_start <= older_than)
            .execution_options(synchronize_session=False)
        )
        return self.session.exec(stmt).rowcount
