from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlmodel import Session

from ..core.errors import (
    AccountNotFoundError,
    InsufficientFundsError,
    InvalidAccountError,
    ValidationError,
)
from ..models import (
    AccountModel,
    AccountResponse,
    AccountSummary,
    LedgerRecordModel,
    LedgerRecordResponse,
    StatementResponse,
    TransferRequest,
)
from ..models.db import KIND_DEPOSIT, KIND_WITHDRAWAL
from .idempotency import IdempotencyStore
from .repository import LedgerRepository


logger = logging.getLogger(__name__)

DEFAULT_REFERENCE = "No description"


def record_kind(record: LedgerRecordModel) -> str:
    """Self-referencing records are external movements; the reference says which way."""
    if record.sender_id != record.receiver_id:
        return "transfer"
    if KIND_WITHDRAWAL in record.reference.lower():
        return KIND_WITHDRAWAL
    return KIND_DEPOSIT


def record_to_response(record: LedgerRecordModel) -> LedgerRecordResponse:
    return LedgerRecordResponse(
        id=record.id,
        created_at=record.created_at,
        sender_id=record.sender_id,
        receiver_id=record.receiver_id,
        amount=record.amount,
        reference=record.reference,
        status=record.status,
        kind=record_kind(record),
    )


def account_to_response(account: AccountModel) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        first_name=account.first_name,
        last_name=account.last_name,
        email=account.email,
        created_at=account.created_at,
        balance=account.balance,
        is_verified=account.is_verified,
        is_admin=account.is_admin,
        request_delete=account.request_delete,
    )


class LedgerService:
    """Direct account-to-account movement plus the ledger read side."""

    def __init__(
        self,
        session: Session,
        repository: Optional[LedgerRepository] = None,
    ) -> None:
        self.session = session
        self.repository = repository or LedgerRepository(session)
        self.idempotency = IdempotencyStore(self.repository)

    def _require_account(self, account_id: UUID, label: str = "Account") -> AccountModel:
        account = self.repository.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"{label} not found")
        return account

    def verify_account(self, sender_id: UUID, receiver_id: UUID) -> AccountSummary:
        """Confirm a receiver exists without touching any balance."""
        if sender_id == receiver_id:
            raise InvalidAccountError(
                "Receiver account number can't be the same as sender account number"
            )
        account = self._require_account(receiver_id, "Receiver account")
        return AccountSummary(
            id=account.id, first_name=account.first_name, last_name=account.last_name
        )

    def transfer(
        self,
        sender_id: UUID,
        payload: TransferRequest,
        idempotency_key: Optional[str] = None,
    ) -> LedgerRecordResponse:
        signature = (
            "transfer",
            str(sender_id),
            str(payload.receiver_id),
            str(payload.amount),
            payload.reference,
        )
        replayed = self.idempotency.replay("transfer", idempotency_key, signature)
        if replayed is not None:
            logger.info(
                "idempotent.transfer.hit",
                extra={"sender_id": str(sender_id), "idempotency_key": idempotency_key},
            )
            return LedgerRecordResponse.model_validate_json(replayed)

        if sender_id == payload.receiver_id:
            raise InvalidAccountError("Cannot transfer to the same account")
        if payload.amount <= 0:
            raise ValidationError("Invalid amount. Please provide a positive number.")

        # Debit first: the first statement of the transaction takes the row
        # lock, and the WHERE clause is the balance check.
        if not self.repository.debit_if_sufficient(sender_id, payload.amount):
            self.session.rollback()
            self._require_account(sender_id, "Sender account")
            raise InsufficientFundsError("Transaction failed. Insufficient amount")

        if not self.repository.credit(payload.receiver_id, payload.amount):
            self.session.rollback()
            raise AccountNotFoundError("Receiver account not found")

        record = self.repository.add_record(
            sender_id=sender_id,
            receiver_id=payload.receiver_id,
            amount=payload.amount,
            reference=payload.reference or DEFAULT_REFERENCE,
        )
        response = record_to_response(record)
        self.idempotency.remember("transfer", idempotency_key, signature, response)
        self.session.commit()
        logger.info(
            "transfer.completed",
            extra={
                "record_id": str(record.id),
                "sender_id": str(sender_id),
                "receiver_id": str(payload.receiver_id),
                "amount": str(payload.amount),
            },
        )
        return response

    def get_account(self, account_id: UUID) -> AccountResponse:
        return account_to_response(self._require_account(account_id))

    def get_statement(
        self,
        account_id: UUID,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> StatementResponse:
        """Newest-first page of records touching the account.

        ``cursor`` is the ``created_at`` of the last record on the previous
        page; paging resumes right after it.
        """
        self._require_account(account_id)
        if limit < 1:
            raise ValidationError("limit must be positive")

        records = self.repository.list_records(account_id)

        offset = 0
        if cursor:
            try:
                position = datetime.fromisoformat(cursor).isoformat()
            except ValueError as exc:
                raise ValidationError("Invalid cursor") from exc
            offset = next(
                (i + 1 for i, r in enumerate(records) if r.created_at.isoformat() == position),
                0,
            )

        page = records[offset : offset + limit]
        has_more = offset + limit < len(records)
        return StatementResponse(
            items=[record_to_response(record) for record in page],
            next_cursor=page[-1].created_at.isoformat() if has_more else None,
        )
