from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from sqlmodel import Session

from ..core.config import Settings
from ..core.errors import (
    AccountNotFoundError,
    InsufficientFundsError,
    InvalidAccountError,
    InvalidRequestStateError,
    PermissionDeniedError,
    RequestNotFoundError,
    ValidationError,
)
from ..models import (
    MoneyRequestCreate,
    MoneyRequestModel,
    MoneyRequestResponse,
)
from ..models.db import REQUEST_ACCEPTED, REQUEST_PENDING, REQUEST_REJECTED
from .notifications import BackgroundNotifier
from .repository import LedgerRepository, RequestRepository

logger = logging.getLogger(__name__)


def request_to_response(
    request: MoneyRequestModel, message: Optional[str] = None
) -> MoneyRequestResponse:
    return MoneyRequestResponse(
        id=request.id,
        created_at=request.created_at,
        sender_id=request.sender_id,
        receiver_id=request.receiver_id,
        amount=request.amount,
        description=request.description,
        status=request.status,
        message=message,
    )


class MoneyRequestService:
    """pending -> accepted | rejected, each request resolved at most once.

    The requester is ``sender``; the account asked to pay is ``receiver``.
    Acceptance moves ``amount`` from receiver to sender in the same database
    transaction that flips the status, so a lost race leaves no trace.
    """

    def __init__(
        self,
        session: Session,
        settings: Settings,
        notifier: BackgroundNotifier,
        ledger: Optional[LedgerRepository] = None,
        repository: Optional[RequestRepository] = None,
    ) -> None:
        self.session = session
        self.auto_reject_unfunded = settings.auto_reject_unfunded_requests
        self.notifier = notifier
        self.ledger = ledger or LedgerRepository(session)
        self.repository = repository or RequestRepository(session)

    def send(self, requester_id: UUID, payload: MoneyRequestCreate) -> MoneyRequestResponse:
        if requester_id == payload.receiver_id:
            raise InvalidAccountError("You cannot request money from yourself")
        requester = self.ledger.get_account(requester_id)
        payer = self.ledger.get_account(payload.receiver_id)
        if requester is None or payer is None:
            raise AccountNotFoundError("Account not found")

        unfunded = payer.balance < payload.amount
        status = REQUEST_REJECTED if unfunded and self.auto_reject_unfunded else REQUEST_PENDING
        request = self.repository.add_request(
            sender_id=requester_id,
            receiver_id=payload.receiver_id,
            amount=payload.amount,
            description=payload.description,
            status=status,
        )
        self.session.commit()
        logger.info(
            "request.created",
            extra={"request_id": str(request.id), "status": status, "amount": str(payload.amount)},
        )

        if status == REQUEST_REJECTED:
            return request_to_response(
                request, "Receiver of the request does not have enough money"
            )

        self.notifier.send(
            payer.email,
            "New money request",
            f"Dear {payer.first_name},\n\n{requester.first_name} {requester.last_name} "
            f"has requested ${payload.amount} from you.\n"
            f"Description: {payload.description or 'No description'}\n\n"
            "Log in to accept or reject the request.",
        )
        return request_to_response(request, "Request sent successfully")

    def list_requests(self, account_id: UUID) -> list[MoneyRequestResponse]:
        return [request_to_response(r) for r in self.repository.list_requests(account_id)]

    def update_status(
        self, actor_id: UUID, request_id: UUID, new_status: str
    ) -> MoneyRequestResponse:
        if new_status not in (REQUEST_ACCEPTED, REQUEST_REJECTED):
            raise ValidationError("Status must be 'accepted' or 'rejected'")

        request = self.repository.get_request(request_id)
        if request is None:
            raise RequestNotFoundError()
        if request.receiver_id != actor_id:
            raise PermissionDeniedError("Only the account asked to pay can resolve this request")
        if request.status != REQUEST_PENDING:
            raise InvalidRequestStateError()

        sender_id, receiver_id = request.sender_id, request.receiver_id
        amount, description = request.amount, request.description

        if not self.repository.resolve_if_pending(request_id, new_status):
            self.session.rollback()
            raise InvalidRequestStateError()

        if new_status == REQUEST_ACCEPTED:
            if not self.ledger.debit_if_sufficient(receiver_id, amount):
                self.session.rollback()
                raise InsufficientFundsError("You do not have enough balance to accept this request")
            if not self.ledger.credit(sender_id, amount):
                self.session.rollback()
                raise AccountNotFoundError("Requester account not found")
            self.ledger.add_record(
                sender_id=receiver_id,
                receiver_id=sender_id,
                amount=amount,
                reference=description or "Money request",
            )

        self.session.commit()
        self.session.refresh(request)
        logger.info(
            "request.resolved",
            extra={"request_id": str(request_id), "status": new_status, "amount": str(amount)},
        )
        self._notify_resolution(request)
        return request_to_response(request, "Request status updated successfully")

    def _notify_resolution(self, request: MoneyRequestModel) -> None:
        requester = self.ledger.get_account(request.sender_id)
        payer = self.ledger.get_account(request.receiver_id)
        if requester is None or payer is None:
            return
        verb = "accepted" if request.status == REQUEST_ACCEPTED else "rejected"
        self.notifier.send(
            requester.email,
            f"Money request {verb}",
            f"Dear {requester.first_name},\n\n{payer.first_name} {payer.last_name} "
            f"has {verb} your request for ${request.amount}.",
        )
        self.notifier.send(
            payer.email,
            f"You {verb} a money request",
            f"Dear {payer.first_name},\n\nYou have {verb} the request from "
            f"{requester.first_name} {requester.last_name} for ${request.amount}.",
        )
