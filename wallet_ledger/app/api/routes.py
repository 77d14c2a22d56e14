from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query

from ..core.dependencies import get_current_account_id, get_ledger_service
from ..models import (
    AccountResponse,
    AccountSummary,
    LedgerRecordResponse,
    StatementResponse,
    TransferRequest,
    VerifyAccountRequest,
)
from ..services import LedgerService


router = APIRouter(prefix="/accounts", tags=["accounts"])

@router.get("/me", response_model=AccountResponse)
def get_my_account(
    account_id: UUID = Depends(get_current_account_id),
    service: LedgerService = Depends(get_ledger_service),
) -> AccountResponse:
    return service.get_account(account_id)

@router.get("/me/statement", response_model=StatementResponse)
def get_statement(
    limit: int = Query(50, ge=1, le=200),
    cursor: Optional[str] = None,
    account_id: UUID = Depends(get_current_account_id),
    service: LedgerService = Depends(get_ledger_service),
) -> StatementResponse:
    return service.get_statement(account_id, limit=limit, cursor=cursor)

transfer_router = APIRouter(prefix="/transfers", tags=["transfers"])

@transfer_router.post("", response_model=LedgerRecordResponse)
def create_transfer(
    payload: TransferRequest,
    account_id: UUID = Depends(get_current_account_id),
    service: LedgerService = Depends(get_ledger_service),
    idempotency_key: Optional[str] = Header(None, convert_underscores=False, alias="Idempotency-Key"),
) -> LedgerRecordResponse:
    return service.transfer(account_id, payload, idempotency_key)

@transfer_router.post("/verify-account", response_model=AccountSummary)
def verify_account(
    payload: VerifyAccountRequest,
    account_id: UUID = Depends(get_current_account_id),
    service: LedgerService = Depends(get_ledger_service),
) -> AccountSummary:
    return service.verify_account(account_id, payload.receiver_id)

__all__ = ["router", "transfer_router"]
