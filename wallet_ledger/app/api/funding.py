from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, status

from ..core.dependencies import get_current_account_id, get_funding_service
from ..models import (
    CodeDispatchResponse,
    CodeVerification,
    DepositInitiate,
    LedgerRecordResponse,
    PaymentOrderResponse,
    WithdrawalInitiate,
)
from ..services import FundingService


router = APIRouter(tags=["payments"])

@router.post("/deposits", response_model=PaymentOrderResponse, status_code=status.HTTP_201_CREATED)
def initiate_deposit(
    payload: DepositInitiate,
    account_id: UUID = Depends(get_current_account_id),
    service: FundingService = Depends(get_funding_service),
    idempotency_key: Optional[str] = Header(None, convert_underscores=False, alias="Idempotency-Key"),
) -> PaymentOrderResponse:
    return service.initiate_deposit(account_id, payload, idempotency_key)

@router.post("/withdrawals", response_model=PaymentOrderResponse, status_code=status.HTTP_201_CREATED)
def initiate_withdrawal(
    payload: WithdrawalInitiate,
    account_id: UUID = Depends(get_current_account_id),
    service: FundingService = Depends(get_funding_service),
    idempotency_key: Optional[str] = Header(None, convert_underscores=False, alias="Idempotency-Key"),
) -> PaymentOrderResponse:
    return service.initiate_withdrawal(account_id, payload, idempotency_key)

@router.post("/payments/{reference}/code", response_model=CodeDispatchResponse)
def request_verification_code(
    reference: str,
    account_id: UUID = Depends(get_current_account_id),
    service: FundingService = Depends(get_funding_service),
) -> CodeDispatchResponse:
    return service.request_code(account_id, reference)

@router.post("/payments/{reference}/verify", response_model=LedgerRecordResponse)
def verify_payment(
    reference: str,
    payload: CodeVerification,
    account_id: UUID = Depends(get_current_account_id),
    service: FundingService = Depends(get_funding_service),
) -> LedgerRecordResponse:
    return service.verify(account_id, reference, payload.code)
