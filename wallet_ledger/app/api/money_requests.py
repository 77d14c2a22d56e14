from uuid import UUID

from fastapi import APIRouter, Depends, status

from ..core.dependencies import get_current_account_id, get_money_request_service
from ..models import MoneyRequestCreate, MoneyRequestResponse, MoneyRequestStatusUpdate
from ..services import MoneyRequestService


router = APIRouter(prefix="/requests", tags=["requests"])

@router.post("", response_model=MoneyRequestResponse, status_code=status.HTTP_201_CREATED)
def send_request(
    payload: MoneyRequestCreate,
    account_id: UUID = Depends(get_current_account_id),
    service: MoneyRequestService = Depends(get_money_request_service),
) -> MoneyRequestResponse:
    return service.send(account_id, payload)

@router.get("", response_model=list[MoneyRequestResponse])
def list_requests(
    account_id: UUID = Depends(get_current_account_id),
    service: MoneyRequestService = Depends(get_money_request_service),
) -> list[MoneyRequestResponse]:
    return service.list_requests(account_id)

@router.post("/{request_id}/status", response_model=MoneyRequestResponse)
def update_request_status(
    request_id: UUID,
    payload: MoneyRequestStatusUpdate,
    account_id: UUID = Depends(get_current_account_id),
    service: MoneyRequestService = Depends(get_money_request_service),
) -> MoneyRequestResponse:
    return service.update_status(account_id, request_id, payload.status)
