from uuid import UUID

from fastapi import APIRouter, Depends, Request, status

from ..core.dependencies import (
    client_ip,
    get_account_service,
    get_current_account_id,
    get_login_lockout,
    require_admin,
)
from ..models import (
    AccountCreate,
    AccountResponse,
    LoginRequest,
    TokenResponse,
    VerificationStatusUpdate,
)
from ..services import AccountService, LoginLockout


router = APIRouter(prefix="/users", tags=["users"])

@router.post("/register", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def register(
    payload: AccountCreate,
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    return service.register(payload)

@router.post("/login", response_model=TokenResponse)
def login(
    payload: LoginRequest,
    request: Request,
    service: AccountService = Depends(get_account_service),
    lockout: LoginLockout = Depends(get_login_lockout),
) -> TokenResponse:
    identifier = payload.email.lower() if payload.email else client_ip(request)
    return service.login(payload, identifier, lockout)

@router.get("/me", response_model=AccountResponse)
def read_me(
    account_id: UUID = Depends(get_current_account_id),
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    return service.get(account_id)

@router.post("/me/delete-request", response_model=AccountResponse)
def request_delete(
    account_id: UUID = Depends(get_current_account_id),
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    return service.request_delete(account_id)

@router.get("", response_model=list[AccountResponse], dependencies=[Depends(require_admin)])
def list_users(service: AccountService = Depends(get_account_service)) -> list[AccountResponse]:
    return service.list_accounts()

@router.post(
    "/{account_id}/verification",
    response_model=AccountResponse,
    dependencies=[Depends(require_admin)],
)
def set_verification(
    account_id: UUID,
    payload: VerificationStatusUpdate,
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    return service.set_verified(account_id, payload.is_verified)
