from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from ..core.config import Settings
from ..core.errors import (
    AccountNotFoundError,
    AccountNotVerifiedError,
    AuthenticationError,
    ValidationError,
)
from ..core.security import create_access_token, hash_password, verify_password
from ..models import AccountCreate, AccountResponse, LoginRequest, TokenResponse
from .abuse import LoginLockout
from .ledger import account_to_response
from .repository import LedgerRepository

logger = logging.getLogger(__name__)


class AccountService:
    """Registration, login and the admin switches on an account."""

    def __init__(
        self,
        session: Session,
        settings: Settings,
        repository: Optional[LedgerRepository] = None,
    ) -> None:
        self.session = session
        self.settings = settings
        self.repository = repository or LedgerRepository(session)

    def register(self, payload: AccountCreate) -> AccountResponse:
        email = payload.email.lower()
        if self.repository.get_account_by_email(email) is not None:
            raise ValidationError("User with this email already exists")
        try:
            account = self.repository.add_account(
                first_name=payload.first_name.strip(),
                last_name=payload.last_name.strip(),
                email=email,
                password_hash=hash_password(payload.password),
            )
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ValidationError("User with this email already exists") from exc
        logger.info("account.registered", extra={"account_id": str(account.id)})
        return account_to_response(account)

    def login(self, payload: LoginRequest, identifier: str, lockout: LoginLockout) -> TokenResponse:
        """Exchange credentials for a bearer token.

        ``identifier`` is what the lockout counts against: the email when
        one was supplied, otherwise the client IP.
        """
        lockout.ensure_not_locked(identifier)

        account = None
        if payload.email:
            account = self.repository.get_account_by_email(payload.email.lower())
        if account is None or not verify_password(payload.password, account.password_hash):
            self.session.rollback()
            lockout.register_failure(identifier)
            raise AuthenticationError()
        if not account.is_verified:
            raise AccountNotVerifiedError()

        account_id, is_admin = account.id, account.is_admin
        self.session.rollback()
        lockout.reset(identifier)
        logger.info("login.succeeded", extra={"account_id": str(account_id)})
        return TokenResponse(
            access_token=create_access_token(account_id, self.settings, is_admin=is_admin)
        )

    def get(self, account_id: UUID) -> AccountResponse:
        account = self.repository.get_account(account_id)
        if account is None:
            raise AccountNotFoundError("User not found")
        return account_to_response(account)

    def list_accounts(self) -> list[AccountResponse]:
        return [account_to_response(a) for a in self.repository.list_accounts()]

    def set_verified(self, account_id: UUID, is_verified: bool) -> AccountResponse:
        if not self.repository.set_account_flags(account_id, is_verified=is_verified):
            self.session.rollback()
            raise AccountNotFoundError("User not found")
        self.session.commit()
        logger.info(
            "account.verification_changed",
            extra={"account_id": str(account_id), "is_verified": is_verified},
        )
        return self.get(account_id)

    def request_delete(self, account_id: UUID) -> AccountResponse:
        if not self.repository.set_account_flags(account_id, request_delete=True):
            self.session.rollback()
            raise AccountNotFoundError("User not found")
        self.session.commit()
        logger.info("account.delete_requested", extra={"account_id": str(account_id)})
        return self.get(account_id)
