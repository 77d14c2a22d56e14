"""
Shared fixtures: a throwaway SQLite database per test, a scripted payment
provider and a notifier that records instead of mailing.
"""
from __future__ import annotations

import re
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import update
from sqlmodel import Session, SQLModel

from ..core import db
from ..core.config import Settings
from ..core.db import create_engine_for_url, get_session, set_engine
from ..core.dependencies import get_notifier, get_payment_gateway
from ..core.errors import ExternalPaymentError, PaymentTimeoutError
from ..main import create_app
from ..models import AccountModel
from ..services.payments import ExternalOrder, PaymentGateway, PaymentProvider, ProviderResult

PASSWORD = "correct-horse-battery"


class FakeProvider(PaymentProvider):
    def __init__(self, name: str, label: str) -> None:
        self.name = name
        self.label = label
        self.created: list[str] = []
        self.captured: list[tuple[str, str]] = []
        self.payouts: list[tuple[str, Decimal, str]] = []
        self.fail_capture = False
        self.capture_status = "COMPLETED"
        self.fail_payout = False
        self.unconfirmed_payouts = 0
        self.on_payout: Optional[Callable[[], None]] = None
        self._batches: dict[str, ProviderResult] = {}

    def create_order(self, amount, *, idempotency_key, payment_method=None, return_url=None, cancel_url=None):
        reference = f"{self.name}-order-{len(self.created) + 1}"
        self.created.append(reference)
        return ExternalOrder(
            reference=reference,
            status="CREATED",
            approval_url=f"https://provider.test/approve/{reference}",
        )

    def capture_order(self, reference, *, idempotency_key):
        if self.fail_capture:
            raise ExternalPaymentError("The PayPal payment was declined.")
        self.captured.append((reference, idempotency_key))
        return ProviderResult(
            reference=reference,
            status=self.capture_status,
            succeeded=self.capture_status == "COMPLETED",
        )

    def payout(self, destination, amount, *, idempotency_key):
        if self.on_payout is not None:
            self.on_payout()
        # A repeated batch id answers with the original batch.
        if idempotency_key in self._batches:
            return self._batches[idempotency_key]
        if self.fail_payout:
            raise ExternalPaymentError("Failed to process PayPal withdrawal.")
        self.payouts.append((destination, amount, idempotency_key))
        result = ProviderResult(reference=f"batch-{len(self.payouts)}", status="PENDING", succeeded=True)
        self._batches[idempotency_key] = result
        if self.unconfirmed_payouts:
            self.unconfirmed_payouts -= 1
            raise PaymentTimeoutError("PayPal did not respond in time. Please try again.")
        return result


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, email: Optional[str], subject: str, body: str) -> bool:
        if not email:
            return False
        self.sent.append((email, subject, body))
        return True

    def subjects_for(self, email: str) -> list[str]:
        return [subject for to, subject, _ in self.sent if to == email]

    def last_code(self, email: str) -> str:
        for to, _, body in reversed(self.sent):
            match = re.search(r"is: (\d+)\.", body)
            if to == email and match:
                return match.group(1)
        raise AssertionError(f"no verification code mailed to {email}")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        jwt_secret="test-secret",
        abuse_protection_enabled=False,
        sweep_interval_seconds=3600,
    )


@pytest.fixture
def engine(settings: Settings):
    test_engine = create_engine_for_url(settings.database_url)
    original_engine = db.engine
    set_engine(test_engine)
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    yield test_engine
    set_engine(original_engine)
    test_engine.dispose()


@pytest.fixture
def gateway() -> PaymentGateway:
    return PaymentGateway(
        {
            "card": FakeProvider("card", "Card"),
            "paypal": FakeProvider("paypal", "PayPal"),
        }
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def app(settings: Settings, engine, gateway: PaymentGateway, notifier: RecordingNotifier):
    application = create_app(settings)

    def _get_session_override():
        with Session(engine) as session:
            yield session

    application.dependency_overrides[get_session] = _get_session_override
    application.dependency_overrides[get_payment_gateway] = lambda: gateway
    application.dependency_overrides[get_notifier] = lambda: notifier
    application.state.payment_gateway = gateway
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
def client(app) -> TestClient:
    with TestClient(app) as test_client:
        yield test_client


def set_account(engine, account_id: UUID, **values) -> None:
    with Session(engine) as session:
        session.exec(update(AccountModel).where(AccountModel.id == account_id).values(**values))
        session.commit()


def balance_of(engine, account_id: UUID) -> Decimal:
    with Session(engine) as session:
        return session.get(AccountModel, account_id).balance


class AccountHandle:
    def __init__(self, id: UUID, email: str, first_name: str, token: str) -> None:
        self.id = id
        self.email = email
        self.first_name = first_name
        self.headers = {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_account(client: TestClient, engine):
    """Register, verify, fund and log in an account in one call."""

    def _make(
        first_name: str,
        balance: Decimal | int = 0,
        *,
        is_admin: bool = False,
    ) -> AccountHandle:
        email = f"{first_name.lower()}@example.com"
        response = client.post(
            "/users/register",
            json={
                "first_name": first_name,
                "last_name": "Tester",
                "email": email,
                "password": PASSWORD,
            },
        )
        assert response.status_code == 201, response.text
        account_id = UUID(response.json()["id"])
        set_account(
            engine,
            account_id,
            is_verified=True,
            is_admin=is_admin,
            balance=Decimal(balance),
        )
        login = client.post("/users/login", json={"email": email, "password": PASSWORD})
        assert login.status_code == 200, login.text
        return AccountHandle(account_id, email, first_name, login.json()["access_token"])

    return _make
