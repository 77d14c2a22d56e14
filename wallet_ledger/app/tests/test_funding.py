from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

from fastapi.testclient import TestClient
from sqlalchemy import update
from sqlmodel import Session, select

from ..core.errors import InvalidOrExpiredCodeError, PaymentTimeoutError
from ..main import sweep_expired
from ..models import (
    AccountModel,
    AttemptRecordModel,
    LedgerRecordModel,
    PaymentOrderModel,
    VerificationCodeModel,
)
from ..models.db import utcnow
from ..services import AttemptRepository, FundingService
from .conftest import balance_of


def _start_deposit(client: TestClient, account, amount: str = "100", provider: str = "paypal"):
    payload = {"amount": amount, "provider": provider}
    if provider == "paypal":
        payload.update(return_url="https://app.test/ok", cancel_url="https://app.test/cancel")
    else:
        payload["payment_method"] = "pm_card_visa"
    response = client.post("/deposits", json=payload, headers=account.headers)
    assert response.status_code == 201, response.text
    return response.json()


def _request_code(client: TestClient, account, reference: str, notifier) -> str:
    response = client.post(f"/payments/{reference}/code", headers=account.headers)
    assert response.status_code == 200, response.text
    return notifier.last_code(account.email)


def test_deposit_flow_credits_once(client: TestClient, engine, make_account, notifier, gateway) -> None:
    alice = make_account("Alice", 0)

    order = _start_deposit(client, alice)
    assert order["status"] == "open"
    assert order["approval_url"].startswith("https://provider.test/approve/")
    assert balance_of(engine, alice.id) == Decimal("0")

    code = _request_code(client, alice, order["reference"], notifier)
    assert len(code) == 6

    verified = client.post(
        f"/payments/{order['reference']}/verify", json={"code": code}, headers=alice.headers
    )
    assert verified.status_code == 200, verified.text
    record = verified.json()
    assert record["kind"] == "deposit"
    assert record["sender_id"] == record["receiver_id"] == str(alice.id)
    assert order["reference"] in record["reference"]
    assert balance_of(engine, alice.id) == Decimal("100")
    assert gateway.get("paypal").captured == [(order["reference"], f"capture-{order['reference']}")]
    assert "Deposit Successful" in notifier.subjects_for(alice.email)

    reused = client.post(
        f"/payments/{order['reference']}/verify", json={"code": code}, headers=alice.headers
    )
    assert reused.status_code == 400
    assert reused.json()["error"] == "invalid_or_expired_code"
    assert balance_of(engine, alice.id) == Decimal("100")


def test_card_deposit_requires_no_redirect(client: TestClient, engine, make_account, notifier) -> None:
    alice = make_account("Alice", 0)
    order = _start_deposit(client, alice, amount="25.50", provider="card")
    code = _request_code(client, alice, order["reference"], notifier)

    response = client.post(
        f"/payments/{order['reference']}/verify", json={"code": code}, headers=alice.headers
    )
    assert response.status_code == 200
    assert balance_of(engine, alice.id) == Decimal("25.50")


def test_wrong_code_does_not_burn_the_real_one(client: TestClient, engine, make_account, notifier) -> None:
    alice = make_account("Alice", 0)
    order = _start_deposit(client, alice)
    code = _request_code(client, alice, order["reference"], notifier)
    wrong = "000000" if code != "000000" else "111111"

    bad = client.post(
        f"/payments/{order['reference']}/verify", json={"code": wrong}, headers=alice.headers
    )
    assert bad.status_code == 400

    good = client.post(
        f"/payments/{order['reference']}/verify", json={"code": code}, headers=alice.headers
    )
    assert good.status_code == 200
    assert balance_of(engine, alice.id) == Decimal("100")


def test_new_code_replaces_old(client: TestClient, make_account, notifier) -> None:
    alice = make_account("Alice", 0)
    order = _start_deposit(client, alice)
    first = _request_code(client, alice, order["reference"], notifier)
    second = _request_code(client, alice, order["reference"], notifier)

    if first != second:
        stale = client.post(
            f"/payments/{order['reference']}/verify", json={"code": first}, headers=alice.headers
        )
        assert stale.status_code == 400

    fresh = client.post(
        f"/payments/{order['reference']}/verify", json={"code": second}, headers=alice.headers
    )
    assert fresh.status_code == 200


def test_expired_code_is_rejected_and_swept(client: TestClient, engine, settings, make_account, notifier) -> None:
    alice = make_account("Alice", 0)
    order = _start_deposit(client, alice)
    code = _request_code(client, alice, order["reference"], notifier)

    with Session(engine) as session:
        session.exec(
            update(VerificationCodeModel)
            .values(expires_at=utcnow() - timedelta(seconds=1))
            .execution_options(synchronize_session=False)
        )
        session.commit()

    response = client.post(
        f"/payments/{order['reference']}/verify", json={"code": code}, headers=alice.headers
    )
    assert response.status_code == 400
    assert balance_of(engine, alice.id) == Decimal("0")

    sweep_expired(settings)
    with Session(engine) as session:
        assert session.exec(select(VerificationCodeModel)).all() == []


def test_failed_capture_consumes_code_and_fails_order(
    client: TestClient, engine, make_account, notifier, gateway
) -> None:
    alice = make_account("Alice", 0)
    order = _start_deposit(client, alice)
    code = _request_code(client, alice, order["reference"], notifier)
    gateway.get("paypal").fail_capture = True

    response = client.post(
        f"/payments/{order['reference']}/verify", json={"code": code}, headers=alice.headers
    )
    assert response.status_code == 502
    assert response.json()["error"] == "external_payment_failure"
    assert response.json()["detail"] == "The PayPal payment was declined."
    assert balance_of(engine, alice.id) == Decimal("0")

    gateway.get("paypal").fail_capture = False
    retry = client.post(
        f"/payments/{order['reference']}/verify", json={"code": code}, headers=alice.headers
    )
    assert retry.status_code == 400

    with Session(engine) as session:
        assert session.get(PaymentOrderModel, order["reference"]).status == "failed"


def test_other_accounts_cannot_use_an_order(client: TestClient, make_account, notifier) -> None:
    alice = make_account("Alice", 0)
    mallory = make_account("Mallory", 0)
    order = _start_deposit(client, alice)

    response = client.post(f"/payments/{order['reference']}/code", headers=mallory.headers)
    assert response.status_code == 404
    assert response.json()["error"] == "payment_order_not_found"


def test_deposit_initiation_is_idempotent(client: TestClient, make_account, gateway) -> None:
    alice = make_account("Alice", 0)
    headers = {**alice.headers, "Idempotency-Key": "deposit-retry-1"}
    payload = {
        "amount": "10",
        "provider": "paypal",
        "return_url": "https://app.test/ok",
        "cancel_url": "https://app.test/cancel",
    }

    first = client.post("/deposits", json=payload, headers=headers)
    second = client.post("/deposits", json=payload, headers=headers)
    assert first.status_code == second.status_code == 201
    assert first.json()["reference"] == second.json()["reference"]
    assert len(gateway.get("paypal").created) == 1


def test_unconfigured_provider_is_rejected(client: TestClient, make_account, gateway) -> None:
    alice = make_account("Alice", 0)
    del gateway.providers["card"]

    response = client.post(
        "/deposits",
        json={"amount": "10", "provider": "card", "payment_method": "pm_card_visa"},
        headers=alice.headers,
    )
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


def test_withdrawal_flow_debits_after_payout(
    client: TestClient, engine, make_account, notifier, gateway
) -> None:
    alice = make_account("Alice", 200)

    initiated = client.post(
        "/withdrawals",
        json={"amount": "75", "destination": "alice.paypal@example.com"},
        headers=alice.headers,
    )
    assert initiated.status_code == 201, initiated.text
    order = initiated.json()
    assert order["kind"] == "withdrawal"
    assert balance_of(engine, alice.id) == Decimal("200")

    code = _request_code(client, alice, order["reference"], notifier)
    verified = client.post(
        f"/payments/{order['reference']}/verify", json={"code": code}, headers=alice.headers
    )
    assert verified.status_code == 200, verified.text
    record = verified.json()
    assert record["kind"] == "withdrawal"
    assert "alice.paypal@example.com" in record["reference"]
    assert balance_of(engine, alice.id) == Decimal("125")

    payouts = gateway.get("paypal").payouts
    assert payouts == [("alice.paypal@example.com", Decimal("75.00"), order["reference"])]
    assert "Withdrawal Successful" in notifier.subjects_for(alice.email)

    statement = client.get("/accounts/me/statement", headers=alice.headers).json()
    assert [item["kind"] for item in statement["items"]] == ["withdrawal"]


def test_withdrawal_beyond_balance_is_refused(client: TestClient, make_account) -> None:
    alice = make_account("Alice", 10)
    response = client.post(
        "/withdrawals",
        json={"amount": "75", "destination": "alice.paypal@example.com"},
        headers=alice.headers,
    )
    assert response.status_code == 409
    assert response.json()["error"] == "insufficient_funds"


def test_withdrawal_rechecks_balance_at_settlement(
    client: TestClient, engine, make_account, notifier, gateway
) -> None:
    alice = make_account("Alice", 100)
    bob = make_account("Bob", 0)
    order = client.post(
        "/withdrawals",
        json={"amount": "80", "destination": "alice.paypal@example.com"},
        headers=alice.headers,
    ).json()
    code = _request_code(client, alice, order["reference"], notifier)

    client.post("/transfers", json={"receiver_id": str(bob.id), "amount": "50"}, headers=alice.headers)

    response = client.post(
        f"/payments/{order['reference']}/verify", json={"code": code}, headers=alice.headers
    )
    assert response.status_code == 409
    assert balance_of(engine, alice.id) == Decimal("50")
    assert gateway.get("paypal").payouts == []


def test_failed_payout_restores_balance(client: TestClient, engine, make_account, notifier, gateway) -> None:
    alice = make_account("Alice", 100)
    order = client.post(
        "/withdrawals",
        json={"amount": "60", "destination": "alice.paypal@example.com"},
        headers=alice.headers,
    ).json()
    code = _request_code(client, alice, order["reference"], notifier)
    gateway.get("paypal").fail_payout = True

    response = client.post(
        f"/payments/{order['reference']}/verify", json={"code": code}, headers=alice.headers
    )
    assert response.status_code == 502
    assert balance_of(engine, alice.id) == Decimal("100")
    with Session(engine) as session:
        assert session.exec(select(LedgerRecordModel)).all() == []


def test_incomplete_capture_is_not_credited(
    client: TestClient, engine, make_account, notifier, gateway
) -> None:
    alice = make_account("Alice", 0)
    order = _start_deposit(client, alice, provider="card")
    code = _request_code(client, alice, order["reference"], notifier)
    gateway.get("card").capture_status = "processing"

    response = client.post(
        f"/payments/{order['reference']}/verify", json={"code": code}, headers=alice.headers
    )
    assert response.status_code == 502
    assert response.json()["detail"] == "The Card payment was not completed. Please start a new deposit."
    assert balance_of(engine, alice.id) == Decimal("0")
    with Session(engine) as session:
        assert session.exec(select(LedgerRecordModel)).all() == []
        assert session.get(PaymentOrderModel, order["reference"]).status == "failed"
    assert "Deposit Successful" not in notifier.subjects_for(alice.email)


def _start_withdrawal(client: TestClient, account, amount: str) -> dict:
    response = client.post(
        "/withdrawals",
        json={"amount": amount, "destination": f"{account.first_name.lower()}.paypal@example.com"},
        headers=account.headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_payout_runs_after_the_debit_commits(
    client: TestClient, engine, make_account, notifier, gateway
) -> None:
    alice = make_account("Alice", 100)
    order = _start_withdrawal(client, alice, "60")
    code = _request_code(client, alice, order["reference"], notifier)
    seen = {}

    def during_payout() -> None:
        with Session(engine) as session:
            seen["balance"] = session.get(AccountModel, alice.id).balance
            seen["status"] = session.get(PaymentOrderModel, order["reference"]).status
            # Any other writer must get through while the payout is in flight.
            AttemptRepository(session).increment_attempts("10.9.9.9", utcnow())
            session.commit()

    gateway.get("paypal").on_payout = during_payout

    response = client.post(
        f"/payments/{order['reference']}/verify", json={"code": code}, headers=alice.headers
    )
    assert response.status_code == 200, response.text
    assert seen == {"balance": Decimal("40"), "status": "payout_pending"}
    with Session(engine) as session:
        assert session.get(PaymentOrderModel, order["reference"]).status == "settled"
        assert session.get(AttemptRecordModel, "10.9.9.9").attempts == 1


def test_unconfirmed_payout_is_settled_by_the_sweep(
    client: TestClient, engine, settings, make_account, notifier, gateway
) -> None:
    alice = make_account("Alice", 100)
    order = _start_withdrawal(client, alice, "60")
    code = _request_code(client, alice, order["reference"], notifier)
    paypal = gateway.get("paypal")
    paypal.unconfirmed_payouts = 1

    response = client.post(
        f"/payments/{order['reference']}/verify", json={"code": code}, headers=alice.headers
    )
    assert response.status_code == 504
    assert response.json()["error"] == "external_payment_timeout"
    assert balance_of(engine, alice.id) == Decimal("40")
    with Session(engine) as session:
        assert session.get(PaymentOrderModel, order["reference"]).status == "payout_pending"
        assert session.exec(select(LedgerRecordModel)).all() == []

    again = client.post(f"/payments/{order['reference']}/code", headers=alice.headers)
    assert again.status_code == 404

    sweep_expired(settings.model_copy(update={"payout_reconcile_after_seconds": 0}), gateway, notifier)

    assert balance_of(engine, alice.id) == Decimal("40")
    assert len(paypal.payouts) == 1
    with Session(engine) as session:
        assert session.get(PaymentOrderModel, order["reference"]).status == "settled"
        records = session.exec(select(LedgerRecordModel)).all()
        assert [record.external_ref for record in records] == [order["reference"]]
    assert "Withdrawal Successful" in notifier.subjects_for(alice.email)


def test_sweep_refunds_a_payout_the_provider_refuses(
    client: TestClient, engine, settings, make_account, notifier, gateway
) -> None:
    alice = make_account("Alice", 100)
    order = _start_withdrawal(client, alice, "60")
    code = _request_code(client, alice, order["reference"], notifier)
    paypal = gateway.get("paypal")

    def lost_request() -> None:
        raise PaymentTimeoutError()

    paypal.on_payout = lost_request
    response = client.post(
        f"/payments/{order['reference']}/verify", json={"code": code}, headers=alice.headers
    )
    assert response.status_code == 504
    assert balance_of(engine, alice.id) == Decimal("40")

    recent = settings.model_copy(update={"payout_reconcile_after_seconds": 3600})
    paypal.on_payout = None
    paypal.fail_payout = True
    sweep_expired(recent, gateway, notifier)
    assert balance_of(engine, alice.id) == Decimal("40")

    sweep_expired(settings.model_copy(update={"payout_reconcile_after_seconds": 0}), gateway, notifier)
    assert balance_of(engine, alice.id) == Decimal("100")
    with Session(engine) as session:
        assert session.get(PaymentOrderModel, order["reference"]).status == "failed"
        assert session.exec(select(LedgerRecordModel)).all() == []


def test_concurrent_verifies_settle_once(
    client: TestClient, engine, settings, make_account, notifier, gateway
) -> None:
    alice = make_account("Alice", 0)
    order = _start_deposit(client, alice)
    code = _request_code(client, alice, order["reference"], notifier)

    def attempt() -> bool:
        with Session(engine) as session:
            service = FundingService(session, settings, gateway, notifier)
            try:
                service.verify(alice.id, order["reference"], code)
            except InvalidOrExpiredCodeError:
                return False
            return True

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(lambda _: attempt(), range(8)))

    assert outcomes.count(True) == 1
    assert balance_of(engine, alice.id) == Decimal("100")
    assert len(gateway.get("paypal").captured) == 1
    with Session(engine) as session:
        assert len(session.exec(select(LedgerRecordModel)).all()) == 1
