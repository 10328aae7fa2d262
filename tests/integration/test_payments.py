from datetime import datetime, timedelta, timezone
from decimal import Decimal
import json

from sqlalchemy import func, select

from src.domain.enums import TransactionType
from src.domain.state_machine import PaymentStatus
from src.infrastructure.db.models import CheckoutSession, CreditTransaction, Payment


def _setup(factory, balance: str | None = "1000"):
    owner = factory.owner()
    renter = factory.user()
    bike = factory.bike(owner, quantity=3, hourly_rate="100")
    if balance:
        factory.load(renter, balance)
    return owner, renter, bike


def _webhook_event(intent_id: str, payment_id: str = "pay_hook_1") -> dict:
    return {
        "event": "payment.captured",
        "payload": {
            "payment": {
                "entity": {"id": payment_id, "order_id": intent_id, "status": "captured"},
            }
        },
    }


def test_wallet_payment_moves_money(factory, flow):
    owner, renter, bike = _setup(factory)
    booking = flow.book(renter, bike, quantity=2)

    result = flow.pay(renter, booking["id"])

    assert result["outcome"] == "COMPLETED"
    assert result["payment"]["method"] == "WALLET"
    assert flow.balance(renter) == Decimal("340.00")
    assert flow.balance(owner) == Decimal("0.00")

    history = flow.wallet(renter)["transactions"]
    assert history[0]["transaction_type"] == "RENTAL_PAYMENT"
    assert Decimal(history[0]["balance_after"]) == Decimal(history[0]["balance_before"]) - Decimal("660")

    flow.act(owner, booking["id"], "accept")
    flow.act(owner, booking["id"], "return")
    # The owner earns the base rate on completion; the service fee stays with the platform.
    assert flow.balance(owner) == Decimal("600.00")


def test_wallet_payment_with_short_balance_is_rejected(factory, flow):
    owner, renter, bike = _setup(factory, balance="500")
    booking = flow.book(renter, bike, quantity=2)

    flow.pay(renter, booking["id"], expect=409)

    wallet = flow.wallet(renter)
    assert Decimal(wallet["balance"]) == Decimal("500.00")
    assert [item["transaction_type"] for item in wallet["transactions"]] == ["LOAD"]
    detail = flow.client.get(f"/bookings/{booking['id']}", headers=flow.headers(renter)).json()
    assert detail["payments"] == []


def test_second_payment_is_refused(factory, flow):
    owner, renter, bike = _setup(factory)
    booking = flow.book(renter, bike)

    flow.pay(renter, booking["id"])
    flow.pay(renter, booking["id"], expect=409)

    assert flow.balance(renter) == Decimal("670.00")


def test_amount_must_match(client, factory, flow):
    owner, renter, bike = _setup(factory)
    booking = flow.book(renter, bike)

    response = client.post(
        f"/bookings/{booking['id']}/payments",
        json={"method": "WALLET", "amount": "100.00"},
        headers=flow.headers(renter),
    )

    assert response.status_code == 422


def test_only_the_renter_pays(factory, flow):
    owner, renter, bike = _setup(factory)
    booking = flow.book(renter, bike)

    flow.pay(owner, booking["id"], expect=403)


def test_cash_payment_skips_the_ledger(factory, flow):
    owner, renter, bike = _setup(factory, balance=None)
    booking = flow.book(renter, bike)

    result = flow.pay(renter, booking["id"], method="CASH")

    assert result["outcome"] == "COMPLETED"
    assert "Cash" in result["payment"]["notes"]
    assert flow.wallet(renter)["transactions"] == []
    assert flow.wallet(owner)["transactions"] == []


def test_gateway_payment_confirms_once(client, factory, flow, gateway, session_factory):
    owner, renter, bike = _setup(factory, balance=None)
    booking = flow.book(renter, bike)

    pending = flow.pay(renter, booking["id"], method="GCASH")
    assert pending["outcome"] == "PENDING"
    assert pending["redirect_url"].endswith(f"/checkout/{pending['checkout_token']}")
    intent_id = pending["payment"]["transaction_reference"]

    checkout = client.get(f"/checkout/{pending['checkout_token']}")
    assert checkout.status_code == 200
    assert checkout.json()["intent_id"] == intent_id
    assert checkout.json()["payment_status"] == "PENDING"
    assert checkout.json()["key_id"] == "rzp_test_key"

    waiting = client.post("/payments/confirm", json={"intent_id": intent_id}, headers=flow.headers(renter))
    assert waiting.json()["outcome"] == "PENDING"
    assert waiting.json()["gateway_status"] == "awaiting_payment_method"

    gateway.succeed(intent_id)
    first = client.post("/payments/confirm", json={"intent_id": intent_id}, headers=flow.headers(renter))
    second = client.post("/payments/confirm", json={"intent_id": intent_id}, headers=flow.headers(renter))

    assert first.json()["outcome"] == "COMPLETED"
    assert first.json()["already_processed"] is False
    assert second.json()["outcome"] == "COMPLETED"
    assert second.json()["already_processed"] is True

    with session_factory() as db:
        completed = db.execute(
            select(func.count()).select_from(Payment).where(
                Payment.booking_id == booking["id"],
                Payment.status == PaymentStatus.COMPLETED,
            )
        ).scalar_one()
        earnings = db.execute(
            select(func.count()).select_from(CreditTransaction).where(
                CreditTransaction.transaction_type == TransactionType.EARNING,
            )
        ).scalar_one()
    assert completed == 1
    assert earnings == 0

    flow.act(owner, booking["id"], "accept")
    flow.act(owner, booking["id"], "return")
    assert flow.balance(owner) == Decimal("300.00")
    assert [item["transaction_type"] for item in flow.wallet(owner)["transactions"]] == ["EARNING"]


def test_gateway_failure_is_persisted(client, factory, flow, gateway):
    owner, renter, bike = _setup(factory)
    booking = flow.book(renter, bike)
    pending = flow.pay(renter, booking["id"], method="CARD")
    intent_id = pending["payment"]["transaction_reference"]

    gateway.fail(intent_id)
    failed = client.post("/payments/confirm", json={"intent_id": intent_id}, headers=flow.headers(renter))

    assert failed.status_code == 200
    assert failed.json()["outcome"] == "FAILED"
    detail = client.get(f"/bookings/{booking['id']}", headers=flow.headers(renter)).json()
    assert detail["status"] == "PENDING"
    assert detail["payments"][0]["status"] == "FAILED"

    # Retrying with the wallet supersedes the failed attempt.
    flow.pay(renter, booking["id"])
    statuses = sorted(item["status"] for item in flow.client.get(
        f"/bookings/{booking['id']}", headers=flow.headers(renter)
    ).json()["payments"])
    assert statuses == ["CANCELLED", "COMPLETED"]


def test_rejected_signature_fails_the_attempt(client, factory, flow, gateway):
    owner, renter, bike = _setup(factory)
    booking = flow.book(renter, bike)
    intent_id = flow.pay(renter, booking["id"], method="QRPH")["payment"]["transaction_reference"]

    gateway.reject_attach = True
    response = client.post(
        "/payments/confirm",
        json={"intent_id": intent_id, "payment_method_id": "pay_1", "signature": "forged"},
        headers=flow.headers(renter),
    )

    assert response.json()["outcome"] == "FAILED"
    assert gateway.calls["status"] == 0


def test_declined_intent_returns_402(factory, flow, gateway):
    owner, renter, bike = _setup(factory)
    booking = flow.book(renter, bike)
    gateway.decline_create = True

    flow.pay(renter, booking["id"], method="PAYMAYA", expect=402)


def test_superseded_attempt_captured_late_is_returned_to_wallet(client, factory, flow, gateway):
    owner, renter, bike = _setup(factory, balance=None)
    booking = flow.book(renter, bike)

    first = flow.pay(renter, booking["id"], method="GCASH")
    flow.pay(renter, booking["id"], method="GCASH")
    first_intent = first["payment"]["transaction_reference"]

    gateway.succeed(first_intent)
    response = client.post("/payments/confirm", json={"intent_id": first_intent}, headers=flow.headers(renter))

    body = response.json()
    assert body["outcome"] == "FAILED"
    assert body["already_processed"] is True
    assert body["payment"]["status"] == "CANCELLED"
    assert Decimal(body["payment"]["refund_amount"]) == Decimal("330.00")
    assert flow.balance(renter) == Decimal("330.00")

    # Polling again does not refund twice.
    client.post("/payments/confirm", json={"intent_id": first_intent}, headers=flow.headers(renter))
    assert flow.balance(renter) == Decimal("330.00")


def test_only_the_payer_confirms(client, factory, flow):
    owner, renter, bike = _setup(factory)
    booking = flow.book(renter, bike)
    intent_id = flow.pay(renter, booking["id"], method="GCASH")["payment"]["transaction_reference"]

    response = client.post("/payments/confirm", json={"intent_id": intent_id}, headers=flow.headers(owner))

    assert response.status_code == 403


def test_webhook_deliveries_are_deduplicated(client, factory, flow, gateway):
    owner, renter, bike = _setup(factory)
    booking = flow.book(renter, bike)
    flow.act(owner, booking["id"], "accept")
    intent_id = flow.pay(renter, booking["id"], method="GCASH")["payment"]["transaction_reference"]
    gateway.succeed(intent_id)
    body = json.dumps(_webhook_event(intent_id))

    first = client.post("/payments/webhook", content=body, headers={"X-Razorpay-Signature": "sig"})
    second = client.post("/payments/webhook", content=body, headers={"X-Razorpay-Signature": "sig"})

    assert first.json() == {"status": "processed", "outcome": "COMPLETED"}
    assert second.json()["status"] == "duplicate"
    detail = client.get(f"/bookings/{booking['id']}", headers=flow.headers(renter)).json()
    assert detail["status"] == "ACTIVE"
    # The gateway poll runs in the worker threadpool, not on the event loop.
    assert gateway.polled_on_event_loop == [False]


def test_webhook_for_unknown_intent_is_ignored(client):
    response = client.post("/payments/webhook", content=json.dumps(_webhook_event("order_unknown")))

    assert response.json()["status"] == "ignored"


def test_webhook_signature_and_shape(client, gateway):
    assert client.post("/payments/webhook", content="{}").status_code == 422

    gateway.webhook_valid = False
    response = client.post("/payments/webhook", content=json.dumps(_webhook_event("order_1")))
    assert response.status_code == 400


def test_expired_checkout_session(client, factory, flow, session_factory):
    owner, renter, bike = _setup(factory)
    booking = flow.book(renter, bike)
    token = flow.pay(renter, booking["id"], method="GCASH")["checkout_token"]

    with session_factory() as db:
        session = db.execute(select(CheckoutSession).where(CheckoutSession.token == token)).scalar_one()
        session.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        db.commit()

    assert client.get(f"/checkout/{token}").status_code == 410
    assert client.get("/checkout/unknown").status_code == 404


def test_payments_rejected_once_booking_is_cancelled(factory, flow):
    owner, renter, bike = _setup(factory)
    booking = flow.book(renter, bike)
    flow.act(owner, booking["id"], "reject", json={"reason": "Unavailable"})

    flow.pay(renter, booking["id"], expect=409)
