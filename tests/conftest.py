import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import itertools

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from src.api.routes.routes import get_db, get_gateway
from src.application.inventory_service import InventoryService
from src.application.ledger_service import LedgerService
from src.application.user_service import UserService
from src.domain.enums import GatewayIntentStatus, TransactionType
from src.infrastructure.db.models import Base, User
from src.infrastructure.db.session import build_engine
from src.infrastructure.gateway.razorpay_gateway import GatewayResult
from src.main import app


def _on_event_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class FakeGateway:
    """In-memory stand-in for the Razorpay adapter."""

    provider = "razorpay"
    key_id = "rzp_test_key"

    def __init__(self):
        self.intents: dict[str, GatewayIntentStatus] = {}
        self.calls = Counter()
        self.decline_create = False
        self.reject_attach = False
        self.webhook_valid = True
        self.polled_on_event_loop: list[bool] = []
        self._ids = itertools.count(1)

    def create_payment_intent(self, amount, currency, description, metadata):
        self.calls["create"] += 1
        if self.decline_create:
            return GatewayResult(
                success=False,
                status=GatewayIntentStatus.PAYMENT_FAILED,
                error_message="Declined by issuer",
            )
        intent_id = f"order_test_{next(self._ids)}"
        self.intents[intent_id] = GatewayIntentStatus.AWAITING_PAYMENT_METHOD
        return GatewayResult(
            success=True,
            status=GatewayIntentStatus.AWAITING_PAYMENT_METHOD,
            intent_id=intent_id,
            extra={"amount": str(amount), "currency": currency},
        )

    def attach_payment_method(self, intent_id, payment_method_id, signature=None):
        self.calls["attach"] += 1
        if self.reject_attach:
            return GatewayResult(
                success=False,
                status=GatewayIntentStatus.PAYMENT_FAILED,
                intent_id=intent_id,
                error_message="Signature mismatch",
            )
        return GatewayResult(
            success=True,
            status=self.intents.get(intent_id, GatewayIntentStatus.UNKNOWN),
            payment_method_id=payment_method_id,
            intent_id=intent_id,
        )

    def get_intent_status(self, intent_id):
        self.calls["status"] += 1
        self.polled_on_event_loop.append(_on_event_loop())
        status = self.intents.get(intent_id, GatewayIntentStatus.UNKNOWN)
        return GatewayResult(
            success=status == GatewayIntentStatus.SUCCEEDED,
            status=status,
            payment_method_id=f"pay_{intent_id}" if status == GatewayIntentStatus.SUCCEEDED else None,
            intent_id=intent_id,
        )

    def verify_webhook(self, body, signature):
        return self.webhook_valid

    # test controls
    def succeed(self, intent_id):
        self.intents[intent_id] = GatewayIntentStatus.SUCCEEDED

    def fail(self, intent_id):
        self.intents[intent_id] = GatewayIntentStatus.PAYMENT_FAILED


class Factory:
    """Creates committed rows through the application services."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._seq = itertools.count(1)

    def user(
        self,
        name: str = "renter",
        is_renter: bool = True,
        is_owner: bool = False,
        is_admin: bool = False,
        phone_verified: bool = True,
        **fields,
    ) -> str:
        with self.session_factory() as db:
            user = UserService(db).register(
                name=name,
                email=f"{name}{next(self._seq)}@example.com",
                phone=fields.pop("phone", "+639170000000"),
                is_renter=is_renter,
                is_owner=is_owner,
                is_admin=is_admin,
                **fields,
            )
            user.phone_verified = phone_verified
            db.commit()
            return user.id

    def owner(self, **fields) -> str:
        return self.user(name="owner", is_renter=False, is_owner=True, **fields)

    def admin(self) -> str:
        return self.user(name="admin", is_renter=False, is_admin=True)

    def bike(
        self,
        owner_id: str,
        quantity: int = 3,
        hourly_rate: str = "100",
        daily_rate: str | None = None,
    ) -> str:
        with self.session_factory() as db:
            bike = InventoryService(db).create_bike(
                db.get(User, owner_id),
                name="City Cruiser",
                quantity=quantity,
                hourly_rate=Decimal(hourly_rate),
                daily_rate=Decimal(daily_rate) if daily_rate else None,
            )
            db.commit()
            return bike.id

    def load(self, user_id: str, amount: str) -> None:
        with self.session_factory() as db:
            LedgerService(db).credit(user_id, Decimal(amount), TransactionType.LOAD, description="Test load")
            db.commit()


class RentalFlow:
    """Drives the HTTP API through the common booking steps."""

    def __init__(self, client):
        self.client = client

    @staticmethod
    def headers(user_id: str) -> dict:
        return {"X-User-Id": user_id}

    @staticmethod
    def window(hours: int = 3, starts_in: timedelta = timedelta(hours=1)) -> tuple[datetime, datetime]:
        start = (datetime.now(timezone.utc) + starts_in).replace(microsecond=0)
        return start, start + timedelta(hours=hours)

    def book(self, renter_id: str, bike_id: str, quantity: int = 1, hours: int = 3, expect: int = 201) -> dict:
        start, end = self.window(hours)
        response = self.client.post(
            "/bookings",
            json={
                "bike_id": bike_id,
                "quantity": quantity,
                "start_date": start.isoformat(),
                "end_date": end.isoformat(),
            },
            headers=self.headers(renter_id),
        )
        assert response.status_code == expect, response.text
        return response.json()

    def pay(self, renter_id: str, booking_id: str, method: str = "WALLET", expect: int = 200) -> dict:
        response = self.client.post(
            f"/bookings/{booking_id}/payments",
            json={"method": method},
            headers=self.headers(renter_id),
        )
        assert response.status_code == expect, response.text
        return response.json()

    def act(self, user_id: str, booking_id: str, action: str, json: dict | None = None, expect: int = 200) -> dict:
        response = self.client.post(
            f"/bookings/{booking_id}/{action}",
            json=json,
            headers=self.headers(user_id),
        )
        assert response.status_code == expect, response.text
        return response.json()

    def activate(self, renter_id: str, owner_id: str, bike_id: str, quantity: int = 1, hours: int = 3) -> dict:
        booking = self.book(renter_id, bike_id, quantity, hours)
        self.pay(renter_id, booking["id"])
        booking = self.act(owner_id, booking["id"], "accept")
        assert booking["status"] == "ACTIVE"
        return booking

    def complete(self, renter_id: str, owner_id: str, bike_id: str, quantity: int = 1, hours: int = 3) -> dict:
        booking = self.activate(renter_id, owner_id, bike_id, quantity, hours)
        booking = self.act(owner_id, booking["id"], "return")
        assert booking["status"] == "COMPLETED"
        return booking

    def wallet(self, user_id: str) -> dict:
        response = self.client.get("/wallet", headers=self.headers(user_id))
        assert response.status_code == 200, response.text
        return response.json()

    def balance(self, user_id: str) -> Decimal:
        return Decimal(self.wallet(user_id)["balance"])

    def available(self, bike_id: str) -> int:
        response = self.client.get(f"/bikes/{bike_id}/availability")
        assert response.status_code == 200, response.text
        return response.json()["available"]



@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'rentals.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def factory(session_factory):
    return Factory(session_factory)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(session_factory, gateway):
    def override_get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    # Not entered as a context manager: startup would wait for the configured database.
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def flow(client):
    return RentalFlow(client)
