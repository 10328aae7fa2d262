# src/infrastructure/repositories/payment_repository.py

from datetime import datetime, timezone

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from src.infrastructure.db.models import CheckoutSession, Payment, PaymentWebhookEvent
from src.domain.state_machine import PaymentStatus


OPEN_STATUSES = (PaymentStatus.PENDING, PaymentStatus.FAILED)


class PaymentRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, payment_id: str) -> Payment | None:
        stmt = select(Payment).where(Payment.id == payment_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_by_intent(self, intent_id: str) -> Payment | None:
        """
        SELECT ... FOR UPDATE on the payment holding a gateway intent.
        Concurrent confirmations of the same intent queue here.
        """
        stmt = (
            select(Payment)
            .where(Payment.transaction_reference == intent_id)
            .with_for_update()
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def claim_completion(self, payment_id: str) -> bool:
        """
        Flips an open payment to COMPLETED in one conditional UPDATE.
        Exactly one of several concurrent callers gets True.
        """
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id)
            .where(Payment.status.in_(OPEN_STATUSES))
            .values(status=PaymentStatus.COMPLETED, paid_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def create_payment(self, **fields) -> Payment:
        payment = Payment(**fields)
        self.db.add(payment)
        return payment

    def _for_target(self, booking_id: str | None, damage_id: str | None):
        stmt = select(Payment)
        if booking_id is not None:
            return stmt.where(Payment.booking_id == booking_id)
        return stmt.where(Payment.damage_id == damage_id)

    def list_for_booking(self, booking_id: str) -> list[Payment]:
        stmt = self._for_target(booking_id, None).order_by(Payment.created_at)
        return list(self.db.execute(stmt).scalars().all())

    def get_completed(
        self,
        booking_id: str | None = None,
        damage_id: str | None = None,
    ) -> Payment | None:
        stmt = (
            self._for_target(booking_id, damage_id)
            .where(Payment.status == PaymentStatus.COMPLETED)
            .with_for_update()
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_open(
        self,
        booking_id: str | None = None,
        damage_id: str | None = None,
    ) -> list[Payment]:
        """Pending or failed attempts that a new attempt supersedes."""
        stmt = (
            self._for_target(booking_id, damage_id)
            .where(Payment.status.in_(OPEN_STATUSES))
            .with_for_update()
        )
        return list(self.db.execute(stmt).scalars().all())

    def create_checkout_session(self, **fields) -> CheckoutSession:
        session = CheckoutSession(**fields)
        self.db.add(session)
        return session

    def get_checkout_session(self, token: str) -> CheckoutSession | None:
        stmt = select(CheckoutSession).where(CheckoutSession.token == token)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_webhook_event(self, provider: str, gateway_payment_id: str) -> PaymentWebhookEvent | None:
        stmt = (
            select(PaymentWebhookEvent)
            .where(PaymentWebhookEvent.provider == provider)
            .where(PaymentWebhookEvent.payment_id == gateway_payment_id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def add_webhook_event(self, **fields) -> PaymentWebhookEvent:
        event = PaymentWebhookEvent(**fields)
        self.db.add(event)
        return event
