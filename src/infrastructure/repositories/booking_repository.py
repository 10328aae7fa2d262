# src/infrastructure/repositories/booking_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select, exists, or_

from src.infrastructure.db.models import Booking, Payment
from src.domain.state_machine import BookingStatus, PaymentStatus


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .with_for_update()
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def create_booking(self, **fields) -> Booking:
        booking = Booking(status=BookingStatus.PENDING, **fields)
        self.db.add(booking)
        return booking

    def update_status(
        self,
        booking: Booking,
        new_status: BookingStatus,
    ) -> None:

        booking.status = new_status

    def list_for_user(
        self,
        user_id: str,
        status: BookingStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Booking]:
        stmt = select(Booking).where(
            or_(Booking.renter_id == user_id, Booking.owner_id == user_id)
        )
        if status is not None:
            stmt = stmt.where(Booking.status == status)
        stmt = stmt.order_by(Booking.created_at.desc()).limit(limit).offset(offset)
        return list(self.db.execute(stmt).scalars().all())

    def list_stale_unpaid(self, created_before: datetime) -> list[Booking]:
        """Pending bookings older than the cutoff with no completed payment."""
        paid = (
            exists()
            .where(Payment.booking_id == Booking.id)
            .where(Payment.status == PaymentStatus.COMPLETED)
        )
        stmt = (
            select(Booking)
            .where(Booking.status == BookingStatus.PENDING)
            .where(Booking.created_at < created_before)
            .where(~paid)
            .order_by(Booking.created_at)
            .with_for_update()
        )
        return list(self.db.execute(stmt).scalars().all())
