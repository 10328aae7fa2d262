# src/infrastructure/repositories/bike_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select, func, or_

from src.infrastructure.db.models import Bike, Booking
from src.domain.exceptions import NotFoundError
from src.domain.state_machine import BookingStatus


HOLDING_STATUSES = (BookingStatus.PENDING, BookingStatus.ACTIVE)


class BikeRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_active(self, bike_id: str) -> Bike | None:
        stmt = (
            select(Bike)
            .where(Bike.id == bike_id)
            .where(Bike.is_deleted.is_(False))
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_bike(self, bike_id: str) -> Bike:
        """
        SELECT ... FOR UPDATE
        Serialises reservations on the same listing.
        """

        stmt = (
            select(Bike)
            .where(Bike.id == bike_id)
            .where(Bike.is_deleted.is_(False))
            .with_for_update()
        )

        bike = self.db.execute(stmt).scalar_one_or_none()

        if not bike:
            raise NotFoundError(f"Bike {bike_id} not found")

        return bike

    def create_bike(self, **fields) -> Bike:
        bike = Bike(**fields)
        self.db.add(bike)
        return bike

    def held_quantity(self, bike_id: str) -> int:
        """
        Units held by pending/active bookings plus units reported lost.
        A lost booking is counted once even while it is still ACTIVE.
        """
        stmt = (
            select(func.coalesce(func.sum(Booking.quantity), 0))
            .where(Booking.bike_id == bike_id)
            .where(
                or_(
                    Booking.status.in_(HOLDING_STATUSES),
                    Booking.is_reported_lost.is_(True),
                )
            )
        )
        return int(self.db.execute(stmt).scalar_one())
