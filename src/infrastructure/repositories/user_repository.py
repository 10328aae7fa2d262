# src/infrastructure/repositories/user_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select, exists

from src.infrastructure.db.models import Booking, User
from src.domain.state_machine import BookingStatus


class UserRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_active(self, user_id: str) -> User | None:
        """Soft-deleted users are invisible to every read path."""
        stmt = (
            select(User)
            .where(User.id == user_id)
            .where(User.is_deleted.is_(False))
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_email(self, email: str) -> User | None:
        stmt = select(User).where(User.email == email)
        return self.db.execute(stmt).scalar_one_or_none()

    def create_user(self, **fields) -> User:
        user = User(**fields)
        self.db.add(user)
        return user

    def has_completed_booking(self, renter_id: str) -> bool:
        stmt = select(
            exists()
            .where(Booking.renter_id == renter_id)
            .where(Booking.status == BookingStatus.COMPLETED)
        )
        return bool(self.db.execute(stmt).scalar())
