import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from src.application.ledger_service import LedgerService
from src.domain.exceptions import NotFoundError, PermissionDeniedError, StateConflictError, ValidationError
from src.infrastructure.db.models import User
from src.infrastructure.repositories.user_repository import UserRepository


logger = logging.getLogger(__name__)


class UserService:

    def __init__(self, db: Session):
        self.db = db
        self.repository = UserRepository(db)

    def register(
        self,
        name: str,
        email: str,
        phone: str | None = None,
        is_renter: bool = True,
        is_owner: bool = False,
        is_admin: bool = False,
        store_latitude: float | None = None,
        store_longitude: float | None = None,
        geofence_radius_km: Decimal | None = None,
    ) -> User:
        email = email.strip().lower()
        if not name.strip() or "@" not in email:
            raise ValidationError("A name and a valid email are required")
        if not (is_renter or is_owner or is_admin):
            raise ValidationError("A user needs at least one role")
        if self.repository.get_by_email(email):
            raise StateConflictError(f"Email {email} is already registered")

        user = self.repository.create_user(
            name=name.strip(),
            email=email,
            phone=phone,
            is_renter=is_renter,
            is_owner=is_owner,
            is_admin=is_admin,
            store_latitude=store_latitude,
            store_longitude=store_longitude,
            geofence_radius_km=geofence_radius_km,
        )
        self.db.flush()
        LedgerService(self.db).open_accounts(user.id)
        logger.info("Registered user %s", user.id)
        return user

    def get_user(self, user_id: str) -> User:
        user = self.repository.get_active(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def mark_phone_verified(self, user_id: str, actor: User) -> User:
        # The OTP exchange happens elsewhere; only an admin records its result.
        if not actor.is_admin:
            raise PermissionDeniedError("Only an admin can mark a phone verified")
        user = self.get_user(user_id)
        if not user.phone:
            raise ValidationError("No phone number on file")
        user.phone_verified = True
        self.db.flush()
        logger.info("Phone verified for user %s", user.id)
        return user
