import logging
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from src.application.booking_service import BookingService
from src.config import Settings, get_settings
from src.domain.exceptions import ExpiredError, NotFoundError, StateConflictError, VerificationRequiredError
from src.domain.pricing import as_utc
from src.infrastructure.db.models import Booking, BookingDraft, User
from src.infrastructure.repositories.draft_repository import DraftRepository


logger = logging.getLogger(__name__)


class DraftService:
    """
    Booking requests that wait for phone verification.
    A draft is keyed by an opaque token, expires, and is consumed once.
    """

    def __init__(
        self,
        db: Session,
        booking_service: BookingService | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.repository = DraftRepository(db)
        self.bookings = booking_service or BookingService(db, settings=self.settings)

    def request_booking(
        self,
        renter: User,
        bike_id: str,
        quantity: int,
        start_date: datetime,
        end_date: datetime,
    ) -> Booking | BookingDraft:
        """Creates the booking, or a draft when the renter still has to verify their phone."""
        try:
            return self.bookings.create_booking(renter, bike_id, quantity, start_date, end_date)
        except VerificationRequiredError:
            draft = self.repository.create_draft(
                token=secrets.token_urlsafe(24),
                renter_id=renter.id,
                bike_id=bike_id,
                quantity=quantity,
                start_date=as_utc(start_date),
                end_date=as_utc(end_date),
                expires_at=datetime.now(timezone.utc) + timedelta(minutes=self.settings.draft_ttl_minutes),
            )
            self.db.flush()
            logger.info("Booking request from renter %s deferred as draft %s", renter.id, draft.id)
            return draft

    def submit_draft(self, token: str, renter: User) -> Booking:
        draft = self.repository.lock_by_token(token)
        if not draft or draft.renter_id != renter.id:
            raise NotFoundError("Booking draft not found")
        if draft.consumed_at is not None:
            raise StateConflictError("Booking draft was already submitted")
        if as_utc(draft.expires_at) <= datetime.now(timezone.utc):
            raise ExpiredError("Booking draft has expired")

        draft_id = draft.id
        booking = self.bookings.create_booking(
            renter,
            draft.bike_id,
            draft.quantity,
            draft.start_date,
            draft.end_date,
        )

        # A retried reservation rolls the session back, so re-read the draft.
        draft = self.repository.lock_by_token(token)
        draft.consumed_at = datetime.now(timezone.utc)
        draft.booking_id = booking.id
        self.db.flush()
        logger.info("Draft %s submitted as booking %s", draft_id, booking.id)
        return booking
