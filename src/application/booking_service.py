import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from src.application.inventory_service import InventoryService
from src.application.ledger_service import LedgerService
from src.application.notification_service import NotificationService
from src.application.payment_service import PaymentService
from src.config import Settings, get_settings
from src.domain.enums import AvailabilityStatus
from src.domain.exceptions import (
    InsufficientInventoryError,
    InvalidStateTransitionError,
    NotFoundError,
    NotOwnerError,
    PermissionDeniedError,
    RenterRestrictedError,
    StateConflictError,
    ValidationError,
    VerificationRequiredError,
)
from src.domain.pricing import as_utc
from src.domain.state_machine import BookingStateMachine, BookingStatus
from src.infrastructure.db.models import Booking, User
from src.infrastructure.repositories.bike_repository import BikeRepository
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.dispute_repository import DisputeRepository
from src.infrastructure.repositories.user_repository import UserRepository


logger = logging.getLogger(__name__)

START_TOLERANCE = timedelta(minutes=5)
LONG_TERM_RENTAL = timedelta(days=7)


class BookingService:
    """Application service coordinating booking workflow."""

    def __init__(
        self,
        db: Session,
        payment_service: PaymentService | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.booking_repository = BookingRepository(db)
        self.bike_repository = BikeRepository(db)
        self.user_repository = UserRepository(db)
        self.dispute_repository = DisputeRepository(db)
        self.inventory = InventoryService(db, self.settings)
        self.ledger = LedgerService(db, self.settings)
        self.payments = payment_service or PaymentService(db, settings=self.settings)
        self.notifications = NotificationService(db)

    # -----------------------------
    # Create
    # -----------------------------
    def create_booking(
        self,
        renter: User,
        bike_id: str,
        quantity: int,
        start_date: datetime,
        end_date: datetime,
        now: datetime | None = None,
    ) -> Booking:
        now = now or datetime.now(timezone.utc)
        renter_id = renter.id
        self.check_renter_can_book(renter)

        if as_utc(start_date) < now - START_TOLERANCE:
            raise ValidationError("Start date cannot be in the past")

        bike = self.inventory.get_bike(bike_id)
        self.inventory.quote_for(bike, quantity, start_date, end_date)
        if not renter.phone_verified and not self.user_repository.has_completed_booking(renter_id):
            raise VerificationRequiredError(
                "First-time renters must verify their phone number before booking"
            )

        max_attempts = max(1, self.settings.booking_create_max_retries)
        for attempt in range(1, max_attempts + 1):
            try:
                return self._reserve(renter_id, bike_id, quantity, start_date, end_date, now)
            except StaleDataError:
                # Another request reserved units of this bike after we read it.
                self.db.rollback()
                logger.warning(
                    "Concurrent reservation on bike %s (attempt %s/%s)",
                    bike_id,
                    attempt,
                    max_attempts,
                )
        raise StateConflictError(f"Bike {bike_id} is being booked concurrently, please retry")

    def _reserve(
        self,
        renter_id: str,
        bike_id: str,
        quantity: int,
        start_date: datetime,
        end_date: datetime,
        now: datetime,
    ) -> Booking:
        bike = self.bike_repository.lock_bike(bike_id)
        if bike.availability_status != AvailabilityStatus.AVAILABLE:
            raise StateConflictError(
                f"Bike {bike.id} is {bike.availability_status.value} and cannot be booked"
            )
        if bike.owner_id == renter_id:
            raise ValidationError("Owners cannot book their own bike")

        quote = self.inventory.quote_for(bike, quantity, start_date, end_date)
        available = self.inventory.available_for(bike)
        if available < quantity:
            raise InsufficientInventoryError(bike.id, quantity, available)

        booking = self.booking_repository.create_booking(
            renter_id=renter_id,
            owner_id=bike.owner_id,
            bike_id=bike.id,
            quantity=quantity,
            start_date=as_utc(start_date),
            end_date=as_utc(end_date),
            rental_hours=quote.hours,
            base_rate=quote.base_rate,
            service_fee=quote.service_fee,
            total_amount=quote.total_amount,
        )
        # Dirtying the bike bumps its version; a stale writer fails here.
        bike.last_reserved_at = now
        self.db.flush()

        logger.info(
            "Booking %s created PENDING for bike %s (quantity=%s, total=%s)",
            booking.id,
            bike.id,
            quantity,
            quote.total_amount,
        )
        self.notifications.notify(
            bike.owner_id,
            "New rental request",
            f"A renter requested {quantity} unit(s) of {bike.name}.",
            action_url=f"/bookings/{booking.id}",
            dedupe_key=f"booking:{booking.id}:requested",
        )
        return booking

    def check_renter_can_book(self, renter: User) -> None:
        if not renter.is_renter:
            raise PermissionDeniedError("Only renters can create bookings")
        if renter.is_suspended:
            raise RenterRestrictedError("Suspended renters cannot create bookings")
        if self.dispute_repository.list_active_red_tags(renter.id):
            raise RenterRestrictedError("Red-tagged renters cannot create bookings")

    # -----------------------------
    # Owner transitions
    # -----------------------------
    def accept(self, booking_id: str, owner: User) -> Booking:
        booking = self._owned_booking(booking_id, owner)
        if booking.status != BookingStatus.PENDING:
            raise InvalidStateTransitionError(booking.status.value, BookingStatus.ACTIVE.value)
        if booking.owner_confirmed_at is not None:
            raise StateConflictError(f"Booking {booking.id} is already accepted")

        booking.owner_confirmed_at = datetime.now(timezone.utc)
        self.db.flush()
        logger.info("Booking %s accepted by owner %s", booking.id, owner.id)

        if not self.payments.activate_if_ready(booking):
            self.notifications.notify(
                booking.renter_id,
                "Booking accepted",
                f"Your booking {booking.id} was accepted. Complete the payment to activate it.",
                action_url=f"/bookings/{booking.id}",
                dedupe_key=f"booking:{booking.id}:accepted",
            )
        return booking

    def reject(self, booking_id: str, owner: User, reason: str | None = None) -> Booking:
        booking = self._owned_booking(booking_id, owner)
        BookingStateMachine.validate_transition(booking.status, BookingStatus.CANCELLED)

        reason = (reason or "").strip() or "Rejected by owner"
        self.payments.refund_booking(booking, reason)
        self._cancel(booking, owner.id, reason)

        self.notifications.notify(
            booking.renter_id,
            "Booking rejected",
            f"Your booking {booking.id} was rejected: {reason}",
            action_url=f"/bookings/{booking.id}",
            dedupe_key=f"booking:{booking.id}:rejected",
        )
        return booking

    def confirm_return(
        self,
        booking_id: str,
        owner: User,
        returned_at: datetime | None = None,
    ) -> Booking:
        booking = self._owned_booking(booking_id, owner)
        if booking.is_reported_lost:
            raise StateConflictError(f"Booking {booking.id} is reported lost; mark it found instead")
        BookingStateMachine.validate_transition(booking.status, BookingStatus.COMPLETED)

        first_rental = not self.user_repository.has_completed_booking(booking.renter_id)
        self.booking_repository.update_status(booking, BookingStatus.COMPLETED)
        booking.actual_return_date = as_utc(returned_at) if returned_at else datetime.now(timezone.utc)
        self.db.flush()
        logger.info("Booking %s transitioned ACTIVE -> COMPLETED (returned)", booking.id)

        self.payments.release_earning(booking)
        self._award_points(booking, first_rental)
        self.notifications.notify(
            booking.renter_id,
            "Rental completed",
            f"Thanks for returning your bike. Booking {booking.id} is complete.",
            action_url=f"/bookings/{booking.id}",
            dedupe_key=f"booking:{booking.id}:completed",
        )
        return booking

    def report_lost(self, booking_id: str, owner: User) -> Booking:
        booking = self._owned_booking(booking_id, owner)
        if booking.status != BookingStatus.ACTIVE:
            raise StateConflictError(
                f"Only ACTIVE bookings can be reported lost, booking {booking.id} is {booking.status.value}"
            )
        if booking.is_reported_lost:
            raise StateConflictError(f"Booking {booking.id} is already reported lost")

        booking.is_reported_lost = True
        booking.reported_lost_at = datetime.now(timezone.utc)
        self.db.flush()
        logger.info("Booking %s reported lost by owner %s", booking.id, owner.id)

        self.notifications.notify(
            booking.renter_id,
            "Bike reported lost",
            f"The owner reported the bike from booking {booking.id} as lost. Please contact them.",
            action_url=f"/bookings/{booking.id}",
            dedupe_key=f"booking:{booking.id}:lost:{booking.reported_lost_at.isoformat()}",
        )
        return booking

    def mark_found(self, booking_id: str, owner: User) -> Booking:
        booking = self._owned_booking(booking_id, owner)
        if not booking.is_reported_lost:
            raise StateConflictError(f"Booking {booking.id} is not reported lost")

        now = datetime.now(timezone.utc)
        booking.is_reported_lost = False
        booking.found_at = now
        if booking.status != BookingStatus.COMPLETED:
            BookingStateMachine.validate_transition(booking.status, BookingStatus.COMPLETED)
            self.booking_repository.update_status(booking, BookingStatus.COMPLETED)
        booking.actual_return_date = now
        self.db.flush()
        logger.info("Booking %s marked found; now COMPLETED", booking.id)
        self.payments.release_earning(booking)

        self.notifications.notify(
            booking.renter_id,
            "Bike found",
            f"The bike from booking {booking.id} was found. The rental is complete.",
            action_url=f"/bookings/{booking.id}",
            dedupe_key=f"booking:{booking.id}:found",
        )
        return booking

    # -----------------------------
    # Renter transitions
    # -----------------------------
    def cancel(self, booking_id: str, renter: User, reason: str) -> Booking:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A cancellation reason is required")

        booking = self.booking_repository.lock_by_id(booking_id)
        if not booking:
            raise NotFoundError(f"Booking {booking_id} not found")
        if booking.renter_id != renter.id:
            raise PermissionDeniedError("Only the renter can cancel this booking")
        if booking.status != BookingStatus.PENDING:
            raise InvalidStateTransitionError(booking.status.value, BookingStatus.CANCELLED.value)

        self.payments.refund_booking(booking, reason)
        self._cancel(booking, renter.id, reason)

        self.notifications.notify(
            booking.owner_id,
            "Booking cancelled",
            f"The renter cancelled booking {booking.id}: {reason}",
            action_url=f"/bookings/{booking.id}",
            dedupe_key=f"booking:{booking.id}:cancelled",
        )
        return booking

    # -----------------------------
    # Maintenance
    # -----------------------------
    def expire_unpaid(self, now: datetime | None = None) -> list[Booking]:
        """Cancels PENDING bookings that stayed unpaid past the configured TTL."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=self.settings.unpaid_booking_ttl_minutes)
        expired = self.booking_repository.list_stale_unpaid(cutoff)

        reason = "Payment not completed in time"
        for booking in expired:
            self.payments.refund_booking(booking, reason)
            self._cancel(booking, None, reason)
            self.notifications.notify(
                booking.renter_id,
                "Booking expired",
                f"Booking {booking.id} was cancelled because it was not paid in time.",
                action_url=f"/bookings/{booking.id}",
                dedupe_key=f"booking:{booking.id}:expired",
            )

        if expired:
            logger.info("Expired %s unpaid booking(s)", len(expired))
        return expired

    # -----------------------------
    # Queries
    # -----------------------------
    def get_booking(self, booking_id: str, user: User) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise NotFoundError(f"Booking {booking_id} not found")
        if user.id not in (booking.renter_id, booking.owner_id) and not user.is_admin:
            raise PermissionDeniedError("You are not a party to this booking")
        return booking

    def list_bookings(
        self,
        user: User,
        status: BookingStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Booking]:
        return self.booking_repository.list_for_user(user.id, status, limit, offset)

    # -----------------------------
    # Helpers
    # -----------------------------
    def _owned_booking(self, booking_id: str, owner: User) -> Booking:
        booking = self.booking_repository.lock_by_id(booking_id)
        if not booking:
            raise NotFoundError(f"Booking {booking_id} not found")
        if booking.owner_id != owner.id:
            raise NotOwnerError("Only the bike owner can perform this action")
        return booking

    def _cancel(self, booking: Booking, actor_id: str | None, reason: str) -> None:
        self._transition(booking, BookingStatus.CANCELLED)
        booking.cancellation_reason = reason
        booking.cancelled_by = actor_id
        booking.cancelled_at = datetime.now(timezone.utc)
        self.db.flush()
        logger.info("Booking %s transitioned PENDING -> CANCELLED: %s", booking.id, reason)

    def _award_points(self, booking: Booking, first_rental: bool) -> None:
        awards = []
        if as_utc(booking.actual_return_date) <= as_utc(booking.end_date):
            awards.append((self.settings.points_on_time_return, "ON_TIME_RETURN", "on-time"))
        if first_rental:
            awards.append((self.settings.points_first_rental, "FIRST_RENTAL", "first-rental"))
        if as_utc(booking.end_date) - as_utc(booking.start_date) >= LONG_TERM_RENTAL:
            awards.append((self.settings.points_long_term_rental, "LONG_TERM_RENTAL", "long-term"))

        for points, reason, suffix in awards:
            if points > 0:
                self.ledger.adjust_points(
                    booking.renter_id,
                    points,
                    reason=reason,
                    reference_id=f"booking:{booking.id}:{suffix}",
                )

    def _transition(self, booking: Booking, to_status: BookingStatus) -> None:
        BookingStateMachine.validate_transition(booking.status, to_status)
        self.booking_repository.update_status(booking, to_status)
