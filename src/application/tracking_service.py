import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from src.application.notification_service import NotificationService
from src.config import Settings, get_settings
from src.domain.exceptions import NotFoundError, PermissionDeniedError, StateConflictError, ValidationError
from src.domain.geo import haversine_km
from src.domain.pricing import as_utc
from src.domain.state_machine import BookingStatus
from src.infrastructure.db.models import LocationTracking, User
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.tracking_repository import TrackingRepository
from src.infrastructure.repositories.user_repository import UserRepository


logger = logging.getLogger(__name__)

WARNING_INTERVAL = timedelta(minutes=15)


class TrackingService:
    """Append-only GPS samples for active rentals, tagged against the owner's geofence."""

    def __init__(self, db: Session, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()
        self.repository = TrackingRepository(db)
        self.booking_repository = BookingRepository(db)
        self.user_repository = UserRepository(db)
        self.notifications = NotificationService(db)

    def record_location(
        self,
        booking_id: str,
        renter: User,
        latitude: float,
        longitude: float,
        recorded_at: datetime | None = None,
    ) -> LocationTracking:
        if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
            raise ValidationError("Coordinates out of range")

        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise NotFoundError(f"Booking {booking_id} not found")
        if booking.renter_id != renter.id:
            raise PermissionDeniedError("Only the renter reports locations for this booking")
        if booking.status != BookingStatus.ACTIVE:
            raise StateConflictError(f"Booking {booking.id} is not ACTIVE")

        recorded_at = as_utc(recorded_at) if recorded_at else datetime.now(timezone.utc)
        distance, inside = self._geofence(booking.owner_id, latitude, longitude)

        warn = inside is False and self._warning_due(booking.id, recorded_at)
        sample = self.repository.add_sample(
            booking_id=booking.id,
            latitude=latitude,
            longitude=longitude,
            recorded_at=recorded_at,
            distance_from_store_km=distance,
            is_within_geofence=inside,
            warning_sent=warn,
        )
        self.db.flush()

        if warn:
            logger.warning(
                "Booking %s left the geofence (%.2f km from store)",
                booking.id,
                distance,
            )
            self.notifications.notify(
                booking.renter_id,
                "Outside rental area",
                f"You are {distance:.1f} km from the store, outside the allowed area.",
                action_url=f"/bookings/{booking.id}",
                dedupe_key=f"geofence:{sample.id}",
            )
        return sample

    def list_locations(
        self,
        booking_id: str,
        user: User,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[LocationTracking]:
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise NotFoundError(f"Booking {booking_id} not found")
        if user.id not in (booking.renter_id, booking.owner_id) and not user.is_admin:
            raise PermissionDeniedError("You are not a party to this booking")
        return self.repository.list_samples(
            booking.id,
            since=as_utc(since) if since else None,
            until=as_utc(until) if until else None,
        )

    def _geofence(self, owner_id: str, latitude: float, longitude: float) -> tuple[float | None, bool | None]:
        owner = self.user_repository.get_active(owner_id)
        if owner is None or owner.store_latitude is None or owner.store_longitude is None:
            return None, None

        radius = float(owner.geofence_radius_km or self.settings.geofence_radius_km)
        distance = round(haversine_km(owner.store_latitude, owner.store_longitude, latitude, longitude), 3)
        return distance, distance <= radius

    def _warning_due(self, booking_id: str, recorded_at: datetime) -> bool:
        last = self.repository.last_warning(booking_id)
        if last is None:
            return True
        return recorded_at - as_utc(last.recorded_at) >= WARNING_INTERVAL
