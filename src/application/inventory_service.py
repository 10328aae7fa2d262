import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from src.config import Settings, get_settings
from src.domain.enums import AvailabilityStatus
from src.domain.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from src.domain.pricing import RentalQuote, quote_rental, to_money, validate_request
from src.infrastructure.db.models import Bike, User
from src.infrastructure.repositories.bike_repository import BikeRepository


logger = logging.getLogger(__name__)


class InventoryService:
    """Listings, live availability and pricing."""

    def __init__(self, db: Session, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()
        self.bike_repository = BikeRepository(db)

    def create_bike(
        self,
        owner: User,
        name: str,
        quantity: int,
        hourly_rate: Decimal,
        daily_rate: Decimal | None = None,
        bike_type: str = "STANDARD",
        availability_status: AvailabilityStatus = AvailabilityStatus.AVAILABLE,
    ) -> Bike:
        if not owner.is_owner:
            raise PermissionDeniedError("Only owners can list bikes")
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        if hourly_rate <= 0:
            raise ValidationError("Hourly rate must be positive")
        if daily_rate is not None and daily_rate <= 0:
            raise ValidationError("Daily rate must be positive")

        bike = self.bike_repository.create_bike(
            owner_id=owner.id,
            name=name,
            bike_type=bike_type,
            quantity=quantity,
            hourly_rate=to_money(hourly_rate),
            daily_rate=to_money(daily_rate) if daily_rate is not None else None,
            availability_status=availability_status,
        )
        self.db.flush()
        logger.info("Owner %s listed bike %s (quantity=%s)", owner.id, bike.id, quantity)
        return bike

    def get_bike(self, bike_id: str) -> Bike:
        bike = self.bike_repository.get_active(bike_id)
        if not bike:
            raise NotFoundError(f"Bike {bike_id} not found")
        return bike

    def available(self, bike_id: str) -> int:
        bike = self.get_bike(bike_id)
        return self.available_for(bike)

    def available_for(self, bike: Bike) -> int:
        """quantity minus pending/active units minus lost units, clamped to [0, quantity]."""
        held = self.bike_repository.held_quantity(bike.id)
        return max(0, min(bike.quantity, bike.quantity - held))

    def quote(
        self,
        bike_id: str,
        quantity: int,
        start_date: datetime,
        end_date: datetime,
    ) -> RentalQuote:
        bike = self.get_bike(bike_id)
        return self.quote_for(bike, quantity, start_date, end_date)

    def quote_for(
        self,
        bike: Bike,
        quantity: int,
        start_date: datetime,
        end_date: datetime,
    ) -> RentalQuote:
        hours = validate_request(
            quantity,
            start_date,
            end_date,
            max_quantity=self.settings.max_booking_quantity,
            min_hours=self.settings.min_rental_hours,
            max_hours=self.settings.max_rental_hours,
        )
        return quote_rental(
            hourly_rate=to_money(bike.hourly_rate),
            daily_rate=to_money(bike.daily_rate) if bike.daily_rate is not None else None,
            hours=hours,
            quantity=quantity,
            service_fee_rate=self.settings.service_fee_rate,
        )
