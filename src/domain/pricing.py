# src/domain/pricing.py

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from src.domain.exceptions import ValidationError

CENT = Decimal("0.01")
HOURS_PER_DAY = Decimal(24)


def to_money(value) -> Decimal:
    """Quantise to cents, half-up."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def as_utc(value: datetime) -> datetime:
    # Naive timestamps are treated as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class RentalQuote:
    hours: Decimal
    base_rate: Decimal
    service_fee: Decimal
    total_amount: Decimal


def rental_hours(start_date: datetime, end_date: datetime) -> Decimal:
    seconds = Decimal(str((as_utc(end_date) - as_utc(start_date)).total_seconds()))
    return (seconds / Decimal(3600)).quantize(CENT, rounding=ROUND_HALF_UP)


def validate_request(
    quantity: int,
    start_date: datetime,
    end_date: datetime,
    *,
    max_quantity: int,
    min_hours: int,
    max_hours: int,
) -> Decimal:
    """Checks quantity and duration bounds and returns the rental hours."""
    if quantity < 1 or quantity > max_quantity:
        raise ValidationError(
            f"Quantity must be between 1 and {max_quantity}, got {quantity}"
        )
    if as_utc(end_date) <= as_utc(start_date):
        raise ValidationError("End date must be after start date")

    hours = rental_hours(start_date, end_date)
    if hours < min_hours or hours > max_hours:
        raise ValidationError(
            f"Rental duration must be between {min_hours} and {max_hours} hours, got {hours}"
        )
    return hours


def quote_rental(
    hourly_rate: Decimal,
    daily_rate: Decimal | None,
    hours: Decimal,
    quantity: int,
    service_fee_rate: Decimal,
) -> RentalQuote:
    """
    Prices a rental window.

    Rentals of a day or more use the daily rate for whole days and the
    hourly rate for the remainder when the listing has a daily rate.
    """
    if daily_rate is not None and hours >= HOURS_PER_DAY:
        full_days = int(hours // HOURS_PER_DAY)
        remaining_hours = hours - HOURS_PER_DAY * full_days
        unit_cost = daily_rate * full_days + hourly_rate * remaining_hours
    else:
        unit_cost = hourly_rate * hours

    base_rate = to_money(unit_cost * quantity)
    service_fee = to_money(base_rate * service_fee_rate)
    return RentalQuote(
        hours=hours,
        base_rate=base_rate,
        service_fee=service_fee,
        total_amount=base_rate + service_fee,
    )
