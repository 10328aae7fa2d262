# tests/unit/test_pricing.py

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from src.domain.exceptions import ValidationError
from src.domain.geo import haversine_km
from src.domain.pricing import as_utc, quote_rental, rental_hours, to_money, validate_request


START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
FEE_RATE = Decimal("0.10")


def _validate(quantity, hours, **overrides):
    limits = {"max_quantity": 10, "min_hours": 1, "max_hours": 168}
    limits.update(overrides)
    return validate_request(quantity, START, START + timedelta(hours=hours), **limits)


def test_hourly_quote_for_two_units():
    quote = quote_rental(Decimal("100"), None, Decimal("3"), 2, FEE_RATE)

    assert quote.base_rate == Decimal("600.00")
    assert quote.service_fee == Decimal("60.00")
    assert quote.total_amount == Decimal("660.00")


def test_total_is_base_plus_rounded_fee():
    quote = quote_rental(Decimal("33.33"), None, Decimal("1.5"), 1, FEE_RATE)

    assert quote.base_rate == Decimal("50.00")
    assert quote.service_fee == to_money(quote.base_rate * FEE_RATE)
    assert quote.total_amount == quote.base_rate + quote.service_fee


def test_fee_rounds_half_up():
    quote = quote_rental(Decimal("0.45"), None, Decimal("1"), 1, FEE_RATE)

    assert quote.service_fee == Decimal("0.05")


def test_daily_rate_applies_to_whole_days():
    quote = quote_rental(Decimal("50"), Decimal("400"), Decimal("27"), 1, FEE_RATE)

    # one day at the daily rate plus three hours at the hourly rate
    assert quote.base_rate == Decimal("550.00")


def test_daily_rate_ignored_below_a_day():
    quote = quote_rental(Decimal("50"), Decimal("400"), Decimal("23"), 1, FEE_RATE)

    assert quote.base_rate == Decimal("1150.00")


def test_rental_hours_handles_partial_hours():
    assert rental_hours(START, START + timedelta(minutes=90)) == Decimal("1.50")


def test_naive_timestamps_are_treated_as_utc():
    naive = datetime(2026, 3, 1, 9, 0)

    assert as_utc(naive) == START
    assert rental_hours(naive, START + timedelta(hours=2)) == Decimal("2.00")


def test_validate_request_returns_hours():
    assert _validate(2, 3) == Decimal("3.00")


@pytest.mark.parametrize("quantity", [0, -1, 11])
def test_quantity_out_of_range(quantity):
    with pytest.raises(ValidationError):
        _validate(quantity, 3)


def test_end_must_follow_start():
    with pytest.raises(ValidationError):
        validate_request(1, START, START, max_quantity=10, min_hours=1, max_hours=168)


@pytest.mark.parametrize("hours", [0.5, 169])
def test_duration_bounds(hours):
    with pytest.raises(ValidationError):
        _validate(1, hours)


def test_haversine_known_distance():
    # Makati CBD to Quezon City Memorial Circle, roughly 11 km apart.
    distance = haversine_km(14.5547, 121.0244, 14.6516, 121.0493)

    assert 10.5 < distance < 11.5
    assert haversine_km(14.5547, 121.0244, 14.5547, 121.0244) == 0
