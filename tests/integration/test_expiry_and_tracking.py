from datetime import datetime, timedelta, timezone
from decimal import Decimal

from src.application.booking_service import BookingService


def test_sweep_cancels_only_stale_unpaid_bookings(client, factory, flow, session_factory):
    owner = factory.owner()
    renter = factory.user()
    admin = factory.admin()
    bike = factory.bike(owner, quantity=5)
    factory.load(renter, "1000")

    unpaid = flow.book(renter, bike)
    paid = flow.book(renter, bike)
    flow.pay(renter, paid["id"])
    at_gateway = flow.book(renter, bike)
    flow.pay(renter, at_gateway["id"], method="GCASH")

    # Nothing is old enough yet.
    fresh = client.post("/admin/bookings/expire-unpaid", headers=flow.headers(admin))
    assert fresh.json() == {"cancelled_booking_ids": []}
    assert client.post("/admin/bookings/expire-unpaid", headers=flow.headers(owner)).status_code == 403

    with session_factory() as db:
        expired = BookingService(db).expire_unpaid(now=datetime.now(timezone.utc) + timedelta(minutes=30))
        db.commit()
        expired_ids = {item.id for item in expired}

    assert expired_ids == {unpaid["id"], at_gateway["id"]}
    gateway_detail = client.get(f"/bookings/{at_gateway['id']}", headers=flow.headers(renter)).json()
    assert gateway_detail["status"] == "CANCELLED"
    assert gateway_detail["payments"][0]["status"] == "CANCELLED"
    paid_detail = client.get(f"/bookings/{paid['id']}", headers=flow.headers(renter)).json()
    assert paid_detail["status"] == "PENDING"
    assert flow.available(bike) == 4


def _tracked_booking(factory, flow):
    owner = factory.owner(
        store_latitude=14.5547,
        store_longitude=121.0244,
        geofence_radius_km=Decimal("5"),
    )
    renter = factory.user()
    bike = factory.bike(owner)
    factory.load(renter, "1000")
    booking = flow.activate(renter, owner, bike)
    return owner, renter, booking


def _post_location(flow, user_id, booking_id, latitude, longitude, recorded_at=None, expect=201):
    payload = {"latitude": latitude, "longitude": longitude}
    if recorded_at:
        payload["recorded_at"] = recorded_at.isoformat()
    response = flow.client.post(
        f"/bookings/{booking_id}/locations",
        json=payload,
        headers=flow.headers(user_id),
    )
    assert response.status_code == expect, response.text
    return response.json()


def test_geofence_tagging_and_warning_throttle(client, factory, flow):
    owner, renter, booking = _tracked_booking(factory, flow)
    now = datetime.now(timezone.utc).replace(microsecond=0)

    inside = _post_location(flow, renter, booking["id"], 14.5600, 121.0300, now)
    assert inside["is_within_geofence"] is True
    assert inside["warning_sent"] is False
    assert inside["distance_from_store_km"] < 5

    # Quezon City, about 11 km from the store
    outside = _post_location(flow, renter, booking["id"], 14.6516, 121.0493, now + timedelta(minutes=1))
    assert outside["is_within_geofence"] is False
    assert outside["warning_sent"] is True

    repeat = _post_location(flow, renter, booking["id"], 14.6516, 121.0493, now + timedelta(minutes=5))
    assert repeat["warning_sent"] is False

    later = _post_location(flow, renter, booking["id"], 14.6516, 121.0493, now + timedelta(minutes=20))
    assert later["warning_sent"] is True

    samples = client.get(f"/bookings/{booking['id']}/locations", headers=flow.headers(owner)).json()
    assert len(samples) == 4

    window = client.get(
        f"/bookings/{booking['id']}/locations",
        params={"since": (now + timedelta(minutes=2)).isoformat(), "until": (now + timedelta(minutes=10)).isoformat()},
        headers=flow.headers(renter),
    ).json()
    assert [item["id"] for item in window] == [repeat["id"]]

    warnings = [
        item for item in client.get("/outbox/events", params={"limit": 200}).json()
        if "Outside rental area" in item["payload"]
    ]
    assert len(warnings) == 2


def test_only_renter_of_active_booking_reports_location(factory, flow):
    owner, renter, booking = _tracked_booking(factory, flow)

    _post_location(flow, owner, booking["id"], 14.55, 121.02, expect=403)
    _post_location(flow, renter, booking["id"], 95, 121.02, expect=422)

    flow.act(owner, booking["id"], "return")
    _post_location(flow, renter, booking["id"], 14.55, 121.02, expect=409)


def test_owner_without_store_location_skips_geofence(factory, flow):
    owner = factory.owner()
    renter = factory.user()
    bike = factory.bike(owner)
    factory.load(renter, "1000")
    booking = flow.activate(renter, owner, bike)

    sample = _post_location(flow, renter, booking["id"], 14.6516, 121.0493)

    assert sample["is_within_geofence"] is None
    assert sample["distance_from_store_km"] is None
    assert sample["warning_sent"] is False
