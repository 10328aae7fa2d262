from decimal import Decimal


def _completed_rental(factory, flow, load: str = "1000"):
    owner = factory.owner()
    renter = factory.user()
    admin = factory.admin()
    bike = factory.bike(owner, quantity=3, hourly_rate="100")
    factory.load(renter, load)
    booking = flow.complete(renter, owner, bike)
    return owner, renter, admin, booking


def _report(flow, owner, booking_id, cost="200", expect=201):
    response = flow.client.post(
        f"/bookings/{booking_id}/damages",
        json={"cost": cost, "description": "Bent rear wheel", "photo_url": "https://img.test/wheel.jpg"},
        headers=flow.headers(owner),
    )
    assert response.status_code == expect, response.text
    return response.json()


def test_damage_payment_with_short_wallet_keeps_damage_pending(client, factory, flow):
    # 330 for the rental leaves 150 in the wallet.
    owner, renter, admin, booking = _completed_rental(factory, flow, load="480")
    damage = _report(flow, owner, booking["id"])
    assert damage["status"] == "PENDING"

    response = client.post(
        f"/damages/{damage['id']}/pay",
        json={"method": "WALLET"},
        headers=flow.headers(renter),
    )

    assert response.status_code == 409
    assert flow.balance(renter) == Decimal("150.00")
    detail = client.get(f"/damages/{damage['id']}", headers=flow.headers(renter)).json()
    assert detail["status"] == "PENDING"


def test_wallet_damage_payment_compensates_owner(client, factory, flow):
    owner, renter, admin, booking = _completed_rental(factory, flow)
    owner_before = flow.balance(owner)
    damage = _report(flow, owner, booking["id"])

    response = client.post(
        f"/damages/{damage['id']}/pay",
        json={"method": "WALLET", "amount": "200"},
        headers=flow.headers(renter),
    )

    assert response.json()["outcome"] == "COMPLETED"
    assert flow.balance(renter) == Decimal("470.00")
    assert flow.balance(owner) == owner_before + Decimal("200")
    detail = client.get(f"/damages/{damage['id']}", headers=flow.headers(owner)).json()
    assert detail["status"] == "PAID"
    assert detail["paid_at"] is not None

    again = client.post(f"/damages/{damage['id']}/pay", json={"method": "WALLET"}, headers=flow.headers(renter))
    assert again.status_code == 409


def test_damage_requires_completed_booking(factory, flow):
    owner = factory.owner()
    renter = factory.user()
    bike = factory.bike(owner)
    booking = flow.book(renter, bike)

    _report(flow, owner, booking["id"], expect=409)


def test_damage_cost_must_be_positive(factory, flow):
    owner, renter, admin, booking = _completed_rental(factory, flow)

    _report(flow, owner, booking["id"], cost="0", expect=422)


def test_dispute_resolved_by_admin(client, factory, flow):
    owner, renter, admin, booking = _completed_rental(factory, flow)
    damage = _report(flow, owner, booking["id"])

    missing_reason = client.post(f"/damages/{damage['id']}/dispute", json={}, headers=flow.headers(renter))
    assert missing_reason.status_code == 422

    disputed = client.post(
        f"/damages/{damage['id']}/dispute",
        json={"reason": "The wheel was bent at pickup"},
        headers=flow.headers(renter),
    )
    assert disputed.json()["status"] == "DISPUTED"

    by_owner = client.post(
        f"/damages/{damage['id']}/resolve",
        json={"resolution": "WAIVED"},
        headers=flow.headers(owner),
    )
    assert by_owner.status_code == 403

    resolved = client.post(
        f"/damages/{damage['id']}/resolve",
        json={"resolution": "WAIVED", "notes": "Pickup photos confirm prior damage"},
        headers=flow.headers(admin),
    )
    assert resolved.status_code == 200
    assert resolved.json()["status"] == "WAIVED"
    assert resolved.json()["resolution_notes"] == "Pickup photos confirm prior damage"

    pay = client.post(f"/damages/{damage['id']}/pay", json={"method": "WALLET"}, headers=flow.headers(renter))
    assert pay.status_code == 409


def test_dispute_cancels_the_open_gateway_attempt(client, factory, flow, gateway):
    owner, renter, admin, booking = _completed_rental(factory, flow)
    damage = _report(flow, owner, booking["id"])
    started = client.post(
        f"/damages/{damage['id']}/pay",
        json={"method": "GCASH"},
        headers=flow.headers(renter),
    ).json()
    intent_id = started["payment"]["transaction_reference"]
    owner_before = flow.balance(owner)
    renter_before = flow.balance(renter)

    client.post(
        f"/damages/{damage['id']}/dispute",
        json={"reason": "The wheel was bent at pickup"},
        headers=flow.headers(renter),
    )
    gateway.succeed(intent_id)
    confirmed = client.post("/payments/confirm", json={"intent_id": intent_id}, headers=flow.headers(renter))

    assert confirmed.json()["outcome"] == "FAILED"
    assert confirmed.json()["payment"]["status"] == "CANCELLED"
    detail = client.get(f"/damages/{damage['id']}", headers=flow.headers(renter)).json()
    assert detail["status"] == "DISPUTED"
    assert flow.balance(owner) == owner_before
    # The captured amount goes back to the renter's wallet.
    assert flow.balance(renter) == renter_before + Decimal("200")

def test_owner_waives_pending_damage(client, factory, flow):
    owner, renter, admin, booking = _completed_rental(factory, flow)
    damage = _report(flow, owner, booking["id"])

    assert client.get("/damages", headers=flow.headers(renter)).json()[0]["id"] == damage["id"]

    waived = client.post(f"/damages/{damage['id']}/waive", json={}, headers=flow.headers(owner))

    assert waived.json()["status"] == "WAIVED"
    assert client.get("/damages", headers=flow.headers(renter)).json() == []
    assert len(client.get("/damages", headers=flow.headers(owner)).json()) == 1


def test_damage_flag_creates_a_damage_record(client, factory, flow):
    owner, renter, admin, booking = _completed_rental(factory, flow)
    url = f"/bookings/{booking['id']}/flags"

    no_photo = client.post(
        url,
        json={"reason": "DAMAGE", "description": "Broken chain", "cost": "150"},
        headers=flow.headers(owner),
    )
    assert no_photo.status_code == 422

    flag = client.post(
        url,
        json={
            "reason": "DAMAGE",
            "description": "Broken chain",
            "cost": "150",
            "photo_url": "https://img.test/chain.jpg",
        },
        headers=flow.headers(owner),
    )
    assert flag.status_code == 201
    damage_id = flag.json()["damage_id"]
    damage = client.get(f"/damages/{damage_id}", headers=flow.headers(renter)).json()
    assert Decimal(damage["cost"]) == Decimal("150.00")

    duplicate = client.post(
        url,
        json={"reason": "LATE_RETURN", "description": "Two hours late"},
        headers=flow.headers(owner),
    )
    assert duplicate.status_code == 409

    resolved = client.post(f"/flags/{flag.json()['id']}/resolve", json={}, headers=flow.headers(admin))
    assert resolved.json()["is_resolved"] is True


def test_red_tag_blocks_bookings_until_resolved(client, factory, flow):
    owner = factory.owner()
    renter = factory.user()
    bike = factory.bike(owner)

    tag = client.post(
        "/red-tags",
        json={"renter_id": renter, "reason": "Repeated no-shows"},
        headers=flow.headers(owner),
    )
    assert tag.status_code == 201

    duplicate = client.post(
        "/red-tags",
        json={"renter_id": renter, "reason": "Again"},
        headers=flow.headers(owner),
    )
    assert duplicate.status_code == 409

    status = client.get(f"/renters/{renter}/red-tag", headers=flow.headers(owner)).json()
    assert status["is_red_tagged"] is True
    assert len(status["active_tags"]) == 1
    flow.book(renter, bike, expect=409)

    by_renter = client.post(f"/red-tags/{tag.json()['id']}/resolve", json={}, headers=flow.headers(renter))
    assert by_renter.status_code == 403

    resolved = client.post(
        f"/red-tags/{tag.json()['id']}/resolve",
        json={"notes": "Settled"},
        headers=flow.headers(owner),
    )
    assert resolved.json()["is_active"] is False
    assert client.get(f"/renters/{renter}/red-tag", headers=flow.headers(renter)).json()["is_red_tagged"] is False
    flow.book(renter, bike)


def test_only_owners_red_tag(client, factory, flow):
    renter = factory.user()
    other = factory.user()

    response = client.post(
        "/red-tags",
        json={"renter_id": other, "reason": "Rude"},
        headers=flow.headers(renter),
    )

    assert response.status_code == 403
