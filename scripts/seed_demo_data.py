from decimal import Decimal

from sqlalchemy import select

from src.application.inventory_service import InventoryService
from src.application.ledger_service import LedgerService
from src.application.user_service import UserService
from src.domain.enums import TransactionType
from src.infrastructure.db.models import Bike, User
from src.infrastructure.db.session import get_db_session


def _user(db, **fields) -> User:
    existing = db.execute(
        select(User).where(User.email == fields["email"])
    ).scalar_one_or_none()
    if existing:
        return existing
    return UserService(db).register(**fields)


def seed_users(db) -> dict[str, User]:
    owner = _user(
        db,
        name="Makati Bike Hub",
        email="owner@bikehub.test",
        phone="+639170000001",
        is_renter=False,
        is_owner=True,
        store_latitude=14.5547,
        store_longitude=121.0244,
        geofence_radius_km=Decimal("8"),
    )
    renter = _user(
        db,
        name="Juan Dela Cruz",
        email="juan@renters.test",
        phone="+639170000002",
    )
    renter.phone_verified = True
    admin = _user(
        db,
        name="Ops Admin",
        email="admin@bikehub.test",
        is_renter=False,
        is_admin=True,
    )
    return {"owner": owner, "renter": renter, "admin": admin}


def seed_bikes(db, owner: User) -> None:
    bike_defs = [
        {"name": "City Cruiser", "bike_type": "STANDARD", "quantity": 6, "hourly_rate": Decimal("50"), "daily_rate": Decimal("400")},
        {"name": "Trail Runner", "bike_type": "MOUNTAIN", "quantity": 3, "hourly_rate": Decimal("90"), "daily_rate": Decimal("700")},
        {"name": "Volt E-Bike", "bike_type": "ELECTRIC", "quantity": 2, "hourly_rate": Decimal("150"), "daily_rate": None},
    ]

    inventory = InventoryService(db)
    for item in bike_defs:
        existing = db.execute(
            select(Bike)
            .where(Bike.owner_id == owner.id)
            .where(Bike.name == item["name"])
        ).scalar_one_or_none()
        if existing:
            existing.quantity = item["quantity"]
            existing.hourly_rate = item["hourly_rate"]
            existing.daily_rate = item["daily_rate"]
            continue
        inventory.create_bike(owner, **item)


def main() -> None:
    with get_db_session() as db:
        users = seed_users(db)
        seed_bikes(db, users["owner"])
        LedgerService(db).credit(
            users["renter"].id,
            Decimal("2000"),
            TransactionType.LOAD,
            reference_id="load:seed",
            description="Demo wallet load",
        )
        db.commit()
        print("Seed complete: owner, renter and admin users, three bike listings, renter wallet loaded.")
        for role, user in users.items():
            print(f"  {role}: X-User-Id {user.id}")


if __name__ == "__main__":
    main()
