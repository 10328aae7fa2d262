# src/infrastructure/repositories/dispute_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.infrastructure.db.models import BikeDamage, RenterFlag, RenterRedTag
from src.domain.state_machine import DamageStatus


class DisputeRepository:

    def __init__(self, db: Session):
        self.db = db

    def create_damage(self, **fields) -> BikeDamage:
        damage = BikeDamage(status=DamageStatus.PENDING, **fields)
        self.db.add(damage)
        return damage

    def get_damage(self, damage_id: str) -> BikeDamage | None:
        stmt = select(BikeDamage).where(BikeDamage.id == damage_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_damage(self, damage_id: str) -> BikeDamage | None:
        stmt = (
            select(BikeDamage)
            .where(BikeDamage.id == damage_id)
            .with_for_update()
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_damages_for_renter(self, renter_id: str, status: DamageStatus | None = None) -> list[BikeDamage]:
        stmt = select(BikeDamage).where(BikeDamage.renter_id == renter_id)
        if status is not None:
            stmt = stmt.where(BikeDamage.status == status)
        return list(self.db.execute(stmt.order_by(BikeDamage.created_at.desc())).scalars().all())

    def list_damages_for_owner(self, owner_id: str) -> list[BikeDamage]:
        stmt = (
            select(BikeDamage)
            .where(BikeDamage.owner_id == owner_id)
            .order_by(BikeDamage.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_flag(self, flag_id: str) -> RenterFlag | None:
        stmt = select(RenterFlag).where(RenterFlag.id == flag_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_flag_for_booking(self, booking_id: str, owner_id: str) -> RenterFlag | None:
        stmt = (
            select(RenterFlag)
            .where(RenterFlag.booking_id == booking_id)
            .where(RenterFlag.owner_id == owner_id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def create_flag(self, **fields) -> RenterFlag:
        flag = RenterFlag(**fields)
        self.db.add(flag)
        return flag

    def get_red_tag(self, tag_id: str) -> RenterRedTag | None:
        stmt = select(RenterRedTag).where(RenterRedTag.id == tag_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_active_red_tag(self, renter_id: str, owner_id: str) -> RenterRedTag | None:
        stmt = (
            select(RenterRedTag)
            .where(RenterRedTag.renter_id == renter_id)
            .where(RenterRedTag.owner_id == owner_id)
            .where(RenterRedTag.is_active.is_(True))
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_active_red_tags(self, renter_id: str) -> list[RenterRedTag]:
        # Platform-wide: tags from every owner count.
        stmt = (
            select(RenterRedTag)
            .where(RenterRedTag.renter_id == renter_id)
            .where(RenterRedTag.is_active.is_(True))
            .order_by(RenterRedTag.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def create_red_tag(self, **fields) -> RenterRedTag:
        tag = RenterRedTag(is_active=True, **fields)
        self.db.add(tag)
        return tag
