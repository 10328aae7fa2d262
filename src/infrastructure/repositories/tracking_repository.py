# src/infrastructure/repositories/tracking_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.infrastructure.db.models import LocationTracking


class TrackingRepository:

    def __init__(self, db: Session):
        self.db = db

    def add_sample(self, **fields) -> LocationTracking:
        sample = LocationTracking(**fields)
        self.db.add(sample)
        return sample

    def last_warning(self, booking_id: str) -> LocationTracking | None:
        stmt = (
            select(LocationTracking)
            .where(LocationTracking.booking_id == booking_id)
            .where(LocationTracking.warning_sent.is_(True))
            .order_by(LocationTracking.recorded_at.desc())
            .limit(1)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_samples(
        self,
        booking_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 500,
    ) -> list[LocationTracking]:
        stmt = select(LocationTracking).where(LocationTracking.booking_id == booking_id)
        if since is not None:
            stmt = stmt.where(LocationTracking.recorded_at >= since)
        if until is not None:
            stmt = stmt.where(LocationTracking.recorded_at <= until)
        stmt = stmt.order_by(LocationTracking.recorded_at).limit(limit)
        return list(self.db.execute(stmt).scalars().all())
