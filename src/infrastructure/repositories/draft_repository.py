# src/infrastructure/repositories/draft_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.infrastructure.db.models import BookingDraft


class DraftRepository:

    def __init__(self, db: Session):
        self.db = db

    def create_draft(self, **fields) -> BookingDraft:
        draft = BookingDraft(**fields)
        self.db.add(draft)
        return draft

    def lock_by_token(self, token: str) -> BookingDraft | None:
        stmt = (
            select(BookingDraft)
            .where(BookingDraft.token == token)
            .with_for_update()
        )
        return self.db.execute(stmt).scalar_one_or_none()
