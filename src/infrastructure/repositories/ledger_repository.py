# src/infrastructure/repositories/ledger_repository.py

from decimal import Decimal

from sqlalchemy.orm import Session
from sqlalchemy import select, func, update

from src.infrastructure.db.models import CreditTransaction, Points, PointsHistory, Wallet


class LedgerRepository:
    """Row access for wallet and points balances and their append-only logs."""

    def __init__(self, db: Session):
        self.db = db

    def lock_wallet(self, user_id: str) -> Wallet | None:
        stmt = (
            select(Wallet)
            .where(Wallet.user_id == user_id)
            .with_for_update()
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_wallet(self, user_id: str) -> Wallet | None:
        stmt = select(Wallet).where(Wallet.user_id == user_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def create_wallet(self, user_id: str) -> Wallet:
        wallet = Wallet(user_id=user_id)
        self.db.add(wallet)
        return wallet

    def move_wallet_balance(self, wallet: Wallet, signed_amount: Decimal) -> Decimal | None:
        """
        Adds signed_amount to the stored balance in one conditional UPDATE.

        Returns the new balance, or None when the balance would go negative.
        Concurrent writers queue on the row (or database) write lock, so each
        one applies its delta to the balance committed before it.
        """
        # SQLite keeps Numeric as REAL; rounding keeps the stored value on the cent.
        new_balance = func.round(Wallet.balance + signed_amount, 2)
        stmt = (
            update(Wallet)
            .where(Wallet.id == wallet.id)
            .where(new_balance >= 0)
            .values(balance=new_balance)
            .returning(Wallet.balance)
            .execution_options(synchronize_session=False)
        )
        balance_after = self.db.execute(stmt).scalar_one_or_none()
        self.db.expire(wallet, ["balance", "updated_at"])
        return balance_after

    def find_transaction(self, wallet_id: str, reference_id: str) -> CreditTransaction | None:
        stmt = (
            select(CreditTransaction)
            .where(CreditTransaction.wallet_id == wallet_id)
            .where(CreditTransaction.reference_id == reference_id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def add_transaction(self, **fields) -> CreditTransaction:
        entry = CreditTransaction(**fields)
        self.db.add(entry)
        return entry

    def list_transactions(self, wallet_id: str, limit: int, offset: int) -> list[CreditTransaction]:
        stmt = (
            select(CreditTransaction)
            .where(CreditTransaction.wallet_id == wallet_id)
            .order_by(CreditTransaction.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.db.execute(stmt).scalars().all())

    def sum_transactions(self, wallet_id: str):
        stmt = select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
            CreditTransaction.wallet_id == wallet_id
        )
        return self.db.execute(stmt).scalar_one()

    def lock_points(self, user_id: str) -> Points | None:
        stmt = (
            select(Points)
            .where(Points.user_id == user_id)
            .with_for_update()
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_points(self, user_id: str) -> Points | None:
        stmt = select(Points).where(Points.user_id == user_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def create_points(self, user_id: str) -> Points:
        points = Points(user_id=user_id)
        self.db.add(points)
        return points

    def move_points_balance(self, points: Points, amount: int) -> int | None:
        """Same contract as move_wallet_balance, for loyalty points."""
        stmt = (
            update(Points)
            .where(Points.id == points.id)
            .where(Points.balance + amount >= 0)
            .values(balance=Points.balance + amount)
            .returning(Points.balance)
            .execution_options(synchronize_session=False)
        )
        balance_after = self.db.execute(stmt).scalar_one_or_none()
        self.db.expire(points, ["balance", "updated_at"])
        return balance_after

    def find_points_entry(self, points_id: str, reference_id: str) -> PointsHistory | None:
        stmt = (
            select(PointsHistory)
            .where(PointsHistory.points_id == points_id)
            .where(PointsHistory.reference_id == reference_id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def add_points_entry(self, **fields) -> PointsHistory:
        entry = PointsHistory(**fields)
        self.db.add(entry)
        return entry

    def list_points_history(self, points_id: str, limit: int, offset: int) -> list[PointsHistory]:
        stmt = (
            select(PointsHistory)
            .where(PointsHistory.points_id == points_id)
            .order_by(PointsHistory.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.db.execute(stmt).scalars().all())
