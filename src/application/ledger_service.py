import logging
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.config import Settings, get_settings
from src.domain.enums import TransactionType
from src.domain.exceptions import (
    InsufficientFundsError,
    IntegrityViolationError,
    NotFoundError,
    ValidationError,
)
from src.domain.pricing import to_money
from src.infrastructure.db.models import CreditTransaction, Points, PointsHistory, Wallet
from src.infrastructure.repositories.ledger_repository import LedgerRepository


logger = logging.getLogger(__name__)


class LedgerService:
    """
    Wallet and points balances with their append-only logs.

    Every mutation moves the stored balance with one conditional UPDATE,
    so concurrent writers queue behind each other instead of overwriting a
    stale read, and appends the log row in the same flush. A reference id
    makes a mutation idempotent per wallet: replaying it returns the
    existing entry.
    """

    def __init__(self, db: Session, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()
        self.repository = LedgerRepository(db)

    # -----------------------------
    # Wallet
    # -----------------------------
    def open_accounts(self, user_id: str) -> None:
        """Creates the wallet and points rows; called once at registration."""
        self.repository.create_wallet(user_id)
        self.repository.create_points(user_id)
        self.db.flush()

    def _locked_wallet(self, user_id: str) -> Wallet:
        wallet = self.repository.lock_wallet(user_id)
        if wallet is None:
            raise NotFoundError(f"No wallet for user {user_id}")
        return wallet

    def balance(self, user_id: str) -> Decimal:
        wallet = self.repository.get_wallet(user_id)
        return to_money(wallet.balance) if wallet else Decimal("0.00")

    def credit(
        self,
        user_id: str,
        amount: Decimal,
        transaction_type: TransactionType,
        reference_id: str | None = None,
        description: str | None = None,
    ) -> CreditTransaction:
        return self._apply(user_id, to_money(amount), transaction_type, reference_id, description)

    def debit(
        self,
        user_id: str,
        amount: Decimal,
        transaction_type: TransactionType,
        reference_id: str | None = None,
        description: str | None = None,
    ) -> CreditTransaction:
        """Raises InsufficientFundsError without writing anything if the balance is short."""
        return self._apply(user_id, -to_money(amount), transaction_type, reference_id, description)

    def _apply(
        self,
        user_id: str,
        signed_amount: Decimal,
        transaction_type: TransactionType,
        reference_id: str | None,
        description: str | None,
    ) -> CreditTransaction:
        if signed_amount == 0:
            raise ValidationError("Ledger amount must be non-zero")

        wallet = self._locked_wallet(user_id)

        if reference_id is not None:
            existing = self.repository.find_transaction(wallet.id, reference_id)
            if existing:
                logger.info(
                    "Ledger entry %s already applied to wallet %s",
                    reference_id,
                    wallet.id,
                )
                return existing

        balance_after = self.repository.move_wallet_balance(wallet, signed_amount)
        if balance_after is None:
            balance = to_money(wallet.balance)
            logger.warning(
                "Declined %s of %s for user %s: balance %s",
                transaction_type.value,
                -signed_amount,
                user_id,
                balance,
            )
            raise InsufficientFundsError(balance=balance, amount=-signed_amount)

        balance_after = to_money(balance_after) or Decimal("0.00")
        balance_before = balance_after - signed_amount
        entry = self.repository.add_transaction(
            wallet_id=wallet.id,
            amount=signed_amount,
            balance_before=balance_before,
            balance_after=balance_after,
            transaction_type=transaction_type,
            reference_id=reference_id,
            description=description,
        )
        try:
            self.db.flush()
        except IntegrityError as exc:
            # A concurrent writer recorded the same reference id first.
            raise IntegrityViolationError(str(exc.orig)) from exc

        logger.info(
            "Wallet %s %s %s -> %s (%s)",
            wallet.id,
            transaction_type.value,
            balance_before,
            balance_after,
            reference_id,
        )
        return entry

    def history(self, user_id: str, limit: int = 50, offset: int = 0) -> tuple[Decimal, list[CreditTransaction]]:
        wallet = self.repository.get_wallet(user_id)
        if wallet is None:
            return Decimal("0.00"), []
        return to_money(wallet.balance), self.repository.list_transactions(wallet.id, limit, offset)

    # -----------------------------
    # Points
    # -----------------------------
    def _locked_points(self, user_id: str) -> Points:
        points = self.repository.lock_points(user_id)
        if points is None:
            raise NotFoundError(f"No points account for user {user_id}")
        return points

    def points_balance(self, user_id: str) -> int:
        points = self.repository.get_points(user_id)
        return points.balance if points else 0

    def adjust_points(
        self,
        user_id: str,
        amount: int,
        reason: str,
        reference_id: str | None = None,
    ) -> PointsHistory:
        if amount == 0:
            raise ValidationError("Points adjustment must be non-zero")

        points = self._locked_points(user_id)
        if reference_id is not None:
            existing = self.repository.find_points_entry(points.id, reference_id)
            if existing:
                return existing

        balance_after = self.repository.move_points_balance(points, amount)
        if balance_after is None:
            raise InsufficientFundsError(balance=points.balance, amount=-amount)
        balance_before = balance_after - amount
        entry = self.repository.add_points_entry(
            points_id=points.id,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            reason=reason,
            reference_id=reference_id,
        )
        self.db.flush()
        logger.info("Points for user %s %s -> %s (%s)", user_id, balance_before, balance_after, reason)
        return entry

    def redeem_points(self, user_id: str, points: int) -> CreditTransaction:
        """Converts points into wallet credit at the configured rate."""
        if points <= 0:
            raise ValidationError("Points to redeem must be positive")

        value = to_money(Decimal(points) * self.settings.points_conversion_rate)
        if value <= 0:
            raise ValidationError(f"{points} point(s) are worth less than one cent")

        entry = self.adjust_points(user_id, -points, reason="REDEMPTION")
        return self.credit(
            user_id,
            value,
            TransactionType.POINTS_REDEMPTION,
            reference_id=f"points:{entry.id}",
            description=f"Redeemed {points} point(s)",
        )

    def points_history(self, user_id: str, limit: int = 50, offset: int = 0) -> tuple[int, list[PointsHistory]]:
        points = self.repository.get_points(user_id)
        if points is None:
            return 0, []
        return points.balance, self.repository.list_points_history(points.id, limit, offset)
