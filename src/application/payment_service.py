import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.application.ledger_service import LedgerService
from src.application.notification_service import NotificationService
from src.config import Settings, get_settings
from src.domain.enums import GatewayIntentStatus, PaymentMethod, PaymentTarget, TransactionType
from src.domain.exceptions import (
    ExpiredError,
    GatewayFailedError,
    IdempotencyConflictError,
    IntegrityViolationError,
    InvalidStateTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)
from src.domain.pricing import as_utc, to_money
from src.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    DamageStateMachine,
    DamageStatus,
    PaymentStateMachine,
    PaymentStatus,
)
from src.infrastructure.db.models import BikeDamage, Booking, CheckoutSession, Payment
from src.infrastructure.gateway.razorpay_gateway import PaymentGateway
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.dispute_repository import DisputeRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository


logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    COMPLETED = "COMPLETED"
    PENDING = "PENDING"
    FAILED = "FAILED"


@dataclass(frozen=True)
class PaymentOutcome:
    """
    Result of a payment attempt or a confirmation poll.

    Returned rather than raised so that a FAILED status is persisted
    together with the request transaction.
    """

    kind: OutcomeKind
    payment: Payment
    gateway_status: GatewayIntentStatus | None = None
    checkout_token: str | None = None
    redirect_url: str | None = None
    message: str | None = None
    already_processed: bool = False


class PaymentService:
    """
    Coordinates wallet debits, cash acknowledgements and gateway intents
    for bookings and damage charges.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.payment_repository = PaymentRepository(db)
        self.booking_repository = BookingRepository(db)
        self.dispute_repository = DisputeRepository(db)
        self.ledger = LedgerService(db, self.settings)
        self.notifications = NotificationService(db)

    # -----------------------------
    # Booking payments
    # -----------------------------
    def process_payment(
        self,
        booking_id: str,
        payer_id: str,
        method: PaymentMethod,
        amount: Decimal | None = None,
    ) -> PaymentOutcome:
        booking = self.booking_repository.lock_by_id(booking_id)
        if not booking:
            raise NotFoundError(f"Booking {booking_id} not found")
        if booking.renter_id != payer_id:
            raise PermissionDeniedError("Only the renter can pay for this booking")
        if booking.status != BookingStatus.PENDING:
            raise StateConflictError(
                f"Booking {booking.id} is {booking.status.value}; payments are accepted only while PENDING"
            )
        self._check_amount(amount, booking.total_amount)
        if self.payment_repository.get_completed(booking_id=booking.id):
            raise IdempotencyConflictError(f"Booking {booking.id} is already paid")

        self.cancel_open(booking_id=booking.id, note="Superseded by a new payment attempt")

        if method == PaymentMethod.WALLET:
            payment = self._new_payment(booking.renter_id, method, booking.total_amount, booking_id=booking.id)
            self.ledger.debit(
                booking.renter_id,
                booking.total_amount,
                TransactionType.RENTAL_PAYMENT,
                reference_id=f"payment:{payment.id}",
                description=f"Rental payment for booking {booking.id}",
            )
            self._complete_booking_payment(booking, payment)
            return PaymentOutcome(OutcomeKind.COMPLETED, payment)

        if method == PaymentMethod.CASH:
            payment = self._new_payment(booking.renter_id, method, booking.total_amount, booking_id=booking.id)
            payment.notes = "Cash payment; settlement happens between renter and owner"
            self._complete_booking_payment(booking, payment)
            return PaymentOutcome(OutcomeKind.COMPLETED, payment)

        return self.create_gateway_payment(
            PaymentTarget.BOOKING,
            booking.id,
            booking.renter_id,
            method,
            booking.total_amount,
            description=f"Bike rental booking {booking.id}",
        )

    def _complete_booking_payment(self, booking: Booking, payment: Payment) -> None:
        self._mark_completed(payment)
        self._flush()

        logger.info(
            "Payment %s completed for booking %s via %s",
            payment.id,
            booking.id,
            payment.method.value,
        )
        self.notifications.notify(
            booking.owner_id,
            "Payment received",
            f"Booking {booking.id} has been paid ({payment.method.value}).",
            action_url=f"/bookings/{booking.id}",
            dedupe_key=f"payment:{payment.id}:completed:owner",
        )
        self.activate_if_ready(booking)

    def activate_if_ready(self, booking: Booking) -> bool:
        """PENDING -> ACTIVE once the owner accepted and a payment completed, in either order."""
        if booking.status != BookingStatus.PENDING or booking.owner_confirmed_at is None:
            return False
        if not self.payment_repository.get_completed(booking_id=booking.id):
            return False

        BookingStateMachine.validate_transition(booking.status, BookingStatus.ACTIVE)
        self.booking_repository.update_status(booking, BookingStatus.ACTIVE)
        self.db.flush()

        logger.info("Booking %s transitioned PENDING -> ACTIVE", booking.id)
        self.notifications.notify(
            booking.renter_id,
            "Booking active",
            f"Your booking {booking.id} is confirmed and active.",
            action_url=f"/bookings/{booking.id}",
            dedupe_key=f"booking:{booking.id}:active",
        )
        return True

    def refund_booking(self, booking: Booking, reason: str) -> Payment | None:
        """
        Cancels open attempts and refunds the completed payment, if any.
        The renter gets the full amount back from the platform; the owner
        has not been paid yet, so no earning is clawed back.
        """
        self.cancel_open(booking_id=booking.id, note=f"Booking cancelled: {reason}")
        payment = self.payment_repository.get_completed(booking_id=booking.id)
        if not payment:
            return None
        self._refund(payment, reason)
        return payment

    def release_earning(self, booking: Booking) -> None:
        """
        Credits the owner the base rate once the rental completes.
        The platform keeps the service fee; cash rentals never touch the ledger.
        """
        payment = self.payment_repository.get_completed(booking_id=booking.id)
        if payment is None or payment.method == PaymentMethod.CASH:
            return
        self.ledger.credit(
            booking.owner_id,
            booking.base_rate,
            TransactionType.EARNING,
            reference_id=f"payment:{payment.id}:earning",
            description=f"Earning for booking {booking.id}",
        )

    # -----------------------------
    # Damage payments
    # -----------------------------
    def pay_damage(
        self,
        damage_id: str,
        payer_id: str,
        method: PaymentMethod,
        amount: Decimal | None = None,
    ) -> PaymentOutcome:
        damage = self.dispute_repository.lock_damage(damage_id)
        if not damage:
            raise NotFoundError(f"Damage {damage_id} not found")
        if damage.renter_id != payer_id:
            raise PermissionDeniedError("Only the renter can pay this damage charge")
        if damage.status != DamageStatus.PENDING:
            raise InvalidStateTransitionError(
                from_state=damage.status.value,
                to_state=DamageStatus.PAID.value,
                entity="damage",
            )
        self._check_amount(amount, damage.cost)

        self.cancel_open(damage_id=damage.id, note="Superseded by a new payment attempt")

        if method == PaymentMethod.WALLET:
            payment = self._new_payment(damage.renter_id, method, damage.cost, damage_id=damage.id)
            self.ledger.debit(
                damage.renter_id,
                damage.cost,
                TransactionType.DAMAGE_PAYMENT,
                reference_id=f"payment:{payment.id}",
                description=f"Damage payment {damage.id}",
            )
            self._complete_damage_payment(damage, payment)
            return PaymentOutcome(OutcomeKind.COMPLETED, payment)

        if method == PaymentMethod.CASH:
            payment = self._new_payment(damage.renter_id, method, damage.cost, damage_id=damage.id)
            payment.notes = "Cash damage payment; settlement happens between renter and owner"
            self._complete_damage_payment(damage, payment)
            return PaymentOutcome(OutcomeKind.COMPLETED, payment)

        return self.create_gateway_payment(
            PaymentTarget.DAMAGE,
            damage.id,
            damage.renter_id,
            method,
            damage.cost,
            description=f"Damage charge {damage.id}",
        )

    def _complete_damage_payment(self, damage: BikeDamage, payment: Payment) -> None:
        DamageStateMachine.validate_transition(damage.status, DamageStatus.PAID)
        self._mark_completed(payment)
        if payment.method != PaymentMethod.CASH:
            self.ledger.credit(
                damage.owner_id,
                damage.cost,
                TransactionType.DAMAGE_COMPENSATION,
                reference_id=f"payment:{payment.id}:compensation",
                description=f"Compensation for damage {damage.id}",
            )
        damage.status = DamageStatus.PAID
        damage.paid_at = datetime.now(timezone.utc)
        self._flush()

        logger.info("Damage %s paid by payment %s", damage.id, payment.id)
        self.notifications.notify(
            damage.owner_id,
            "Damage charge paid",
            f"The renter paid damage charge {damage.id}.",
            action_url=f"/damages/{damage.id}",
            dedupe_key=f"damage:{damage.id}:paid",
        )

    # -----------------------------
    # Gateway
    # -----------------------------
    def create_gateway_payment(
        self,
        target_type: PaymentTarget,
        target_id: str,
        payer_id: str,
        method: PaymentMethod,
        amount: Decimal,
        description: str,
    ) -> PaymentOutcome:
        if not method.is_gateway:
            raise ValidationError(f"{method.value} is not a gateway payment method")
        if self.gateway is None:
            raise GatewayFailedError("No payment gateway configured")

        payment = self._new_payment(
            payer_id,
            method,
            amount,
            booking_id=target_id if target_type == PaymentTarget.BOOKING else None,
            damage_id=target_id if target_type == PaymentTarget.DAMAGE else None,
        )
        result = self.gateway.create_payment_intent(
            amount=to_money(amount),
            currency=self.settings.currency,
            description=description,
            metadata={
                "payment_id": payment.id,
                "target_type": target_type.value,
                "target_id": target_id,
                "method": method.value,
            },
        )
        if not result.success or not result.intent_id:
            raise GatewayFailedError(result.error_message or "Gateway declined the payment intent")

        payment.transaction_reference = result.intent_id
        token = secrets.token_urlsafe(24)
        self.payment_repository.create_checkout_session(
            token=token,
            payer_id=payer_id,
            target_type=target_type,
            target_id=target_id,
            payment_id=payment.id,
            intent_id=result.intent_id,
            amount=to_money(amount),
            currency=self.settings.currency,
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=self.settings.draft_ttl_minutes),
        )
        self._flush()

        logger.info(
            "Created %s intent %s for %s %s (payment %s)",
            method.value,
            result.intent_id,
            target_type.value.lower(),
            target_id,
            payment.id,
        )
        return PaymentOutcome(
            OutcomeKind.PENDING,
            payment,
            gateway_status=result.status,
            checkout_token=token,
            redirect_url=f"{self.settings.app_base_url}/checkout/{token}",
        )

    def confirm_gateway_payment(
        self,
        intent_id: str,
        payment_method_id: str | None = None,
        signature: str | None = None,
        caller_id: str | None = None,
    ) -> PaymentOutcome:
        """
        Idempotent: confirming an already completed payment is a no-op success.
        Concurrent callers serialise on the payment row lock where the store
        has one, and on the completion claim in _settle everywhere else.
        """
        if self.gateway is None:
            raise GatewayFailedError("No payment gateway configured")

        payment = self.payment_repository.lock_by_intent(intent_id)
        if not payment:
            raise NotFoundError(f"No payment for intent {intent_id}")
        if caller_id is not None and caller_id != payment.payer_id:
            raise PermissionDeniedError("Only the payer can confirm this payment")

        settled = self._settled_outcome(payment)
        if settled is not None:
            return settled

        if payment_method_id:
            attached = self.gateway.attach_payment_method(intent_id, payment_method_id, signature)
            if not attached.success:
                return self._fail(payment, attached.error_message or "Payment method rejected")
            payment.gateway_payment_id = payment_method_id

        result = self.gateway.get_intent_status(intent_id)
        if result.status == GatewayIntentStatus.SUCCEEDED:
            if result.payment_method_id:
                payment.gateway_payment_id = result.payment_method_id
            if not self._settle(payment):
                return self._settled_outcome(payment)
            return PaymentOutcome(OutcomeKind.COMPLETED, payment, gateway_status=result.status)

        if result.status == GatewayIntentStatus.PAYMENT_FAILED:
            return self._fail(payment, result.error_message or "Gateway reported payment_failed")

        logger.info("Intent %s still %s; caller may poll again", intent_id, result.status.value)
        return PaymentOutcome(
            OutcomeKind.PENDING,
            payment,
            gateway_status=result.status,
            message=f"Payment is {result.status.value}",
        )

    def _settled_outcome(self, payment: Payment) -> PaymentOutcome | None:
        if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            return PaymentOutcome(
                OutcomeKind.COMPLETED,
                payment,
                gateway_status=GatewayIntentStatus.SUCCEEDED,
                already_processed=True,
            )
        if payment.status == PaymentStatus.CANCELLED:
            return self._confirm_superseded(payment)
        return None

    def _settle(self, payment: Payment) -> bool:
        """
        Books a captured gateway payment against its target.
        Returns False when another confirmation settled it first.
        """
        try:
            claimed = self.payment_repository.claim_completion(payment.id)
        except IntegrityError as exc:
            raise IntegrityViolationError(str(exc.orig)) from exc
        if not claimed:
            logger.info("Payment %s was settled by a concurrent confirmation", payment.id)
            self.db.refresh(payment)
            return False

        if payment.booking_id is not None:
            booking = self.booking_repository.lock_by_id(payment.booking_id)
            if booking.status == BookingStatus.PENDING:
                self._complete_booking_payment(booking, payment)
                return True
        else:
            damage = self.dispute_repository.lock_damage(payment.damage_id)
            # Disputed claims are settled by an admin, never by a late capture.
            if damage.status == DamageStatus.PENDING:
                self._complete_damage_payment(damage, payment)
                return True

        # The target moved on while the payer was at the gateway; the
        # captured money goes back to the payer's wallet.
        logger.warning("Payment %s settled after its target closed; refunding to wallet", payment.id)
        self._mark_completed(payment)
        self._flush()
        self._refund(payment, "Target no longer payable")
        return True

    def _confirm_superseded(self, payment: Payment) -> PaymentOutcome:
        logger.warning(
            "Confirmation for superseded payment %s (intent %s)",
            payment.id,
            payment.transaction_reference,
        )
        result = self.gateway.get_intent_status(payment.transaction_reference)
        if result.status != GatewayIntentStatus.SUCCEEDED:
            raise StateConflictError(f"Payment {payment.id} was superseded by another attempt")

        # Captured after it was superseded: the money goes back to the wallet.
        if payment.refund_date is None:
            self.ledger.credit(
                payment.payer_id,
                payment.amount,
                TransactionType.REFUND,
                reference_id=f"payment:{payment.id}:refund",
                description="Late capture of a superseded payment",
            )
            payment.refund_amount = payment.amount
            payment.refund_date = datetime.now(timezone.utc)
            payment.gateway_payment_id = result.payment_method_id or payment.gateway_payment_id
            self.db.flush()
        return PaymentOutcome(
            OutcomeKind.FAILED,
            payment,
            gateway_status=result.status,
            message="Payment attempt was superseded; captured funds were returned to the wallet",
            already_processed=True,
        )

    def _fail(self, payment: Payment, message: str) -> PaymentOutcome:
        if payment.status != PaymentStatus.FAILED:
            PaymentStateMachine.validate_transition(payment.status, PaymentStatus.FAILED)
            payment.status = PaymentStatus.FAILED
        payment.notes = message
        self.db.flush()

        logger.warning("Payment %s failed: %s", payment.id, message)
        self.notifications.notify(
            payment.payer_id,
            "Payment failed",
            "Your payment could not be completed. Please try again or choose another method.",
            dedupe_key=f"payment:{payment.id}:failed",
        )
        return PaymentOutcome(OutcomeKind.FAILED, payment, gateway_status=GatewayIntentStatus.PAYMENT_FAILED, message=message)

    def handle_webhook(self, provider: str, event: dict, payload_hash: str) -> tuple[bool, PaymentOutcome | None]:
        """Returns (duplicate, outcome). Duplicate deliveries are acknowledged without reprocessing."""
        entity = event.get("payload", {}).get("payment", {}).get("entity", {})
        gateway_payment_id = entity.get("id")
        intent_id = entity.get("order_id")
        if not gateway_payment_id or not intent_id:
            raise ValidationError("Webhook payload carries no payment entity")

        if self.payment_repository.get_webhook_event(provider, gateway_payment_id):
            logger.info("Duplicate %s webhook for payment %s", provider, gateway_payment_id)
            return True, None

        self.payment_repository.add_webhook_event(
            provider=provider,
            payment_id=gateway_payment_id,
            intent_id=intent_id,
            event_type=str(event.get("event", "unknown")),
            payload_hash=payload_hash,
            status="PROCESSED",
        )
        self._flush()

        if self.payment_repository.lock_by_intent(intent_id) is None:
            logger.warning("Webhook for unknown intent %s ignored", intent_id)
            return False, None
        return False, self.confirm_gateway_payment(intent_id)

    def resolve_checkout(self, token: str) -> tuple[CheckoutSession, Payment]:
        session = self.payment_repository.get_checkout_session(token)
        if not session:
            raise NotFoundError("Checkout session not found")
        if as_utc(session.expires_at) <= datetime.now(timezone.utc):
            raise ExpiredError("Checkout session has expired")
        payment = self.payment_repository.get_by_id(session.payment_id)
        return session, payment

    # -----------------------------
    # Shared helpers
    # -----------------------------
    def _new_payment(
        self,
        payer_id: str,
        method: PaymentMethod,
        amount: Decimal,
        booking_id: str | None = None,
        damage_id: str | None = None,
    ) -> Payment:
        payment = self.payment_repository.create_payment(
            booking_id=booking_id,
            damage_id=damage_id,
            payer_id=payer_id,
            method=method,
            amount=to_money(amount),
            status=PaymentStatus.PENDING,
        )
        self.db.flush()
        return payment

    def _mark_completed(self, payment: Payment) -> None:
        PaymentStateMachine.validate_transition(payment.status, PaymentStatus.COMPLETED)
        payment.status = PaymentStatus.COMPLETED
        payment.paid_at = datetime.now(timezone.utc)

    def cancel_open(self, booking_id: str | None = None, damage_id: str | None = None, note: str = "") -> None:
        for payment in self.payment_repository.lock_open(booking_id=booking_id, damage_id=damage_id):
            PaymentStateMachine.validate_transition(payment.status, PaymentStatus.CANCELLED)
            payment.status = PaymentStatus.CANCELLED
            payment.notes = note
            logger.info("Payment %s cancelled: %s", payment.id, note)
        self.db.flush()

    def _refund(self, payment: Payment, reason: str) -> None:
        PaymentStateMachine.validate_transition(payment.status, PaymentStatus.REFUNDED)

        if payment.method == PaymentMethod.CASH:
            payment.notes = f"Cash refund settled out-of-band: {reason}"
        else:
            self.ledger.credit(
                payment.payer_id,
                payment.amount,
                TransactionType.REFUND,
                reference_id=f"payment:{payment.id}:refund",
                description=reason,
            )

        payment.status = PaymentStatus.REFUNDED
        payment.refund_amount = payment.amount
        payment.refund_date = datetime.now(timezone.utc)
        self.db.flush()

        logger.info("Payment %s refunded (%s): %s", payment.id, payment.amount, reason)
        self.notifications.notify(
            payment.payer_id,
            "Payment refunded",
            f"{payment.amount} has been refunded: {reason}",
            dedupe_key=f"payment:{payment.id}:refunded",
        )

    @staticmethod
    def _check_amount(amount: Decimal | None, expected: Decimal) -> None:
        if amount is not None and to_money(amount) != to_money(expected):
            raise ValidationError(f"Amount {amount} does not match the amount due {to_money(expected)}")

    def _flush(self) -> None:
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise IntegrityViolationError(str(exc.orig)) from exc
