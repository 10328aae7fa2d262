import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from src.application.notification_service import NotificationService
from src.application.payment_service import PaymentService
from src.domain.enums import FlagReason
from src.domain.exceptions import (
    NotFoundError,
    NotOwnerError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)
from src.domain.pricing import to_money
from src.domain.state_machine import BookingStatus, DamageStateMachine, DamageStatus
from src.infrastructure.db.models import BikeDamage, Booking, RenterFlag, RenterRedTag, User
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.dispute_repository import DisputeRepository
from src.infrastructure.repositories.user_repository import UserRepository


logger = logging.getLogger(__name__)


class DisputeService:
    """
    Damage claims, renter flags and red tags.

    Damage charges are settled through the payment orchestrator; this
    service owns the claim lifecycle and the moderation records.
    """

    def __init__(self, db: Session, payment_service: PaymentService | None = None):
        self.db = db
        self.repository = DisputeRepository(db)
        self.booking_repository = BookingRepository(db)
        self.user_repository = UserRepository(db)
        self.payments = payment_service or PaymentService(db)
        self.notifications = NotificationService(db)

    # -----------------------------
    # Damages
    # -----------------------------
    def report_damage(
        self,
        booking_id: str,
        owner: User,
        cost: Decimal,
        description: str,
        photo_url: str | None = None,
    ) -> BikeDamage:
        booking = self._completed_booking_of(booking_id, owner)
        cost = to_money(cost)
        if cost <= 0:
            raise ValidationError("Damage cost must be positive")
        if not (description or "").strip():
            raise ValidationError("A damage description is required")

        damage = self.repository.create_damage(
            booking_id=booking.id,
            bike_id=booking.bike_id,
            owner_id=booking.owner_id,
            renter_id=booking.renter_id,
            cost=cost,
            description=description.strip(),
            photo_url=photo_url,
        )
        self.db.flush()

        logger.info("Damage %s reported on booking %s (cost=%s)", damage.id, booking.id, cost)
        self.notifications.notify(
            booking.renter_id,
            "Damage reported",
            f"The owner reported damage of {cost} on booking {booking.id}.",
            action_url=f"/damages/{damage.id}",
            dedupe_key=f"damage:{damage.id}:reported",
        )
        return damage

    def dispute_damage(self, damage_id: str, renter: User, reason: str) -> BikeDamage:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A dispute reason is required")

        damage = self._locked_damage(damage_id)
        if damage.renter_id != renter.id:
            raise PermissionDeniedError("Only the charged renter can dispute this damage")
        self._transition(damage, DamageStatus.DISPUTED)
        self.payments.cancel_open(damage_id=damage.id, note="Damage charge disputed")
        damage.dispute_reason = reason
        self.db.flush()

        self.notifications.notify(
            damage.owner_id,
            "Damage disputed",
            f"The renter disputed damage charge {damage.id}.",
            action_url=f"/damages/{damage.id}",
            dedupe_key=f"damage:{damage.id}:disputed",
        )
        return damage

    def resolve_dispute(
        self,
        damage_id: str,
        admin: User,
        resolution: DamageStatus,
        notes: str | None = None,
    ) -> BikeDamage:
        """Admin closes a dispute as PAID (settled off-platform) or WAIVED."""
        if not admin.is_admin:
            raise PermissionDeniedError("Only admins can resolve damage disputes")
        if resolution not in (DamageStatus.PAID, DamageStatus.WAIVED):
            raise ValidationError("A dispute resolves to PAID or WAIVED")

        damage = self._locked_damage(damage_id)
        if damage.status != DamageStatus.DISPUTED:
            raise StateConflictError(f"Damage {damage.id} is {damage.status.value}, not DISPUTED")
        self._transition(damage, resolution)
        self._stamp_resolution(damage, admin, notes)
        if resolution == DamageStatus.PAID:
            damage.paid_at = damage.resolved_at
        self.db.flush()

        for user_id in (damage.renter_id, damage.owner_id):
            self.notifications.notify(
                user_id,
                "Damage dispute resolved",
                f"Damage charge {damage.id} was resolved as {resolution.value}.",
                action_url=f"/damages/{damage.id}",
                dedupe_key=f"damage:{damage.id}:resolved:{user_id}",
            )
        return damage

    def waive_damage(self, damage_id: str, actor: User, notes: str | None = None) -> BikeDamage:
        damage = self._locked_damage(damage_id)
        if actor.id != damage.owner_id and not actor.is_admin:
            raise PermissionDeniedError("Only the owner or an admin can waive a damage charge")
        if damage.status != DamageStatus.PENDING:
            raise StateConflictError(f"Only PENDING damages can be waived, damage {damage.id} is {damage.status.value}")

        self.payments.cancel_open(damage_id=damage.id, note="Damage charge waived")
        self._transition(damage, DamageStatus.WAIVED)
        self._stamp_resolution(damage, actor, notes)
        self.db.flush()

        self.notifications.notify(
            damage.renter_id,
            "Damage waived",
            f"Damage charge {damage.id} was waived.",
            action_url=f"/damages/{damage.id}",
            dedupe_key=f"damage:{damage.id}:waived",
        )
        return damage

    def get_damage(self, damage_id: str, user: User) -> BikeDamage:
        damage = self.repository.get_damage(damage_id)
        if not damage:
            raise NotFoundError(f"Damage {damage_id} not found")
        if user.id not in (damage.renter_id, damage.owner_id) and not user.is_admin:
            raise PermissionDeniedError("You are not a party to this damage charge")
        return damage

    def list_damages(self, user: User) -> list[BikeDamage]:
        """Owners see every claim they filed; renters see what they still owe."""
        if user.is_owner:
            return self.repository.list_damages_for_owner(user.id)
        return self.repository.list_damages_for_renter(user.id, DamageStatus.PENDING)

    # -----------------------------
    # Flags
    # -----------------------------
    def flag_renter(
        self,
        booking_id: str,
        owner: User,
        reason: FlagReason,
        description: str,
        cost: Decimal | None = None,
        photo_url: str | None = None,
    ) -> RenterFlag:
        booking = self._completed_booking_of(booking_id, owner)
        if self.repository.get_flag_for_booking(booking.id, owner.id):
            raise StateConflictError(f"Booking {booking.id} is already flagged")
        if not (description or "").strip():
            raise ValidationError("A flag description is required")

        damage_id = None
        if reason == FlagReason.DAMAGE:
            if cost is None or to_money(cost) <= 0:
                raise ValidationError("A damage flag requires a positive repair cost")
            if not photo_url:
                raise ValidationError("A damage flag requires photo evidence")
            damage = self.report_damage(booking.id, owner, cost, description, photo_url)
            damage_id = damage.id

        flag = self.repository.create_flag(
            booking_id=booking.id,
            owner_id=owner.id,
            renter_id=booking.renter_id,
            reason=reason,
            description=description.strip(),
            damage_id=damage_id,
        )
        self.db.flush()
        logger.info("Renter %s flagged on booking %s (%s)", booking.renter_id, booking.id, reason.value)
        return flag

    def resolve_flag(self, flag_id: str, admin: User, notes: str | None = None) -> RenterFlag:
        if not admin.is_admin:
            raise PermissionDeniedError("Only admins can resolve flags")
        flag = self.repository.get_flag(flag_id)
        if not flag:
            raise NotFoundError(f"Flag {flag_id} not found")
        if flag.is_resolved:
            raise StateConflictError(f"Flag {flag.id} is already resolved")

        flag.is_resolved = True
        flag.resolved_by = admin.id
        flag.resolved_at = datetime.now(timezone.utc)
        flag.resolution_notes = notes
        self.db.flush()
        return flag

    # -----------------------------
    # Red tags
    # -----------------------------
    def red_tag(
        self,
        owner: User,
        renter_id: str,
        reason: str,
        booking_id: str | None = None,
    ) -> RenterRedTag:
        if not owner.is_owner:
            raise PermissionDeniedError("Only owners can red-tag renters")
        if not (reason or "").strip():
            raise ValidationError("A red-tag reason is required")
        if not self.user_repository.get_active(renter_id):
            raise NotFoundError(f"Renter {renter_id} not found")
        if booking_id is not None:
            booking = self.booking_repository.get_by_id(booking_id)
            if not booking or booking.owner_id != owner.id or booking.renter_id != renter_id:
                raise ValidationError("The booking does not link this owner and renter")
        if self.repository.get_active_red_tag(renter_id, owner.id):
            raise StateConflictError("This renter already has an active red tag from you")

        tag = self.repository.create_red_tag(
            renter_id=renter_id,
            owner_id=owner.id,
            booking_id=booking_id,
            reason=reason.strip(),
        )
        self.db.flush()
        logger.info("Renter %s red-tagged by owner %s", renter_id, owner.id)
        self.notifications.notify(
            renter_id,
            "Account red-tagged",
            "An owner red-tagged your account. You cannot book until it is resolved.",
            dedupe_key=f"red-tag:{tag.id}:created",
        )
        return tag

    def resolve_red_tag(self, tag_id: str, actor: User, notes: str | None = None) -> RenterRedTag:
        tag = self.repository.get_red_tag(tag_id)
        if not tag:
            raise NotFoundError(f"Red tag {tag_id} not found")
        if not actor.is_admin and actor.id != tag.owner_id:
            raise PermissionDeniedError("Only an admin or the tagging owner can resolve this red tag")
        if not tag.is_active:
            raise StateConflictError(f"Red tag {tag.id} is already resolved")

        tag.is_active = False
        tag.resolved_by = actor.id
        tag.resolved_at = datetime.now(timezone.utc)
        tag.resolution_notes = notes
        self.db.flush()
        logger.info("Red tag %s resolved by %s", tag.id, actor.id)
        return tag

    def red_tag_status(self, renter_id: str) -> tuple[bool, list[RenterRedTag]]:
        tags = self.repository.list_active_red_tags(renter_id)
        return bool(tags), tags

    # -----------------------------
    # Helpers
    # -----------------------------
    def _completed_booking_of(self, booking_id: str, owner: User) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise NotFoundError(f"Booking {booking_id} not found")
        if booking.owner_id != owner.id:
            raise NotOwnerError("Only the bike owner can act on this booking")
        if booking.status != BookingStatus.COMPLETED:
            raise StateConflictError(
                f"Booking {booking.id} is {booking.status.value}; only COMPLETED bookings qualify"
            )
        return booking

    def _locked_damage(self, damage_id: str) -> BikeDamage:
        damage = self.repository.lock_damage(damage_id)
        if not damage:
            raise NotFoundError(f"Damage {damage_id} not found")
        return damage

    @staticmethod
    def _transition(damage: BikeDamage, to_status: DamageStatus) -> None:
        DamageStateMachine.validate_transition(damage.status, to_status)
        damage.status = to_status

    @staticmethod
    def _stamp_resolution(damage: BikeDamage, actor: User, notes: str | None) -> None:
        damage.resolved_by = actor.id
        damage.resolved_at = datetime.now(timezone.utc)
        damage.resolution_notes = notes
