# src/domain/state_machine.py

from enum import Enum
from typing import ClassVar, Dict, Set, Type

from src.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class DamageStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    DISPUTED = "DISPUTED"
    WAIVED = "WAIVED"


class StateMachine:
    """
    Transition table shared by every lifecycle controller.
    Subclasses declare the status enum and the legal edges.
    """

    entity: ClassVar[str] = "entity"
    status_type: ClassVar[Type[Enum]]
    _ALLOWED_TRANSITIONS: ClassVar[Dict[Enum, Set[Enum]]] = {}

    @classmethod
    def can_transition(cls, from_status: Enum, to_status: Enum) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status: Enum, to_status: Enum) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
                entity=cls.entity,
            )

    @classmethod
    def is_terminal(cls, status: Enum) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(cls, status: Enum) -> Set[Enum]:
        cls._ensure_valid_status(status)
        return set(cls._ALLOWED_TRANSITIONS.get(status, set()))

    @classmethod
    def _ensure_valid_status(cls, status: Enum) -> None:
        if not isinstance(status, cls.status_type):
            raise TypeError(
                f"Expected {cls.status_type.__name__}, got {type(status)}"
            )


class BookingStateMachine(StateMachine):
    """
    Central lifecycle controller for booking transitions.

    The lost flag is orthogonal: a lost booking stays ACTIVE until it is
    found (ACTIVE -> COMPLETED).
    """

    entity = "booking"
    status_type = BookingStatus
    _ALLOWED_TRANSITIONS = {
        BookingStatus.PENDING: {
            BookingStatus.ACTIVE,
            BookingStatus.CANCELLED,
        },
        BookingStatus.ACTIVE: {
            BookingStatus.COMPLETED,
        },
        BookingStatus.COMPLETED: set(),
        BookingStatus.CANCELLED: set(),
    }


class PaymentStateMachine(StateMachine):
    # A failed gateway attempt can still settle later on the same intent.
    entity = "payment"
    status_type = PaymentStatus
    _ALLOWED_TRANSITIONS = {
        PaymentStatus.PENDING: {
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        },
        PaymentStatus.FAILED: {
            PaymentStatus.COMPLETED,
            PaymentStatus.CANCELLED,
        },
        PaymentStatus.COMPLETED: {
            PaymentStatus.REFUNDED,
        },
        PaymentStatus.REFUNDED: set(),
        PaymentStatus.CANCELLED: set(),
    }


class DamageStateMachine(StateMachine):
    entity = "damage"
    status_type = DamageStatus
    _ALLOWED_TRANSITIONS = {
        DamageStatus.PENDING: {
            DamageStatus.PAID,
            DamageStatus.DISPUTED,
            DamageStatus.WAIVED,
        },
        DamageStatus.DISPUTED: {
            DamageStatus.PAID,
            DamageStatus.WAIVED,
        },
        DamageStatus.PAID: set(),
        DamageStatus.WAIVED: set(),
    }
