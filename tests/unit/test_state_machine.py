# tests/unit/test_state_machine.py

import pytest

from src.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    DamageStateMachine,
    DamageStatus,
    PaymentStateMachine,
    PaymentStatus,
)
from src.domain.exceptions import InvalidStateTransitionError, StateConflictError


# ---------------------
# VALID TRANSITIONS
# ---------------------

def test_booking_happy_path():
    assert BookingStateMachine.can_transition(
        BookingStatus.PENDING,
        BookingStatus.ACTIVE,
    )

    assert BookingStateMachine.can_transition(
        BookingStatus.ACTIVE,
        BookingStatus.COMPLETED,
    )


def test_pending_booking_can_be_cancelled():
    assert BookingStateMachine.can_transition(
        BookingStatus.PENDING,
        BookingStatus.CANCELLED,
    )


def test_failed_payment_can_still_settle():
    assert PaymentStateMachine.can_transition(
        PaymentStatus.FAILED,
        PaymentStatus.COMPLETED,
    )
    assert PaymentStateMachine.get_allowed_transitions(PaymentStatus.COMPLETED) == {
        PaymentStatus.REFUNDED,
    }


def test_disputed_damage_resolves_to_paid_or_waived():
    assert DamageStateMachine.get_allowed_transitions(DamageStatus.DISPUTED) == {
        DamageStatus.PAID,
        DamageStatus.WAIVED,
    }


# ---------------------
# INVALID TRANSITIONS
# ---------------------

def test_cannot_complete_pending_booking():
    with pytest.raises(InvalidStateTransitionError):
        BookingStateMachine.validate_transition(
            BookingStatus.PENDING,
            BookingStatus.COMPLETED,
        )


def test_active_booking_cannot_be_cancelled():
    with pytest.raises(InvalidStateTransitionError) as exc_info:
        BookingStateMachine.validate_transition(
            BookingStatus.ACTIVE,
            BookingStatus.CANCELLED,
        )

    assert exc_info.value.from_state == "ACTIVE"
    assert exc_info.value.to_state == "CANCELLED"
    assert exc_info.value.entity == "booking"


@pytest.mark.parametrize("status", [BookingStatus.COMPLETED, BookingStatus.CANCELLED])
def test_terminal_booking_states(status):
    assert BookingStateMachine.is_terminal(status)

    with pytest.raises(InvalidStateTransitionError):
        BookingStateMachine.validate_transition(status, BookingStatus.ACTIVE)


def test_refunded_payment_is_terminal():
    assert PaymentStateMachine.is_terminal(PaymentStatus.REFUNDED)

    with pytest.raises(InvalidStateTransitionError) as exc_info:
        PaymentStateMachine.validate_transition(
            PaymentStatus.REFUNDED,
            PaymentStatus.COMPLETED,
        )
    assert exc_info.value.entity == "payment"


def test_paid_damage_cannot_be_disputed():
    assert DamageStateMachine.is_terminal(DamageStatus.PAID)

    with pytest.raises(InvalidStateTransitionError):
        DamageStateMachine.validate_transition(
            DamageStatus.PAID,
            DamageStatus.DISPUTED,
        )


def test_transition_error_is_a_state_conflict():
    assert issubclass(InvalidStateTransitionError, StateConflictError)


def test_invalid_type_guard():
    with pytest.raises(TypeError):
        BookingStateMachine.validate_transition(
            "PENDING",  # invalid type
            BookingStatus.ACTIVE,
        )


def test_statuses_of_another_machine_are_rejected():
    with pytest.raises(TypeError):
        BookingStateMachine.can_transition(
            PaymentStatus.PENDING,
            BookingStatus.ACTIVE,
        )
