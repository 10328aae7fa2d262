

class RentalEngineError(Exception):
    """
    Base exception for all domain-level errors
    inside the Bike Rental Settlement Engine.
    """


class ValidationError(RentalEngineError):
    """Raised when a request has a bad shape or out-of-range value."""


class NotFoundError(RentalEngineError):
    """Raised when a referenced entity does not exist or is soft-deleted."""


class PermissionDeniedError(RentalEngineError):
    """Raised when the caller's role does not allow the operation."""


class NotOwnerError(PermissionDeniedError):
    """Raised when a non-owner attempts an owner-only booking action."""


class StateConflictError(RentalEngineError):
    """
    Raised when the current state of an entity does not allow the request.
    Never retried automatically; the caller decides the next action.
    """


class InvalidStateTransitionError(StateConflictError):
    """
    Raised when an illegal state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str, entity: str = "booking"):
        self.from_state = from_state
        self.to_state = to_state
        self.entity = entity

        message = (
            f"Illegal {entity} state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class InsufficientInventoryError(StateConflictError):
    """Raised when fewer units are free than were requested."""

    def __init__(self, bike_id: str, requested: int, available: int):
        self.bike_id = bike_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Bike {bike_id} has {available} unit(s) available, {requested} requested"
        )


class InsufficientFundsError(StateConflictError):
    """Raised when a debit would drive a balance below zero."""

    def __init__(self, balance, amount):
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"Insufficient funds: balance {balance}, debit {amount}"
        )


class RenterRestrictedError(StateConflictError):
    """Raised when a suspended or red-tagged renter tries to book."""


class IdempotencyConflictError(StateConflictError):
    """Raised when an idempotent request conflicts with previous data."""


class VerificationRequiredError(RentalEngineError):
    """Raised when a first-time renter has not verified their phone."""


class GatewayTransientError(RentalEngineError):
    """Raised when the payment gateway is unreachable or not yet settled."""


class GatewayFailedError(RentalEngineError):
    """Raised when the payment gateway terminally rejects a request."""


class IntegrityViolationError(RentalEngineError):
    """Raised when a write would break a ledger or payment invariant."""


class ExpiredError(RentalEngineError):
    """Raised when a draft or checkout token is past its expiry."""
