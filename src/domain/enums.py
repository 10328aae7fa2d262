# src/domain/enums.py

from enum import Enum


class PaymentMethod(str, Enum):
    WALLET = "WALLET"
    CASH = "CASH"
    GCASH = "GCASH"
    PAYMAYA = "PAYMAYA"
    QRPH = "QRPH"
    CARD = "CARD"

    @property
    def is_gateway(self) -> bool:
        return self not in {PaymentMethod.WALLET, PaymentMethod.CASH}


class GatewayIntentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    AWAITING_PAYMENT_METHOD = "awaiting_payment_method"
    AWAITING_NEXT_ACTION = "awaiting_next_action"
    PROCESSING = "processing"
    PAYMENT_FAILED = "payment_failed"
    UNKNOWN = "unknown"


class TransactionType(str, Enum):
    LOAD = "LOAD"
    WITHDRAWAL = "WITHDRAWAL"
    RENTAL_PAYMENT = "RENTAL_PAYMENT"
    REFUND = "REFUND"
    EARNING = "EARNING"
    DAMAGE_PAYMENT = "DAMAGE_PAYMENT"
    DAMAGE_COMPENSATION = "DAMAGE_COMPENSATION"
    POINTS_REDEMPTION = "POINTS_REDEMPTION"


class AvailabilityStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    MAINTENANCE = "MAINTENANCE"
    INACTIVE = "INACTIVE"


class FlagReason(str, Enum):
    DAMAGE = "DAMAGE"
    LATE_RETURN = "LATE_RETURN"
    MISCONDUCT = "MISCONDUCT"
    OTHER = "OTHER"


class PaymentTarget(str, Enum):
    BOOKING = "BOOKING"
    DAMAGE = "DAMAGE"
