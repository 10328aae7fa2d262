from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from src.domain.enums import AvailabilityStatus, FlagReason, PaymentMethod, PaymentTarget, TransactionType
from src.domain.state_machine import BookingStatus, DamageStatus, PaymentStatus


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# -----------------------------
# Users
# -----------------------------
class UserCreate(BaseModel):
    name: str
    email: str
    phone: str | None = None
    is_renter: bool = True
    is_owner: bool = False
    is_admin: bool = False
    store_latitude: float | None = Field(default=None, ge=-90, le=90)
    store_longitude: float | None = Field(default=None, ge=-180, le=180)
    geofence_radius_km: Decimal | None = Field(default=None, gt=0)


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    phone: str | None
    phone_verified: bool
    is_renter: bool
    is_owner: bool
    is_admin: bool
    is_suspended: bool
    wallet_balance: Decimal
    points_balance: int
    is_red_tagged: bool


# -----------------------------
# Bikes
# -----------------------------
class BikeCreate(BaseModel):
    name: str
    bike_type: str = "STANDARD"
    quantity: int = Field(ge=1)
    hourly_rate: Decimal = Field(gt=0)
    daily_rate: Decimal | None = Field(default=None, gt=0)
    availability_status: AvailabilityStatus = AvailabilityStatus.AVAILABLE


class BikeResponse(ORMModel):
    id: str
    owner_id: str
    name: str
    bike_type: str
    quantity: int
    hourly_rate: Decimal
    daily_rate: Decimal | None
    availability_status: AvailabilityStatus


class AvailabilityResponse(BaseModel):
    bike_id: str
    quantity: int
    available: int


class QuoteRequest(BaseModel):
    quantity: int
    start_date: datetime
    end_date: datetime


class QuoteResponse(BaseModel):
    bike_id: str
    quantity: int
    hours: Decimal
    base_rate: Decimal
    service_fee: Decimal
    total_amount: Decimal


# -----------------------------
# Bookings
# -----------------------------
class BookingRequest(BaseModel):
    bike_id: str
    quantity: int
    start_date: datetime
    end_date: datetime


class PaymentResponse(ORMModel):
    id: str
    booking_id: str | None
    damage_id: str | None
    method: PaymentMethod
    amount: Decimal
    status: PaymentStatus
    transaction_reference: str | None
    refund_amount: Decimal | None
    refund_date: datetime | None
    notes: str | None
    paid_at: datetime | None
    created_at: datetime


class BookingResponse(ORMModel):
    id: str
    renter_id: str
    owner_id: str
    bike_id: str
    quantity: int
    start_date: datetime
    end_date: datetime
    rental_hours: Decimal
    base_rate: Decimal
    service_fee: Decimal
    total_amount: Decimal
    status: BookingStatus
    owner_confirmed_at: datetime | None
    actual_return_date: datetime | None
    is_reported_lost: bool
    reported_lost_at: datetime | None
    cancellation_reason: str | None
    cancelled_at: datetime | None
    created_at: datetime
    payments: list[PaymentResponse] = []


class BookingDraftResponse(BaseModel):
    draft_token: str
    expires_at: datetime
    message: str


class ReasonRequest(BaseModel):
    reason: str | None = None


class ReturnRequest(BaseModel):
    returned_at: datetime | None = None


class ExpireUnpaidResponse(BaseModel):
    cancelled_booking_ids: list[str]


# -----------------------------
# Payments
# -----------------------------
class PaymentRequest(BaseModel):
    method: PaymentMethod
    amount: Decimal | None = Field(default=None, gt=0)


class ConfirmPaymentRequest(BaseModel):
    intent_id: str
    payment_method_id: str | None = None
    signature: str | None = None


class PaymentOutcomeResponse(BaseModel):
    outcome: Literal["COMPLETED", "PENDING", "FAILED"]
    payment: PaymentResponse
    gateway_status: str | None = None
    checkout_token: str | None = None
    redirect_url: str | None = None
    message: str | None = None
    already_processed: bool = False


class WebhookAckResponse(BaseModel):
    status: Literal["processed", "duplicate", "ignored"]
    outcome: str | None = None


class CheckoutSessionResponse(BaseModel):
    token: str
    target_type: PaymentTarget
    target_id: str
    payment_id: str
    payment_status: PaymentStatus
    intent_id: str
    amount: Decimal
    currency: str
    key_id: str | None = None
    expires_at: datetime


# -----------------------------
# Wallet & points
# -----------------------------
class WalletAmountRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    reference_id: str | None = Field(default=None, max_length=100)


class CreditTransactionResponse(ORMModel):
    id: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    transaction_type: TransactionType
    reference_id: str | None
    description: str | None
    created_at: datetime


class WalletResponse(BaseModel):
    balance: Decimal
    transactions: list[CreditTransactionResponse]


class PointsHistoryResponse(ORMModel):
    id: str
    amount: int
    balance_before: int
    balance_after: int
    reason: str
    created_at: datetime


class PointsResponse(BaseModel):
    balance: int
    history: list[PointsHistoryResponse]


class RedeemPointsRequest(BaseModel):
    points: int = Field(gt=0)


# -----------------------------
# Disputes
# -----------------------------
class DamageCreate(BaseModel):
    cost: Decimal
    description: str
    photo_url: str | None = None


class DamageResponse(ORMModel):
    id: str
    booking_id: str
    bike_id: str
    owner_id: str
    renter_id: str
    cost: Decimal
    description: str
    photo_url: str | None
    status: DamageStatus
    dispute_reason: str | None
    resolution_notes: str | None
    resolved_at: datetime | None
    paid_at: datetime | None
    created_at: datetime


class DamageResolveRequest(BaseModel):
    resolution: Literal["PAID", "WAIVED"]
    notes: str | None = None


class NotesRequest(BaseModel):
    notes: str | None = None


class FlagCreate(BaseModel):
    reason: FlagReason
    description: str
    cost: Decimal | None = None
    photo_url: str | None = None


class FlagResponse(ORMModel):
    id: str
    booking_id: str
    owner_id: str
    renter_id: str
    reason: FlagReason
    description: str
    damage_id: str | None
    is_resolved: bool
    resolved_at: datetime | None
    created_at: datetime


class RedTagCreate(BaseModel):
    renter_id: str
    reason: str
    booking_id: str | None = None


class RedTagResponse(ORMModel):
    id: str
    renter_id: str
    owner_id: str
    booking_id: str | None
    reason: str
    is_active: bool
    resolved_by: str | None
    resolved_at: datetime | None
    created_at: datetime


class RedTagStatusResponse(BaseModel):
    renter_id: str
    is_red_tagged: bool
    active_tags: list[RedTagResponse]


# -----------------------------
# Tracking
# -----------------------------
class LocationCreate(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    recorded_at: datetime | None = None


class LocationResponse(ORMModel):
    id: str
    booking_id: str
    latitude: float
    longitude: float
    recorded_at: datetime
    distance_from_store_km: float | None
    is_within_geofence: bool | None
    warning_sent: bool


# -----------------------------
# Outbox
# -----------------------------
class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: str
    status: str
    attempts: int
    created_at: str
