from datetime import datetime, timezone
import hashlib
import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from src.infrastructure.db.session import SessionLocal
from src.config import get_settings
from src.application.booking_service import BookingService
from src.application.dispute_service import DisputeService
from src.application.draft_service import DraftService
from src.application.inventory_service import InventoryService
from src.application.ledger_service import LedgerService
from src.application.payment_service import PaymentOutcome, PaymentService
from src.application.tracking_service import TrackingService
from src.application.user_service import UserService
from src.api.schemas.schemas import (
    AvailabilityResponse,
    BikeCreate,
    BikeResponse,
    BookingDraftResponse,
    BookingRequest,
    BookingResponse,
    CheckoutSessionResponse,
    ConfirmPaymentRequest,
    CreditTransactionResponse,
    DamageCreate,
    DamageResolveRequest,
    DamageResponse,
    ExpireUnpaidResponse,
    FlagCreate,
    FlagResponse,
    LocationCreate,
    LocationResponse,
    NotesRequest,
    OutboxEventResponse,
    PaymentOutcomeResponse,
    PaymentRequest,
    PaymentResponse,
    PointsHistoryResponse,
    PointsResponse,
    QuoteRequest,
    QuoteResponse,
    ReasonRequest,
    RedeemPointsRequest,
    RedTagCreate,
    RedTagResponse,
    RedTagStatusResponse,
    ReturnRequest,
    UserCreate,
    UserResponse,
    WalletAmountRequest,
    WalletResponse,
    WebhookAckResponse,
)
from src.domain.enums import TransactionType
from src.domain.exceptions import (
    ExpiredError,
    GatewayFailedError,
    GatewayTransientError,
    IntegrityViolationError,
    NotFoundError,
    PermissionDeniedError,
    RentalEngineError,
    StateConflictError,
    ValidationError,
    VerificationRequiredError,
)
from src.domain.state_machine import BookingStatus, DamageStatus
from src.infrastructure.db.models import Booking, OutboxEvent, User
from src.infrastructure.gateway.razorpay_gateway import PaymentGateway, RazorpayGateway
from src.infrastructure.repositories.outbox_repository import OutboxRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository


router = APIRouter()
logger = logging.getLogger(__name__)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_gateway() -> PaymentGateway:
    return RazorpayGateway.from_settings(get_settings())


def get_current_user(
    x_user_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required",
        )
    user = UserService(db).repository.get_active(x_user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown user",
        )
    return user


def get_optional_user(
    x_user_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> User | None:
    if not x_user_id:
        return None
    return get_current_user(x_user_id, db)


# Order matters: subclasses before their bases.
_HTTP_STATUS_BY_ERROR = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (VerificationRequiredError, status.HTTP_403_FORBIDDEN),
    (ExpiredError, status.HTTP_410_GONE),
    (GatewayFailedError, status.HTTP_402_PAYMENT_REQUIRED),
    (GatewayTransientError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StateConflictError, status.HTTP_409_CONFLICT),
    (IntegrityViolationError, status.HTTP_409_CONFLICT),
)


def _http_error(exc: RentalEngineError) -> HTTPException:
    for error_type, status_code in _HTTP_STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    logger.error("Unmapped domain error %s: %s", type(exc).__name__, exc)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _require_admin(user: User) -> None:
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )


def _booking_response(db: Session, booking: Booking) -> BookingResponse:
    response = BookingResponse.model_validate(booking)
    response.payments = [
        PaymentResponse.model_validate(item)
        for item in PaymentRepository(db).list_for_booking(booking.id)
    ]
    return response


def _outcome_response(outcome: PaymentOutcome) -> PaymentOutcomeResponse:
    return PaymentOutcomeResponse(
        outcome=outcome.kind.value,
        payment=PaymentResponse.model_validate(outcome.payment),
        gateway_status=outcome.gateway_status.value if outcome.gateway_status else None,
        checkout_token=outcome.checkout_token,
        redirect_url=outcome.redirect_url,
        message=outcome.message,
        already_processed=outcome.already_processed,
    )


def _outbox_response(item: OutboxEvent) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        payload=item.payload,
        status=item.status,
        attempts=item.attempts,
        created_at=item.created_at.isoformat(),
    )


@router.get("/health")
def health():
    return {"message": "Bike Rental Settlement Engine is running"}


# -----------------------------
# Users
# -----------------------------
@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def register_user(
    request: UserCreate,
    current_user: User | None = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    if request.is_admin:
        if current_user is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="X-User-Id header is required to create an admin",
            )
        _require_admin(current_user)
    try:
        user = UserService(db).register(**request.model_dump())
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return _user_response(db, user)


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    user_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        user = UserService(db).get_user(user_id)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return _user_response(db, user)


@router.post("/users/{user_id}/phone-verified", response_model=UserResponse)
def mark_phone_verified(
    user_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        user = UserService(db).mark_phone_verified(user_id, current_user)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return _user_response(db, user)


def _user_response(db: Session, user: User) -> UserResponse:
    ledger = LedgerService(db)
    red_tagged, _ = DisputeService(db).red_tag_status(user.id)
    return UserResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        phone=user.phone,
        phone_verified=user.phone_verified,
        is_renter=user.is_renter,
        is_owner=user.is_owner,
        is_admin=user.is_admin,
        is_suspended=user.is_suspended,
        wallet_balance=ledger.balance(user.id),
        points_balance=ledger.points_balance(user.id),
        is_red_tagged=red_tagged,
    )


# -----------------------------
# Bikes
# -----------------------------
@router.post("/bikes", response_model=BikeResponse, status_code=status.HTTP_201_CREATED)
def create_bike(
    request: BikeCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        bike = InventoryService(db).create_bike(current_user, **request.model_dump())
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return BikeResponse.model_validate(bike)


@router.get("/bikes/{bike_id}/availability", response_model=AvailabilityResponse)
def get_availability(
    bike_id: str,
    db: Session = Depends(get_db),
):
    service = InventoryService(db)
    try:
        bike = service.get_bike(bike_id)
        available = service.available_for(bike)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return AvailabilityResponse(bike_id=bike.id, quantity=bike.quantity, available=available)


@router.post("/bikes/{bike_id}/quote", response_model=QuoteResponse)
def quote_bike(
    bike_id: str,
    request: QuoteRequest,
    db: Session = Depends(get_db),
):
    try:
        quote = InventoryService(db).quote(bike_id, request.quantity, request.start_date, request.end_date)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return QuoteResponse(
        bike_id=bike_id,
        quantity=request.quantity,
        hours=quote.hours,
        base_rate=quote.base_rate,
        service_fee=quote.service_fee,
        total_amount=quote.total_amount,
    )


# -----------------------------
# Bookings
# -----------------------------
@router.post(
    "/bookings",
    response_model=BookingResponse | BookingDraftResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_booking(
    request: BookingRequest,
    response: Response,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        result = DraftService(db).request_booking(
            current_user,
            request.bike_id,
            request.quantity,
            request.start_date,
            request.end_date,
        )
    except RentalEngineError as exc:
        raise _http_error(exc) from exc

    if isinstance(result, Booking):
        return _booking_response(db, result)

    response.status_code = status.HTTP_202_ACCEPTED
    return BookingDraftResponse(
        draft_token=result.token,
        expires_at=result.expires_at,
        message="Verify your phone number, then submit this draft to complete the booking.",
    )


@router.post(
    "/bookings/drafts/{token}/submit",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
def submit_booking_draft(
    token: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        booking = DraftService(db).submit_draft(token, current_user)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(db, booking)


@router.get("/bookings", response_model=list[BookingResponse])
def list_bookings(
    status_filter: BookingStatus | None = None,
    limit: int = 50,
    offset: int = 0,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    safe_limit = max(1, min(limit, 200))
    bookings = BookingService(db).list_bookings(current_user, status_filter, safe_limit, max(0, offset))
    return [_booking_response(db, item) for item in bookings]


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        booking = BookingService(db).get_booking(booking_id, current_user)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(db, booking)


@router.post("/bookings/{booking_id}/accept", response_model=BookingResponse)
def accept_booking(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        booking = BookingService(db).accept(booking_id, current_user)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(db, booking)


@router.post("/bookings/{booking_id}/reject", response_model=BookingResponse)
def reject_booking(
    booking_id: str,
    request: ReasonRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        booking = BookingService(db).reject(booking_id, current_user, request.reason)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(db, booking)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: str,
    request: ReasonRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        booking = BookingService(db).cancel(booking_id, current_user, request.reason or "")
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(db, booking)


@router.post("/bookings/{booking_id}/return", response_model=BookingResponse)
def confirm_return(
    booking_id: str,
    request: ReturnRequest | None = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    returned_at = request.returned_at if request else None
    try:
        booking = BookingService(db).confirm_return(booking_id, current_user, returned_at)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(db, booking)


@router.post("/bookings/{booking_id}/report-lost", response_model=BookingResponse)
def report_lost(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        booking = BookingService(db).report_lost(booking_id, current_user)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(db, booking)


@router.post("/bookings/{booking_id}/mark-found", response_model=BookingResponse)
def mark_found(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        booking = BookingService(db).mark_found(booking_id, current_user)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(db, booking)


@router.post("/admin/bookings/expire-unpaid", response_model=ExpireUnpaidResponse)
def expire_unpaid_bookings(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _require_admin(current_user)
    try:
        expired = BookingService(db).expire_unpaid()
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return ExpireUnpaidResponse(cancelled_booking_ids=[item.id for item in expired])


# -----------------------------
# Payments
# -----------------------------
@router.post("/bookings/{booking_id}/payments", response_model=PaymentOutcomeResponse)
def pay_booking(
    booking_id: str,
    request: PaymentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    try:
        outcome = PaymentService(db, gateway).process_payment(
            booking_id,
            current_user.id,
            request.method,
            request.amount,
        )
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return _outcome_response(outcome)


@router.post("/payments/confirm", response_model=PaymentOutcomeResponse)
def confirm_payment(
    request: ConfirmPaymentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    try:
        outcome = PaymentService(db, gateway).confirm_gateway_payment(
            request.intent_id,
            payment_method_id=request.payment_method_id,
            signature=request.signature,
            caller_id=current_user.id,
        )
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return _outcome_response(outcome)


async def _raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/payments/webhook", response_model=WebhookAckResponse)
def payment_webhook(
    body: bytes = Depends(_raw_body),
    x_razorpay_signature: str | None = Header(default=None),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    if not gateway.verify_webhook(body, x_razorpay_signature):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        )
    try:
        event = json.loads(body or b"{}")
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook body is not JSON",
        ) from exc

    payload_hash = hashlib.sha256(body).hexdigest()
    try:
        duplicate, outcome = PaymentService(db, gateway).handle_webhook(gateway.provider, event, payload_hash)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc

    if duplicate:
        return WebhookAckResponse(status="duplicate")
    if outcome is None:
        return WebhookAckResponse(status="ignored")
    return WebhookAckResponse(status="processed", outcome=outcome.kind.value)


@router.get("/checkout/{token}", response_model=CheckoutSessionResponse)
def get_checkout_session(
    token: str,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    try:
        session, payment = PaymentService(db, gateway).resolve_checkout(token)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return CheckoutSessionResponse(
        token=session.token,
        target_type=session.target_type,
        target_id=session.target_id,
        payment_id=session.payment_id,
        payment_status=payment.status,
        intent_id=session.intent_id,
        amount=session.amount,
        currency=session.currency,
        key_id=getattr(gateway, "key_id", None),
        expires_at=session.expires_at,
    )


# -----------------------------
# Wallet & points
# -----------------------------
@router.get("/wallet", response_model=WalletResponse)
def get_wallet(
    limit: int = 50,
    offset: int = 0,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    balance, transactions = LedgerService(db).history(current_user.id, max(1, min(limit, 200)), max(0, offset))
    return WalletResponse(
        balance=balance,
        transactions=[CreditTransactionResponse.model_validate(item) for item in transactions],
    )


@router.post("/wallet/load", response_model=CreditTransactionResponse)
def load_wallet(
    request: WalletAmountRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        entry = LedgerService(db).credit(
            current_user.id,
            request.amount,
            TransactionType.LOAD,
            reference_id=f"load:{request.reference_id}" if request.reference_id else None,
            description="Wallet load",
        )
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return CreditTransactionResponse.model_validate(entry)


@router.post("/wallet/withdraw", response_model=CreditTransactionResponse)
def withdraw_wallet(
    request: WalletAmountRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        entry = LedgerService(db).debit(
            current_user.id,
            request.amount,
            TransactionType.WITHDRAWAL,
            reference_id=f"withdraw:{request.reference_id}" if request.reference_id else None,
            description="Wallet withdrawal",
        )
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return CreditTransactionResponse.model_validate(entry)


@router.get("/points", response_model=PointsResponse)
def get_points(
    limit: int = 50,
    offset: int = 0,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    balance, history = LedgerService(db).points_history(current_user.id, max(1, min(limit, 200)), max(0, offset))
    return PointsResponse(
        balance=balance,
        history=[PointsHistoryResponse.model_validate(item) for item in history],
    )


@router.post("/points/redeem", response_model=CreditTransactionResponse)
def redeem_points(
    request: RedeemPointsRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        entry = LedgerService(db).redeem_points(current_user.id, request.points)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return CreditTransactionResponse.model_validate(entry)


# -----------------------------
# Damages, flags, red tags
# -----------------------------
@router.post(
    "/bookings/{booking_id}/damages",
    response_model=DamageResponse,
    status_code=status.HTTP_201_CREATED,
)
def report_damage(
    booking_id: str,
    request: DamageCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        damage = DisputeService(db).report_damage(
            booking_id,
            current_user,
            request.cost,
            request.description,
            request.photo_url,
        )
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return DamageResponse.model_validate(damage)


@router.get("/damages", response_model=list[DamageResponse])
def list_damages(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return [DamageResponse.model_validate(item) for item in DisputeService(db).list_damages(current_user)]


@router.get("/damages/{damage_id}", response_model=DamageResponse)
def get_damage(
    damage_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        damage = DisputeService(db).get_damage(damage_id, current_user)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return DamageResponse.model_validate(damage)


@router.post("/damages/{damage_id}/pay", response_model=PaymentOutcomeResponse)
def pay_damage(
    damage_id: str,
    request: PaymentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    try:
        outcome = PaymentService(db, gateway).pay_damage(
            damage_id,
            current_user.id,
            request.method,
            request.amount,
        )
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return _outcome_response(outcome)


@router.post("/damages/{damage_id}/dispute", response_model=DamageResponse)
def dispute_damage(
    damage_id: str,
    request: ReasonRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        damage = DisputeService(db).dispute_damage(damage_id, current_user, request.reason or "")
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return DamageResponse.model_validate(damage)


@router.post("/damages/{damage_id}/resolve", response_model=DamageResponse)
def resolve_damage(
    damage_id: str,
    request: DamageResolveRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        damage = DisputeService(db).resolve_dispute(
            damage_id,
            current_user,
            DamageStatus(request.resolution),
            request.notes,
        )
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return DamageResponse.model_validate(damage)


@router.post("/damages/{damage_id}/waive", response_model=DamageResponse)
def waive_damage(
    damage_id: str,
    request: NotesRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        damage = DisputeService(db).waive_damage(damage_id, current_user, request.notes)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return DamageResponse.model_validate(damage)


@router.post(
    "/bookings/{booking_id}/flags",
    response_model=FlagResponse,
    status_code=status.HTTP_201_CREATED,
)
def flag_renter(
    booking_id: str,
    request: FlagCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        flag = DisputeService(db).flag_renter(
            booking_id,
            current_user,
            request.reason,
            request.description,
            cost=request.cost,
            photo_url=request.photo_url,
        )
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return FlagResponse.model_validate(flag)


@router.post("/flags/{flag_id}/resolve", response_model=FlagResponse)
def resolve_flag(
    flag_id: str,
    request: NotesRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        flag = DisputeService(db).resolve_flag(flag_id, current_user, request.notes)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return FlagResponse.model_validate(flag)


@router.post("/red-tags", response_model=RedTagResponse, status_code=status.HTTP_201_CREATED)
def create_red_tag(
    request: RedTagCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        tag = DisputeService(db).red_tag(
            current_user,
            request.renter_id,
            request.reason,
            booking_id=request.booking_id,
        )
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return RedTagResponse.model_validate(tag)


@router.post("/red-tags/{tag_id}/resolve", response_model=RedTagResponse)
def resolve_red_tag(
    tag_id: str,
    request: NotesRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        tag = DisputeService(db).resolve_red_tag(tag_id, current_user, request.notes)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return RedTagResponse.model_validate(tag)


@router.get("/renters/{renter_id}/red-tag", response_model=RedTagStatusResponse)
def get_red_tag_status(
    renter_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    is_red_tagged, tags = DisputeService(db).red_tag_status(renter_id)
    return RedTagStatusResponse(
        renter_id=renter_id,
        is_red_tagged=is_red_tagged,
        active_tags=[RedTagResponse.model_validate(item) for item in tags],
    )


# -----------------------------
# Tracking
# -----------------------------
@router.post(
    "/bookings/{booking_id}/locations",
    response_model=LocationResponse,
    status_code=status.HTTP_201_CREATED,
)
def record_location(
    booking_id: str,
    request: LocationCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        sample = TrackingService(db).record_location(
            booking_id,
            current_user,
            request.latitude,
            request.longitude,
            request.recorded_at,
        )
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return LocationResponse.model_validate(sample)


@router.get("/bookings/{booking_id}/locations", response_model=list[LocationResponse])
def list_locations(
    booking_id: str,
    since: datetime | None = None,
    until: datetime | None = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        samples = TrackingService(db).list_locations(booking_id, current_user, since, until)
    except RentalEngineError as exc:
        raise _http_error(exc) from exc
    return [LocationResponse.model_validate(item) for item in samples]


# -----------------------------
# Outbox
# -----------------------------
@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    limit: int = 50,
    db: Session = Depends(get_db),
):
    safe_limit = max(1, min(limit, 200))
    events = OutboxRepository(db).list_events(status_filter, safe_limit)
    return [_outbox_response(item) for item in events]


@router.post("/outbox/events/{event_id}/mark-published", response_model=OutboxEventResponse)
def mark_outbox_event_published(
    event_id: str,
    db: Session = Depends(get_db),
):
    item = OutboxRepository(db).get_event(event_id)
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Outbox event not found",
        )

    item.status = "PUBLISHED"
    item.published_at = datetime.now(timezone.utc)
    item.attempts += 1
    return _outbox_response(item)
