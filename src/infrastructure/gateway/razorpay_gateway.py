# src/infrastructure/gateway/razorpay_gateway.py

from dataclasses import dataclass, field
from decimal import Decimal
import logging
from typing import Protocol

import razorpay
import requests

from src.config import Settings
from src.domain.enums import GatewayIntentStatus
from src.domain.exceptions import GatewayTransientError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayResult:
    success: bool
    status: GatewayIntentStatus
    payment_method_id: str | None = None
    error_message: str | None = None
    intent_id: str | None = None
    extra: dict = field(default_factory=dict)


class PaymentGateway(Protocol):
    provider: str

    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        description: str,
        metadata: dict,
    ) -> GatewayResult: ...

    def attach_payment_method(
        self,
        intent_id: str,
        payment_method_id: str,
        signature: str | None = None,
    ) -> GatewayResult: ...

    def get_intent_status(self, intent_id: str) -> GatewayResult: ...

    def verify_webhook(self, body: bytes, signature: str | None) -> bool: ...


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


class RazorpayGateway:
    """
    Razorpay orders act as payment intents: an order is created per
    attempt, the checkout attaches a payment to it, and the order's
    payments tell us how far settlement got.
    """

    provider = "razorpay"

    def __init__(
        self,
        key_id: str | None,
        key_secret: str | None,
        webhook_secret: str | None = None,
        client: razorpay.Client | None = None,
    ):
        self.key_id = key_id
        self.webhook_secret = webhook_secret
        if client is None and key_id and key_secret:
            client = razorpay.Client(auth=(key_id, key_secret))
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "RazorpayGateway":
        return cls(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.razorpay_webhook_secret,
        )

    @property
    def client(self) -> razorpay.Client:
        if self._client is None:
            raise GatewayTransientError(
                "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
            )
        return self._client

    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        description: str,
        metadata: dict,
    ) -> GatewayResult:
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": metadata.get("payment_id", "")[:40],
            "notes": {"description": description[:255], **metadata},
        }
        try:
            order = self.client.order.create(payload)
        except razorpay.errors.BadRequestError as exc:
            logger.warning("Razorpay rejected order creation: %s", exc)
            return GatewayResult(
                success=False,
                status=GatewayIntentStatus.PAYMENT_FAILED,
                error_message=str(exc),
            )
        except (razorpay.errors.ServerError, razorpay.errors.GatewayError, requests.RequestException) as exc:
            raise GatewayTransientError(f"Razorpay unavailable: {exc}") from exc

        return GatewayResult(
            success=True,
            status=GatewayIntentStatus.AWAITING_PAYMENT_METHOD,
            intent_id=order.get("id"),
            extra={"key_id": self.key_id},
        )

    def attach_payment_method(
        self,
        intent_id: str,
        payment_method_id: str,
        signature: str | None = None,
    ) -> GatewayResult:
        """Verifies the checkout signature binding a payment to the order."""
        if not signature:
            return GatewayResult(
                success=False,
                status=GatewayIntentStatus.PAYMENT_FAILED,
                payment_method_id=payment_method_id,
                error_message="Missing payment signature",
            )
        try:
            self.client.utility.verify_payment_signature(
                {
                    "razorpay_order_id": intent_id,
                    "razorpay_payment_id": payment_method_id,
                    "razorpay_signature": signature,
                }
            )
        except razorpay.errors.SignatureVerificationError as exc:
            logger.warning("Razorpay signature mismatch for order %s", intent_id)
            return GatewayResult(
                success=False,
                status=GatewayIntentStatus.PAYMENT_FAILED,
                payment_method_id=payment_method_id,
                error_message=str(exc) or "Invalid payment signature",
            )

        return GatewayResult(
            success=True,
            status=GatewayIntentStatus.PROCESSING,
            payment_method_id=payment_method_id,
            intent_id=intent_id,
        )

    def get_intent_status(self, intent_id: str) -> GatewayResult:
        try:
            order = self.client.order.fetch(intent_id)
            payments = self.client.order.payments(intent_id).get("items", [])
        except razorpay.errors.BadRequestError as exc:
            return GatewayResult(
                success=False,
                status=GatewayIntentStatus.UNKNOWN,
                intent_id=intent_id,
                error_message=str(exc),
            )
        except (razorpay.errors.ServerError, razorpay.errors.GatewayError, requests.RequestException) as exc:
            raise GatewayTransientError(f"Razorpay unavailable: {exc}") from exc

        status = self._map_status(order.get("status"), [p.get("status") for p in payments])
        captured = next((p for p in payments if p.get("status") == "captured"), None)
        return GatewayResult(
            success=status == GatewayIntentStatus.SUCCEEDED,
            status=status,
            payment_method_id=captured.get("id") if captured else None,
            intent_id=intent_id,
        )

    @staticmethod
    def _map_status(order_status: str | None, payment_statuses: list[str | None]) -> GatewayIntentStatus:
        if order_status == "paid" or "captured" in payment_statuses:
            return GatewayIntentStatus.SUCCEEDED
        if "authorized" in payment_statuses:
            return GatewayIntentStatus.PROCESSING
        if order_status == "attempted" and payment_statuses and all(s == "failed" for s in payment_statuses):
            return GatewayIntentStatus.PAYMENT_FAILED
        if order_status == "attempted":
            return GatewayIntentStatus.AWAITING_NEXT_ACTION
        if order_status == "created":
            return GatewayIntentStatus.AWAITING_PAYMENT_METHOD
        return GatewayIntentStatus.UNKNOWN

    def verify_webhook(self, body: bytes, signature: str | None) -> bool:
        if not self.webhook_secret:
            # Unsigned deliveries are accepted only when no secret is configured.
            return True
        if not signature:
            return False
        try:
            self.client.utility.verify_webhook_signature(
                body.decode("utf-8"),
                signature,
                self.webhook_secret,
            )
        except razorpay.errors.SignatureVerificationError:
            return False
        return True
