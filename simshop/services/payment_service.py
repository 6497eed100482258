"""
Payment Service - Razorpay Integration

Handles the payment gateway side of checkout:
- Create gateway orders (payment sessions) carrying our order id in notes
- Verify webhook signatures
- Normalize webhook payloads into GatewayEvent
- Refund by payment reference
"""

import asyncio
import hashlib
import hmac
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any

import razorpay
from pydantic import BaseModel, Field

from simshop.config import settings

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Gateway misconfiguration, rejection or outage. Surfaced to the caller."""

    def __init__(self, status_code: int, message: str, details: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        self.message = message
        self.details = details or {}
        super().__init__(message)


class GatewayEvent(BaseModel):
    """A payment confirmation, independent of the gateway that sent it."""
    event_type: str = "payment.captured"
    payment_ref: str
    order_id: Optional[uuid.UUID] = None
    amount_cents: int  # Charged amount, minor units of `currency`
    currency: str
    email: Optional[str] = None
    name: Optional[str] = None
    plan_id: Optional[str] = None
    fx_rate: Optional[str] = None  # Rate per USD in effect at session creation
    referral_code: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentSession(BaseModel):
    """What the storefront needs to open the gateway checkout."""
    session_id: str
    order_id: uuid.UUID
    amount_cents: int
    currency: str
    key_id: str
    notes: Dict[str, str] = Field(default_factory=dict)


class RefundResult(BaseModel):
    refund_id: str
    payment_ref: str
    amount_cents: int
    status: str


class PaymentGateway(ABC):
    """Gateway operations used by checkout, reconciliation and refunds."""

    @abstractmethod
    async def create_session(
        self,
        order_id: uuid.UUID,
        amount_cents: int,
        currency: str,
        notes: Dict[str, str],
    ) -> PaymentSession:
        pass

    @abstractmethod
    async def refund(self, payment_ref: str, amount_cents: int, notes: Optional[Dict[str, str]] = None) -> RefundResult:
        pass

    @abstractmethod
    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        pass

    @abstractmethod
    def parse_webhook(self, payload: Dict[str, Any]) -> Optional[GatewayEvent]:
        """GatewayEvent for payment confirmations, None for anything else."""
        pass


class RazorpayGateway(PaymentGateway):
    """Razorpay implementation. SDK calls are blocking, so they run in a thread."""

    CONFIRMATION_EVENTS = ("payment.captured", "order.paid")

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        webhook_secret: Optional[str] = None,
    ):
        self.key_id = key_id if key_id is not None else settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret if key_secret is not None else settings.RAZORPAY_KEY_SECRET
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.RAZORPAY_WEBHOOK_SECRET
        self.client = razorpay.Client(auth=(self.key_id, self.key_secret))

    def _require_configured(self) -> None:
        if not self.key_id or not self.key_secret:
            raise GatewayError(503, "Payment gateway is not configured")

    async def create_session(
        self,
        order_id: uuid.UUID,
        amount_cents: int,
        currency: str,
        notes: Dict[str, str],
    ) -> PaymentSession:
        self._require_configured()
        order_data = {
            "amount": amount_cents,
            "currency": currency,
            "receipt": str(order_id),
            "notes": notes,
        }
        try:
            gateway_order = await asyncio.to_thread(self.client.order.create, data=order_data)
        except Exception as e:
            logger.error(f"Failed to create Razorpay order for {order_id}: {e}")
            raise GatewayError(502, f"Payment session could not be created: {e}")

        logger.info(f"Created Razorpay order {gateway_order['id']} for order {order_id}")
        return PaymentSession(
            session_id=gateway_order["id"],
            order_id=order_id,
            amount_cents=amount_cents,
            currency=currency,
            key_id=self.key_id,
            notes=gateway_order.get("notes") or notes,
        )

    async def refund(self, payment_ref: str, amount_cents: int, notes: Optional[Dict[str, str]] = None) -> RefundResult:
        self._require_configured()
        try:
            refund = await asyncio.to_thread(
                self.client.payment.refund,
                payment_ref,
                {"amount": amount_cents, "notes": notes or {}},
            )
        except Exception as e:
            logger.error(f"Refund failed for payment {payment_ref}: {e}")
            raise GatewayError(502, f"Refund failed: {e}")

        logger.info(f"Refund initiated: {refund['id']} for payment {payment_ref}")
        return RefundResult(
            refund_id=refund["id"],
            payment_ref=payment_ref,
            amount_cents=refund.get("amount", amount_cents),
            status=refund.get("status", "processed"),
        )

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        if not self.webhook_secret:
            logger.warning("RAZORPAY_WEBHOOK_SECRET not configured, rejecting webhook")
            return False

        expected_signature = hmac.new(
            self.webhook_secret.encode(),
            body,
            hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected_signature, signature or "")

    def parse_webhook(self, payload: Dict[str, Any]) -> Optional[GatewayEvent]:
        event = payload.get("event")
        if event not in self.CONFIRMATION_EVENTS:
            return None

        body = payload.get("payload") or {}
        payment = (body.get("payment") or {}).get("entity") or {}
        gateway_order = (body.get("order") or {}).get("entity") or {}
        if not payment.get("id"):
            logger.warning(f"Razorpay {event} without payment entity")
            return None

        notes: Dict[str, Any] = {}
        notes.update(gateway_order.get("notes") or {})
        notes.update(payment.get("notes") or {})

        order_id = None
        raw_order_id = notes.get("order_id")
        if raw_order_id:
            try:
                order_id = uuid.UUID(str(raw_order_id))
            except ValueError:
                logger.warning(f"Razorpay {event} carried malformed order_id note: {raw_order_id}")

        return GatewayEvent(
            event_type=event,
            payment_ref=payment["id"],
            order_id=order_id,
            amount_cents=int(payment.get("amount") or gateway_order.get("amount_paid") or 0),
            currency=(payment.get("currency") or gateway_order.get("currency") or "USD").upper(),
            email=payment.get("email") or notes.get("email"),
            name=notes.get("customer_name"),
            plan_id=notes.get("plan_code"),
            fx_rate=notes.get("fx_rate"),
            referral_code=notes.get("referral_code"),
            metadata={
                "gateway_order_id": payment.get("order_id") or gateway_order.get("id"),
                "amount_usd_cents": notes.get("amount_usd_cents"),
            },
        )


_gateway: Optional[PaymentGateway] = None


def get_payment_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = RazorpayGateway()
    return _gateway
