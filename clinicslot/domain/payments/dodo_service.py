"""Dodo Payments service - consultation checkout, status polling and refunds"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from dodopayments import AsyncDodoPayments  # type: ignore

from ...config import (
    CURRENCY,
    DODO_ADHOC_PRODUCT_ID,
    DODO_PAYMENTS_API_KEY,
    DODO_PAYMENTS_ENVIRONMENT,
    FRONTEND_URL,
)
from ...errors import PaymentNotConfigured, PaymentProviderError

logger = logging.getLogger(__name__)

# Normalized order states
ORDER_PENDING = "pending"
ORDER_SUCCEEDED = "succeeded"
ORDER_FAILED = "failed"

_SUCCEEDED_STATES = {"succeeded", "success", "paid", "completed"}
_FAILED_STATES = {"failed", "cancelled", "canceled", "expired", "rejected"}


@dataclass(frozen=True)
class PaymentOrder:
    order_ref: str
    checkout_url: Optional[str]
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class PaymentStatusResult:
    order_ref: str
    status: str
    gateway_payment_id: Optional[str] = None


@dataclass(frozen=True)
class RefundReceipt:
    gateway_refund_id: Optional[str]
    status: str


def normalize_dodo_environment(env: Optional[str]) -> str:
    """Normalize Dodo environment value to expected format"""
    value = (env or "test_mode").strip().lower()
    if value in {"live", "production", "prod"}:
        return "live_mode"
    if value in {"test", "sandbox", "staging", "dev", "development"}:
        return "test_mode"
    if value in {"test_mode", "live_mode"}:
        return value
    logger.warning(f"Unknown DODO environment '{env}', defaulting to test_mode")
    return "test_mode"


def to_minor_units(amount: Decimal) -> int:
    """Amount in the lowest currency unit (paise / cents)"""
    return int((Decimal(str(amount)) * 100).to_integral_value())


def normalize_order_status(raw: Optional[str]) -> str:
    value = (raw or "").strip().lower()
    if value in _SUCCEEDED_STATES:
        return ORDER_SUCCEEDED
    if value in _FAILED_STATES:
        return ORDER_FAILED
    return ORDER_PENDING


def _field(obj, name: str):
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


class DodoPaymentsService:
    """Payment capability backed by the Dodo Payments API"""

    def __init__(self, api_key: Optional[str] = DODO_PAYMENTS_API_KEY):
        self.api_key = api_key
        self.environment = normalize_dodo_environment(DODO_PAYMENTS_ENVIRONMENT)
        self.product_id = DODO_ADHOC_PRODUCT_ID
        self.client = None

        if not self.api_key:
            logger.warning("DODO_PAYMENTS_API_KEY not set; bookings cannot take payment until configured")
        else:
            try:
                self.client = AsyncDodoPayments(
                    bearer_token=self.api_key,
                    environment=self.environment,
                )
                logger.info(f"Dodo Payments client initialized (env={self.environment})")
            except Exception as e:
                logger.error(f"Failed to initialize Dodo client (env={self.environment}): {e}")
                self.client = None

    def is_available(self) -> bool:
        """Check if Dodo Payments client is available"""
        return self.client is not None and bool(self.product_id)

    def _require_client(self):
        if not self.client:
            raise PaymentNotConfigured("Payment system not configured")
        if not self.product_id:
            raise PaymentNotConfigured("Adhoc product not configured")
        return self.client

    async def create_order(
        self,
        amount: Decimal,
        receipt: str,
        customer_email: Optional[str] = None,
        customer_name: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> PaymentOrder:
        """Create a checkout session for a consultation using the adhoc product"""
        client = self._require_client()

        session_data = {
            "product_cart": [
                {
                    "product_id": self.product_id,
                    "quantity": 1,
                    # Dynamic amount in lowest currency unit
                    "amount": to_minor_units(amount),
                }
            ],
            "customer": {"email": customer_email or "", "name": customer_name or ""},
            "metadata": {"receipt": receipt, **(metadata or {})},
            "return_url": f"{FRONTEND_URL}/appointments/{receipt}/payment",
        }

        try:
            logger.info(f"💳 Creating checkout session for {receipt} ({amount} {CURRENCY})")
            session = await client.checkout_sessions.create(**session_data)
        except Exception as e:
            logger.error(f"❌ Failed to create checkout session for {receipt}: {e}")
            raise PaymentProviderError("Payment provider rejected the order", receipt=receipt) from e

        order_ref = _field(session, "session_id")
        checkout_url = _field(session, "checkout_url")
        if not order_ref:
            logger.error(f"❌ Checkout session for {receipt} returned no session id")
            raise PaymentProviderError("Payment provider returned an incomplete order", receipt=receipt)

        return PaymentOrder(
            order_ref=order_ref, checkout_url=checkout_url, amount=Decimal(str(amount)), currency=CURRENCY
        )

    async def get_order_status(self, order_ref: str) -> PaymentStatusResult:
        """Poll a checkout session for its payment outcome"""
        client = self._require_client()

        try:
            session = await client.checkout_sessions.retrieve(order_ref)
        except Exception as e:
            logger.error(f"❌ Failed to fetch checkout session {order_ref}: {e}")
            raise PaymentProviderError("Could not fetch payment status", order_ref=order_ref) from e

        return PaymentStatusResult(
            order_ref=order_ref,
            status=normalize_order_status(_field(session, "payment_status")),
            gateway_payment_id=_field(session, "payment_id"),
        )

    async def create_refund(self, gateway_payment_id: str, amount: Decimal, reason: str) -> RefundReceipt:
        """Refund part or all of a captured payment"""
        client = self._require_client()

        try:
            logger.info(f"💸 Requesting refund of {amount} for payment {gateway_payment_id}")
            refund = await client.refunds.create(
                payment_id=gateway_payment_id,
                reason=reason,
                items=[{"item_id": self.product_id, "amount": to_minor_units(amount)}],
            )
        except Exception as e:
            logger.error(f"❌ Refund failed for payment {gateway_payment_id}: {e}")
            raise PaymentProviderError("Refund request failed", payment_id=gateway_payment_id) from e

        return RefundReceipt(
            gateway_refund_id=_field(refund, "refund_id"),
            status=normalize_order_status(_field(refund, "status")),
        )

    async def get_refund_status(self, gateway_refund_id: str) -> RefundReceipt:
        """Poll a submitted refund for its outcome"""
        client = self._require_client()

        try:
            refund = await client.refunds.retrieve(gateway_refund_id)
        except Exception as e:
            logger.error(f"❌ Failed to fetch refund {gateway_refund_id}: {e}")
            raise PaymentProviderError("Could not fetch refund status", refund_id=gateway_refund_id) from e

        return RefundReceipt(
            gateway_refund_id=gateway_refund_id,
            status=normalize_order_status(_field(refund, "status")),
        )


_payment_service: Optional[DodoPaymentsService] = None


def get_payment_service() -> DodoPaymentsService:
    """Process-wide payment client, created on first use"""
    global _payment_service
    if _payment_service is None:
        _payment_service = DodoPaymentsService()
    return _payment_service
