"""Payment webhook router - applies Dodo payment outcomes to appointments"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from ...config import DODO_PAYMENTS_WEBHOOK_SECRET
from ...errors import BookingError, NotFoundError
from ...webhook_security import verify_dodo_webhook
from ..appointments.router import get_appointment_service
from ..appointments.service import AppointmentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

SUCCEEDED_EVENTS = ("payment.succeeded", "checkout.session.completed")
FAILED_EVENTS = ("payment.failed", "checkout.session.failed", "checkout.session.expired")
REFUND_SUCCEEDED_EVENTS = ("refund.succeeded", "refund.processed")
REFUND_FAILED_EVENTS = ("refund.failed",)


def get_webhook_secret() -> str:
    return DODO_PAYMENTS_WEBHOOK_SECRET


def extract_order_reference(data: dict) -> tuple:
    """(order_ref, booking_id, gateway_payment_id) from a webhook data object"""
    meta = data.get("metadata") or {}
    order_ref = data.get("checkout_session_id") or data.get("session_id")
    booking_id = meta.get("booking_id") or meta.get("receipt")
    return order_ref, booking_id, data.get("payment_id")


@router.post("/payments")
async def payment_webhook(
    request: Request,
    secret: str = Depends(get_webhook_secret),
    service: AppointmentService = Depends(get_appointment_service),
):
    """
    Payment provider webhook.

    Duplicate deliveries are harmless: an already-applied payment is ignored.
    """
    if not secret:
        logger.error("❌ DODO_PAYMENTS_WEBHOOK_SECRET not configured; rejecting webhook")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    _, raw_body = await verify_dodo_webhook(request, secret, raise_on_failure=True)

    try:
        event = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error(f"Failed to parse webhook JSON: {e}")
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e

    event_type = event.get("type")
    data = event.get("data") or {}
    order_ref, booking_id, gateway_payment_id = extract_order_reference(data)
    logger.info(f"🔔 Payment webhook type={event_type} order={order_ref} booking={booking_id}")

    try:
        if event_type in SUCCEEDED_EVENTS:
            appointment = await service.handle_payment_succeeded(
                order_ref, gateway_payment_id=gateway_payment_id, booking_id=booking_id
            )
            return {"status": "received", "appointment_status": appointment.status}

        if event_type in FAILED_EVENTS:
            service.handle_payment_failed(
                order_ref, reason=data.get("error_message") or event_type, booking_id=booking_id
            )
            return {"status": "received"}

        if event_type in REFUND_SUCCEEDED_EVENTS or event_type in REFUND_FAILED_EVENTS:
            refund = service.handle_refund_outcome(
                data.get("refund_id"),
                succeeded=event_type in REFUND_SUCCEEDED_EVENTS,
                reason=data.get("error_message") or event_type,
            )
            return {"status": "received", "refund_status": refund.status}
    except NotFoundError:
        # Not one of our orders or refunds; acknowledge so the provider stops retrying
        logger.warning(f"⚠️ Webhook {event_type} for unknown order {order_ref}, ignoring")
        return {"status": "ignored"}
    except BookingError as e:
        logger.error(f"❌ Error applying webhook {event_type} for {order_ref}: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.to_dict()) from e

    logger.info(f"Event {event_type} received and ignored (no handler)")
    return {"status": "ignored"}
