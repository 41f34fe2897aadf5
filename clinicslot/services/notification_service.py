"""
Unified Notification Service
Sends appointment confirmed / cancelled / reminder events over email (Resend) and SMS (Twilio).
Delivery failures are logged and never raised: a state transition is never rolled back
because a message could not be sent.
"""

import logging
from typing import Optional

import httpx
import resend

from ..config import (
    EMAIL_FROM_ADDRESS,
    RESEND_API_KEY,
    TWILIO_ACCOUNT_SID,
    TWILIO_AUTH_TOKEN,
    TWILIO_FROM_NUMBER,
)
from ..shared.validators import validate_e164_phone

logger = logging.getLogger(__name__)

resend.api_key = RESEND_API_KEY

APPOINTMENT_CONFIRMED = "appointment_confirmed"
APPOINTMENT_CANCELLED = "appointment_cancelled"
APPOINTMENT_REMINDER = "appointment_reminder"

TEMPLATES = {
    APPOINTMENT_CONFIRMED: {
        "subject": "Appointment confirmed - {booking_id}",
        "body": (
            "Hi {patient_name}, your appointment with {doctor_name} on {date} at {time} "
            "is confirmed. Booking ID: {booking_id}."
        ),
    },
    APPOINTMENT_CANCELLED: {
        "subject": "Appointment cancelled - {booking_id}",
        "body": (
            "Hi {patient_name}, your appointment with {doctor_name} on {date} at {time} "
            "has been cancelled. {refund_line}"
        ),
    },
    APPOINTMENT_REMINDER: {
        "subject": "Reminder: appointment tomorrow - {booking_id}",
        "body": (
            "Hi {patient_name}, this is a reminder of your appointment with {doctor_name} "
            "on {date} at {time}. Booking ID: {booking_id}."
        ),
    },
}


def render(notification_type: str, variables: dict) -> tuple[str, str]:
    template = TEMPLATES[notification_type]
    return template["subject"].format(**variables), template["body"].format(**variables)


def appointment_variables(appointment, refund=None) -> dict:
    doctor = getattr(appointment, "doctor", None)
    refund_line = ""
    if refund is not None and refund.amount and refund.amount > 0:
        refund_line = f"A refund of {refund.amount} ({refund.percentage}%) will be processed."
    elif refund is not None:
        refund_line = "No refund applies to this cancellation."

    return {
        "patient_name": appointment.patient_name or "there",
        "doctor_name": doctor.full_name if doctor else "your doctor",
        "date": appointment.scheduled_start.strftime("%d %b %Y"),
        "time": appointment.scheduled_start.strftime("%H:%M"),
        "booking_id": appointment.booking_id,
        "refund_line": refund_line,
    }


async def send_email(to_email: str, subject: str, body: str) -> None:
    if not RESEND_API_KEY:
        raise RuntimeError("RESEND_API_KEY not configured")

    email_data = {
        "from": EMAIL_FROM_ADDRESS,
        "to": [to_email],
        "subject": subject,
        "html": f"<p>{body}</p>",
    }
    response = resend.Emails.send(email_data)
    logger.debug(f"Resend response: {response}")


async def send_sms(to_phone: str, message_body: str) -> tuple[bool, Optional[str]]:
    """Send SMS via the Twilio REST API"""
    if not (TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER):
        return False, "Twilio not configured"

    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            response = await client.post(
                f"https://api.twilio.com/2010-04-01/Accounts/{TWILIO_ACCOUNT_SID}/Messages.json",
                auth=(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN),
                data={"To": to_phone, "From": TWILIO_FROM_NUMBER, "Body": message_body},
            )
        if response.status_code in (200, 201):
            return True, None
        return False, f"Twilio returned {response.status_code}: {response.text[:200]}"
    except httpx.HTTPError as e:
        return False, str(e)


async def send_notification(
    recipient_email: Optional[str],
    recipient_phone: Optional[str],
    recipient_name: str,
    notification_type: str,
    email_func,
    sms_func,
    email_kwargs: dict,
    sms_kwargs: dict,
) -> dict:
    """
    Unified notification sender that handles both email and SMS

    Returns:
        Dict with email_sent and sms_sent status
    """
    result = {"email_sent": False, "sms_sent": False, "email_error": None, "sms_error": None}

    if recipient_email:
        try:
            logger.info(f"📧 Sending {notification_type} email to {recipient_email}")
            await email_func(**email_kwargs)
            result["email_sent"] = True
            logger.info(f"✅ {notification_type} email sent successfully to {recipient_email}")
        except Exception as e:
            result["email_error"] = str(e)
            logger.error(f"❌ Failed to send {notification_type} email to {recipient_email}: {e}")
    else:
        logger.debug(f"⚠️ No email address for {notification_type} notification to {recipient_name}")

    if recipient_phone:
        try:
            formatted_phone = validate_e164_phone(recipient_phone)
            logger.info(f"📱 Attempting to send {notification_type} SMS to {formatted_phone}")
            success, error = await sms_func(to_phone=formatted_phone, **sms_kwargs)
            if success:
                result["sms_sent"] = True
                logger.info(f"✅ {notification_type} SMS sent successfully to {formatted_phone}")
            else:
                result["sms_error"] = error
                logger.warning(f"⚠️ {notification_type} SMS not sent to {formatted_phone}: {error}")
        except Exception as e:
            result["sms_error"] = str(e)
            logger.error(f"❌ Failed to send {notification_type} SMS to {recipient_name}: {e}")

    return result


class NotificationService:
    """Fire-and-forget appointment notifications"""

    def __init__(self, email_func=send_email, sms_func=send_sms):
        self.email_func = email_func
        self.sms_func = sms_func

    async def notify(self, notification_type: str, appointment, refund=None) -> dict:
        try:
            subject, body = render(notification_type, appointment_variables(appointment, refund))
        except Exception as e:
            logger.error(f"❌ Could not render {notification_type} for appointment {appointment.id}: {e}")
            return {"email_sent": False, "sms_sent": False, "email_error": str(e), "sms_error": None}

        return await send_notification(
            recipient_email=appointment.patient_email,
            recipient_phone=appointment.patient_phone,
            recipient_name=appointment.patient_name or appointment.patient_id,
            notification_type=notification_type,
            email_func=self.email_func,
            sms_func=self.sms_func,
            email_kwargs={"to_email": appointment.patient_email, "subject": subject, "body": body},
            sms_kwargs={"message_body": body},
        )

    async def appointment_confirmed(self, appointment) -> dict:
        return await self.notify(APPOINTMENT_CONFIRMED, appointment)

    async def appointment_cancelled(self, appointment, refund=None) -> dict:
        return await self.notify(APPOINTMENT_CANCELLED, appointment, refund)

    async def appointment_reminder(self, appointment) -> dict:
        return await self.notify(APPOINTMENT_REMINDER, appointment)


def get_notification_service() -> NotificationService:
    """Dependency injection for NotificationService"""
    return NotificationService()
