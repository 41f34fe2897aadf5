"""
Automated appointment housekeeping
Handles confirmed → no_show once the grace period has passed
Sends day-before reminders and settles recorded refunds with the payment provider
"""

import logging
from datetime import timedelta

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..config import NO_SHOW_GRACE_MINUTES, REMINDER_LEAD_HOURS
from ..domain.appointments.lifecycle import AppointmentLifecycle, AppointmentStatus
from ..domain.appointments.repository import AppointmentRepository
from ..domain.payments.dodo_service import ORDER_FAILED, ORDER_SUCCEEDED
from ..domain.refunds.repository import RefundRepository
from ..errors import InvalidStateTransition, PaymentNotConfigured, PaymentProviderError
from ..models import Appointment, Payment, RefundRecord, RefundStatus

logger = logging.getLogger(__name__)


def mark_no_shows(db: Session, clock, grace_minutes: int = NO_SHOW_GRACE_MINUTES) -> dict:
    """
    Confirmed appointments whose start passed by more than the grace period
    without a consultation being started become no_show.

    Returns:
        dict: Summary of status changes made
    """
    summary = {"marked_no_show": 0, "skipped": 0}
    cutoff = clock.now() - timedelta(minutes=grace_minutes)
    lifecycle = AppointmentLifecycle(db, clock)

    candidates = (
        db.query(Appointment)
        .filter(
            Appointment.status == AppointmentStatus.CONFIRMED.value,
            Appointment.scheduled_start <= cutoff,
            Appointment.consultation_started_at.is_(None),
        )
        .all()
    )

    for appointment in candidates:
        try:
            lifecycle.mark_no_show(appointment)
            db.commit()
            summary["marked_no_show"] += 1
        except InvalidStateTransition:
            db.rollback()
            summary["skipped"] += 1

    if summary["marked_no_show"]:
        logger.info(f"📊 No-show automation summary: {summary}")
    else:
        logger.debug("ℹ️ No appointments to mark as no-show")
    return summary


async def send_reminders(db: Session, clock, notifier, lead_hours: int = REMINDER_LEAD_HOURS) -> dict:
    """Remind patients of confirmed appointments starting within ``lead_hours``"""
    summary = {"reminders_sent": 0, "claimed_elsewhere": 0}
    now = clock.now()

    upcoming = AppointmentRepository.get_appointments_by_status(
        db,
        AppointmentStatus.CONFIRMED.value,
        start_before=now + timedelta(hours=lead_hours),
        start_after=now,
    )

    for appointment in upcoming:
        if appointment.reminder_sent:
            continue

        # Claim before sending so two workers never remind twice
        claimed = db.execute(
            update(Appointment)
            .where(Appointment.id == appointment.id, Appointment.reminder_sent.is_(False))
            .values(reminder_sent=True)
            .execution_options(synchronize_session=False)
        ).rowcount
        db.commit()

        if not claimed:
            summary["claimed_elsewhere"] += 1
            continue

        await notifier.appointment_reminder(appointment)
        summary["reminders_sent"] += 1

    if summary["reminders_sent"]:
        logger.info(f"📊 Reminder summary: {summary}")
    return summary


async def settle_refunds(db: Session, clock, payments, limit: int = 50) -> dict:
    """
    Drive refunds to a final state with the payment provider.

    Refunds already submitted are polled first; pending ones are then claimed
    (pending → processing) before the provider call so a concurrent worker
    cannot submit them twice. A payment is marked refunded only once its full
    refund has completed.
    """
    summary = {"settled": 0, "processing": 0, "failed": 0}

    if not payments.is_available():
        logger.warning("⚠️ Payment provider not configured; pending refunds left unsettled")
        return summary

    for refund in RefundRepository.get_processing_refunds(db, limit=limit):
        try:
            receipt = await payments.get_refund_status(refund.gateway_refund_id)
        except PaymentProviderError as e:
            logger.warning(f"⚠️ Could not poll refund {refund.id}: {e.message}")
            summary["processing"] += 1
            continue
        _apply_refund_receipt(db, clock, refund, receipt, summary)

    for refund in RefundRepository.get_pending_refunds(db, limit=limit):
        now = clock.now()
        claimed = db.execute(
            update(RefundRecord)
            .where(RefundRecord.id == refund.id, RefundRecord.status == RefundStatus.PENDING.value)
            .values(status=RefundStatus.PROCESSING.value, processed_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        db.commit()
        if not claimed:
            continue

        db.refresh(refund)
        payment = db.get(Payment, refund.payment_id) if refund.payment_id else None
        if payment is None or not payment.gateway_payment_id:
            _fail_refund(db, refund, "no captured payment to refund")
            summary["failed"] += 1
            continue

        try:
            receipt = await payments.create_refund(
                payment.gateway_payment_id,
                refund.amount,
                reason=refund.reason or f"{refund.refund_type} refund",
            )
        except (PaymentNotConfigured, PaymentProviderError) as e:
            _fail_refund(db, refund, e.message)
            summary["failed"] += 1
            continue

        refund.gateway_refund_id = receipt.gateway_refund_id
        db.commit()
        logger.info(f"💸 Refund {refund.id} sent to provider ({receipt.status}): {refund.amount}")
        _apply_refund_receipt(db, clock, refund, receipt, summary)

    if any(summary.values()):
        logger.info(f"📊 Refund settlement summary: {summary}")
    return summary


def _apply_refund_receipt(db: Session, clock, refund: RefundRecord, receipt, summary: dict) -> None:
    if receipt.status == ORDER_SUCCEEDED:
        if RefundRepository.mark_completed(db, refund, clock.now()):
            db.commit()
            summary["settled"] += 1
            logger.info(f"✅ Refund {refund.id} completed: {refund.amount}")
    elif receipt.status == ORDER_FAILED:
        _fail_refund(db, refund, "refund rejected by payment provider")
        summary["failed"] += 1
    else:
        summary["processing"] += 1


def _fail_refund(db: Session, refund: RefundRecord, reason: str) -> None:
    RefundRepository.mark_failed(db, refund, reason)
    db.commit()
    logger.error(f"❌ Refund {refund.id} failed: {reason}")
