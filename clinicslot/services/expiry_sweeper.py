"""
Expiry sweeper - releases holds whose payment never arrived.

Runs every minute from the worker. Before expiring anything it polls the
payment provider for orders that have been pending long enough that a webhook
should have arrived, so a lost webhook does not cost a patient their slot.
Every item is handled in its own transaction; a failing row is logged and the
sweep moves on.
"""

import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from ..config import PAYMENT_POLL_AFTER_MINUTES, PAYMENT_POLL_INTERVAL_MINUTES
from ..domain.appointments.lifecycle import AppointmentStatus
from ..domain.appointments.repository import AppointmentRepository
from ..domain.appointments.service import PAYMENT_TIMEOUT_REASON, AppointmentService
from ..domain.payments.dodo_service import ORDER_FAILED, ORDER_SUCCEEDED
from ..domain.refunds.policy import CancellationActor
from ..errors import InvalidStateTransition
from ..models import PaymentStatus, ReservationStatus, SlotReservation

logger = logging.getLogger(__name__)

EXPIRED = "expired"
SKIPPED = "skipped"
ORPHAN_RELEASED = "orphan_released"
REPAIRED = "repaired"


class ExpirySweeper:
    def __init__(self, db: Session, clock, payments=None, notifier=None, batch_size: int = 100):
        self.db = db
        self.clock = clock
        self.appointments = AppointmentService(db, clock, payments=payments, notifier=notifier)
        self.repo = AppointmentRepository()
        self.batch_size = batch_size

    @property
    def payments(self):
        return self.appointments.payments

    @property
    def reservations(self):
        return self.appointments.reservations

    async def run(self) -> dict:
        summary = {
            "polled": 0,
            "confirmed_by_poll": 0,
            "failed_by_poll": 0,
            "expired": 0,
            "orphans_released": 0,
            "repaired": 0,
            "skipped": 0,
            "errors": 0,
        }
        await self.poll_pending_payments(summary)
        await self.expire_reservations(summary)

        if any(v for k, v in summary.items() if k != "polled"):
            logger.info(f"📊 Expiry sweep summary: {summary}")
        return summary

    async def poll_pending_payments(self, summary: dict) -> None:
        """Ask the provider about orders whose webhook is overdue"""
        if not self.payments.is_available():
            logger.debug("ℹ️ Payment provider not configured, skipping payment polling")
            return

        now = self.clock.now()
        due = self.repo.get_stale_pending_payments(
            self.db,
            created_before=now - timedelta(minutes=PAYMENT_POLL_AFTER_MINUTES),
            polled_before=now - timedelta(minutes=PAYMENT_POLL_INTERVAL_MINUTES),
            now=now,
            limit=self.batch_size,
        )
        for payment in due:
            order_ref = payment.order_ref
            try:
                result = await self.payments.get_order_status(order_ref)
                summary["polled"] += 1

                if result.status == ORDER_SUCCEEDED:
                    await self.appointments.handle_payment_succeeded(
                        order_ref, gateway_payment_id=result.gateway_payment_id
                    )
                    summary["confirmed_by_poll"] += 1
                elif result.status == ORDER_FAILED:
                    self.appointments.handle_payment_failed(order_ref, reason="reported failed on poll")
                    summary["failed_by_poll"] += 1
                else:
                    payment.last_polled_at = self.clock.now()
                    self.db.commit()
            except Exception as e:
                self.db.rollback()
                summary["errors"] += 1
                logger.error(f"❌ Polling payment {order_ref} failed: {e}")

    async def expire_reservations(self, summary: dict) -> None:
        expired = self.reservations.find_expired(limit=self.batch_size)
        for reservation in expired:
            token = reservation.holder_token
            try:
                outcome = await self.expire_one(reservation)
            except Exception as e:
                self.db.rollback()
                summary["errors"] += 1
                logger.error(f"❌ Failed to expire reservation {token}: {e}")
                continue

            key = {
                EXPIRED: "expired",
                ORPHAN_RELEASED: "orphans_released",
                REPAIRED: "repaired",
            }.get(outcome, "skipped")
            summary[key] += 1

    async def expire_one(self, reservation: SlotReservation) -> str:
        """Expire a single lapsed hold and cancel its unpaid appointment"""
        slot_id, token = reservation.slot_id, reservation.holder_token
        appointment = self.repo.get_by_reservation_token(self.db, token)

        if appointment is None:
            self.reservations.release(slot_id, token, reason="orphaned hold")
            self.db.commit()
            logger.warning(f"⚠️ Released orphaned hold {token} on slot {slot_id}")
            return ORPHAN_RELEASED

        if appointment.status == AppointmentStatus.CONFIRMED.value:
            # Paid but the hold was never flipped; make the occupancy permanent
            self.reservations.confirm(slot_id, token)
            self.db.commit()
            logger.warning(f"⚠️ Repaired unconfirmed hold {token} for paid appointment {appointment.id}")
            return REPAIRED

        if appointment.status != AppointmentStatus.PENDING_PAYMENT.value:
            self.reservations.release(slot_id, token, reason=f"appointment {appointment.status}")
            self.db.commit()
            return SKIPPED

        try:
            self.appointments.lifecycle.cancel(
                appointment, CancellationActor.SYSTEM, reason=PAYMENT_TIMEOUT_REASON
            )
        except InvalidStateTransition:
            # Payment confirmed between the read and the update
            self.db.rollback()
            logger.info(f"🔄 Appointment {appointment.id} changed during expiry, leaving it")
            return SKIPPED

        self.reservations.release(slot_id, token, reason=PAYMENT_TIMEOUT_REASON)
        self.repo.close_open_payments(self.db, appointment.id, PaymentStatus.EXPIRED, PAYMENT_TIMEOUT_REASON)
        self.db.commit()

        logger.info(f"⏰ Appointment {appointment.booking_id} expired unpaid, slot {slot_id} released")
        await self.appointments.notifier.appointment_cancelled(appointment)
        return EXPIRED


def expired_hold_count(db: Session, clock) -> int:
    """Held reservations already past their window, for health reporting"""
    return (
        db.query(SlotReservation)
        .filter(
            SlotReservation.status == ReservationStatus.HELD.value,
            SlotReservation.expires_at <= clock.now(),
        )
        .count()
    )

