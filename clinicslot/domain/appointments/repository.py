"""Appointment repository - Database operations for appointments and their payments"""

import secrets
import time
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from ...models import Appointment, Payment, PaymentStatus, ReservationStatus, SlotReservation

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def generate_booking_id() -> str:
    """Human-friendly booking reference, e.g. CSLQ4Z8K1A9F3"""
    return f"CS{_to_base36(int(time.time() * 1000))}{secrets.token_hex(2).upper()}"


def generate_holder_token() -> str:
    return secrets.token_hex(16)


class AppointmentRepository:
    """Repository for appointment database operations"""

    @staticmethod
    def get_appointment(db: Session, appointment_id: int, refresh: bool = False) -> Optional[Appointment]:
        query = db.query(Appointment).filter(Appointment.id == appointment_id)
        if refresh:
            query = query.populate_existing()
        return query.first()

    @staticmethod
    def get_by_booking_id(db: Session, booking_id: str) -> Optional[Appointment]:
        return db.query(Appointment).filter(Appointment.booking_id == booking_id).first()

    @staticmethod
    def get_by_reservation_token(db: Session, holder_token: str) -> Optional[Appointment]:
        return (
            db.query(Appointment)
            .filter(Appointment.reservation_token == holder_token)
            .populate_existing()
            .first()
        )

    @staticmethod
    def create_appointment(db: Session, **appointment_data) -> Appointment:
        """Add an appointment to the caller's transaction"""
        appointment = Appointment(**appointment_data)
        db.add(appointment)
        db.flush()
        return appointment

    @staticmethod
    def get_appointments_by_status(
        db: Session,
        status: str,
        start_before: Optional[datetime] = None,
        start_after: Optional[datetime] = None,
        limit: int = 200,
    ) -> list[Appointment]:
        query = db.query(Appointment).filter(Appointment.status == status)
        if start_before is not None:
            query = query.filter(Appointment.scheduled_start <= start_before)
        if start_after is not None:
            query = query.filter(Appointment.scheduled_start > start_after)
        return query.order_by(Appointment.scheduled_start.asc()).limit(limit).all()

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    @staticmethod
    def create_payment(db: Session, **payment_data) -> Payment:
        payment = Payment(**payment_data)
        db.add(payment)
        db.flush()
        return payment

    @staticmethod
    def get_payment_by_order_ref(db: Session, order_ref: str) -> Optional[Payment]:
        return (
            db.query(Payment)
            .filter(Payment.order_ref == order_ref)
            .populate_existing()
            .first()
        )

    @staticmethod
    def get_open_payment(db: Session, appointment_id: int) -> Optional[Payment]:
        """Latest payment still waiting for the patient"""
        return (
            db.query(Payment)
            .filter(
                Payment.appointment_id == appointment_id,
                Payment.status == PaymentStatus.PENDING.value,
            )
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .first()
        )

    @staticmethod
    def get_latest_payment(db: Session, appointment_id: int) -> Optional[Payment]:
        return (
            db.query(Payment)
            .filter(Payment.appointment_id == appointment_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .first()
        )

    @staticmethod
    def get_stale_pending_payments(
        db: Session, created_before: datetime, polled_before: datetime, now: datetime, limit: int = 100
    ) -> list[Payment]:
        """
        Pending payments old enough that a webhook should have arrived.

        Orders polled after ``polled_before`` are skipped until their hold
        lapses; a lapsed hold always gets a last poll before it is expired.
        """
        return (
            db.query(Payment)
            .join(Appointment, Payment.appointment_id == Appointment.id)
            .outerjoin(
                SlotReservation,
                (SlotReservation.holder_token == Appointment.reservation_token)
                & (SlotReservation.status == ReservationStatus.HELD.value),
            )
            .filter(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.created_at <= created_before,
                Appointment.status == "pending_payment",
                or_(
                    Payment.last_polled_at.is_(None),
                    Payment.last_polled_at <= polled_before,
                    SlotReservation.expires_at <= now,
                ),
            )
            .order_by(Payment.created_at.asc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def close_open_payments(db: Session, appointment_id: int, status: PaymentStatus, reason: str) -> int:
        result = db.execute(
            update(Payment)
            .where(
                Payment.appointment_id == appointment_id,
                Payment.status == PaymentStatus.PENDING.value,
            )
            .values(status=status.value, failure_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    def move_payments(db: Session, from_appointment_id: int, to_appointment_id: int) -> int:
        """Re-point payments when an appointment is carried over by a reschedule"""
        result = db.execute(
            update(Payment)
            .where(Payment.appointment_id == from_appointment_id)
            .values(appointment_id=to_appointment_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
