"""
Appointment lifecycle state machine.

    pending_payment -> confirmed | cancelled
    confirmed       -> cancelled | completed | no_show
    cancelled, completed, no_show are terminal

Each transition is a conditional UPDATE guarded on the status the caller saw,
so racing writers (payment webhook vs. cancel vs. expiry sweep) cannot both win.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ...errors import InvalidStateTransition
from ...models import Appointment, Payment, PaymentStatus, RefundRecord
from ..refunds.policy import CancellationActor, compute_refund
from ..refunds.repository import RefundRepository

logger = logging.getLogger(__name__)


class AppointmentStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


TRANSITIONS: dict[AppointmentStatus, frozenset] = {
    AppointmentStatus.PENDING_PAYMENT: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW}
    ),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}

TERMINAL_STATES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)
ACTIVE_STATES = frozenset({AppointmentStatus.PENDING_PAYMENT, AppointmentStatus.CONFIRMED})


def can_transition(current: str, target: str) -> bool:
    return AppointmentStatus(target) in TRANSITIONS[AppointmentStatus(current)]


def validate_transition(current: str, target: str) -> None:
    """Raise InvalidStateTransition naming both states when the move is not allowed"""
    if not can_transition(current, target):
        raise InvalidStateTransition(AppointmentStatus(current).value, AppointmentStatus(target).value)


class AppointmentLifecycle:
    """Applies status transitions to persisted appointments"""

    def __init__(self, db: Session, clock):
        self.db = db
        self.clock = clock
        self.refunds = RefundRepository()

    def transition(self, appointment: Appointment, target: AppointmentStatus, **fields) -> Appointment:
        current = appointment.status
        validate_transition(current, target)

        result = self.db.execute(
            update(Appointment)
            .where(Appointment.id == appointment.id, Appointment.status == current)
            .values(status=target.value, **fields)
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(appointment)

        if result.rowcount == 0:
            # Someone else moved the appointment first
            logger.warning(
                f"⚠️ Appointment {appointment.id} changed concurrently: "
                f"expected {current}, found {appointment.status}"
            )
            raise InvalidStateTransition(appointment.status, target.value)

        logger.info(f"🔄 Appointment {appointment.id} transitioned: {current} → {target.value}")
        return appointment

    def confirm(self, appointment: Appointment) -> bool:
        """
        Mark a pending appointment paid.

        Returns False when it was already confirmed (duplicate payment signal).
        """
        if appointment.status == AppointmentStatus.CONFIRMED.value:
            logger.info(f"🔄 Appointment {appointment.id} already confirmed, ignoring duplicate")
            return False

        self.transition(appointment, AppointmentStatus.CONFIRMED, confirmed_at=self.clock.now())
        return True

    def cancel(
        self,
        appointment: Appointment,
        cancelled_by: str,
        reason: Optional[str] = None,
        cancelled_by_id: Optional[str] = None,
        with_refund: bool = True,
    ) -> Optional[RefundRecord]:
        """
        Cancel an active appointment.

        Cancelling a confirmed (paid) appointment records its refund in the same
        transaction; a pending one has nothing to refund.
        """
        now = self.clock.now()
        was_confirmed = appointment.status == AppointmentStatus.CONFIRMED.value

        self.transition(
            appointment,
            AppointmentStatus.CANCELLED,
            cancelled_at=now,
            cancelled_by=str(getattr(cancelled_by, "value", cancelled_by)),
            cancelled_by_id=cancelled_by_id,
            cancellation_reason=reason,
        )

        if not (was_confirmed and with_refund):
            return None
        return self.record_refund(appointment, cancelled_by, reason, now)

    def record_refund(
        self, appointment: Appointment, cancelled_by, reason: Optional[str], now: datetime, decision=None
    ) -> RefundRecord:
        decision = decision or compute_refund(appointment, cancelled_by, now)
        payment = self._captured_payment(appointment.id)
        refund = self.refunds.create_refund(
            self.db,
            appointment_id=appointment.id,
            payment_id=payment.id if payment else None,
            decision=decision,
            cancelled_by=str(getattr(cancelled_by, "value", cancelled_by)),
            reason=reason,
            now=now,
        )
        logger.info(
            f"💸 Refund recorded for appointment {appointment.id}: "
            f"{decision.refund_type} {decision.percentage}% = {decision.amount}"
        )
        return refund

    def complete(self, appointment: Appointment) -> Appointment:
        return self.transition(appointment, AppointmentStatus.COMPLETED, completed_at=self.clock.now())

    def mark_no_show(self, appointment: Appointment) -> Appointment:
        """A no-show is refunded only as far as the refund policy grants"""
        now = self.clock.now()
        self.transition(appointment, AppointmentStatus.NO_SHOW, no_show_at=now)

        decision = compute_refund(appointment, CancellationActor.PATIENT, now, no_show=True)
        if decision.is_refundable:
            self.record_refund(appointment, CancellationActor.PATIENT, "no_show", now, decision=decision)
        else:
            logger.info(f"🚫 Appointment {appointment.id} no-show forfeits {decision.original_amount}")
        return appointment

    def start_consultation(self, appointment: Appointment) -> Appointment:
        """Record the consultation start; only a confirmed appointment can start"""
        if appointment.status != AppointmentStatus.CONFIRMED.value:
            raise InvalidStateTransition(
                appointment.status,
                "in_consultation",
                f"Cannot start consultation for an appointment in '{appointment.status}'",
            )
        if appointment.consultation_started_at is not None:
            return appointment

        self.db.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment.id,
                Appointment.status == AppointmentStatus.CONFIRMED.value,
                Appointment.consultation_started_at.is_(None),
            )
            .values(consultation_started_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(appointment)
        return appointment

    def _captured_payment(self, appointment_id: int) -> Optional[Payment]:
        return (
            self.db.query(Payment)
            .filter(
                Payment.appointment_id == appointment_id,
                Payment.status == PaymentStatus.COMPLETED.value,
            )
            .order_by(Payment.paid_at.desc(), Payment.id.desc())
            .first()
        )
