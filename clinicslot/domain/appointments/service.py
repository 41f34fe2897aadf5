"""
Appointment service - booking, payment outcomes, cancellation and reschedule.

Owns the transaction boundary for every operation: the reservation manager,
lifecycle and idempotency store all write into the same session and the
service commits or rolls back once.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ...config import CURRENCY, PAYMENT_WINDOW_MINUTES, PLATFORM_FEE_PERCENT
from ...errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateTransition,
    NotFoundError,
    PaymentNotConfigured,
    PaymentProviderError,
    ReschedulePartialFailure,
    SlotFull,
    SlotLocked,
    ValidationError,
)
from ...idempotency import IdempotencyService
from ...models import Appointment, Payment, PaymentStatus, RefundRecord, ReservationStatus
from ...services.notification_service import NotificationService
from ..payments.dodo_service import get_payment_service
from ..refunds.policy import CancellationActor
from ..refunds.repository import RefundRepository
from ..reservations.manager import ReservationManager
from ..slots.repository import SlotRepository
from .lifecycle import AppointmentLifecycle, AppointmentStatus
from .repository import AppointmentRepository, generate_booking_id, generate_holder_token
from .schemas import Actor, PatientInfo

logger = logging.getLogger(__name__)

SCOPE_BOOK = "book"
SCOPE_CANCEL = "cancel"
SCOPE_RESCHEDULE = "reschedule"

PAYMENT_TIMEOUT_REASON = "payment timeout"
LATE_PAYMENT_REASON = "payment received after cancellation"

CENTS = Decimal("0.01")

STAFF_ROLES = {CancellationActor.DOCTOR, CancellationActor.HOSPITAL, CancellationActor.ADMIN}


def money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENTS, rounding=ROUND_HALF_UP)


def platform_fee_for(consultation_fee: Decimal) -> Decimal:
    return money(consultation_fee * PLATFORM_FEE_PERCENT / Decimal(100))


@dataclass
class BookingResult:
    appointment: Appointment
    payment: Optional[Payment] = None
    reservation_expires_at: Optional[object] = None
    replayed: bool = False


@dataclass
class CancellationResult:
    appointment: Appointment
    refund: Optional[RefundRecord] = None
    replayed: bool = False


@dataclass
class RescheduleResult:
    appointment: Appointment
    previous: Appointment
    replayed: bool = False


class AppointmentService:
    def __init__(self, db: Session, clock, payments=None, notifier: Optional[NotificationService] = None):
        self.db = db
        self.clock = clock
        self.payments = payments if payments is not None else get_payment_service()
        self.notifier = notifier or NotificationService()
        self.repo = AppointmentRepository()
        self.slot_repo = SlotRepository()
        self.refund_repo = RefundRepository()
        self.reservations = ReservationManager(db, clock)
        self.lifecycle = AppointmentLifecycle(db, clock)
        self.idempotency = IdempotencyService(db, clock)
        self.payment_window = timedelta(minutes=PAYMENT_WINDOW_MINUTES)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_appointment(self, appointment_id: int, actor: Optional[Actor] = None) -> Appointment:
        appointment = self.repo.get_appointment(self.db, appointment_id, refresh=True)
        if not appointment:
            raise NotFoundError("Appointment not found", appointment_id=appointment_id)
        if actor is not None:
            self._check_access(appointment, actor)
        return appointment

    def get_refunds(self, appointment_id: int) -> list[RefundRecord]:
        return self.refund_repo.get_refunds_for_appointment(self.db, appointment_id)

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def book_slot(
        self,
        doctor_id: int,
        slot_id: int,
        patient: PatientInfo,
        idempotency_key: Optional[str] = None,
    ) -> BookingResult:
        """
        Hold a unit of slot capacity and open a pending-payment appointment.

        The hold and the appointment commit together. Payment order creation
        happens afterwards; if the provider fails the hold stays until its TTL
        so the patient can retry payment on the same appointment.
        """
        record, replay = self.idempotency.begin(SCOPE_BOOK, idempotency_key, patient.patient_id)
        if replay is not None:
            return await self._replay_booking(replay)

        now = self.clock.now()
        try:
            slot = self.slot_repo.get_slot(self.db, slot_id, refresh=True)
            if not slot or slot.doctor_id != doctor_id:
                raise NotFoundError("Slot not found for this doctor", slot_id=slot_id, doctor_id=doctor_id)
            if slot.start_time <= now:
                raise ValidationError("Slot has already started", slot_id=slot_id)
            if not slot.doctor.is_active:
                raise ValidationError("Doctor is not accepting bookings", doctor_id=doctor_id)

            holder_token = generate_holder_token()
            reservation = self.reservations.reserve(slot.id, holder_token, self.payment_window)
            reservation.raise_for_outcome()

            consultation_fee = money(slot.doctor.fee_for(slot.consultation_type))
            platform_fee = platform_fee_for(consultation_fee)
            appointment = self.repo.create_appointment(
                self.db,
                booking_id=generate_booking_id(),
                patient_id=patient.patient_id,
                patient_name=patient.name,
                patient_email=patient.email,
                patient_phone=patient.phone,
                doctor_id=slot.doctor_id,
                slot_id=slot.id,
                reservation_token=holder_token,
                consultation_type=slot.consultation_type,
                scheduled_start=slot.start_time,
                scheduled_end=slot.end_time,
                status=AppointmentStatus.PENDING_PAYMENT.value,
                consultation_fee=consultation_fee,
                platform_fee=platform_fee,
                total_amount=consultation_fee + platform_fee,
                created_at=now,
            )
            self.idempotency.complete(record, {"appointment_id": appointment.id})
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"📅 Appointment {appointment.booking_id} created on slot {slot_id} "
            f"for patient {patient.patient_id}, hold until {reservation.expires_at}"
        )

        if appointment.total_amount <= 0:
            await self._confirm_without_payment(appointment)
            return BookingResult(appointment=appointment)

        payment = await self._ensure_payment_order(appointment)
        return BookingResult(
            appointment=appointment, payment=payment, reservation_expires_at=reservation.expires_at
        )

    async def _replay_booking(self, response: dict) -> BookingResult:
        appointment = self.get_appointment(response["appointment_id"])
        reservation = self.reservations.get_reservation(appointment.reservation_token)
        expires_at = reservation.expires_at if reservation else None

        payment = self.repo.get_latest_payment(self.db, appointment.id)
        if self._awaiting_payment(appointment) and payment is None:
            # The original request committed the hold but never got an order
            payment = await self._ensure_payment_order(appointment)

        return BookingResult(
            appointment=appointment, payment=payment, reservation_expires_at=expires_at, replayed=True
        )

    async def retry_payment(self, appointment_id: int, actor: Actor) -> BookingResult:
        """Create a fresh payment order while the hold is still live"""
        appointment = self.get_appointment(appointment_id, actor)
        if appointment.status != AppointmentStatus.PENDING_PAYMENT.value:
            raise ConflictError(
                "Appointment is not awaiting payment",
                appointment_id=appointment.id,
                status=appointment.status,
            )
        if not self._awaiting_payment(appointment):
            raise ConflictError("Payment window has expired", appointment_id=appointment.id)

        reservation = self.reservations.get_reservation(appointment.reservation_token)
        payment = await self._ensure_payment_order(appointment)
        return BookingResult(
            appointment=appointment, payment=payment, reservation_expires_at=reservation.expires_at
        )

    async def _ensure_payment_order(self, appointment: Appointment) -> Payment:
        existing = self.repo.get_open_payment(self.db, appointment.id)
        if existing:
            return existing

        if not self.payments.is_available():
            logger.error(f"❌ Payment not configured; appointment {appointment.booking_id} stays on hold")
            raise PaymentNotConfigured(
                "Payment system not configured; your slot is held, retry payment shortly",
                appointment_id=appointment.id,
            )

        try:
            order = await self.payments.create_order(
                amount=money(appointment.total_amount),
                receipt=appointment.booking_id,
                customer_email=appointment.patient_email,
                customer_name=appointment.patient_name,
                metadata={
                    "appointment_id": str(appointment.id),
                    "booking_id": appointment.booking_id,
                },
            )
        except (PaymentNotConfigured, PaymentProviderError):
            raise
        except Exception as e:
            logger.error(f"❌ Payment order failed for {appointment.booking_id}: {e}")
            raise PaymentProviderError(
                "Payment provider unavailable; your slot is held, retry payment shortly",
                appointment_id=appointment.id,
            ) from e

        try:
            payment = self.repo.create_payment(
                self.db,
                appointment_id=appointment.id,
                order_ref=order.order_ref,
                amount=money(appointment.total_amount),
                platform_fee=money(appointment.platform_fee),
                currency=order.currency or CURRENCY,
                status=PaymentStatus.PENDING.value,
                checkout_url=order.checkout_url,
                created_at=self.clock.now(),
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"💳 Payment order {order.order_ref} opened for {appointment.booking_id}")
        return payment

    async def _confirm_without_payment(self, appointment: Appointment) -> None:
        try:
            self.lifecycle.confirm(appointment)
            self.reservations.confirm(appointment.slot_id, appointment.reservation_token)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"✅ Free appointment {appointment.booking_id} confirmed without payment")
        await self.notifier.appointment_confirmed(appointment)

    def _awaiting_payment(self, appointment: Appointment) -> bool:
        if appointment.status != AppointmentStatus.PENDING_PAYMENT.value:
            return False
        reservation = self.reservations.get_reservation(appointment.reservation_token)
        return (
            reservation is not None
            and reservation.status == ReservationStatus.HELD.value
            and reservation.expires_at > self.clock.now()
        )

    # ------------------------------------------------------------------
    # Payment outcomes
    # ------------------------------------------------------------------

    def _find_payment(self, order_ref: Optional[str], booking_id: Optional[str] = None) -> Payment:
        payment = None
        if order_ref:
            payment = self.repo.get_payment_by_order_ref(self.db, order_ref)
        if payment is None and booking_id:
            appointment = self.repo.get_by_booking_id(self.db, booking_id)
            if appointment:
                payment = self.repo.get_latest_payment(self.db, appointment.id)
        if payment is None:
            logger.warning(f"⚠️ No payment found for order {order_ref} / booking {booking_id}")
            raise NotFoundError("Payment not found", order_ref=order_ref)
        return payment

    async def handle_payment_succeeded(
        self,
        order_ref: Optional[str],
        gateway_payment_id: Optional[str] = None,
        booking_id: Optional[str] = None,
    ) -> Appointment:
        """
        Apply a captured payment.

        A pending appointment is confirmed together with its reservation. A
        payment landing after the appointment was already cancelled (usually by
        the expiry sweep) is refunded in full.
        """
        for attempt in range(2):
            payment = self._find_payment(order_ref, booking_id)
            if payment.status == PaymentStatus.COMPLETED.value:
                logger.info(f"🔄 Payment {payment.order_ref} already applied, ignoring duplicate")
                return self.get_appointment(payment.appointment_id)

            appointment = self.get_appointment(payment.appointment_id)
            now = self.clock.now()
            confirmed = False
            try:
                payment.status = PaymentStatus.COMPLETED.value
                payment.gateway_payment_id = gateway_payment_id or payment.gateway_payment_id
                payment.paid_at = now
                self.db.flush()

                if appointment.status == AppointmentStatus.PENDING_PAYMENT.value:
                    confirmed = self.lifecycle.confirm(appointment)
                    if not self.reservations.confirm(appointment.slot_id, appointment.reservation_token):
                        logger.error(
                            f"❌ Reservation {appointment.reservation_token} for appointment "
                            f"{appointment.id} could not be confirmed"
                        )
                elif appointment.status == AppointmentStatus.CONFIRMED.value:
                    logger.warning(f"⚠️ Extra payment {payment.order_ref} for confirmed appointment {appointment.id}")
                else:
                    logger.warning(
                        f"⚠️ Payment {payment.order_ref} arrived for {appointment.status} appointment "
                        f"{appointment.id}, refunding in full"
                    )
                    self.lifecycle.record_refund(appointment, CancellationActor.SYSTEM, LATE_PAYMENT_REASON, now)
                self.db.commit()
            except InvalidStateTransition:
                # Lost a race with cancel or expiry; re-read and apply again
                self.db.rollback()
                if attempt == 0:
                    continue
                raise
            except Exception:
                self.db.rollback()
                raise

            if confirmed:
                logger.info(f"✅ Appointment {appointment.booking_id} confirmed by payment {payment.order_ref}")
                await self.notifier.appointment_confirmed(appointment)
            return appointment

        raise ConflictError("Payment could not be applied", order_ref=order_ref)

    def handle_payment_failed(
        self, order_ref: Optional[str], reason: Optional[str] = None, booking_id: Optional[str] = None
    ) -> Payment:
        """Record a failed charge; the hold stays until its TTL so the patient can retry"""
        payment = self._find_payment(order_ref, booking_id)
        if payment.status != PaymentStatus.PENDING.value:
            logger.info(f"🔄 Ignoring failure for payment {payment.order_ref} in '{payment.status}'")
            return payment

        payment.status = PaymentStatus.FAILED.value
        payment.failure_reason = reason or "payment failed"
        self.db.commit()
        logger.warning(f"⚠️ Payment {payment.order_ref} failed: {payment.failure_reason}")
        return payment

    def handle_refund_outcome(
        self, gateway_refund_id: Optional[str], succeeded: bool, reason: Optional[str] = None
    ) -> RefundRecord:
        """Apply a provider refund outcome; a refund already in a final state is left as is"""
        refund = None
        if gateway_refund_id:
            refund = self.refund_repo.get_by_gateway_refund_id(self.db, gateway_refund_id)
        if refund is None:
            logger.warning(f"⚠️ No refund found for provider refund {gateway_refund_id}")
            raise NotFoundError("Refund not found", gateway_refund_id=gateway_refund_id)

        try:
            if succeeded:
                applied = self.refund_repo.mark_completed(self.db, refund, self.clock.now())
            else:
                applied = self.refund_repo.mark_failed(self.db, refund, reason or "refund failed")
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if applied:
            logger.info(f"💸 Refund {refund.id} for appointment {refund.appointment_id} is now {refund.status}")
        else:
            logger.info(f"🔄 Refund {refund.id} already {refund.status}, ignoring duplicate")
        return refund

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_appointment(
        self,
        appointment_id: int,
        actor: Actor,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> CancellationResult:
        """
        Cancel, free the slot capacity and record the refund outcome.

        The refund amount is decided and stored here; settling it with the
        payment provider is deferred to the refund worker.
        """
        record, replay = self.idempotency.begin(SCOPE_CANCEL, idempotency_key, actor.actor_id)
        if replay is not None:
            appointment = self.get_appointment(replay["appointment_id"])
            refund = self.db.get(RefundRecord, replay["refund_id"]) if replay.get("refund_id") else None
            return CancellationResult(appointment=appointment, refund=refund, replayed=True)

        try:
            appointment = self.get_appointment(appointment_id, actor)
            was_pending = appointment.status == AppointmentStatus.PENDING_PAYMENT.value

            refund = self.lifecycle.cancel(
                appointment, actor.role, reason=reason, cancelled_by_id=actor.actor_id
            )
            self.reservations.release(appointment.slot_id, appointment.reservation_token, reason="cancelled")
            if was_pending:
                self.repo.close_open_payments(
                    self.db, appointment.id, PaymentStatus.CANCELLED, "appointment cancelled"
                )

            self.idempotency.complete(
                record, {"appointment_id": appointment.id, "refund_id": refund.id if refund else None}
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"🚫 Appointment {appointment.booking_id} cancelled by {actor.role.value}"
            + (f", refund {refund.percentage}% = {refund.amount}" if refund else "")
        )
        await self.notifier.appointment_cancelled(appointment, refund)
        return CancellationResult(appointment=appointment, refund=refund)

    # ------------------------------------------------------------------
    # Reschedule
    # ------------------------------------------------------------------

    async def reschedule_appointment(
        self,
        appointment_id: int,
        new_slot_id: int,
        actor: Actor,
        idempotency_key: Optional[str] = None,
    ) -> RescheduleResult:
        """
        Cancel the old appointment and book the new slot as one operation.

        Both steps share a transaction: if the new slot cannot be reserved the
        whole unit rolls back and the original appointment keeps its status and
        slot. The fee snapshot and payments carry over, no refund is issued.
        """
        record, replay = self.idempotency.begin(SCOPE_RESCHEDULE, idempotency_key, actor.actor_id)
        if replay is not None:
            return RescheduleResult(
                appointment=self.get_appointment(replay["appointment_id"]),
                previous=self.get_appointment(replay["previous_appointment_id"]),
                replayed=True,
            )

        now = self.clock.now()
        original_status = None
        try:
            old = self.get_appointment(appointment_id, actor)
            original_status = old.status
            if original_status not in (
                AppointmentStatus.PENDING_PAYMENT.value,
                AppointmentStatus.CONFIRMED.value,
            ):
                raise InvalidStateTransition(
                    original_status, "rescheduled", f"Cannot reschedule an appointment in '{original_status}'"
                )
            if new_slot_id == old.slot_id:
                raise ValidationError("New slot is the current slot", slot_id=new_slot_id)

            new_slot = self.slot_repo.get_slot(self.db, new_slot_id, refresh=True)
            if not new_slot or new_slot.doctor_id != old.doctor_id:
                raise NotFoundError("Slot not found for this doctor", slot_id=new_slot_id)
            if new_slot.start_time <= now:
                raise ValidationError("Slot has already started", slot_id=new_slot_id)

            ttl = self.payment_window
            if original_status == AppointmentStatus.PENDING_PAYMENT.value:
                # The payment window does not restart on reschedule
                held = self.reservations.get_reservation(old.reservation_token)
                remaining = (held.expires_at - now) if held else timedelta(0)
                if remaining <= timedelta(0):
                    raise ConflictError("Payment window has expired", appointment_id=old.id)
                ttl = remaining

            self.lifecycle.cancel(
                old,
                actor.role,
                reason=f"rescheduled to slot {new_slot_id}",
                cancelled_by_id=actor.actor_id,
                with_refund=False,
            )
            self.reservations.release(old.slot_id, old.reservation_token, reason="rescheduled")

            holder_token = generate_holder_token()
            reservation = self.reservations.reserve(new_slot.id, holder_token, ttl)
            reservation.raise_for_outcome()

            new = self.repo.create_appointment(
                self.db,
                booking_id=generate_booking_id(),
                patient_id=old.patient_id,
                patient_name=old.patient_name,
                patient_email=old.patient_email,
                patient_phone=old.patient_phone,
                doctor_id=old.doctor_id,
                slot_id=new_slot.id,
                reservation_token=holder_token,
                consultation_type=new_slot.consultation_type,
                scheduled_start=new_slot.start_time,
                scheduled_end=new_slot.end_time,
                status=original_status,
                consultation_fee=old.consultation_fee,
                platform_fee=old.platform_fee,
                total_amount=old.total_amount,
                created_at=now,
                confirmed_at=old.confirmed_at,
                rescheduled_from_id=old.id,
            )
            if original_status == AppointmentStatus.CONFIRMED.value:
                self.reservations.confirm(new_slot.id, holder_token)

            old.rescheduled_to_id = new.id
            self.repo.move_payments(self.db, old.id, new.id)
            self.idempotency.complete(
                record, {"appointment_id": new.id, "previous_appointment_id": old.id}
            )
            self.db.commit()
        except (SlotFull, SlotLocked) as e:
            # Compensate: undo the cancel and release of the original appointment
            self.db.rollback()
            restored = self.get_appointment(appointment_id)
            logger.warning(
                f"⚠️ Reschedule of appointment {appointment_id} to slot {new_slot_id} failed "
                f"({e.code}); kept as {restored.status} on slot {restored.slot_id}"
            )
            raise ReschedulePartialFailure(e, restored.id, restored.status) from e
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(new)
        logger.info(
            f"🔁 Appointment {old.booking_id} rescheduled to {new.booking_id} "
            f"(slot {old.slot_id} → {new.slot_id})"
        )
        if new.status == AppointmentStatus.CONFIRMED.value:
            await self.notifier.appointment_confirmed(new)
        return RescheduleResult(appointment=new, previous=old)

    # ------------------------------------------------------------------
    # Consultation
    # ------------------------------------------------------------------

    def start_consultation(self, appointment_id: int, actor: Actor) -> Appointment:
        appointment = self._get_for_staff(appointment_id, actor)
        try:
            self.lifecycle.start_consultation(appointment)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return appointment

    def complete_appointment(self, appointment_id: int, actor: Actor) -> Appointment:
        appointment = self._get_for_staff(appointment_id, actor)
        try:
            self.lifecycle.complete(appointment)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"🏁 Appointment {appointment.booking_id} completed")
        return appointment

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def _get_for_staff(self, appointment_id: int, actor: Actor) -> Appointment:
        if actor.role not in STAFF_ROLES:
            raise ForbiddenError("Only clinic staff can update consultations", role=actor.role.value)
        return self.get_appointment(appointment_id, actor)

    @staticmethod
    def _check_access(appointment: Appointment, actor: Actor) -> None:
        if actor.role == CancellationActor.PATIENT and appointment.patient_id != actor.actor_id:
            raise ForbiddenError("Appointment belongs to another patient", appointment_id=appointment.id)
        if actor.role == CancellationActor.DOCTOR and str(appointment.doctor_id) != actor.actor_id:
            raise ForbiddenError("Appointment belongs to another doctor", appointment_id=appointment.id)


