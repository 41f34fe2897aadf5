"""Tests for the expiry sweep of unpaid holds."""

import asyncio
import threading
from datetime import timedelta

import pytest

from clinicslot.domain.appointments.lifecycle import AppointmentStatus
from clinicslot.domain.appointments.schemas import PatientInfo
from clinicslot.domain.payments.dodo_service import ORDER_FAILED, ORDER_SUCCEEDED
from clinicslot.domain.reservations.manager import ReservationManager
from clinicslot.models import Payment, PaymentStatus, ReservationStatus, Slot
from clinicslot.services.expiry_sweeper import ExpirySweeper, expired_hold_count


def occupancy(db, slot_id) -> int:
    return db.query(Slot).filter(Slot.id == slot_id).populate_existing().one().current_occupancy


@pytest.fixture
def sweeper(db, clock, gateway, notifier) -> ExpirySweeper:
    return ExpirySweeper(db, clock, payments=gateway, notifier=notifier)


class TestExpiry:
    @pytest.mark.asyncio
    async def test_unpaid_hold_is_released_after_window(
        self, db, service, sweeper, clock, notifier, doctor, slots, patient
    ) -> None:
        """Hold at T with a 30 minute window, sweep at T+31min."""
        booked = await service.book_slot(doctor.id, slots[2].id, patient)
        clock.advance(minutes=31)

        summary = await sweeper.run()

        assert summary["expired"] == 1
        appointment = service.get_appointment(booked.appointment.id)
        assert appointment.status == AppointmentStatus.CANCELLED.value
        assert appointment.cancellation_reason == "payment timeout"
        assert appointment.cancelled_by == "system"
        assert occupancy(db, slots[2].id) == 0
        assert db.get(Payment, booked.payment.id).status == PaymentStatus.EXPIRED.value
        reservation = service.reservations.get_reservation(appointment.reservation_token)
        assert reservation.status == ReservationStatus.RELEASED.value
        assert notifier.subjects()[-1] == f"Appointment cancelled - {appointment.booking_id}"

        other = PatientInfo(patient_id="patient-2", name="Meera Iyer")
        rebooked = await service.book_slot(doctor.id, slots[2].id, other)
        assert rebooked.appointment.slot_id == slots[2].id

    @pytest.mark.asyncio
    async def test_live_hold_is_left_alone(self, service, sweeper, clock, doctor, slots, patient) -> None:
        booked = await service.book_slot(doctor.id, slots[2].id, patient)
        clock.advance(minutes=29)

        summary = await sweeper.run()

        assert summary["expired"] == 0
        assert service.get_appointment(booked.appointment.id).status == AppointmentStatus.PENDING_PAYMENT.value

    @pytest.mark.asyncio
    async def test_second_sweep_is_a_no_op(self, sweeper, service, clock, doctor, slots, patient) -> None:
        await service.book_slot(doctor.id, slots[2].id, patient)
        clock.advance(minutes=31)

        await sweeper.run()
        summary = await sweeper.run()

        assert summary["expired"] == 0
        assert summary["errors"] == 0

    @pytest.mark.asyncio
    async def test_expired_hold_count(self, db, service, clock, doctor, slots, patient) -> None:
        await service.book_slot(doctor.id, slots[2].id, patient)
        assert expired_hold_count(db, clock) == 0

        clock.advance(minutes=31)
        assert expired_hold_count(db, clock) == 1


class TestPaymentPolling:
    """Lost webhooks are recovered by asking the provider before expiring."""

    @pytest.mark.asyncio
    async def test_captured_order_confirms_instead_of_expiring(
        self, db, service, sweeper, clock, gateway, doctor, slots, patient
    ) -> None:
        booked = await service.book_slot(doctor.id, slots[2].id, patient)
        gateway.statuses[booked.payment.order_ref] = ORDER_SUCCEEDED
        clock.advance(minutes=31)

        summary = await sweeper.run()

        assert summary["confirmed_by_poll"] == 1
        assert summary["expired"] == 0
        assert service.get_appointment(booked.appointment.id).status == AppointmentStatus.CONFIRMED.value
        assert occupancy(db, slots[2].id) == 1

    @pytest.mark.asyncio
    async def test_failed_order_is_recorded(self, db, service, sweeper, clock, gateway, doctor, slots, patient) -> None:
        booked = await service.book_slot(doctor.id, slots[2].id, patient)
        gateway.statuses[booked.payment.order_ref] = ORDER_FAILED
        clock.advance(minutes=10)

        summary = await sweeper.run()

        assert summary["failed_by_poll"] == 1
        assert db.get(Payment, booked.payment.id).status == PaymentStatus.FAILED.value
        assert occupancy(db, slots[2].id) == 1

    @pytest.mark.asyncio
    async def test_pending_order_is_stamped(self, db, service, sweeper, clock, doctor, slots, patient) -> None:
        booked = await service.book_slot(doctor.id, slots[2].id, patient)
        clock.advance(minutes=10)

        summary = await sweeper.run()

        assert summary["polled"] == 1
        assert db.get(Payment, booked.payment.id).last_polled_at == clock.now()

    @pytest.mark.asyncio
    async def test_unconfigured_provider_skips_polling(self, db, clock, gateway, notifier, service, doctor, slots, patient) -> None:
        await service.book_slot(doctor.id, slots[2].id, patient)
        gateway.available = False
        clock.advance(minutes=31)

        summary = await ExpirySweeper(db, clock, payments=gateway, notifier=notifier).run()

        assert summary["polled"] == 0
        assert summary["expired"] == 1

    @pytest.mark.asyncio
    async def test_recently_polled_order_is_not_asked_again(self, service, sweeper, clock, doctor, slots, patient) -> None:
        await service.book_slot(doctor.id, slots[2].id, patient)
        clock.advance(minutes=10)
        await sweeper.run()

        clock.advance(minutes=1)
        soon = await sweeper.run()
        clock.advance(minutes=5)
        later = await sweeper.run()

        assert soon["polled"] == 0
        assert later["polled"] == 1

    @pytest.mark.asyncio
    async def test_lapsed_hold_gets_a_final_poll(self, service, sweeper, clock, gateway, doctor, slots, patient) -> None:
        booked = await service.book_slot(doctor.id, slots[2].id, patient)
        clock.advance(minutes=28)
        await sweeper.run()
        gateway.statuses[booked.payment.order_ref] = ORDER_SUCCEEDED
        clock.advance(minutes=3)

        summary = await sweeper.run()

        assert summary["confirmed_by_poll"] == 1
        assert summary["expired"] == 0
        assert service.get_appointment(booked.appointment.id).status == AppointmentStatus.CONFIRMED.value


class TestSweepResilience:
    @pytest.mark.asyncio
    async def test_orphaned_hold_is_released(self, db, sweeper, clock, slots) -> None:
        ReservationManager(db, clock).reserve(slots[0].id, "orphan", timedelta(minutes=5))
        db.commit()
        clock.advance(minutes=6)

        summary = await sweeper.run()

        assert summary["orphans_released"] == 1
        assert occupancy(db, slots[0].id) == 0

    @pytest.mark.asyncio
    async def test_one_bad_row_does_not_stop_the_sweep(
        self, db, service, sweeper, clock, doctor, slots, patient, monkeypatch
    ) -> None:
        first = await service.book_slot(doctor.id, slots[1].id, patient)
        other = PatientInfo(patient_id="patient-2", name="Meera Iyer")
        second = await service.book_slot(doctor.id, slots[2].id, other)
        clock.advance(minutes=31)

        real_expire = sweeper.expire_one

        async def flaky_expire(reservation):
            if reservation.holder_token == first.appointment.reservation_token:
                raise RuntimeError("boom")
            return await real_expire(reservation)

        monkeypatch.setattr(sweeper, "expire_one", flaky_expire)
        summary = await sweeper.run()

        assert summary["errors"] == 1
        assert summary["expired"] == 1
        assert service.get_appointment(first.appointment.id).status == AppointmentStatus.PENDING_PAYMENT.value
        assert service.get_appointment(second.appointment.id).status == AppointmentStatus.CANCELLED.value


class TestConcurrentSweeps:
    """Two workers sweeping the same lapsed hold at once."""

    def test_hold_is_expired_once(self, db, session_factory, service, clock, gateway, notifier, doctor, slots, patient) -> None:
        booked = asyncio.run(service.book_slot(doctor.id, slots[2].id, patient))
        appointment_id, payment_id, slot_id = booked.appointment.id, booked.payment.id, slots[2].id
        gateway.available = False
        clock.advance(minutes=31)
        barrier = threading.Barrier(2)
        summaries: list[dict] = []
        lock = threading.Lock()

        def sweep():
            session = session_factory()
            try:
                barrier.wait()
                summary = asyncio.run(ExpirySweeper(session, clock, payments=gateway, notifier=notifier).run())
                with lock:
                    summaries.append(summary)
            finally:
                session.close()

        threads = [threading.Thread(target=sweep) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(summaries) == 2
        assert sum(s["expired"] for s in summaries) == 1
        assert sum(s["errors"] for s in summaries) == 0
        assert occupancy(db, slot_id) == 0
        appointment = service.get_appointment(appointment_id)
        assert appointment.status == AppointmentStatus.CANCELLED.value
        assert db.query(Payment).filter(Payment.id == payment_id).populate_existing().one().status == (
            PaymentStatus.EXPIRED.value
        )
        cancellations = [s for s in notifier.subjects() if s.startswith("Appointment cancelled")]
        assert cancellations == [f"Appointment cancelled - {appointment.booking_id}"]
