"""Tests for slot regeneration after schedule and override changes."""

from datetime import date, datetime, time

import pytest

from clinicslot.domain.schedules.schemas import OverrideCreate, ScheduleCreate, ScheduleUpdate
from clinicslot.domain.schedules.service import ScheduleService
from clinicslot.domain.slots.repository import SlotRepository
from clinicslot.domain.slots.service import SlotService
from clinicslot.errors import ConflictError
from clinicslot.models import OverrideType, Slot, WeeklySchedule

MONDAY = date(2026, 3, 2)


def monday_slots(db, doctor_id) -> list[Slot]:
    return (
        db.query(Slot)
        .filter(Slot.doctor_id == doctor_id, Slot.slot_date == MONDAY)
        .order_by(Slot.start_time)
        .populate_existing()
        .all()
    )


@pytest.fixture
def schedules(db, clock) -> ScheduleService:
    return ScheduleService(db, clock)


@pytest.fixture
def monday_schedule(db, doctor) -> WeeklySchedule:
    return db.query(WeeklySchedule).filter(WeeklySchedule.doctor_id == doctor.id).one()


def shortened(end: str = "10:00") -> ScheduleUpdate:
    return ScheduleUpdate(day_of_week=0, start_time="09:00", end_time=end, slot_duration_minutes=30)


class TestScheduleChanges:
    @pytest.mark.asyncio
    async def test_booked_slot_is_blocked_not_deleted(
        self, db, schedules, service, doctor, slots, monday_schedule, patient
    ) -> None:
        booked = await service.book_slot(doctor.id, slots[2].id, patient)
        original = (slots[2].start_time, slots[2].end_time)

        schedules.update_schedule(doctor.id, monday_schedule.id, shortened())

        remaining = monday_slots(db, doctor.id)
        assert [s.start_time.time() for s in remaining] == [time(9, 0), time(9, 30), time(10, 0)]
        kept = remaining[-1]
        assert kept.id == booked.appointment.slot_id
        assert (kept.start_time, kept.end_time) == original
        assert kept.is_blocked
        assert kept.block_reason == "schedule_removed"
        assert kept.current_occupancy == 1

    @pytest.mark.asyncio
    async def test_blocked_slot_not_listed(
        self, db, clock, schedules, service, doctor, slots, monday_schedule, patient, patient_actor
    ) -> None:
        booked = await service.book_slot(doctor.id, slots[2].id, patient)
        await service.cancel_appointment(booked.appointment.id, patient_actor)
        await service.book_slot(doctor.id, slots[3].id, patient)

        schedules.update_schedule(doctor.id, monday_schedule.id, shortened())

        listed = SlotService(db, clock).list_available(doctor.id, MONDAY, MONDAY)
        assert [s.start_time.time() for s in listed] == [time(9, 0), time(9, 30)]

    @pytest.mark.asyncio
    async def test_restoring_hours_unblocks(self, db, schedules, service, doctor, slots, monday_schedule, patient) -> None:
        await service.book_slot(doctor.id, slots[2].id, patient)
        schedules.update_schedule(doctor.id, monday_schedule.id, shortened())

        schedules.update_schedule(doctor.id, monday_schedule.id, shortened("12:00"))

        remaining = monday_slots(db, doctor.id)
        assert len(remaining) == 6
        assert not any(s.is_blocked for s in remaining)
        assert remaining[2].current_occupancy == 1

    def test_unbooked_slots_follow_new_duration(self, db, schedules, doctor, slots, monday_schedule) -> None:
        update = ScheduleUpdate(day_of_week=0, start_time="09:00", end_time="10:00", slot_duration_minutes=20)

        schedules.update_schedule(doctor.id, monday_schedule.id, update)

        starts = [s.start_time.time() for s in monday_slots(db, doctor.id)]
        assert starts == [time(9, 0), time(9, 20), time(9, 40)]

    def test_overlapping_schedule_rejected(self, schedules, doctor, slots) -> None:
        with pytest.raises(ConflictError):
            schedules.create_schedule(
                doctor.id, ScheduleCreate(day_of_week=0, start_time="11:00", end_time="13:00")
            )

    @pytest.mark.asyncio
    async def test_concurrent_materialize_keeps_reconciliation(
        self, db, session_factory, clock, schedules, service, doctor, slots, monday_schedule, patient, monkeypatch
    ) -> None:
        booked = await service.book_slot(doctor.id, slots[5].id, patient)
        doctor_id, consultation_type = doctor.id, slots[0].consultation_type
        original = SlotRepository.get_referenced_slot_ids
        raced = []

        def referenced_then_other_writer(session, slot_ids):
            referenced = original(session, slot_ids)
            if not raced:
                raced.append(True)
                other = session_factory()
                try:
                    other.add(
                        Slot(
                            doctor_id=doctor_id,
                            slot_date=MONDAY,
                            start_time=datetime.combine(MONDAY, time(9, 20)),
                            end_time=datetime.combine(MONDAY, time(9, 40)),
                            consultation_type=consultation_type,
                            max_capacity=1,
                            current_occupancy=0,
                        )
                    )
                    other.commit()
                finally:
                    other.close()
            return referenced

        monkeypatch.setattr(SlotRepository, "get_referenced_slot_ids", staticmethod(referenced_then_other_writer))
        update = ScheduleUpdate(day_of_week=0, start_time="09:00", end_time="10:00", slot_duration_minutes=20)

        schedules.update_schedule(doctor.id, monday_schedule.id, update)

        assert raced
        remaining = monday_slots(db, doctor.id)
        assert [s.start_time.time() for s in remaining] == [time(9, 0), time(9, 20), time(9, 40), time(11, 30)]
        kept = remaining[-1]
        assert kept.id == booked.appointment.slot_id
        assert kept.is_blocked
        assert kept.block_reason == "schedule_removed"

        listed = SlotService(db, clock).list_available(doctor.id, MONDAY, MONDAY)
        assert [s.start_time.time() for s in listed] == [time(9, 0), time(9, 20), time(9, 40)]


class TestOverrides:
    @pytest.mark.asyncio
    async def test_holiday_closes_day_but_keeps_booking(self, db, schedules, service, doctor, slots, patient) -> None:
        booked = await service.book_slot(doctor.id, slots[1].id, patient)

        schedules.create_override(
            doctor.id, OverrideCreate(override_date=MONDAY, override_type=OverrideType.HOLIDAY)
        )

        remaining = monday_slots(db, doctor.id)
        assert [s.id for s in remaining] == [booked.appointment.slot_id]
        assert remaining[0].block_reason == "date_closed"

    def test_duplicate_override_rejected(self, schedules, doctor, slots) -> None:
        data = OverrideCreate(override_date=MONDAY, override_type=OverrideType.LEAVE)
        schedules.create_override(doctor.id, data)

        with pytest.raises(ConflictError):
            schedules.create_override(doctor.id, data)

    def test_removing_override_restores_slots(self, db, schedules, doctor, slots) -> None:
        override = schedules.create_override(
            doctor.id, OverrideCreate(override_date=MONDAY, override_type=OverrideType.HOLIDAY)
        )
        assert monday_slots(db, doctor.id) == []

        schedules.delete_override(doctor.id, override.id)

        assert len(monday_slots(db, doctor.id)) == 6

