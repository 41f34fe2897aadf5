"""Slot service - materializes generated slots and answers availability queries"""

import logging
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import SLOT_GENERATION_HORIZON_DAYS
from ...errors import NotFoundError, ValidationError
from ...models import Doctor, ScheduleOverride, Slot, WeeklySchedule
from .generator import (
    CLOSED_OVERRIDES,
    DateOverride,
    ScheduleWindow,
    SlotCandidate,
    SlotDefaults,
    generate_slots,
)
from .repository import SlotRepository

logger = logging.getLogger(__name__)

# Block reasons this service owns and may lift again on regeneration
SCHEDULE_REMOVED = "schedule_removed"
DATE_CLOSED = "date_closed"
MAX_LISTING_DAYS = 92


class SlotService:
    """Service layer for slot generation and availability"""

    def __init__(self, db: Session, clock):
        self.db = db
        self.clock = clock
        self.repo = SlotRepository()

    def generate_slots(self, doctor_id: int, date_from: date, date_to: date) -> list[SlotCandidate]:
        """Candidates derived from the schedule store for [date_from, date_to]"""
        doctor = self.db.query(Doctor).filter(Doctor.id == doctor_id).first()
        if not doctor:
            raise NotFoundError("Doctor not found", doctor_id=doctor_id)

        schedules = (
            self.db.query(WeeklySchedule)
            .filter(WeeklySchedule.doctor_id == doctor_id, WeeklySchedule.is_active.is_(True))
            .order_by(WeeklySchedule.day_of_week, WeeklySchedule.start_time, WeeklySchedule.id)
            .all()
        )
        overrides = (
            self.db.query(ScheduleOverride)
            .filter(
                ScheduleOverride.doctor_id == doctor_id,
                ScheduleOverride.override_date >= date_from,
                ScheduleOverride.override_date <= date_to,
            )
            .all()
        )

        return generate_slots(
            doctor_id,
            [ScheduleWindow.from_model(s) for s in schedules],
            [DateOverride.from_model(o) for o in overrides],
            date_from,
            date_to,
            SlotDefaults(
                slot_duration_minutes=doctor.slot_duration_minutes,
                max_patients_per_slot=doctor.max_patients_per_slot,
            ),
        )

    def materialize(
        self, doctor_id: int, date_from: Optional[date] = None, date_to: Optional[date] = None
    ) -> dict:
        """
        Insert future candidates that are not stored yet.

        Existing rows are never modified, and a candidate overlapping a stored slot
        of the same consultation type is skipped.
        """
        now = self.clock.now()
        date_from = date_from or now.date()
        date_to = date_to or date_from + timedelta(days=SLOT_GENERATION_HORIZON_DAYS)

        candidates = [c for c in self.generate_slots(doctor_id, date_from, date_to) if c.start_time > now]
        existing = self.repo.get_slots_between(
            self.db,
            doctor_id,
            datetime.combine(date_from, datetime.min.time()),
            datetime.combine(date_to + timedelta(days=1), datetime.min.time()),
        )

        created = self._insert_missing(candidates, existing)
        summary = {"doctor_id": doctor_id, "created": created, "existing": len(existing)}
        if created:
            logger.info(f"📅 Materialized {created} slots for doctor {doctor_id} ({date_from} → {date_to})")
        return summary

    def regenerate(self, doctor_id: int, horizon_days: int = SLOT_GENERATION_HORIZON_DAYS) -> dict:
        """
        Reconcile future slots with the current schedule store.

        Slots backing an appointment or holding occupancy keep their boundaries;
        they are blocked when the schedule no longer offers them. Untouched slots
        that no longer match a candidate are deleted and the new candidates added.
        """
        now = self.clock.now()
        date_from = now.date()
        date_to = date_from + timedelta(days=horizon_days)

        candidates = {
            (c.start_time, c.consultation_type): c
            for c in self.generate_slots(doctor_id, date_from, date_to)
            if c.start_time > now
        }
        closed_dates = {
            o.override_date
            for o in self.db.query(ScheduleOverride)
            .filter(
                ScheduleOverride.doctor_id == doctor_id,
                ScheduleOverride.override_date >= date_from,
                ScheduleOverride.override_date <= date_to,
                ScheduleOverride.override_type.in_(CLOSED_OVERRIDES),
            )
            .all()
        }

        existing = [
            s
            for s in self.repo.get_slots_between(
                self.db,
                doctor_id,
                datetime.combine(date_from, datetime.min.time()),
                datetime.combine(date_to + timedelta(days=1), datetime.min.time()),
            )
            if s.start_time > now
        ]
        referenced = self.repo.get_referenced_slot_ids(self.db, [s.id for s in existing])

        summary = {
            "doctor_id": doctor_id,
            "created": 0,
            "deleted": 0,
            "blocked": 0,
            "unblocked": 0,
            "kept": 0,
        }
        retained: list[Slot] = []
        to_delete: list[int] = []

        for slot in existing:
            candidate = candidates.get((slot.start_time, slot.consultation_type))
            matches = (
                candidate is not None
                and candidate.end_time == slot.end_time
                and candidate.max_capacity == slot.max_capacity
            )
            in_use = slot.id in referenced or slot.current_occupancy > 0

            if matches:
                if slot.is_blocked and slot.block_reason in (SCHEDULE_REMOVED, DATE_CLOSED):
                    slot.is_blocked = False
                    slot.block_reason = None
                    summary["unblocked"] += 1
                retained.append(slot)
                summary["kept"] += 1
            elif in_use:
                if not slot.is_blocked:
                    slot.is_blocked = True
                    slot.block_reason = DATE_CLOSED if slot.slot_date in closed_dates else SCHEDULE_REMOVED
                    summary["blocked"] += 1
                retained.append(slot)
            else:
                to_delete.append(slot.id)

        try:
            self.db.flush()
            summary["deleted"] = self.repo.delete_unoccupied(self.db, to_delete)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        summary["created"] = self._insert_missing(list(candidates.values()), retained)

        logger.info(f"🔄 Regenerated slots for doctor {doctor_id}: {summary}")
        return summary

    def list_available(
        self,
        doctor_id: int,
        date_from: date,
        date_to: date,
        consultation_type: Optional[str] = None,
    ) -> list[Slot]:
        """Bookable slots in the range, materializing any dates not yet stored"""
        if date_to < date_from:
            raise ValidationError("date_to must not be before date_from")
        if (date_to - date_from).days > MAX_LISTING_DAYS:
            raise ValidationError(f"Date range cannot exceed {MAX_LISTING_DAYS} days")

        self.materialize(doctor_id, date_from, date_to)

        return self.repo.get_available_slots(
            self.db, doctor_id, date_from, date_to, self.clock.now(), consultation_type
        )

    def get_slot(self, slot_id: int) -> Slot:
        slot = self.repo.get_slot(self.db, slot_id)
        if not slot:
            raise NotFoundError("Slot not found", slot_id=slot_id)
        return slot

    def _insert_missing(self, candidates: list[SlotCandidate], stored: list[Slot]) -> int:
        stored_keys = {(s.start_time, s.consultation_type) for s in stored}
        intervals: dict[str, list[tuple[datetime, datetime]]] = {}
        for s in stored:
            intervals.setdefault(s.consultation_type, []).append((s.start_time, s.end_time))

        new_slots = []
        for candidate in candidates:
            if (candidate.start_time, candidate.consultation_type) in stored_keys:
                continue
            if any(
                candidate.overlaps(start, end)
                for start, end in intervals.get(candidate.consultation_type, [])
            ):
                continue
            new_slots.append(
                Slot(
                    doctor_id=candidate.doctor_id,
                    slot_date=candidate.slot_date,
                    start_time=candidate.start_time,
                    end_time=candidate.end_time,
                    consultation_type=candidate.consultation_type,
                    max_capacity=candidate.max_capacity,
                    current_occupancy=0,
                )
            )

        created = 0
        for slot in new_slots:
            try:
                with self.db.begin_nested():
                    self.db.add(slot)
            except IntegrityError as e:
                # Another writer stored this slot first; keep theirs
                logger.warning(f"⚠️ Slot {slot.start_time} for doctor {slot.doctor_id} already exists: {e.orig}")
                continue
            created += 1
        self.db.commit()
        return created
