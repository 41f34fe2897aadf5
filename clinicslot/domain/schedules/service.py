"""Schedule service - Business logic for the schedule store"""

import logging
from datetime import date, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...config import OVERRIDE_RETENTION_DAYS
from ...errors import ConflictError, NotFoundError
from ...models import Doctor, ScheduleOverride, WeeklySchedule
from ..slots.service import SlotService
from .repository import ScheduleRepository
from .schemas import OverrideCreate, ScheduleCreate, ScheduleUpdate

logger = logging.getLogger(__name__)


class ScheduleService:
    """Service layer for weekly availability and date overrides"""

    def __init__(self, db: Session, clock):
        self.db = db
        self.clock = clock
        self.repo = ScheduleRepository()
        self.slots = SlotService(db, clock)

    def get_doctor(self, doctor_id: int) -> Doctor:
        doctor = self.repo.get_doctor(self.db, doctor_id)
        if not doctor:
            raise NotFoundError("Doctor not found", doctor_id=doctor_id)
        return doctor

    def list_schedules(self, doctor_id: int) -> list[WeeklySchedule]:
        self.get_doctor(doctor_id)
        return self.repo.get_schedules(self.db, doctor_id)

    def create_schedule(self, doctor_id: int, data: ScheduleCreate) -> WeeklySchedule:
        """Add a weekly window and regenerate future slots"""
        self.get_doctor(doctor_id)
        if data.is_active:
            self._ensure_no_overlap(doctor_id, data)

        schedule = self.repo.create_schedule(self.db, doctor_id, **self._schedule_fields(data))
        logger.info(
            f"📅 Schedule {schedule.id} added for doctor {doctor_id}: "
            f"day={schedule.day_of_week} {schedule.start_time}-{schedule.end_time}"
        )

        self.slots.regenerate(doctor_id)
        return schedule

    def update_schedule(self, doctor_id: int, schedule_id: int, data: ScheduleUpdate) -> WeeklySchedule:
        """Replace a weekly window; already booked slots keep their boundaries"""
        schedule = self.repo.get_schedule(self.db, doctor_id, schedule_id)
        if not schedule:
            raise NotFoundError("Schedule not found", schedule_id=schedule_id)

        if data.is_active:
            self._ensure_no_overlap(doctor_id, data, exclude_id=schedule_id)

        schedule = self.repo.update_schedule(self.db, schedule, **self._schedule_fields(data))
        logger.info(f"🔄 Schedule {schedule_id} updated for doctor {doctor_id}")

        self.slots.regenerate(doctor_id)
        return schedule

    def deactivate_schedule(self, doctor_id: int, schedule_id: int) -> WeeklySchedule:
        schedule = self.repo.get_schedule(self.db, doctor_id, schedule_id)
        if not schedule:
            raise NotFoundError("Schedule not found", schedule_id=schedule_id)

        schedule = self.repo.update_schedule(self.db, schedule, is_active=False)
        logger.info(f"⏸️ Schedule {schedule_id} deactivated for doctor {doctor_id}")

        self.slots.regenerate(doctor_id)
        return schedule

    def list_overrides(
        self, doctor_id: int, date_from: Optional[date] = None, date_to: Optional[date] = None
    ) -> list[ScheduleOverride]:
        self.get_doctor(doctor_id)
        return self.repo.get_overrides(self.db, doctor_id, date_from, date_to)

    def create_override(self, doctor_id: int, data: OverrideCreate) -> ScheduleOverride:
        """Record a holiday, leave, emergency or special-hours day"""
        self.get_doctor(doctor_id)

        if self.repo.get_override_for_date(self.db, doctor_id, data.override_date):
            raise ConflictError(
                "An override already exists for this date",
                override_date=data.override_date.isoformat(),
            )

        override = self.repo.create_override(
            self.db,
            doctor_id,
            override_date=data.override_date,
            override_type=data.override_type.value,
            start_time=data.start_time,
            end_time=data.end_time,
            reason=data.reason,
        )
        logger.info(
            f"📅 Override {override.override_type} on {override.override_date} for doctor {doctor_id}"
        )

        self.slots.regenerate(doctor_id)
        return override

    def delete_override(self, doctor_id: int, override_id: int) -> dict:
        override = self.repo.get_override(self.db, doctor_id, override_id)
        if not override:
            raise NotFoundError("Override not found", override_id=override_id)

        self.repo.delete_override(self.db, override)
        logger.info(f"🗑️ Override {override_id} removed for doctor {doctor_id}")

        self.slots.regenerate(doctor_id)
        return {"message": "Override deleted"}

    def cleanup_old_overrides(self, retention_days: int = OVERRIDE_RETENTION_DAYS) -> int:
        """Delete overrides older than the retention window"""
        cutoff = self.clock.now().date() - timedelta(days=retention_days)
        deleted = self.repo.delete_overrides_before(self.db, cutoff)
        if deleted:
            logger.info(f"🧹 Removed {deleted} overrides dated before {cutoff}")
        return deleted

    def _ensure_no_overlap(self, doctor_id: int, data, exclude_id: Optional[int] = None) -> None:
        siblings = self.repo.get_same_day_schedules(
            self.db, doctor_id, data.day_of_week, data.consultation_type.value, exclude_id
        )
        for other in siblings:
            if data.start_time < other.end_time and other.start_time < data.end_time:
                raise ConflictError(
                    "Schedule overlaps an existing active schedule",
                    conflicting_schedule_id=other.id,
                )

    @staticmethod
    def _schedule_fields(data) -> dict:
        return {
            "day_of_week": data.day_of_week,
            "start_time": data.start_time,
            "end_time": data.end_time,
            "break_start": data.break_start,
            "break_end": data.break_end,
            "slot_duration_minutes": data.slot_duration_minutes,
            "max_patients_per_slot": data.max_patients_per_slot,
            "consultation_type": data.consultation_type.value,
            "is_active": data.is_active,
        }
