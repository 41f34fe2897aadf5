"""Schedule repository - Database operations for weekly schedules and overrides"""

from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from ...models import Doctor, ScheduleOverride, WeeklySchedule


class ScheduleRepository:
    """Repository for schedule store database operations"""

    @staticmethod
    def get_doctor(db: Session, doctor_id: int) -> Optional[Doctor]:
        return db.query(Doctor).filter(Doctor.id == doctor_id).first()

    @staticmethod
    def get_active_doctors(db: Session) -> list[Doctor]:
        return db.query(Doctor).filter(Doctor.is_active.is_(True)).order_by(Doctor.id).all()

    @staticmethod
    def get_schedules(db: Session, doctor_id: int, active_only: bool = False) -> list[WeeklySchedule]:
        query = db.query(WeeklySchedule).filter(WeeklySchedule.doctor_id == doctor_id)
        if active_only:
            query = query.filter(WeeklySchedule.is_active.is_(True))
        return query.order_by(WeeklySchedule.day_of_week, WeeklySchedule.start_time).all()

    @staticmethod
    def get_schedule(db: Session, doctor_id: int, schedule_id: int) -> Optional[WeeklySchedule]:
        return (
            db.query(WeeklySchedule)
            .filter(WeeklySchedule.id == schedule_id, WeeklySchedule.doctor_id == doctor_id)
            .first()
        )

    @staticmethod
    def get_same_day_schedules(
        db: Session,
        doctor_id: int,
        day_of_week: int,
        consultation_type: str,
        exclude_id: Optional[int] = None,
    ) -> list[WeeklySchedule]:
        """Active schedules competing for the same weekday and consultation type"""
        query = db.query(WeeklySchedule).filter(
            WeeklySchedule.doctor_id == doctor_id,
            WeeklySchedule.day_of_week == day_of_week,
            WeeklySchedule.consultation_type == consultation_type,
            WeeklySchedule.is_active.is_(True),
        )
        if exclude_id is not None:
            query = query.filter(WeeklySchedule.id != exclude_id)
        return query.all()

    @staticmethod
    def create_schedule(db: Session, doctor_id: int, **schedule_data) -> WeeklySchedule:
        schedule = WeeklySchedule(doctor_id=doctor_id, **schedule_data)
        db.add(schedule)
        db.commit()
        db.refresh(schedule)
        return schedule

    @staticmethod
    def update_schedule(db: Session, schedule: WeeklySchedule, **updates) -> WeeklySchedule:
        for key, value in updates.items():
            if hasattr(schedule, key):
                setattr(schedule, key, value)

        db.commit()
        db.refresh(schedule)
        return schedule

    @staticmethod
    def get_overrides(
        db: Session,
        doctor_id: int,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[ScheduleOverride]:
        query = db.query(ScheduleOverride).filter(ScheduleOverride.doctor_id == doctor_id)
        if date_from is not None:
            query = query.filter(ScheduleOverride.override_date >= date_from)
        if date_to is not None:
            query = query.filter(ScheduleOverride.override_date <= date_to)
        return query.order_by(ScheduleOverride.override_date).all()

    @staticmethod
    def get_override(db: Session, doctor_id: int, override_id: int) -> Optional[ScheduleOverride]:
        return (
            db.query(ScheduleOverride)
            .filter(ScheduleOverride.id == override_id, ScheduleOverride.doctor_id == doctor_id)
            .first()
        )

    @staticmethod
    def get_override_for_date(
        db: Session, doctor_id: int, override_date: date
    ) -> Optional[ScheduleOverride]:
        return (
            db.query(ScheduleOverride)
            .filter(
                ScheduleOverride.doctor_id == doctor_id,
                ScheduleOverride.override_date == override_date,
            )
            .first()
        )

    @staticmethod
    def create_override(db: Session, doctor_id: int, **override_data) -> ScheduleOverride:
        override = ScheduleOverride(doctor_id=doctor_id, **override_data)
        db.add(override)
        db.commit()
        db.refresh(override)
        return override

    @staticmethod
    def delete_override(db: Session, override: ScheduleOverride) -> None:
        db.delete(override)
        db.commit()

    @staticmethod
    def delete_overrides_before(db: Session, cutoff: date) -> int:
        deleted = (
            db.query(ScheduleOverride)
            .filter(ScheduleOverride.override_date < cutoff)
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted
