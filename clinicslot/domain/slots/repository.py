"""Slot repository - Database operations for materialized slots"""

from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...models import Appointment, Slot, SlotReservation


class SlotRepository:
    """Repository for appointment slot database operations"""

    @staticmethod
    def get_slot(db: Session, slot_id: int, refresh: bool = False) -> Optional[Slot]:
        query = db.query(Slot).filter(Slot.id == slot_id)
        if refresh:
            query = query.populate_existing()
        return query.first()

    @staticmethod
    def get_slots_between(
        db: Session, doctor_id: int, start: datetime, end: datetime
    ) -> list[Slot]:
        """All slots starting in [start, end)"""
        return (
            db.query(Slot)
            .filter(Slot.doctor_id == doctor_id, Slot.start_time >= start, Slot.start_time < end)
            .order_by(Slot.start_time, Slot.consultation_type)
            .all()
        )

    @staticmethod
    def get_referenced_slot_ids(db: Session, slot_ids: Iterable[int]) -> set[int]:
        """Slots backing at least one appointment or reservation, whatever its status"""
        slot_ids = list(slot_ids)
        if not slot_ids:
            return set()
        appointment_rows = (
            db.query(Appointment.slot_id)
            .filter(Appointment.slot_id.in_(slot_ids))
            .distinct()
            .all()
        )
        reservation_rows = (
            db.query(SlotReservation.slot_id)
            .filter(SlotReservation.slot_id.in_(slot_ids))
            .distinct()
            .all()
        )
        return {row[0] for row in appointment_rows} | {row[0] for row in reservation_rows}

    @staticmethod
    def get_available_slots(
        db: Session,
        doctor_id: int,
        date_from: date,
        date_to: date,
        now: datetime,
        consultation_type: Optional[str] = None,
    ) -> list[Slot]:
        query = db.query(Slot).filter(
            Slot.doctor_id == doctor_id,
            Slot.slot_date >= date_from,
            Slot.slot_date <= date_to,
            Slot.start_time > now,
            Slot.is_blocked.is_(False),
            Slot.current_occupancy < Slot.max_capacity,
            or_(Slot.locked_by.is_(None), Slot.locked_until <= now),
        )
        if consultation_type:
            query = query.filter(Slot.consultation_type == consultation_type)
        return query.order_by(Slot.start_time, Slot.consultation_type).all()

    @staticmethod
    def delete_unoccupied(db: Session, slot_ids: Iterable[int]) -> int:
        """Delete slots by id, guarded so a concurrent booking keeps its slot"""
        slot_ids = list(slot_ids)
        if not slot_ids:
            return 0
        return (
            db.query(Slot)
            .filter(Slot.id.in_(slot_ids), Slot.current_occupancy == 0)
            .delete(synchronize_session=False)
        )
