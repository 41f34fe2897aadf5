"""Slot domain schemas - Pydantic models for responses"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel


class SlotResponse(BaseModel):
    id: int
    doctor_id: int
    slot_date: date
    start_time: datetime
    end_time: datetime
    consultation_type: str
    max_capacity: int
    current_occupancy: int
    remaining_capacity: int
    is_blocked: bool = False

    @classmethod
    def from_slot(cls, slot) -> "SlotResponse":
        return cls(
            id=slot.id,
            doctor_id=slot.doctor_id,
            slot_date=slot.slot_date,
            start_time=slot.start_time,
            end_time=slot.end_time,
            consultation_type=slot.consultation_type,
            max_capacity=slot.max_capacity,
            current_occupancy=slot.current_occupancy,
            remaining_capacity=max(0, slot.max_capacity - slot.current_occupancy),
            is_blocked=slot.is_blocked,
        )


class AvailableSlotsResponse(BaseModel):
    doctor_id: int
    date_from: date
    date_to: date
    consultation_type: Optional[str] = None
    slots: list[SlotResponse]
