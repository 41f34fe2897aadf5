"""Schedule domain schemas - Pydantic models for validation"""

from datetime import date, datetime, time
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ...models import ConsultationType, OverrideType
from ...shared.validators import parse_clock_time


class ScheduleBase(BaseModel):
    day_of_week: int = Field(..., ge=0, le=6, description="0=Monday ... 6=Sunday")
    start_time: time
    end_time: time
    break_start: Optional[time] = None
    break_end: Optional[time] = None
    slot_duration_minutes: Optional[int] = Field(None, gt=0, le=240)
    max_patients_per_slot: Optional[int] = Field(None, gt=0, le=100)
    consultation_type: ConsultationType = ConsultationType.IN_PERSON
    is_active: bool = True

    @field_validator("start_time", "end_time", "break_start", "break_end", mode="before")
    @classmethod
    def parse_times(cls, v):
        return parse_clock_time(v)

    @model_validator(mode="after")
    def check_ranges(self):
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")

        if (self.break_start is None) != (self.break_end is None):
            raise ValueError("break_start and break_end must be provided together")

        if self.break_start is not None:
            if self.break_start >= self.break_end:
                raise ValueError("break_start must be before break_end")
            if self.break_start < self.start_time or self.break_end > self.end_time:
                raise ValueError("break must fall within working hours")

        return self


class ScheduleCreate(ScheduleBase):
    """Schema for adding a weekly availability window"""


class ScheduleUpdate(ScheduleBase):
    """Full replacement of a weekly availability window"""


class ScheduleResponse(BaseModel):
    id: int
    doctor_id: int
    day_of_week: int
    start_time: time
    end_time: time
    break_start: Optional[time] = None
    break_end: Optional[time] = None
    slot_duration_minutes: Optional[int] = None
    max_patients_per_slot: Optional[int] = None
    consultation_type: str
    is_active: bool

    class Config:
        from_attributes = True


class OverrideCreate(BaseModel):
    override_date: date
    override_type: OverrideType
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    reason: Optional[str] = Field(None, max_length=500)

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_times(cls, v):
        return parse_clock_time(v)

    @model_validator(mode="after")
    def check_special_hours(self):
        if self.override_type == OverrideType.SPECIAL_HOURS:
            if self.start_time is None or self.end_time is None:
                raise ValueError("special_hours overrides require start_time and end_time")
            if self.start_time >= self.end_time:
                raise ValueError("start_time must be before end_time")
        return self


class OverrideResponse(BaseModel):
    id: int
    doctor_id: int
    override_date: date
    override_type: str
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    reason: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RegenerationSummary(BaseModel):
    created: int = 0
    deleted: int = 0
    blocked: int = 0
    unblocked: int = 0
    kept: int = 0
