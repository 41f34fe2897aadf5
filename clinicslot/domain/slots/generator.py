"""
Slot generator - turns weekly availability plus date overrides into slot candidates.

Pure and deterministic: no database access, no clock. The same schedules,
overrides and date range always produce an equal, identically ordered list.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Iterator, Optional, Sequence

from ...models import ConsultationType, OverrideType


CLOSED_OVERRIDES = {OverrideType.HOLIDAY.value, OverrideType.LEAVE.value}


@dataclass(frozen=True)
class ScheduleWindow:
    day_of_week: int  # 0=Monday
    start_time: time
    end_time: time
    break_start: Optional[time] = None
    break_end: Optional[time] = None
    slot_duration_minutes: Optional[int] = None
    max_patients_per_slot: Optional[int] = None
    consultation_type: str = ConsultationType.IN_PERSON.value

    @classmethod
    def from_model(cls, row) -> "ScheduleWindow":
        return cls(
            day_of_week=row.day_of_week,
            start_time=row.start_time,
            end_time=row.end_time,
            break_start=row.break_start,
            break_end=row.break_end,
            slot_duration_minutes=row.slot_duration_minutes,
            max_patients_per_slot=row.max_patients_per_slot,
            consultation_type=row.consultation_type,
        )


@dataclass(frozen=True)
class DateOverride:
    override_date: date
    override_type: str
    start_time: Optional[time] = None
    end_time: Optional[time] = None

    @classmethod
    def from_model(cls, row) -> "DateOverride":
        return cls(
            override_date=row.override_date,
            override_type=row.override_type,
            start_time=row.start_time,
            end_time=row.end_time,
        )


@dataclass(frozen=True)
class SlotDefaults:
    slot_duration_minutes: int = 15
    max_patients_per_slot: int = 1
    consultation_type: str = ConsultationType.IN_PERSON.value


@dataclass(frozen=True)
class SlotCandidate:
    doctor_id: int
    slot_date: date
    start_time: datetime
    end_time: datetime
    consultation_type: str
    max_capacity: int
    current_occupancy: int = 0

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start_time < end and start < self.end_time


def iter_dates(date_from: date, date_to: date) -> Iterator[date]:
    current = date_from
    while current <= date_to:
        yield current
        current += timedelta(days=1)


def walk_window(
    doctor_id: int,
    day: date,
    start: time,
    end: time,
    duration_minutes: int,
    capacity: int,
    consultation_type: str,
    break_start: Optional[time] = None,
    break_end: Optional[time] = None,
) -> list[SlotCandidate]:
    """
    Step through [start, end) in fixed increments.

    A step touching the break resumes at break end; a trailing remainder shorter
    than one step is dropped.
    """
    if not duration_minutes or duration_minutes <= 0 or capacity is None or capacity <= 0:
        return []
    if start >= end:
        return []

    step = timedelta(minutes=duration_minutes)
    cursor = datetime.combine(day, start)
    window_end = datetime.combine(day, end)

    has_break = break_start is not None and break_end is not None and break_start < break_end
    if has_break:
        pause_start = datetime.combine(day, break_start)
        pause_end = datetime.combine(day, break_end)

    candidates = []
    while cursor + step <= window_end:
        slot_end = cursor + step
        if has_break and cursor < pause_end and slot_end > pause_start:
            cursor = pause_end
            continue

        candidates.append(
            SlotCandidate(
                doctor_id=doctor_id,
                slot_date=day,
                start_time=cursor,
                end_time=slot_end,
                consultation_type=consultation_type,
                max_capacity=capacity,
            )
        )
        cursor = slot_end

    return candidates


def generate_slots(
    doctor_id: int,
    schedules: Iterable[ScheduleWindow],
    overrides: Iterable[DateOverride],
    date_from: date,
    date_to: date,
    defaults: SlotDefaults = SlotDefaults(),
) -> list[SlotCandidate]:
    """
    Generate ordered slot candidates for every date in [date_from, date_to].

    Per date, an override wins over the weekly schedule:
    holiday/leave closes the day, special_hours replaces the window (no break),
    emergency is informational only.
    """
    by_weekday: dict[int, list[ScheduleWindow]] = {}
    for window in schedules:
        by_weekday.setdefault(window.day_of_week, []).append(window)

    overrides_by_date = {o.override_date: o for o in overrides}

    candidates: list[SlotCandidate] = []
    for day in iter_dates(date_from, date_to):
        windows: Sequence[ScheduleWindow] = by_weekday.get(day.weekday(), [])
        override = overrides_by_date.get(day)

        if override is not None and override.override_type in CLOSED_OVERRIDES:
            continue

        if (
            override is not None
            and override.override_type == OverrideType.SPECIAL_HOURS.value
            and override.start_time
            and override.end_time
        ):
            template = windows[0] if windows else None
            candidates.extend(
                walk_window(
                    doctor_id,
                    day,
                    override.start_time,
                    override.end_time,
                    _duration(template, defaults),
                    _capacity(template, defaults),
                    template.consultation_type if template else defaults.consultation_type,
                )
            )
            continue

        for window in windows:
            candidates.extend(
                walk_window(
                    doctor_id,
                    day,
                    window.start_time,
                    window.end_time,
                    _duration(window, defaults),
                    _capacity(window, defaults),
                    window.consultation_type,
                    window.break_start,
                    window.break_end,
                )
            )

    candidates.sort(key=lambda c: (c.start_time, c.consultation_type))
    return candidates


def _duration(window: Optional[ScheduleWindow], defaults: SlotDefaults) -> int:
    if window is not None and window.slot_duration_minutes:
        return window.slot_duration_minutes
    return defaults.slot_duration_minutes


def _capacity(window: Optional[ScheduleWindow], defaults: SlotDefaults) -> int:
    if window is not None and window.max_patients_per_slot:
        return window.max_patients_per_slot
    return defaults.max_patients_per_slot
