"""
Clock sources.

Stored datetimes are naive wall-clock values in the clinic's timezone, so every
"now" used for lock expiry, refund windows and sweeps must come from here.
"""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from .config import CLINIC_TIMEZONE


class SystemClock:
    """Wall clock in the configured clinic timezone"""

    def __init__(self, timezone: str = CLINIC_TIMEZONE):
        self.zone = ZoneInfo(timezone)

    def now(self) -> datetime:
        return datetime.now(self.zone).replace(tzinfo=None, microsecond=0)


class FixedClock:
    """Manually advanced clock for tests and replays"""

    def __init__(self, current: datetime):
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, current: datetime) -> None:
        self.current = current


def get_clock() -> SystemClock:
    """Dependency injection for the request clock"""
    return SystemClock()
