"""
Refund policy - maps a cancellation to a refund percentage and amount.

Pure: no database, no gateway, no clock. The caller supplies ``now`` and
settles the computed amount with the payment provider later.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from ...config import (
    REFUND_FULL_HOURS,
    REFUND_PARTIAL_HIGH_HOURS,
    REFUND_PARTIAL_HIGH_PERCENT,
    REFUND_PARTIAL_LOW_HOURS,
    REFUND_PARTIAL_LOW_PERCENT,
)

CENTS = Decimal("0.01")


class CancellationActor(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    HOSPITAL = "hospital"
    ADMIN = "admin"
    SYSTEM = "system"


class RefundType(str, Enum):
    FULL = "full"
    PARTIAL_75 = "partial_75"
    PARTIAL_50 = "partial_50"
    NONE = "none"
    DOCTOR_CANCELLED = "doctor_cancelled"
    TECHNICAL_FAILURE = "technical_failure"


PROVIDER_ACTORS = {CancellationActor.DOCTOR, CancellationActor.HOSPITAL}
PLATFORM_ACTORS = {CancellationActor.ADMIN, CancellationActor.SYSTEM}


@dataclass(frozen=True)
class RefundPolicyConfig:
    """Patient cancellation tiers, in hours before the scheduled start"""

    full_hours: float = REFUND_FULL_HOURS
    partial_high_hours: float = REFUND_PARTIAL_HIGH_HOURS
    partial_high_percent: int = REFUND_PARTIAL_HIGH_PERCENT
    partial_low_hours: float = REFUND_PARTIAL_LOW_HOURS
    partial_low_percent: int = REFUND_PARTIAL_LOW_PERCENT

    def __post_init__(self):
        if not self.full_hours >= self.partial_high_hours >= self.partial_low_hours >= 0:
            raise ValueError("Refund tier hours must be non-increasing")
        if not 100 >= self.partial_high_percent >= self.partial_low_percent >= 0:
            raise ValueError("Refund tier percentages must be non-increasing and within 0-100")

    def patient_tier(self, hours_before_start: float) -> tuple[str, int]:
        if hours_before_start >= self.full_hours:
            return RefundType.FULL.value, 100
        if hours_before_start >= self.partial_high_hours:
            return _partial_type(self.partial_high_percent), self.partial_high_percent
        if hours_before_start >= self.partial_low_hours:
            return _partial_type(self.partial_low_percent), self.partial_low_percent
        return RefundType.NONE.value, 0


DEFAULT_POLICY = RefundPolicyConfig()


@dataclass(frozen=True)
class RefundDecision:
    refund_type: str
    percentage: int
    original_amount: Decimal
    amount: Decimal
    platform_fee_refund: Decimal

    @property
    def is_refundable(self) -> bool:
        return self.amount > 0


def compute_refund(
    appointment,
    cancelled_by,
    now: datetime,
    no_show: bool = False,
    policy: RefundPolicyConfig = DEFAULT_POLICY,
) -> RefundDecision:
    """
    Decide the refund for cancelling ``appointment`` at ``now``.

    Provider cancellations and platform failures refund in full; patient
    cancellations follow the time tiers; a no-show refunds nothing.
    """
    actor = CancellationActor(cancelled_by)

    if actor in PROVIDER_ACTORS:
        refund_type, percentage = RefundType.DOCTOR_CANCELLED.value, 100
    elif actor in PLATFORM_ACTORS:
        refund_type, percentage = RefundType.TECHNICAL_FAILURE.value, 100
    elif no_show:
        refund_type, percentage = RefundType.NONE.value, 0
    else:
        hours_before_start = (appointment.scheduled_start - now).total_seconds() / 3600
        refund_type, percentage = policy.patient_tier(hours_before_start)

    original_amount = _money(appointment.total_amount)
    return RefundDecision(
        refund_type=refund_type,
        percentage=percentage,
        original_amount=original_amount,
        amount=_portion(original_amount, percentage),
        platform_fee_refund=_portion(_money(appointment.platform_fee), percentage),
    )


def _partial_type(percentage: int) -> str:
    return f"partial_{percentage}"


def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENTS, rounding=ROUND_HALF_UP)


def _portion(amount: Decimal, percentage: int) -> Decimal:
    return (amount * Decimal(percentage) / Decimal(100)).quantize(CENTS, rounding=ROUND_HALF_UP)
