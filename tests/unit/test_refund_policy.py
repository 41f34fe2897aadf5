"""Tests for the cancellation refund policy."""

from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from clinicslot.domain.refunds.policy import (
    CancellationActor,
    RefundPolicyConfig,
    compute_refund,
)

START = datetime(2026, 3, 2, 10, 0)


def appointment(total="535.00", platform_fee="35.00"):
    return SimpleNamespace(
        scheduled_start=START, total_amount=Decimal(total), platform_fee=Decimal(platform_fee)
    )


def refund_at(hours_before: float, actor=CancellationActor.PATIENT, **kwargs):
    return compute_refund(appointment(), actor, START - timedelta(hours=hours_before), **kwargs)


class TestPatientTiers:
    """Patient cancellations follow the time-to-start tiers."""

    @pytest.mark.parametrize(
        "hours_before,refund_type,percentage",
        [
            (48, "full", 100),
            (24, "full", 100),
            (23.9, "partial_75", 75),
            (6, "partial_75", 75),
            (5.5, "partial_50", 50),
            (1, "partial_50", 50),
            (0.5, "none", 0),
            (-1, "none", 0),
        ],
    )
    def test_tier_boundaries(self, hours_before, refund_type, percentage) -> None:
        decision = refund_at(hours_before)
        assert (decision.refund_type, decision.percentage) == (refund_type, percentage)

    def test_cancel_two_hours_before_ten_am_refunds_half(self) -> None:
        """Cancelling at 08:00 for a 10:00 start refunds 50%."""
        decision = compute_refund(appointment(), "patient", datetime(2026, 3, 2, 8, 0))

        assert decision.percentage == 50
        assert decision.amount == Decimal("267.50")
        assert decision.platform_fee_refund == Decimal("17.50")
        assert decision.original_amount == Decimal("535.00")

    def test_percentage_never_increases_as_start_approaches(self) -> None:
        hours = [72 - step * 0.25 for step in range(300)]
        percentages = [refund_at(h).percentage for h in hours]

        assert all(a >= b for a, b in zip(percentages, percentages[1:]))

    def test_no_show_refunds_nothing(self) -> None:
        decision = refund_at(48, no_show=True)

        assert decision.percentage == 0
        assert decision.amount == Decimal("0.00")
        assert not decision.is_refundable


class TestProviderAndPlatform:
    """Doctor, hospital and platform cancellations refund in full."""

    @pytest.mark.parametrize("actor", ["doctor", "hospital"])
    def test_provider_cancellation(self, actor) -> None:
        decision = refund_at(0.1, actor)
        assert decision.refund_type == "doctor_cancelled"
        assert decision.amount == Decimal("535.00")

    @pytest.mark.parametrize("actor", ["admin", "system"])
    def test_platform_cancellation(self, actor) -> None:
        decision = refund_at(0.1, actor)
        assert decision.refund_type == "technical_failure"
        assert decision.percentage == 100

    def test_unknown_actor_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            refund_at(10, "receptionist")


class TestPolicyConfig:
    def test_custom_tiers(self) -> None:
        policy = RefundPolicyConfig(
            full_hours=48, partial_high_hours=12, partial_high_percent=80,
            partial_low_hours=2, partial_low_percent=25,
        )
        assert refund_at(30, policy=policy).percentage == 80
        assert refund_at(3, policy=policy).refund_type == "partial_25"

    def test_rounding_is_half_up(self) -> None:
        decision = compute_refund(
            appointment(total="100.01", platform_fee="0.05"), "patient", START - timedelta(hours=2)
        )
        assert decision.amount == Decimal("50.01")
        assert decision.platform_fee_refund == Decimal("0.03")

    def test_rejects_increasing_hours(self) -> None:
        with pytest.raises(ValueError):
            RefundPolicyConfig(full_hours=6, partial_high_hours=24)

    def test_rejects_increasing_percentages(self) -> None:
        with pytest.raises(ValueError):
            RefundPolicyConfig(partial_high_percent=40, partial_low_percent=60)
