"""Tests for the appointment state machine rules."""

import pytest

from clinicslot.domain.appointments.lifecycle import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    AppointmentStatus,
    can_transition,
    validate_transition,
)
from clinicslot.errors import ConflictError, InvalidStateTransition


class TestTransitionTable:
    """Allowed and forbidden moves between appointment states."""

    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending_payment", "confirmed"),
            ("pending_payment", "cancelled"),
            ("confirmed", "cancelled"),
            ("confirmed", "completed"),
            ("confirmed", "no_show"),
        ],
    )
    def test_allowed(self, current, target) -> None:
        assert can_transition(current, target)
        validate_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            ("completed", "cancelled"),
            ("cancelled", "confirmed"),
            ("no_show", "completed"),
            ("pending_payment", "completed"),
            ("pending_payment", "no_show"),
            ("confirmed", "pending_payment"),
        ],
    )
    def test_forbidden(self, current, target) -> None:
        assert not can_transition(current, target)

    def test_error_names_both_states(self) -> None:
        with pytest.raises(InvalidStateTransition) as exc_info:
            validate_transition("completed", "cancelled")

        error = exc_info.value
        assert isinstance(error, ConflictError)
        assert error.status_code == 409
        assert error.details == {"current_status": "completed", "requested_status": "cancelled"}
        assert "completed" in error.message and "cancelled" in error.message

    def test_terminal_and_active_sets(self) -> None:
        assert TERMINAL_STATES == {
            AppointmentStatus.CANCELLED,
            AppointmentStatus.COMPLETED,
            AppointmentStatus.NO_SHOW,
        }
        assert ACTIVE_STATES.isdisjoint(TERMINAL_STATES)
