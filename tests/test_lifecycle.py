"""Tests for appointment lifecycle rules."""

import pytest

from clinic_queue.core.exceptions import InvalidTransition
from clinic_queue.schemas.appointments import AppointmentEventType, AppointmentStatus
from clinic_queue.services.lifecycle import (
    Action,
    ensure_transition,
    is_active,
    is_checked_in,
    leaves_queue,
)

TERMINAL = ["completed", "cancelled", "no_show", "rescheduled"]
ACTIVE = ["scheduled", "checked_in", "in_progress"]


def test_check_in_from_scheduled() -> None:
    target, event = ensure_transition(Action.CHECK_IN, "scheduled")

    assert target == AppointmentStatus.CHECKED_IN
    assert event == AppointmentEventType.CHECKED_IN


@pytest.mark.parametrize("status", ["checked_in", "in_progress", *TERMINAL])
def test_check_in_rejected_outside_scheduled(status: str) -> None:
    with pytest.raises(InvalidTransition) as exc_info:
        ensure_transition(Action.CHECK_IN, status)

    assert exc_info.value.status_code == 409
    assert exc_info.value.current_status == status


def test_check_in_rejected_for_legacy_flagged_row() -> None:
    # A scheduled row carrying the flag is already checked in
    with pytest.raises(InvalidTransition):
        ensure_transition(Action.CHECK_IN, "scheduled", checked_in_flag=True)


def test_start_from_checked_in() -> None:
    target, _ = ensure_transition(Action.START, "checked_in")
    assert target == AppointmentStatus.IN_PROGRESS


def test_start_from_scheduled_requires_check_in() -> None:
    with pytest.raises(InvalidTransition):
        ensure_transition(Action.START, "scheduled", checked_in_flag=False)

    target, _ = ensure_transition(Action.START, "scheduled", checked_in_flag=True)
    assert target == AppointmentStatus.IN_PROGRESS


@pytest.mark.parametrize("status", ["scheduled", "checked_in", *TERMINAL])
def test_complete_only_from_in_progress(status: str) -> None:
    with pytest.raises(InvalidTransition):
        ensure_transition(Action.COMPLETE, status, checked_in_flag=True)

    assert ensure_transition(Action.COMPLETE, "in_progress")[0] == AppointmentStatus.COMPLETED


@pytest.mark.parametrize("action", [Action.CANCEL, Action.NO_SHOW, Action.RESCHEDULE])
@pytest.mark.parametrize("status", ACTIVE)
def test_side_transitions_from_every_active_state(action: Action, status: str) -> None:
    target, _ = ensure_transition(action, status)
    assert leaves_queue(target)


@pytest.mark.parametrize("action", [Action.CANCEL, Action.NO_SHOW, Action.RESCHEDULE])
@pytest.mark.parametrize("status", TERMINAL)
def test_side_transitions_rejected_from_terminal_states(action: Action, status: str) -> None:
    with pytest.raises(InvalidTransition) as exc_info:
        ensure_transition(action, status)

    assert status in exc_info.value.message


def test_checked_in_equivalence_rule() -> None:
    assert is_checked_in("checked_in", False)
    assert is_checked_in("checked_in", True)
    assert is_checked_in("scheduled", True)
    assert not is_checked_in("scheduled", False)
    # The flag stays set after the consultation starts but the status decides
    assert not is_checked_in("in_progress", True)


def test_active_statuses() -> None:
    assert [s for s in AppointmentStatus if is_active(s)] == [
        AppointmentStatus.SCHEDULED,
        AppointmentStatus.CHECKED_IN,
        AppointmentStatus.IN_PROGRESS,
    ]
    assert not leaves_queue(AppointmentStatus.CHECKED_IN)
    assert leaves_queue(AppointmentStatus.COMPLETED)
