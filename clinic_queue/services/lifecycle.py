"""Appointment lifecycle rules.

The explicit ``checked_in`` status is the canonical representation of a
checked-in patient. The ``checked_in`` boolean column is a derived view kept in
lockstep by every transition; rows written by older clients may carry the flag
on a ``scheduled`` row, which :func:`is_checked_in` treats as equivalent.
"""

from enum import Enum
from typing import Any

from clinic_queue.core.exceptions import InvalidTransition
from clinic_queue.schemas.appointments import (
    ACTIVE_STATUSES,
    AppointmentEventType,
    AppointmentStatus,
)


class Action(str, Enum):
    """Lifecycle operations."""

    CHECK_IN = "check in"
    START = "start"
    COMPLETE = "complete"
    CANCEL = "cancel"
    NO_SHOW = "mark as no-show"
    RESCHEDULE = "reschedule"


# Target status and audit event for each action
_TARGETS: dict[Action, tuple[AppointmentStatus, AppointmentEventType]] = {
    Action.CHECK_IN: (AppointmentStatus.CHECKED_IN, AppointmentEventType.CHECKED_IN),
    Action.START: (AppointmentStatus.IN_PROGRESS, AppointmentEventType.STARTED),
    Action.COMPLETE: (AppointmentStatus.COMPLETED, AppointmentEventType.COMPLETED),
    Action.CANCEL: (AppointmentStatus.CANCELLED, AppointmentEventType.CANCELLED),
    Action.NO_SHOW: (AppointmentStatus.NO_SHOW, AppointmentEventType.NO_SHOW),
    Action.RESCHEDULE: (AppointmentStatus.RESCHEDULED, AppointmentEventType.RESCHEDULED),
}

# Recalculation job priority per action, most urgent first
RECALCULATION_PRIORITY: dict[Action, int] = {
    Action.START: 1,
    Action.COMPLETE: 1,
    Action.CHECK_IN: 2,
}
DEFAULT_RECALCULATION_PRIORITY = 3
# Emergency insertions and doctor delays
URGENT_RECALCULATION_PRIORITY = 1


def is_active(status: str | AppointmentStatus) -> bool:
    """Whether the status is eligible for queue positioning."""
    return AppointmentStatus(status) in ACTIVE_STATUSES


def is_checked_in(status: str | AppointmentStatus, checked_in_flag: bool) -> bool:
    """Equivalence rule between the checked-in status and the legacy flag."""
    status = AppointmentStatus(status)
    if status == AppointmentStatus.CHECKED_IN:
        return True
    return status == AppointmentStatus.SCHEDULED and bool(checked_in_flag)


def is_allowed(action: Action, status: str | AppointmentStatus, checked_in_flag: bool) -> bool:
    """Whether ``action`` may be applied to an appointment in ``status``."""
    status = AppointmentStatus(status)
    if action == Action.CHECK_IN:
        return status == AppointmentStatus.SCHEDULED and not checked_in_flag
    if action == Action.START:
        return status in (
            AppointmentStatus.SCHEDULED,
            AppointmentStatus.CHECKED_IN,
        ) and is_checked_in(status, checked_in_flag)
    if action == Action.COMPLETE:
        return status == AppointmentStatus.IN_PROGRESS
    # Side transitions are reachable from every non-terminal state
    return status in ACTIVE_STATUSES


def ensure_transition(
    action: Action,
    status: str | AppointmentStatus,
    checked_in_flag: bool = False,
) -> tuple[AppointmentStatus, AppointmentEventType]:
    """
    Validate a transition and return its target status and audit event.

    Raises:
        InvalidTransition: If the action is not permitted from ``status``
    """
    if not is_allowed(action, status, checked_in_flag):
        raise InvalidTransition(action.value, AppointmentStatus(status).value)
    return _TARGETS[action]


def leaves_queue(target: AppointmentStatus) -> bool:
    """Whether moving to ``target`` removes the appointment from its queue."""
    return target not in ACTIVE_STATUSES


def cleared_queue_fields() -> dict[str, Any]:
    """Column values for an appointment that no longer holds a queue slot."""
    return {"queue_position": None, "estimated_start_at": None, "delay_minutes": None}
