from __future__ import annotations

from enum import Enum

from .errors import InvalidTransition


class SessionStatus(str, Enum):
    CREATED = "created"
    ANALYZING = "analyzing"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    PLANNING_UPDATE = "planning_update"
    APPROVED = "approved"
    PROVISIONING = "provisioning"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    PUBLISHING = "publishing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"


S = SessionStatus

TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    S.CREATED: frozenset({S.ANALYZING, S.FAILED}),
    S.ANALYZING: frozenset({S.PLANNING, S.FAILED}),
    S.PLANNING: frozenset({S.AWAITING_APPROVAL, S.FAILED}),
    S.AWAITING_APPROVAL: frozenset({S.PLANNING_UPDATE, S.APPROVED, S.REJECTED, S.FAILED}),
    S.PLANNING_UPDATE: frozenset({S.AWAITING_APPROVAL, S.FAILED}),
    S.APPROVED: frozenset({S.PROVISIONING, S.FAILED}),
    S.PROVISIONING: frozenset({S.EXECUTING, S.FAILED}),
    S.EXECUTING: frozenset({S.VERIFYING, S.FAILED}),
    S.VERIFYING: frozenset({S.PUBLISHING, S.FAILED}),
    S.PUBLISHING: frozenset({S.COMPLETED, S.FAILED}),
    S.COMPLETED: frozenset(),
    S.REJECTED: frozenset(),
    S.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({S.COMPLETED, S.REJECTED, S.FAILED})
WAITING_STATUSES = frozenset({S.AWAITING_APPROVAL, S.PLANNING_UPDATE})


def is_terminal(status: SessionStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def next_status(current: SessionStatus, target: SessionStatus) -> SessionStatus:
    """Validate `current -> target` and return `target`.

    Raises:
        InvalidTransition: The transition is not in the table.
    """
    if not can_transition(current, target):
        raise InvalidTransition(f"Illegal session transition {current.value} -> {target.value}")
    return target
