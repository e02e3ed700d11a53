"""Status transition tables for instances, signups and squads.

The backend owns every status column; the console only validates admin
actions against these tables before issuing a row update.
"""
from __future__ import annotations

from typing import Dict, FrozenSet, List, Type, TypeVar

from .models import InstanceStatus, SignupStatus, SquadStatus

StatusT = TypeVar("StatusT", InstanceStatus, SignupStatus, SquadStatus)


class TransitionError(ValueError):
    """Raised when a status change is not allowed by its transition table."""

    def __init__(self, current: str, target: str, message: str | None = None) -> None:
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot transition from '{current}' to '{target}'")


INSTANCE_TRANSITIONS: Dict[InstanceStatus, FrozenSet[InstanceStatus]] = {
    InstanceStatus.DRAFT: frozenset({InstanceStatus.RECRUITING, InstanceStatus.CANCELLED}),
    InstanceStatus.RECRUITING: frozenset(
        {InstanceStatus.LOCKED, InstanceStatus.PAUSED, InstanceStatus.CANCELLED}
    ),
    # Locked instances can be unlocked back to recruiting.
    InstanceStatus.LOCKED: frozenset(
        {
            InstanceStatus.RECRUITING,
            InstanceStatus.LIVE,
            InstanceStatus.PAUSED,
            InstanceStatus.CANCELLED,
        }
    ),
    InstanceStatus.LIVE: frozenset({InstanceStatus.COMPLETED, InstanceStatus.PAUSED}),
    InstanceStatus.PAUSED: frozenset(
        {
            InstanceStatus.RECRUITING,
            InstanceStatus.LOCKED,
            InstanceStatus.LIVE,
            InstanceStatus.CANCELLED,
        }
    ),
    InstanceStatus.COMPLETED: frozenset({InstanceStatus.ARCHIVED}),
    InstanceStatus.CANCELLED: frozenset({InstanceStatus.ARCHIVED}),
    InstanceStatus.ARCHIVED: frozenset(),
}

INSTANCE_REQUIRES_REASON: FrozenSet[InstanceStatus] = frozenset(
    {InstanceStatus.PAUSED, InstanceStatus.CANCELLED}
)

SIGNUP_TRANSITIONS: Dict[SignupStatus, FrozenSet[SignupStatus]] = {
    SignupStatus.PENDING: frozenset(
        {SignupStatus.CONFIRMED, SignupStatus.STANDBY, SignupStatus.DROPPED}
    ),
    SignupStatus.CONFIRMED: frozenset(
        {
            SignupStatus.COMPLETED,
            SignupStatus.NO_SHOW,
            SignupStatus.DROPPED,
            SignupStatus.STANDBY,
        }
    ),
    SignupStatus.STANDBY: frozenset({SignupStatus.CONFIRMED, SignupStatus.DROPPED}),
    SignupStatus.COMPLETED: frozenset(),
    SignupStatus.DROPPED: frozenset(),
    SignupStatus.NO_SHOW: frozenset(),
}

SQUAD_TRANSITIONS: Dict[SquadStatus, FrozenSet[SquadStatus]] = {
    SquadStatus.DRAFT: frozenset({SquadStatus.WARMING_UP, SquadStatus.CANCELLED}),
    SquadStatus.CONFIRMED: frozenset(
        {SquadStatus.WARMING_UP, SquadStatus.ACTIVE, SquadStatus.CANCELLED}
    ),
    SquadStatus.WARMING_UP: frozenset({SquadStatus.READY_FOR_REVIEW, SquadStatus.CANCELLED}),
    SquadStatus.READY_FOR_REVIEW: frozenset(
        {SquadStatus.APPROVED, SquadStatus.WARMING_UP, SquadStatus.CANCELLED}
    ),
    SquadStatus.APPROVED: frozenset({SquadStatus.ACTIVE, SquadStatus.CANCELLED}),
    SquadStatus.ACTIVE: frozenset({SquadStatus.COMPLETED, SquadStatus.CANCELLED}),
    SquadStatus.COMPLETED: frozenset(),
    SquadStatus.CANCELLED: frozenset(),
}

_TABLES = {
    InstanceStatus: INSTANCE_TRANSITIONS,
    SignupStatus: SIGNUP_TRANSITIONS,
    SquadStatus: SQUAD_TRANSITIONS,
}

TERMINAL_SIGNUP_STATUSES: FrozenSet[SignupStatus] = frozenset(
    status for status, targets in SIGNUP_TRANSITIONS.items() if not targets
)


def allowed_transitions(current: StatusT) -> List[StatusT]:
    """Return the statuses reachable from ``current`` in declaration order."""

    table = _TABLES[type(current)]
    targets = table.get(current, frozenset())
    return [status for status in type(current) if status in targets]


def can_transition(current: StatusT, target: StatusT) -> bool:
    if type(current) is not type(target):
        return False
    return target in _TABLES[type(current)].get(current, frozenset())


def requires_reason(target: InstanceStatus) -> bool:
    return target in INSTANCE_REQUIRES_REASON


def coerce_status(enum_type: Type[StatusT], value: str | StatusT) -> StatusT:
    """Narrow a raw status string into ``enum_type`` or raise ``ValueError``."""

    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        valid = ", ".join(status.value for status in enum_type)
        raise ValueError(f"Unknown {enum_type.__name__} '{value}' (expected one of: {valid})") from None


def validate_instance_transition(
    current: InstanceStatus, target: InstanceStatus, reason: str | None = None
) -> None:
    """Raise ``TransitionError`` unless ``current -> target`` is a valid admin action."""

    if not can_transition(current, target):
        raise TransitionError(current.value, target.value)
    if requires_reason(target) and not (reason or "").strip():
        raise TransitionError(
            current.value,
            target.value,
            f"A reason is required to transition to '{target.value}'",
        )


__all__ = [
    "TransitionError",
    "INSTANCE_TRANSITIONS",
    "INSTANCE_REQUIRES_REASON",
    "SIGNUP_TRANSITIONS",
    "SQUAD_TRANSITIONS",
    "TERMINAL_SIGNUP_STATUSES",
    "allowed_transitions",
    "can_transition",
    "requires_reason",
    "coerce_status",
    "validate_instance_transition",
]
