"""Instance lifecycle payload helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..models import InstanceStatus

PAUSE_FIELDS = ("paused_at", "paused_reason", "previous_status")
AUDITED_STATUSES = frozenset(
    {InstanceStatus.CANCELLED, InstanceStatus.PAUSED, InstanceStatus.ARCHIVED}
)
NOTIFY_STATUSES = frozenset({InstanceStatus.PAUSED, InstanceStatus.CANCELLED})


def transition_payload(
    current: InstanceStatus,
    target: InstanceStatus,
    *,
    reason: Optional[str],
    now: datetime,
) -> Dict[str, Any]:
    """Row update for ``current -> target``.

    Pausing records when, why and from where; leaving ``paused`` clears
    those columns again.
    """

    payload: Dict[str, Any] = {"status": target.value}
    if target is InstanceStatus.PAUSED:
        payload.update(
            paused_at=now.isoformat(),
            paused_reason=reason,
            previous_status=current.value,
        )
    elif current is InstanceStatus.PAUSED:
        payload.update({name: None for name in PAUSE_FIELDS})
    return payload


def resume_target(previous_status: Optional[str]) -> InstanceStatus:
    if not previous_status:
        return InstanceStatus.RECRUITING
    return InstanceStatus(previous_status)


def ops_event_type(target: InstanceStatus) -> str:
    return "manual_override" if target is InstanceStatus.PAUSED else "quest_status_changed"


def notification_rows(
    user_ids: Iterable[str],
    *,
    title: str,
    status: InstanceStatus,
    reason: Optional[str],
) -> List[Dict[str, Any]]:
    if status is InstanceStatus.PAUSED:
        heading = f"Quest Paused: {title}"
        body = f"The quest has been temporarily paused. {reason or 'We will update you when it resumes.'}"
    else:
        heading = f"Quest Cancelled: {title}"
        body = f"Unfortunately, this quest has been cancelled. {reason or 'We apologize for any inconvenience.'}"
    return [
        {"user_id": user_id, "type": "general", "title": heading, "body": body}
        for user_id in dict.fromkeys(user_ids)
        if user_id
    ]


@dataclass
class TransitionResult:
    instance_id: str
    previous_status: InstanceStatus
    status: InstanceStatus
    notified_users: int = 0


@dataclass
class BulkTransitionResult:
    status: InstanceStatus
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def transition_notice(result: TransitionResult) -> str:
    text = (
        f"Instance {result.instance_id}: "
        f"{result.previous_status.value} -> {result.status.value}"
    )
    if result.notified_users:
        text += f" ({result.notified_users} users notified)"
    return text
