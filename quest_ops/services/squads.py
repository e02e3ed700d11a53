"""Squad moderation payloads and active squad summaries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..models import Squad, SquadStatus, parse_timestamp

ACTIVE_SQUAD_STATUSES = (SquadStatus.APPROVED, SquadStatus.ACTIVE, SquadStatus.COMPLETED)


def status_update_payload(
    status: SquadStatus,
    *,
    notes: Optional[str],
    admin_id: Optional[str],
    now: datetime,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"status": status.value, "approval_notes": notes}
    if status is SquadStatus.APPROVED:
        payload["approved_at"] = now.isoformat()
        payload["approved_by"] = admin_id
    return payload


def approval_notification(squad_id: str, instance_id: Optional[str]) -> Dict[str, Any]:
    """Body for the ``notify-clique-members`` edge function."""

    return {
        "squad_id": squad_id,
        "notification_type": "clique_approved",
        "title": "Clique Approved!",
        "body": "Your clique has been approved. Quest instructions are now unlocked!",
        "metadata": {"instance_id": instance_id},
    }


@dataclass
class ActiveSquadSummary:
    id: str
    squad_name: str
    status: SquadStatus
    member_count: int
    last_message_at: Optional[datetime] = None

    def idle_minutes(self, now: datetime) -> Optional[int]:
        if self.last_message_at is None:
            return None
        return int((now - self.last_message_at).total_seconds() // 60)


def summarize_active_squad(
    row: Mapping[str, Any], last_message: Optional[Mapping[str, Any]]
) -> ActiveSquadSummary:
    members = row.get("squad_members") or []
    return ActiveSquadSummary(
        id=str(row["id"]),
        squad_name=row.get("squad_name") or f"Squad {str(row['id'])[:4]}",
        status=SquadStatus(row.get("status")),
        member_count=sum(1 for member in members if member.get("status") != "dropped"),
        last_message_at=parse_timestamp(last_message.get("created_at")) if last_message else None,
    )


WARMUP_READY_NOTIFICATION = "squad_ready_review"
WARMUP_STALLED_NOTIFICATION = "squad_warmup_stalled"

_WARMUP_HEADINGS = {
    WARMUP_READY_NOTIFICATION: "Squad Ready for Approval",
    WARMUP_STALLED_NOTIFICATION: "Squad Warm-Up Stalled",
}


def warmup_admin_notifications(
    admin_ids: Iterable[str], notification_type: str, squad: Squad
) -> List[Dict[str, Any]]:
    """In-app notifications for admins; ``body`` holds the squad id for deduplication."""

    heading = _WARMUP_HEADINGS[notification_type]
    return [
        {
            "user_id": admin_id,
            "type": notification_type,
            "title": f"{heading}: {squad.display_name()}",
            "body": squad.id,
            "quest_id": None,
        }
        for admin_id in dict.fromkeys(admin_ids)
        if admin_id
    ]
