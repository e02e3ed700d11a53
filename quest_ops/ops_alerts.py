"""Control-room alerts, warm-up status checks and support SLA breaches."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from .anomalies import whole_days_between, whole_hours_between
from .config import Settings, get_settings
from .models import (
    Instance,
    InstanceStatus,
    Quest,
    Severity,
    Squad,
    SquadStatus,
    SupportTicket,
)

REVIEW_WARNING_HOURS = 48
REVIEW_ERROR_HOURS = 72
LOW_SIGNUP_WARNING_RATIO = 0.25
LOW_SIGNUP_ERROR_RATIO = 0.10
REVOKED_WINDOW_DAYS = 7
CANCELLED_WINDOW_DAYS = 3
STALE_DRAFT_DAYS = 14
WARMUP_STALL_HOURS = 24
SLA_FIRST_RESPONSE_HOURS = 4
SLA_RESOLUTION_HOURS = 24

CLOSED_TICKET_STATUSES = frozenset({"resolved", "closed"})


@dataclass
class OpsAlert:
    id: str
    type: str
    severity: Severity
    title: str
    description: str
    timestamp: datetime
    quest_id: Optional[str] = None
    instance_id: Optional[str] = None


def pending_review_alerts(
    quests: Iterable[Quest],
    now: datetime,
    *,
    warning_hours: int = REVIEW_WARNING_HOURS,
    error_hours: int = REVIEW_ERROR_HOURS,
) -> List[OpsAlert]:
    alerts: List[OpsAlert] = []
    for quest in quests:
        if quest.review_status != "pending_review" or quest.created_at is None:
            continue
        hours = whole_hours_between(now, quest.created_at)
        if hours <= warning_hours:
            continue
        alerts.append(
            OpsAlert(
                id=f"pending-{quest.id}",
                type="pending_review",
                severity=Severity.ERROR if hours > error_hours else Severity.WARNING,
                title="Quest pending review too long",
                description=f'"{quest.title}" has been waiting for review for {hours // 24} days.',
                timestamp=quest.created_at,
                quest_id=quest.id,
            )
        )
    return alerts


def low_signup_alerts(
    instances: Iterable[Instance],
    now: datetime,
    *,
    warning_ratio: float = LOW_SIGNUP_WARNING_RATIO,
    error_ratio: float = LOW_SIGNUP_ERROR_RATIO,
) -> List[OpsAlert]:
    """Recruiting or locked instances scheduled today or tomorrow that are under-filled."""

    today = now.date()
    window = {today, today + timedelta(days=1)}
    alerts: List[OpsAlert] = []
    for instance in instances:
        if instance.status not in (InstanceStatus.RECRUITING, InstanceStatus.LOCKED):
            continue
        if instance.scheduled_date not in window or instance.capacity <= 0:
            continue
        fill_rate = instance.fill_rate()
        if fill_rate >= warning_ratio:
            continue
        alerts.append(
            OpsAlert(
                id=f"low-signup-{instance.id}",
                type="low_signups",
                severity=Severity.ERROR if fill_rate < error_ratio else Severity.WARNING,
                title="Instance launching with low signups",
                description=(
                    f'"{instance.title}" on {instance.scheduled_date.isoformat()} has only '
                    f"{instance.current_signup_count}/{instance.capacity} signups "
                    f"({math.floor(fill_rate * 100 + 0.5)}%)."
                ),
                timestamp=instance.starts_at() or now,
                instance_id=instance.id,
            )
        )
    return alerts


def revoked_quest_alerts(
    quests: Iterable[Quest], now: datetime, *, window_days: int = REVOKED_WINDOW_DAYS
) -> List[OpsAlert]:
    cutoff = now - timedelta(days=window_days)
    alerts: List[OpsAlert] = []
    for quest in quests:
        if quest.status != "revoked":
            continue
        if quest.revoked_at is not None and quest.revoked_at < cutoff:
            continue
        suffix = f": {quest.revoked_reason}" if quest.revoked_reason else ""
        alerts.append(
            OpsAlert(
                id=f"revoked-{quest.id}",
                type="revoked_recent",
                severity=Severity.ERROR,
                title="Quest recently revoked",
                description=f'"{quest.title}" was revoked{suffix}',
                timestamp=quest.revoked_at or now,
                quest_id=quest.id,
            )
        )
    return alerts


def cancelled_instance_alerts(
    instances: Iterable[Instance], now: datetime, *, window_days: int = CANCELLED_WINDOW_DAYS
) -> List[OpsAlert]:
    cutoff = now - timedelta(days=window_days)
    return [
        OpsAlert(
            id=f"cancelled-{instance.id}",
            type="cancelled_users",
            severity=Severity.WARNING,
            title="Instance cancelled recently",
            description=f'"{instance.title}" was cancelled. Verify users have been notified.',
            timestamp=instance.updated_at,
            instance_id=instance.id,
        )
        for instance in instances
        if instance.status is InstanceStatus.CANCELLED
        and instance.updated_at is not None
        and instance.updated_at >= cutoff
    ]


def stale_draft_alerts(
    instances: Iterable[Instance], now: datetime, *, stale_days: int = STALE_DRAFT_DAYS
) -> List[OpsAlert]:
    cutoff = now - timedelta(days=stale_days)
    alerts: List[OpsAlert] = []
    for instance in instances:
        if instance.status is not InstanceStatus.DRAFT or instance.created_at is None:
            continue
        if instance.created_at >= cutoff:
            continue
        days = whole_days_between(now, instance.created_at)
        alerts.append(
            OpsAlert(
                id=f"stale-{instance.id}",
                type="stale_instance",
                severity=Severity.INFO,
                title="Stale draft instance",
                description=(
                    f'"{instance.title}" has been in draft for {days} days. '
                    "Consider publishing or archiving."
                ),
                timestamp=instance.created_at,
                instance_id=instance.id,
            )
        )
    return alerts


def sort_alerts(alerts: Iterable[OpsAlert]) -> List[OpsAlert]:
    """Errors first, then warnings, then info; newest first within a severity."""

    by_time = sorted(alerts, key=lambda alert: alert.timestamp, reverse=True)
    return sorted(by_time, key=lambda alert: -alert.severity.rank)


def collect_ops_alerts(
    quests: Sequence[Quest],
    instances: Sequence[Instance],
    now: datetime,
    settings: Optional[Settings] = None,
) -> List[OpsAlert]:
    """Run every alert detector over one snapshot of quests and instances."""

    settings = settings or get_settings()
    alerts = (
        pending_review_alerts(
            quests,
            now,
            warning_hours=settings.review_warning_hours,
            error_hours=settings.review_error_hours,
        )
        + low_signup_alerts(
            instances,
            now,
            warning_ratio=settings.low_signup_warning_ratio,
            error_ratio=settings.low_signup_error_ratio,
        )
        + revoked_quest_alerts(quests, now, window_days=settings.revoked_window_days)
        + cancelled_instance_alerts(instances, now, window_days=settings.cancelled_window_days)
        + stale_draft_alerts(instances, now, stale_days=settings.stale_instance_days)
    )
    return sort_alerts(alerts)


@dataclass
class StalledSquad:
    squad: Squad
    hours_stalled: int


@dataclass
class WarmUpStatusReport:
    ready_for_review: List[Squad] = field(default_factory=list)
    stalled: List[StalledSquad] = field(default_factory=list)

    @property
    def needs_attention(self) -> bool:
        return bool(self.ready_for_review or self.stalled)


def check_warmup_status(
    squads: Iterable[Squad], now: datetime, *, stall_hours: float = WARMUP_STALL_HOURS
) -> WarmUpStatusReport:
    report = WarmUpStatusReport()
    for squad in squads:
        if squad.status is SquadStatus.READY_FOR_REVIEW:
            report.ready_for_review.append(squad)
        elif squad.status is SquadStatus.WARMING_UP and squad.updated_at is not None:
            hours = (now - squad.updated_at).total_seconds() / 3600
            if hours >= stall_hours:
                report.stalled.append(StalledSquad(squad=squad, hours_stalled=math.floor(hours)))
    return report


@dataclass
class SlaBreach:
    ticket: SupportTicket
    breach_type: str
    hours_elapsed: int


def detect_sla_breaches(
    tickets: Iterable[SupportTicket],
    now: datetime,
    *,
    first_response_hours: float = SLA_FIRST_RESPONSE_HOURS,
    resolution_hours: float = SLA_RESOLUTION_HOURS,
) -> List[SlaBreach]:
    """First-response breaches take precedence; a ticket is reported at most once."""

    breaches: List[SlaBreach] = []
    for ticket in tickets:
        if ticket.status in CLOSED_TICKET_STATUSES:
            continue
        elapsed = (now - ticket.created_at).total_seconds() / 3600
        hours = math.floor(elapsed + 0.5)
        if ticket.first_response_at is None and elapsed > first_response_hours:
            breaches.append(SlaBreach(ticket=ticket, breach_type="first_response", hours_elapsed=hours))
        elif elapsed > resolution_hours:
            breaches.append(SlaBreach(ticket=ticket, breach_type="resolution", hours_elapsed=hours))
    return breaches


# Columns stamped on a ticket once its breach has been reported.
SLA_STAMP_COLUMNS = {
    "first_response": "first_response_sla_breached_at",
    "resolution": "resolution_sla_breached_at",
}


def _rounded_hours(now: datetime, ticket: SupportTicket) -> int:
    return math.floor((now - ticket.created_at).total_seconds() / 3600 + 0.5)


def unreported_sla_breaches(
    awaiting_response: Iterable[SupportTicket],
    awaiting_resolution: Iterable[SupportTicket],
    now: datetime,
    *,
    first_response_hours: float = SLA_FIRST_RESPONSE_HOURS,
    resolution_hours: float = SLA_RESOLUTION_HOURS,
) -> List[SlaBreach]:
    """Breaches among tickets whose breach has not been stamped yet.

    ``awaiting_response`` holds tickets without a first-response stamp,
    ``awaiting_resolution`` tickets without a resolution stamp. A ticket found
    in both is reported once, as a first-response breach.
    """

    breaches: List[SlaBreach] = []
    for ticket in awaiting_response:
        if ticket.status in CLOSED_TICKET_STATUSES or ticket.first_response_at is not None:
            continue
        if (now - ticket.created_at).total_seconds() / 3600 > first_response_hours:
            breaches.append(
                SlaBreach(ticket, "first_response", _rounded_hours(now, ticket))
            )
    reported = {breach.ticket.id for breach in breaches}
    for ticket in awaiting_resolution:
        if ticket.status in CLOSED_TICKET_STATUSES or ticket.id in reported:
            continue
        if (now - ticket.created_at).total_seconds() / 3600 > resolution_hours:
            breaches.append(SlaBreach(ticket, "resolution", _rounded_hours(now, ticket)))
            reported.add(ticket.id)
    return breaches


def sla_breach_message(breach: SlaBreach, limit_hours: float) -> str:
    label = breach.breach_type.replace("_", " ")
    return (
        f"Ticket {breach.ticket.id[:8]} breached the {label} SLA "
        f"({breach.hours_elapsed}h, SLA {limit_hours:g}h)"
    )


__all__ = [
    "OpsAlert",
    "StalledSquad",
    "WarmUpStatusReport",
    "SlaBreach",
    "pending_review_alerts",
    "low_signup_alerts",
    "revoked_quest_alerts",
    "cancelled_instance_alerts",
    "stale_draft_alerts",
    "sort_alerts",
    "collect_ops_alerts",
    "check_warmup_status",
    "detect_sla_breaches",
    "SLA_STAMP_COLUMNS",
    "unreported_sla_breaches",
    "sla_breach_message",
]
