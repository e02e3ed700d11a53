"""Per-instance attention flags shown on the instances board."""
from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from .anomalies import (
    AnomalyBucket,
    WarmUpProgress,
    aggregate_severity,
    calculate_warmup_progress,
    detect_draft_too_long,
    detect_empty_squads,
    detect_missing_xp,
    detect_pending_too_long,
    detect_quest_ended_not_completed,
)
from .models import Instance, InstanceStatus, Severity, Signup, Squad, SquadStatus, XpTransaction

DEFAULT_TARGET_SQUAD_SIZE = 6
READY_RATIO = 0.8
# Severities an instance can be summarised under.
ATTENTION_SEVERITIES = (Severity.NONE, Severity.INFO, Severity.WARNING, Severity.ERROR)
WARMUP_STALL_HOURS = 24
STARTING_SOON_HOURS = 2
UNDERFILLED_MIN_SIGNUPS = 3


@dataclass(frozen=True)
class AttentionFlag:
    type: str
    severity: Severity
    message: str
    short_label: str


@dataclass(frozen=True)
class SquadWarmUpState:
    status: SquadStatus
    warming_up_since: Optional[datetime] = None
    ready_count: int = 0
    total_members: int = 0

    @staticmethod
    def from_squad(squad: Squad) -> "SquadWarmUpState":
        progress = calculate_warmup_progress(squad.members)
        return SquadWarmUpState(
            status=squad.status,
            warming_up_since=squad.updated_at if squad.status is SquadStatus.WARMING_UP else None,
            ready_count=progress.ready_members,
            total_members=progress.total_members,
        )


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'s' if count != 1 else ''}"


def squad_ready_threshold(target_squad_size: Optional[int], ratio: float = READY_RATIO) -> int:
    return math.ceil((target_squad_size or DEFAULT_TARGET_SQUAD_SIZE) * ratio)


def calculate_attention_flag(
    instance: Instance,
    squad_count: int,
    warm_up_states: Sequence[SquadWarmUpState],
    now: datetime,
    *,
    default_target_size: int = DEFAULT_TARGET_SQUAD_SIZE,
    ready_ratio: float = READY_RATIO,
) -> Optional[AttentionFlag]:
    """Return the single most relevant flag for ``instance``, or ``None``."""

    signups = instance.current_signup_count or 0
    threshold = squad_ready_threshold(instance.target_squad_size or default_target_size, ready_ratio)
    starts_at = instance.starts_at()
    hours_until_start = (
        (starts_at - now).total_seconds() / 3600 if starts_at is not None else None
    )

    if (
        hours_until_start is not None
        and hours_until_start < 0
        and instance.status is not InstanceStatus.COMPLETED
    ):
        return None

    pending_review = [s for s in warm_up_states if s.status is SquadStatus.READY_FOR_REVIEW]
    if pending_review:
        return AttentionFlag(
            type="squad_pending_review",
            severity=Severity.WARNING,
            message=f"{_plural(len(pending_review), 'squad')} ready for admin approval",
            short_label="Needs Review",
        )

    stalled = [
        s
        for s in warm_up_states
        if s.status is SquadStatus.WARMING_UP
        and s.warming_up_since is not None
        and (now - s.warming_up_since).total_seconds() / 3600 > WARMUP_STALL_HOURS
    ]
    if stalled:
        return AttentionFlag(
            type="squad_warmup_stalled",
            severity=Severity.ERROR,
            message=f"{_plural(len(stalled), 'squad')} stuck in warm-up for {WARMUP_STALL_HOURS}+ hours",
            short_label="Stalled",
        )

    warming = [s for s in warm_up_states if s.status is SquadStatus.WARMING_UP]
    if warming:
        ready = sum(s.ready_count for s in warming)
        total = sum(s.total_members for s in warming)
        return AttentionFlag(
            type="squad_warming_up",
            severity=Severity.INFO,
            message=f"{_plural(len(warming), 'squad')} warming up ({ready}/{total} members ready)",
            short_label="Warming Up",
        )

    if instance.status is InstanceStatus.RECRUITING and signups >= threshold and squad_count == 0:
        return AttentionFlag(
            type="ready_for_squad",
            severity=Severity.WARNING,
            message=f"{signups} users signed up, ready to form squads",
            short_label="Ready for squad",
        )

    starting_soon = hours_until_start is not None and 0 < hours_until_start < STARTING_SOON_HOURS

    if (
        instance.status is InstanceStatus.RECRUITING
        and starting_soon
        and signups < UNDERFILLED_MIN_SIGNUPS
    ):
        return AttentionFlag(
            type="underfilled",
            severity=Severity.ERROR,
            message=f"Only {signups} users, starts in {round(hours_until_start * 60)} minutes",
            short_label="Underfilled",
        )

    if instance.status is InstanceStatus.LOCKED and starting_soon and squad_count > 0:
        return AttentionFlag(
            type="starting_soon",
            severity=Severity.INFO,
            message=f"Starting in {round(hours_until_start * 60)} minutes",
            short_label="Starting soon",
        )

    if instance.status is InstanceStatus.LOCKED and squad_count > 0 and signups >= threshold:
        return AttentionFlag(
            type="ready_to_go",
            severity=Severity.SUCCESS,
            message=f"All set with {_plural(squad_count, 'squad')} formed",
            short_label="Ready",
        )

    return None


@dataclass
class InstanceAttention:
    instance: Instance
    flag: Optional[AttentionFlag]
    buckets: List[AnomalyBucket] = field(default_factory=list)
    warm_up: Dict[str, WarmUpProgress] = field(default_factory=dict)
    severity: Severity = Severity.NONE

    @property
    def issue_count(self) -> int:
        return sum(bucket.count for bucket in self.buckets)


def instance_attention(
    instance: Instance,
    squads: Sequence[Squad],
    signups: Sequence[Signup],
    now: datetime,
    *,
    transactions: Optional[Sequence[XpTransaction]] = None,
    required_percentage: float = 100,
    default_target_size: int = DEFAULT_TARGET_SQUAD_SIZE,
    ready_ratio: float = READY_RATIO,
) -> InstanceAttention:
    """Run every per-instance check and fold the results into one severity.

    Signups that arrive without an embedded instance are treated as belonging
    to ``instance``. XP coverage is only checked when ``transactions`` is given.
    """

    attached = [
        signup if signup.instance is not None else replace(signup, instance=instance)
        for signup in signups
    ]
    buckets = [
        detect_pending_too_long(attached, now),
        detect_quest_ended_not_completed(attached, now),
        detect_empty_squads(squads),
        detect_draft_too_long(squads, now),
    ]
    if transactions is not None:
        buckets.append(detect_missing_xp(attached, transactions))

    flag = calculate_attention_flag(
        instance,
        len(squads),
        [SquadWarmUpState.from_squad(squad) for squad in squads],
        now,
        default_target_size=default_target_size,
        ready_ratio=ready_ratio,
    )
    warm_up = {
        squad.id: calculate_warmup_progress(squad.members, required_percentage)
        for squad in squads
        if squad.status in (SquadStatus.WARMING_UP, SquadStatus.READY_FOR_REVIEW)
    }
    # ready_to_go carries SUCCESS for display only; attention severity stays none.
    flag_severity = flag.severity if flag and flag.severity is not Severity.SUCCESS else None
    severity = aggregate_severity(
        [bucket.severity for bucket in buckets if bucket.items] + [flag_severity]
    )
    return InstanceAttention(
        instance=instance,
        flag=flag,
        buckets=buckets,
        warm_up=warm_up,
        severity=severity,
    )


def summarize_attention(results: Iterable[InstanceAttention]) -> Dict[str, int]:
    """Count instances per severity for the summary cards."""

    counts = {severity.value: 0 for severity in ATTENTION_SEVERITIES}
    for result in results:
        counts[result.severity.value] += 1
    return counts


__all__ = [
    "AttentionFlag",
    "SquadWarmUpState",
    "InstanceAttention",
    "squad_ready_threshold",
    "calculate_attention_flag",
    "instance_attention",
    "summarize_attention",
]
