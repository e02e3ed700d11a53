"""Flow Debugger anomaly predicates.

Every detector is a pure function of a snapshot and an explicit ``now``.
Running one twice over the same snapshot yields the same bucket.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .models import (
    InstanceStatus,
    Severity,
    Signup,
    SignupStatus,
    Squad,
    SquadMember,
    SquadStatus,
    XpTransaction,
)

PENDING_MAX_HOURS = 48
DRAFT_MAX_DAYS = 7
DEFAULT_REQUIRED_PERCENTAGE = 100


def whole_hours_between(later: datetime, earlier: datetime) -> int:
    """Whole hours from ``earlier`` to ``later``, truncated toward zero."""

    return int((later - earlier).total_seconds() / 3600)


def whole_days_between(later: datetime, earlier: datetime) -> int:
    return int((later - earlier).total_seconds() / 86400)


@dataclass
class AnomalyBucket:
    """A named collection of records violating one detection rule."""

    name: str
    title: str
    description: str
    severity: Severity
    items: List[Any] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.items)

    @property
    def effective_severity(self) -> Severity:
        """Severity to display: the bucket's own when non-empty, else success."""

        return self.severity if self.items else Severity.SUCCESS


@dataclass
class AnomalyReport:
    panel: str
    buckets: List[AnomalyBucket]
    totals: Dict[str, int] = field(default_factory=dict)
    generated_at: Optional[datetime] = None

    @property
    def issue_count(self) -> int:
        return sum(bucket.count for bucket in self.buckets)

    @property
    def is_clear(self) -> bool:
        return self.issue_count == 0

    @property
    def severity(self) -> Severity:
        return aggregate_severity(bucket.effective_severity for bucket in self.buckets)

    def bucket(self, name: str) -> AnomalyBucket:
        for bucket in self.buckets:
            if bucket.name == name:
                return bucket
        raise KeyError(name)


@dataclass
class WarmUpProgress:
    total_members: int
    ready_members: int
    prompt_answered: int
    readiness_confirmed: int
    percentage: int
    required_percentage: float
    is_complete: bool


def detect_pending_too_long(signups: Iterable[Signup], now: datetime) -> AnomalyBucket:
    items = [
        signup
        for signup in signups
        if signup.status is SignupStatus.PENDING
        and signup.signed_up_at is not None
        and whole_hours_between(now, signup.signed_up_at) > PENDING_MAX_HOURS
    ]
    return AnomalyBucket(
        name="pendingTooLong",
        title="Pending Too Long",
        description=f"Signups in pending status for more than {PENDING_MAX_HOURS} hours",
        severity=Severity.WARNING,
        items=items,
    )


def _instance_has_ended(signup: Signup, now: datetime) -> bool:
    instance = signup.instance
    if instance is None:
        return False
    if instance.status is InstanceStatus.COMPLETED:
        return True
    return instance.end_datetime is not None and instance.end_datetime < now


def detect_quest_ended_not_completed(signups: Iterable[Signup], now: datetime) -> AnomalyBucket:
    items: List[Signup] = []
    seen = set()
    for signup in signups:
        if signup.status is not SignupStatus.CONFIRMED or signup.id in seen:
            continue
        if _instance_has_ended(signup, now):
            seen.add(signup.id)
            items.append(signup)
    return AnomalyBucket(
        name="questEndedNotCompleted",
        title="Quest Ended - Not Completed",
        description="Confirmed signups where the quest has ended but status wasn't updated",
        severity=Severity.ERROR,
        items=items,
    )


def detect_empty_squads(squads: Iterable[Squad]) -> AnomalyBucket:
    return AnomalyBucket(
        name="emptySquads",
        title="Empty Squads",
        description="Squads with no members - may need cleanup",
        severity=Severity.WARNING,
        items=[squad for squad in squads if squad.member_count == 0],
    )


def detect_draft_too_long(squads: Iterable[Squad], now: datetime) -> AnomalyBucket:
    items = [
        squad
        for squad in squads
        if squad.status is SquadStatus.DRAFT
        and squad.created_at is not None
        and whole_days_between(now, squad.created_at) > DRAFT_MAX_DAYS
    ]
    return AnomalyBucket(
        name="draftTooLong",
        title="Draft Too Long",
        description=f"Squads in draft status for more than {DRAFT_MAX_DAYS} days",
        severity=Severity.WARNING,
        items=items,
    )


def detect_missing_xp(
    completed_signups: Iterable[Signup], transactions: Iterable[XpTransaction]
) -> AnomalyBucket:
    source_ids = {txn.source_id for txn in transactions if txn.source_id is not None}
    items = [
        signup
        for signup in completed_signups
        if signup.status is SignupStatus.COMPLETED and signup.id not in source_ids
    ]
    return AnomalyBucket(
        name="missingXp",
        title="Missing XP Awards",
        description="Completed signups without a matching XP transaction",
        severity=Severity.ERROR,
        items=items,
    )


def calculate_warmup_progress(
    members: Iterable[SquadMember],
    required_percentage: float = DEFAULT_REQUIRED_PERCENTAGE,
) -> WarmUpProgress:
    """Share of non-dropped members who answered the prompt and confirmed readiness.

    A squad with no eligible members reports 0% and is never complete.
    """

    active = [member for member in members if not member.is_dropped]
    total = len(active)
    answered = sum(1 for member in active if member.prompt_response)
    confirmed = sum(1 for member in active if member.readiness_confirmed_at is not None)
    ready = sum(1 for member in active if member.is_ready)
    # Half-up, so 12.5% reports as 13%.
    percentage = math.floor(ready * 100 / total + 0.5) if total else 0
    return WarmUpProgress(
        total_members=total,
        ready_members=ready,
        prompt_answered=answered,
        readiness_confirmed=confirmed,
        percentage=percentage,
        required_percentage=required_percentage,
        is_complete=total > 0 and percentage >= required_percentage,
    )


def aggregate_severity(severities: Iterable[Optional[Severity]]) -> Severity:
    """Return the highest severity present, ``NONE`` for an empty input."""

    highest = Severity.NONE
    for severity in severities:
        if severity is not None and severity.rank > highest.rank:
            highest = severity
    return highest


def signup_report(signups: Sequence[Signup], now: datetime) -> AnomalyReport:
    return AnomalyReport(
        panel="signups",
        buckets=[
            detect_pending_too_long(signups, now),
            detect_quest_ended_not_completed(signups, now),
        ],
        totals={"signups_scanned": len(signups)},
        generated_at=now,
    )


def squad_report(squads: Sequence[Squad], now: datetime) -> AnomalyReport:
    return AnomalyReport(
        panel="squads",
        buckets=[detect_empty_squads(squads), detect_draft_too_long(squads, now)],
        totals={"squads_scanned": len(squads)},
        generated_at=now,
    )


def gamification_report(
    completed_signups: Sequence[Signup],
    transactions: Sequence[XpTransaction],
    now: datetime,
) -> AnomalyReport:
    return AnomalyReport(
        panel="gamification",
        buckets=[detect_missing_xp(completed_signups, transactions)],
        totals={
            "completed_signups": len(completed_signups),
            "transactions_found": len(transactions),
        },
        generated_at=now,
    )


__all__ = [
    "PENDING_MAX_HOURS",
    "DRAFT_MAX_DAYS",
    "AnomalyBucket",
    "AnomalyReport",
    "WarmUpProgress",
    "whole_hours_between",
    "whole_days_between",
    "detect_pending_too_long",
    "detect_quest_ended_not_completed",
    "detect_empty_squads",
    "detect_draft_too_long",
    "detect_missing_xp",
    "calculate_warmup_progress",
    "aggregate_severity",
    "signup_report",
    "squad_report",
    "gamification_report",
]
