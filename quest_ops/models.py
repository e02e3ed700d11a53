"""Core data models for the Quest Ops console.

Backend rows arrive as loosely typed JSON objects (often with embedded joins).
Every ``from_row`` constructor narrows one of those shapes into a typed record
so the anomaly predicates never see raw dictionaries.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, List, Mapping, Optional

from dateutil import parser


class SignupStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    STANDBY = "standby"
    DROPPED = "dropped"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class InstanceStatus(str, Enum):
    DRAFT = "draft"
    RECRUITING = "recruiting"
    LOCKED = "locked"
    LIVE = "live"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"
    PAUSED = "paused"


class SquadStatus(str, Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"  # legacy rows created before warm-up existed
    WARMING_UP = "warming_up"
    READY_FOR_REVIEW = "ready_for_review"
    APPROVED = "approved"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Severity(str, Enum):
    """Severity attached to buckets, flags and alerts, lowest first."""

    NONE = "none"
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.NONE: 0,
    Severity.SUCCESS: 1,
    Severity.INFO: 2,
    Severity.WARNING: 3,
    Severity.ERROR: 4,
}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp from the backend into an aware datetime.

    Naive values are treated as UTC. ``None`` and empty strings map to ``None``.
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        # PostgREST trims trailing zeros from fractional seconds.
        parsed = parser.isoparse(str(value).strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _require_id(row: Mapping[str, Any], kind: str) -> str:
    value = row.get("id")
    if value in (None, ""):
        raise ValueError(f"{kind} row is missing an id")
    return str(value)


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _embedded(row: Mapping[str, Any], *keys: str) -> Optional[Mapping[str, Any]]:
    """Return the first embedded object found under any of ``keys``."""

    for key in keys:
        value = row.get(key)
        if isinstance(value, list):
            value = value[0] if value else None
        if isinstance(value, Mapping):
            return value
    return None


@dataclass
class Instance:
    id: str
    status: InstanceStatus
    title: str = ""
    scheduled_date: Optional[date] = None
    start_time: Optional[str] = None
    end_datetime: Optional[datetime] = None
    capacity: int = 0
    current_signup_count: int = 0
    target_squad_size: Optional[int] = None
    previous_status: Optional[InstanceStatus] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Instance":
        previous = row.get("previous_status")
        return Instance(
            id=_require_id(row, "instance"),
            status=InstanceStatus(row.get("status") or InstanceStatus.DRAFT.value),
            title=row.get("title") or "",
            scheduled_date=parse_date(row.get("scheduled_date")),
            start_time=row.get("start_time"),
            end_datetime=parse_timestamp(row.get("end_datetime")),
            capacity=int(row.get("capacity") or 0),
            current_signup_count=int(row.get("current_signup_count") or 0),
            target_squad_size=_optional_int(row.get("target_squad_size")),
            previous_status=InstanceStatus(previous) if previous else None,
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )

    def starts_at(self) -> Optional[datetime]:
        """Combine ``scheduled_date`` and ``start_time`` into a UTC datetime."""

        if self.scheduled_date is None:
            return None
        start = time.fromisoformat(self.start_time) if self.start_time else time(0, 0)
        return datetime.combine(self.scheduled_date, start, tzinfo=timezone.utc)

    def fill_rate(self) -> float:
        if self.capacity <= 0:
            return 0.0
        return self.current_signup_count / self.capacity


@dataclass
class Signup:
    id: str
    status: SignupStatus
    user_id: Optional[str] = None
    instance_id: Optional[str] = None
    quest_id: Optional[str] = None
    signed_up_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    instance: Optional[Instance] = None
    display_name: Optional[str] = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Signup":
        instance_row = _embedded(row, "quest_instances", "instance")
        profile = _embedded(row, "profiles", "profile")
        return Signup(
            id=_require_id(row, "signup"),
            status=SignupStatus(row.get("status")),
            user_id=row.get("user_id"),
            instance_id=row.get("instance_id"),
            quest_id=row.get("quest_id"),
            signed_up_at=parse_timestamp(row.get("signed_up_at")),
            completed_at=parse_timestamp(row.get("completed_at")),
            instance=Instance.from_row(instance_row) if instance_row else None,
            display_name=profile.get("display_name") if profile else None,
        )


@dataclass
class SquadMember:
    id: str
    squad_id: Optional[str] = None
    user_id: Optional[str] = None
    status: Optional[str] = None
    prompt_response: Optional[str] = None
    readiness_confirmed_at: Optional[datetime] = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "SquadMember":
        return SquadMember(
            id=str(row.get("id") or row.get("user_id") or ""),
            squad_id=row.get("squad_id"),
            user_id=row.get("user_id"),
            status=row.get("status"),
            prompt_response=row.get("prompt_response"),
            readiness_confirmed_at=parse_timestamp(row.get("readiness_confirmed_at")),
        )

    @property
    def is_dropped(self) -> bool:
        return self.status == "dropped"

    @property
    def is_ready(self) -> bool:
        return bool(self.prompt_response) and self.readiness_confirmed_at is not None


@dataclass
class Squad:
    id: str
    status: SquadStatus
    instance_id: Optional[str] = None
    squad_name: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    members: List[SquadMember] = field(default_factory=list)

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Squad":
        member_rows = row.get("squad_members") or row.get("members") or []
        return Squad(
            id=_require_id(row, "squad"),
            status=SquadStatus(row.get("status") or SquadStatus.DRAFT.value),
            instance_id=row.get("instance_id"),
            squad_name=row.get("squad_name") or "",
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
            members=[SquadMember.from_row(member) for member in member_rows],
        )

    @property
    def member_count(self) -> int:
        return len(self.members)

    def display_name(self) -> str:
        return self.squad_name or f"Squad {self.id[:4]}"


@dataclass
class XpTransaction:
    source_id: Optional[str]
    amount: int = 0
    source: Optional[str] = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "XpTransaction":
        source_id = row.get("source_id")
        return XpTransaction(
            source_id=str(source_id) if source_id is not None else None,
            amount=int(row.get("amount") or 0),
            source=row.get("source"),
        )


@dataclass
class Quest:
    id: str
    title: str = ""
    status: Optional[str] = None
    review_status: Optional[str] = None
    created_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Quest":
        return Quest(
            id=_require_id(row, "quest"),
            title=row.get("title") or "",
            status=row.get("status"),
            review_status=row.get("review_status"),
            created_at=parse_timestamp(row.get("created_at")),
            revoked_at=parse_timestamp(row.get("revoked_at")),
            revoked_reason=row.get("revoked_reason"),
        )


@dataclass
class SupportTicket:
    id: str
    status: str
    created_at: datetime
    urgency: Optional[str] = None
    description: str = ""
    first_response_at: Optional[datetime] = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "SupportTicket":
        created_at = parse_timestamp(row.get("created_at"))
        if created_at is None:
            raise ValueError("support ticket row is missing created_at")
        return SupportTicket(
            id=_require_id(row, "support ticket"),
            status=row.get("status") or "open",
            created_at=created_at,
            urgency=row.get("urgency"),
            description=row.get("description") or "",
            first_response_at=parse_timestamp(row.get("first_response_at")),
        )


@dataclass
class FeatureFlag:
    id: str
    key: str
    name: str = ""
    description: Optional[str] = None
    is_enabled: bool = False
    rollout_percentage: int = 100
    target_roles: List[str] = field(default_factory=list)
    target_org_ids: List[str] = field(default_factory=list)
    target_user_ids: List[str] = field(default_factory=list)
    updated_at: Optional[datetime] = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "FeatureFlag":
        return FeatureFlag(
            id=_require_id(row, "feature flag"),
            key=row.get("key") or "",
            name=row.get("name") or "",
            description=row.get("description"),
            is_enabled=bool(row.get("is_enabled")),
            rollout_percentage=int(
                row.get("rollout_percentage") if row.get("rollout_percentage") is not None else 100
            ),
            target_roles=list(row.get("target_roles") or []),
            target_org_ids=list(row.get("target_org_ids") or []),
            target_user_ids=list(row.get("target_user_ids") or []),
            updated_at=parse_timestamp(row.get("updated_at")),
        )

    @property
    def has_targeting(self) -> bool:
        return bool(
            self.target_roles
            or self.target_org_ids
            or self.target_user_ids
            or self.rollout_percentage < 100
        )


def to_jsonable(value: Any) -> Any:
    """Convert records, enums and datetimes into JSON-friendly values."""

    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "__dataclass_fields__"):
        return {
            name: to_jsonable(getattr(value, name))
            for name in value.__dataclass_fields__
        }
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(item) for item in value]
    return value


__all__ = [
    "SignupStatus",
    "InstanceStatus",
    "SquadStatus",
    "Severity",
    "Instance",
    "Signup",
    "SquadMember",
    "Squad",
    "XpTransaction",
    "Quest",
    "SupportTicket",
    "FeatureFlag",
    "parse_timestamp",
    "parse_date",
    "to_jsonable",
]
