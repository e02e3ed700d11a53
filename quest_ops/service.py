"""Console service: cached snapshot reads, anomaly reports and admin mutations."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

from .alerting import AlertRouter
from .anomalies import (
    AnomalyReport,
    WarmUpProgress,
    calculate_warmup_progress,
    gamification_report,
    signup_report,
    squad_report,
)
from .attention import InstanceAttention, instance_attention, summarize_attention
from .backend import BackendClient, BackendError, MutationError, get_backend
from .cache import QueryCache, get_query_cache, make_key
from .config import Settings, get_settings
from .lifecycle import (
    TransitionError,
    can_transition,
    coerce_status,
    validate_instance_transition,
)
from .models import (
    FeatureFlag,
    Instance,
    InstanceStatus,
    Quest,
    Signup,
    SignupStatus,
    Squad,
    SquadStatus,
    SupportTicket,
    XpTransaction,
)
from .ops_alerts import (
    CLOSED_TICKET_STATUSES,
    OpsAlert,
    SLA_STAMP_COLUMNS,
    SlaBreach,
    StalledSquad,
    WarmUpStatusReport,
    check_warmup_status,
    collect_ops_alerts,
    detect_sla_breaches,
    sla_breach_message,
    unreported_sla_breaches,
)
from .services.flags import flag_update_payload
from .services.instances import (
    AUDITED_STATUSES,
    NOTIFY_STATUSES,
    BulkTransitionResult,
    TransitionResult,
    notification_rows,
    ops_event_type,
    resume_target,
    transition_payload,
)
from .services.squads import (
    ACTIVE_SQUAD_STATUSES,
    WARMUP_READY_NOTIFICATION,
    WARMUP_STALLED_NOTIFICATION,
    ActiveSquadSummary,
    approval_notification,
    status_update_payload,
    summarize_active_squad,
    warmup_admin_notifications,
)

logger = logging.getLogger(__name__)

SIGNUP_COLUMNS = """
    *,
    quest_instances(id, title, status, end_datetime),
    profiles(display_name)
"""
SQUAD_COLUMNS = """
    *,
    squad_members(id, user_id, status, prompt_response, readiness_confirmed_at)
"""
OPEN_INSTANCE_STATUSES = (
    InstanceStatus.DRAFT,
    InstanceStatus.RECRUITING,
    InstanceStatus.LOCKED,
    InstanceStatus.LIVE,
    InstanceStatus.PAUSED,
)

# Query names each mutation family makes stale.
INSTANCE_QUERIES = ("ops_alerts", "attention_overview", "instance_attention", "signups")
SQUAD_QUERIES = (
    "squads",
    "warmup_status",
    "squad_warmup",
    "active_squads",
    "attention_overview",
    "instance_attention",
)
SIGNUP_QUERIES = ("signups", "gamification", "attention_overview", "instance_attention")


@dataclass
class PanelResult:
    """Outcome of loading one console panel; ``error`` is set instead of raising."""

    name: str
    data: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class AttentionOverview:
    results: List[InstanceAttention] = field(default_factory=list)
    summary: Dict[str, int] = field(default_factory=dict)


@dataclass
class SquadWarmUp:
    squad: Squad
    progress: WarmUpProgress


@dataclass
class XpAwardResult:
    signup_id: str
    awarded: bool
    amount: int = 0
    already_awarded: bool = False


@dataclass
class WarmUpNotification:
    ready_for_review: List[Squad] = field(default_factory=list)
    stalled: List[StalledSquad] = field(default_factory=list)
    notifications_created: int = 0

    def summary(self) -> str:
        ready, stalled = len(self.ready_for_review), len(self.stalled)
        if ready and stalled:
            return f"{ready} Squad(s) Ready for Review, {stalled} Stalled"
        if ready:
            return f"{ready} Squad(s) Ready for Admin Approval"
        return f"{stalled} Squad(s) Stalled in Warm-Up"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _merge_rows(*batches: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Combine query results into one row per id, merging the selected columns."""

    merged: Dict[str, Dict[str, Any]] = {}
    for rows in batches:
        for row in rows:
            merged.setdefault(str(row.get("id")), {}).update(row)
    return list(merged.values())


class ConsoleService:
    """Entry point for every console read and mutation."""

    PANELS = (
        "signups",
        "squads",
        "gamification",
        "ops_alerts",
        "warmup",
        "sla",
        "attention",
        "flags",
    )

    def __init__(
        self,
        backend: BackendClient | None = None,
        *,
        cache: QueryCache | None = None,
        settings: Settings | None = None,
        alert_router: AlertRouter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.backend = backend or get_backend()
        self.cache = cache or get_query_cache()
        self.settings = settings or get_settings()
        self.alert_router = alert_router
        self._clock = clock or _utcnow

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Snapshot fetching
    # ------------------------------------------------------------------
    def _cached(
        self,
        name: str,
        fetcher: Callable[[], Any],
        *,
        refresh: bool = False,
        **params: Any,
    ) -> Any:
        return self.cache.get_or_fetch(make_key(name, params), fetcher, refresh=refresh)

    def _signup_snapshot(self) -> List[Signup]:
        rows = (
            self.backend.table("quest_signups")
            .select(SIGNUP_COLUMNS)
            .order("signed_up_at", desc=True)
            .limit(self.settings.signup_fetch_limit)
            .execute()
        )
        return [Signup.from_row(row) for row in rows]

    def _squad_snapshot(self) -> List[Squad]:
        rows = (
            self.backend.table("quest_squads")
            .select(SQUAD_COLUMNS)
            .order("created_at", desc=True)
            .limit(self.settings.squad_fetch_limit)
            .execute()
        )
        return [Squad.from_row(row) for row in rows]

    def _xp_for(self, signup_ids: Sequence[str]) -> List[XpTransaction]:
        if not signup_ids:
            return []
        rows = (
            self.backend.table("xp_transactions")
            .select("id, source_id, source, amount")
            .in_("source_id", list(signup_ids))
            .execute()
        )
        return [XpTransaction.from_row(row) for row in rows]

    def _completion_snapshot(self) -> Dict[str, Any]:
        rows = (
            self.backend.table("quest_signups")
            .select(SIGNUP_COLUMNS)
            .eq("status", SignupStatus.COMPLETED.value)
            .order("updated_at", desc=True)
            .limit(self.settings.completion_fetch_limit)
            .execute()
        )
        completed = [Signup.from_row(row) for row in rows]
        return {
            "completed": completed,
            "transactions": self._xp_for([signup.id for signup in completed]),
        }

    def _ops_snapshot(self) -> Dict[str, Any]:
        now = self.now()
        today = now.date()
        pending = (
            self.backend.table("quests")
            .select("id, title, status, review_status, created_at")
            .eq("review_status", "pending_review")
            .is_("deleted_at", None)
            .execute()
        )
        revoked = (
            self.backend.table("quests")
            .select("id, title, status, review_status, created_at, revoked_at, revoked_reason")
            .eq("status", "revoked")
            .gte("revoked_at", (now - timedelta(days=self.settings.revoked_window_days)).isoformat())
            .execute()
        )
        launching = (
            self.backend.table("quest_instances")
            .select("*")
            .in_("status", [InstanceStatus.RECRUITING.value, InstanceStatus.LOCKED.value])
            .gte("scheduled_date", today.isoformat())
            .lte("scheduled_date", (today + timedelta(days=1)).isoformat())
            .execute()
        )
        cancelled = (
            self.backend.table("quest_instances")
            .select("*")
            .eq("status", InstanceStatus.CANCELLED.value)
            .gte(
                "updated_at",
                (now - timedelta(days=self.settings.cancelled_window_days)).isoformat(),
            )
            .execute()
        )
        stale = (
            self.backend.table("quest_instances")
            .select("*")
            .eq("status", InstanceStatus.DRAFT.value)
            .lt("created_at", (now - timedelta(days=self.settings.stale_instance_days)).isoformat())
            .execute()
        )
        return {
            "quests": [Quest.from_row(row) for row in _merge_rows(pending, revoked)],
            "instances": [
                Instance.from_row(row) for row in _merge_rows(launching, cancelled, stale)
            ],
        }

    def _get_instance(self, instance_id: str) -> Optional[Instance]:
        row = self.backend.table("quest_instances").select("*").eq("id", instance_id).single()
        return Instance.from_row(row) if row else None

    def _get_squad(self, squad_id: str) -> Optional[Squad]:
        row = self.backend.table("quest_squads").select(SQUAD_COLUMNS).eq("id", squad_id).single()
        return Squad.from_row(row) if row else None

    # ------------------------------------------------------------------
    # Flow Debugger
    # ------------------------------------------------------------------
    def signup_issues(self, *, refresh: bool = False) -> AnomalyReport:
        signups = self._cached("signups", self._signup_snapshot, refresh=refresh)
        return signup_report(signups, self.now())

    def squad_issues(self, *, refresh: bool = False) -> AnomalyReport:
        squads = self._cached("squads", self._squad_snapshot, refresh=refresh)
        return squad_report(squads, self.now())

    def gamification_issues(self, *, refresh: bool = False) -> AnomalyReport:
        snapshot = self._cached("gamification", self._completion_snapshot, refresh=refresh)
        return gamification_report(snapshot["completed"], snapshot["transactions"], self.now())

    def flow_report(self, *, refresh: bool = False) -> Dict[str, PanelResult]:
        """Load the three Flow Debugger panels independently."""

        return {
            name: self.load_panel(name, refresh=refresh)
            for name in ("signups", "squads", "gamification")
        }

    # ------------------------------------------------------------------
    # Control room
    # ------------------------------------------------------------------
    def ops_alerts(self, *, refresh: bool = False) -> List[OpsAlert]:
        snapshot = self._cached("ops_alerts", self._ops_snapshot, refresh=refresh)
        return collect_ops_alerts(
            snapshot["quests"], snapshot["instances"], self.now(), self.settings
        )

    def warmup_status(self, *, refresh: bool = False) -> WarmUpStatusReport:
        def fetch() -> List[Squad]:
            rows = (
                self.backend.table("quest_squads")
                .select("id, squad_name, status, updated_at, instance_id")
                .in_(
                    "status",
                    [SquadStatus.WARMING_UP.value, SquadStatus.READY_FOR_REVIEW.value],
                )
                .execute()
            )
            return [Squad.from_row(row) for row in rows]

        squads = self._cached("warmup_status", fetch, refresh=refresh)
        return check_warmup_status(squads, self.now(), stall_hours=self.settings.warmup_stall_hours)

    def sla_breaches(self, *, refresh: bool = False) -> List[SlaBreach]:
        now = self.now()

        def fetch() -> List[SupportTicket]:
            cutoff = now - timedelta(hours=self.settings.sla_first_response_hours)
            rows = (
                self.backend.table("support_tickets")
                .select("id, description, urgency, created_at, first_response_at, status")
                .not_in("status", sorted(CLOSED_TICKET_STATUSES))
                .lt("created_at", cutoff.isoformat())
                .execute()
            )
            return [SupportTicket.from_row(row) for row in rows]

        tickets = self._cached("sla", fetch, refresh=refresh)
        return detect_sla_breaches(
            tickets,
            now,
            first_response_hours=self.settings.sla_first_response_hours,
            resolution_hours=self.settings.sla_resolution_hours,
        )

    # ------------------------------------------------------------------
    # Support sweeps
    # ------------------------------------------------------------------
    def _unstamped_tickets(
        self, breach_type: str, threshold_hours: float, *, awaiting_response: bool
    ) -> List[SupportTicket]:
        cutoff = self.now() - timedelta(hours=threshold_hours)
        query = (
            self.backend.table("support_tickets")
            .select("id, description, urgency, created_at, first_response_at, status")
            .is_(SLA_STAMP_COLUMNS[breach_type], None)
            .lt("created_at", cutoff.isoformat())
            .not_in("status", sorted(CLOSED_TICKET_STATUSES))
        )
        if awaiting_response:
            query = query.is_("first_response_at", None)
        return [SupportTicket.from_row(row) for row in query.execute()]

    def _stamp_tickets(self, tickets: Sequence[SupportTicket], breach_type: str, stamp: str) -> None:
        column = SLA_STAMP_COLUMNS[breach_type]
        for ticket in tickets:
            try:
                self.backend.table("support_tickets").update({column: stamp}).eq(
                    "id", ticket.id
                ).execute()
            except BackendError:
                logger.exception("Failed to stamp %s on ticket %s", column, ticket.id)

    def check_sla_breaches(self) -> List[SlaBreach]:
        """Report breaches not yet stamped on their tickets, stamp them and alert admins.

        Every candidate is stamped for the breach type it was fetched for, so a
        ticket is reported at most once per breach type across sweeps.
        """

        awaiting_response = self._unstamped_tickets(
            "first_response", self.settings.sla_first_response_hours, awaiting_response=True
        )
        awaiting_resolution = self._unstamped_tickets(
            "resolution", self.settings.sla_resolution_hours, awaiting_response=False
        )
        now = self.now()
        breaches = unreported_sla_breaches(
            awaiting_response,
            awaiting_resolution,
            now,
            first_response_hours=self.settings.sla_first_response_hours,
            resolution_hours=self.settings.sla_resolution_hours,
        )
        self._stamp_tickets(awaiting_response, "first_response", now.isoformat())
        self._stamp_tickets(awaiting_resolution, "resolution", now.isoformat())

        limits = {
            "first_response": self.settings.sla_first_response_hours,
            "resolution": self.settings.sla_resolution_hours,
        }
        for breach in breaches:
            if self.alert_router is None:
                break
            self.alert_router.notify(
                event=f"sla_breach.{breach.breach_type}",
                message=sla_breach_message(breach, limits[breach.breach_type]),
                severity="error",
                source="quest_ops",
                metadata={
                    "ticket_id": breach.ticket.id,
                    "urgency": breach.ticket.urgency,
                    "hours_elapsed": breach.hours_elapsed,
                },
            )
        if breaches:
            logger.info("Reported %d new SLA breaches", len(breaches))
            self.cache.invalidate("sla")
        return breaches

    def _recently_notified(self, notification_type: str, squad_id: str, since: datetime) -> bool:
        rows = (
            self.backend.table("notifications")
            .select("id")
            .eq("type", notification_type)
            .eq("body", squad_id)
            .gte("created_at", since.isoformat())
            .limit(1)
            .execute()
        )
        return bool(rows)

    def _admin_ids(self) -> List[str]:
        rows = self.backend.table("user_roles").select("user_id").eq("role", "admin").execute()
        return [row["user_id"] for row in rows if row.get("user_id")]

    def notify_warmup_status(self) -> WarmUpNotification:
        """Notify admins about squads ready for review or stalled in warm-up.

        A squad already notified for the same reason within the dedupe window
        is skipped.
        """

        report = self.warmup_status(refresh=True)
        since = self.now() - timedelta(hours=self.settings.warmup_notify_dedupe_hours)
        result = WarmUpNotification(
            ready_for_review=[
                squad
                for squad in report.ready_for_review
                if not self._recently_notified(WARMUP_READY_NOTIFICATION, squad.id, since)
            ],
            stalled=[
                stalled
                for stalled in report.stalled
                if not self._recently_notified(WARMUP_STALLED_NOTIFICATION, stalled.squad.id, since)
            ],
        )
        if not (result.ready_for_review or result.stalled):
            return result

        admin_ids = self._admin_ids()
        notifications: List[Dict[str, Any]] = []
        for squad in result.ready_for_review:
            notifications += warmup_admin_notifications(admin_ids, WARMUP_READY_NOTIFICATION, squad)
            self._log_ops_event(
                "squad_status_change",
                squad_id=squad.id,
                metadata={
                    "notification_sent": True,
                    "notification_type": "ready_for_review",
                    "squad_name": squad.display_name(),
                },
            )
        for stalled in result.stalled:
            notifications += warmup_admin_notifications(
                admin_ids, WARMUP_STALLED_NOTIFICATION, stalled.squad
            )
            self._log_ops_event(
                "squad_status_change",
                squad_id=stalled.squad.id,
                metadata={
                    "notification_sent": True,
                    "notification_type": "warmup_stalled",
                    "hours_stalled": stalled.hours_stalled,
                    "squad_name": stalled.squad.display_name(),
                },
            )
        if notifications:
            try:
                self.backend.table("notifications").insert(notifications).execute()
                result.notifications_created = len(notifications)
            except BackendError:
                logger.exception("Failed to create warm-up notifications")

        if self.alert_router is not None:
            self.alert_router.notify(
                event="squad_warmup.status",
                message=result.summary(),
                severity="warning" if result.stalled else "info",
                source="quest_ops",
                metadata={
                    "ready_for_review": [squad.id for squad in result.ready_for_review],
                    "stalled": [stalled.squad.id for stalled in result.stalled],
                },
            )
        logger.info(
            "Warm-up check: %d ready for review, %d stalled, %d notifications",
            len(result.ready_for_review),
            len(result.stalled),
            result.notifications_created,
        )
        return result

    # ------------------------------------------------------------------
    # Instance attention
    # ------------------------------------------------------------------
    def _attention_for(
        self,
        instance: Instance,
        squads: Sequence[Squad],
        signups: Sequence[Signup],
        transactions: Optional[Sequence[XpTransaction]],
    ) -> InstanceAttention:
        return instance_attention(
            instance,
            squads,
            signups,
            self.now(),
            transactions=transactions,
            required_percentage=self.settings.warmup_required_percentage,
            default_target_size=self.settings.default_target_squad_size,
            ready_ratio=self.settings.squad_ready_ratio,
        )

    def instance_attention(self, instance_id: str, *, refresh: bool = False) -> InstanceAttention:
        def fetch() -> Dict[str, Any]:
            instance = self._get_instance(instance_id)
            if instance is None:
                raise ValueError(f"Unknown instance {instance_id}")
            squads = [
                Squad.from_row(row)
                for row in self.backend.table("quest_squads")
                .select(SQUAD_COLUMNS)
                .eq("instance_id", instance_id)
                .execute()
            ]
            signups = [
                Signup.from_row(row)
                for row in self.backend.table("quest_signups")
                .select("*")
                .eq("instance_id", instance_id)
                .execute()
            ]
            completed = [s.id for s in signups if s.status is SignupStatus.COMPLETED]
            return {
                "instance": instance,
                "squads": squads,
                "signups": signups,
                "transactions": self._xp_for(completed),
            }

        snapshot = self._cached(
            "instance_attention", fetch, refresh=refresh, instance_id=instance_id
        )
        return self._attention_for(
            snapshot["instance"], snapshot["squads"], snapshot["signups"], snapshot["transactions"]
        )

    def attention_overview(self, *, refresh: bool = False) -> AttentionOverview:
        """Attention for every open instance, with per-severity counts."""

        def fetch() -> Dict[str, Any]:
            instances = [
                Instance.from_row(row)
                for row in self.backend.table("quest_instances")
                .select("*")
                .in_("status", [status.value for status in OPEN_INSTANCE_STATUSES])
                .order("scheduled_date")
                .limit(self.settings.instance_fetch_limit)
                .execute()
            ]
            ids = [instance.id for instance in instances]
            squads: List[Squad] = []
            signups: List[Signup] = []
            if ids:
                squads = [
                    Squad.from_row(row)
                    for row in self.backend.table("quest_squads")
                    .select(SQUAD_COLUMNS)
                    .in_("instance_id", ids)
                    .execute()
                ]
                signups = [
                    Signup.from_row(row)
                    for row in self.backend.table("quest_signups")
                    .select("*")
                    .in_("instance_id", ids)
                    .in_("status", [SignupStatus.PENDING.value, SignupStatus.CONFIRMED.value])
                    .execute()
                ]
            return {"instances": instances, "squads": squads, "signups": signups}

        snapshot = self._cached("attention_overview", fetch, refresh=refresh)
        results = []
        for instance in snapshot["instances"]:
            results.append(
                self._attention_for(
                    instance,
                    [s for s in snapshot["squads"] if s.instance_id == instance.id],
                    [s for s in snapshot["signups"] if s.instance_id == instance.id],
                    None,
                )
            )
        results.sort(key=lambda result: -result.severity.rank)
        return AttentionOverview(results=results, summary=summarize_attention(results))

    # ------------------------------------------------------------------
    # Squads
    # ------------------------------------------------------------------
    def squad_warmup(self, squad_id: str, *, refresh: bool = False) -> SquadWarmUp:
        def fetch() -> Squad:
            squad = self._get_squad(squad_id)
            if squad is None:
                raise ValueError(f"Unknown squad {squad_id}")
            return squad

        squad = self._cached("squad_warmup", fetch, refresh=refresh, squad_id=squad_id)
        progress = calculate_warmup_progress(
            squad.members, self.settings.warmup_required_percentage
        )
        return SquadWarmUp(squad=squad, progress=progress)

    def active_squads(self, instance_id: str, *, refresh: bool = False) -> List[ActiveSquadSummary]:
        """Approved, active and completed squads with member counts and last chat activity."""

        def fetch() -> List[ActiveSquadSummary]:
            rows = (
                self.backend.table("quest_squads")
                .select("id, squad_name, status, squad_members(id, status)")
                .eq("instance_id", instance_id)
                .in_("status", [status.value for status in ACTIVE_SQUAD_STATUSES])
                .execute()
            )
            summaries = []
            for row in rows:
                last_message = (
                    self.backend.table("squad_chat_messages")
                    .select("created_at")
                    .eq("squad_id", row["id"])
                    .order("created_at", desc=True)
                    .limit(1)
                    .single()
                )
                summaries.append(summarize_active_squad(row, last_message))
            return summaries

        return self._cached("active_squads", fetch, refresh=refresh, instance_id=instance_id)

    def feature_flags(self, *, refresh: bool = False) -> List[FeatureFlag]:
        def fetch() -> List[FeatureFlag]:
            rows = self.backend.table("feature_flags").select("*").order("key").execute()
            return [FeatureFlag.from_row(row) for row in rows]

        return self._cached("feature_flags", fetch, refresh=refresh)

    def load_panel(self, name: str, *, refresh: bool = False) -> PanelResult:
        """Load one panel, turning fetch and validation failures into ``PanelResult.error``."""

        loaders: Dict[str, Callable[[], Any]] = {
            "signups": lambda: self.signup_issues(refresh=refresh),
            "squads": lambda: self.squad_issues(refresh=refresh),
            "gamification": lambda: self.gamification_issues(refresh=refresh),
            "ops_alerts": lambda: self.ops_alerts(refresh=refresh),
            "warmup": lambda: self.warmup_status(refresh=refresh),
            "sla": lambda: self.sla_breaches(refresh=refresh),
            "attention": lambda: self.attention_overview(refresh=refresh),
            "flags": lambda: self.feature_flags(refresh=refresh),
        }
        if name not in loaders:
            raise ValueError(f"Unknown panel '{name}'")
        try:
            return PanelResult(name=name, data=loaders[name]())
        except (BackendError, ValueError) as exc:
            logger.warning("Panel %s failed to load: %s", name, exc)
            return PanelResult(name=name, error=str(exc))

    def refresh_all(self) -> None:
        self.cache.invalidate_all()

    # ------------------------------------------------------------------
    # Mutation plumbing
    # ------------------------------------------------------------------
    @contextmanager
    def _mutation(self, action: str) -> Iterator[None]:
        try:
            yield
        except MutationError:
            raise
        except TransitionError as exc:
            raise MutationError(str(exc), status=409, code="invalid_transition") from exc
        except BackendError as exc:
            logger.error("Mutation %s failed: %s", action, exc.message)
            raise MutationError(
                exc.message, status=exc.status, code=exc.code, details=exc.details
            ) from exc

    def _invalidate(self, names: Sequence[str]) -> None:
        for name in names:
            self.cache.invalidate(name)

    def _log_ops_event(self, event_type: str, **fields: Any) -> None:
        row = {"event_type": event_type}
        row.update({key: value for key, value in fields.items() if value is not None})
        try:
            self.backend.table("ops_events").insert(row).execute()
        except BackendError:
            logger.exception("Failed to record ops event %s", event_type)

    def _audit(
        self,
        action: str,
        *,
        target_table: str,
        target_id: str,
        old_values: Optional[Mapping[str, Any]] = None,
        new_values: Optional[Mapping[str, Any]] = None,
        admin_id: Optional[str] = None,
    ) -> None:
        row = {
            "action": action,
            "target_table": target_table,
            "target_id": target_id,
            "old_values": dict(old_values) if old_values is not None else None,
            "new_values": dict(new_values) if new_values is not None else None,
            "admin_id": admin_id,
        }
        try:
            self.backend.table("admin_audit_log").insert(row).execute()
        except BackendError:
            logger.exception("Failed to write audit entry %s for %s", action, target_id)

    @staticmethod
    def _not_found(kind: str, identifier: str) -> MutationError:
        return MutationError(f"{kind} {identifier} not found", status=404, code="not_found")

    # ------------------------------------------------------------------
    # Instance lifecycle
    # ------------------------------------------------------------------
    def transition_instance(
        self,
        instance_id: str,
        status: InstanceStatus | str,
        *,
        reason: Optional[str] = None,
        notify_users: bool = False,
        admin_id: Optional[str] = None,
    ) -> TransitionResult:
        target = coerce_status(InstanceStatus, status)
        with self._mutation(f"instance_{target.value}"):
            instance = self._get_instance(instance_id)
            if instance is None:
                raise self._not_found("Instance", instance_id)
            current = instance.status
            validate_instance_transition(current, target, reason)

            payload = transition_payload(current, target, reason=reason, now=self.now())
            self.backend.table("quest_instances").update(payload).eq("id", instance_id).execute()
            logger.info("Instance %s moved %s -> %s", instance_id, current.value, target.value)

        self._log_ops_event(
            ops_event_type(target),
            instance_id=instance_id,
            before_state={"status": current.value},
            after_state={"status": target.value, "reason": reason},
            metadata={"action": f"instance_{target.value}"},
        )
        if target in AUDITED_STATUSES:
            self._audit(
                f"instance_{target.value}",
                target_table="quest_instances",
                target_id=instance_id,
                old_values={"status": current.value},
                new_values={"status": target.value, "reason": reason},
                admin_id=admin_id,
            )
        notified = 0
        if notify_users and target in NOTIFY_STATUSES:
            notified = self._notify_instance_users(instance, target, reason)
        self._invalidate(INSTANCE_QUERIES)
        return TransitionResult(
            instance_id=instance_id,
            previous_status=current,
            status=target,
            notified_users=notified,
        )

    def _notify_instance_users(
        self, instance: Instance, status: InstanceStatus, reason: Optional[str]
    ) -> int:
        try:
            rows = (
                self.backend.table("quest_signups")
                .select("user_id")
                .eq("instance_id", instance.id)
                .in_("status", [SignupStatus.PENDING.value, SignupStatus.CONFIRMED.value])
                .execute()
            )
            notifications = notification_rows(
                (row.get("user_id") for row in rows),
                title=instance.title,
                status=status,
                reason=reason,
            )
            if notifications:
                self.backend.table("notifications").insert(notifications).execute()
            return len(notifications)
        except BackendError:
            logger.exception("Failed to notify users of instance %s", instance.id)
            return 0

    def pause_instance(
        self, instance_id: str, reason: str, *, admin_id: Optional[str] = None
    ) -> TransitionResult:
        return self.transition_instance(
            instance_id,
            InstanceStatus.PAUSED,
            reason=reason,
            notify_users=True,
            admin_id=admin_id,
        )

    def resume_instance(self, instance_id: str, *, admin_id: Optional[str] = None) -> TransitionResult:
        """Return a paused instance to the status it was paused from."""

        with self._mutation("instance_resume"):
            row = (
                self.backend.table("quest_instances")
                .select("id, previous_status")
                .eq("id", instance_id)
                .single()
            )
            if row is None:
                raise self._not_found("Instance", instance_id)
            target = resume_target(row.get("previous_status"))
        return self.transition_instance(instance_id, target, admin_id=admin_id)

    def cancel_instance(
        self, instance_id: str, reason: str, *, admin_id: Optional[str] = None
    ) -> TransitionResult:
        return self.transition_instance(
            instance_id,
            InstanceStatus.CANCELLED,
            reason=reason,
            notify_users=True,
            admin_id=admin_id,
        )

    def archive_instance(self, instance_id: str, *, admin_id: Optional[str] = None) -> TransitionResult:
        return self.transition_instance(instance_id, InstanceStatus.ARCHIVED, admin_id=admin_id)

    def bulk_update_instance_status(
        self,
        instance_ids: Sequence[str],
        status: InstanceStatus | str,
        *,
        reason: Optional[str] = None,
        admin_id: Optional[str] = None,
    ) -> BulkTransitionResult:
        """Apply one transition to many instances; failures are collected per id."""

        target = coerce_status(InstanceStatus, status)
        result = BulkTransitionResult(status=target)
        for instance_id in dict.fromkeys(instance_ids):
            try:
                self.transition_instance(instance_id, target, reason=reason, admin_id=admin_id)
            except MutationError as exc:
                result.failed[instance_id] = exc.message
            else:
                result.succeeded.append(instance_id)
        logger.info(
            "Bulk %s: %d succeeded, %d failed",
            target.value,
            len(result.succeeded),
            len(result.failed),
        )
        return result

    def create_instance_from_template(
        self,
        template_id: str,
        scheduled_date: date | str,
        start_time: str,
        *,
        meeting_point_name: Optional[str] = None,
        meeting_point_address: Optional[str] = None,
    ) -> Any:
        """Schedule a new instance through the ``create_instance_from_template`` RPC."""

        with self._mutation("create_instance_from_template"):
            created = self.backend.rpc(
                "create_instance_from_template",
                {
                    "p_template_id": template_id,
                    "p_scheduled_date": str(scheduled_date),
                    "p_start_time": start_time,
                    "p_meeting_point_name": meeting_point_name,
                    "p_meeting_point_address": meeting_point_address,
                },
            )
        self._invalidate(INSTANCE_QUERIES)
        return created

    # ------------------------------------------------------------------
    # Squads and signups
    # ------------------------------------------------------------------
    def update_squad_status(
        self,
        squad_id: str,
        status: SquadStatus | str,
        *,
        notes: Optional[str] = None,
        admin_id: Optional[str] = None,
    ) -> Squad:
        target = coerce_status(SquadStatus, status)
        with self._mutation(f"squad_status_{target.value}"):
            squad = self._get_squad(squad_id)
            if squad is None:
                raise self._not_found("Squad", squad_id)
            if not can_transition(squad.status, target):
                raise TransitionError(squad.status.value, target.value)
            payload = status_update_payload(target, notes=notes, admin_id=admin_id, now=self.now())
            self.backend.table("quest_squads").update(payload).eq("id", squad_id).execute()

        if target is SquadStatus.APPROVED:
            try:
                self.backend.invoke(
                    "notify-clique-members", approval_notification(squad_id, squad.instance_id)
                )
            except BackendError:
                logger.exception("Failed to notify members of approved squad %s", squad_id)
        self._audit(
            f"clique_status_{target.value}",
            target_table="quest_squads",
            target_id=squad_id,
            old_values={"status": squad.status.value},
            new_values={"status": target.value, "notes": notes},
            admin_id=admin_id,
        )
        self._invalidate(SQUAD_QUERIES)
        squad.status = target
        return squad

    def force_signup_status(
        self,
        signup_id: str,
        status: SignupStatus | str,
        reason: str,
        *,
        admin_id: Optional[str] = None,
    ) -> Signup:
        """Set a signup's status directly, bypassing the transition table."""

        target = coerce_status(SignupStatus, status)
        if not (reason or "").strip():
            raise MutationError("A reason is required for manual overrides", status=400, code="reason_required")
        with self._mutation("force_signup_status"):
            row = self.backend.table("quest_signups").select("*").eq("id", signup_id).single()
            if row is None:
                raise self._not_found("Signup", signup_id)
            signup = Signup.from_row(row)
            if not can_transition(signup.status, target):
                logger.warning(
                    "Forcing signup %s off-table: %s -> %s",
                    signup_id,
                    signup.status.value,
                    target.value,
                )
            self.backend.table("quest_signups").update({"status": target.value}).eq(
                "id", signup_id
            ).execute()

        self._log_ops_event(
            "manual_override",
            signup_id=signup_id,
            user_id=signup.user_id,
            quest_id=signup.quest_id,
            before_state={"status": signup.status.value},
            after_state={"status": target.value},
            metadata={"reason": reason, "action": "force_signup_status"},
        )
        self._audit(
            "force_signup_status",
            target_table="quest_signups",
            target_id=signup_id,
            old_values={"status": signup.status.value},
            new_values={"status": target.value},
            admin_id=admin_id,
        )
        self._invalidate(SIGNUP_QUERIES)
        signup.status = target
        return signup

    def rerun_xp_award(self, signup_id: str, reason: str) -> XpAwardResult:
        """Award completion XP unless any transaction already references the signup.

        Uses the same rule as the missing-XP detector: a signup is covered by
        any transaction whose ``source_id`` is the signup id.
        """

        with self._mutation("rerun_xp_award"):
            existing = (
                self.backend.table("xp_transactions")
                .select("id")
                .eq("source_id", signup_id)
                .limit(1)
                .execute()
            )
            if existing:
                logger.info("XP already awarded for signup %s", signup_id)
                return XpAwardResult(signup_id=signup_id, awarded=False, already_awarded=True)
            row = self.backend.table("quest_signups").select("*").eq("id", signup_id).single()
            if row is None:
                raise self._not_found("Signup", signup_id)
            amount = self.backend.rpc(
                "award_quest_xp",
                {"p_quest_id": row.get("quest_id"), "p_user_id": row.get("user_id")},
            )

        self._log_ops_event(
            "manual_override",
            signup_id=signup_id,
            user_id=row.get("user_id"),
            quest_id=row.get("quest_id"),
            after_state={"xp_awarded": amount},
            metadata={"reason": reason, "action": "rerun_xp_award"},
        )
        self._invalidate(("gamification", "instance_attention"))
        return XpAwardResult(signup_id=signup_id, awarded=True, amount=int(amount or 0))

    # ------------------------------------------------------------------
    # Feature flags
    # ------------------------------------------------------------------
    def set_feature_flag(
        self,
        flag_id: str,
        *,
        is_enabled: Optional[bool] = None,
        rollout_percentage: Optional[int] = None,
        admin_id: Optional[str] = None,
    ) -> FeatureFlag:
        payload = flag_update_payload(is_enabled=is_enabled, rollout_percentage=rollout_percentage)
        with self._mutation("feature_flag_update"):
            rows = self.backend.table("feature_flags").update(payload).eq("id", flag_id).execute()
            if not rows:
                raise self._not_found("Feature flag", flag_id)
        flag = FeatureFlag.from_row(rows[0])
        self._audit(
            "feature_flag_update",
            target_table="feature_flags",
            target_id=flag_id,
            new_values=payload,
            admin_id=admin_id,
        )
        self._invalidate(("feature_flags",))
        return flag

    def delete_feature_flag(self, flag_id: str, *, admin_id: Optional[str] = None) -> None:
        with self._mutation("feature_flag_delete"):
            rows = self.backend.table("feature_flags").delete().eq("id", flag_id).execute()
            if not rows:
                raise self._not_found("Feature flag", flag_id)
        self._audit(
            "feature_flag_delete",
            target_table="feature_flags",
            target_id=flag_id,
            old_values={"key": rows[0].get("key")},
            admin_id=admin_id,
        )
        self._invalidate(("feature_flags",))

    # ------------------------------------------------------------------
    # Alert routing
    # ------------------------------------------------------------------
    def route_alert(self, alert: OpsAlert) -> bool:
        if self.alert_router is None:
            return False
        return self.alert_router.notify(
            event=f"ops_alert.{alert.type}",
            message=f"{alert.title}: {alert.description}",
            severity=alert.severity.value,
            source="quest_ops",
            metadata={
                "alert_id": alert.id,
                "quest_id": alert.quest_id,
                "instance_id": alert.instance_id,
            },
        )


__all__ = [
    "ConsoleService",
    "PanelResult",
    "AttentionOverview",
    "SquadWarmUp",
    "XpAwardResult",
    "WarmUpNotification",
]
