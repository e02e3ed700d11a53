from __future__ import annotations

from datetime import timedelta

from conftest import NOW, days_ago, hours_ago

from quest_ops.config import get_settings
from quest_ops.models import Instance, Quest, Severity, Squad, SupportTicket
from quest_ops.ops_alerts import (
    OpsAlert,
    cancelled_instance_alerts,
    check_warmup_status,
    collect_ops_alerts,
    detect_sla_breaches,
    low_signup_alerts,
    pending_review_alerts,
    revoked_quest_alerts,
    sort_alerts,
    stale_draft_alerts,
)


def _quest(quest_id: str, **extra) -> Quest:
    row = {"id": quest_id, "title": f"Quest {quest_id}", "status": "active"}
    row.update(extra)
    return Quest.from_row(row)


def _instance(instance_id: str, status: str, **extra) -> Instance:
    row = {"id": instance_id, "status": status, "title": f"Instance {instance_id}"}
    row.update(extra)
    return Instance.from_row(row)


def _ticket(ticket_id: str, age_hours: float, **extra) -> SupportTicket:
    row = {"id": ticket_id, "status": "open", "created_at": hours_ago(age_hours)}
    row.update(extra)
    return SupportTicket.from_row(row)


def test_pending_review_escalates_with_age():
    quests = [
        _quest("fresh", review_status="pending_review", created_at=hours_ago(47)),
        _quest("warn", review_status="pending_review", created_at=hours_ago(50)),
        _quest("late", review_status="pending_review", created_at=hours_ago(96)),
        _quest("done", review_status="approved", created_at=hours_ago(200)),
    ]

    alerts = {alert.id: alert for alert in pending_review_alerts(quests, NOW)}

    assert set(alerts) == {"pending-warn", "pending-late"}
    assert alerts["pending-warn"].severity is Severity.WARNING
    assert alerts["pending-late"].severity is Severity.ERROR
    assert "4 days" in alerts["pending-late"].description
    assert alerts["pending-late"].quest_id == "late"


def test_low_signup_alerts_only_for_today_and_tomorrow():
    instances = [
        _instance("today", "recruiting", scheduled_date="2026-10-18", start_time="18:00:00",
                  capacity=20, current_signup_count=4),
        _instance("tomorrow", "locked", scheduled_date="2026-10-19", capacity=20,
                  current_signup_count=1),
        _instance("later", "recruiting", scheduled_date="2026-10-25", capacity=20,
                  current_signup_count=0),
        _instance("healthy", "recruiting", scheduled_date="2026-10-18", capacity=20,
                  current_signup_count=10),
        _instance("no-cap", "recruiting", scheduled_date="2026-10-18", capacity=0),
        _instance("draft", "draft", scheduled_date="2026-10-18", capacity=20),
    ]

    alerts = {alert.id: alert for alert in low_signup_alerts(instances, NOW)}

    assert set(alerts) == {"low-signup-today", "low-signup-tomorrow"}
    assert alerts["low-signup-today"].severity is Severity.WARNING
    assert alerts["low-signup-tomorrow"].severity is Severity.ERROR
    assert "4/20 signups (20%)" in alerts["low-signup-today"].description
    assert alerts["low-signup-today"].timestamp == NOW + timedelta(hours=6)


def test_revoked_quests_within_window():
    quests = [
        _quest("recent", status="revoked", revoked_at=days_ago(2), revoked_reason="Unsafe route"),
        _quest("old", status="revoked", revoked_at=days_ago(10)),
        _quest("unknown", status="revoked"),
    ]

    alerts = {alert.id: alert for alert in revoked_quest_alerts(quests, NOW)}

    assert set(alerts) == {"revoked-recent", "revoked-unknown"}
    assert alerts["revoked-recent"].description.endswith(": Unsafe route")
    assert all(alert.severity is Severity.ERROR for alert in alerts.values())


def test_recently_cancelled_instances():
    instances = [
        _instance("c1", "cancelled", updated_at=days_ago(1)),
        _instance("c2", "cancelled", updated_at=days_ago(5)),
        _instance("r1", "recruiting", updated_at=days_ago(1)),
    ]

    alerts = cancelled_instance_alerts(instances, NOW)

    assert [alert.id for alert in alerts] == ["cancelled-c1"]
    assert alerts[0].severity is Severity.WARNING


def test_stale_drafts_after_two_weeks():
    instances = [
        _instance("old", "draft", created_at=days_ago(20)),
        _instance("new", "draft", created_at=days_ago(3)),
    ]

    alerts = stale_draft_alerts(instances, NOW)

    assert [alert.id for alert in alerts] == ["stale-old"]
    assert alerts[0].severity is Severity.INFO
    assert "20 days" in alerts[0].description


def test_sort_alerts_by_severity_then_newest():
    def alert(alert_id, severity, age):
        return OpsAlert(
            id=alert_id,
            type="t",
            severity=severity,
            title="",
            description="",
            timestamp=NOW - timedelta(hours=age),
        )

    ordered = sort_alerts(
        [
            alert("info", Severity.INFO, 1),
            alert("old-error", Severity.ERROR, 10),
            alert("warn", Severity.WARNING, 2),
            alert("new-error", Severity.ERROR, 1),
        ]
    )

    assert [a.id for a in ordered] == ["new-error", "old-error", "warn", "info"]


def test_collect_ops_alerts_uses_settings_thresholds():
    quests = [_quest("q", review_status="pending_review", created_at=hours_ago(80))]
    instances = [_instance("d", "draft", created_at=days_ago(30))]

    alerts = collect_ops_alerts(quests, instances, NOW, get_settings())

    assert [a.id for a in alerts] == ["pending-q", "stale-d"]


def test_warmup_status_separates_review_and_stalled():
    squads = [
        Squad.from_row({"id": "review", "status": "ready_for_review"}),
        Squad.from_row({"id": "stuck", "status": "warming_up", "updated_at": hours_ago(30.5)}),
        Squad.from_row({"id": "fresh", "status": "warming_up", "updated_at": hours_ago(3)}),
        Squad.from_row({"id": "done", "status": "active", "updated_at": hours_ago(100)}),
    ]

    report = check_warmup_status(squads, NOW)

    assert [s.id for s in report.ready_for_review] == ["review"]
    assert [(s.squad.id, s.hours_stalled) for s in report.stalled] == [("stuck", 30)]
    assert report.needs_attention


def test_warmup_status_stalls_at_exact_threshold():
    squad = Squad.from_row({"id": "edge", "status": "warming_up", "updated_at": hours_ago(24)})
    assert len(check_warmup_status([squad], NOW).stalled) == 1
    assert not check_warmup_status([], NOW).needs_attention


def test_sla_breach_reports_each_ticket_once():
    tickets = [
        _ticket("no-reply", 30),
        _ticket("replied", 30, first_response_at=hours_ago(28)),
        _ticket("young", 3),
        _ticket("slow-reply", 6),
        _ticket("closed", 100, status="resolved"),
    ]

    breaches = {b.ticket.id: b for b in detect_sla_breaches(tickets, NOW)}

    assert set(breaches) == {"no-reply", "replied", "slow-reply"}
    assert breaches["no-reply"].breach_type == "first_response"
    assert breaches["replied"].breach_type == "resolution"
    assert breaches["slow-reply"].hours_elapsed == 6


def test_sla_hours_round_half_up():
    breach = detect_sla_breaches([_ticket("t", 4.5)], NOW)[0]
    assert breach.hours_elapsed == 5
