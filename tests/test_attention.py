from __future__ import annotations

from conftest import NOW, days_ago, hours_ago

from quest_ops.attention import (
    SquadWarmUpState,
    calculate_attention_flag,
    instance_attention,
    squad_ready_threshold,
    summarize_attention,
)
from quest_ops.models import (
    Instance,
    Severity,
    Signup,
    Squad,
    SquadStatus,
    XpTransaction,
)


def _instance(status="recruiting", *, date="2026-10-20", start="10:00:00", **extra) -> Instance:
    row = {
        "id": "inst-1",
        "status": status,
        "title": "Sunrise Hike",
        "scheduled_date": date,
        "start_time": start,
        "capacity": 12,
    }
    row.update(extra)
    return Instance.from_row(row)


def _state(status: str, *, since=None, ready=0, total=0) -> SquadWarmUpState:
    return SquadWarmUpState(
        status=SquadStatus(status),
        warming_up_since=since,
        ready_count=ready,
        total_members=total,
    )


def test_ready_threshold_rounds_up():
    assert squad_ready_threshold(6) == 5
    assert squad_ready_threshold(None) == 5
    assert squad_ready_threshold(4) == 4


def test_past_instance_gets_no_flag():
    instance = _instance("locked", date="2026-10-17", current_signup_count=10)
    states = [_state("ready_for_review")]
    assert calculate_attention_flag(instance, 2, states, NOW) is None


def test_pending_review_outranks_everything():
    instance = _instance(current_signup_count=1)
    states = [
        _state("ready_for_review"),
        _state("warming_up", since=NOW.replace(day=15)),
    ]

    flag = calculate_attention_flag(instance, 2, states, NOW)

    assert flag.type == "squad_pending_review"
    assert flag.severity is Severity.WARNING
    assert flag.short_label == "Needs Review"
    assert flag.message == "1 squad ready for admin approval"


def test_stalled_warmup_after_24_hours():
    instance = _instance()
    since = Squad.from_row({"id": "s", "updated_at": hours_ago(25)}).updated_at

    flag = calculate_attention_flag(instance, 1, [_state("warming_up", since=since)], NOW)

    assert flag.type == "squad_warmup_stalled"
    assert flag.severity is Severity.ERROR
    assert flag.short_label == "Stalled"


def test_warming_up_reports_member_readiness():
    instance = _instance()
    since = Squad.from_row({"id": "s", "updated_at": hours_ago(3)}).updated_at
    states = [
        _state("warming_up", since=since, ready=2, total=5),
        _state("warming_up", since=since, ready=1, total=4),
    ]

    flag = calculate_attention_flag(instance, 2, states, NOW)

    assert flag.type == "squad_warming_up"
    assert flag.severity is Severity.INFO
    assert flag.message == "2 squads warming up (3/9 members ready)"


def test_recruiting_instance_with_enough_signups_is_ready_for_squad():
    instance = _instance(current_signup_count=5, target_squad_size=6)

    flag = calculate_attention_flag(instance, 0, [], NOW)

    assert flag.type == "ready_for_squad"
    assert flag.severity is Severity.WARNING
    assert flag.message == "5 users signed up, ready to form squads"


def test_ready_for_squad_needs_no_existing_squads():
    instance = _instance(current_signup_count=8)
    assert calculate_attention_flag(instance, 1, [_state("draft")], NOW) is None


def test_underfilled_recruiting_instance_starting_soon():
    instance = _instance(date="2026-10-18", start="13:30:00", current_signup_count=2)

    flag = calculate_attention_flag(instance, 0, [], NOW)

    assert flag.type == "underfilled"
    assert flag.severity is Severity.ERROR
    assert flag.message == "Only 2 users, starts in 90 minutes"


def test_locked_instance_starting_soon():
    instance = _instance("locked", date="2026-10-18", start="13:00:00", current_signup_count=2)

    flag = calculate_attention_flag(instance, 1, [_state("approved")], NOW)

    assert flag.type == "starting_soon"
    assert flag.severity is Severity.INFO
    assert flag.message == "Starting in 60 minutes"


def test_locked_instance_ready_to_go():
    instance = _instance("locked", current_signup_count=6)

    flag = calculate_attention_flag(instance, 1, [_state("approved")], NOW)

    assert flag.type == "ready_to_go"
    assert flag.severity is Severity.SUCCESS
    assert flag.message == "All set with 1 squad formed"


def test_ready_to_go_instance_needs_no_attention():
    instance = _instance("locked", current_signup_count=6)
    squad = Squad.from_row(
        {"id": "sq1", "status": "approved", "instance_id": "inst-1", "squad_members": [{"id": "m1"}]}
    )

    result = instance_attention(instance, [squad], [], NOW)

    assert result.flag.type == "ready_to_go"
    assert result.severity is Severity.NONE
    assert summarize_attention([result]) == {"none": 1, "info": 0, "warning": 0, "error": 0}


def test_quiet_instance_has_no_flag():
    instance = _instance(current_signup_count=1)
    assert calculate_attention_flag(instance, 0, [], NOW) is None


def test_instance_attention_combines_buckets_and_flag():
    instance = _instance(current_signup_count=5)
    signups = [
        Signup.from_row({"id": "p1", "status": "pending", "signed_up_at": hours_ago(72)}),
        Signup.from_row({"id": "ok", "status": "confirmed", "signed_up_at": hours_ago(2)}),
    ]
    squads = [
        Squad.from_row(
            {
                "id": "sq1",
                "status": "warming_up",
                "updated_at": hours_ago(4),
                "created_at": days_ago(1),
                "squad_members": [
                    {"id": "a", "prompt_response": "hi", "readiness_confirmed_at": hours_ago(1)},
                    {"id": "b"},
                ],
            }
        )
    ]

    result = instance_attention(instance, squads, signups, NOW)

    assert result.flag.type == "squad_warming_up"
    assert result.issue_count == 1
    assert [b.name for b in result.buckets] == [
        "pendingTooLong",
        "questEndedNotCompleted",
        "emptySquads",
        "draftTooLong",
    ]
    assert result.warm_up["sq1"].percentage == 50
    assert result.severity is Severity.WARNING


def test_instance_attention_checks_xp_only_when_given_transactions():
    instance = _instance("completed", date="2026-10-10")
    signups = [Signup.from_row({"id": "done", "status": "completed"})]

    without = instance_attention(instance, [], signups, NOW)
    with_xp = instance_attention(
        instance, [], signups, NOW, transactions=[XpTransaction(source_id="other")]
    )

    assert "missingXp" not in [b.name for b in without.buckets]
    assert with_xp.buckets[-1].name == "missingXp"
    assert with_xp.severity is Severity.ERROR


def test_signups_without_instance_inherit_the_checked_instance():
    instance = _instance("completed", date="2026-10-10")
    signups = [Signup.from_row({"id": "c1", "status": "confirmed"})]

    result = instance_attention(instance, [], signups, NOW)

    dangling = [b for b in result.buckets if b.name == "questEndedNotCompleted"][0]
    assert [s.id for s in dangling.items] == ["c1"]


def test_summarize_attention_counts_every_severity():
    clear = instance_attention(_instance(current_signup_count=1), [], [], NOW)
    flagged = instance_attention(_instance(current_signup_count=5), [], [], NOW)

    summary = summarize_attention([clear, flagged])

    assert summary == {"none": 1, "info": 0, "warning": 1, "error": 0}
