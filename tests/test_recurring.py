from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from cadence.config import get_settings
from cadence.crud import create_tag, create_task, get_task, update_task
from cadence.models import Task
from cadence.recurrence import parse_rule
from cadence.recurring import (
    TemplateNotFoundError,
    delete_recurring_template,
    extend_active_templates,
    generate_more_instances,
    get_recurring_template,
    list_recurring_templates,
    list_template_instances,
    materialize_instances,
    partition_instances,
    set_template_paused,
    update_recurring_template,
)

from conftest import NOW, write_settings


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_template(db, owner, pattern, due, *, now=NOW, **kwargs) -> Task:
    return create_task(
        db,
        owner=owner,
        title=kwargs.pop("title", "Water plants"),
        now_utc=now,
        due_date=due,
        is_recurring=True,
        recurring_pattern=pattern,
        **kwargs,
    )


def instances_of(db, template, owner) -> list[Task]:
    return list_template_instances(db, template_id=template.id, current_user=owner)


def snapshot(tasks):
    return [
        (t.id, t.title, t.description, t.priority, t.due_date_utc, t.completed, t.completed_at_utc)
        for t in tasks
    ]


# ---------------------- Materialization ----------------------


def test_daily_template_with_max_occurrences(db, user):
    due = utc(2026, 1, 6, 9, 0)
    tag = create_tag(db, owner=user, name="home", color="#00ff00")
    t = make_template(
        db,
        user,
        {"type": "daily", "max_occurrences": 5},
        due,
        description="Balcony",
        priority="high",
        due_time="09:00",
        tag_ids=[tag.id],
    )

    assert t.is_template
    items = instances_of(db, t, user)
    assert [i.due_date_utc for i in items] == [datetime(2026, 1, 6 + n, 9, 0) for n in range(1, 6)]
    for i in items:
        assert i.is_instance and not i.is_template
        assert i.parent_template_id == t.id
        assert i.original_due_date_utc == i.due_date_utc
        assert i.is_recurring is False
        assert i.recurring_pattern is None
        assert i.completed is False
        assert (i.title, i.description, i.priority, i.due_time) == ("Water plants", "Balcony", "high", "09:00")
        assert i.tag_ids == [tag.id]


def test_end_date_limits_instances(db, user):
    due = utc(2026, 1, 6, 9, 0)
    end = (due + timedelta(days=2)).isoformat()
    t = make_template(db, user, {"type": "daily", "end_date": end}, due)
    assert [i.due_date_utc for i in instances_of(db, t, user)] == [
        datetime(2026, 1, 7, 9, 0),
        datetime(2026, 1, 8, 9, 0),
    ]


def test_naive_end_date_uses_app_timezone(db, user, tmp_path, monkeypatch):
    ny = tmp_path / "ny"
    ny.mkdir()
    monkeypatch.setenv("CADENCE_SETTINGS", str(write_settings(ny, tz="America/New_York")))
    get_settings.cache_clear()

    # Daily at 09:00 New York (14:00 UTC); the series ends 10:00 New York on Jan 8.
    t = make_template(
        db,
        user,
        {"type": "daily", "end_date": "2026-01-08T10:00:00"},
        utc(2026, 1, 5, 14, 0),
        now=datetime(2026, 1, 1),
    )
    assert [i.due_date_utc for i in instances_of(db, t, user)] == [
        datetime(2026, 1, 6, 14, 0),
        datetime(2026, 1, 7, 14, 0),
        datetime(2026, 1, 8, 14, 0),
    ]
    # Stored with an explicit offset and read back unchanged.
    assert t.recurring_pattern["end_date"] == "2026-01-08T15:00:00+00:00"
    assert parse_rule(t.recurring_pattern).end_date == datetime(2026, 1, 8, 15, 0)


def test_default_cap_applies_without_max_occurrences(db, user):
    t = make_template(db, user, {"type": "daily"}, utc(2026, 1, 6, 9, 0))
    assert len(instances_of(db, t, user)) == get_settings().recurrence.default_max_instances


def test_default_horizon_applies_without_end_date(db, user):
    # Monthly from Jan 6 2026: Feb..Dec fit in a year from NOW, Jan 6 2027 does not.
    t = make_template(db, user, {"type": "monthly"}, utc(2026, 1, 6, 9, 0))
    items = instances_of(db, t, user)
    assert len(items) == 11
    assert items[-1].due_date_utc == datetime(2026, 12, 6, 9, 0)


def test_paused_or_undated_template_gets_no_instances(db, user):
    paused = make_template(db, user, {"type": "daily", "paused": True}, utc(2026, 1, 6))
    undated = make_template(db, user, {"type": "daily"}, None)
    assert instances_of(db, paused, user) == []
    assert instances_of(db, undated, user) == []


def test_materialize_stops_when_template_is_missing(db, user):
    created = materialize_instances(
        db,
        template_id=99999,
        seed_utc=NOW,
        rule=parse_rule({"type": "daily"}),
        user_id=user.id,
        max_count=5,
        now_utc=NOW,
    )
    assert created == []
    assert db.query(Task).count() == 0


def test_occurrences_follow_local_calendar_across_dst(db, user, tmp_path, monkeypatch):
    ny = tmp_path / "ny"
    ny.mkdir()
    monkeypatch.setenv("CADENCE_SETTINGS", str(write_settings(ny, tz="America/New_York")))
    get_settings.cache_clear()

    # 09:00 New York on Friday 2026-03-06; clocks move forward on 2026-03-08.
    t = make_template(
        db,
        user,
        {"type": "daily", "max_occurrences": 3},
        utc(2026, 3, 6, 14, 0),
        now=datetime(2026, 3, 1),
    )
    assert [i.due_date_utc for i in instances_of(db, t, user)] == [
        datetime(2026, 3, 7, 14, 0),
        datetime(2026, 3, 8, 13, 0),
        datetime(2026, 3, 9, 13, 0),
    ]


def test_recurring_requires_a_pattern(db, user):
    with pytest.raises(ValueError):
        create_task(db, owner=user, title="x", now_utc=NOW, is_recurring=True)
    with pytest.raises(ValueError):
        create_task(db, owner=user, title="x", now_utc=NOW, recurring_pattern={"type": "daily"})
    with pytest.raises(ValueError, match="Custom"):
        make_template(db, user, {"type": "custom"}, utc(2026, 1, 6))


# ---------------------- Queries ----------------------


def test_list_templates_reports_counts(db, user, other_user):
    t = make_template(db, user, {"type": "daily", "max_occurrences": 3}, utc(2026, 1, 6, 9, 0))
    make_template(db, other_user, {"type": "daily", "max_occurrences": 2}, utc(2026, 1, 6, 9, 0))
    create_task(db, owner=user, title="plain", now_utc=NOW)

    first = instances_of(db, t, user)[0]
    update_task(db, task=first, current_user=user, now_utc=NOW, completed=True)

    summaries = list_recurring_templates(db, current_user=user)
    assert len(summaries) == 1
    s = summaries[0]
    assert s.template.id == t.id
    assert s.instance_count == 3
    assert s.completed_instances == 1
    assert s.next_due_date == datetime(2026, 1, 8, 9, 0)


def test_template_lookup_rejects_foreign_and_non_templates(db, user, other_user):
    t = make_template(db, user, {"type": "daily", "max_occurrences": 1}, utc(2026, 1, 6))
    inst = instances_of(db, t, user)[0]

    with pytest.raises(TemplateNotFoundError):
        get_recurring_template(db, template_id=t.id, current_user=other_user)
    with pytest.raises(TemplateNotFoundError):
        get_recurring_template(db, template_id=inst.id, current_user=user)
    with pytest.raises(TemplateNotFoundError):
        list_template_instances(db, template_id=12345, current_user=user)


def test_partition_instances_uses_now_and_completion(db, user):
    t = make_template(db, user, {"type": "daily", "max_occurrences": 4}, utc(2026, 1, 3, 9, 0))
    items = instances_of(db, t, user)
    # Jan 4 and Jan 5 09:00 are at/before NOW (Jan 5 12:00).
    update_task(db, task=items[3], current_user=user, now_utc=NOW, completed=True)
    future, past = partition_instances(items, now_utc=NOW)
    assert [i.due_date_utc.day for i in future] == [6]
    assert sorted(i.due_date_utc.day for i in past) == [4, 5, 7]


# ---------------------- Reconciliation ----------------------


@pytest.fixture
def series(db, user):
    """Template due Jan 3 09:00 with instances Jan 4..Jan 8; Jan 4 completed."""
    t = make_template(db, user, {"type": "daily", "max_occurrences": 5}, utc(2026, 1, 3, 9, 0))
    items = instances_of(db, t, user)
    update_task(db, task=items[0], current_user=user, now_utc=NOW - timedelta(days=1), completed=True)
    return t


def test_regenerate_on_pattern_change_keeps_past_instances(db, user, series):
    before = instances_of(db, series, user)
    past_before = snapshot([i for i in before if i.due_date_utc <= NOW])
    assert len(past_before) == 2

    update_recurring_template(
        db,
        template=series,
        current_user=user,
        now_utc=NOW,
        recurring_pattern={"type": "daily", "interval": 2},
        regenerate_instances=True,
    )

    after = instances_of(db, series, user)
    past_after = snapshot([i for i in after if i.due_date_utc <= NOW])
    assert past_after == past_before

    future = [i for i in after if i.due_date_utc > NOW]
    assert len(future) == get_settings().recurrence.regenerate_max_instances
    # Seeded from the latest past instance (Jan 5 09:00).
    assert [i.due_date_utc for i in future[:3]] == [
        datetime(2026, 1, 7, 9, 0),
        datetime(2026, 1, 9, 9, 0),
        datetime(2026, 1, 11, 9, 0),
    ]
    assert series.recurring_pattern["interval"] == 2


def test_completed_future_instance_is_kept_and_seeds_regeneration(db, user, series):
    early = instances_of(db, series, user)[3]
    update_task(db, task=early, current_user=user, now_utc=NOW, completed=True)
    kept = snapshot([early])

    update_recurring_template(
        db,
        template=series,
        current_user=user,
        now_utc=NOW,
        recurring_pattern={"type": "daily", "interval": 2},
        regenerate_instances=True,
    )

    after = instances_of(db, series, user)
    assert snapshot([i for i in after if i.id == early.id]) == kept
    pending = [i for i in after if not i.completed and i.due_date_utc > NOW]
    # Jan 6 and Jan 8 were dropped; the series continues from the completed Jan 7.
    assert [i.due_date_utc for i in pending[:2]] == [datetime(2026, 1, 9, 9, 0), datetime(2026, 1, 11, 9, 0)]


def test_pattern_change_without_regenerate_leaves_instances(db, user, series):
    before = snapshot(instances_of(db, series, user))
    update_recurring_template(
        db,
        template=series,
        current_user=user,
        now_utc=NOW,
        title="Renamed",
        recurring_pattern={"type": "weekly", "days_of_week": [2]},
        update_future_instances=True,
    )
    assert snapshot(instances_of(db, series, user)) == before
    assert series.title == "Renamed"
    assert series.recurring_pattern["type"] == "weekly"


def test_update_future_instances_patches_only_future(db, user, series):
    tag = create_tag(db, owner=user, name="garden", color="#123456")
    update_recurring_template(
        db,
        template=series,
        current_user=user,
        now_utc=NOW,
        title="Water garden",
        priority="low",
        tag_ids=[tag.id],
        recurring_pattern={"type": "daily", "max_occurrences": 5},
        update_future_instances=True,
    )

    items = instances_of(db, series, user)
    for i in items:
        if i.due_date_utc > NOW:
            assert (i.title, i.priority, i.tag_ids) == ("Water garden", "low", [tag.id])
        else:
            assert (i.title, i.priority, i.tag_ids) == ("Water plants", "medium", [])
    assert len(items) == 5


def test_template_only_edit_by_default(db, user, series):
    before = snapshot(instances_of(db, series, user))
    update_recurring_template(db, template=series, current_user=user, now_utc=NOW, description="Only here")
    assert snapshot(instances_of(db, series, user)) == before
    assert series.description == "Only here"


def test_invalid_update_changes_nothing(db, user, series):
    with pytest.raises(ValueError):
        update_recurring_template(
            db,
            template=series,
            current_user=user,
            now_utc=NOW,
            title="Should not stick",
            recurring_pattern={"type": "weekly", "days_of_week": []},
        )
    db.refresh(series)
    assert series.title == "Water plants"


def test_pause_flag_survives_pattern_update(db, user, series):
    set_template_paused(db, template=series, current_user=user, paused=True)
    assert series.recurring_pattern["paused"] is True

    update_recurring_template(
        db,
        template=series,
        current_user=user,
        now_utc=NOW,
        recurring_pattern={"type": "daily", "interval": 3},
    )
    assert series.recurring_pattern["paused"] is True
    assert series.recurring_pattern["interval"] == 3


def test_pause_does_not_touch_instances(db, user, series):
    before = snapshot(instances_of(db, series, user))
    set_template_paused(db, template=series, current_user=user, paused=True)
    set_template_paused(db, template=series, current_user=user, paused=False)
    assert snapshot(instances_of(db, series, user)) == before
    assert series.recurring_pattern["paused"] is False


# ---------------------- Delete ----------------------


def test_delete_template_keeps_past_as_standalone(db, user, series):
    template_id = series.id
    delete_recurring_template(db, template=series, current_user=user, delete_all_instances=False, now_utc=NOW)

    assert get_task(db, task_id=template_id) is None
    remaining = db.query(Task).filter(Task.user_id == user.id).order_by(Task.due_date_utc).all()
    assert [t.due_date_utc.day for t in remaining] == [4, 5]
    assert all(t.parent_template_id is None and not t.is_recurring for t in remaining)
    assert remaining[0].completed is True


def test_delete_template_with_all_instances(db, user, series):
    delete_recurring_template(db, template=series, current_user=user, delete_all_instances=True, now_utc=NOW)
    assert db.query(Task).filter(Task.user_id == user.id).count() == 0


def test_delete_template_keeps_completed_future_instance(db, user, series):
    early = instances_of(db, series, user)[3]
    update_task(db, task=early, current_user=user, now_utc=NOW, completed=True)

    delete_recurring_template(db, template=series, current_user=user, delete_all_instances=False, now_utc=NOW)

    remaining = db.query(Task).filter(Task.user_id == user.id).order_by(Task.due_date_utc).all()
    assert [t.due_date_utc.day for t in remaining] == [4, 5, 7]
    kept = get_task(db, task_id=early.id)
    assert kept.completed is True
    assert kept.parent_template_id is None and not kept.is_recurring


def test_delete_template_of_another_user_is_refused(db, user, other_user, series):
    with pytest.raises(TemplateNotFoundError):
        delete_recurring_template(
            db, template=series, current_user=other_user, delete_all_instances=True, now_utc=NOW
        )
    assert len(instances_of(db, series, user)) == 5


# ---------------------- Generate more / extend ----------------------


def test_generate_more_continues_after_last_instance(db, user, series):
    created = generate_more_instances(db, template=series, current_user=user, now_utc=NOW, count=3)
    assert [i.due_date_utc for i in created] == [
        datetime(2026, 1, 9, 9, 0),
        datetime(2026, 1, 10, 9, 0),
        datetime(2026, 1, 11, 9, 0),
    ]


def test_generate_more_default_count_and_paused(db, user, series):
    set_template_paused(db, template=series, current_user=user, paused=True)
    created = generate_more_instances(db, template=series, current_user=user, now_utc=NOW)
    assert len(created) == get_settings().recurrence.generate_more_default


def test_generate_more_rejects_bad_input(db, user, series):
    with pytest.raises(ValueError):
        generate_more_instances(db, template=series, current_user=user, now_utc=NOW, count=0)

    undated = make_template(db, user, {"type": "daily"}, None)
    with pytest.raises(ValueError, match="Invalid recurring pattern"):
        generate_more_instances(db, template=undated, current_user=user, now_utc=NOW, count=1)


def test_extend_active_templates_tops_up_future(db, user):
    resumed = make_template(db, user, {"type": "daily", "paused": True}, utc(2026, 1, 3, 9, 0))
    set_template_paused(db, template=resumed, current_user=user, paused=False)
    paused = make_template(db, user, {"type": "daily", "paused": True}, utc(2026, 1, 6, 9, 0))

    # Jan 4 and Jan 5 09:00 are already due at NOW and are skipped.
    assert extend_active_templates(db, now_utc=NOW, min_future=5) == 5
    assert [i.due_date_utc.day for i in instances_of(db, resumed, user)] == [6, 7, 8, 9, 10]
    assert instances_of(db, paused, user) == []

    assert extend_active_templates(db, now_utc=NOW, min_future=5) == 0


def test_extend_after_long_pause_creates_only_future_instances(db, user):
    t = make_template(db, user, {"type": "daily", "paused": True}, utc(2026, 1, 3, 9, 0))
    generate_more_instances(db, template=t, current_user=user, now_utc=NOW, count=2)
    set_template_paused(db, template=t, current_user=user, paused=False)

    later = NOW + timedelta(days=90)
    assert extend_active_templates(db, now_utc=later, min_future=10) == 10

    future, past = partition_instances(instances_of(db, t, user), now_utc=later)
    assert len(future) == 10
    assert [i.due_date_utc.day for i in past] == [4, 5]
    assert future[0].due_date_utc == datetime(2026, 4, 6, 9, 0)

    # A second run at the same time finds the series topped up.
    assert extend_active_templates(db, now_utc=later, min_future=10) == 0


def test_extend_never_exceeds_max_occurrences(db, user):
    full = make_template(db, user, {"type": "daily", "max_occurrences": 3}, utc(2026, 1, 6, 9, 0))
    partial = make_template(db, user, {"type": "daily", "max_occurrences": 4, "paused": True}, utc(2026, 1, 6, 9, 0))
    generate_more_instances(db, template=partial, current_user=user, now_utc=NOW, count=1)
    set_template_paused(db, template=partial, current_user=user, paused=False)

    assert extend_active_templates(db, now_utc=NOW, min_future=10) == 3
    assert len(instances_of(db, full, user)) == 3
    assert len(instances_of(db, partial, user)) == 4
