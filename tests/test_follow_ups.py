from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

import pytest

from duework.follow_ups import FollowUpNotificationPlanner, follow_up_owner
from duework.models import FollowUpSchedule
from duework.work_items import WorkItemNotFoundError

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _schedule(**overrides) -> FollowUpSchedule:
    values = {
        "follow_up_id": "fu-1",
        "scheduled_date": date(2026, 3, 5),
        "scheduled_time": time(15, 0),
        "frequency": "weekly",
        "reminder_minutes_before": 30,
        "recipient_email": "owner@example.com",
    }
    values.update(overrides)
    return FollowUpSchedule(**values)


def test_schedule_creates_anchor_and_email_notification(repository) -> None:
    planner = FollowUpNotificationPlanner(repository)

    (record,) = planner.schedule(_schedule(), actor="crm", now=NOW)

    anchor = repository.get_anchor(follow_up_owner("fu-1"))
    assert anchor is not None
    assert anchor.anchor_at == datetime(2026, 3, 5, 15, 0, tzinfo=timezone.utc)
    assert anchor.status == "scheduled"
    assert record.owner == follow_up_owner("fu-1")
    assert record.timing_type == "relative"
    assert record.relative_minutes_before == 30
    assert record.channels == frozenset({"email"})
    assert record.recipients == {"email": "owner@example.com"}


def test_schedule_without_reminder_minutes_creates_nothing(repository) -> None:
    planner = FollowUpNotificationPlanner(repository)

    assert planner.schedule(_schedule(reminder_minutes_before=None), now=NOW) == []
    assert repository.list_for_owner(follow_up_owner("fu-1")) == []


def test_follow_up_without_time_is_anchored_at_end_of_day(repository) -> None:
    planner = FollowUpNotificationPlanner(repository)

    planner.schedule(_schedule(scheduled_time=None), now=NOW)

    anchor = repository.get_anchor(follow_up_owner("fu-1"))
    assert anchor is not None
    assert anchor.anchor_at == datetime(2026, 3, 5, 23, 59, 59, tzinfo=timezone.utc)


def test_rescheduling_replaces_pending_notification(repository) -> None:
    planner = FollowUpNotificationPlanner(repository)
    (first,) = planner.schedule(_schedule(), now=NOW)

    (second,) = planner.schedule(_schedule(reminder_minutes_before=120), now=NOW)

    owner = follow_up_owner("fu-1")
    assert repository.get(owner, first.work_item_id).lifecycle_state == "cancelled"
    assert repository.get(owner, second.work_item_id).relative_minutes_before == 120


def test_complete_schedules_next_weekly_occurrence(repository) -> None:
    planner = FollowUpNotificationPlanner(repository)
    (current_item,) = planner.schedule(_schedule(), now=NOW)

    next_schedule = planner.complete(_schedule(), next_follow_up_id="fu-2", now=NOW)

    assert next_schedule is not None
    assert next_schedule.follow_up_id == "fu-2"
    assert next_schedule.scheduled_date == date(2026, 3, 12)
    assert next_schedule.status == "scheduled"

    old_owner = follow_up_owner("fu-1")
    assert repository.get_anchor(old_owner).status == "completed"
    assert repository.get(old_owner, current_item.work_item_id).lifecycle_state == "cancelled"
    (next_item,) = repository.list_for_owner(follow_up_owner("fu-2"))
    assert next_item.lifecycle_state == "pending"


def test_complete_respects_frequency_end_date(repository) -> None:
    planner = FollowUpNotificationPlanner(repository)
    planner.schedule(_schedule(frequency_end_date=date(2026, 3, 10)), now=NOW)

    result = planner.complete(_schedule(frequency_end_date=date(2026, 3, 10)), next_follow_up_id="fu-2", now=NOW)

    assert result is None
    assert repository.get_anchor(follow_up_owner("fu-2")) is None


def test_complete_one_time_follow_up_has_no_successor(repository) -> None:
    planner = FollowUpNotificationPlanner(repository)

    assert planner.complete(_schedule(frequency="once"), now=NOW) is None
    assert planner.complete(_schedule(), schedule_next=False, now=NOW) is None


def test_explicit_next_date_wins_over_frequency(repository) -> None:
    planner = FollowUpNotificationPlanner(repository)

    next_schedule = planner.complete(
        _schedule(frequency="once"),
        next_scheduled_date=date(2026, 4, 1),
        now=NOW,
    )

    assert next_schedule is not None
    assert next_schedule.scheduled_date == date(2026, 4, 1)
    assert next_schedule.follow_up_id == "fu-1-2026-04-01"


def test_explicit_next_date_is_scheduled_even_without_schedule_next(repository) -> None:
    planner = FollowUpNotificationPlanner(repository)

    next_schedule = planner.complete(
        _schedule(),
        next_follow_up_id="fu-2",
        next_scheduled_date=date(2026, 4, 1),
        schedule_next=False,
        now=NOW,
    )

    assert next_schedule is not None
    assert next_schedule.scheduled_date == date(2026, 4, 1)
    anchor = repository.get_anchor(follow_up_owner("fu-2"))
    assert anchor is not None
    assert anchor.status == "scheduled"
    (next_item,) = repository.list_for_owner(follow_up_owner("fu-2"))
    assert next_item.lifecycle_state == "pending"


def test_explicit_next_date_past_end_date_is_dropped(repository) -> None:
    planner = FollowUpNotificationPlanner(repository)

    result = planner.complete(
        _schedule(frequency_end_date=date(2026, 3, 20)),
        next_follow_up_id="fu-2",
        next_scheduled_date=date(2026, 4, 1),
        schedule_next=False,
        now=NOW,
    )

    assert result is None
    assert repository.get_anchor(follow_up_owner("fu-2")) is None


def test_cancel_clears_pending_notification(repository) -> None:
    planner = FollowUpNotificationPlanner(repository)
    (record,) = planner.schedule(_schedule(), now=NOW)

    planner.cancel("fu-1", actor="crm", now=NOW)

    owner = follow_up_owner("fu-1")
    assert repository.get_anchor(owner).status == "cancelled"
    assert repository.get(owner, record.work_item_id).lifecycle_state == "cancelled"


def test_cancel_unknown_follow_up_raises(repository) -> None:
    with pytest.raises(WorkItemNotFoundError):
        FollowUpNotificationPlanner(repository).cancel("missing", now=NOW)


def test_overdue_follow_up_notification_is_still_claimed(repository) -> None:
    planner = FollowUpNotificationPlanner(repository)
    (record,) = planner.schedule(_schedule(scheduled_date=date(2026, 2, 27)), now=NOW)

    batch = repository.claim_due(10, now=NOW)

    assert [claim.item.work_item_id for claim in batch] == [record.work_item_id]
    assert batch[0].due_at == datetime(2026, 2, 27, 15, 0, tzinfo=timezone.utc) - timedelta(minutes=30)
