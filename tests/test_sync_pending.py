from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest

from duework.models import WorkItemDefinition
from duework.work_items import OwnerRef, WorkItemValidationError

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
EVENT = OwnerRef(kind="event_reminder", owner_id="event-100")
OTHER_EVENT = OwnerRef(kind="event_reminder", owner_id="event-200")


def _relative(minutes: int, **overrides) -> WorkItemDefinition:
    values = {
        "timing_type": "relative",
        "relative_minutes_before": minutes,
        "recipients": {"email": "guest@example.com"},
    }
    values.update(overrides)
    return WorkItemDefinition(**values)


def _states(repo, owner) -> dict[str, str]:
    return {item.work_item_id: item.lifecycle_state for item in repo.list_for_owner(owner)}


def test_sync_replaces_the_pending_set(repository) -> None:
    old_a = repository.create(EVENT, _relative(30), now=NOW)
    old_b = repository.create(EVENT, _relative(60), now=NOW)

    created = repository.sync_pending(EVENT, [_relative(15), _relative(1440)], actor="planner", now=NOW)

    assert len(created) == 2
    states = _states(repository, EVENT)
    assert states[old_a.work_item_id] == "cancelled"
    assert states[old_b.work_item_id] == "cancelled"
    assert [states[record.work_item_id] for record in created] == ["pending", "pending"]
    assert {record.relative_minutes_before for record in created} == {15, 1440}
    assert all(record.created_by == "planner" for record in created)


def test_sync_leaves_attempted_items_and_other_owners_alone(repository) -> None:
    attempted = repository.create(EVENT, _relative(30), now=NOW)
    repository.record_attempt(attempted.work_item_id, "sent", {"channels": {}}, now=NOW)
    foreign = repository.create(OTHER_EVENT, _relative(30), now=NOW)

    repository.sync_pending(EVENT, [_relative(10)], now=NOW)

    stored = repository.get(EVENT, attempted.work_item_id)
    assert stored.lifecycle_state == "attempted"
    assert stored.attempt_status == "sent"
    assert repository.get(OTHER_EVENT, foreign.work_item_id).lifecycle_state == "pending"


def test_sync_with_invalid_definition_changes_nothing(repository) -> None:
    existing = repository.create(EVENT, _relative(30), now=NOW)

    with pytest.raises(WorkItemValidationError, match="at least one delivery channel"):
        repository.sync_pending(
            EVENT,
            [_relative(10), _relative(20, send_email=False, send_sms=False)],
            now=NOW,
        )

    assert _states(repository, EVENT) == {existing.work_item_id: "pending"}


def test_sync_with_empty_set_cancels_everything_open(repository) -> None:
    first = repository.create(EVENT, _relative(30), now=NOW)
    second = repository.create(EVENT, _relative(45), now=NOW)

    assert repository.sync_pending(EVENT, [], now=NOW) == []

    assert _states(repository, EVENT) == {
        first.work_item_id: "cancelled",
        second.work_item_id: "cancelled",
    }


def test_sync_cancels_in_flight_claims_and_logs_them(repository, caplog) -> None:
    repository.upsert_anchor(EVENT, anchor_at=NOW + timedelta(hours=1), status="confirmed", now=NOW)
    in_flight = repository.create(EVENT, _relative(120), now=NOW)
    assert len(repository.claim_due(5, now=NOW)) == 1

    with caplog.at_level(logging.WARNING, logger="duework.work_items"):
        repository.sync_pending(EVENT, [_relative(5)], now=NOW)

    assert repository.get(EVENT, in_flight.work_item_id).lifecycle_state == "cancelled"
    assert in_flight.work_item_id in caplog.text
    assert repository.claim_due(5, now=NOW + timedelta(minutes=30)) == []


def test_items_cancelled_by_sync_are_not_claimed(repository) -> None:
    repository.upsert_anchor(EVENT, anchor_at=NOW + timedelta(hours=1), status="confirmed", now=NOW)
    repository.create(EVENT, _relative(120), now=NOW)

    (replacement,) = repository.sync_pending(EVENT, [_relative(90)], now=NOW)
    batch = repository.claim_due(10, now=NOW)

    assert [claim.item.work_item_id for claim in batch] == [replacement.work_item_id]
