from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from duework.models import WorkItemDefinition, WorkItemPatch
from duework.work_items import (
    InMemoryWorkItemRepository,
    OwnerRef,
    TerminalStateError,
    WorkItemNotFoundError,
    WorkItemValidationError,
    create_work_item_repository,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
EVENT = OwnerRef(kind="event_reminder", owner_id="event-100")
OTHER_EVENT = OwnerRef(kind="event_reminder", owner_id="event-200")


def _definition(**overrides) -> WorkItemDefinition:
    values = {
        "timing_type": "relative",
        "relative_minutes_before": 60,
        "recipients": {"email": "guest@example.com", "sms": "+1 555 555 0123"},
    }
    values.update(overrides)
    return WorkItemDefinition(**values)


def test_create_persists_a_pending_item(repository) -> None:
    record = repository.create(
        EVENT,
        _definition(message="  Bring your ticket  ", timezone="America/New_York"),
        actor="planner-1",
        now=NOW,
    )

    assert record.lifecycle_state == "pending"
    assert record.attempt_count == 0
    assert record.claimed_at is None
    assert record.attempted_at is None
    assert record.message == "Bring your ticket"
    assert record.channels == frozenset({"email", "sms"})
    assert record.timezone == "America/New_York"
    assert record.created_by == "planner-1"

    stored = repository.get(EVENT, record.work_item_id)
    assert stored == record


def test_create_absolute_item_clears_relative_offset(repository) -> None:
    send_at = NOW + timedelta(hours=3)
    record = repository.create(
        EVENT,
        _definition(timing_type="absolute", relative_minutes_before=45, absolute_send_at=send_at),
        now=NOW,
    )

    assert record.timing_type == "absolute"
    assert record.relative_minutes_before is None
    assert record.absolute_send_at == send_at


def test_blank_message_is_stored_as_none(repository) -> None:
    record = repository.create(EVENT, _definition(message="   "), now=NOW)

    assert record.message is None


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"send_email": False, "send_sms": False}, "at least one delivery channel"),
        ({"message": "x" * 501}, "500 characters"),
        ({"timezone": "Mars/Olympus_Mons"}, "invalid timezone"),
        ({"timezone": "   "}, "timezone is required"),
        ({"relative_minutes_before": None}, "positive number of minutes"),
        ({"timing_type": "absolute", "relative_minutes_before": None}, "exact send datetime"),
        ({"timing_type": None}, "timing type is required"),
    ],
)
def test_create_rejects_invalid_definitions_without_writing(repository, overrides, message) -> None:
    with pytest.raises(WorkItemValidationError, match=message):
        repository.create(EVENT, _definition(**overrides), now=NOW)

    assert repository.list_for_owner(EVENT) == []


def test_message_of_exactly_max_length_is_accepted(repository) -> None:
    record = repository.create(EVENT, _definition(message="y" * 500), now=NOW)

    assert record.message is not None
    assert len(record.message) == 500


def test_update_merges_patch_over_current_values(repository) -> None:
    record = repository.create(EVENT, _definition(message="first"), now=NOW)

    updated = repository.update(
        EVENT,
        record.work_item_id,
        WorkItemPatch(timing_type="absolute", absolute_send_at=NOW + timedelta(hours=1), send_sms=False),
        actor="editor",
        now=NOW + timedelta(minutes=5),
    )

    assert updated.timing_type == "absolute"
    assert updated.relative_minutes_before is None
    assert updated.absolute_send_at == NOW + timedelta(hours=1)
    assert updated.channels == frozenset({"email"})
    assert updated.message == "first"
    assert updated.modified_by == "editor"
    assert updated.updated_at == NOW + timedelta(minutes=5)
    assert repository.get(EVENT, record.work_item_id) == updated


def test_update_rejecting_patch_leaves_item_unchanged(repository) -> None:
    record = repository.create(EVENT, _definition(send_sms=False), now=NOW)

    with pytest.raises(WorkItemValidationError, match="at least one delivery channel"):
        repository.update(EVENT, record.work_item_id, WorkItemPatch(send_email=False), now=NOW)

    assert repository.get(EVENT, record.work_item_id) == record


def test_update_active_flag_cancels_and_reactivates(repository) -> None:
    record = repository.create(EVENT, _definition(), now=NOW)

    cancelled = repository.update(EVENT, record.work_item_id, WorkItemPatch(active=False), now=NOW)
    assert cancelled.lifecycle_state == "cancelled"
    assert cancelled.attempt_status == "cancelled"

    reactivated = repository.update(EVENT, record.work_item_id, WorkItemPatch(active=True), now=NOW)
    assert reactivated.lifecycle_state == "pending"
    assert reactivated.attempt_status is None


def test_attempted_item_cannot_be_updated_or_cancelled(repository) -> None:
    record = repository.create(EVENT, _definition(), now=NOW)
    repository.record_attempt(record.work_item_id, "sent", {"channels": {}}, now=NOW)

    with pytest.raises(TerminalStateError, match="cannot be edited"):
        repository.update(EVENT, record.work_item_id, WorkItemPatch(message="late edit"), now=NOW)
    with pytest.raises(TerminalStateError, match="cannot be cancelled"):
        repository.cancel(EVENT, record.work_item_id, now=NOW)

    stored = repository.get(EVENT, record.work_item_id)
    assert stored.lifecycle_state == "attempted"
    assert stored.attempt_status == "sent"


def test_cancel_is_idempotent(repository) -> None:
    record = repository.create(EVENT, _definition(), now=NOW)

    first = repository.cancel(EVENT, record.work_item_id, actor="ops", now=NOW)
    second = repository.cancel(EVENT, record.work_item_id, actor="ops", now=NOW)

    assert first.lifecycle_state == "cancelled"
    assert second.lifecycle_state == "cancelled"
    assert second.attempt_status == "cancelled"
    assert second.attempted_at is None


def test_operations_are_scoped_to_owner(repository) -> None:
    record = repository.create(EVENT, _definition(), now=NOW)

    with pytest.raises(WorkItemNotFoundError):
        repository.get(OTHER_EVENT, record.work_item_id)
    with pytest.raises(WorkItemNotFoundError):
        repository.cancel(OTHER_EVENT, record.work_item_id, now=NOW)
    with pytest.raises(WorkItemNotFoundError):
        repository.update(OTHER_EVENT, record.work_item_id, WorkItemPatch(message="hi"), now=NOW)

    assert repository.list_for_owner(OTHER_EVENT) == []
    assert [item.work_item_id for item in repository.list_for_owner(EVENT)] == [record.work_item_id]


def test_list_for_owner_orders_by_creation(repository) -> None:
    first = repository.create(EVENT, _definition(relative_minutes_before=10), now=NOW)
    second = repository.create(EVENT, _definition(relative_minutes_before=20), now=NOW + timedelta(seconds=1))

    assert [item.work_item_id for item in repository.list_for_owner(EVENT)] == [
        first.work_item_id,
        second.work_item_id,
    ]


def test_anchor_upsert_round_trip(repository) -> None:
    assert repository.get_anchor(EVENT) is None

    repository.upsert_anchor(EVENT, anchor_at=NOW + timedelta(days=1), status="confirmed", now=NOW)
    repository.upsert_anchor(EVENT, anchor_at=NOW + timedelta(days=2), status="tentative", now=NOW)

    anchor = repository.get_anchor(EVENT)
    assert anchor is not None
    assert anchor.anchor_at == NOW + timedelta(days=2)
    assert anchor.status == "tentative"


def test_reset_clears_items_and_anchors(repository) -> None:
    repository.create(EVENT, _definition(), now=NOW)
    repository.upsert_anchor(EVENT, anchor_at=NOW, status="confirmed", now=NOW)

    repository.reset()

    assert repository.list_for_owner(EVENT) == []
    assert repository.get_anchor(EVENT) is None


def test_factory_selects_backend(sqlite_url) -> None:
    assert isinstance(create_work_item_repository(backend="inmemory", database_url=""), InMemoryWorkItemRepository)
    sql_repo = create_work_item_repository(backend="postgres", database_url=sqlite_url)
    assert sql_repo.list_attempted() == []

    with pytest.raises(RuntimeError, match="unsupported WORK_STORE_BACKEND"):
        create_work_item_repository(backend="redis", database_url="")
    with pytest.raises(RuntimeError, match="DATABASE_URL is required"):
        create_work_item_repository(backend="postgres", database_url="")
