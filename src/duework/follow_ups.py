from __future__ import annotations

import logging
from datetime import date, datetime

from .due_time import combine_date_time, next_occurrence_date
from .kinds import FOLLOW_UP
from .models import FollowUpSchedule, WorkItemDefinition
from .work_items import OwnerRef, WorkItemNotFoundError, WorkItemRecord, WorkItemRepository

logger = logging.getLogger(__name__)


def follow_up_owner(follow_up_id: str) -> OwnerRef:
    return OwnerRef(kind=FOLLOW_UP.name, owner_id=follow_up_id)


def _notification_definition(schedule: FollowUpSchedule) -> WorkItemDefinition:
    recipients = {"email": schedule.recipient_email} if schedule.recipient_email else {}
    return WorkItemDefinition(
        timing_type="relative",
        relative_minutes_before=schedule.reminder_minutes_before,
        send_email=True,
        send_sms=False,
        message=schedule.message,
        timezone=schedule.timezone,
        recipients=recipients,
    )


class FollowUpNotificationPlanner:
    """Keeps each follow-up's anchor and pending notification in step with its schedule."""

    def __init__(self, repository: WorkItemRepository) -> None:
        self._repository = repository

    def schedule(
        self,
        schedule: FollowUpSchedule,
        *,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> list[WorkItemRecord]:
        owner = follow_up_owner(schedule.follow_up_id)
        self._repository.upsert_anchor(
            owner,
            anchor_at=combine_date_time(schedule.scheduled_date, schedule.scheduled_time),
            status=schedule.status,
            now=now,
        )
        definitions: list[WorkItemDefinition] = []
        if schedule.status == "scheduled" and schedule.reminder_minutes_before:
            definitions.append(_notification_definition(schedule))
        return self._repository.sync_pending(owner, definitions, actor=actor, now=now)

    def cancel(
        self,
        follow_up_id: str,
        *,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> None:
        owner = follow_up_owner(follow_up_id)
        anchor = self._repository.get_anchor(owner)
        if anchor is None:
            raise WorkItemNotFoundError(follow_up_id)
        self._repository.upsert_anchor(owner, anchor_at=anchor.anchor_at, status="cancelled", now=now)
        self._repository.sync_pending(owner, [], actor=actor, now=now)

    def complete(
        self,
        schedule: FollowUpSchedule,
        *,
        actor: str | None = None,
        next_follow_up_id: str | None = None,
        next_scheduled_date: date | None = None,
        schedule_next: bool = True,
        now: datetime | None = None,
    ) -> FollowUpSchedule | None:
        owner = follow_up_owner(schedule.follow_up_id)
        self._repository.upsert_anchor(
            owner,
            anchor_at=combine_date_time(schedule.scheduled_date, schedule.scheduled_time),
            status="completed",
            now=now,
        )
        self._repository.sync_pending(owner, [], actor=actor, now=now)
        if not schedule_next and next_scheduled_date is None:
            return None

        next_date = next_scheduled_date or next_occurrence_date(schedule.scheduled_date, schedule.frequency)
        if next_date is None:
            return None
        if schedule.frequency_end_date is not None and next_date > schedule.frequency_end_date:
            logger.info(
                "follow-up %s reached its end date %s; no next occurrence",
                schedule.follow_up_id,
                schedule.frequency_end_date.isoformat(),
            )
            return None

        next_schedule = schedule.model_copy(
            update={
                "follow_up_id": next_follow_up_id or f"{schedule.follow_up_id}-{next_date.isoformat()}",
                "scheduled_date": next_date,
                "status": "scheduled",
            }
        )
        self.schedule(next_schedule, actor=actor, now=now)
        return next_schedule
