from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator

TimingType = Literal["relative", "absolute"]
Channel = Literal["email", "sms"]
LifecycleState = Literal["pending", "claimed", "attempted", "cancelled"]
AttemptStatus = Literal["sent", "failed", "skipped", "cancelled"]
Frequency = Literal["once", "daily", "weekly", "biweekly", "monthly"]
FollowUpStatus = Literal["scheduled", "completed", "cancelled"]

ALL_CHANNELS: tuple[Channel, ...] = ("email", "sms")


def _normalize_instant(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_recipients(value: dict[str, str] | None) -> dict[str, str] | None:
    if value is None:
        return None
    normalized: dict[str, str] = {}
    for raw_channel, raw_recipient in value.items():
        channel = str(raw_channel).strip().lower()
        recipient = str(raw_recipient).strip()
        if channel not in ALL_CHANNELS:
            raise ValueError(f"unsupported channel: {raw_channel}")
        if recipient:
            normalized[channel] = recipient
    return normalized


class WorkItemDefinition(BaseModel):
    """Caller-supplied shape of a reminder or notification.

    Cross-field rules (timing combination, channel count, message length,
    timezone) are enforced by the store so that create and update share them.
    """

    timing_type: TimingType | None = None
    relative_minutes_before: int | None = None
    absolute_send_at: datetime | None = None
    send_email: bool = True
    send_sms: bool = True
    message: str | None = None
    timezone: str = "UTC"
    recipients: dict[str, str] = Field(default_factory=dict)

    @field_validator("absolute_send_at")
    @classmethod
    def _normalize_send_at(cls, value: datetime | None) -> datetime | None:
        return _normalize_instant(value)

    @field_validator("recipients")
    @classmethod
    def _normalize_recipient_map(cls, value: dict[str, str]) -> dict[str, str]:
        return _normalize_recipients(value) or {}


class WorkItemPatch(BaseModel):
    timing_type: TimingType | None = None
    relative_minutes_before: int | None = None
    absolute_send_at: datetime | None = None
    send_email: bool | None = None
    send_sms: bool | None = None
    message: str | None = None
    timezone: str | None = None
    recipients: dict[str, str] | None = None
    active: bool | None = None

    @field_validator("absolute_send_at")
    @classmethod
    def _normalize_send_at(cls, value: datetime | None) -> datetime | None:
        return _normalize_instant(value)

    @field_validator("recipients")
    @classmethod
    def _normalize_recipient_map(cls, value: dict[str, str] | None) -> dict[str, str] | None:
        return _normalize_recipients(value)


class SyncWorkItemsRequest(BaseModel):
    items: list[WorkItemDefinition] = Field(default_factory=list, max_length=50)


class AnchorUpsertRequest(BaseModel):
    anchor_at: datetime
    status: str = Field(min_length=1, max_length=32)

    @field_validator("anchor_at")
    @classmethod
    def _normalize_anchor_at(cls, value: datetime) -> datetime:
        return _normalize_instant(value)  # type: ignore[return-value]

    @field_validator("status")
    @classmethod
    def _normalize_status(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("status cannot be blank")
        return normalized


class WorkItemResponse(BaseModel):
    work_item_id: str
    kind: str
    owner_id: str
    timing_type: TimingType
    relative_minutes_before: int | None = None
    absolute_send_at: datetime | None = None
    channels: list[Channel]
    message: str | None = None
    timezone: str
    lifecycle_state: LifecycleState
    claimed_at: datetime | None = None
    attempt_count: int
    attempted_at: datetime | None = None
    attempt_status: AttemptStatus | None = None
    attempt_summary: dict[str, object] | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime
    created_by: str | None = None
    modified_by: str | None = None


class WorkItemListResponse(BaseModel):
    items: list[WorkItemResponse]


class PollRunRequest(BaseModel):
    batch_size: int | None = Field(default=None, ge=1, le=500)


class PollRunResponse(BaseModel):
    claimed_count: int
    sent_count: int
    failed_count: int
    skipped_count: int
    work_item_ids: list[str]


class FollowUpSchedule(BaseModel):
    follow_up_id: str = Field(min_length=1, max_length=128)
    scheduled_date: date
    scheduled_time: time | None = None
    frequency: Frequency = "once"
    frequency_end_date: date | None = None
    reminder_minutes_before: int | None = Field(default=None, ge=1)
    status: FollowUpStatus = "scheduled"
    recipient_email: str | None = None
    timezone: str = "UTC"
    message: str | None = None

    @field_validator("follow_up_id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("follow_up_id cannot be blank")
        return normalized

    @field_validator("recipient_email")
    @classmethod
    def _normalize_email(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class FollowUpCompleteRequest(BaseModel):
    schedule: FollowUpSchedule
    next_follow_up_id: str | None = Field(default=None, min_length=1, max_length=128)
    next_scheduled_date: date | None = None
    schedule_next: bool = True


class FollowUpCompleteResponse(BaseModel):
    follow_up_id: str
    next_schedule: FollowUpSchedule | None = None
