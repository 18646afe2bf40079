from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Union

from .models import Frequency, TimingType

END_OF_DAY = time(23, 59, 59)


class TimingRuleError(ValueError):
    """Raised when a timing rule cannot produce a due timestamp."""


def coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class RelativeTiming:
    offset_minutes: int

    @property
    def timing_type(self) -> TimingType:
        return "relative"


@dataclass(frozen=True)
class AbsoluteTiming:
    at: datetime

    @property
    def timing_type(self) -> TimingType:
        return "absolute"


TimingRule = Union[RelativeTiming, AbsoluteTiming]


def _parse_instant(value: datetime | str | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return coerce_utc(value)
    raw = str(value).strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise TimingRuleError("absolute send time must be a valid datetime") from exc
    return coerce_utc(parsed)


def build_timing_rule(
    timing_type: str | None,
    relative_minutes_before: int | None,
    absolute_send_at: datetime | str | None,
) -> TimingRule:
    if not timing_type:
        raise TimingRuleError("timing type is required")
    if timing_type == "relative":
        if relative_minutes_before is None or relative_minutes_before <= 0:
            raise TimingRuleError("relative timing requires a positive number of minutes")
        return RelativeTiming(offset_minutes=int(relative_minutes_before))
    if timing_type == "absolute":
        at = _parse_instant(absolute_send_at)
        if at is None:
            raise TimingRuleError("absolute timing requires an exact send datetime")
        return AbsoluteTiming(at=at)
    raise TimingRuleError(f"unsupported timing type: {timing_type}")


def compute_due_at(rule: TimingRule, anchor_at: datetime | None) -> datetime:
    """Return the instant a work item becomes due.

    Absolute rules ignore the anchor entirely. Relative rules count back from
    the anchor's current time, so moving an event moves its reminders.
    """
    if isinstance(rule, AbsoluteTiming):
        return coerce_utc(rule.at)
    if anchor_at is None:
        raise TimingRuleError("relative timing requires an anchor time")
    return coerce_utc(anchor_at) - timedelta(minutes=rule.offset_minutes)


def _add_months(value: date, months: int) -> date:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_occurrence_date(occurrence: date, frequency: Frequency) -> date | None:
    if frequency == "once":
        return None
    if frequency == "daily":
        return occurrence + timedelta(days=1)
    if frequency == "weekly":
        return occurrence + timedelta(days=7)
    if frequency == "biweekly":
        return occurrence + timedelta(days=14)
    if frequency == "monthly":
        return _add_months(occurrence, 1)
    raise TimingRuleError(f"unsupported frequency: {frequency}")


def combine_date_time(day: date, at: time | None = None) -> datetime:
    # Follow-ups without a time of day are due by the end of that day.
    return datetime.combine(day, at or END_OF_DAY, tzinfo=timezone.utc)
