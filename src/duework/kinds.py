from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import and_, true

from .due_time import coerce_utc


class UnknownWorkKindError(KeyError):
    """Raised when a work item references a kind that is not registered."""


@dataclass(frozen=True)
class WorkKind:
    """Anchor-specific parameters of the due-work engine.

    Both call sites share the claim/reclaim/record machinery and differ only
    in which anchor states keep their items actionable.
    """

    name: str
    blocked_statuses: frozenset[str] = field(default_factory=frozenset)
    allowed_statuses: frozenset[str] | None = None
    requires_future_anchor: bool = False
    default_message: str = ""

    def is_eligible(self, status: str, anchor_at: datetime, now: datetime) -> bool:
        if status in self.blocked_statuses:
            return False
        if self.allowed_statuses is not None and status not in self.allowed_statuses:
            return False
        if self.requires_future_anchor and coerce_utc(anchor_at) <= coerce_utc(now):
            return False
        return True

    def sql_filter(self, status_column, anchor_at_column, now: datetime):
        clauses = []
        if self.blocked_statuses:
            clauses.append(status_column.not_in(sorted(self.blocked_statuses)))
        if self.allowed_statuses is not None:
            clauses.append(status_column.in_(sorted(self.allowed_statuses)))
        if self.requires_future_anchor:
            clauses.append(anchor_at_column > now)
        if not clauses:
            return true()
        return and_(*clauses)


EVENT_REMINDER = WorkKind(
    name="event_reminder",
    blocked_statuses=frozenset({"cancelled", "completed"}),
    requires_future_anchor=True,
    default_message="Reminder: your event is coming up soon.",
)

FOLLOW_UP = WorkKind(
    name="follow_up",
    allowed_statuses=frozenset({"scheduled"}),
    default_message="Reminder: you have a follow-up scheduled.",
)

_KINDS: dict[str, WorkKind] = {kind.name: kind for kind in (EVENT_REMINDER, FOLLOW_UP)}


def get_kind(name: str) -> WorkKind:
    try:
        return _KINDS[name]
    except KeyError as exc:
        raise UnknownWorkKindError(name) from exc


def registered_kinds() -> tuple[WorkKind, ...]:
    return tuple(_KINDS.values())
