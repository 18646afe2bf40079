from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Iterable, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Integer,
    Interval,
    String,
    Text,
    and_,
    case,
    create_engine,
    func,
    literal_column,
    or_,
    select,
    type_coerce,
    update,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .due_time import TimingRule, TimingRuleError, build_timing_rule, coerce_utc, compute_due_at
from .kinds import get_kind, registered_kinds
from .models import ALL_CHANNELS, WorkItemDefinition, WorkItemPatch

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 500
DEFAULT_STALE_AFTER = timedelta(minutes=10)
ATTEMPT_STATUSES = frozenset({"sent", "failed", "skipped", "cancelled"})
OPEN_STATES = ("pending", "claimed")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _resolve_now(now: datetime | None) -> datetime:
    return coerce_utc(now) if now is not None else _now_utc()


def _dump_json(payload: dict[str, object]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


class WorkItemValidationError(ValueError):
    """Raised when a work item definition fails validation. Nothing is written."""


class TerminalStateError(RuntimeError):
    """Raised when a caller tries to change a work item that was already attempted."""


class WorkItemNotFoundError(KeyError):
    """Raised when a work item id does not exist under the given owner."""


@dataclass(frozen=True)
class OwnerRef:
    kind: str
    owner_id: str


@dataclass(frozen=True)
class AnchorRecord:
    owner: OwnerRef
    anchor_at: datetime
    status: str
    updated_at: datetime


@dataclass(frozen=True)
class WorkItemRecord:
    work_item_id: str
    owner: OwnerRef
    timing_type: str
    relative_minutes_before: int | None
    absolute_send_at: datetime | None
    channels: frozenset[str]
    message: str | None
    timezone: str
    recipients: dict[str, str]
    lifecycle_state: str
    claimed_at: datetime | None
    attempt_count: int
    attempted_at: datetime | None
    attempt_status: str | None
    attempt_summary: dict[str, object] | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime
    created_by: str | None
    modified_by: str | None

    @property
    def timing_rule(self) -> TimingRule:
        return build_timing_rule(self.timing_type, self.relative_minutes_before, self.absolute_send_at)


@dataclass(frozen=True)
class ClaimedWorkItem:
    item: WorkItemRecord
    due_at: datetime
    anchor_at: datetime
    anchor_status: str


@dataclass(frozen=True)
class NormalizedDefinition:
    timing_type: str
    relative_minutes_before: int | None
    absolute_send_at: datetime | None
    channels: frozenset[str]
    message: str | None
    timezone: str
    recipients: dict[str, str]


def _pick(value, fallback):
    return fallback if value is None else value


def normalize_definition(
    payload: WorkItemDefinition | WorkItemPatch,
    current: WorkItemRecord | None = None,
) -> NormalizedDefinition:
    """Merge ``payload`` over ``current`` and validate the result.

    Create and update go through the same rules: exactly one timing field
    survives for the chosen timing type, at least one channel is enabled, the
    message fits in 500 characters and the timezone names a real zone.
    """
    timing_type = _pick(payload.timing_type, current.timing_type if current else None)
    relative = _pick(payload.relative_minutes_before, current.relative_minutes_before if current else None)
    absolute = _pick(payload.absolute_send_at, current.absolute_send_at if current else None)
    try:
        rule = build_timing_rule(timing_type, relative, absolute)
    except TimingRuleError as exc:
        raise WorkItemValidationError(str(exc)) from exc

    send_email = _pick(payload.send_email, ("email" in current.channels) if current else True)
    send_sms = _pick(payload.send_sms, ("sms" in current.channels) if current else True)
    channels = frozenset(
        channel for channel, enabled in zip(ALL_CHANNELS, (send_email, send_sms)) if enabled
    )
    if not channels:
        raise WorkItemValidationError("at least one delivery channel must be enabled")

    raw_timezone = _pick(payload.timezone, current.timezone if current else "UTC")
    normalized_timezone = str(raw_timezone).strip()
    if not normalized_timezone:
        raise WorkItemValidationError("timezone is required")
    try:
        ZoneInfo(normalized_timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise WorkItemValidationError(f"invalid timezone: {normalized_timezone}") from exc

    raw_message = _pick(payload.message, current.message if current else None)
    message = raw_message.strip() if raw_message else None
    message = message or None
    if message is not None and len(message) > MAX_MESSAGE_LENGTH:
        raise WorkItemValidationError(f"message must be {MAX_MESSAGE_LENGTH} characters or less")

    recipients = _pick(payload.recipients, current.recipients if current else {})

    if rule.timing_type == "relative":
        return NormalizedDefinition(
            timing_type="relative",
            relative_minutes_before=rule.offset_minutes,  # type: ignore[union-attr]
            absolute_send_at=None,
            channels=channels,
            message=message,
            timezone=normalized_timezone,
            recipients=dict(recipients),
        )
    return NormalizedDefinition(
        timing_type="absolute",
        relative_minutes_before=None,
        absolute_send_at=rule.at,  # type: ignore[union-attr]
        channels=channels,
        message=message,
        timezone=normalized_timezone,
        recipients=dict(recipients),
    )


def _new_record(
    owner: OwnerRef,
    normalized: NormalizedDefinition,
    *,
    actor: str | None,
    now: datetime,
) -> WorkItemRecord:
    return WorkItemRecord(
        work_item_id=uuid.uuid4().hex,
        owner=owner,
        timing_type=normalized.timing_type,
        relative_minutes_before=normalized.relative_minutes_before,
        absolute_send_at=normalized.absolute_send_at,
        channels=normalized.channels,
        message=normalized.message,
        timezone=normalized.timezone,
        recipients=normalized.recipients,
        lifecycle_state="pending",
        claimed_at=None,
        attempt_count=0,
        attempted_at=None,
        attempt_status=None,
        attempt_summary=None,
        last_error=None,
        created_at=now,
        updated_at=now,
        created_by=actor,
        modified_by=actor,
    )


def _state_after_patch(current: WorkItemRecord, active: bool | None) -> tuple[str, str | None]:
    if active is False:
        return "cancelled", "cancelled"
    if active is True and current.lifecycle_state == "cancelled":
        return "pending", None
    return current.lifecycle_state, current.attempt_status


def _due_if_actionable(record: WorkItemRecord, anchor: AnchorRecord, now: datetime) -> datetime | None:
    kind = get_kind(record.owner.kind)
    if not kind.is_eligible(anchor.status, anchor.anchor_at, now):
        return None
    due_at = compute_due_at(record.timing_rule, anchor.anchor_at)
    if due_at > now:
        return None
    return due_at


def _is_claimable(record: WorkItemRecord, stale_cutoff: datetime) -> bool:
    if record.attempted_at is not None:
        return False
    if record.lifecycle_state == "pending":
        return True
    return (
        record.lifecycle_state == "claimed"
        and record.claimed_at is not None
        and record.claimed_at < stale_cutoff
    )


def _validate_attempt_status(status: str) -> None:
    if status not in ATTEMPT_STATUSES:
        raise WorkItemValidationError(f"unsupported attempt status: {status}")


def _log_reclaim(record: WorkItemRecord) -> None:
    logger.warning(
        "reclaiming stale work item %s (kind=%s, claimed_at=%s, attempt_count=%d)",
        record.work_item_id,
        record.owner.kind,
        record.claimed_at.isoformat() if record.claimed_at else None,
        record.attempt_count,
    )


class WorkItemRepository(Protocol):
    def reset(self) -> None: ...

    def upsert_anchor(
        self, owner: OwnerRef, *, anchor_at: datetime, status: str, now: datetime | None = None
    ) -> AnchorRecord: ...

    def get_anchor(self, owner: OwnerRef) -> AnchorRecord | None: ...

    def create(
        self,
        owner: OwnerRef,
        definition: WorkItemDefinition,
        *,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> WorkItemRecord: ...

    def update(
        self,
        owner: OwnerRef,
        work_item_id: str,
        patch: WorkItemPatch,
        *,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> WorkItemRecord: ...

    def cancel(
        self,
        owner: OwnerRef,
        work_item_id: str,
        *,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> WorkItemRecord: ...

    def get(self, owner: OwnerRef, work_item_id: str) -> WorkItemRecord: ...

    def list_for_owner(self, owner: OwnerRef) -> list[WorkItemRecord]: ...

    def list_attempted(self, *, limit: int = 50) -> list[WorkItemRecord]: ...

    def sync_pending(
        self,
        owner: OwnerRef,
        definitions: Iterable[WorkItemDefinition],
        *,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> list[WorkItemRecord]: ...

    def claim_due(self, max_batch_size: int, *, now: datetime | None = None) -> list[ClaimedWorkItem]: ...

    def record_attempt(
        self,
        work_item_id: str,
        status: str,
        summary: dict[str, object],
        *,
        error: str | None = None,
        now: datetime | None = None,
    ) -> None: ...


class InMemoryWorkItemRepository:
    """Process-local store; the lock plays the part of the database transaction."""

    def __init__(self, *, stale_after: timedelta = DEFAULT_STALE_AFTER) -> None:
        self._lock = Lock()
        self._stale_after = stale_after
        self._items: dict[str, WorkItemRecord] = {}
        self._anchors: dict[OwnerRef, AnchorRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._items.clear()
            self._anchors.clear()

    def upsert_anchor(
        self, owner: OwnerRef, *, anchor_at: datetime, status: str, now: datetime | None = None
    ) -> AnchorRecord:
        get_kind(owner.kind)
        record = AnchorRecord(
            owner=owner,
            anchor_at=coerce_utc(anchor_at),
            status=status,
            updated_at=_resolve_now(now),
        )
        with self._lock:
            self._anchors[owner] = record
        return record

    def get_anchor(self, owner: OwnerRef) -> AnchorRecord | None:
        with self._lock:
            return self._anchors.get(owner)

    def _get_scoped(self, owner: OwnerRef, work_item_id: str) -> WorkItemRecord:
        record = self._items.get(work_item_id)
        if record is None or record.owner != owner:
            raise WorkItemNotFoundError(work_item_id)
        return record

    def create(
        self,
        owner: OwnerRef,
        definition: WorkItemDefinition,
        *,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> WorkItemRecord:
        get_kind(owner.kind)
        normalized = normalize_definition(definition)
        record = _new_record(owner, normalized, actor=actor, now=_resolve_now(now))
        with self._lock:
            self._items[record.work_item_id] = record
        return record

    def update(
        self,
        owner: OwnerRef,
        work_item_id: str,
        patch: WorkItemPatch,
        *,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> WorkItemRecord:
        current_now = _resolve_now(now)
        with self._lock:
            current = self._get_scoped(owner, work_item_id)
            if current.attempted_at is not None:
                raise TerminalStateError("attempted work items cannot be edited")
            normalized = normalize_definition(patch, current)
            state, attempt_status = _state_after_patch(current, patch.active)
            updated = replace(
                current,
                timing_type=normalized.timing_type,
                relative_minutes_before=normalized.relative_minutes_before,
                absolute_send_at=normalized.absolute_send_at,
                channels=normalized.channels,
                message=normalized.message,
                timezone=normalized.timezone,
                recipients=normalized.recipients,
                lifecycle_state=state,
                attempt_status=attempt_status,
                modified_by=actor,
                updated_at=current_now,
            )
            self._items[work_item_id] = updated
            return updated

    def cancel(
        self,
        owner: OwnerRef,
        work_item_id: str,
        *,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> WorkItemRecord:
        current_now = _resolve_now(now)
        with self._lock:
            current = self._get_scoped(owner, work_item_id)
            if current.attempted_at is not None:
                raise TerminalStateError("attempted work items cannot be cancelled")
            updated = replace(
                current,
                lifecycle_state="cancelled",
                attempt_status="cancelled",
                modified_by=actor,
                updated_at=current_now,
            )
            self._items[work_item_id] = updated
            return updated

    def get(self, owner: OwnerRef, work_item_id: str) -> WorkItemRecord:
        with self._lock:
            return self._get_scoped(owner, work_item_id)

    def list_for_owner(self, owner: OwnerRef) -> list[WorkItemRecord]:
        with self._lock:
            rows = [value for value in self._items.values() if value.owner == owner]
        return sorted(rows, key=lambda value: (value.created_at, value.work_item_id))

    def list_attempted(self, *, limit: int = 50) -> list[WorkItemRecord]:
        with self._lock:
            rows = [value for value in self._items.values() if value.attempted_at is not None]
        rows.sort(key=lambda value: value.attempted_at, reverse=True)  # type: ignore[arg-type, return-value]
        return rows[:limit]

    def sync_pending(
        self,
        owner: OwnerRef,
        definitions: Iterable[WorkItemDefinition],
        *,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> list[WorkItemRecord]:
        get_kind(owner.kind)
        normalized_items = [normalize_definition(definition) for definition in definitions]
        current_now = _resolve_now(now)
        with self._lock:
            for record in list(self._items.values()):
                if record.owner != owner or record.attempted_at is not None:
                    continue
                if record.lifecycle_state not in OPEN_STATES:
                    continue
                if record.lifecycle_state == "claimed":
                    logger.warning(
                        "sync cancelled in-flight work item %s for %s:%s; its claim may still be attempted",
                        record.work_item_id,
                        owner.kind,
                        owner.owner_id,
                    )
                self._items[record.work_item_id] = replace(
                    record,
                    lifecycle_state="cancelled",
                    attempt_status="cancelled",
                    modified_by=actor,
                    updated_at=current_now,
                )
            created: list[WorkItemRecord] = []
            for normalized in normalized_items:
                record = _new_record(owner, normalized, actor=actor, now=current_now)
                self._items[record.work_item_id] = record
                created.append(record)
        return created

    def claim_due(self, max_batch_size: int, *, now: datetime | None = None) -> list[ClaimedWorkItem]:
        if max_batch_size <= 0:
            return []
        current_now = _resolve_now(now)
        stale_cutoff = current_now - self._stale_after
        claimed: list[ClaimedWorkItem] = []
        with self._lock:
            candidates: list[tuple[datetime, WorkItemRecord, AnchorRecord]] = []
            for record in self._items.values():
                if not _is_claimable(record, stale_cutoff):
                    continue
                anchor = self._anchors.get(record.owner)
                if anchor is None:
                    continue
                due_at = _due_if_actionable(record, anchor, current_now)
                if due_at is None:
                    continue
                candidates.append((due_at, record, anchor))
            candidates.sort(key=lambda value: (value[0], value[1].created_at, value[1].work_item_id))

            for due_at, record, anchor in candidates[:max_batch_size]:
                if record.lifecycle_state == "claimed":
                    _log_reclaim(record)
                updated = replace(
                    record,
                    lifecycle_state="claimed",
                    claimed_at=current_now,
                    attempt_count=record.attempt_count + 1,
                    updated_at=current_now,
                )
                self._items[record.work_item_id] = updated
                claimed.append(
                    ClaimedWorkItem(
                        item=updated,
                        due_at=due_at,
                        anchor_at=anchor.anchor_at,
                        anchor_status=anchor.status,
                    )
                )
        if claimed:
            logger.info("claimed %d due work items", len(claimed))
        return claimed

    def record_attempt(
        self,
        work_item_id: str,
        status: str,
        summary: dict[str, object],
        *,
        error: str | None = None,
        now: datetime | None = None,
    ) -> None:
        _validate_attempt_status(status)
        current_now = _resolve_now(now)
        with self._lock:
            current = self._items.get(work_item_id)
            if current is None:
                raise WorkItemNotFoundError(work_item_id)
            self._items[work_item_id] = replace(
                current,
                lifecycle_state="attempted",
                attempted_at=current_now,
                attempt_status=status,
                attempt_summary=dict(summary),
                last_error=error,
                claimed_at=None,
                updated_at=current_now,
            )


class WorkItemsBase(DeclarativeBase):
    pass


class _AnchorRow(WorkItemsBase):
    __tablename__ = "work_item_anchors"

    kind: Mapped[str] = mapped_column(String(32), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    anchor_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _WorkItemRow(WorkItemsBase):
    __tablename__ = "work_items"
    __table_args__ = (
        CheckConstraint(
            "(timing_type = 'relative' AND relative_minutes_before > 0 AND absolute_send_at IS NULL) "
            "OR (timing_type = 'absolute' AND absolute_send_at IS NOT NULL AND relative_minutes_before IS NULL)",
            name="ck_work_items_timing",
        ),
    )

    work_item_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    timing_type: Mapped[str] = mapped_column(String(16), nullable=False)
    relative_minutes_before: Mapped[int | None] = mapped_column(Integer, nullable=True)
    absolute_send_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    channels: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    recipients_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    lifecycle_state: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    attempt_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    attempt_summary_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    modified_by: Mapped[str | None] = mapped_column(String(128), nullable=True)


def _optional_utc(value: datetime | None) -> datetime | None:
    return coerce_utc(value) if value is not None else None


def _row_to_record(row: _WorkItemRow) -> WorkItemRecord:
    return WorkItemRecord(
        work_item_id=row.work_item_id,
        owner=OwnerRef(kind=row.kind, owner_id=row.owner_id),
        timing_type=row.timing_type,
        relative_minutes_before=row.relative_minutes_before,
        absolute_send_at=_optional_utc(row.absolute_send_at),
        channels=frozenset(value for value in row.channels.split(",") if value),
        message=row.message,
        timezone=row.timezone,
        recipients=json.loads(row.recipients_json or "{}"),
        lifecycle_state=row.lifecycle_state,
        claimed_at=_optional_utc(row.claimed_at),
        attempt_count=row.attempt_count,
        attempted_at=_optional_utc(row.attempted_at),
        attempt_status=row.attempt_status,
        attempt_summary=json.loads(row.attempt_summary_json) if row.attempt_summary_json else None,
        last_error=row.last_error,
        created_at=coerce_utc(row.created_at),
        updated_at=coerce_utc(row.updated_at),
        created_by=row.created_by,
        modified_by=row.modified_by,
    )


def _anchor_row_to_record(row: _AnchorRow) -> AnchorRecord:
    return AnchorRecord(
        owner=OwnerRef(kind=row.kind, owner_id=row.owner_id),
        anchor_at=coerce_utc(row.anchor_at),
        status=row.status,
        updated_at=coerce_utc(row.updated_at),
    )


def _new_row(record: WorkItemRecord) -> _WorkItemRow:
    return _WorkItemRow(
        work_item_id=record.work_item_id,
        kind=record.owner.kind,
        owner_id=record.owner.owner_id,
        timing_type=record.timing_type,
        relative_minutes_before=record.relative_minutes_before,
        absolute_send_at=record.absolute_send_at,
        channels=",".join(sorted(record.channels)),
        message=record.message,
        timezone=record.timezone,
        recipients_json=_dump_json(dict(record.recipients)),
        lifecycle_state=record.lifecycle_state,
        claimed_at=None,
        attempt_count=0,
        attempted_at=None,
        attempt_status=None,
        attempt_summary_json=None,
        last_error=None,
        created_at=record.created_at,
        updated_at=record.updated_at,
        created_by=record.created_by,
        modified_by=record.modified_by,
    )


def _claimable_clause(stale_cutoff: datetime):
    return and_(
        _WorkItemRow.attempted_at.is_(None),
        or_(
            _WorkItemRow.lifecycle_state == "pending",
            and_(
                _WorkItemRow.lifecycle_state == "claimed",
                _WorkItemRow.claimed_at < stale_cutoff,
            ),
        ),
    )


def _anchor_eligibility_clause(now: datetime):
    return or_(
        *(
            and_(_WorkItemRow.kind == kind.name, kind.sql_filter(_AnchorRow.status, _AnchorRow.anchor_at, now))
            for kind in registered_kinds()
        )
    )


def _due_at_column(dialect_name: str):
    """Send time as a SQL expression, so the claim query can bound, order and limit on it.

    SQLite's ``datetime()`` drops fractional seconds, which can only make a
    row look due slightly early; ``_due_if_actionable`` re-checks each row.
    """
    if dialect_name == "sqlite":
        relative_due = func.datetime(
            _AnchorRow.anchor_at,
            func.printf("-%d minutes", _WorkItemRow.relative_minutes_before),
        )
    else:
        relative_due = _AnchorRow.anchor_at - _WorkItemRow.relative_minutes_before * literal_column(
            "INTERVAL '1 minute'", Interval
        )
    return case(
        (_WorkItemRow.timing_type == "absolute", _WorkItemRow.absolute_send_at),
        else_=type_coerce(relative_due, DateTime(timezone=True)),
    )


class SqlAlchemyWorkItemRepository:
    """Relational store shared by every poller process.

    Claims rely only on the database: one query selects the earliest due
    rows up to the batch size with ``FOR UPDATE SKIP LOCKED`` so concurrent
    pollers step past each other's rows, and a conditional
    ``UPDATE ... RETURNING`` reports which of them this poller actually won.
    SQLite ignores the lock hint; the conditional UPDATE alone keeps claims
    disjoint there.
    """

    def __init__(self, database_url: str, *, stale_after: timedelta = DEFAULT_STALE_AFTER) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for WORK_STORE_BACKEND=postgres")
        self._stale_after = stale_after
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        self._due_at_column = _due_at_column(self._engine.dialect.name)
        if database_url.startswith("sqlite"):
            WorkItemsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_WorkItemRow).delete()
                session.query(_AnchorRow).delete()

    def upsert_anchor(
        self, owner: OwnerRef, *, anchor_at: datetime, status: str, now: datetime | None = None
    ) -> AnchorRecord:
        get_kind(owner.kind)
        current_now = _resolve_now(now)
        with self._session() as session:
            with session.begin():
                row = session.get(_AnchorRow, (owner.kind, owner.owner_id))
                if row is None:
                    row = _AnchorRow(
                        kind=owner.kind,
                        owner_id=owner.owner_id,
                        anchor_at=coerce_utc(anchor_at),
                        status=status,
                        updated_at=current_now,
                    )
                    session.add(row)
                else:
                    row.anchor_at = coerce_utc(anchor_at)
                    row.status = status
                    row.updated_at = current_now
                session.flush()
                return _anchor_row_to_record(row)

    def get_anchor(self, owner: OwnerRef) -> AnchorRecord | None:
        with self._session() as session:
            row = session.get(_AnchorRow, (owner.kind, owner.owner_id))
            if row is None:
                return None
            return _anchor_row_to_record(row)

    def _scoped_query(self, owner: OwnerRef, work_item_id: str):
        return (
            select(_WorkItemRow)
            .where(_WorkItemRow.work_item_id == work_item_id)
            .where(_WorkItemRow.kind == owner.kind)
            .where(_WorkItemRow.owner_id == owner.owner_id)
        )

    def create(
        self,
        owner: OwnerRef,
        definition: WorkItemDefinition,
        *,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> WorkItemRecord:
        get_kind(owner.kind)
        normalized = normalize_definition(definition)
        record = _new_record(owner, normalized, actor=actor, now=_resolve_now(now))
        with self._session() as session:
            with session.begin():
                session.add(_new_row(record))
        return record

    def update(
        self,
        owner: OwnerRef,
        work_item_id: str,
        patch: WorkItemPatch,
        *,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> WorkItemRecord:
        current_now = _resolve_now(now)
        with self._session() as session:
            with session.begin():
                row = session.execute(
                    self._scoped_query(owner, work_item_id).with_for_update()
                ).scalar_one_or_none()
                if row is None:
                    raise WorkItemNotFoundError(work_item_id)
                current = _row_to_record(row)
                if current.attempted_at is not None:
                    raise TerminalStateError("attempted work items cannot be edited")
                normalized = normalize_definition(patch, current)
                state, attempt_status = _state_after_patch(current, patch.active)
                row.timing_type = normalized.timing_type
                row.relative_minutes_before = normalized.relative_minutes_before
                row.absolute_send_at = normalized.absolute_send_at
                row.channels = ",".join(sorted(normalized.channels))
                row.message = normalized.message
                row.timezone = normalized.timezone
                row.recipients_json = _dump_json(dict(normalized.recipients))
                row.lifecycle_state = state
                row.attempt_status = attempt_status
                row.modified_by = actor
                row.updated_at = current_now
                session.flush()
                return _row_to_record(row)

    def cancel(
        self,
        owner: OwnerRef,
        work_item_id: str,
        *,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> WorkItemRecord:
        current_now = _resolve_now(now)
        with self._session() as session:
            with session.begin():
                row = session.execute(
                    self._scoped_query(owner, work_item_id).with_for_update()
                ).scalar_one_or_none()
                if row is None:
                    raise WorkItemNotFoundError(work_item_id)
                if row.attempted_at is not None:
                    raise TerminalStateError("attempted work items cannot be cancelled")
                row.lifecycle_state = "cancelled"
                row.attempt_status = "cancelled"
                row.modified_by = actor
                row.updated_at = current_now
                session.flush()
                return _row_to_record(row)

    def get(self, owner: OwnerRef, work_item_id: str) -> WorkItemRecord:
        with self._session() as session:
            row = session.execute(self._scoped_query(owner, work_item_id)).scalar_one_or_none()
            if row is None:
                raise WorkItemNotFoundError(work_item_id)
            return _row_to_record(row)

    def list_for_owner(self, owner: OwnerRef) -> list[WorkItemRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_WorkItemRow)
                .where(_WorkItemRow.kind == owner.kind)
                .where(_WorkItemRow.owner_id == owner.owner_id)
                .order_by(_WorkItemRow.created_at.asc(), _WorkItemRow.work_item_id.asc())
            ).scalars()
            return [_row_to_record(row) for row in rows]

    def list_attempted(self, *, limit: int = 50) -> list[WorkItemRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_WorkItemRow)
                .where(_WorkItemRow.attempted_at.is_not(None))
                .order_by(_WorkItemRow.attempted_at.desc())
                .limit(limit)
            ).scalars()
            return [_row_to_record(row) for row in rows]

    def sync_pending(
        self,
        owner: OwnerRef,
        definitions: Iterable[WorkItemDefinition],
        *,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> list[WorkItemRecord]:
        get_kind(owner.kind)
        normalized_items = [normalize_definition(definition) for definition in definitions]
        current_now = _resolve_now(now)
        created: list[WorkItemRecord] = []
        with self._session() as session:
            with session.begin():
                open_rows = session.execute(
                    select(_WorkItemRow)
                    .where(_WorkItemRow.kind == owner.kind)
                    .where(_WorkItemRow.owner_id == owner.owner_id)
                    .where(_WorkItemRow.attempted_at.is_(None))
                    .where(_WorkItemRow.lifecycle_state.in_(OPEN_STATES))
                    .with_for_update()
                ).scalars()
                for row in open_rows:
                    if row.lifecycle_state == "claimed":
                        logger.warning(
                            "sync cancelled in-flight work item %s for %s:%s; its claim may still be attempted",
                            row.work_item_id,
                            owner.kind,
                            owner.owner_id,
                        )
                    row.lifecycle_state = "cancelled"
                    row.attempt_status = "cancelled"
                    row.modified_by = actor
                    row.updated_at = current_now
                for normalized in normalized_items:
                    record = _new_record(owner, normalized, actor=actor, now=current_now)
                    session.add(_new_row(record))
                    created.append(record)
        return created

    def claim_due(self, max_batch_size: int, *, now: datetime | None = None) -> list[ClaimedWorkItem]:
        if max_batch_size <= 0:
            return []
        current_now = _resolve_now(now)
        claimable = _claimable_clause(current_now - self._stale_after)
        due_at_column = self._due_at_column
        with self._session() as session:
            with session.begin():
                # Rows held by another poller's open transaction are skipped, not waited on.
                rows = session.execute(
                    select(_WorkItemRow, _AnchorRow)
                    .join(
                        _AnchorRow,
                        and_(
                            _AnchorRow.kind == _WorkItemRow.kind,
                            _AnchorRow.owner_id == _WorkItemRow.owner_id,
                        ),
                    )
                    .where(claimable)
                    .where(_anchor_eligibility_clause(current_now))
                    .where(due_at_column <= current_now)
                    .order_by(due_at_column, _WorkItemRow.created_at, _WorkItemRow.work_item_id)
                    .limit(max_batch_size)
                    .with_for_update(of=_WorkItemRow, skip_locked=True)
                ).all()

                due: list[tuple[datetime, WorkItemRecord, AnchorRecord]] = []
                for item_row, anchor_row in rows:
                    record = _row_to_record(item_row)
                    anchor = _anchor_row_to_record(anchor_row)
                    due_at = _due_if_actionable(record, anchor, current_now)
                    if due_at is not None:
                        due.append((due_at, record, anchor))
                if not due:
                    return []
                due.sort(key=lambda value: (value[0], value[1].created_at, value[1].work_item_id))

                won_ids = set(
                    session.execute(
                        update(_WorkItemRow)
                        .where(_WorkItemRow.work_item_id.in_([value[1].work_item_id for value in due]))
                        .where(claimable)
                        .values(
                            lifecycle_state="claimed",
                            claimed_at=current_now,
                            attempt_count=_WorkItemRow.attempt_count + 1,
                            updated_at=current_now,
                        )
                        .returning(_WorkItemRow.work_item_id)
                        .execution_options(synchronize_session=False)
                    ).scalars()
                )
                won = [value for value in due if value[1].work_item_id in won_ids]
                if not won:
                    return []
                for _, record, _ in won:
                    if record.lifecycle_state == "claimed":
                        _log_reclaim(record)

                refreshed = {
                    row.work_item_id: row
                    for row in session.execute(
                        select(_WorkItemRow)
                        .where(_WorkItemRow.work_item_id.in_(sorted(won_ids)))
                        .execution_options(populate_existing=True)
                    ).scalars()
                }
                claimed = [
                    ClaimedWorkItem(
                        item=_row_to_record(refreshed[record.work_item_id]),
                        due_at=due_at,
                        anchor_at=anchor.anchor_at,
                        anchor_status=anchor.status,
                    )
                    for due_at, record, anchor in won
                ]
        logger.info("claimed %d due work items", len(claimed))
        return claimed

    def record_attempt(
        self,
        work_item_id: str,
        status: str,
        summary: dict[str, object],
        *,
        error: str | None = None,
        now: datetime | None = None,
    ) -> None:
        _validate_attempt_status(status)
        current_now = _resolve_now(now)
        with self._session() as session:
            with session.begin():
                row = session.get(_WorkItemRow, work_item_id)
                if row is None:
                    raise WorkItemNotFoundError(work_item_id)
                row.lifecycle_state = "attempted"
                row.attempted_at = current_now
                row.attempt_status = status
                row.attempt_summary_json = _dump_json(dict(summary))
                row.last_error = error
                row.claimed_at = None
                row.updated_at = current_now


def create_work_item_repository(
    *,
    backend: str,
    database_url: str,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> WorkItemRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyWorkItemRepository(database_url, stale_after=stale_after)
    if normalized == "inmemory":
        return InMemoryWorkItemRepository(stale_after=stale_after)
    raise RuntimeError(f"unsupported WORK_STORE_BACKEND: {backend}")
