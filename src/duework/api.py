from __future__ import annotations

from fastapi import APIRouter, Header, HTTPException, Query, Response, status

from .config import get_settings
from .follow_ups import FollowUpNotificationPlanner
from .kinds import EVENT_REMINDER
from .models import (
    AnchorUpsertRequest,
    FollowUpCompleteRequest,
    FollowUpCompleteResponse,
    FollowUpSchedule,
    PollRunRequest,
    PollRunResponse,
    SyncWorkItemsRequest,
    WorkItemDefinition,
    WorkItemListResponse,
    WorkItemPatch,
    WorkItemResponse,
)
from .notifier import NotifierSender, create_notifier_sender
from .poller import DueWorkPoller
from .work_items import (
    OwnerRef,
    TerminalStateError,
    WorkItemNotFoundError,
    WorkItemRecord,
    WorkItemRepository,
    WorkItemValidationError,
    create_work_item_repository,
)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/scheduler", tags=["scheduler"])

work_repository: WorkItemRepository = create_work_item_repository(
    backend=_settings.work_store_backend,
    database_url=_settings.database_url,
    stale_after=_settings.stale_after,
)
notifier_sender: NotifierSender = create_notifier_sender(_settings)


def reset_runtime_state_for_tests() -> None:
    work_repository.reset()


def _event_owner(event_id: str) -> OwnerRef:
    return OwnerRef(kind=EVENT_REMINDER.name, owner_id=event_id)


def _to_response(record: WorkItemRecord) -> WorkItemResponse:
    return WorkItemResponse(
        work_item_id=record.work_item_id,
        kind=record.owner.kind,
        owner_id=record.owner.owner_id,
        timing_type=record.timing_type,  # type: ignore[arg-type]
        relative_minutes_before=record.relative_minutes_before,
        absolute_send_at=record.absolute_send_at,
        channels=sorted(record.channels),  # type: ignore[arg-type]
        message=record.message,
        timezone=record.timezone,
        lifecycle_state=record.lifecycle_state,  # type: ignore[arg-type]
        claimed_at=record.claimed_at,
        attempt_count=record.attempt_count,
        attempted_at=record.attempted_at,
        attempt_status=record.attempt_status,  # type: ignore[arg-type]
        attempt_summary=record.attempt_summary,
        last_error=record.last_error,
        created_at=record.created_at,
        updated_at=record.updated_at,
        created_by=record.created_by,
        modified_by=record.modified_by,
    )


def _to_list(records: list[WorkItemRecord]) -> WorkItemListResponse:
    return WorkItemListResponse(items=[_to_response(record) for record in records])


@router.get("/events/{event_id}/reminders", response_model=WorkItemListResponse)
def list_event_reminders(event_id: str) -> WorkItemListResponse:
    return _to_list(work_repository.list_for_owner(_event_owner(event_id)))


@router.post(
    "/events/{event_id}/reminders",
    response_model=WorkItemResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_event_reminder(
    event_id: str,
    payload: WorkItemDefinition,
    x_actor: str | None = Header(default=None),
) -> WorkItemResponse:
    try:
        record = work_repository.create(_event_owner(event_id), payload, actor=x_actor)
    except WorkItemValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return _to_response(record)


@router.put("/events/{event_id}/reminders", response_model=WorkItemListResponse)
def sync_event_reminders(
    event_id: str,
    payload: SyncWorkItemsRequest,
    x_actor: str | None = Header(default=None),
) -> WorkItemListResponse:
    try:
        records = work_repository.sync_pending(_event_owner(event_id), payload.items, actor=x_actor)
    except WorkItemValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return _to_list(records)


@router.patch("/events/{event_id}/reminders/{work_item_id}", response_model=WorkItemResponse)
def update_event_reminder(
    event_id: str,
    work_item_id: str,
    payload: WorkItemPatch,
    x_actor: str | None = Header(default=None),
) -> WorkItemResponse:
    try:
        record = work_repository.update(_event_owner(event_id), work_item_id, payload, actor=x_actor)
    except WorkItemNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"reminder not found: {work_item_id}") from exc
    except TerminalStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except WorkItemValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return _to_response(record)


@router.post("/events/{event_id}/reminders/{work_item_id}/cancel", response_model=WorkItemResponse)
def cancel_event_reminder(
    event_id: str,
    work_item_id: str,
    x_actor: str | None = Header(default=None),
) -> WorkItemResponse:
    try:
        record = work_repository.cancel(_event_owner(event_id), work_item_id, actor=x_actor)
    except WorkItemNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"reminder not found: {work_item_id}") from exc
    except TerminalStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _to_response(record)


@router.put("/events/{event_id}/anchor", status_code=status.HTTP_204_NO_CONTENT)
def upsert_event_anchor(event_id: str, payload: AnchorUpsertRequest) -> Response:
    work_repository.upsert_anchor(_event_owner(event_id), anchor_at=payload.anchor_at, status=payload.status)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/follow-ups/{follow_up_id}", response_model=WorkItemListResponse)
def schedule_follow_up(
    follow_up_id: str,
    payload: FollowUpSchedule,
    x_actor: str | None = Header(default=None),
) -> WorkItemListResponse:
    schedule = payload.model_copy(update={"follow_up_id": follow_up_id})
    try:
        records = FollowUpNotificationPlanner(work_repository).schedule(schedule, actor=x_actor)
    except WorkItemValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return _to_list(records)


@router.post("/follow-ups/{follow_up_id}/complete", response_model=FollowUpCompleteResponse)
def complete_follow_up(
    follow_up_id: str,
    payload: FollowUpCompleteRequest,
    x_actor: str | None = Header(default=None),
) -> FollowUpCompleteResponse:
    schedule = payload.schedule.model_copy(update={"follow_up_id": follow_up_id})
    try:
        next_schedule = FollowUpNotificationPlanner(work_repository).complete(
            schedule,
            actor=x_actor,
            next_follow_up_id=payload.next_follow_up_id,
            next_scheduled_date=payload.next_scheduled_date,
            schedule_next=payload.schedule_next,
        )
    except WorkItemValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return FollowUpCompleteResponse(follow_up_id=follow_up_id, next_schedule=next_schedule)


@router.post("/follow-ups/{follow_up_id}/cancel", status_code=status.HTTP_204_NO_CONTENT)
def cancel_follow_up(follow_up_id: str, x_actor: str | None = Header(default=None)) -> Response:
    try:
        FollowUpNotificationPlanner(work_repository).cancel(follow_up_id, actor=x_actor)
    except WorkItemNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"follow-up not found: {follow_up_id}") from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/poll/run-once", response_model=PollRunResponse)
def run_poll_once(payload: PollRunRequest | None = None) -> PollRunResponse:
    poller = DueWorkPoller(
        repository=work_repository,
        sender=notifier_sender,
        batch_size=_settings.claim_batch_size,
    )
    result = poller.run_once(batch_size=payload.batch_size if payload else None)
    return PollRunResponse(
        claimed_count=result.claimed_count,
        sent_count=result.sent_count,
        failed_count=result.failed_count,
        skipped_count=result.skipped_count,
        work_item_ids=list(result.work_item_ids),
    )


@router.get("/attempts", response_model=WorkItemListResponse)
def list_attempts(limit: int = Query(default=50, ge=1, le=500)) -> WorkItemListResponse:
    return _to_list(work_repository.list_attempted(limit=limit))
