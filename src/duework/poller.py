from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Sequence

from sqlalchemy.exc import SQLAlchemyError

from .config import Settings, get_settings, settings_issues
from .kinds import get_kind
from .notifier import DispatchRequest, DispatchResult, NotifierSender, create_notifier_sender, mask_recipient
from .work_items import ClaimedWorkItem, WorkItemRepository, create_work_item_repository

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PollRunResult:
    claimed_count: int
    sent_count: int
    failed_count: int
    skipped_count: int
    work_item_ids: tuple[str, ...]


class DueWorkPoller:
    """Claims due work items and hands each one to the notifier exactly once per claim.

    Every claimed item ends in ``record_attempt`` with ``sent``, ``failed`` or
    ``skipped``. Exceptions raised by the sender are folded into a failed
    attempt; persistence errors propagate to the caller.
    """

    def __init__(
        self,
        *,
        repository: WorkItemRepository,
        sender: NotifierSender,
        batch_size: int = 25,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._sender = sender
        self._batch_size = batch_size
        self._clock = clock or _now_utc

    def run_once(self, *, batch_size: int | None = None) -> PollRunResult:
        claimed = self._repository.claim_due(batch_size or self._batch_size, now=self._clock())
        sent_count = 0
        failed_count = 0
        skipped_count = 0
        for claim in claimed:
            status = self._process(claim)
            if status == "sent":
                sent_count += 1
            elif status == "skipped":
                skipped_count += 1
            else:
                failed_count += 1
        return PollRunResult(
            claimed_count=len(claimed),
            sent_count=sent_count,
            failed_count=failed_count,
            skipped_count=skipped_count,
            work_item_ids=tuple(claim.item.work_item_id for claim in claimed),
        )

    def run_forever(self, interval_seconds: float, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or threading.Event()
        logger.info("due work poller started (interval=%ss, batch_size=%d)", interval_seconds, self._batch_size)
        while not stop.is_set():
            try:
                result = self.run_once()
            except SQLAlchemyError:
                logger.exception("poll failed; retrying on next tick")
            else:
                if result.claimed_count:
                    logger.info(
                        "poll finished: claimed=%d sent=%d failed=%d skipped=%d",
                        result.claimed_count,
                        result.sent_count,
                        result.failed_count,
                        result.skipped_count,
                    )
            stop.wait(interval_seconds)
        logger.info("due work poller stopped")

    def _process(self, claim: ClaimedWorkItem) -> str:
        item = claim.item
        if item.attempt_count > 1:
            logger.warning(
                "work item %s reclaimed after a stale claim (attempt %d); it may be delivered twice",
                item.work_item_id,
                item.attempt_count,
            )

        kind = get_kind(item.owner.kind)
        now = self._clock()
        anchor = self._repository.get_anchor(item.owner)
        if anchor is None or not kind.is_eligible(anchor.status, anchor.anchor_at, now):
            reason = "anchor_missing" if anchor is None else f"anchor_ineligible:{anchor.status}"
            self._repository.record_attempt(
                item.work_item_id,
                "skipped",
                {"reason": reason, "due_at": claim.due_at.isoformat()},
                now=now,
            )
            return "skipped"

        message = item.message or kind.default_message
        channel_results: dict[str, dict[str, object]] = {}
        first_error: str | None = None
        for channel in sorted(item.channels):
            recipient = item.recipients.get(channel, "")
            if not recipient:
                result = DispatchResult(
                    status="failed",
                    attempted_at=self._clock(),
                    error_code="recipient_missing",
                    error_message=f"Recipient missing for channel {channel}",
                )
            else:
                result = self._dispatch(
                    DispatchRequest(
                        work_item_id=item.work_item_id,
                        kind=kind.name,
                        channel=channel,  # type: ignore[arg-type]
                        recipient=recipient,
                        message=message,
                        timezone=item.timezone,
                        due_at=claim.due_at,
                    )
                )
            if result.status != "sent" and first_error is None:
                first_error = result.error_message or result.error_code or "dispatch failed"
            channel_results[channel] = {
                "status": result.status,
                "recipient": mask_recipient(recipient, channel),
                "provider_message_id": result.provider_message_id,
                "error_code": result.error_code,
                "error_message": result.error_message,
            }

        status = "failed" if first_error is not None else "sent"
        if status == "failed":
            logger.warning("dispatch failed for work item %s: %s", item.work_item_id, first_error)
        self._repository.record_attempt(
            item.work_item_id,
            status,
            {
                "channels": channel_results,
                "due_at": claim.due_at.isoformat(),
                "attempt_count": item.attempt_count,
            },
            error=first_error,
            now=self._clock(),
        )
        return status

    def _dispatch(self, request: DispatchRequest) -> DispatchResult:
        try:
            return self._sender.send(request)
        except Exception as exc:
            logger.exception(
                "notifier raised while sending work item %s via %s", request.work_item_id, request.channel
            )
            return DispatchResult(
                status="failed",
                attempted_at=self._clock(),
                error_code="dispatch_exception",
                error_message=f"{type(exc).__name__}: {exc}",
            )


def build_poller(settings: Settings, *, batch_size: int | None = None) -> DueWorkPoller:
    repository = create_work_item_repository(
        backend=settings.work_store_backend,
        database_url=settings.database_url,
        stale_after=settings.stale_after,
    )
    return DueWorkPoller(
        repository=repository,
        sender=create_notifier_sender(settings),
        batch_size=batch_size or settings.claim_batch_size,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Claim and dispatch due reminders and follow-up notifications.")
    parser.add_argument("--once", action="store_true", help="Run a single poll and exit.")
    parser.add_argument("--batch-size", type=int, default=None, help="Maximum items claimed per poll.")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between polls.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for issue in settings_issues(settings):
        logger.warning("configuration warning: %s", issue)

    poller = build_poller(settings, batch_size=args.batch_size)
    if args.once:
        result = poller.run_once()
        logger.info(
            "single poll finished: claimed=%d sent=%d failed=%d skipped=%d",
            result.claimed_count,
            result.sent_count,
            result.failed_count,
            result.skipped_count,
        )
        return 0

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    try:
        poller.run_forever(args.interval or settings.poll_interval_seconds, stop)
    except KeyboardInterrupt:
        stop.set()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
