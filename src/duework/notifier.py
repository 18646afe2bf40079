from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol

from .config import Settings
from .models import Channel

DispatchStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class DispatchRequest:
    work_item_id: str
    kind: str
    channel: Channel
    recipient: str
    message: str
    timezone: str
    due_at: datetime


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class NotifierSender(Protocol):
    def send(self, request: DispatchRequest) -> DispatchResult: ...


class StubNotifierSender:
    def __init__(self, *, enabled: bool, channel: str = "email,sms") -> None:
        self._enabled = enabled
        parsed = {item.strip() for item in channel.strip().lower().split(",") if item.strip()}
        self._channels = parsed or {"email", "sms"}

    def send(self, request: DispatchRequest) -> DispatchResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return DispatchResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="notifier_disabled",
                error_message="Notifier live delivery is disabled",
            )

        if request.channel not in self._channels:
            return DispatchResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="channel_mismatch",
                error_message=f"Configured channels are {', '.join(sorted(self._channels))}",
            )

        if "fail" in request.recipient.lower():
            return DispatchResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )

        message_id = f"stub-{request.work_item_id}-{request.channel}-{int(attempted_at.timestamp())}"
        return DispatchResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)


class HttpNotifierSender:
    """Delivers messages through the notifier service's HTTP API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        channels: set[str],
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._channels: frozenset[str] = frozenset(channels)
        self._timeout_seconds = timeout_seconds

    def send(self, request: DispatchRequest) -> DispatchResult:
        attempted_at = datetime.now(timezone.utc)

        if request.channel not in self._channels:
            return DispatchResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="channel_not_configured",
                error_message=(
                    f"Channel '{request.channel}' is not configured; "
                    f"available channels: {', '.join(sorted(self._channels))}"
                ),
            )

        # One key per item and channel so a reclaimed item can be deduplicated downstream.
        request_payload = {
            "channel": request.channel,
            "recipient": request.recipient,
            "message": request.message,
            "timezone": request.timezone,
            "idempotency_key": f"duework-{request.work_item_id}-{request.channel}",
        }

        try:
            message_id = self._submit(request_payload)
        except (urllib.error.URLError, TimeoutError) as exc:
            error_code, detail = _classify_failure(exc)
            return DispatchResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=error_code,
                error_message=f"{detail} (recipient: {mask_recipient(request.recipient, request.channel)})",
            )
        return DispatchResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)

    def _submit(self, payload: dict[str, str]) -> str | None:
        http_request = urllib.request.Request(
            f"{self._base_url}/v1/messages/send",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        with urllib.request.urlopen(http_request, timeout=self._timeout_seconds) as response:
            body = json.loads(response.read().decode("utf-8") or "{}")
        return body.get("message_id")


def _classify_failure(exc: OSError) -> tuple[str, str]:
    """Map a urllib failure to an attempt error code and a readable detail."""
    if isinstance(exc, urllib.error.HTTPError):
        return f"http_{exc.code}", f"notifier answered HTTP {exc.code} {exc.reason}"
    # urlopen wraps connect timeouts in URLError; read timeouts surface bare.
    reason = getattr(exc, "reason", exc)
    if isinstance(reason, TimeoutError):
        return "timeout", f"notifier did not answer in time: {reason}"
    return "connection_error", f"notifier unreachable: {reason}"


def create_notifier_sender(settings: Settings) -> NotifierSender:
    if settings.notifier_sender_type == "http":
        return HttpNotifierSender(
            base_url=settings.notifier_api_base_url,
            api_key=settings.notifier_api_key,
            channels=settings.notifier_channels,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    return StubNotifierSender(enabled=settings.notifier_enabled, channel=settings.notifier_channel)


def mask_recipient(recipient: str, channel: str) -> str:
    value = recipient.strip()
    if channel == "email":
        local, at, domain = value.partition("@")
        if at and domain:
            return f"{local[:1]}***@{domain}" if len(local) > 1 else f"*@{domain}"
    elif channel == "sms":
        digits = [ch for ch in value if ch.isdigit()]
        if len(digits) >= 4:
            return "***" + "".join(digits[-4:])
    return "***"
