from __future__ import annotations

import http.client
import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence

from .models import DeliveryStatus

logger = logging.getLogger(__name__)

MAX_QUICK_REPLY_ITEMS = 13
MAX_QUICK_REPLY_LABEL = 20
MAX_MESSAGES_PER_REPLY = 5


@dataclass(frozen=True)
class QuickReply:
    label: str
    value: str


@dataclass(frozen=True)
class OutboundMessage:
    text: str
    quick_replies: tuple[QuickReply, ...] = ()


@dataclass(frozen=True)
class ReplyDeliveryResult:
    status: DeliveryStatus
    attempted_at: datetime
    error_code: str | None = None
    error_message: str | None = None


def render_line_message(message: OutboundMessage) -> dict[str, Any]:
    payload: dict[str, Any] = {"type": "text", "text": message.text}
    if message.quick_replies:
        payload["quickReply"] = {
            "items": [
                {
                    "type": "action",
                    "action": {
                        "type": "message",
                        "label": item.label[:MAX_QUICK_REPLY_LABEL],
                        "text": item.value,
                    },
                }
                for item in message.quick_replies[:MAX_QUICK_REPLY_ITEMS]
            ]
        }
    return payload


class ReplySender(Protocol):
    def send_reply(self, reply_token: str, messages: Sequence[OutboundMessage]) -> ReplyDeliveryResult: ...


@dataclass
class StubReplySender:
    """Records replies instead of delivering them."""

    fail_tokens: set[str] = field(default_factory=set)
    sent: list[tuple[str, tuple[OutboundMessage, ...]]] = field(default_factory=list)

    def send_reply(self, reply_token: str, messages: Sequence[OutboundMessage]) -> ReplyDeliveryResult:
        attempted_at = datetime.now(timezone.utc)
        if reply_token in self.fail_tokens:
            return ReplyDeliveryResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for reply token",
            )
        self.sent.append((reply_token, tuple(messages)))
        return ReplyDeliveryResult(status="sent", attempted_at=attempted_at)

    def texts_for(self, reply_token: str) -> list[str]:
        return [
            message.text
            for token, messages in self.sent
            if token == reply_token
            for message in messages
        ]


class _LineSendError(Exception):
    """Internal error raised when a LINE reply request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpLineReplySender:
    """Delivers replies through the LINE Messaging API reply endpoint."""

    def __init__(
        self,
        *,
        access_token: str,
        base_url: str = "https://api.line.me",
        timeout_seconds: int = 10,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_token = access_token.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_token:
            raise ValueError("access_token must not be empty")
        self._base_url = stripped_url
        self._access_token = stripped_token
        self._timeout_seconds = timeout_seconds

    def send_reply(self, reply_token: str, messages: Sequence[OutboundMessage]) -> ReplyDeliveryResult:
        attempted_at = datetime.now(timezone.utc)
        if not messages:
            return ReplyDeliveryResult(status="dry_run", attempted_at=attempted_at)

        body = {
            "replyToken": reply_token,
            "messages": [render_line_message(message) for message in messages[:MAX_MESSAGES_PER_REPLY]],
        }
        try:
            self._post(body)
        except _LineSendError as exc:
            logger.error("LINE reply failed: %s (%s)", exc.message, exc.error_code)
            return ReplyDeliveryResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=exc.message,
            )
        return ReplyDeliveryResult(status="sent", attempted_at=attempted_at)

    def _post(self, body: dict[str, Any]) -> None:
        url = f"{self._base_url}/v2/bot/message/reply"
        request = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._access_token}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                response.read()
        except urllib.error.HTTPError as exc:
            detail = ""
            if exc.fp is not None:
                detail = exc.read().decode("utf-8", errors="replace")
            raise _LineSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason} {detail}".strip(),
            ) from exc
        except urllib.error.URLError as exc:
            raise _LineSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _LineSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except (OSError, http.client.HTTPException) as exc:
            raise _LineSendError(
                error_code="connection_error",
                message=f"Connection error: {exc!r}",
            ) from exc
