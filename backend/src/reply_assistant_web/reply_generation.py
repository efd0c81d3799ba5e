from __future__ import annotations

import http.client
import json
import logging
import socket
import urllib.error
import urllib.request
from typing import Any, Protocol, Sequence

from .conversation_policy import GENERATION_FALLBACK_TEXT
from .errors import DependencyError
from .store import ReplyExample

logger = logging.getLogger(__name__)


class ReplyGenerationError(DependencyError):
    """Raised when the generation endpoint cannot be reached."""


class ReplyGenerator(Protocol):
    def generate(self, input_text: str, history: Sequence[ReplyExample]) -> str: ...


def build_generation_request(input_text: str, history: Sequence[ReplyExample]) -> dict[str, Any]:
    return {
        "inputText": input_text,
        "history": [
            {"inputText": example.input_text, "replyText": example.reply_text}
            for example in history
        ],
    }


def parse_generation_response(raw: str) -> str:
    """Extract the suggestion, falling back to a fixed text on any malformed response."""
    try:
        payload = json.loads(raw)
    except ValueError:
        logger.warning("reply generation response is not JSON")
        return GENERATION_FALLBACK_TEXT
    if not isinstance(payload, dict):
        logger.warning("reply generation response is not an object")
        return GENERATION_FALLBACK_TEXT
    reply = payload.get("reply")
    if not isinstance(reply, str) or not reply.strip():
        logger.warning("reply generation response has no usable reply")
        return GENERATION_FALLBACK_TEXT
    return reply


class StubReplyGenerator:
    def __init__(self, reply: str = "Thanks, I'll get back to you soon.") -> None:
        self._reply = reply
        self.calls: list[tuple[str, tuple[ReplyExample, ...]]] = []

    def generate(self, input_text: str, history: Sequence[ReplyExample]) -> str:
        self.calls.append((input_text, tuple(history)))
        return self._reply


class HttpReplyGenerator:
    def __init__(self, *, url: str, timeout_seconds: int = 30) -> None:
        stripped_url = url.strip()
        if not stripped_url:
            raise ValueError("url must not be empty")
        self._url = stripped_url
        self._timeout_seconds = timeout_seconds

    def generate(self, input_text: str, history: Sequence[ReplyExample]) -> str:
        body = build_generation_request(input_text, history)
        request = urllib.request.Request(
            self._url,
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            raise ReplyGenerationError(f"reply generation failed: HTTP {exc.code}") from exc
        except urllib.error.URLError as exc:
            raise ReplyGenerationError(f"reply generation failed: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise ReplyGenerationError("reply generation timed out") from exc
        except (OSError, http.client.HTTPException) as exc:
            raise ReplyGenerationError(f"reply generation failed: {exc!r}") from exc
        return parse_generation_response(raw)
