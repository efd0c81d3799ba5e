from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Iterator

from .conversation_policy import SYSTEM_ERROR_TEXT, mask_identity
from .engine import ConversationEngine
from .errors import DependencyError, SessionTransitionError
from .line_messaging import OutboundMessage, ReplySender
from .models import EventOutcome, LineEvent, LineWebhookBody

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchSummary:
    received: int
    processed: int
    skipped: int
    failed: int


@dataclass
class _IdentityLock:
    lock: Lock = field(default_factory=Lock)
    holders: int = 0


class EventDispatcher:
    """Feeds the text events of one delivery to the engine, one at a time.

    A per-identity lock keeps turns for the same conversation identity from
    interleaving when deliveries overlap inside this process. Locks are
    reference counted and dropped once no delivery holds or waits on them.
    """

    def __init__(self, *, engine: ConversationEngine, sender: ReplySender) -> None:
        self._engine = engine
        self._sender = sender
        self._locks_guard = Lock()
        self._locks: dict[str, _IdentityLock] = {}

    @property
    def tracked_identities(self) -> int:
        with self._locks_guard:
            return len(self._locks)

    @contextmanager
    def _identity_lock(self, conversation_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.get(conversation_id)
            if entry is None:
                entry = self._locks[conversation_id] = _IdentityLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[conversation_id]

    def dispatch(self, body: LineWebhookBody) -> DispatchSummary:
        outcomes: list[EventOutcome] = [self.dispatch_event(event) for event in body.events]
        return DispatchSummary(
            received=len(outcomes),
            processed=outcomes.count("processed"),
            skipped=outcomes.count("skipped"),
            failed=outcomes.count("failed"),
        )

    def dispatch_event(self, event: LineEvent) -> EventOutcome:
        payload = event.text_payload()
        if payload is None:
            return "skipped"
        conversation_id, text, reply_token = payload
        masked = mask_identity(conversation_id)

        with self._identity_lock(conversation_id):
            try:
                outcome = self._engine.handle_text(
                    conversation_id=conversation_id,
                    text=text,
                    reply_token=reply_token,
                )
            except (DependencyError, SessionTransitionError):
                logger.exception("event from %s failed on a dependency", masked)
                self._deliver(reply_token, (OutboundMessage(text=SYSTEM_ERROR_TEXT),))
                return "failed"
            except Exception:
                logger.exception("unexpected error while handling event from %s", masked)
                self._deliver(reply_token, (OutboundMessage(text=SYSTEM_ERROR_TEXT),))
                return "failed"

        logger.info("event from %s handled; session status=%s", masked, outcome.status)
        self._deliver(reply_token, outcome.messages)
        return "processed"

    def _deliver(self, reply_token: str, messages: tuple[OutboundMessage, ...]) -> None:
        try:
            result = self._sender.send_reply(reply_token, messages)
        except Exception:
            logger.exception("reply delivery raised unexpectedly")
            return
        if result.status == "failed":
            logger.error(
                "reply delivery failed: %s (%s)",
                result.error_message,
                result.error_code,
            )
