"""Conversation engine for the reply-suggestion flow.

``plan_turn`` reads the identity's profile and most recent open session, calls
the directory / corpus / generation collaborators it needs, and returns a
``TurnPlan``: the outbound messages plus a single ``TurnCommit`` holding every
write. ``handle_text`` plans and then commits that write in one store call, so
a failure anywhere before the commit leaves the session untouched and the user
can resend the same input.

Concurrent deliveries for one identity are expected to be serialized by the
caller; the store's version check rejects a write that lost such a race.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable

from .config import DEFAULT_CANCEL_KEYWORDS
from .conversation_policy import (
    ACCOUNT_LINKED_ELSEWHERE_TEXT,
    ACTUAL_REPLY_PROMPT_TEXT,
    CANCELLED_TEXT,
    DECLINED_TEXT,
    EMAIL_INVALID_TEXT,
    EMAIL_NOT_REGISTERED_TEXT,
    EMAIL_REPROMPT_TEXT,
    EMAIL_REQUEST_TEXT,
    EXAMPLE_SAVED_TEXT,
    INPUT_TEXT_PROMPT,
    NO_PEOPLE_TEXT,
    NO_TEXT,
    PERSON_SELECTION_REPROMPT_TEXT,
    PERSON_SELECTION_TEXT,
    PROCESSING_TEXT,
    PROFILE_REGISTRATION_FAILED_TEXT,
    USE_CONFIRMATION_TEXT,
    VERIFIED_USE_CONFIRMATION_TEXT,
    YES_NO_REPROMPT_TEXT,
    YES_TEXT,
    is_affirmative,
    is_cancel_command,
    is_negative,
    is_valid_email,
    mask_email,
    mask_identity,
    parse_selection,
    selection_value,
    suggestion_text,
)
from .directory import AccountDirectory
from .line_messaging import MAX_QUICK_REPLY_ITEMS, OutboundMessage, QuickReply
from .reply_generation import ReplyGenerator
from .sessions import (
    AwaitingActualReplyText,
    AwaitingEmail,
    AwaitingGeneratedReply,
    AwaitingInputText,
    AwaitingPersonSelection,
    AwaitingUseConfirmation,
    SessionRecord,
    complete_state,
)
from .store import AccountProfile, AssistantStore, ReplyExample, SessionConflictError, StoreError, TurnCommit

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _text(body: str) -> OutboundMessage:
    return OutboundMessage(text=body)


def _stored_input(
    session: SessionRecord,
    state: AwaitingGeneratedReply | AwaitingActualReplyText,
) -> str:
    # Rows written without input_text fall back to the message that opened the session.
    return state.input_text or session.message_text or ""


def _yes_no(body: str) -> OutboundMessage:
    return OutboundMessage(
        text=body,
        quick_replies=(QuickReply(label=YES_TEXT, value=YES_TEXT), QuickReply(label=NO_TEXT, value=NO_TEXT)),
    )


@dataclass(frozen=True)
class TurnPlan:
    messages: tuple[OutboundMessage, ...]
    commit: TurnCommit = field(default_factory=TurnCommit)
    current: SessionRecord | None = None


@dataclass(frozen=True)
class TurnOutcome:
    messages: tuple[OutboundMessage, ...]
    session: SessionRecord | None

    @property
    def status(self) -> str | None:
        return self.session.status if self.session is not None else None


class ConversationEngine:
    def __init__(
        self,
        *,
        store: AssistantStore,
        directory: AccountDirectory,
        generator: ReplyGenerator,
        cancel_keywords: Iterable[str] = DEFAULT_CANCEL_KEYWORDS,
        history_limit: int = 10,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._store = store
        self._directory = directory
        self._generator = generator
        self._cancel_keywords = tuple(cancel_keywords)
        self._history_limit = history_limit
        self._clock = clock

    def handle_text(self, *, conversation_id: str, text: str, reply_token: str | None = None) -> TurnOutcome:
        plan = self.plan_turn(conversation_id=conversation_id, text=text, reply_token=reply_token)
        if plan.commit.is_empty:
            return TurnOutcome(messages=plan.messages, session=plan.current)
        try:
            stored = self._store.commit_turn(plan.commit)
        except SessionConflictError:
            raise
        except StoreError:
            if plan.commit.new_profile is None:
                raise
            logger.exception("profile registration failed for %s", mask_identity(conversation_id))
            return TurnOutcome(messages=(_text(PROFILE_REGISTRATION_FAILED_TEXT),), session=plan.current)
        return TurnOutcome(messages=plan.messages, session=stored)

    def plan_turn(self, *, conversation_id: str, text: str, reply_token: str | None = None) -> TurnPlan:
        text = text.strip()
        if is_cancel_command(text, self._cancel_keywords):
            return self._cancel(conversation_id)

        profile = self._store.find_profile_by_conversation(conversation_id)
        session = self._store.find_active_session(conversation_id)
        if profile is None:
            return self._unlinked_turn(conversation_id, text, reply_token, session)
        return self._linked_turn(profile, text, reply_token, session)

    def _cancel(self, conversation_id: str) -> TurnPlan:
        session = self._store.find_active_session(conversation_id)
        if session is None:
            return TurnPlan(messages=(_text(CANCELLED_TEXT),))
        logger.info("session %s cancelled from %s", session.session_id, session.status)
        return TurnPlan(
            messages=(_text(CANCELLED_TEXT),),
            commit=TurnCommit(session=session.advance(complete_state(session.state))),
            current=session,
        )

    def _unlinked_turn(
        self,
        conversation_id: str,
        text: str,
        reply_token: str | None,
        session: SessionRecord | None,
    ) -> TurnPlan:
        if session is None:
            created = SessionRecord(
                conversation_id=conversation_id,
                state=AwaitingEmail(),
                created_at=self._clock(),
                reply_token=reply_token,
            )
            return TurnPlan(messages=(_text(EMAIL_REQUEST_TEXT),), commit=TurnCommit(session=created))
        if isinstance(session.state, AwaitingEmail):
            return self._verify_email(session, text)
        return TurnPlan(messages=(_text(EMAIL_REPROMPT_TEXT),), current=session)

    def _verify_email(self, session: SessionRecord, email: str) -> TurnPlan:
        if not is_valid_email(email):
            return TurnPlan(messages=(_text(EMAIL_INVALID_TEXT),), current=session)

        account = self._directory.find_account_by_email(email)
        if account is None:
            logger.info("no registered account for %s", mask_email(email))
            return TurnPlan(messages=(_text(EMAIL_NOT_REGISTERED_TEXT),), current=session)

        new_profile: AccountProfile | None = None
        existing = self._store.find_profile_by_account(account.account_id)
        if existing is None:
            new_profile = AccountProfile(
                account_id=account.account_id,
                conversation_id=session.conversation_id,
                display_name=account.email,
                created_at=self._clock(),
            )
        elif existing.conversation_id != session.conversation_id:
            logger.warning(
                "account for %s is already linked to %s",
                mask_email(email),
                mask_identity(existing.conversation_id),
            )
            return TurnPlan(messages=(_text(ACCOUNT_LINKED_ELSEWHERE_TEXT),), current=session)

        return TurnPlan(
            messages=(_yes_no(VERIFIED_USE_CONFIRMATION_TEXT),),
            commit=TurnCommit(
                session=session.advance(AwaitingUseConfirmation(account_id=account.account_id)),
                new_profile=new_profile,
            ),
            current=session,
        )

    def _linked_turn(
        self,
        profile: AccountProfile,
        text: str,
        reply_token: str | None,
        session: SessionRecord | None,
    ) -> TurnPlan:
        if session is None:
            created = SessionRecord(
                conversation_id=profile.conversation_id,
                state=AwaitingUseConfirmation(account_id=profile.account_id),
                created_at=self._clock(),
                message_text=text,
                reply_token=reply_token,
            )
            return TurnPlan(messages=(_yes_no(USE_CONFIRMATION_TEXT),), commit=TurnCommit(session=created))

        state = session.state
        if isinstance(state, AwaitingUseConfirmation):
            return self._confirm_use(session, state, text)
        if isinstance(state, AwaitingPersonSelection):
            return self._select_person(session, state, text)
        if isinstance(state, AwaitingInputText):
            return self._generate(session, state.account_id, state.person_id, text)
        if isinstance(state, AwaitingGeneratedReply):
            return self._generate(session, state.account_id, state.person_id, _stored_input(session, state))
        if isinstance(state, AwaitingActualReplyText):
            return self._save_example(session, state, text)

        logger.warning("session %s has unhandled status %s", session.session_id, session.status)
        return TurnPlan(messages=(_text(PROCESSING_TEXT),), current=session)

    def _confirm_use(self, session: SessionRecord, state: AwaitingUseConfirmation, text: str) -> TurnPlan:
        if is_negative(text):
            return TurnPlan(
                messages=(_text(DECLINED_TEXT),),
                commit=TurnCommit(session=session.advance(complete_state(state))),
                current=session,
            )
        if not is_affirmative(text):
            return TurnPlan(messages=(_yes_no(YES_NO_REPROMPT_TEXT),), current=session)

        people = self._store.list_people(state.account_id)
        if not people:
            return TurnPlan(messages=(_text(NO_PEOPLE_TEXT),), current=session)

        if len(people) > MAX_QUICK_REPLY_ITEMS:
            logger.warning(
                "account has %d persons; only the first %d can be offered for selection",
                len(people),
                MAX_QUICK_REPLY_ITEMS,
            )
        options = tuple(
            QuickReply(label=person.name, value=selection_value(person.person_id))
            for person in people
        )
        return TurnPlan(
            messages=(OutboundMessage(text=PERSON_SELECTION_TEXT, quick_replies=options),),
            commit=TurnCommit(session=session.advance(AwaitingPersonSelection(account_id=state.account_id))),
            current=session,
        )

    def _select_person(self, session: SessionRecord, state: AwaitingPersonSelection, text: str) -> TurnPlan:
        person_id = parse_selection(text)
        if person_id is not None:
            owned = {person.person_id for person in self._store.list_people(state.account_id)}
            if person_id in owned:
                return TurnPlan(
                    messages=(_text(INPUT_TEXT_PROMPT),),
                    commit=TurnCommit(
                        session=session.advance(
                            AwaitingInputText(account_id=state.account_id, person_id=person_id)
                        )
                    ),
                    current=session,
                )
        return TurnPlan(messages=(_text(PERSON_SELECTION_REPROMPT_TEXT),), current=session)

    def _generate(self, session: SessionRecord, account_id: str, person_id: str, input_text: str) -> TurnPlan:
        pending = session.advance(
            AwaitingGeneratedReply(account_id=account_id, person_id=person_id, input_text=input_text)
        )
        history = self._store.list_recent_examples(person_id, limit=self._history_limit)
        suggestion = self._generator.generate(input_text, history)
        ready = pending.advance(
            AwaitingActualReplyText(
                account_id=account_id,
                person_id=person_id,
                input_text=input_text,
                generated_reply=suggestion,
            )
        )
        return TurnPlan(
            messages=(_text(suggestion_text(suggestion)), _text(ACTUAL_REPLY_PROMPT_TEXT)),
            commit=TurnCommit(session=ready),
            current=session,
        )

    def _save_example(self, session: SessionRecord, state: AwaitingActualReplyText, text: str) -> TurnPlan:
        example = ReplyExample(
            person_id=state.person_id,
            account_id=state.account_id,
            input_text=_stored_input(session, state),
            reply_text=text,
            created_at=self._clock(),
        )
        return TurnPlan(
            messages=(_text(EXAMPLE_SAVED_TEXT),),
            commit=TurnCommit(session=session.advance(complete_state(state)), new_example=example),
            current=session,
        )
