"""Session state for the reply flow.

Each status is its own frozen dataclass carrying exactly the fields that are
known at that point of the flow. ``state_to_columns`` and
``state_from_columns`` translate between those values and the flat
``line_message_sessions`` row layout. Decoding keeps nullable text columns
as they are stored, so completing a session rewrites nothing but its status.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, ClassVar, Union

from .errors import SessionTransitionError
from .models import SessionStatus


@dataclass(frozen=True)
class AwaitingEmail:
    status: ClassVar[SessionStatus] = "waiting_for_email"


@dataclass(frozen=True)
class AwaitingUseConfirmation:
    status: ClassVar[SessionStatus] = "waiting_for_use_confirmation"

    account_id: str


@dataclass(frozen=True)
class AwaitingPersonSelection:
    status: ClassVar[SessionStatus] = "waiting_for_person_selection"

    account_id: str


@dataclass(frozen=True)
class AwaitingInputText:
    status: ClassVar[SessionStatus] = "waiting_for_input_text"

    account_id: str
    person_id: str


@dataclass(frozen=True)
class AwaitingGeneratedReply:
    status: ClassVar[SessionStatus] = "waiting_for_generated_reply"

    account_id: str
    person_id: str
    input_text: str | None


@dataclass(frozen=True)
class AwaitingActualReplyText:
    status: ClassVar[SessionStatus] = "waiting_for_actual_reply_text"

    account_id: str
    person_id: str
    input_text: str | None
    generated_reply: str | None


@dataclass(frozen=True)
class Completed:
    status: ClassVar[SessionStatus] = "completed"

    account_id: str | None = None
    person_id: str | None = None
    input_text: str | None = None
    generated_reply: str | None = None


@dataclass(frozen=True)
class UnrecognizedState:
    """A persisted row whose status or columns do not decode to a known state."""

    status: str
    columns: dict[str, Any] = field(default_factory=dict)


SessionState = Union[
    AwaitingEmail,
    AwaitingUseConfirmation,
    AwaitingPersonSelection,
    AwaitingInputText,
    AwaitingGeneratedReply,
    AwaitingActualReplyText,
    Completed,
    UnrecognizedState,
]

_STATUS_RANK: dict[str, int] = {
    "waiting_for_email": 0,
    "waiting_for_use_confirmation": 1,
    "waiting_for_person_selection": 2,
    "waiting_for_input_text": 3,
    "waiting_for_generated_reply": 4,
    "waiting_for_actual_reply_text": 5,
    "completed": 6,
}


def is_terminal(state: SessionState) -> bool:
    return isinstance(state, Completed)


def complete_state(state: SessionState) -> Completed:
    """Terminal state that keeps every field the given state already carried."""
    if isinstance(state, Completed):
        return state
    if isinstance(state, UnrecognizedState):
        return Completed(
            account_id=state.columns.get("user_id"),
            person_id=state.columns.get("selected_person_id"),
            input_text=state.columns.get("input_text"),
            generated_reply=state.columns.get("generated_reply"),
        )
    return Completed(
        account_id=getattr(state, "account_id", None),
        person_id=getattr(state, "person_id", None),
        input_text=getattr(state, "input_text", None),
        generated_reply=getattr(state, "generated_reply", None),
    )


def state_to_columns(state: SessionState) -> dict[str, Any]:
    if isinstance(state, UnrecognizedState):
        return {
            "status": state.status,
            "user_id": state.columns.get("user_id"),
            "selected_person_id": state.columns.get("selected_person_id"),
            "input_text": state.columns.get("input_text"),
            "generated_reply": state.columns.get("generated_reply"),
        }
    return {
        "status": state.status,
        "user_id": getattr(state, "account_id", None),
        "selected_person_id": getattr(state, "person_id", None),
        "input_text": getattr(state, "input_text", None),
        "generated_reply": getattr(state, "generated_reply", None),
    }


def state_from_columns(
    *,
    status: str,
    user_id: str | None,
    selected_person_id: str | None,
    input_text: str | None,
    generated_reply: str | None,
) -> SessionState:
    columns = {
        "user_id": user_id,
        "selected_person_id": selected_person_id,
        "input_text": input_text,
        "generated_reply": generated_reply,
    }
    if status == "waiting_for_email":
        return AwaitingEmail()
    if status == "completed":
        return Completed(
            account_id=user_id,
            person_id=selected_person_id,
            input_text=input_text,
            generated_reply=generated_reply,
        )
    if not user_id:
        return UnrecognizedState(status=status, columns=columns)
    if status == "waiting_for_use_confirmation":
        return AwaitingUseConfirmation(account_id=user_id)
    if status == "waiting_for_person_selection":
        return AwaitingPersonSelection(account_id=user_id)
    if not selected_person_id:
        return UnrecognizedState(status=status, columns=columns)
    if status == "waiting_for_input_text":
        return AwaitingInputText(account_id=user_id, person_id=selected_person_id)
    if status == "waiting_for_generated_reply":
        return AwaitingGeneratedReply(
            account_id=user_id,
            person_id=selected_person_id,
            input_text=input_text,
        )
    if status == "waiting_for_actual_reply_text":
        return AwaitingActualReplyText(
            account_id=user_id,
            person_id=selected_person_id,
            input_text=input_text,
            generated_reply=generated_reply,
        )
    return UnrecognizedState(status=status, columns=columns)


@dataclass(frozen=True)
class SessionRecord:
    conversation_id: str
    state: SessionState
    created_at: datetime
    message_text: str | None = None
    reply_token: str | None = None
    session_id: str | None = None
    version: int = 0

    @property
    def status(self) -> str:
        return self.state.status

    @property
    def is_persisted(self) -> bool:
        return self.session_id is not None

    def advance(self, state: SessionState) -> SessionRecord:
        if isinstance(state, UnrecognizedState):
            raise SessionTransitionError(f"cannot move session into unrecognized status {state.status!r}")
        if not isinstance(state, Completed):
            current_rank = _STATUS_RANK.get(self.status)
            if current_rank is None or _STATUS_RANK[state.status] < current_rank:
                raise SessionTransitionError(f"session cannot move from {self.status} to {state.status}")
        if is_terminal(self.state):
            raise SessionTransitionError("completed sessions cannot change")
        return replace(self, state=state)
