from __future__ import annotations

from datetime import datetime, timezone

import pytest

from reply_assistant_web.errors import SessionTransitionError
from reply_assistant_web.sessions import (
    AwaitingActualReplyText,
    AwaitingEmail,
    AwaitingGeneratedReply,
    AwaitingInputText,
    AwaitingPersonSelection,
    AwaitingUseConfirmation,
    Completed,
    SessionRecord,
    UnrecognizedState,
    complete_state,
    state_from_columns,
    state_to_columns,
)


def _record(state) -> SessionRecord:
    return SessionRecord(
        conversation_id="U-user-0001",
        state=state,
        created_at=datetime(2026, 10, 1, tzinfo=timezone.utc),
        session_id="lsess_000001",
        version=1,
    )


def _columns(**overrides):
    columns = {
        "status": "waiting_for_input_text",
        "user_id": "acct-001",
        "selected_person_id": "person-001",
        "input_text": None,
        "generated_reply": None,
    }
    columns.update(overrides)
    return columns


def test_columns_decode_into_typed_states() -> None:
    assert state_from_columns(**_columns(status="waiting_for_email", user_id=None)) == AwaitingEmail()
    assert state_from_columns(**_columns(status="waiting_for_use_confirmation")) == AwaitingUseConfirmation(
        account_id="acct-001"
    )
    assert state_from_columns(**_columns(status="waiting_for_person_selection")) == AwaitingPersonSelection(
        account_id="acct-001"
    )
    assert state_from_columns(**_columns()) == AwaitingInputText(account_id="acct-001", person_id="person-001")
    assert state_from_columns(
        **_columns(status="waiting_for_actual_reply_text", input_text="hi", generated_reply="hello")
    ) == AwaitingActualReplyText(
        account_id="acct-001",
        person_id="person-001",
        input_text="hi",
        generated_reply="hello",
    )


def test_null_text_columns_decode_unchanged() -> None:
    columns = _columns(status="waiting_for_actual_reply_text")

    state = state_from_columns(**columns)

    assert state == AwaitingActualReplyText(
        account_id="acct-001",
        person_id="person-001",
        input_text=None,
        generated_reply=None,
    )
    assert state_to_columns(complete_state(state)) == {**columns, "status": "completed"}


@pytest.mark.parametrize(
    "columns",
    [
        _columns(status="waiting_for_confirmation"),
        _columns(status="waiting_for_input_text", selected_person_id=None),
        _columns(status="waiting_for_use_confirmation", user_id=None),
    ],
)
def test_undecodable_rows_are_unrecognized(columns) -> None:
    state = state_from_columns(**columns)

    assert isinstance(state, UnrecognizedState)
    assert state.status == columns["status"]
    assert state_to_columns(state) == columns


def test_state_to_columns_flattens_fields() -> None:
    state = AwaitingActualReplyText(
        account_id="acct-001",
        person_id="person-001",
        input_text="hi",
        generated_reply="hello",
    )

    assert state_to_columns(state) == {
        "status": "waiting_for_actual_reply_text",
        "user_id": "acct-001",
        "selected_person_id": "person-001",
        "input_text": "hi",
        "generated_reply": "hello",
    }


def test_advance_moves_forward_only() -> None:
    record = _record(AwaitingInputText(account_id="acct-001", person_id="person-001"))

    advanced = record.advance(
        AwaitingGeneratedReply(account_id="acct-001", person_id="person-001", input_text="hi")
    )
    assert advanced.status == "waiting_for_generated_reply"
    assert advanced.session_id == record.session_id
    assert advanced.version == record.version

    with pytest.raises(SessionTransitionError):
        record.advance(AwaitingUseConfirmation(account_id="acct-001"))


def test_completed_sessions_cannot_change() -> None:
    record = _record(Completed(account_id="acct-001"))

    with pytest.raises(SessionTransitionError):
        record.advance(Completed(account_id="acct-001"))


def test_cannot_advance_into_unrecognized_status() -> None:
    record = _record(AwaitingEmail())

    with pytest.raises(SessionTransitionError):
        record.advance(UnrecognizedState(status="waiting_for_confirmation"))


def test_unrecognized_session_can_still_be_completed() -> None:
    record = _record(UnrecognizedState(status="waiting_for_confirmation", columns={"user_id": "acct-001"}))

    completed = record.advance(complete_state(record.state))

    assert completed.state == Completed(account_id="acct-001")


def test_complete_state_keeps_collected_fields() -> None:
    state = AwaitingGeneratedReply(account_id="acct-001", person_id="person-001", input_text="hi")

    assert complete_state(state) == Completed(account_id="acct-001", person_id="person-001", input_text="hi")
    assert complete_state(AwaitingEmail()) == Completed()
