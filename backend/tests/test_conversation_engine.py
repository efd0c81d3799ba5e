from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from reply_assistant_web.conversation_policy import (
    ACCOUNT_LINKED_ELSEWHERE_TEXT,
    ACTUAL_REPLY_PROMPT_TEXT,
    CANCELLED_TEXT,
    DECLINED_TEXT,
    EMAIL_INVALID_TEXT,
    EMAIL_NOT_REGISTERED_TEXT,
    EMAIL_REPROMPT_TEXT,
    EMAIL_REQUEST_TEXT,
    EXAMPLE_SAVED_TEXT,
    GENERATION_FALLBACK_TEXT,
    INPUT_TEXT_PROMPT,
    NO_PEOPLE_TEXT,
    PERSON_SELECTION_REPROMPT_TEXT,
    PROCESSING_TEXT,
    PROFILE_REGISTRATION_FAILED_TEXT,
    USE_CONFIRMATION_TEXT,
    VERIFIED_USE_CONFIRMATION_TEXT,
    YES_NO_REPROMPT_TEXT,
    suggestion_text,
)
from reply_assistant_web.directory import StubAccountDirectory
from reply_assistant_web.engine import ConversationEngine
from reply_assistant_web.reply_generation import HttpReplyGenerator, ReplyGenerationError, StubReplyGenerator
from reply_assistant_web.sessions import (
    AwaitingGeneratedReply,
    Completed,
    SessionRecord,
    UnrecognizedState,
    complete_state,
)
from reply_assistant_web.store import (
    AccountProfile,
    InMemoryAssistantStore,
    Person,
    ReplyExample,
    SessionConflictError,
    StoreError,
    TurnCommit,
)

CID = "U4af4980629a1b2c3"
OTHER_CID = "U9f00aa11bb22cc33"
ACCOUNT_ID = "acct-001"
EMAIL = "foo@bar.com"
SUGGESTION = "Sure, 3pm works for me."


class _Clock:
    def __init__(self) -> None:
        self._now = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self._now += timedelta(seconds=1)
        return self._now


class _FlakyGenerator:
    def __init__(self) -> None:
        self.fail = True
        self.calls: list[str] = []

    def generate(self, input_text, history) -> str:
        self.calls.append(input_text)
        if self.fail:
            raise ReplyGenerationError("reply generation failed: connection refused")
        return SUGGESTION


class _ProfileFailingStore(InMemoryAssistantStore):
    def commit_turn(self, commit: TurnCommit):
        if commit.new_profile is not None:
            raise StoreError("database operation failed: IntegrityError")
        return super().commit_turn(commit)


def _engine(*, store=None, generator=None, accounts=((ACCOUNT_ID, EMAIL),)):
    store = store if store is not None else InMemoryAssistantStore()
    directory = StubAccountDirectory(accounts)
    generator = generator if generator is not None else StubReplyGenerator(reply=SUGGESTION)
    engine = ConversationEngine(store=store, directory=directory, generator=generator, clock=_Clock())
    return engine, store, directory, generator


def _send(engine: ConversationEngine, text: str, *, cid: str = CID):
    return engine.handle_text(conversation_id=cid, text=text, reply_token=f"rt-{text}")


def _texts(outcome) -> list[str]:
    return [message.text for message in outcome.messages]


def _link(engine: ConversationEngine, *, cid: str = CID) -> None:
    _send(engine, "hello", cid=cid)
    _send(engine, EMAIL, cid=cid)


def _link_and_select(engine: ConversationEngine, store: InMemoryAssistantStore) -> Person:
    _link(engine)
    person = store.add_person(account_id=ACCOUNT_ID, name="Alice")
    _send(engine, "yes")
    _send(engine, f"select:{person.person_id}")
    return person


def test_first_message_from_unlinked_identity_requests_email() -> None:
    engine, store, _, _ = _engine()

    outcome = _send(engine, "hello there")

    assert outcome.status == "waiting_for_email"
    assert _texts(outcome) == [EMAIL_REQUEST_TEXT]
    assert store.find_active_session(CID).status == "waiting_for_email"
    assert store.list_examples() == []


def test_invalid_email_reprompts_without_state_change() -> None:
    engine, store, directory, _ = _engine()
    _send(engine, "hello")

    for candidate in ("not-an-email", "a@@b.com", "foo@bar", "foo bar@baz.com"):
        outcome = _send(engine, candidate)
        assert _texts(outcome) == [EMAIL_INVALID_TEXT]

    assert directory.lookups == []
    assert store.find_active_session(CID).status == "waiting_for_email"


def test_unregistered_email_is_idempotent_and_creates_no_profile() -> None:
    engine, store, directory, _ = _engine(accounts=())
    _send(engine, "hello")

    first = _send(engine, "nobody@example.com")
    second = _send(engine, "nobody@example.com")

    assert _texts(first) == [EMAIL_NOT_REGISTERED_TEXT]
    assert _texts(second) == [EMAIL_NOT_REGISTERED_TEXT]
    assert directory.lookups == ["nobody@example.com", "nobody@example.com"]
    assert store.find_profile_by_conversation(CID) is None
    assert store.find_active_session(CID).status == "waiting_for_email"


def test_registered_email_links_account_and_asks_for_confirmation() -> None:
    engine, store, _, _ = _engine()
    _send(engine, "hello")

    outcome = _send(engine, EMAIL)

    assert outcome.status == "waiting_for_use_confirmation"
    assert _texts(outcome) == [VERIFIED_USE_CONFIRMATION_TEXT]
    assert [item.value for item in outcome.messages[0].quick_replies] == ["yes", "no"]
    profile = store.find_profile_by_conversation(CID)
    assert profile is not None
    assert profile.account_id == ACCOUNT_ID
    assert profile.display_name == EMAIL


def test_non_email_state_while_unlinked_reprompts_for_email() -> None:
    engine, store, _, _ = _engine()
    store.commit_turn(
        TurnCommit(
            session=SessionRecord(
                conversation_id=CID,
                state=UnrecognizedState(status="waiting_for_confirmation"),
                created_at=datetime(2026, 10, 1, tzinfo=timezone.utc),
            )
        )
    )

    outcome = _send(engine, "hello")

    assert _texts(outcome) == [EMAIL_REPROMPT_TEXT]
    assert store.find_active_session(CID).status == "waiting_for_confirmation"


def test_account_linked_to_another_identity_is_not_relinked() -> None:
    engine, store, _, _ = _engine()
    _link(engine, cid=OTHER_CID)

    _send(engine, "hello")
    outcome = _send(engine, EMAIL)

    assert _texts(outcome) == [ACCOUNT_LINKED_ELSEWHERE_TEXT]
    assert store.find_profile_by_account(ACCOUNT_ID).conversation_id == OTHER_CID
    assert store.find_active_session(CID).status == "waiting_for_email"


def test_profile_registration_failure_leaves_session_waiting_for_email() -> None:
    engine, store, _, _ = _engine(store=_ProfileFailingStore())
    _send(engine, "hello")

    outcome = _send(engine, EMAIL)

    assert _texts(outcome) == [PROFILE_REGISTRATION_FAILED_TEXT]
    assert store.find_active_session(CID).status == "waiting_for_email"


def test_end_to_end_flow_records_one_reply_example() -> None:
    engine, store, _, generator = _engine()

    assert _send(engine, "hello").status == "waiting_for_email"
    assert _send(engine, EMAIL).status == "waiting_for_use_confirmation"

    first = store.add_person(account_id=ACCOUNT_ID, name="Alice", created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
    second = store.add_person(account_id=ACCOUNT_ID, name="Bob", created_at=datetime(2026, 1, 2, tzinfo=timezone.utc))

    listed = _send(engine, "yes")
    assert listed.status == "waiting_for_person_selection"
    assert [(item.label, item.value) for item in listed.messages[0].quick_replies] == [
        ("Alice", f"select:{first.person_id}"),
        ("Bob", f"select:{second.person_id}"),
    ]

    selected = _send(engine, f"select:{second.person_id}")
    assert selected.status == "waiting_for_input_text"
    assert _texts(selected) == [INPUT_TEXT_PROMPT]

    generated = _send(engine, "remind about meeting")
    assert generated.status == "waiting_for_actual_reply_text"
    assert generator.calls == [("remind about meeting", ())]
    assert _texts(generated) == [suggestion_text(SUGGESTION), ACTUAL_REPLY_PROMPT_TEXT]

    saved = _send(engine, "Sure, see you then")
    assert saved.status == "completed"
    assert _texts(saved) == [EXAMPLE_SAVED_TEXT]

    examples = store.list_examples()
    assert len(examples) == 1
    assert examples[0].input_text == "remind about meeting"
    assert examples[0].reply_text == "Sure, see you then"
    assert examples[0].person_id == second.person_id
    assert examples[0].account_id == ACCOUNT_ID
    assert store.find_active_session(CID) is None


def test_linked_identity_starts_new_session_with_triggering_text() -> None:
    engine, store, _, _ = _engine()
    _link(engine)
    _send(engine, "no")

    outcome = _send(engine, "Are we still on for Friday?")

    assert outcome.status == "waiting_for_use_confirmation"
    assert _texts(outcome) == [USE_CONFIRMATION_TEXT]
    assert outcome.session.message_text == "Are we still on for Friday?"
    assert outcome.session.reply_token == "rt-Are we still on for Friday?"


def test_declining_use_completes_session() -> None:
    engine, store, _, _ = _engine()
    _link(engine)

    outcome = _send(engine, "no")

    assert outcome.status == "completed"
    assert _texts(outcome) == [DECLINED_TEXT]
    assert store.find_active_session(CID) is None


def test_unclear_use_answer_reprompts() -> None:
    engine, store, _, _ = _engine()
    _link(engine)

    outcome = _send(engine, "maybe later")

    assert _texts(outcome) == [YES_NO_REPROMPT_TEXT]
    assert store.find_active_session(CID).status == "waiting_for_use_confirmation"


def test_yes_without_people_keeps_session_open() -> None:
    engine, store, _, _ = _engine()
    _link(engine)

    outcome = _send(engine, "yes")

    assert _texts(outcome) == [NO_PEOPLE_TEXT]
    assert store.find_active_session(CID).status == "waiting_for_use_confirmation"


def test_selection_must_reference_an_owned_person() -> None:
    engine, store, _, _ = _engine()
    _link(engine)
    store.add_person(account_id=ACCOUNT_ID, name="Alice")
    stranger = store.add_person(account_id="acct-999", name="Mallory")
    _send(engine, "yes")

    for text in ("Alice", f"select:{stranger.person_id}", "select:"):
        outcome = _send(engine, text)
        assert _texts(outcome) == [PERSON_SELECTION_REPROMPT_TEXT]

    assert store.find_active_session(CID).status == "waiting_for_person_selection"


def test_generation_runs_with_empty_history() -> None:
    engine, store, _, generator = _engine()
    _link_and_select(engine, store)

    _send(engine, "running late")

    assert generator.calls == [("running late", ())]


def test_generation_history_is_ten_most_recent_examples() -> None:
    engine, store, _, generator = _engine()
    person = _link_and_select(engine, store)
    base = datetime(2026, 9, 1, tzinfo=timezone.utc)
    for index in range(12):
        store.commit_turn(
            TurnCommit(
                new_example=ReplyExample(
                    person_id=person.person_id,
                    account_id=ACCOUNT_ID,
                    input_text=f"input {index}",
                    reply_text=f"reply {index}",
                    created_at=base + timedelta(hours=index),
                )
            )
        )

    _send(engine, "dinner plans")

    _, history = generator.calls[0]
    assert len(history) == 10
    assert [example.input_text for example in history[:2]] == ["input 11", "input 10"]
    assert history[-1].input_text == "input 2"


def test_generation_failure_leaves_session_for_retry() -> None:
    generator = _FlakyGenerator()
    engine, store, _, _ = _engine(generator=generator)
    _link_and_select(engine, store)

    with pytest.raises(ReplyGenerationError):
        _send(engine, "remind about meeting")
    assert store.find_active_session(CID).status == "waiting_for_input_text"

    generator.fail = False
    outcome = _send(engine, "remind about meeting")

    assert outcome.status == "waiting_for_actual_reply_text"
    assert generator.calls == ["remind about meeting", "remind about meeting"]


@patch("reply_assistant_web.reply_generation.urllib.request.urlopen")
def test_malformed_generation_response_falls_back(mock_urlopen: MagicMock) -> None:
    response = MagicMock()
    response.read.return_value = b"<html>502 Bad Gateway</html>"
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    mock_urlopen.return_value = response
    engine, store, _, _ = _engine(generator=HttpReplyGenerator(url="https://generate.example.test/api/reply"))
    _link_and_select(engine, store)

    outcome = _send(engine, "remind about meeting")

    assert outcome.status == "waiting_for_actual_reply_text"
    assert _texts(outcome)[0] == suggestion_text(GENERATION_FALLBACK_TEXT)
    sent = json.loads(mock_urlopen.call_args[0][0].data.decode("utf-8"))
    assert sent == {"inputText": "remind about meeting", "history": []}

    saved = _send(engine, "See you at 3")
    assert saved.status == "completed"
    assert store.list_examples()[0].reply_text == "See you at 3"


def test_session_left_waiting_for_generated_reply_resumes_generation() -> None:
    engine, store, _, generator = _engine()
    person = store.add_person(account_id=ACCOUNT_ID, name="Alice")
    store.commit_turn(
        TurnCommit(
            new_profile=AccountProfile(
                account_id=ACCOUNT_ID,
                conversation_id=CID,
                display_name=EMAIL,
                created_at=datetime(2026, 10, 1, tzinfo=timezone.utc),
            ),
            session=SessionRecord(
                conversation_id=CID,
                state=AwaitingGeneratedReply(
                    account_id=ACCOUNT_ID,
                    person_id=person.person_id,
                    input_text="remind about meeting",
                ),
                created_at=datetime(2026, 10, 1, tzinfo=timezone.utc),
            ),
        )
    )

    outcome = _send(engine, "anything")

    assert outcome.status == "waiting_for_actual_reply_text"
    assert generator.calls == [("remind about meeting", ())]


def test_unrecognized_status_answers_processing_without_change() -> None:
    engine, store, _, _ = _engine()
    store.commit_turn(
        TurnCommit(
            new_profile=AccountProfile(
                account_id=ACCOUNT_ID,
                conversation_id=CID,
                display_name=EMAIL,
                created_at=datetime(2026, 10, 1, tzinfo=timezone.utc),
            ),
            session=SessionRecord(
                conversation_id=CID,
                state=UnrecognizedState(status="waiting_for_confirmation", columns={"user_id": ACCOUNT_ID}),
                created_at=datetime(2026, 10, 1, tzinfo=timezone.utc),
            ),
        )
    )

    outcome = _send(engine, "hello")

    assert _texts(outcome) == [PROCESSING_TEXT]
    assert store.find_active_session(CID).status == "waiting_for_confirmation"


@pytest.mark.parametrize("keyword", ["cancel", "  stop  ", "quit"])
def test_cancel_keyword_completes_session_and_keeps_fields(keyword: str) -> None:
    engine, store, _, _ = _engine()
    person = _link_and_select(engine, store)
    before = store.find_active_session(CID)

    outcome = _send(engine, keyword)

    assert _texts(outcome) == [CANCELLED_TEXT]
    assert store.find_active_session(CID) is None
    after = outcome.session
    assert after.session_id == before.session_id
    assert after.state == Completed(account_id=ACCOUNT_ID, person_id=person.person_id)
    assert after.message_text == before.message_text
    assert after.created_at == before.created_at


def test_cancel_while_waiting_for_email() -> None:
    engine, store, directory, _ = _engine()
    _send(engine, "hello")

    outcome = _send(engine, "cancel")

    assert _texts(outcome) == [CANCELLED_TEXT]
    assert outcome.status == "completed"
    assert directory.lookups == []
    assert _send(engine, "hello again").status == "waiting_for_email"


def test_cancel_without_session_only_acknowledges() -> None:
    engine, store, _, _ = _engine()

    outcome = _send(engine, "cancel")

    assert _texts(outcome) == [CANCELLED_TEXT]
    assert outcome.session is None
    assert store.find_active_session(CID) is None


def test_stale_session_write_is_rejected() -> None:
    engine, store, _, _ = _engine()
    _send(engine, "hello")
    stale = store.find_active_session(CID)
    store.commit_turn(TurnCommit(session=stale.advance(complete_state(stale.state))))

    with pytest.raises(SessionConflictError):
        store.commit_turn(TurnCommit(session=stale.advance(complete_state(stale.state))))


def test_second_open_session_for_identity_is_rejected() -> None:
    _, store, _, _ = _engine()
    record = SessionRecord(
        conversation_id=CID,
        state=AwaitingGeneratedReply(account_id=ACCOUNT_ID, person_id="p-1", input_text="x"),
        created_at=datetime(2026, 10, 1, tzinfo=timezone.utc),
    )
    store.commit_turn(TurnCommit(session=record))

    with pytest.raises(SessionConflictError):
        store.commit_turn(TurnCommit(session=record))


def test_cancel_keyword_must_match_exactly() -> None:
    engine, store, _, _ = _engine()
    _link(engine)

    outcome = _send(engine, "Cancel")

    assert _texts(outcome) == [YES_NO_REPROMPT_TEXT]
    assert store.find_active_session(CID).status == "waiting_for_use_confirmation"


def test_person_list_beyond_quick_reply_limit_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    engine, store, _, _ = _engine()
    _link(engine)
    for index in range(15):
        store.add_person(account_id=ACCOUNT_ID, name=f"Person {index}")

    with caplog.at_level("WARNING", logger="reply_assistant_web.engine"):
        outcome = _send(engine, "yes")

    assert outcome.status == "waiting_for_person_selection"
    assert "account has 15 persons; only the first 13 can be offered" in caplog.text
