from __future__ import annotations

import uuid
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Iterator, Protocol

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, create_engine, delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .errors import DependencyError
from .sessions import SessionRecord, is_terminal, state_from_columns, state_to_columns


class StoreError(DependencyError):
    """Raised when the backing database rejects or fails a read or write."""


class SessionConflictError(StoreError):
    """Raised when a session write loses a race with another writer."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class AccountProfile:
    account_id: str
    conversation_id: str
    display_name: str
    created_at: datetime
    profile_id: str | None = None


@dataclass(frozen=True)
class Person:
    person_id: str
    account_id: str
    name: str
    created_at: datetime


@dataclass(frozen=True)
class ReplyExample:
    person_id: str
    account_id: str
    input_text: str
    reply_text: str
    created_at: datetime
    example_id: str | None = None


@dataclass(frozen=True)
class TurnCommit:
    """Every write produced by one inbound event, applied together or not at all."""

    session: SessionRecord | None = None
    new_profile: AccountProfile | None = None
    new_example: ReplyExample | None = None

    @property
    def is_empty(self) -> bool:
        return self.session is None and self.new_profile is None and self.new_example is None


class AssistantStore(Protocol):
    def reset(self) -> None: ...

    def find_active_session(self, conversation_id: str) -> SessionRecord | None: ...

    def find_profile_by_conversation(self, conversation_id: str) -> AccountProfile | None: ...

    def find_profile_by_account(self, account_id: str) -> AccountProfile | None: ...

    def list_people(self, account_id: str) -> list[Person]: ...

    def add_person(self, *, account_id: str, name: str, created_at: datetime | None = None) -> Person: ...

    def list_recent_examples(self, person_id: str, *, limit: int) -> list[ReplyExample]: ...

    def list_examples(self, *, account_id: str | None = None) -> list[ReplyExample]: ...

    def commit_turn(self, commit: TurnCommit) -> SessionRecord | None: ...


class InMemoryAssistantStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._session_counter = count(1)
        self._profile_counter = count(1)
        self._person_counter = count(1)
        self._example_counter = count(1)
        self._sessions: dict[str, SessionRecord] = {}
        self._profiles: dict[str, AccountProfile] = {}
        self._people: dict[str, Person] = {}
        self._examples: list[ReplyExample] = []

    def reset(self) -> None:
        with self._lock:
            self._session_counter = count(1)
            self._profile_counter = count(1)
            self._person_counter = count(1)
            self._example_counter = count(1)
            self._sessions.clear()
            self._profiles.clear()
            self._people.clear()
            self._examples.clear()

    def find_active_session(self, conversation_id: str) -> SessionRecord | None:
        with self._lock:
            return self._active_session_locked(conversation_id)

    def _active_session_locked(self, conversation_id: str) -> SessionRecord | None:
        candidates = [
            record
            for record in self._sessions.values()
            if record.conversation_id == conversation_id and not is_terminal(record.state)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda record: (record.created_at, record.session_id or ""))

    def find_profile_by_conversation(self, conversation_id: str) -> AccountProfile | None:
        with self._lock:
            for profile in self._profiles.values():
                if profile.conversation_id == conversation_id:
                    return profile
            return None

    def find_profile_by_account(self, account_id: str) -> AccountProfile | None:
        with self._lock:
            return self._profiles.get(account_id)

    def list_people(self, account_id: str) -> list[Person]:
        with self._lock:
            owned = [person for person in self._people.values() if person.account_id == account_id]
        return sorted(owned, key=lambda person: (person.created_at, person.person_id))

    def add_person(self, *, account_id: str, name: str, created_at: datetime | None = None) -> Person:
        with self._lock:
            person = Person(
                person_id=f"person_{next(self._person_counter):06d}",
                account_id=account_id,
                name=name,
                created_at=created_at or _now_utc(),
            )
            self._people[person.person_id] = person
            return person

    def list_recent_examples(self, person_id: str, *, limit: int) -> list[ReplyExample]:
        with self._lock:
            matching = [example for example in self._examples if example.person_id == person_id]
        ordered = sorted(
            matching,
            key=lambda example: (example.created_at, example.example_id or ""),
            reverse=True,
        )
        return ordered[:limit]

    def list_examples(self, *, account_id: str | None = None) -> list[ReplyExample]:
        with self._lock:
            return [
                example
                for example in self._examples
                if account_id is None or example.account_id == account_id
            ]

    def commit_turn(self, commit: TurnCommit) -> SessionRecord | None:
        with self._lock:
            profile = commit.new_profile
            if profile is not None:
                if profile.account_id in self._profiles:
                    raise StoreError(f"profile already exists for account {profile.account_id}")
                if any(item.conversation_id == profile.conversation_id for item in self._profiles.values()):
                    raise StoreError("conversation identity is already linked to an account")

            record = commit.session
            stored: SessionRecord | None = None
            if record is not None:
                if not record.is_persisted:
                    active = self._active_session_locked(record.conversation_id)
                    if active is not None and not is_terminal(record.state):
                        raise SessionConflictError("an active session already exists for this identity")
                    stored = replace(
                        record,
                        session_id=f"lsess_{next(self._session_counter):06d}",
                        version=1,
                    )
                else:
                    current = self._sessions.get(record.session_id or "")
                    if current is None or current.version != record.version:
                        raise SessionConflictError(f"session {record.session_id} was modified concurrently")
                    stored = replace(record, version=record.version + 1)

            if profile is not None:
                self._profiles[profile.account_id] = replace(
                    profile,
                    profile_id=f"profile_{next(self._profile_counter):06d}",
                )
            if stored is not None:
                self._sessions[stored.session_id or ""] = stored
            if commit.new_example is not None:
                self._examples.append(
                    replace(
                        commit.new_example,
                        example_id=f"example_{next(self._example_counter):06d}",
                    )
                )
            return stored


class AssistantStoreBase(DeclarativeBase):
    pass


class _SessionRow(AssistantStoreBase):
    __tablename__ = "line_message_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    line_user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    reply_token: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    message_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    selected_person_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    input_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    generated_reply: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _UserProfileRow(AssistantStoreBase):
    __tablename__ = "user_profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    line_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    display_name: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _PersonRow(AssistantStoreBase):
    __tablename__ = "people"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ReplyExampleRow(AssistantStoreBase):
    __tablename__ = "reply_profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    person_id: Mapped[str] = mapped_column(String(64), ForeignKey("people.id"), nullable=False, index=True)
    input_text: Mapped[str] = mapped_column(Text, nullable=False)
    reply_text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


@contextmanager
def _store_errors() -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise StoreError(f"database operation failed: {exc.__class__.__name__}") from exc


class SqlAlchemyAssistantStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            AssistantStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with _store_errors(), self._session() as session:
            with session.begin():
                session.execute(delete(_ReplyExampleRow))
                session.execute(delete(_PersonRow))
                session.execute(delete(_UserProfileRow))
                session.execute(delete(_SessionRow))

    def find_active_session(self, conversation_id: str) -> SessionRecord | None:
        with _store_errors(), self._session() as session:
            row = session.scalar(
                select(_SessionRow)
                .where(_SessionRow.line_user_id == conversation_id)
                .where(_SessionRow.status != "completed")
                .order_by(_SessionRow.created_at.desc())
                .limit(1)
            )
            return self._session_record(row) if row is not None else None

    def find_profile_by_conversation(self, conversation_id: str) -> AccountProfile | None:
        with _store_errors(), self._session() as session:
            row = session.scalar(
                select(_UserProfileRow).where(_UserProfileRow.line_user_id == conversation_id).limit(1)
            )
            return self._profile_record(row) if row is not None else None

    def find_profile_by_account(self, account_id: str) -> AccountProfile | None:
        with _store_errors(), self._session() as session:
            row = session.scalar(
                select(_UserProfileRow).where(_UserProfileRow.user_id == account_id).limit(1)
            )
            return self._profile_record(row) if row is not None else None

    def list_people(self, account_id: str) -> list[Person]:
        with _store_errors(), self._session() as session:
            rows = session.scalars(
                select(_PersonRow)
                .where(_PersonRow.user_id == account_id)
                .order_by(_PersonRow.created_at.asc())
            ).all()
            return [self._person_record(row) for row in rows]

    def add_person(self, *, account_id: str, name: str, created_at: datetime | None = None) -> Person:
        with _store_errors(), self._session() as session:
            with session.begin():
                row = _PersonRow(
                    id=str(uuid.uuid4()),
                    user_id=account_id,
                    name=name,
                    created_at=created_at or _now_utc(),
                )
                session.add(row)
                session.flush()
                return self._person_record(row)

    def list_recent_examples(self, person_id: str, *, limit: int) -> list[ReplyExample]:
        with _store_errors(), self._session() as session:
            rows = session.scalars(
                select(_ReplyExampleRow)
                .where(_ReplyExampleRow.person_id == person_id)
                .order_by(_ReplyExampleRow.created_at.desc())
                .limit(limit)
            ).all()
            return [self._example_record(row) for row in rows]

    def list_examples(self, *, account_id: str | None = None) -> list[ReplyExample]:
        with _store_errors(), self._session() as session:
            query = select(_ReplyExampleRow).order_by(_ReplyExampleRow.created_at.asc())
            if account_id is not None:
                query = query.where(_ReplyExampleRow.user_id == account_id)
            return [self._example_record(row) for row in session.scalars(query).all()]

    def commit_turn(self, commit: TurnCommit) -> SessionRecord | None:
        now = _now_utc()
        with _store_errors(), self._session() as session:
            with session.begin():
                profile = commit.new_profile
                if profile is not None:
                    session.add(
                        _UserProfileRow(
                            id=str(uuid.uuid4()),
                            user_id=profile.account_id,
                            line_user_id=profile.conversation_id,
                            display_name=profile.display_name,
                            created_at=profile.created_at,
                        )
                    )

                stored: SessionRecord | None = None
                record = commit.session
                if record is not None:
                    columns = state_to_columns(record.state)
                    if not record.is_persisted:
                        if not is_terminal(record.state):
                            existing = session.scalar(
                                select(_SessionRow.id)
                                .where(_SessionRow.line_user_id == record.conversation_id)
                                .where(_SessionRow.status != "completed")
                                .limit(1)
                            )
                            if existing is not None:
                                raise SessionConflictError("an active session already exists for this identity")
                        session_id = str(uuid.uuid4())
                        session.add(
                            _SessionRow(
                                id=session_id,
                                line_user_id=record.conversation_id,
                                reply_token=record.reply_token,
                                message_text=record.message_text,
                                version=1,
                                created_at=record.created_at,
                                updated_at=now,
                                **columns,
                            )
                        )
                        stored = replace(record, session_id=session_id, version=1)
                    else:
                        result = session.execute(
                            update(_SessionRow)
                            .where(_SessionRow.id == record.session_id)
                            .where(_SessionRow.version == record.version)
                            .values(version=record.version + 1, updated_at=now, **columns)
                        )
                        if result.rowcount != 1:
                            raise SessionConflictError(f"session {record.session_id} was modified concurrently")
                        stored = replace(record, version=record.version + 1)

                example = commit.new_example
                if example is not None:
                    example_id = str(uuid.uuid4())
                    session.add(
                        _ReplyExampleRow(
                            id=example_id,
                            user_id=example.account_id,
                            person_id=example.person_id,
                            input_text=example.input_text,
                            reply_text=example.reply_text,
                            created_at=example.created_at,
                        )
                    )
                session.flush()
                return stored

    @staticmethod
    def _session_record(row: _SessionRow) -> SessionRecord:
        return SessionRecord(
            session_id=row.id,
            conversation_id=row.line_user_id,
            state=state_from_columns(
                status=row.status,
                user_id=row.user_id,
                selected_person_id=row.selected_person_id,
                input_text=row.input_text,
                generated_reply=row.generated_reply,
            ),
            message_text=row.message_text,
            reply_token=row.reply_token,
            created_at=_coerce_utc(row.created_at),
            version=row.version,
        )

    @staticmethod
    def _profile_record(row: _UserProfileRow) -> AccountProfile:
        return AccountProfile(
            profile_id=row.id,
            account_id=row.user_id,
            conversation_id=row.line_user_id or "",
            display_name=row.display_name,
            created_at=_coerce_utc(row.created_at),
        )

    @staticmethod
    def _person_record(row: _PersonRow) -> Person:
        return Person(
            person_id=row.id,
            account_id=row.user_id,
            name=row.name,
            created_at=_coerce_utc(row.created_at),
        )

    @staticmethod
    def _example_record(row: _ReplyExampleRow) -> ReplyExample:
        return ReplyExample(
            example_id=row.id,
            person_id=row.person_id,
            account_id=row.user_id,
            input_text=row.input_text,
            reply_text=row.reply_text,
            created_at=_coerce_utc(row.created_at),
        )


def create_assistant_store(*, backend: str, database_url: str) -> AssistantStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyAssistantStore(database_url)
    if normalized == "inmemory":
        return InMemoryAssistantStore()
    raise RuntimeError(f"unsupported STORE_BACKEND: {backend}")
