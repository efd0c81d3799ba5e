from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

SessionStatus = Literal[
    "waiting_for_email",
    "waiting_for_use_confirmation",
    "waiting_for_person_selection",
    "waiting_for_input_text",
    "waiting_for_generated_reply",
    "waiting_for_actual_reply_text",
    "completed",
]
SignatureMode = Literal["off", "log_only", "enforce"]
DeliveryStatus = Literal["sent", "failed", "dry_run"]
EventOutcome = Literal["processed", "skipped", "failed"]


class LineMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    id: str | None = None
    text: str | None = None


class LineSource(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: str = "user"
    user_id: str | None = Field(default=None, alias="userId")


class LineEvent(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: str
    message: LineMessage | None = None
    source: LineSource | None = None
    reply_token: str | None = Field(default=None, alias="replyToken")
    timestamp: int | None = None

    def text_payload(self) -> tuple[str, str, str] | None:
        """Return ``(conversation_id, text, reply_token)`` for text message events, else ``None``."""
        if self.type != "message" or self.message is None or self.message.type != "text":
            return None
        if self.source is None or not self.source.user_id:
            return None
        if self.message.text is None or not self.reply_token:
            return None
        return self.source.user_id, self.message.text, self.reply_token


class LineWebhookBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    destination: str | None = None
    events: list[LineEvent] = Field(default_factory=list)

    @field_validator("events", mode="before")
    @classmethod
    def _null_events(cls, value: object) -> object:
        return [] if value is None else value


class LineWebhookResponse(BaseModel):
    status: Literal["ok"] = "ok"
    received: int
    processed: int
    skipped: int
    failed: int


class RuntimeSecurityStatusResponse(BaseModel):
    runtime_secret_guard_mode: Literal["off", "warn", "enforce"]
    line_webhook_signature_mode: SignatureMode
    line_sender_type: str
    directory_backend: str
    reply_generator_type: str
    store_backend: str
    runtime_secret_issues: list[str]
