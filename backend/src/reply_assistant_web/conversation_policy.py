from __future__ import annotations

import re
from typing import Iterable

YES_TEXT = "yes"
NO_TEXT = "no"
SELECTION_PREFIX = "select:"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

CANCELLED_TEXT = "Ended. Use me again whenever you need."
EMAIL_REQUEST_TEXT = "Hello! To use this bot, please enter your email address."
EMAIL_REPROMPT_TEXT = "Please send your email address."
EMAIL_INVALID_TEXT = "Please enter a valid email address."
EMAIL_NOT_REGISTERED_TEXT = "This email address is not registered. Please contact the administrator."
ACCOUNT_LINKED_ELSEWHERE_TEXT = (
    "This account is already linked to another chat. Please contact the administrator."
)
PROFILE_REGISTRATION_FAILED_TEXT = "Profile registration failed. Please contact the administrator."
VERIFIED_USE_CONFIRMATION_TEXT = "Verification complete. Would you like to use the reply assistant?"
USE_CONFIRMATION_TEXT = "Would you like to use the reply assistant?"
YES_NO_REPROMPT_TEXT = 'Please answer "yes" or "no".'
NO_PEOPLE_TEXT = "No persons are registered. Please add a person on the web."
PERSON_SELECTION_TEXT = "Whose message is this? Please choose from the options below."
PERSON_SELECTION_REPROMPT_TEXT = "Please choose a person from the options."
INPUT_TEXT_PROMPT = "What should the reply be about? Please enter the message."
ACTUAL_REPLY_PROMPT_TEXT = "Please send the message you will actually send."
DECLINED_TEXT = "Understood. Let me know if you need anything else."
EXAMPLE_SAVED_TEXT = "Message saved. Thank you!"
PROCESSING_TEXT = "Processing, please wait."
SYSTEM_ERROR_TEXT = "A system error occurred."
GENERATION_FALLBACK_TEXT = "Reply generation failed."


def is_cancel_command(text: str, keywords: Iterable[str]) -> bool:
    normalized = text.strip()
    return any(normalized == keyword.strip() for keyword in keywords)


def is_affirmative(text: str) -> bool:
    return text.strip() == YES_TEXT


def is_negative(text: str) -> bool:
    return text.strip() == NO_TEXT


def is_valid_email(text: str) -> bool:
    return bool(_EMAIL_RE.match(text))


def selection_value(person_id: str) -> str:
    return f"{SELECTION_PREFIX}{person_id}"


def parse_selection(text: str) -> str | None:
    if not text.startswith(SELECTION_PREFIX):
        return None
    person_id = text[len(SELECTION_PREFIX):].strip()
    return person_id or None


def suggestion_text(generated_reply: str) -> str:
    return f"Suggested reply:\n{generated_reply}"


def mask_email(email: str) -> str:
    normalized = email.strip()
    if "@" not in normalized:
        return "***"
    local, domain = normalized.split("@", 1)
    if len(local) <= 1:
        return f"*@{domain}"
    return f"{local[0]}***@{domain}"


def mask_identity(conversation_id: str) -> str:
    normalized = conversation_id.strip()
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-4:]}"
