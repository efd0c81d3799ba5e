from __future__ import annotations

import os
from dataclasses import dataclass


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _parse_stub_accounts(value: str | None) -> tuple[tuple[str, str], ...]:
    accounts: list[tuple[str, str]] = []
    for item in _as_csv_tuple(value):
        account_id, _, email = item.partition(":")
        account_id = account_id.strip()
        email = email.strip()
        if account_id and email:
            accounts.append((account_id, email))
    return tuple(accounts)


DEFAULT_CANCEL_KEYWORDS = ("cancel", "stop", "quit")


@dataclass(frozen=True)
class Settings:
    app_name: str = "Reply Assistant"
    api_prefix: str = "/api/v1"
    line_channel_secret: str = ""
    line_channel_access_token: str = ""
    line_api_base_url: str = "https://api.line.me"
    line_sender_type: str = "stub"
    line_timeout_seconds: int = 10
    line_webhook_signature_mode: str = "enforce"
    directory_backend: str = "stub"
    directory_stub_accounts: tuple[tuple[str, str], ...] = ()
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    directory_page_size: int = 1000
    directory_timeout_seconds: int = 10
    reply_generator_type: str = "stub"
    reply_generation_url: str = ""
    reply_generation_timeout_seconds: int = 30
    reply_history_limit: int = 10
    cancel_keywords: tuple[str, ...] = DEFAULT_CANCEL_KEYWORDS
    store_backend: str = "inmemory"
    database_url: str = ""
    runtime_secret_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("REPLY_ASSISTANT_APP_NAME", "Reply Assistant"),
        api_prefix=os.getenv("REPLY_ASSISTANT_API_PREFIX", "/api/v1"),
        line_channel_secret=os.getenv("LINE_CHANNEL_SECRET", ""),
        line_channel_access_token=os.getenv("LINE_CHANNEL_ACCESS_TOKEN", ""),
        line_api_base_url=os.getenv("LINE_API_BASE_URL", "https://api.line.me"),
        line_sender_type=_normalize_mode(
            os.getenv("LINE_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        line_timeout_seconds=_as_int(os.getenv("LINE_TIMEOUT_SECONDS"), 10),
        line_webhook_signature_mode=_normalize_mode(
            os.getenv("LINE_WEBHOOK_SIGNATURE_MODE"),
            default="enforce",
            allowed={"off", "log_only", "enforce"},
        ),
        directory_backend=_normalize_mode(
            os.getenv("DIRECTORY_BACKEND"),
            default="stub",
            allowed={"stub", "supabase"},
        ),
        directory_stub_accounts=_parse_stub_accounts(os.getenv("DIRECTORY_STUB_ACCOUNTS")),
        supabase_url=os.getenv("SUPABASE_URL", ""),
        supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
        directory_page_size=_as_int(os.getenv("DIRECTORY_PAGE_SIZE"), 1000),
        directory_timeout_seconds=_as_int(os.getenv("DIRECTORY_TIMEOUT_SECONDS"), 10),
        reply_generator_type=_normalize_mode(
            os.getenv("REPLY_GENERATOR_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        reply_generation_url=os.getenv("REPLY_GENERATION_URL", ""),
        reply_generation_timeout_seconds=_as_int(os.getenv("REPLY_GENERATION_TIMEOUT_SECONDS"), 30),
        reply_history_limit=max(0, _as_int(os.getenv("REPLY_HISTORY_LIMIT"), 10)),
        cancel_keywords=_as_csv_tuple(os.getenv("CONVERSATION_CANCEL_KEYWORDS")) or DEFAULT_CANCEL_KEYWORDS,
        store_backend=os.getenv("STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.line_webhook_signature_mode == "enforce" and not settings.line_channel_secret.strip():
        issues.append("LINE_CHANNEL_SECRET is required when LINE_WEBHOOK_SIGNATURE_MODE=enforce")
    if settings.line_sender_type == "http" and not settings.line_channel_access_token.strip():
        issues.append("LINE_CHANNEL_ACCESS_TOKEN is required when LINE_SENDER_TYPE=http")
    if settings.reply_generator_type == "http" and not settings.reply_generation_url.strip():
        issues.append("REPLY_GENERATION_URL is required when REPLY_GENERATOR_TYPE=http")
    if settings.directory_backend == "supabase":
        if not settings.supabase_url.strip():
            issues.append("SUPABASE_URL is required when DIRECTORY_BACKEND=supabase")
        if not settings.supabase_service_role_key.strip():
            issues.append("SUPABASE_SERVICE_ROLE_KEY is required when DIRECTORY_BACKEND=supabase")
    if settings.store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when STORE_BACKEND=postgres")
    return tuple(issues)
