from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from .config import Settings, get_settings, runtime_secret_issues
from .directory import AccountDirectory, StubAccountDirectory, SupabaseAccountDirectory
from .dispatcher import EventDispatcher
from .engine import ConversationEngine
from .line_messaging import HttpLineReplySender, ReplySender, StubReplySender
from .models import LineWebhookBody, LineWebhookResponse, RuntimeSecurityStatusResponse
from .reply_generation import HttpReplyGenerator, ReplyGenerator, StubReplyGenerator
from .store import AssistantStore, create_assistant_store
from .webhook_security import verify_line_signature

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["reply-assistant"])


def _create_reply_sender(settings: Settings) -> ReplySender:
    if settings.line_sender_type == "http":
        return HttpLineReplySender(
            access_token=settings.line_channel_access_token,
            base_url=settings.line_api_base_url,
            timeout_seconds=settings.line_timeout_seconds,
        )
    return StubReplySender()


def _create_directory(settings: Settings) -> AccountDirectory:
    if settings.directory_backend == "supabase":
        return SupabaseAccountDirectory(
            base_url=settings.supabase_url,
            service_role_key=settings.supabase_service_role_key,
            page_size=settings.directory_page_size,
            timeout_seconds=settings.directory_timeout_seconds,
        )
    return StubAccountDirectory(settings.directory_stub_accounts)


def _create_generator(settings: Settings) -> ReplyGenerator:
    if settings.reply_generator_type == "http":
        return HttpReplyGenerator(
            url=settings.reply_generation_url,
            timeout_seconds=settings.reply_generation_timeout_seconds,
        )
    return StubReplyGenerator()


def _create_engine(
    settings: Settings,
    *,
    store: AssistantStore,
    directory: AccountDirectory,
    generator: ReplyGenerator,
) -> ConversationEngine:
    return ConversationEngine(
        store=store,
        directory=directory,
        generator=generator,
        cancel_keywords=settings.cancel_keywords,
        history_limit=settings.reply_history_limit,
    )


store: AssistantStore = create_assistant_store(
    backend=_settings.store_backend,
    database_url=_settings.database_url,
)
directory: AccountDirectory = _create_directory(_settings)
generator: ReplyGenerator = _create_generator(_settings)
reply_sender: ReplySender = _create_reply_sender(_settings)
engine = _create_engine(_settings, store=store, directory=directory, generator=generator)
dispatcher = EventDispatcher(engine=engine, sender=reply_sender)


def reset_runtime_state_for_tests() -> None:
    store.reset()


@router.post("/line/webhook", response_model=LineWebhookResponse)
async def receive_line_webhook(request: Request) -> LineWebhookResponse:
    body = await request.body()
    verification = verify_line_signature(settings=_settings, body=body, headers=request.headers)
    if not verification.verified:
        if _settings.line_webhook_signature_mode == "enforce":
            logger.warning("rejected LINE webhook: %s", verification.reason)
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, "invalid webhook signature")
        logger.warning("LINE webhook signature not verified (%s); continuing in log_only mode", verification.reason)

    try:
        payload = LineWebhookBody.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "invalid webhook payload") from exc

    logger.info("LINE webhook received with %d event(s)", len(payload.events))
    summary = await run_in_threadpool(dispatcher.dispatch, payload)
    return LineWebhookResponse(
        received=summary.received,
        processed=summary.processed,
        skipped=summary.skipped,
        failed=summary.failed,
    )


@router.get("/runtime/security", response_model=RuntimeSecurityStatusResponse)
def runtime_security_status() -> RuntimeSecurityStatusResponse:
    return RuntimeSecurityStatusResponse(
        runtime_secret_guard_mode=_settings.runtime_secret_guard_mode,  # type: ignore[arg-type]
        line_webhook_signature_mode=_settings.line_webhook_signature_mode,  # type: ignore[arg-type]
        line_sender_type=_settings.line_sender_type,
        directory_backend=_settings.directory_backend,
        reply_generator_type=_settings.reply_generator_type,
        store_backend=_settings.store_backend,
        runtime_secret_issues=list(runtime_secret_issues(_settings)),
    )
