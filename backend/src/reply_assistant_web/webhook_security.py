from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass
from typing import Mapping

from .config import Settings


@dataclass(frozen=True)
class WebhookSignatureVerification:
    verified: bool
    reason: str | None = None


def _normalize_header_value(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def compute_line_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_line_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
) -> WebhookSignatureVerification:
    mode = settings.line_webhook_signature_mode
    if mode == "off":
        return WebhookSignatureVerification(verified=True)

    secret = settings.line_channel_secret.strip()
    if not secret:
        return WebhookSignatureVerification(verified=False, reason="channel_secret_missing")

    provided = _normalize_header_value(headers, "X-Line-Signature")
    if provided is None:
        return WebhookSignatureVerification(verified=False, reason="signature_missing")

    expected = compute_line_signature(secret, body)
    if not hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8")):
        return WebhookSignatureVerification(verified=False, reason="signature_mismatch")

    return WebhookSignatureVerification(verified=True)
