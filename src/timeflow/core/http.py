"""Helpers for turning provider HTTP failures into safe, loggable messages."""

from __future__ import annotations

import re

import httpx

_MAX_MESSAGE_LENGTH = 200
_CREDENTIAL_KEYS = r"client_secret|refresh_token|access_token|code_verifier|token"


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, single-line error description from a provider response.

    Understands the Google (``{"error": {"message": ...}}``), OAuth
    (``{"error": "...", "error_description": "..."}``) and Microsoft Graph
    (``{"error": {"code": ..., "message": ...}}``) payload shapes.
    """
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return _squash(message)
            code = error_payload.get("code")
            if isinstance(code, str) and code.strip():
                return _squash(code)
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return _squash(description)
        if isinstance(error_payload, str) and error_payload.strip():
            return _squash(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return _squash(raw_text)
    return "Request failed without an error payload"


def oauth_error_code(response: httpx.Response) -> str | None:
    """Return the RFC 6749 ``error`` code from a token endpoint response, if any."""
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    code = payload.get("error")
    return code if isinstance(code, str) else None


def redact_credential_values(message: str) -> str:
    """Redact credential-looking ``key=value`` / ``key: value`` pairs from *message*."""
    redacted = re.sub(
        rf"(?i)\b({_CREDENTIAL_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_CREDENTIAL_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(
        rf"(?i)\b({_CREDENTIAL_KEYS})\s*:\s*([^\s,;\"']+)",
        r"\1: [REDACTED]",
        redacted,
    )
    return redacted


def sanitize_error(exc: BaseException) -> str:
    """``str(exc)`` with credentials redacted, whitespace collapsed and truncated."""
    return _squash(redact_credential_values(str(exc)) or type(exc).__name__)


def _squash(text: str) -> str:
    return " ".join(text.split())[:_MAX_MESSAGE_LENGTH]
