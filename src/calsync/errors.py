"""Error taxonomy and classification for remote calendar calls.

Every failure raised while talking to the provider is funnelled through
:func:`classify_error`, which never raises and always returns a
:class:`ProviderError` carrying the HTTP code, the provider-assigned
``reason``/``domain``/``status`` strings, a human message and, when the
provider asked for it, a ``Retry-After`` delay in whole seconds.

Provider error bodies come in two JSON shapes.  They are modelled as a tagged
union decided by ordered shape predicates:

- ``StructuredErrorBody``: ``{"error": {"status", "message", "details": [
  {"@type": ".../google.rpc.ErrorInfo", "reason", "domain", "metadata"}]}}``
- ``LegacyErrorBody``: ``{"error": {"message", "errors": [{"reason",
  "domain", "message"}]}}``
- ``OpaqueErrorBody``: anything else, reduced to a short text.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

ERROR_INFO_TYPE = "type.googleapis.com/google.rpc.ErrorInfo"
CURSOR_INVALID_REASONS = frozenset({"fullSyncRequired", "updatedMinTooLongAgo"})
MAX_ERROR_MESSAGE_LENGTH = 200

_MESSAGES: dict[int, dict[str, str] | str] = {
    400: {
        "badRequest": "Invalid request",
        "invalid_grant": "Refresh token is invalid or expired; re-authorize the account",
        "default": "The request was rejected by the calendar provider",
    },
    401: "Authentication failed; re-authorize the calendar account",
    403: {
        "userRateLimitExceeded": "Per-user request limit exceeded; try again in a few minutes",
        "rateLimitExceeded": "Request limit exceeded; try again in a few minutes",
        "quotaExceeded": "Calendar API quota exhausted",
        "forbidden": "Missing permission for this calendar",
        "forbiddenForServiceAccounts": "Service accounts cannot access this calendar",
        "default": "Missing permission or insufficient quota",
    },
    404: "Calendar or event not found",
    409: "Conflict: the resource already exists or is being modified",
    410: "Sync token is no longer valid; a full sync is required",
    429: "Too many requests; wait before retrying",
    500: "Calendar provider internal error; try again",
    502: "Calendar provider gateway error; try again",
    503: "Calendar provider temporarily unavailable; try again in a few minutes",
    504: "Calendar provider timed out; try again",
}

# Known provider messages that arrive as plain text instead of a structured reason.
_RAW_MESSAGE_HINTS: tuple[tuple[str, str], ...] = (
    (
        "Service Accounts do not have storage quota",
        "Service accounts have no storage quota; use OAuth with a personal account",
    ),
    ("Quota exceeded", "Calendar API quota exhausted"),
    ("Calendar usage limits exceeded", "Calendar usage limits exceeded; try again later"),
)


class CalendarSyncError(RuntimeError):
    """Base error raised by the calendar sync engine."""


class CalendarCredentialError(CalendarSyncError):
    """Raised when credential material is missing or invalid."""


class CalendarTokenRefreshError(CalendarSyncError):
    """Raised when exchanging a refresh token for an access token fails."""


class ProviderError(CalendarSyncError):
    """Classified remote-call failure with retryability metadata."""

    def __init__(
        self,
        *,
        code: int,
        reason: str,
        domain: str,
        message: str,
        status: str | None = None,
        metadata: dict[str, str] | None = None,
        retry_after_seconds: int | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        self.code = code
        self.reason = reason
        self.domain = domain
        self.message = message
        self.status = status
        self.metadata = metadata
        self.retry_after_seconds = retry_after_seconds
        self.original_error = original_error
        super().__init__(message)

    def __str__(self) -> str:
        return self.message

    @property
    def is_cursor_invalidated(self) -> bool:
        return self.code == 410 or self.reason in CURSOR_INVALID_REASONS

    @property
    def is_auth_failure(self) -> bool:
        return self.code == 401

    def with_context(self, context: str | None) -> ProviderError:
        """Prefix the message with *context* (e.g. ``"calendar.events.list"``)."""
        if context:
            self.message = f"{context}: {self.message}"
            self.args = (self.message,)
        return self

    def to_log_fields(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "reason": self.reason,
            "domain": self.domain,
            "status": self.status,
            "retry_after_seconds": self.retry_after_seconds,
        }


# ---------------------------------------------------------------------------
# Error body shapes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StructuredErrorBody:
    status: str | None
    message: str | None
    reason: str | None
    domain: str | None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LegacyErrorBody:
    status: str | None
    message: str | None
    reason: str | None
    domain: str | None


@dataclass(frozen=True)
class OpaqueErrorBody:
    message: str | None


ErrorBody = StructuredErrorBody | LegacyErrorBody | OpaqueErrorBody


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _error_object(payload: Any) -> dict[str, Any] | None:
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return payload["error"]
    return None


def _find_error_info(error: dict[str, Any]) -> dict[str, Any] | None:
    details = error.get("details")
    if not isinstance(details, list):
        return None
    for detail in details:
        if isinstance(detail, dict) and detail.get("@type") == ERROR_INFO_TYPE:
            return detail
    return None


def _is_structured(payload: Any) -> bool:
    error = _error_object(payload)
    return error is not None and _find_error_info(error) is not None


def _is_legacy(payload: Any) -> bool:
    error = _error_object(payload)
    if error is None:
        return False
    errors = error.get("errors")
    return isinstance(errors, list) and bool(errors) and isinstance(errors[0], dict)


def _build_structured(payload: Any) -> StructuredErrorBody:
    error = _error_object(payload) or {}
    info = _find_error_info(error) or {}
    raw_metadata = info.get("metadata")
    metadata = (
        {str(key): str(value) for key, value in raw_metadata.items()}
        if isinstance(raw_metadata, dict)
        else {}
    )
    return StructuredErrorBody(
        status=_optional_str(error.get("status")),
        message=_optional_str(error.get("message")),
        reason=_optional_str(info.get("reason")),
        domain=_optional_str(info.get("domain")),
        metadata=metadata,
    )


def _build_legacy(payload: Any) -> LegacyErrorBody:
    error = _error_object(payload) or {}
    first = error["errors"][0]
    return LegacyErrorBody(
        status=_optional_str(error.get("status")),
        message=_optional_str(first.get("message")) or _optional_str(error.get("message")),
        reason=_optional_str(first.get("reason")),
        domain=_optional_str(first.get("domain")),
    )


def _build_opaque(payload: Any) -> OpaqueErrorBody:
    error = _error_object(payload)
    if error is not None:
        return OpaqueErrorBody(message=_optional_str(error.get("message")))
    if isinstance(payload, dict):
        return OpaqueErrorBody(message=_optional_str(payload.get("error")))
    if isinstance(payload, str):
        return OpaqueErrorBody(message=_optional_str(payload))
    return OpaqueErrorBody(message=None)


# Richer shape first; the opaque shape always matches.
_BODY_SHAPES = (
    (_is_structured, _build_structured),
    (_is_legacy, _build_legacy),
    (lambda payload: True, _build_opaque),
)


def parse_error_body(payload: Any) -> ErrorBody:
    """Decide which error-body shape *payload* has and extract its fields."""
    for predicate, builder in _BODY_SHAPES:
        if predicate(payload):
            return builder(payload)
    return OpaqueErrorBody(message=None)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def sanitize_message(message: str) -> str:
    return " ".join(message.split())[:MAX_ERROR_MESSAGE_LENGTH]


def redact_credentials(message: str) -> str:
    """Redact token/secret values from *message* before it is logged."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    return re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)


def parse_retry_after(value: Any, *, now: datetime | None = None) -> int | None:
    """Convert a ``Retry-After`` header value to non-negative whole seconds.

    Accepts integer seconds or an HTTP-date.  Returns ``None`` when the value
    is absent or unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return max(0, int(value)) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None

    trimmed = value.strip()
    if not trimmed:
        return None

    try:
        seconds = float(trimmed)
    except ValueError:
        pass
    else:
        return max(0, int(seconds)) if math.isfinite(seconds) else None

    try:
        when = parsedate_to_datetime(trimmed)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    reference = now or datetime.now(UTC)
    delta = (when - reference).total_seconds()
    return max(0, math.ceil(delta))


def human_message(code: int, reason: str, raw_message: str | None) -> str:
    """Map ``(code, reason)`` to a readable message."""
    entry = _MESSAGES.get(code)
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        return entry.get(reason) or entry["default"]

    for needle, hint in _RAW_MESSAGE_HINTS:
        if raw_message and needle in raw_message:
            return hint

    if not raw_message:
        return f"HTTP {code}"
    return sanitize_message(redact_credentials(raw_message))


def _response_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _classify_response(exc: BaseException, response: httpx.Response) -> ProviderError:
    body = parse_error_body(_response_payload(response))
    code = response.status_code
    if isinstance(body, OpaqueErrorBody):
        reason, domain, status, metadata = "unknown", "global", None, None
    else:
        reason = body.reason or "unknown"
        domain = body.domain or "global"
        status = body.status
        metadata = None
        if isinstance(body, StructuredErrorBody) and body.metadata:
            metadata = body.metadata
    return ProviderError(
        code=code,
        status=status,
        reason=reason,
        domain=domain,
        message=human_message(code, reason, body.message),
        metadata=metadata,
        retry_after_seconds=parse_retry_after(response.headers.get("Retry-After")),
        original_error=exc,
    )


def classify_error(exc: BaseException) -> ProviderError:
    """Turn any exception raised around a remote call into a :class:`ProviderError`.

    Performs no I/O and never raises.
    """
    if isinstance(exc, ProviderError):
        return exc

    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_response(exc, exc.response)

    if isinstance(exc, httpx.TransportError):
        return ProviderError(
            code=503,
            status="UNAVAILABLE",
            reason="transportError",
            domain="network",
            message=sanitize_message(
                redact_credentials(f"Calendar request failed: {exc!s} ({type(exc).__name__})")
            ),
            original_error=exc,
        )

    return ProviderError(
        code=500,
        reason="unknown",
        domain="application",
        message=sanitize_message(redact_credentials(str(exc) or type(exc).__name__)),
        original_error=exc,
    )
