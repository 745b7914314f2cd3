"""Tests for calsync.errors: error-body parsing, classification and redaction."""

from __future__ import annotations

from datetime import UTC, datetime

import httpx
import pytest

from calsync.errors import (
    ERROR_INFO_TYPE,
    MAX_ERROR_MESSAGE_LENGTH,
    LegacyErrorBody,
    OpaqueErrorBody,
    ProviderError,
    StructuredErrorBody,
    classify_error,
    human_message,
    parse_error_body,
    parse_retry_after,
    redact_credentials,
    sanitize_message,
)

pytestmark = pytest.mark.unit


def _status_error(
    status: int,
    *,
    json: object | None = None,
    text: str | None = None,
    headers: dict[str, str] | None = None,
) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://www.googleapis.com/calendar/v3/calendars/x/events")
    if json is not None:
        response = httpx.Response(status, json=json, headers=headers, request=request)
    else:
        response = httpx.Response(status, text=text or "", headers=headers, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


def _legacy_payload(code: int, reason: str, message: str = "Error") -> dict:
    return {
        "error": {
            "code": code,
            "message": message,
            "errors": [{"domain": "usageLimits", "reason": reason, "message": message}],
        }
    }


# ---------------------------------------------------------------------------
# parse_error_body
# ---------------------------------------------------------------------------


class TestParseErrorBody:
    def test_structured_body_wins_over_legacy(self):
        payload = {
            "error": {
                "code": 429,
                "status": "RESOURCE_EXHAUSTED",
                "message": "Quota exceeded for quota metric",
                "errors": [{"domain": "global", "reason": "legacyReason"}],
                "details": [
                    {
                        "@type": ERROR_INFO_TYPE,
                        "reason": "RATE_LIMIT_EXCEEDED",
                        "domain": "googleapis.com",
                        "metadata": {"service": "calendar-json.googleapis.com"},
                    }
                ],
            }
        }

        body = parse_error_body(payload)

        assert isinstance(body, StructuredErrorBody)
        assert body.reason == "RATE_LIMIT_EXCEEDED"
        assert body.domain == "googleapis.com"
        assert body.status == "RESOURCE_EXHAUSTED"
        assert body.metadata == {"service": "calendar-json.googleapis.com"}

    def test_legacy_body(self):
        body = parse_error_body(_legacy_payload(403, "userRateLimitExceeded", "Rate Limit"))

        assert isinstance(body, LegacyErrorBody)
        assert body.reason == "userRateLimitExceeded"
        assert body.domain == "usageLimits"
        assert body.message == "Rate Limit"

    def test_oauth_style_error_string_is_opaque(self):
        body = parse_error_body({"error": "invalid_grant", "error_description": "Bad Request"})
        assert body == OpaqueErrorBody(message="invalid_grant")

    def test_plain_text_is_opaque(self):
        assert parse_error_body("  upstream exploded  ") == OpaqueErrorBody(
            message="upstream exploded"
        )

    def test_unrecognized_payload_has_no_message(self):
        assert parse_error_body(None) == OpaqueErrorBody(message=None)
        assert parse_error_body([1, 2, 3]) == OpaqueErrorBody(message=None)

    def test_error_object_without_details_or_errors_is_opaque(self):
        body = parse_error_body({"error": {"code": 500, "message": "Backend Error"}})
        assert body == OpaqueErrorBody(message="Backend Error")


# ---------------------------------------------------------------------------
# classify_error
# ---------------------------------------------------------------------------


class TestClassifyError:
    def test_rate_limit_with_retry_after(self):
        error = classify_error(
            _status_error(429, json={"error": {"message": "slow down"}}, headers={"Retry-After": "5"})
        )

        assert error.code == 429
        assert error.retry_after_seconds == 5
        assert error.message == "Too many requests; wait before retrying"
        assert isinstance(error.original_error, httpx.HTTPStatusError)

    def test_reason_specific_message(self):
        error = classify_error(_status_error(403, json=_legacy_payload(403, "userRateLimitExceeded")))

        assert error.reason == "userRateLimitExceeded"
        assert error.domain == "usageLimits"
        assert "Per-user request limit exceeded" in error.message

    def test_unknown_reason_falls_back_to_code_default(self):
        error = classify_error(_status_error(403, json=_legacy_payload(403, "somethingNew")))
        assert error.message == "Missing permission or insufficient quota"

    def test_gone_is_cursor_invalidation(self):
        error = classify_error(_status_error(410, json=_legacy_payload(410, "fullSyncRequired")))

        assert error.is_cursor_invalidated
        assert not error.is_auth_failure

    def test_full_sync_required_reason_on_400_is_cursor_invalidation(self):
        error = classify_error(_status_error(400, json=_legacy_payload(400, "fullSyncRequired")))
        assert error.is_cursor_invalidated

    def test_unauthorized_is_auth_failure(self):
        assert classify_error(_status_error(401, text="nope")).is_auth_failure

    def test_opaque_body_defaults(self):
        error = classify_error(_status_error(502, text="<html>Bad Gateway</html>"))

        assert error.reason == "unknown"
        assert error.domain == "global"
        assert error.status is None

    def test_raw_message_hint_for_unmapped_code(self):
        error = classify_error(_status_error(418, json={"error": {"message": "Quota exceeded x"}}))
        assert error.message == "Calendar API quota exhausted"

    def test_non_finite_retry_after_is_ignored(self):
        error = classify_error(_status_error(429, text="slow down", headers={"Retry-After": "inf"}))

        assert error.code == 429
        assert error.retry_after_seconds is None

    def test_raw_message_is_redacted(self):
        error = classify_error(
            _status_error(418, json={"error": {"message": "bad access_token=abc123 sent"}})
        )
        assert error.message == "bad access_token=[REDACTED] sent"

    def test_transport_error_is_retryable_network_failure(self):
        error = classify_error(httpx.ConnectError("connect failed access_token=abc123"))

        assert error.code == 503
        assert error.status == "UNAVAILABLE"
        assert error.domain == "network"
        assert "abc123" not in error.message
        assert "ConnectError" in error.message

    def test_application_error(self):
        error = classify_error(ValueError("bad payload"))

        assert error.code == 500
        assert error.domain == "application"
        assert error.message == "bad payload"

    def test_provider_error_passes_through(self):
        original = ProviderError(code=404, reason="notFound", domain="global", message="gone")
        assert classify_error(original) is original


# ---------------------------------------------------------------------------
# ProviderError helpers
# ---------------------------------------------------------------------------


def test_with_context_prefixes_message():
    error = ProviderError(code=503, reason="backendError", domain="global", message="down")

    error.with_context("calendar.events.list")

    assert str(error) == "calendar.events.list: down"
    assert error.args == ("calendar.events.list: down",)


def test_with_context_none_is_noop():
    error = ProviderError(code=503, reason="backendError", domain="global", message="down")
    assert str(error.with_context(None)) == "down"


def test_to_log_fields():
    error = ProviderError(
        code=429,
        reason="rateLimitExceeded",
        domain="usageLimits",
        status="RESOURCE_EXHAUSTED",
        message="slow",
        retry_after_seconds=3,
    )
    assert error.to_log_fields() == {
        "code": 429,
        "reason": "rateLimitExceeded",
        "domain": "usageLimits",
        "status": "RESOURCE_EXHAUSTED",
        "retry_after_seconds": 3,
    }


# ---------------------------------------------------------------------------
# parse_retry_after
# ---------------------------------------------------------------------------


class TestParseRetryAfter:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("5", 5),
            ("  7 ", 7),
            ("2.9", 2),
            ("-3", 0),
            (12, 12),
            ("", None),
            ("soon", None),
            (None, None),
            (True, None),
            ("inf", None),
            ("1e400", None),
            ("nan", None),
            (float("inf"), None),
        ],
    )
    def test_seconds_values(self, value, expected):
        assert parse_retry_after(value) == expected

    def test_http_date(self):
        now = datetime(2024, 1, 1, 0, 0, 0, tzinfo=UTC)
        assert parse_retry_after("Mon, 01 Jan 2024 00:00:30 GMT", now=now) == 30

    def test_http_date_in_the_past_is_zero(self):
        now = datetime(2024, 1, 1, 1, 0, 0, tzinfo=UTC)
        assert parse_retry_after("Mon, 01 Jan 2024 00:00:30 GMT", now=now) == 0


# ---------------------------------------------------------------------------
# Message helpers
# ---------------------------------------------------------------------------


def test_human_message_without_raw_message():
    assert human_message(418, "unknown", None) == "HTTP 418"


def test_human_message_sanitizes_raw_message():
    assert human_message(418, "unknown", "  teapot\n\tempty  ") == "teapot empty"


def test_sanitize_message_truncates():
    assert len(sanitize_message("x" * 500)) == MAX_ERROR_MESSAGE_LENGTH


class TestRedactCredentials:
    def test_query_style(self):
        assert redact_credentials("refresh_token=abc123&x=1") == "refresh_token=[REDACTED]&x=1"

    def test_json_style(self):
        assert (
            redact_credentials('{"client_secret": "s3cr3t"}') == '{"client_secret": "[REDACTED]"}'
        )

    def test_bearer_header(self):
        assert redact_credentials("Authorization: Bearer ya29.a0AfH6") == (
            "Authorization: Bearer [REDACTED]"
        )

    def test_plain_text_untouched(self):
        assert redact_credentials("nothing to hide") == "nothing to hide"


def test_human_message_redacts_credentials():
    assert human_message(418, "unknown", "Bearer ya29.secret rejected") == "Bearer [REDACTED] rejected"


def test_unknown_400_reason_uses_code_default():
    assert human_message(400, "invalidSyncToken", None) == "The request was rejected by the calendar provider"
