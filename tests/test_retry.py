"""Tests for calsync.retry: retryability, backoff delays and the retry executor."""

from __future__ import annotations

import httpx
import pytest

from calsync.errors import ProviderError
from calsync.retry import (
    RetryPolicy,
    call_with_retry,
    compute_retry_delay_ms,
    is_retryable,
)

pytestmark = pytest.mark.unit


def _status_error(status: int, headers: dict[str, str] | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://example.test/events")
    response = httpx.Response(status, headers=headers, json={"error": {}}, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


def _error(code: int, reason: str = "unknown", domain: str = "global", **kwargs) -> ProviderError:
    return ProviderError(code=code, reason=reason, domain=domain, message="x", **kwargs)


class _Recorder:
    """Records sleep durations in seconds."""

    def __init__(self) -> None:
        self.sleeps: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)


def _failing_then(results: list[object]):
    """Build an operation that raises/returns the scripted results in order."""
    calls = {"count": 0}

    async def operation():
        index = calls["count"]
        calls["count"] += 1
        result = results[index]
        if isinstance(result, BaseException):
            raise result
        return result

    return operation, calls


# ---------------------------------------------------------------------------
# is_retryable
# ---------------------------------------------------------------------------


class TestIsRetryable:
    @pytest.mark.parametrize("code", [429, 500, 502, 503, 504])
    def test_transient_codes(self, code):
        assert is_retryable(_error(code), RetryPolicy())

    @pytest.mark.parametrize("code", [400, 401, 404, 410])
    def test_permanent_codes(self, code):
        assert not is_retryable(_error(code), RetryPolicy())

    def test_rate_limit_reason_on_403(self):
        assert is_retryable(_error(403, reason="rateLimitExceeded"), RetryPolicy())

    def test_retryable_status_on_other_code(self):
        assert is_retryable(_error(400, status="RESOURCE_EXHAUSTED"), RetryPolicy())

    def test_application_domain_never_retries(self):
        assert not is_retryable(_error(500, domain="application"), RetryPolicy())

    def test_non_idempotent_never_retries(self):
        assert not is_retryable(_error(503), RetryPolicy(idempotent=False))


# ---------------------------------------------------------------------------
# compute_retry_delay_ms
# ---------------------------------------------------------------------------


class TestComputeRetryDelay:
    def test_exponential_without_jitter(self):
        policy = RetryPolicy()
        delays = [
            compute_retry_delay_ms(attempt, _error(503), policy, rand=lambda: 0.5)
            for attempt in range(4)
        ]
        assert delays == [500, 1000, 2000, 4000]

    def test_capped_at_max_delay(self):
        assert compute_retry_delay_ms(10, _error(503), RetryPolicy(), rand=lambda: 0.5) == 10_000

    def test_jitter_bounds(self):
        policy = RetryPolicy()
        low = compute_retry_delay_ms(1, _error(503), policy, rand=lambda: 0.0)
        high = compute_retry_delay_ms(1, _error(503), policy, rand=lambda: 0.999999)
        assert 800 <= low < 1000
        assert 1000 < high <= 1200

    def test_retry_after_is_a_floor_even_with_negative_jitter(self):
        delay = compute_retry_delay_ms(
            0, _error(429, retry_after_seconds=5), RetryPolicy(), rand=lambda: 0.0
        )
        assert delay >= 5000

    def test_retry_after_above_max_delay_is_honoured(self):
        delay = compute_retry_delay_ms(
            0, _error(429, retry_after_seconds=30), RetryPolicy(), rand=lambda: 0.5
        )
        assert delay == 30_000


# ---------------------------------------------------------------------------
# call_with_retry
# ---------------------------------------------------------------------------


class TestCallWithRetry:
    async def test_recovers_after_transient_failures(self):
        recorder = _Recorder()
        operation, calls = _failing_then(
            [_status_error(503), _status_error(503), _status_error(503), {"ok": True}]
        )

        result = await call_with_retry(operation, sleep=recorder.sleep, rand=lambda: 0.5)

        assert result == {"ok": True}
        assert calls["count"] == 4
        assert recorder.sleeps == [0.5, 1.0, 2.0]
        assert all(a < b for a, b in zip(recorder.sleeps, recorder.sleeps[1:], strict=False))

    async def test_gives_up_after_max_attempts(self):
        recorder = _Recorder()
        operation, calls = _failing_then([_status_error(503)] * 4)

        with pytest.raises(ProviderError) as exc_info:
            await call_with_retry(
                operation,
                context="calendar.events.list",
                sleep=recorder.sleep,
                rand=lambda: 0.5,
            )

        assert calls["count"] == 4
        assert len(recorder.sleeps) == 3
        assert exc_info.value.code == 503
        assert str(exc_info.value).startswith("calendar.events.list: ")
        assert isinstance(exc_info.value.__cause__, httpx.HTTPStatusError)

    async def test_permanent_failure_is_not_retried(self):
        recorder = _Recorder()
        operation, calls = _failing_then([_status_error(404)])

        with pytest.raises(ProviderError) as exc_info:
            await call_with_retry(operation, sleep=recorder.sleep)

        assert calls["count"] == 1
        assert recorder.sleeps == []
        assert exc_info.value.code == 404

    async def test_retry_after_is_respected(self):
        recorder = _Recorder()
        operation, _ = _failing_then([_status_error(429, headers={"Retry-After": "5"}), "done"])

        assert await call_with_retry(operation, sleep=recorder.sleep, rand=lambda: 0.0) == "done"
        assert recorder.sleeps[0] >= 5.0

    async def test_non_finite_retry_after_falls_back_to_backoff(self):
        recorder = _Recorder()
        operation, _ = _failing_then([_status_error(503, headers={"Retry-After": "1e400"}), "ok"])

        assert await call_with_retry(operation, sleep=recorder.sleep, rand=lambda: 0.5) == "ok"
        assert recorder.sleeps == [0.5]

    async def test_on_retry_receives_error_and_delay(self):
        recorder = _Recorder()
        seen: list[tuple[int, int]] = []
        operation, _ = _failing_then([_status_error(502), "done"])

        await call_with_retry(
            operation,
            sleep=recorder.sleep,
            rand=lambda: 0.5,
            on_retry=lambda error, delay_ms: seen.append((error.code, delay_ms)),
        )

        assert seen == [(502, 500)]

    async def test_provider_error_is_reraised_unchanged(self):
        original = ProviderError(code=410, reason="fullSyncRequired", domain="global", message="gone")
        operation, _ = _failing_then([original])

        with pytest.raises(ProviderError) as exc_info:
            await call_with_retry(operation, sleep=_Recorder().sleep)

        assert exc_info.value is original

    async def test_single_attempt_policy(self):
        recorder = _Recorder()
        operation, calls = _failing_then([_status_error(503)])

        with pytest.raises(ProviderError):
            await call_with_retry(operation, RetryPolicy(max_attempts=1), sleep=recorder.sleep)

        assert calls["count"] == 1
        assert recorder.sleeps == []
