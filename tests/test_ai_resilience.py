"""Tests for the AI resilience layer."""

from __future__ import annotations

import time
from unittest.mock import MagicMock, patch

import pytest

from ai_resilience import (
    CircuitBreaker,
    CircuitOpenError,
    CostTracker,
    TransientLLMError,
    _call_with_retry,
    _is_transient,
    get_circuit_breaker,
    resilient_call,
)


# ── CircuitBreaker Tests ────────────────────────────────────


class TestCircuitBreaker:
    def test_starts_closed(self):
        cb = CircuitBreaker()
        assert not cb.is_open("gemini-2.5-flash")
        assert cb.get_state("gemini-2.5-flash") == "closed"

    def test_opens_after_threshold_failures(self):
        cb = CircuitBreaker()
        for _ in range(cb.FAILURE_THRESHOLD):
            cb.record_failure("bad_model")
        assert cb.is_open("bad_model")
        assert cb.get_state("bad_model") == "open"

    def test_success_resets(self):
        cb = CircuitBreaker()
        cb.record_failure("m1")
        cb.record_failure("m1")
        cb.record_success("m1")
        assert not cb.is_open("m1")
        assert cb.get_state("m1") == "closed"

    def test_recovery_timeout(self):
        cb = CircuitBreaker()
        cb.RECOVERY_TIMEOUT = 0.01  # 10ms for test
        for _ in range(cb.FAILURE_THRESHOLD):
            cb.record_failure("recovering")
        assert cb.is_open("recovering")
        time.sleep(0.02)
        assert not cb.is_open("recovering")  # half_open
        assert cb.get_state("recovering") == "half_open"

    def test_independent_models(self):
        cb = CircuitBreaker()
        for _ in range(cb.FAILURE_THRESHOLD):
            cb.record_failure("failing")
        assert cb.is_open("failing")
        assert not cb.is_open("healthy")

    def test_reset_clears_all(self):
        cb = CircuitBreaker()
        for _ in range(cb.FAILURE_THRESHOLD):
            cb.record_failure("x")
        cb.reset()
        assert cb.get_state("x") == "closed"


# ── CostTracker Tests ───────────────────────────────────────


class TestCostTracker:
    def test_estimate_tokens(self):
        assert CostTracker.estimate_tokens("") == 1  # min 1
        assert CostTracker.estimate_tokens("1234") == 1
        assert CostTracker.estimate_tokens("12345678") == 2

    def test_track_call(self):
        result = CostTracker.track_call(
            model="gemini-2.5-flash",
            input_text="Hello world",
            output_text="Response text here",
            latency_ms=150,
        )
        assert result["model"] == "gemini-2.5-flash"
        assert result["latency_ms"] == 150
        assert result["input_tokens_est"] > 0
        assert result["output_tokens_est"] > 0
        assert result["cost_estimate_usd"] >= 0

    def test_unknown_model_defaults_to_1(self):
        result = CostTracker.track_call(
            model="unknown-model",
            input_text="test",
            output_text="test",
            latency_ms=100,
        )
        assert result["cost_estimate_usd"] > 0


# ── Transient detection ─────────────────────────────────────


class TestIsTransient:
    def test_connection_error(self):
        assert _is_transient(ConnectionError("reset by peer"))

    def test_status_code_attribute(self):
        exc = Exception("server said no")
        exc.code = 503
        assert _is_transient(exc)

    def test_rate_limit_message(self):
        assert _is_transient(Exception("429 RESOURCE_EXHAUSTED"))

    def test_bad_request_is_not_transient(self):
        exc = Exception("invalid argument")
        exc.code = 400
        assert not _is_transient(exc)


class TestCallWithRetry:
    @patch("time.sleep")
    def test_retries_transient_until_success(self, _sleep):
        call = MagicMock(side_effect=[ConnectionError("boom"), "ok"])
        assert _call_with_retry(call, max_attempts=3) == "ok"
        assert call.call_count == 2

    @patch("time.sleep")
    def test_single_attempt_does_not_retry(self, _sleep):
        call = MagicMock(side_effect=ConnectionError("boom"))
        with pytest.raises(TransientLLMError):
            _call_with_retry(call, max_attempts=1)
        assert call.call_count == 1

    def test_non_transient_raises_original(self):
        call = MagicMock(side_effect=ValueError("bad schema"))
        with pytest.raises(ValueError, match="bad schema"):
            _call_with_retry(call, max_attempts=3)
        assert call.call_count == 1


# ── resilient_call Tests ────────────────────────────────────


class TestResilientCall:
    def test_basic_call(self):
        response = MagicMock()
        response.text = "Gemini says hello"

        result, meta = resilient_call("gemini-2.5-flash", lambda: response, input_text="Hello")
        assert result is response
        assert meta["model"] == "gemini-2.5-flash"
        assert "cost_estimate_usd" in meta
        assert meta["output_tokens_est"] == CostTracker.estimate_tokens("Gemini says hello")

    def test_circuit_breaker_blocks_call(self):
        cb = get_circuit_breaker()
        for _ in range(cb.FAILURE_THRESHOLD):
            cb.record_failure("blocked-model")

        call = MagicMock()
        with pytest.raises(CircuitOpenError, match="Circuit breaker open"):
            resilient_call("blocked-model", call)
        call.assert_not_called()

    @patch("ai_resilience._call_with_retry")
    def test_failure_records_to_circuit_breaker(self, mock_retry):
        mock_retry.side_effect = ValueError("Non-transient error")
        cb = get_circuit_breaker()

        with pytest.raises(ValueError):
            resilient_call("fail-model", MagicMock())

        # one failure is below the threshold
        assert cb.get_state("fail-model") == "closed"

    @patch("ai_resilience._call_with_retry")
    def test_repeated_failures_open_circuit(self, mock_retry):
        mock_retry.side_effect = ValueError("broken")
        cb = get_circuit_breaker()
        for _ in range(cb.FAILURE_THRESHOLD):
            with pytest.raises(ValueError):
                resilient_call("flaky-model", MagicMock())
        assert cb.get_state("flaky-model") == "open"
