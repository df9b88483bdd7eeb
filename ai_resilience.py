"""AI Resilience Layer: Retry, Circuit Breaker, Cost Tracking.

Provides a unified resilient_call() entry point that wraps every Gemini
request with a per-model circuit breaker, bounded tenacity retry on
transient errors, and latency/cost estimates.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


# ── Circuit Breaker ─────────────────────────────────────────

@dataclass
class _ProviderState:
    failures: int = 0
    state: str = "closed"  # closed | open | half_open
    last_failure_time: float = 0.0


class CircuitBreaker:
    """Per-model state machine: closed -> open -> half_open -> closed."""

    FAILURE_THRESHOLD = 3
    RECOVERY_TIMEOUT = 60  # seconds

    def __init__(self) -> None:
        self._providers: dict[str, _ProviderState] = {}
        self._lock = threading.Lock()

    def _get_state(self, key: str) -> _ProviderState:
        if key not in self._providers:
            self._providers[key] = _ProviderState()
        return self._providers[key]

    def record_success(self, key: str) -> None:
        with self._lock:
            state = self._get_state(key)
            state.failures = 0
            state.state = "closed"

    def record_failure(self, key: str) -> None:
        with self._lock:
            state = self._get_state(key)
            state.failures += 1
            state.last_failure_time = time.time()
            if state.failures >= self.FAILURE_THRESHOLD:
                state.state = "open"

    def is_open(self, key: str) -> bool:
        with self._lock:
            state = self._get_state(key)
            if state.state == "closed":
                return False
            if state.state == "open":
                elapsed = time.time() - state.last_failure_time
                if elapsed >= self.RECOVERY_TIMEOUT:
                    state.state = "half_open"
                    return False  # allow one attempt
                return True
            # half_open: allow one attempt
            return False

    def get_state(self, key: str) -> str:
        with self._lock:
            return self._get_state(key).state

    def reset(self) -> None:
        with self._lock:
            self._providers.clear()


_circuit_breaker = CircuitBreaker()


class CircuitOpenError(RuntimeError):
    pass


# ── Cost Tracker ────────────────────────────────────────────

# Approximate pricing per 1M tokens (input + output averaged)
_MODEL_PRICING: dict[str, float] = {
    "gemini-2.5-flash": 0.3,
    "gemini-2.5-flash-preview-tts": 0.5,
    "gemini-3-pro-preview": 2.0,
}


class CostTracker:
    """Estimates tokens from character count and applies model-specific pricing."""

    @staticmethod
    def estimate_tokens(text: str) -> int:
        """Rough estimate: 1 token ~ 4 characters."""
        return max(1, len(text) // 4)

    @staticmethod
    def track_call(
        model: str,
        input_text: str,
        output_text: str,
        latency_ms: int,
    ) -> dict:
        input_tokens = CostTracker.estimate_tokens(input_text)
        output_tokens = CostTracker.estimate_tokens(output_text)
        total_tokens = input_tokens + output_tokens

        price_per_million = _MODEL_PRICING.get(model, 1.0)
        cost_usd = (total_tokens / 1_000_000) * price_per_million

        return {
            "input_tokens_est": input_tokens,
            "output_tokens_est": output_tokens,
            "total_tokens_est": total_tokens,
            "cost_estimate_usd": round(cost_usd, 6),
            "model": model,
            "latency_ms": latency_ms,
        }


# ── Transient error detection ───────────────────────────────

_TRANSIENT_ERRORS = (
    ConnectionError,
    TimeoutError,
    OSError,
)

_TRANSIENT_STATUS = {429, 500, 502, 503, 504}


def _is_transient(exc: BaseException) -> bool:
    """Check if an exception is transient (worth retrying)."""
    if isinstance(exc, _TRANSIENT_ERRORS):
        return True
    if getattr(exc, "code", None) in _TRANSIENT_STATUS:
        return True
    msg = str(exc).lower()
    transient_patterns = [
        "rate limit",
        "resource_exhausted",
        "429",
        "503",
        "502",
        "500",
        "overloaded",
        "temporarily unavailable",
        "timeout",
        "connection",
    ]
    return any(p in msg for p in transient_patterns)


class TransientLLMError(Exception):
    """Wrapper for transient LLM errors that should be retried."""
    pass


def _response_text(response: Any) -> str:
    try:
        return getattr(response, "text", None) or ""
    except (ValueError, AttributeError):
        return ""


# ── Main entry point ────────────────────────────────────────

def _call_with_retry(call: Callable[[], Any], max_attempts: int) -> Any:
    """Run ``call`` with tenacity retry on transient errors."""
    for attempt in Retrying(
        retry=retry_if_exception_type(TransientLLMError),
        wait=wait_exponential(multiplier=1, min=1, max=30),
        stop=stop_after_attempt(max(1, max_attempts)),
        reraise=True,
    ):
        with attempt:
            try:
                return call()
            except Exception as exc:
                if _is_transient(exc):
                    raise TransientLLMError(str(exc)) from exc
                raise


def resilient_call(
    model: str,
    call: Callable[[], Any],
    input_text: str = "",
    max_attempts: int = 1,
) -> tuple[Any, dict]:
    """Main entry point for resilient Gemini calls.

    Args:
        model: Model id, also the circuit-breaker key
        call: Zero-argument function performing the SDK request
        input_text: Prompt text, for token estimates
        max_attempts: Total attempts on transient errors (1 = no retry)

    Returns:
        (response, metadata_dict) where metadata includes tokens, cost,
        latency and model.
    """
    if _circuit_breaker.is_open(model):
        raise CircuitOpenError(f"Circuit breaker open for model: {model}")

    start = time.time()
    try:
        response = _call_with_retry(call, max_attempts)
    except Exception as exc:
        _circuit_breaker.record_failure(model)
        logger.warning("Gemini call failed (model=%s): %s", model, exc)
        raise

    latency_ms = int((time.time() - start) * 1000)
    _circuit_breaker.record_success(model)

    metrics = CostTracker.track_call(model, input_text, _response_text(response), latency_ms)
    logger.debug("Gemini call ok: %s", metrics)
    return response, metrics


def get_circuit_breaker() -> CircuitBreaker:
    """Access the module-level circuit breaker singleton."""
    return _circuit_breaker
