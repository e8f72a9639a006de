from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from llm_relay.llm_providers import ProviderDescriptor
from llm_relay.models import FAILURE_OUTCOMES, OUTCOME_SUCCESS, ProviderStats
from llm_relay.utils import Clock, SystemClock


WINDOW_SECONDS = 60.0
RECENT_ERROR_WINDOW = timedelta(minutes=5)


@dataclass
class _Counters:
    attempts: int = 0
    successes: int = 0
    failures: dict[str, int] = field(default_factory=dict)
    latency_total_ms: float = 0.0
    latency_count: int = 0
    total_tokens: int = 0
    last_used: datetime | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None
    window: deque[float] = field(default_factory=deque)
    cooldown_until: float | None = None


def provider_health(
    attempts: int,
    successes: int,
    last_error_at: datetime | None,
    now: datetime,
) -> str:
    if attempts == 0:
        return "unknown"
    success_rate = successes / attempts * 100
    recent_error = last_error_at is not None and now - last_error_at < RECENT_ERROR_WINDOW
    if success_rate >= 95 and not recent_error:
        return "excellent"
    if success_rate >= 80:
        return "good"
    if success_rate >= 50:
        return "degraded"
    return "critical"


class StatsTracker:
    def __init__(self, registry: dict[str, ProviderDescriptor], clock: Clock | None = None) -> None:
        self._registry = registry
        self._clock = clock or SystemClock()
        self._counters: dict[str, _Counters] = {provider_id: _Counters() for provider_id in registry}
        self._disabled: dict[str, str] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger("stats")

    def _counters_for(self, provider_id: str) -> _Counters:
        counters = self._counters.get(provider_id)
        if counters is None:
            counters = _Counters()
            self._counters[provider_id] = counters
        return counters

    def _trim_window(self, counters: _Counters, now: float) -> None:
        while counters.window and now - counters.window[0] >= WINDOW_SECONDS:
            counters.window.popleft()

    def record_attempt(
        self,
        provider_id: str,
        outcome: str,
        latency_ms: float,
        tokens: int = 0,
        error: str | None = None,
    ) -> None:
        if outcome != OUTCOME_SUCCESS and outcome not in FAILURE_OUTCOMES:
            raise ValueError(f"Unknown attempt outcome '{outcome}'")
        now = self._clock.now()
        with self._lock:
            counters = self._counters_for(provider_id)
            counters.attempts += 1
            counters.last_used = now
            if outcome == OUTCOME_SUCCESS:
                counters.successes += 1
                counters.total_tokens += max(tokens, 0)
                if latency_ms > 0:
                    counters.latency_total_ms += latency_ms
                    counters.latency_count += 1
            else:
                counters.failures[outcome] = counters.failures.get(outcome, 0) + 1
                counters.last_error = error or outcome
                counters.last_error_at = now

    def note_rate_limited(self, provider_id: str, retry_after: float | None) -> None:
        if not retry_after or retry_after <= 0:
            return
        with self._lock:
            counters = self._counters_for(provider_id)
            counters.cooldown_until = self._clock.monotonic() + retry_after
        self._logger.info("Provider %s cooling down for %.1fs", provider_id, retry_after)

    def _has_budget(self, provider_id: str, counters: _Counters, mono: float) -> bool:
        if counters.cooldown_until is not None:
            if mono < counters.cooldown_until:
                return False
            counters.cooldown_until = None
        self._trim_window(counters, mono)
        descriptor = self._registry.get(provider_id)
        if descriptor is None or not descriptor.max_requests_per_minute:
            return True
        return len(counters.window) < descriptor.max_requests_per_minute

    def is_rate_budget_available(self, provider_id: str) -> bool:
        mono = self._clock.monotonic()
        with self._lock:
            return self._has_budget(provider_id, self._counters_for(provider_id), mono)

    def try_acquire(self, provider_id: str) -> bool:
        """Reserve one request in the provider's per-minute window.

        Check and reservation happen under the same lock, so concurrent
        dispatches cannot overrun ``max_requests_per_minute``.
        """
        mono = self._clock.monotonic()
        with self._lock:
            counters = self._counters_for(provider_id)
            if not self._has_budget(provider_id, counters, mono):
                return False
            counters.window.append(mono)
            return True

    def disable(self, provider_id: str, reason: str) -> None:
        with self._lock:
            self._disabled[provider_id] = reason
        self._logger.warning("Provider %s disabled: %s", provider_id, reason)

    def enable(self, provider_id: str) -> bool:
        with self._lock:
            removed = self._disabled.pop(provider_id, None)
        if removed is not None:
            self._logger.info("Provider %s re-enabled", provider_id)
        return removed is not None

    def is_disabled(self, provider_id: str) -> bool:
        with self._lock:
            return provider_id in self._disabled

    def snapshot(self) -> dict[str, ProviderStats]:
        now = self._clock.now()
        mono = self._clock.monotonic()
        result: dict[str, ProviderStats] = {}
        with self._lock:
            for provider_id, counters in self._counters.items():
                descriptor = self._registry.get(provider_id)
                recent = sum(1 for ts in counters.window if mono - ts < WINDOW_SECONDS)
                avg_latency = counters.latency_total_ms / counters.latency_count if counters.latency_count else 0.0
                success_rate = round(counters.successes / counters.attempts * 100) if counters.attempts else 100
                result[provider_id] = ProviderStats(
                    provider_id=provider_id,
                    label=descriptor.label if descriptor else provider_id,
                    enabled=bool(descriptor and descriptor.enabled) and provider_id not in self._disabled,
                    disabled_reason=self._disabled.get(provider_id),
                    attempts=counters.attempts,
                    successes=counters.successes,
                    failures=dict(counters.failures),
                    avg_latency_ms=round(avg_latency, 1),
                    total_tokens=counters.total_tokens,
                    requests_last_minute=recent,
                    last_used=counters.last_used,
                    last_error=counters.last_error,
                    last_error_at=counters.last_error_at,
                    success_rate=success_rate,
                    health=provider_health(counters.attempts, counters.successes, counters.last_error_at, now),
                )
        return result
