from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field, replace
from typing import Mapping

from llm_relay.errors import (
    AllProvidersFailed,
    ContentFiltered,
    DeadlineExceeded,
    NoProvidersAvailable,
    ParseError,
    TransportError,
)
from llm_relay.history import HistoryStore
from llm_relay.llm_providers import ModelTier, ProviderDescriptor
from llm_relay.models import OUTCOME_SUCCESS, ChatTurn, DispatchAttempt, NormalizedResult, ProviderStats
from llm_relay.normalizer import RequestNormalizer
from llm_relay.provider_client import ProviderClient
from llm_relay.stats import StatsTracker
from llm_relay.utils import Clock, SystemClock, redact_media_url


@dataclass
class DispatchContext:
    registry: Mapping[str, ProviderDescriptor]
    tiers: Mapping[str, ModelTier]
    history: HistoryStore
    stats: StatsTracker
    clients: Mapping[str, ProviderClient]
    normalizer: RequestNormalizer = field(default_factory=RequestNormalizer)
    clock: Clock = field(default_factory=SystemClock)
    system_prompt: str | None = None
    deadline_sec: float | None = None
    failover_delay_sec: float = 0.0


class Dispatcher:
    def __init__(self, context: DispatchContext) -> None:
        self._ctx = context
        self._logger = logging.getLogger("dispatcher")

    def resolve_candidates(self, tier_name: str, needs_vision: bool = False) -> list[ProviderDescriptor]:
        tier = self._ctx.tiers.get(tier_name)
        if tier is None:
            raise NoProvidersAvailable(tier_name, "unknown tier")
        candidates: list[ProviderDescriptor] = []
        for provider_id in tier.ordered_provider_ids():
            descriptor = self._ctx.registry[provider_id]
            if not descriptor.enabled or self._ctx.stats.is_disabled(provider_id):
                continue
            if provider_id not in self._ctx.clients:
                continue
            if needs_vision and not descriptor.supports("vision"):
                continue
            if not self._ctx.stats.is_rate_budget_available(provider_id):
                self._logger.info("Skipping provider %s: rate budget exhausted", provider_id)
                continue
            candidates.append(descriptor)
        return candidates

    def _deadline(self) -> float:
        if self._ctx.deadline_sec is None:
            return math.inf
        return self._ctx.clock.monotonic() + self._ctx.deadline_sec

    async def dispatch(
        self,
        conversation_key: str,
        tier: str,
        text: str,
        media: str | None = None,
        system_prompt: str | None = None,
    ) -> NormalizedResult:
        candidates = self.resolve_candidates(tier, needs_vision=bool(media))
        if not candidates:
            raise NoProvidersAvailable(tier)
        tier_cfg = self._ctx.tiers[tier]
        clock = self._ctx.clock
        prompt = system_prompt if system_prompt is not None else self._ctx.system_prompt
        history = self._ctx.history.get_history(conversation_key)
        user_turn = ChatTurn(role="user", content=text, timestamp=clock.now(), media=media)
        deadline = self._deadline()
        attempts: list[DispatchAttempt] = []
        filtered_by: str | None = None

        for index, descriptor in enumerate(candidates):
            remaining = deadline - clock.monotonic()
            if remaining <= 0:
                self._logger.warning("Dispatch deadline exceeded key=%s tier=%s", conversation_key, tier)
                raise DeadlineExceeded(tier, self._trail(attempts))
            if index > 0 and self._ctx.failover_delay_sec > 0:
                await asyncio.sleep(min(self._ctx.failover_delay_sec, remaining))
                remaining = deadline - clock.monotonic()
                if remaining <= 0:
                    raise DeadlineExceeded(tier, self._trail(attempts))

            if not self._ctx.stats.try_acquire(descriptor.provider_id):
                self._logger.info("Skipping provider %s: rate budget exhausted", descriptor.provider_id)
                continue
            clamped = remaining < descriptor.timeout_sec
            result, attempt = await self._attempt(descriptor, tier, history, user_turn, prompt, remaining)
            attempts.append(attempt)
            if result is not None:
                assistant_turn = ChatTurn(
                    role="assistant",
                    content=result.text,
                    timestamp=clock.now(),
                    provider_id=descriptor.provider_id,
                )
                stored_turn = replace(user_turn, media=redact_media_url(user_turn.media))
                self._ctx.history.append_turns(conversation_key, [stored_turn, assistant_turn])
                self._ctx.stats.record_attempt(
                    descriptor.provider_id,
                    OUTCOME_SUCCESS,
                    attempt.latency_ms,
                    tokens=result.total_tokens,
                )
                self._logger.info(
                    "Dispatch ok key=%s tier=%s provider=%s attempts=%s latency_ms=%.0f",
                    conversation_key,
                    tier,
                    descriptor.provider_id,
                    len(attempts),
                    attempt.latency_ms,
                )
                return result

            self._ctx.stats.record_attempt(
                descriptor.provider_id,
                attempt.outcome,
                attempt.latency_ms,
                error=attempt.detail,
            )
            if attempt.outcome == "timeout" and clamped:
                self._logger.warning("Dispatch deadline exceeded key=%s tier=%s", conversation_key, tier)
                raise DeadlineExceeded(tier, self._trail(attempts))
            if attempt.outcome == "filtered":
                if not tier_cfg.failover_on_filtered or filtered_by is not None:
                    raise ContentFiltered(tier, descriptor.provider_id, self._trail(attempts))
                filtered_by = descriptor.provider_id
                self._logger.info("Provider %s filtered content, trying one more provider", descriptor.provider_id)

        if not attempts:
            raise NoProvidersAvailable(tier, "rate budget exhausted")
        if filtered_by is not None and attempts[-1].outcome == "filtered":
            raise ContentFiltered(tier, filtered_by, self._trail(attempts))
        raise AllProvidersFailed(tier, self._trail(attempts))

    async def _attempt(
        self,
        descriptor: ProviderDescriptor,
        tier: str,
        history: tuple[ChatTurn, ...],
        user_turn: ChatTurn,
        system_prompt: str | None,
        remaining: float,
    ) -> tuple[NormalizedResult | None, DispatchAttempt]:
        clock = self._ctx.clock
        provider_id = descriptor.provider_id
        started_at = clock.now()
        started = clock.monotonic()
        timeout = min(descriptor.timeout_sec, remaining)

        def finish(outcome: str, detail: str = "") -> DispatchAttempt:
            latency_ms = (clock.monotonic() - started) * 1000
            if outcome != OUTCOME_SUCCESS:
                self._logger.warning("Provider %s failed outcome=%s detail=%s", provider_id, outcome, detail)
            return DispatchAttempt(
                provider_id=provider_id,
                started_at=started_at,
                outcome=outcome,
                latency_ms=latency_ms,
                detail=detail,
            )

        request = self._ctx.normalizer.build_request(
            descriptor,
            history,
            user_turn,
            system_prompt,
            model=descriptor.model_for_tier(tier),
        )
        client = self._ctx.clients[provider_id]
        try:
            raw = await asyncio.wait_for(client.send(request, timeout), timeout=timeout)
        except asyncio.TimeoutError:
            return None, finish("timeout", f"no response within {timeout:.1f}s")
        except TransportError as exc:
            if exc.category == "auth_failed":
                self._ctx.stats.disable(provider_id, f"auth failed: {exc}")
            elif exc.category == "rate_limited":
                self._ctx.stats.note_rate_limited(provider_id, exc.retry_after)
            return None, finish(exc.category, str(exc))
        except Exception as exc:
            self._logger.exception("Provider %s client raised unexpected error", provider_id)
            return None, finish("network", repr(exc))

        try:
            result = self._ctx.normalizer.parse_response(descriptor, raw)
        except ParseError as exc:
            return None, finish(exc.reason, str(exc))
        except Exception as exc:
            self._logger.exception("Provider %s response could not be parsed", provider_id)
            return None, finish("malformed", repr(exc))
        return result, finish(OUTCOME_SUCCESS)

    def _trail(self, attempts: list[DispatchAttempt]) -> list[tuple[str, str]]:
        return [(attempt.provider_id, attempt.outcome) for attempt in attempts]

    def history_snapshot(self, conversation_key: str) -> tuple[ChatTurn, ...]:
        return self._ctx.history.get_history(conversation_key)

    def reset_history(self, conversation_key: str) -> None:
        self._ctx.history.clear(conversation_key)

    def stats_snapshot(self) -> dict[str, ProviderStats]:
        return self._ctx.stats.snapshot()

    def enable_provider(self, provider_id: str) -> bool:
        if provider_id not in self._ctx.registry:
            raise KeyError(provider_id)
        return self._ctx.stats.enable(provider_id)

    def tier_report(self) -> list[str]:
        """Tiers that currently have no enabled provider."""
        unusable: list[str] = []
        for name, tier in self._ctx.tiers.items():
            usable = [
                provider_id
                for provider_id in tier.provider_ids
                if self._ctx.registry[provider_id].enabled
                and not self._ctx.stats.is_disabled(provider_id)
                and provider_id in self._ctx.clients
            ]
            if not usable:
                unusable.append(name)
        return unusable
