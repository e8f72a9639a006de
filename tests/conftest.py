"""Pytest configuration and shared fixtures."""

import asyncio
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from llm_relay.errors import TransportError  # noqa: E402
from llm_relay.llm_providers import ModelTier, ProviderDescriptor, TierEntry  # noqa: E402
from llm_relay.models import RawResponse  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self._start = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._offset = 0.0

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._offset)

    def monotonic(self) -> float:
        return self._offset

    def advance(self, seconds: float) -> None:
        self._offset += seconds


def openai_body(text, finish_reason="stop", total_tokens=12, model="test-model"):
    return json.dumps(
        {
            "model": model,
            "choices": [{"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": finish_reason}],
            "usage": {"prompt_tokens": 5, "completion_tokens": total_tokens - 5, "total_tokens": total_tokens},
        }
    ).encode("utf-8")


def ok_response(text):
    return RawResponse(status_code=200, content=openai_body(text))


class FakeClient:
    """Scripted provider client.

    Each behaviour is a RawResponse to return, an exception to raise, or a
    (delay, behaviour) tuple that sleeps first. The last behaviour repeats.
    """

    def __init__(self, provider_id, *behaviours):
        self._provider_id = provider_id
        self._behaviours = list(behaviours) or [ok_response(f"reply from {provider_id}")]
        self.calls = []

    @property
    def provider_id(self):
        return self._provider_id

    async def send(self, request, timeout_sec):
        self.calls.append(request)
        index = min(len(self.calls) - 1, len(self._behaviours) - 1)
        behaviour = self._behaviours[index]
        if isinstance(behaviour, tuple):
            delay, behaviour = behaviour
            await asyncio.sleep(delay)
        if isinstance(behaviour, Exception):
            raise behaviour
        if callable(behaviour):
            return behaviour(request)
        return behaviour


def make_descriptor(provider_id, **overrides):
    values = {
        "provider_id": provider_id,
        "label": provider_id.upper(),
        "kind": "openai_chat",
        "base_url": f"https://{provider_id}.example.test/v1",
        "default_model": f"{provider_id}-model",
    }
    values.update(overrides)
    return ProviderDescriptor(**values)


def make_tier(name, *entries, failover_on_filtered=False):
    return ModelTier(
        name=name,
        entries=tuple(TierEntry(provider_id=pid, weight=weight) for pid, weight in entries),
        failover_on_filtered=failover_on_filtered,
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def network_error():
    return TransportError("network", "connection reset")
