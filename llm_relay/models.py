from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


ROLES = ("user", "assistant", "system")

OUTCOME_SUCCESS = "success"
FAILURE_OUTCOMES = (
    "timeout",
    "rate_limited",
    "auth_failed",
    "network",
    "server_error",
    "empty",
    "malformed",
    "filtered",
)


@dataclass(frozen=True)
class ChatTurn:
    role: str
    content: str
    timestamp: datetime
    media: str | None = None
    provider_id: str | None = None

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unknown chat role '{self.role}'")
        if self.provider_id is not None and self.role != "assistant":
            raise ValueError("Only assistant turns carry a provider id")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.media:
            data["media"] = self.media
        if self.provider_id:
            data["provider_id"] = self.provider_id
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ChatTurn":
        return cls(
            role=str(raw["role"]),
            content=str(raw.get("content", "")),
            timestamp=datetime.fromisoformat(str(raw["timestamp"])),
            media=raw.get("media"),
            provider_id=raw.get("provider_id"),
        )


@dataclass(frozen=True)
class ProviderRequest:
    provider_id: str
    kind: str
    model: str | None
    payload: dict[str, Any]
    body: bytes


@dataclass(frozen=True)
class RawResponse:
    status_code: int
    content: bytes
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class NormalizedResult:
    provider_id: str
    text: str
    model: str | None = None
    finish_reason: str | None = None
    tool_calls: tuple[dict[str, Any], ...] = ()
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class DispatchAttempt:
    provider_id: str
    started_at: datetime
    outcome: str
    latency_ms: float
    detail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome == OUTCOME_SUCCESS


@dataclass(frozen=True)
class ProviderStats:
    provider_id: str
    label: str
    enabled: bool
    disabled_reason: str | None
    attempts: int
    successes: int
    failures: dict[str, int]
    avg_latency_ms: float
    total_tokens: int
    requests_last_minute: int
    last_used: datetime | None
    last_error: str | None
    last_error_at: datetime | None
    success_rate: int
    health: str

    @property
    def failure_count(self) -> int:
        return sum(self.failures.values())
