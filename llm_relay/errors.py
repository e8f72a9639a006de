from __future__ import annotations

from typing import Sequence


TRANSPORT_CATEGORIES = frozenset({"timeout", "rate_limited", "auth_failed", "network", "server_error"})
PARSE_REASONS = frozenset({"empty", "malformed", "filtered"})
DEADLINE_MARKER = "deadline_exceeded"


class TransportError(Exception):
    """Raised by provider clients; the body is never interpreted at this level."""

    def __init__(
        self,
        category: str,
        message: str = "",
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        if category not in TRANSPORT_CATEGORIES:
            raise ValueError(f"Unknown transport error category '{category}'")
        super().__init__(message or category)
        self.category = category
        self.status_code = status_code
        self.retry_after = retry_after


class ParseError(Exception):
    def __init__(self, reason: str, message: str = "") -> None:
        if reason not in PARSE_REASONS:
            raise ValueError(f"Unknown parse error reason '{reason}'")
        super().__init__(message or reason)
        self.reason = reason


class NotFound(KeyError):
    """Raised by key-value stores for missing keys."""


class DispatchError(Exception):
    """Base class for everything a dispatch call surfaces to its caller."""


class NoProvidersAvailable(DispatchError):
    def __init__(self, tier: str, reason: str = "no enabled providers") -> None:
        super().__init__(f"No providers available for tier '{tier}': {reason}")
        self.tier = tier
        self.reason = reason


class AllProvidersFailed(DispatchError):
    def __init__(self, tier: str, attempts: Sequence[tuple[str, str]]) -> None:
        self.tier = tier
        self.attempts = list(attempts)
        trail = ", ".join(f"{provider_id}={category}" for provider_id, category in self.attempts)
        super().__init__(f"All providers failed for tier '{tier}': {trail or 'no attempts'}")


class DeadlineExceeded(AllProvidersFailed):
    def __init__(self, tier: str, attempts: Sequence[tuple[str, str]]) -> None:
        super().__init__(tier, [*attempts, ("*", DEADLINE_MARKER)])


class ContentFiltered(DispatchError):
    """Terminal: the provider blocked the content itself."""

    def __init__(self, tier: str, provider_id: str, attempts: Sequence[tuple[str, str]]) -> None:
        super().__init__(f"Content filtered by provider '{provider_id}' (tier '{tier}')")
        self.tier = tier
        self.provider_id = provider_id
        self.attempts = list(attempts)
