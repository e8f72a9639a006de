from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any


PROVIDER_KINDS = frozenset({"openai_chat", "anthropic_messages", "generic"})
AUTH_MODES = frozenset({"bearer", "header", "none"})


@dataclass(frozen=True)
class ProviderDescriptor:
    provider_id: str
    label: str
    kind: str
    base_url: str
    endpoint: str = "/chat/completions"
    capabilities: tuple[str, ...] = ()
    priority: int = 0
    max_requests_per_minute: int | None = None
    credential: str | None = None
    auth_mode: str = "bearer"
    auth_header: str = "Authorization"
    headers: dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    timeout_sec: float = 30.0
    retries: int = 0
    context_budget: int = 8000
    max_history_messages: int | None = None
    default_model: str | None = None
    models: dict[str, str] = field(default_factory=dict)
    max_output_tokens: int | None = None
    options: dict[str, Any] = field(default_factory=dict)
    body_template: dict[str, Any] = field(default_factory=dict)
    response: dict[str, Any] = field(default_factory=dict)
    tls_ca_cert_path: str | None = None

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities

    def model_for_tier(self, tier: str) -> str | None:
        return self.models.get(tier, self.default_model)


@dataclass(frozen=True)
class TierEntry:
    provider_id: str
    weight: int


@dataclass(frozen=True)
class ModelTier:
    name: str
    entries: tuple[TierEntry, ...]
    failover_on_filtered: bool = False

    @property
    def provider_ids(self) -> list[str]:
        return [entry.provider_id for entry in self.entries]

    def ordered_provider_ids(self) -> list[str]:
        # sorted() is stable, so equal weights keep declaration order.
        return [entry.provider_id for entry in sorted(self.entries, key=lambda e: -e.weight)]


def _parse_capabilities(raw: Any) -> tuple[str, ...]:
    if isinstance(raw, dict):
        return tuple(str(key) for key, value in raw.items() if value)
    if isinstance(raw, list):
        result: list[str] = []
        for item in raw:
            tag = str(item).strip()
            if tag and tag not in result:
                result.append(tag)
        return tuple(result)
    return ()


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_provider_file(path: Path, logger: logging.Logger) -> ProviderDescriptor | None:
    try:
        raw = json.loads(path.read_text())
    except Exception:
        logger.exception("Failed to read provider config: %s", path)
        return None
    if not isinstance(raw, dict):
        logger.error("Provider config must be a JSON object: %s", path)
        return None
    try:
        return _descriptor_from_raw(raw, path, logger)
    except (AttributeError, TypeError, ValueError):
        logger.exception("Invalid provider config: %s", path)
        return None


def _descriptor_from_raw(raw: dict[str, Any], path: Path, logger: logging.Logger) -> ProviderDescriptor | None:
    provider_id = str(raw.get("id", "")).strip()
    if not provider_id:
        logger.error("Provider config missing id: %s", path)
        return None
    base_url = str(raw.get("base_url", "")).strip()
    if not base_url:
        logger.error("Provider %s missing base_url", provider_id)
        return None
    kind = str(raw.get("kind", "openai_chat")).strip()
    if kind not in PROVIDER_KINDS:
        logger.error("Provider %s has unsupported kind %r", provider_id, kind)
        return None

    auth = raw.get("auth", {}) or {}
    auth_mode = str(auth.get("mode", "bearer" if auth.get("credential") else "none"))
    if auth_mode not in AUTH_MODES:
        logger.warning("Provider %s has invalid auth mode %r, using none", provider_id, auth_mode)
        auth_mode = "none"
    credential = auth.get("credential")
    if auth_mode != "none" and not credential:
        logger.error("Provider %s auth mode %s requires a credential reference", provider_id, auth_mode)
        return None

    limits = raw.get("limits", {}) or {}
    history_raw = raw.get("history", {}) or {}
    tls = raw.get("tls", {}) or {}
    models_raw = raw.get("models", {}) or {}
    if not isinstance(models_raw, dict):
        logger.warning("Provider %s models must map tier -> model id", provider_id)
        models_raw = {}

    return ProviderDescriptor(
        provider_id=provider_id,
        label=str(raw.get("label", provider_id)),
        kind=kind,
        base_url=base_url,
        endpoint=str(raw.get("endpoint", "/chat/completions")),
        capabilities=_parse_capabilities(raw.get("capabilities")),
        priority=int(raw.get("priority", 0)),
        max_requests_per_minute=_optional_int(limits.get("max_requests_per_minute")),
        credential=str(credential) if credential else None,
        auth_mode=auth_mode,
        auth_header=str(auth.get("header", "Authorization")),
        headers={str(k): str(v) for k, v in (raw.get("headers", {}) or {}).items()},
        enabled=bool(raw.get("enabled", True)),
        timeout_sec=float(limits.get("timeout_sec", raw.get("timeout_sec", 30))),
        retries=int(limits.get("retries", 0)),
        context_budget=int(limits.get("context_budget", 8000)),
        max_history_messages=_optional_int(history_raw.get("max_messages")),
        default_model=raw.get("default_model"),
        models={str(k): str(v) for k, v in models_raw.items()},
        max_output_tokens=_optional_int(raw.get("max_output_tokens")),
        options=dict(raw.get("options", {}) or {}),
        body_template=dict((raw.get("request", {}) or {}).get("body_template", {}) or {}),
        response=dict(raw.get("response", {}) or {}),
        tls_ca_cert_path=tls.get("ca_cert_path"),
    )


def load_provider_registry(providers_dir: Path) -> dict[str, ProviderDescriptor]:
    logger = logging.getLogger("llm_providers")
    registry: dict[str, ProviderDescriptor] = {}

    if not providers_dir.exists() or not providers_dir.is_dir():
        logger.info("Providers dir not found: %s", providers_dir)
        return registry

    for path in sorted(providers_dir.glob("*.json")):
        descriptor = _parse_provider_file(path, logger)
        if not descriptor:
            continue
        if descriptor.provider_id in registry:
            logger.error("Duplicate provider id '%s' in %s", descriptor.provider_id, path)
            continue
        registry[descriptor.provider_id] = descriptor

    logger.info("Loaded providers=%s from %s", len(registry), providers_dir)
    return registry


def apply_credentials(
    registry: dict[str, ProviderDescriptor],
    credentials: dict[str, str],
) -> dict[str, ProviderDescriptor]:
    """Disable providers whose credential reference cannot be resolved."""
    logger = logging.getLogger("llm_providers")
    result: dict[str, ProviderDescriptor] = {}
    for provider_id, descriptor in registry.items():
        if descriptor.enabled and descriptor.credential and not credentials.get(descriptor.credential):
            logger.warning(
                "Provider %s disabled: credential %s is not set",
                provider_id,
                descriptor.credential,
            )
            descriptor = replace(descriptor, enabled=False)
        result[provider_id] = descriptor
    return result


def parse_tiers(
    raw_tiers: dict[str, Any],
    registry: dict[str, ProviderDescriptor],
    default_failover_on_filtered: bool = False,
) -> dict[str, ModelTier]:
    tiers: dict[str, ModelTier] = {}
    for name, tier_raw in raw_tiers.items():
        if isinstance(tier_raw, list):
            tier_raw = {"providers": tier_raw}
        entries: list[TierEntry] = []
        for item in tier_raw.get("providers", []) or []:
            if isinstance(item, dict):
                provider_id = str(item.get("id", "")).strip()
                weight_raw = item.get("weight")
            else:
                provider_id = str(item).strip()
                weight_raw = None
            descriptor = registry.get(provider_id)
            if descriptor is None:
                raise ValueError(f"Tier '{name}' references unknown provider '{provider_id}'")
            weight = int(weight_raw) if weight_raw is not None else descriptor.priority
            entries.append(TierEntry(provider_id=provider_id, weight=weight))
        tiers[str(name)] = ModelTier(
            name=str(name),
            entries=tuple(entries),
            failover_on_filtered=bool(tier_raw.get("failover_on_filtered", default_failover_on_filtered)),
        )
    return tiers


def unusable_tiers(tiers: dict[str, ModelTier], registry: dict[str, ProviderDescriptor]) -> list[str]:
    result: list[str] = []
    for name, tier in tiers.items():
        if not any(registry[provider_id].enabled for provider_id in tier.provider_ids):
            result.append(name)
    return result
