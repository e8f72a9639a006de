from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any


DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant in a Telegram chat. Answer concisely."


@dataclass(frozen=True)
class AppConfig:
    telegram_bot_token: str
    owner_user_id: int
    database_path: str
    encryption_key: str | None
    providers_dir: str
    default_tier: str
    user_tiers: dict[int, str]
    tiers_raw: dict[str, Any]
    llm_deadline_sec: float | None
    llm_failover_delay_sec: float
    llm_failover_on_filtered: bool
    system_prompt: str | None
    history_max_turns: int
    history_persist: bool
    history_display_turns: int = 10

    def tier_for_user(self, telegram_user_id: int) -> str:
        return self.user_tiers.get(telegram_user_id, self.default_tier)


def load_dotenv(path: str | Path) -> dict[str, str]:
    env_path = Path(path)
    if not env_path.exists():
        return {}
    result: dict[str, str] = {}
    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue
        value = value.strip()
        if len(value) >= 2 and ((value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'"))):
            value = value[1:-1]
        result[key] = value
    return result


def _parse_user_tiers(raw: dict[str, Any]) -> dict[int, str]:
    user_tiers: dict[int, str] = {}
    for user_id in raw.get("premium_user_ids", []) or []:
        user_tiers[int(user_id)] = "premium"
    for user_id, tier in (raw.get("user_tiers", {}) or {}).items():
        user_tiers[int(user_id)] = str(tier)
    return user_tiers


def load_config(path: str | Path) -> AppConfig:
    raw = json.loads(Path(path).read_text())
    llm_raw = raw.get("llm", {}) or {}
    history_raw = raw.get("history", {}) or {}

    deadline_raw = llm_raw.get("deadline_sec")
    system_prompt = llm_raw.get("system_prompt", DEFAULT_SYSTEM_PROMPT)

    tiers_raw = raw.get("tiers", {}) or {}
    if not isinstance(tiers_raw, dict):
        raise ValueError("config 'tiers' must be an object")

    return AppConfig(
        telegram_bot_token=raw["telegram_bot_token"],
        owner_user_id=int(raw["owner_user_id"]),
        database_path=raw.get("database_path", "./bot.sqlite3"),
        encryption_key=raw.get("encryption_key") or None,
        providers_dir=str(raw.get("providers_dir", "llm_providers")),
        default_tier=str(raw.get("default_tier", "free")),
        user_tiers=_parse_user_tiers(raw),
        tiers_raw=tiers_raw,
        llm_deadline_sec=float(deadline_raw) if deadline_raw is not None else None,
        llm_failover_delay_sec=float(llm_raw.get("failover_delay_sec", 0)),
        llm_failover_on_filtered=bool(llm_raw.get("failover_on_filtered", False)),
        system_prompt=str(system_prompt) if system_prompt else None,
        history_max_turns=int(history_raw.get("max_turns", 20)),
        history_persist=bool(history_raw.get("persist", True)),
        history_display_turns=int(history_raw.get("display_turns", 10)),
    )
