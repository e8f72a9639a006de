from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from llm_relay.config import AppConfig
from llm_relay.dispatcher import Dispatcher
from llm_relay.kv_store import KeyValueStore, SQLiteKeyValueStore
from llm_relay.llm_providers import ModelTier, ProviderDescriptor


@dataclass
class RuntimeContext:
    config: AppConfig
    dispatcher: Dispatcher
    provider_registry: dict[str, ProviderDescriptor]
    tiers: dict[str, ModelTier]
    kv_store: KeyValueStore | None = None
    llm_clients: dict[str, httpx.AsyncClient] = field(default_factory=dict)

    @property
    def owner_user_id(self) -> int:
        return self.config.owner_user_id

    def to_bot_data(self) -> dict[str, Any]:
        return {"runtime": self}

    async def aclose(self) -> None:
        for client in self.llm_clients.values():
            await client.aclose()
        if isinstance(self.kv_store, SQLiteKeyValueStore):
            self.kv_store.close()
        logging.getLogger("runtime").info("Runtime closed")
