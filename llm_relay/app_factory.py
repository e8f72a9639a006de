from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping

from telegram.ext import Application, ApplicationBuilder, CommandHandler, MessageHandler, filters

from llm_relay.config import AppConfig
from llm_relay.dispatcher import DispatchContext, Dispatcher
from llm_relay.handlers import handle_enable, handle_history, handle_message, handle_reset, handle_stats
from llm_relay.history import HistoryStore
from llm_relay.kv_store import SQLiteKeyValueStore
from llm_relay.llm_providers import apply_credentials, load_provider_registry, parse_tiers, unusable_tiers
from llm_relay.normalizer import RequestNormalizer
from llm_relay.provider_client import build_clients
from llm_relay.runtime import RuntimeContext
from llm_relay.security import TokenCipher, resolve_credentials
from llm_relay.stats import StatsTracker


logger = logging.getLogger("app_factory")


def register_handlers(application: Application) -> None:
    application.add_handler(CommandHandler("reset", handle_reset))
    application.add_handler(CommandHandler("history", handle_history))
    application.add_handler(CommandHandler("stats", handle_stats, filters=filters.ChatType.PRIVATE))
    application.add_handler(CommandHandler("enable", handle_enable, filters=filters.ChatType.PRIVATE))
    application.add_handler(
        MessageHandler((filters.TEXT & ~filters.COMMAND) | filters.PHOTO, handle_message)
    )


def build_application(config: AppConfig, runtime: RuntimeContext) -> Application:
    application = ApplicationBuilder().token(config.telegram_bot_token).build()
    application.bot_data.update(runtime.to_bot_data())
    register_handlers(application)
    return application


def build_runtime(config: AppConfig, env_values: Mapping[str, str], base_dir: Path | None = None) -> RuntimeContext:
    base_dir = base_dir or Path.cwd()
    providers_dir = Path(config.providers_dir)
    if not providers_dir.is_absolute():
        providers_dir = base_dir / providers_dir
    registry = load_provider_registry(providers_dir)
    if not registry:
        raise ValueError(f"No providers configured in {providers_dir}")

    cipher = TokenCipher(config.encryption_key) if config.encryption_key else None
    credential_names = {d.credential for d in registry.values() if d.credential}
    credentials = resolve_credentials(sorted(credential_names), env_values, cipher)
    registry = apply_credentials(registry, credentials)

    tiers = parse_tiers(config.tiers_raw, registry, config.llm_failover_on_filtered)
    if config.default_tier not in tiers:
        raise ValueError(f"Default tier '{config.default_tier}' is not defined")
    for name in unusable_tiers(tiers, registry):
        logger.warning("Tier %s has no enabled providers and is unusable", name)

    adapters, http_clients = build_clients(registry, credentials)
    kv_store = SQLiteKeyValueStore(config.database_path) if config.history_persist else None
    history = HistoryStore(max_turns=config.history_max_turns, kv_store=kv_store)
    stats = StatsTracker(registry)
    dispatcher = Dispatcher(
        DispatchContext(
            registry=registry,
            tiers=tiers,
            history=history,
            stats=stats,
            clients=adapters,
            normalizer=RequestNormalizer(),
            system_prompt=config.system_prompt,
            deadline_sec=config.llm_deadline_sec,
            failover_delay_sec=config.llm_failover_delay_sec,
        )
    )
    logger.info("Runtime ready providers=%s tiers=%s", len(registry), ", ".join(sorted(tiers)))
    return RuntimeContext(
        config=config,
        dispatcher=dispatcher,
        provider_registry=registry,
        tiers=tiers,
        kv_store=kv_store,
        llm_clients=http_clients,
    )
