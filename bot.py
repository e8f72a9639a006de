from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from telegram import BotCommand, BotCommandScopeChat, BotCommandScopeDefault, Update

from llm_relay.app_factory import build_application, build_runtime
from llm_relay.config import load_config, load_dotenv


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger("bot")


async def main() -> None:
    base_dir = Path(__file__).resolve().parent
    env_values = {**os.environ, **load_dotenv(base_dir / ".env")}
    config_path = env_values.get("LLM_RELAY_CONFIG", str(base_dir / "config.json"))
    config = load_config(config_path)
    runtime = build_runtime(config, env_values, base_dir=base_dir)
    application = build_application(config, runtime)

    try:
        await application.initialize()
        await application.bot.set_my_commands(
            [
                BotCommand("reset", "Clear chat history"),
                BotCommand("history", "Show recent chat history"),
            ],
            scope=BotCommandScopeDefault(),
        )
        await application.bot.set_my_commands(
            [
                BotCommand("reset", "Clear chat history"),
                BotCommand("history", "Show recent chat history"),
                BotCommand("stats", "Provider statistics"),
                BotCommand("enable", "Re-enable a disabled provider"),
            ],
            scope=BotCommandScopeChat(chat_id=config.owner_user_id),
        )
        await application.start()
        await application.updater.start_polling(allowed_updates=Update.ALL_TYPES)
        logger.info("Bot started as @%s", application.bot.username)
        await asyncio.Event().wait()
    finally:
        if application.updater and application.updater.running:
            await application.updater.stop()
        if application.running:
            await application.stop()
        await application.shutdown()
        await runtime.aclose()


if __name__ == "__main__":
    asyncio.run(main())
