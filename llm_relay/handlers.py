from __future__ import annotations

import logging

from telegram import Update
from telegram.ext import ContextTypes

from llm_relay.errors import AllProvidersFailed, ContentFiltered, DeadlineExceeded, NoProvidersAvailable
from llm_relay.models import ProviderStats
from llm_relay.runtime import RuntimeContext
from llm_relay.utils import conversation_key, split_message

logger = logging.getLogger("bot")

HISTORY_PREVIEW_CHARS = 200


def _runtime(context: ContextTypes.DEFAULT_TYPE) -> RuntimeContext:
    return context.application.bot_data["runtime"]


def _conversation_key(update: Update) -> str:
    thread_id = update.message.message_thread_id if update.message and update.message.is_topic_message else None
    return conversation_key(update.effective_chat.id, thread_id)


def _is_owner(update: Update, runtime: RuntimeContext) -> bool:
    return bool(update.effective_user and update.effective_user.id == runtime.owner_user_id)


async def _photo_url(update: Update, context: ContextTypes.DEFAULT_TYPE) -> str | None:
    if not update.message or not update.message.photo:
        return None
    largest = update.message.photo[-1]
    tg_file = await context.bot.get_file(largest.file_id)
    return tg_file.file_path


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.message
    if not message or not update.effective_chat or not update.effective_user:
        return
    text = (message.text or message.caption or "").strip()
    media = await _photo_url(update, context)
    if not text and not media:
        return
    if not text:
        text = "Describe this image."
    runtime = _runtime(context)
    key = _conversation_key(update)
    tier = runtime.config.tier_for_user(update.effective_user.id)
    logger.info("msg chat_key=%s user_id=%s tier=%s chars=%s media=%s", key, update.effective_user.id, tier, len(text), bool(media))

    try:
        result = await runtime.dispatcher.dispatch(key, tier, text, media=media)
    except NoProvidersAvailable as exc:
        logger.error("No providers for chat_key=%s: %s", key, exc)
        await message.reply_text("The bot is not configured to answer right now. The owner has been notified.")
        if runtime.owner_user_id != update.effective_user.id:
            await context.bot.send_message(chat_id=runtime.owner_user_id, text=f"⚠️ {exc}")
        return
    except ContentFiltered as exc:
        logger.warning("Content filtered chat_key=%s provider=%s trail=%s", key, exc.provider_id, exc.attempts)
        await message.reply_text("Sorry, this request was blocked by the model's content policy.")
        return
    except AllProvidersFailed as exc:
        logger.error("All providers failed chat_key=%s trail=%s", key, exc.attempts)
        if isinstance(exc, DeadlineExceeded):
            await message.reply_text("The models took too long to answer. Please try again.")
        else:
            await message.reply_text("All models are unavailable right now. Please try again later.")
        return

    for chunk in split_message(result.text):
        await message.reply_text(chunk)


async def handle_reset(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not update.effective_chat:
        return
    runtime = _runtime(context)
    runtime.dispatcher.reset_history(_conversation_key(update))
    await update.message.reply_text("Chat history cleared. Starting fresh!")


async def handle_history(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not update.effective_chat:
        return
    runtime = _runtime(context)
    turns = runtime.dispatcher.history_snapshot(_conversation_key(update))
    if not turns:
        await update.message.reply_text("History is empty.")
        return
    lines: list[str] = []
    for turn in turns[-runtime.config.history_display_turns :]:
        content = turn.content
        if len(content) > HISTORY_PREVIEW_CHARS:
            content = content[:HISTORY_PREVIEW_CHARS] + "…"
        author = f"assistant ({turn.provider_id})" if turn.provider_id else turn.role
        lines.append(f"{author}: {content}")
    for chunk in split_message("\n\n".join(lines)):
        await update.message.reply_text(chunk)


def format_stats(stats: dict[str, ProviderStats], unusable_tiers: list[str]) -> str:
    lines = ["Provider stats:"]
    for item in stats.values():
        state = "on" if item.enabled else f"off ({item.disabled_reason or 'config'})"
        lines.append(
            f"• {item.label} [{item.provider_id}] {state}, health={item.health}\n"
            f"  calls={item.attempts} ok={item.successes} fail={item.failure_count} "
            f"rate={item.success_rate}% avg={item.avg_latency_ms:.0f}ms tokens={item.total_tokens} "
            f"rpm={item.requests_last_minute}"
        )
        if item.failures:
            breakdown = ", ".join(f"{category}={count}" for category, count in sorted(item.failures.items()))
            lines.append(f"  failures: {breakdown}")
        if item.last_error:
            lines.append(f"  last error: {item.last_error}")
    if unusable_tiers:
        lines.append(f"Unusable tiers: {', '.join(sorted(unusable_tiers))}")
    return "\n".join(lines)


async def handle_stats(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message:
        return
    runtime = _runtime(context)
    if not _is_owner(update, runtime):
        return
    text = format_stats(runtime.dispatcher.stats_snapshot(), runtime.dispatcher.tier_report())
    for chunk in split_message(text):
        await update.message.reply_text(chunk)


async def handle_enable(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message:
        return
    runtime = _runtime(context)
    if not _is_owner(update, runtime):
        return
    if not context.args:
        await update.message.reply_text("Usage: /enable <provider_id>")
        return
    provider_id = context.args[0].strip()
    try:
        changed = runtime.dispatcher.enable_provider(provider_id)
    except KeyError:
        await update.message.reply_text(f"Unknown provider: {provider_id}")
        return
    if changed:
        await update.message.reply_text(f"Provider {provider_id} re-enabled.")
    else:
        await update.message.reply_text(f"Provider {provider_id} was not disabled.")
