from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from typing import Iterable, Protocol


TELEGRAM_MESSAGE_LIMIT = 4096
_BOT_TOKEN_PATH = re.compile(r"/bot\d+:[A-Za-z0-9_-]+/")


class Clock(Protocol):
    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


def split_message(text: str, limit: int = TELEGRAM_MESSAGE_LIMIT) -> Iterable[str]:
    if len(text) <= limit:
        yield text
        return

    chunk = ""
    for para in text.split("\n\n"):
        candidate = para if not chunk else f"{chunk}\n\n{para}"
        if len(candidate) <= limit:
            chunk = candidate
            continue

        if chunk:
            yield chunk
            chunk = ""

        if len(para) <= limit:
            chunk = para
            continue

        for i in range(0, len(para), limit):
            yield para[i : i + limit]

    if chunk:
        yield chunk


def conversation_key(chat_id: int, thread_id: int | None = None) -> str:
    if thread_id:
        return f"{chat_id}:{thread_id}"
    return str(chat_id)


def redact_media_url(url: str | None) -> str | None:
    """Drop the bot token from Telegram file URLs before they are stored."""
    if not url:
        return url
    return _BOT_TOKEN_PATH.sub("/bot<redacted>/", url)
