from __future__ import annotations

import json
import logging
import threading
from collections import deque
from typing import Iterable

from llm_relay.errors import NotFound
from llm_relay.kv_store import KeyValueStore
from llm_relay.models import ChatTurn


class HistoryStore:
    """Bounded per-conversation turn log.

    Appends for one conversation key are serialized by a per-key lock, so a
    batch passed to ``append_turns`` is never split by another writer. Reads
    return a snapshot tuple and never block on a slow writer of another key.
    """

    def __init__(self, max_turns: int = 20, kv_store: KeyValueStore | None = None) -> None:
        if max_turns < 1:
            raise ValueError("max_turns must be positive")
        self._max_turns = max_turns
        self._kv_store = kv_store
        self._histories: dict[str, deque[ChatTurn]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._logger = logging.getLogger("history")

    @property
    def max_turns(self) -> int:
        return self._max_turns

    def _lock_for(self, key: str) -> threading.Lock:
        # One lock per key, created with the key's history and kept as long as it.
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _storage_key(self, key: str) -> str:
        return f"history:{key}"

    def _load(self, key: str) -> deque[ChatTurn]:
        history = self._histories.get(key)
        if history is not None:
            return history
        history = deque(maxlen=self._max_turns)
        if self._kv_store is not None:
            try:
                raw = self._kv_store.get(self._storage_key(key))
            except NotFound:
                raw = None
            if raw:
                try:
                    history.extend(ChatTurn.from_dict(item) for item in json.loads(raw))
                except (ValueError, KeyError, TypeError):
                    self._logger.exception("Discarding unreadable history key=%s", key)
                    history.clear()
        self._histories[key] = history
        return history

    def _persist(self, key: str, history: deque[ChatTurn]) -> None:
        if self._kv_store is None:
            return
        payload = json.dumps([turn.to_dict() for turn in history], ensure_ascii=False)
        self._kv_store.set(self._storage_key(key), payload)

    def get_history(self, key: str) -> tuple[ChatTurn, ...]:
        with self._lock_for(key):
            return tuple(self._load(key))

    def append_turn(self, key: str, turn: ChatTurn) -> None:
        self.append_turns(key, [turn])

    def append_turns(self, key: str, turns: Iterable[ChatTurn]) -> None:
        batch = list(turns)
        if not batch:
            return
        with self._lock_for(key):
            history = self._load(key)
            # deque(maxlen=...) drops from the left, oldest first.
            history.extend(batch)
            self._persist(key, history)
        self._logger.debug("Appended turns key=%s count=%s size=%s", key, len(batch), len(history))

    def clear(self, key: str) -> None:
        with self._lock_for(key):
            self._histories[key] = deque(maxlen=self._max_turns)
            if self._kv_store is not None:
                self._kv_store.delete(self._storage_key(key))
        self._logger.info("Cleared history key=%s", key)
