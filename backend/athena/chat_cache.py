"""
Per-user cache of open companion conversations.

Bounded LRU with an idle TTL. Lives for the process; a restart starts every
conversation fresh (the client still holds its running summary).
"""
import threading
import time
from collections import OrderedDict
from functools import lru_cache
from typing import Callable

from .config import get_settings
from .engine.companion import ChatConversation


class ChatSessionCache:
    def __init__(self, max_entries: int = 1000, ttl_seconds: float = 3600,
                 clock: Callable[[], float] = time.monotonic):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, tuple[ChatConversation, float]] = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> ChatConversation | None:
        with self._lock:
            return self._get_locked(key)

    def put(self, key: str, conversation: ChatConversation) -> None:
        with self._lock:
            self._put_locked(key, conversation)

    def get_or_create(self, key: str, factory: Callable[[], ChatConversation]) -> ChatConversation:
        """Atomic: concurrent callers for one key all get the same conversation."""
        with self._lock:
            conversation = self._get_locked(key)
            if conversation is None:
                conversation = factory()
                self._put_locked(key, conversation)
            return conversation

    def discard(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    # callers hold self._lock

    def _get_locked(self, key: str) -> ChatConversation | None:
        item = self._entries.get(key)
        if item is None:
            return None
        conversation, touched = item
        now = self._clock()
        if now - touched > self.ttl_seconds:
            del self._entries[key]
            return None
        self._entries[key] = (conversation, now)
        self._entries.move_to_end(key)
        return conversation

    def _put_locked(self, key: str, conversation: ChatConversation) -> None:
        self._entries[key] = (conversation, self._clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)


@lru_cache(maxsize=1)
def get_chat_cache() -> ChatSessionCache:
    settings = get_settings()
    return ChatSessionCache(
        max_entries=settings.chat_cache_max_entries,
        ttl_seconds=settings.chat_cache_ttl_seconds,
    )
