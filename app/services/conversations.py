from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from app.services.users import UserProfile

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class CachedProfile:
    profile: UserProfile
    cached_at: float


@dataclass
class Conversation:
    """Everything the bot keeps in memory for one chat.

    ``operation`` is the active operation state (``None`` when idle). It is only read or
    written while ``lock`` is held.
    """

    chat_id: int
    last_event_at: float
    operation: Any = None
    profile: CachedProfile | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ConversationStore:
    def __init__(self, clock: Clock = time.monotonic) -> None:
        self.clock = clock
        self._items: dict[int, Conversation] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, chat_id: int) -> bool:
        return chat_id in self._items

    def get(self, chat_id: int) -> Conversation:
        conv = self._items.get(chat_id)
        if conv is None:
            conv = Conversation(chat_id=chat_id, last_event_at=self.clock())
            self._items[chat_id] = conv
        return conv

    def peek(self, chat_id: int) -> Conversation | None:
        return self._items.get(chat_id)

    def lock(self, chat_id: int) -> asyncio.Lock:
        """Per-chat lock; also marks the chat as active."""
        conv = self.get(chat_id)
        conv.last_event_at = self.clock()
        return conv.lock

    def evict_idle(self, max_idle_sec: float) -> int:
        """Drop conversations idle for longer than ``max_idle_sec`` whose lock is free."""
        now = self.clock()
        stale = [
            chat_id
            for chat_id, conv in list(self._items.items())
            if now - conv.last_event_at > max_idle_sec and not conv.lock.locked()
        ]
        for chat_id in stale:
            conv = self._items.pop(chat_id, None)
            if conv is not None and conv.operation is not None:
                logger.info(
                    "operation_expired",
                    extra={"event": "operation_expired", "chat_id": chat_id, "operation": getattr(conv.operation, "kind", None)},
                )
        return len(stale)


class ProfileCache:
    """Per-conversation profile snapshot with a fixed TTL counted from set/merge time."""

    def __init__(self, store: ConversationStore, ttl_sec: float = 300.0, clock: Clock | None = None) -> None:
        self.store = store
        self.ttl_sec = float(ttl_sec)
        self.clock = clock or store.clock

    def get(self, chat_id: int) -> UserProfile | None:
        conv = self.store.peek(chat_id)
        if conv is None or conv.profile is None:
            return None
        if self.clock() - conv.profile.cached_at >= self.ttl_sec:
            conv.profile = None
            return None
        return conv.profile.profile

    def set(self, chat_id: int, profile: UserProfile) -> None:
        self.store.get(chat_id).profile = CachedProfile(profile=profile, cached_at=self.clock())

    def invalidate(self, chat_id: int) -> None:
        conv = self.store.peek(chat_id)
        if conv is not None:
            conv.profile = None

    def merge_update(self, chat_id: int, **partial: Any) -> UserProfile | None:
        """Apply ``partial`` to a live entry and restart its TTL. ``settings`` is merged key by key.

        Does nothing when there is no live entry: the next read goes to the store anyway.
        """
        current = self.get(chat_id)
        if current is None:
            return None
        if "settings" in partial and partial["settings"] is not None:
            merged = dict(current.settings or {})
            merged.update(partial["settings"])
            partial["settings"] = merged
        if "wallets" in partial:
            partial["wallets"] = tuple(partial["wallets"])
        updated = dataclasses.replace(current, **partial)
        self.set(chat_id, updated)
        return updated
