from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.core.config import get_settings
from app.services.conversations import ConversationStore

logger = logging.getLogger(__name__)


class WorkerScheduler:
    def __init__(self, conversations: ConversationStore) -> None:
        self.conversations = conversations
        self.settings = get_settings()
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    async def _sweep_idle_conversations(self) -> int:
        try:
            removed = self.conversations.evict_idle(self.settings.conversation_idle_minutes * 60)
            logger.info(
                "conversations_swept",
                extra={"event": "conversations_swept", "removed": removed, "remaining": len(self.conversations)},
            )
            return removed
        except Exception as exc:  # noqa: BLE001
            logger.exception("conversation_sweep_failed", extra={"event": "conversation_sweep_failed", "reason": str(exc)})
            return 0

    def start(self) -> None:
        self.scheduler.add_job(
            self._sweep_idle_conversations,
            "interval",
            minutes=self.settings.conversation_sweep_minutes,
            max_instances=1,
        )
        self.scheduler.start()

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
