from __future__ import annotations

from app.bot.keyboards import confirm_menu, field_menu, main_menu, onboarding_menu
from app.bot.messenger import Messenger
from app.bot.templates import (
    cancelled_text,
    confirm_card,
    conflict_text,
    executed_text,
    failed_text,
    field_prompt,
    invalid_hint,
    not_eligible_text,
)
from app.services.operations import StepResult, StepStatus


class FlowPresenter:
    """Turns operation step results into chat messages."""

    def __init__(self, messenger: Messenger, hint_delete_delay: float = 10.0) -> None:
        self.messenger = messenger
        self.hint_delete_delay = hint_delete_delay

    async def render(self, chat_id: int, result: StepResult, settings: dict | None = None) -> int:
        status = result.status
        if status is StepStatus.PROMPT:
            return await self.messenger.send(
                chat_id,
                field_prompt(result.kind, result.field, result.fields),
                field_menu(result.kind, result.field),
            )
        if status is StepStatus.INVALID:
            message_id = await self.messenger.send(chat_id, invalid_hint(result.hint), field_menu(result.kind, result.field))
            self.messenger.delete_later(chat_id, message_id, self.hint_delete_delay)
            return message_id
        if status is StepStatus.CONFIRM:
            return await self.messenger.send(chat_id, confirm_card(result.order, settings), confirm_menu(result.idempotency_key))
        if status is StepStatus.EXECUTED:
            return await self.messenger.send(chat_id, executed_text(result.kind, result.order, result.reference))
        if status is StepStatus.FAILED:
            return await self.messenger.send(chat_id, failed_text(result.kind, result.reason.value if result.reason else None))
        return await self.messenger.send(chat_id, cancelled_text(result.kind), main_menu())

    async def not_eligible(self, chat_id: int, reason: str) -> int:
        return await self.messenger.send(chat_id, not_eligible_text(reason), onboarding_menu(reason))

    async def conflict(self, chat_id: int, active_kind: str, pending: StepResult | None = None) -> int:
        message_id = await self.messenger.send(chat_id, conflict_text(active_kind))
        if pending is not None:
            await self.render(chat_id, pending)
        return message_id
