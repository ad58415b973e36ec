from __future__ import annotations

import logging
from contextlib import suppress
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable

from aiogram import F, Router
from aiogram.filters import Command
from aiogram.types import CallbackQuery, Message

from app.bot.keyboards import create_wallet_menu, main_menu, order_ref, orders_menu, settings_menu, terms_menu
from app.bot.templates import (
    deposit_text,
    failed_text,
    help_text,
    not_eligible_text,
    order_cancelled_text,
    orders_text,
    settings_text,
    terms_text,
    transactions_text,
    wallet_created_text,
    wallet_text,
    wallet_unsecured_text,
    welcome_text,
)
from app.core.config import get_settings
from app.core.container import ServiceHub
from app.core.errors import (
    BotError,
    InvalidTransitionError,
    NotEligibleError,
    OperationConflictError,
    UpstreamError,
    ValidationError,
    WalletExistsError,
)
from app.core.fmt import safe_html
from app.core.trading import OperationKind
from app.services.operations import Confirming, StepStatus

router = Router()
_settings = get_settings()
_hub: ServiceHub | None = None
logger = logging.getLogger(__name__)

COMMAND_KINDS = {
    "buy": OperationKind.BUY,
    "sell": OperationKind.SELL,
    "dca": OperationKind.RECURRING_BUY,
    "limit": OperationKind.LIMIT_ORDER,
    "withdraw": OperationKind.WITHDRAW,
}
_STARTABLE = {kind.value: kind for kind in COMMAND_KINDS.values()}
_GENERIC_ERROR = "Something went wrong on my side. Nothing was sent. Try again in a moment."


def init_handlers(hub: ServiceHub) -> None:
    global _hub
    _hub = hub


def _require_hub() -> ServiceHub:
    if _hub is None:
        raise RuntimeError("Handlers not initialized")
    return _hub


async def _acquire_callback_once(callback: CallbackQuery, ttl: int = 60 * 30) -> bool:
    hub = _require_hub()
    cb_id = (callback.id or "").strip()
    if not cb_id:
        return True
    return await hub.cache.set_if_absent(hub.cache.key("seen", "callback", cb_id), ttl=ttl)


async def _run_locked(chat_id: int, runner: Callable[[], Awaitable[None]]) -> None:
    """Run one inbound event for ``chat_id`` under its conversation lock."""
    hub = _require_hub()
    async with hub.conversations.lock(chat_id):
        try:
            await runner()
        except NotEligibleError as exc:
            await hub.presenter.not_eligible(chat_id, exc.reason)
        except ValidationError as exc:
            await hub.messenger.send(chat_id, f"⚠ {safe_html(exc.hint)}")
        except UpstreamError as exc:
            logger.warning("upstream_unavailable", extra={"event": "upstream_unavailable", "chat_id": chat_id, "reason": str(exc)})
            await hub.messenger.send(chat_id, "A service I depend on is not responding. Try again shortly.")
        except BotError as exc:
            logger.warning("bot_error", extra={"event": "bot_error", "chat_id": chat_id, "reason": str(exc)})
            await hub.messenger.send(chat_id, _GENERIC_ERROR)
        except Exception:  # noqa: BLE001
            logger.exception("handler_failed", extra={"event": "handler_failed", "chat_id": chat_id})
            with suppress(Exception):
                await hub.messenger.send(chat_id, _GENERIC_ERROR)


def _cached_settings(chat_id: int) -> dict | None:
    profile = _require_hub().profile_cache.get(chat_id)
    return profile.effective_settings() if profile else None


async def _start_operation(chat_id: int, kind: OperationKind) -> None:
    hub = _require_hub()
    try:
        result = await hub.operations.start(chat_id, kind)
    except OperationConflictError as exc:
        await hub.presenter.conflict(chat_id, exc.active_kind, hub.operations.current_prompt(chat_id))
        return
    await hub.presenter.render(chat_id, result)


async def _submit(chat_id: int, raw: str, name: str | None = None) -> None:
    hub = _require_hub()
    try:
        result = await hub.operations.submit_field(chat_id, raw, name)
    except InvalidTransitionError:
        if isinstance(hub.operations.state(chat_id), Confirming):
            await hub.messenger.send(chat_id, "Tap <b>Confirm</b> or <b>Cancel</b> on the order card above.")
        else:
            await hub.messenger.send(chat_id, "Pick an action to start.", main_menu())
        return
    settings = _cached_settings(chat_id) if result.status is StepStatus.CONFIRM else None
    await hub.presenter.render(chat_id, result, settings)


async def _show_wallet(chat_id: int) -> None:
    hub = _require_hub()
    profile = await hub.profile_service.load(chat_id, force_refresh=True)
    if profile is None:
        await hub.presenter.not_eligible(chat_id, "not_registered")
        return
    if not profile.terms_accepted:
        await hub.messenger.send(chat_id, terms_text(), terms_menu())
        return
    if not profile.wallets:
        await hub.messenger.send(chat_id, "You don't have a wallet yet.", create_wallet_menu())
        return
    address = profile.primary_wallet.address
    try:
        balance: Decimal | None = await hub.balances.get_native_balance(address)
    except UpstreamError:
        balance = None
    await hub.messenger.send(chat_id, wallet_text(address, balance), main_menu())


async def _create_wallet(chat_id: int) -> None:
    hub = _require_hub()
    try:
        creation = await hub.wallet_service.create_wallet(chat_id)
    except WalletExistsError:
        await hub.messenger.send(chat_id, "You already have a wallet. Use /wallet to see it.")
        return
    if not creation.secured:
        await hub.messenger.send(chat_id, wallet_unsecured_text())
        return
    message_id = await hub.messenger.send(chat_id, wallet_created_text(creation.address, creation.private_key))
    hub.messenger.delete_later(chat_id, message_id, _settings.key_reveal_delete_delay_sec)
    try:
        result = await hub.operations.start(chat_id, OperationKind.KEY_VERIFICATION)
    except OperationConflictError:
        return
    await hub.presenter.render(chat_id, result)


async def _show_orders(chat_id: int, edit_message_id: int | None = None) -> None:
    hub = _require_hub()
    orders = await hub.order_service.list_for_chat(chat_id)
    refs = {order_ref(o.kind, o.order_id): {"kind": o.kind.value, "order_id": o.order_id} for o in orders}
    await hub.cache.set_json(hub.cache.key("orders", chat_id), refs, ttl=60 * 15)
    text = orders_text(orders)
    menu = orders_menu(orders)
    if edit_message_id is not None:
        await hub.messenger.edit(chat_id, edit_message_id, text, menu)
        return
    await hub.messenger.send(chat_id, text, menu)


async def _show_deposit(chat_id: int) -> None:
    hub = _require_hub()
    profile = await hub.profile_service.require_eligible(chat_id, allow_stale=True)
    await hub.messenger.send(chat_id, deposit_text(profile.primary_wallet.address, profile.primary_wallet.chain), main_menu())


async def _show_transactions(chat_id: int) -> None:
    hub = _require_hub()
    profile = await hub.profile_service.load(chat_id, allow_stale=True)
    if profile is None or profile.user_id is None:
        await hub.presenter.not_eligible(chat_id, "not_registered")
        return
    entries = await hub.journal.recent(profile.user_id, limit=10)
    counts = await hub.journal.status_counts(profile.user_id) if entries else {}
    await hub.messenger.send(chat_id, transactions_text(entries, counts), main_menu())


@router.message(Command("start"))
async def start_cmd(message: Message) -> None:
    hub = _require_hub()
    chat_id = message.chat.id
    username = message.from_user.username if message.from_user else None
    name = message.from_user.first_name if message.from_user else "there"

    async def runner() -> None:
        user = await hub.user_service.ensure_user(chat_id, username)
        try:
            is_new = (datetime.utcnow() - user.created_at).total_seconds() < 15
        except Exception:  # noqa: BLE001
            is_new = False
        profile = await hub.profile_service.load(chat_id, force_refresh=True)
        if profile is None or not profile.terms_accepted:
            await hub.messenger.send(chat_id, welcome_text(True, name))
            await hub.messenger.send(chat_id, terms_text(), terms_menu())
            return
        if not profile.wallets:
            await hub.messenger.send(chat_id, welcome_text(is_new, name))
            await hub.messenger.send(chat_id, not_eligible_text("no_wallet"), create_wallet_menu())
            return
        await hub.messenger.send(chat_id, welcome_text(is_new, name), main_menu())

    await _run_locked(chat_id, runner)


@router.message(Command("help"))
async def help_cmd(message: Message) -> None:
    await message.answer(help_text(), reply_markup=main_menu())


@router.message(Command("wallet"))
async def wallet_cmd(message: Message) -> None:
    chat_id = message.chat.id
    await _run_locked(chat_id, lambda: _show_wallet(chat_id))


@router.message(Command("buy", "sell", "dca", "limit", "withdraw"))
async def operation_cmd(message: Message) -> None:
    chat_id = message.chat.id
    command = (message.text or "").split()[0].lstrip("/").split("@")[0].lower()
    kind = COMMAND_KINDS[command]
    await _run_locked(chat_id, lambda: _start_operation(chat_id, kind))


@router.message(Command("orders"))
async def orders_cmd(message: Message) -> None:
    chat_id = message.chat.id
    await _run_locked(chat_id, lambda: _show_orders(chat_id))


@router.message(Command("deposit"))
async def deposit_cmd(message: Message) -> None:
    chat_id = message.chat.id
    await _run_locked(chat_id, lambda: _show_deposit(chat_id))


@router.message(Command("transactions"))
async def transactions_cmd(message: Message) -> None:
    chat_id = message.chat.id
    await _run_locked(chat_id, lambda: _show_transactions(chat_id))


@router.message(Command("cancel"))
async def cancel_cmd(message: Message) -> None:
    hub = _require_hub()
    chat_id = message.chat.id

    async def runner() -> None:
        try:
            result = await hub.operations.cancel(chat_id)
        except InvalidTransitionError:
            await hub.messenger.send(chat_id, "Nothing to cancel.", main_menu())
            return
        await hub.presenter.render(chat_id, result)

    await _run_locked(chat_id, runner)


@router.message(Command("settings"))
async def settings_cmd(message: Message) -> None:
    hub = _require_hub()
    chat_id = message.chat.id

    async def runner() -> None:
        profile = await hub.profile_service.load(chat_id, allow_stale=True)
        if profile is None:
            await hub.presenter.not_eligible(chat_id, "not_registered")
            return
        settings = profile.effective_settings()
        await hub.messenger.send(chat_id, settings_text(settings), settings_menu(settings))

    await _run_locked(chat_id, runner)


@router.message(F.text & ~F.text.startswith("/"))
async def text_input(message: Message) -> None:
    chat_id = message.chat.id
    raw = message.text or ""
    await _run_locked(chat_id, lambda: _submit(chat_id, raw))


@router.callback_query(F.data.startswith("onb:"))
async def onboarding_callbacks(callback: CallbackQuery) -> None:
    if not await _acquire_callback_once(callback):
        with suppress(Exception):
            await callback.answer()
        return

    hub = _require_hub()
    data = callback.data or ""
    chat_id = callback.message.chat.id
    await callback.answer()

    async def runner() -> None:
        if data == "onb:accept_terms":
            await hub.user_service.ensure_user(chat_id, callback.from_user.username if callback.from_user else None)
            await hub.profile_service.accept_terms(chat_id)
            await hub.messenger.send(chat_id, "Terms accepted.", create_wallet_menu())
        elif data == "onb:create_wallet":
            await _create_wallet(chat_id)
        elif data == "onb:wallet":
            await _show_wallet(chat_id)
        elif data == "onb:deposit":
            await _show_deposit(chat_id)

    await _run_locked(chat_id, runner)


@router.callback_query(F.data.startswith("op:"))
async def operation_callbacks(callback: CallbackQuery) -> None:
    if not await _acquire_callback_once(callback):
        with suppress(Exception):
            await callback.answer()
        return

    hub = _require_hub()
    data = callback.data or ""
    chat_id = callback.message.chat.id
    parts = data.split(":", 3)
    action = parts[1] if len(parts) > 1 else ""

    if action == "confirm":
        token = parts[2] if len(parts) > 2 else ""
        # One submission per confirmation card, across every worker process.
        if not await hub.cache.claim_strict(hub.cache.key("confirm", token), ttl=60 * 60 * 24):
            await callback.answer("Already submitted.", show_alert=False)
            return
        await callback.answer("Submitting…")
        with suppress(Exception):
            await callback.message.edit_reply_markup(reply_markup=None)

        async def confirm_runner() -> None:
            try:
                result = await hub.operations.confirm(chat_id, token)
            except InvalidTransitionError:
                await hub.messenger.send(chat_id, "This confirmation is no longer valid.")
                return
            await hub.presenter.render(chat_id, result)

        await _run_locked(chat_id, confirm_runner)
        return

    await callback.answer()

    async def runner() -> None:
        if action == "start" and len(parts) > 2 and parts[2] in _STARTABLE:
            await _start_operation(chat_id, _STARTABLE[parts[2]])
        elif action == "field" and len(parts) > 3:
            await _submit(chat_id, parts[3], name=parts[2])
        elif action == "cancel":
            try:
                result = await hub.operations.cancel(chat_id)
            except InvalidTransitionError:
                return
            with suppress(Exception):
                await callback.message.edit_reply_markup(reply_markup=None)
            await hub.presenter.render(chat_id, result)

    await _run_locked(chat_id, runner)


@router.callback_query(F.data.startswith("settings:"))
async def settings_callbacks(callback: CallbackQuery) -> None:
    if not await _acquire_callback_once(callback):
        with suppress(Exception):
            await callback.answer()
        return

    hub = _require_hub()
    data = callback.data or ""
    chat_id = callback.message.chat.id

    if data == "settings:show":
        await callback.answer()
        await settings_cmd(callback.message)
        return
    if not data.startswith("settings:set:"):
        await callback.answer("Unknown settings action", show_alert=True)
        return

    _, _, key, value = data.split(":", 3)

    async def runner() -> None:
        new_settings = await hub.profile_service.update_settings(chat_id, {key: value})
        await hub.messenger.edit(chat_id, callback.message.message_id, settings_text(new_settings), settings_menu(new_settings))

    await _run_locked(chat_id, runner)
    with suppress(Exception):
        await callback.answer("Updated")


@router.callback_query(F.data.startswith("ord:"))
async def order_callbacks(callback: CallbackQuery) -> None:
    if not await _acquire_callback_once(callback):
        with suppress(Exception):
            await callback.answer()
        return

    hub = _require_hub()
    data = callback.data or ""
    chat_id = callback.message.chat.id
    await callback.answer()

    if data == "ord:list":
        await _run_locked(chat_id, lambda: _show_orders(chat_id, callback.message.message_id))
        return

    ref = data.split(":", 2)[2] if data.startswith("ord:cancel:") else ""

    async def runner() -> None:
        refs = await hub.cache.get_json(hub.cache.key("orders", chat_id)) or {}
        entry = refs.get(ref)
        if not entry:
            await hub.messenger.send(chat_id, "That order list is out of date. Send /orders again.")
            return
        kind = OperationKind(entry["kind"])
        result = await hub.order_service.cancel(chat_id, kind, entry["order_id"])
        if result.success:
            await hub.messenger.send(chat_id, order_cancelled_text(kind, result.order_id))
        else:
            await hub.messenger.send(chat_id, failed_text(kind, result.reason.value if result.reason else None))
        await _show_orders(chat_id)

    await _run_locked(chat_id, runner)


@router.callback_query(F.data == "tx:list")
async def transaction_callbacks(callback: CallbackQuery) -> None:
    if not await _acquire_callback_once(callback):
        with suppress(Exception):
            await callback.answer()
        return
    chat_id = callback.message.chat.id
    await callback.answer()
    await _run_locked(chat_id, lambda: _show_transactions(chat_id))
