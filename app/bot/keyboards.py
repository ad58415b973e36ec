from __future__ import annotations

import hashlib

from aiogram.types import InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

from app.core.trading import OperationKind, OrderSummary
from app.services.users import GAS_PRIORITIES, SLIPPAGE_CHOICES

AMOUNT_PRESETS = {
    OperationKind.BUY: ("0.01", "0.05", "0.1", "25%", "50%", "100%"),
    OperationKind.SELL: ("25%", "50%", "75%", "100%"),
    OperationKind.RECURRING_BUY: ("0.01", "0.05", "0.1", "0.5"),
    OperationKind.LIMIT_ORDER: ("25%", "50%", "75%", "100%"),
    OperationKind.WITHDRAW: ("25%", "50%", "100%"),
}
INTERVAL_PRESETS = (("1 hour", "1"), ("1 day", "24"), ("1 week", "168"), ("1 month", "720"))
REPEAT_PRESETS = ("5", "10", "30", "50")
EXPIRY_PRESETS = (("1 day", "1D"), ("1 week", "1W"), ("1 month", "1M"))


def order_ref(kind: OperationKind, order_id: str) -> str:
    """Short stable handle for an order; Telegram caps callback data at 64 bytes."""
    return hashlib.sha256(f"{kind.value}:{order_id}".encode("utf-8")).hexdigest()[:12]


def main_menu() -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="Buy", callback_data="op:start:buy")
    kb.button(text="Sell", callback_data="op:start:sell")
    kb.button(text="Recurring buy", callback_data="op:start:recurring_buy")
    kb.button(text="Limit order", callback_data="op:start:limit_order")
    kb.button(text="Withdraw", callback_data="op:start:withdraw")
    kb.button(text="Orders", callback_data="ord:list")
    kb.button(text="Wallet", callback_data="onb:wallet")
    kb.button(text="Deposit", callback_data="onb:deposit")
    kb.button(text="History", callback_data="tx:list")
    kb.button(text="Settings", callback_data="settings:show")
    kb.adjust(2, 2, 2, 2, 2)
    return kb.as_markup()


def terms_menu() -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="Accept", callback_data="onb:accept_terms")
    return kb.as_markup()


def create_wallet_menu() -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="Create wallet", callback_data="onb:create_wallet")
    return kb.as_markup()


def onboarding_menu(reason: str) -> InlineKeyboardMarkup | None:
    if reason == "terms_not_accepted":
        return terms_menu()
    if reason == "no_wallet":
        return create_wallet_menu()
    return None


def field_menu(kind: OperationKind, field: str | None) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    if field == "amount":
        for value in AMOUNT_PRESETS.get(kind, ()):
            kb.button(text=value, callback_data=f"op:field:amount:{value}")
    elif field == "interval":
        for label, hours in INTERVAL_PRESETS:
            kb.button(text=label, callback_data=f"op:field:interval:{hours}")
    elif field == "repeat_count":
        for value in REPEAT_PRESETS:
            kb.button(text=value, callback_data=f"op:field:repeat_count:{value}")
    elif field == "expiry":
        for label, value in EXPIRY_PRESETS:
            kb.button(text=label, callback_data=f"op:field:expiry:{value}")
    kb.button(text="Cancel", callback_data="op:cancel")
    kb.adjust(3)
    return kb.as_markup()


def confirm_menu(idempotency_key: str) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="✅ Confirm", callback_data=f"op:confirm:{idempotency_key}")
    kb.button(text="❌ Cancel", callback_data="op:cancel")
    kb.adjust(2)
    return kb.as_markup()


def settings_menu(settings: dict) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    current_slippage = str(settings.get("slippage", "0.5"))
    current_gas = str(settings.get("gas_priority", "standard"))
    for value in SLIPPAGE_CHOICES:
        mark = "• " if value == current_slippage else ""
        kb.button(text=f"{mark}Slippage {value}%", callback_data=f"settings:set:slippage:{value}")
    for value in GAS_PRIORITIES:
        mark = "• " if value == current_gas else ""
        kb.button(text=f"{mark}Gas: {value}", callback_data=f"settings:set:gas_priority:{value}")
    kb.adjust(3, 2, 3)
    return kb.as_markup()


def orders_menu(orders: list[OrderSummary]) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    for idx, order in enumerate(orders, start=1):
        kb.button(text=f"Cancel #{idx}", callback_data=f"ord:cancel:{order_ref(order.kind, order.order_id)}")
    kb.button(text="Refresh", callback_data="ord:list")
    kb.adjust(3)
    return kb.as_markup()
