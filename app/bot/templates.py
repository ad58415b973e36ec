from __future__ import annotations

from decimal import Decimal

from app.core.fmt import fmt_amount, fmt_expiry, fmt_interval, safe_html, short_address
from app.core.trading import (
    BuyOrder,
    LimitOrder,
    OperationKind,
    Order,
    OrderSummary,
    RecurringBuyOrder,
    SellOrder,
    Withdrawal,
)
from app.services.transactions import TransactionEntry

KIND_LABELS = {
    OperationKind.BUY: "Buy",
    OperationKind.SELL: "Sell",
    OperationKind.RECURRING_BUY: "Recurring buy",
    OperationKind.LIMIT_ORDER: "Limit order",
    OperationKind.WITHDRAW: "Withdraw",
    OperationKind.KEY_VERIFICATION: "Key check",
}

_PROMPTS = {
    "token": "Send the token contract address (0x...).",
    "amount": "How much? Send an amount or a percentage of your balance, e.g. <code>0.1</code> or <code>25%</code>.",
    "interval": "How often? Tap a preset or send the interval in hours.",
    "repeat_count": "How many buys in total? (1 to 100)",
    "price": "At what price (in ETH per token) should the order fill?",
    "expiry": "When should the order expire? Tap a preset or send e.g. <code>12H</code>, <code>3D</code>, <code>2W</code>.",
    "recipient": "Send the address that should receive the funds.",
    "last4": "To confirm you saved your key, send its <b>last 4 characters</b>.",
}

_AMOUNT_PROMPTS = {
    OperationKind.BUY: "How much ETH should I spend? Send an amount or a percentage of your ETH balance.",
    OperationKind.SELL: "How many tokens should I sell? Send an amount or a percentage of your token balance.",
    OperationKind.RECURRING_BUY: "How much ETH per buy? (max 10,000)",
    OperationKind.LIMIT_ORDER: "How many tokens should the order sell? Amount or percentage of your balance.",
    OperationKind.WITHDRAW: "How much ETH to withdraw? Amount or percentage of your balance.",
}

_FAILURE_TEXT = {
    "no_key_material": "I couldn't access your wallet key, so nothing was sent. Contact support if this keeps happening.",
    "insufficient_funds": "Not enough funds to cover this trade and its gas. Top up or lower the amount.",
    "slippage_exceeded": "The price moved beyond your slippage setting. Try again or raise slippage in /settings.",
    "timeout": (
        "The trade service did not answer in time. The transaction <b>may still go through</b>. "
        "Check your balance before trying again."
    ),
    "onchain_cancel_failed": (
        "The order was marked cancelled but the on-chain cancellation failed. "
        "It is still live on chain and still listed. Try cancelling again."
    ),
    "unknown": "The trade failed. Nothing else was changed. Start over when you're ready.",
}

_NOT_ELIGIBLE_TEXT = {
    "not_registered": "You're not registered yet. Send /start to begin.",
    "terms_not_accepted": "Please accept the terms of use before trading.",
    "no_wallet": "You need a wallet first. Tap below to create one.",
}


def help_text() -> str:
    lines = [
        "<b>Commands</b>",
        "",
        "/buy  buy a token with ETH",
        "/sell  sell a token for ETH",
        "/dca  set up a recurring buy",
        "/limit  place a limit sell order",
        "/withdraw  send ETH to another address",
        "/orders  view and cancel open orders",
        "/transactions  recent transaction history",
        "/wallet  your wallet and balance",
        "/deposit  your deposit address",
        "/settings  slippage and gas priority",
        "/cancel  abandon the current operation",
    ]
    return "\n".join(lines)


def welcome_text(is_new: bool, name: str) -> str:
    name = safe_html(name)
    if is_new:
        return (
            f"Welcome, <b>{name}</b>.\n\n"
            "I hold a wallet for you and build trades step by step: buy, sell, recurring buys, limit orders "
            "and withdrawals. Nothing is sent until you confirm it."
        )
    return f"Welcome back, <b>{name}</b>. Pick an action or send /help."


def terms_text() -> str:
    return (
        "<b>Terms of use</b>\n\n"
        "The bot keeps an encrypted copy of your wallet's private key so it can sign trades you confirm. "
        "Trading is risky and transactions are final. You are responsible for every trade you confirm.\n\n"
        "Tap <b>Accept</b> to continue."
    )


def not_eligible_text(reason: str) -> str:
    return _NOT_ELIGIBLE_TEXT.get(reason, "You can't start that yet.")


def conflict_text(active_kind: str) -> str:
    try:
        label = KIND_LABELS[OperationKind(active_kind)]
    except ValueError:
        label = active_kind
    return f"You already have a <b>{safe_html(label)}</b> in progress. Finish it or send /cancel first."


def field_prompt(kind: OperationKind, field: str | None, fields: dict) -> str:
    header = f"<b>{KIND_LABELS.get(kind, kind.value)}</b>"
    if field == "amount" and kind in _AMOUNT_PROMPTS:
        body = _AMOUNT_PROMPTS[kind]
    else:
        body = _PROMPTS.get(field or "", "Send the next value.")
    token = fields.get("token")
    if token and field != "token":
        header += f"  <code>{safe_html(short_address(token))}</code>"
    return f"{header}\n{body}"


def invalid_hint(hint: str | None) -> str:
    return f"⚠ {safe_html(hint or 'That value is not valid.')}"


def _order_lines(order: Order) -> list[str]:
    if isinstance(order, BuyOrder):
        return [f"Token: <code>{safe_html(order.token)}</code>", f"Spend: <b>{fmt_amount(order.amount)} ETH</b>"]
    if isinstance(order, SellOrder):
        return [f"Token: <code>{safe_html(order.token)}</code>", f"Sell: <b>{fmt_amount(order.amount)}</b> tokens"]
    if isinstance(order, RecurringBuyOrder):
        return [
            f"Token: <code>{safe_html(order.token)}</code>",
            f"Per buy: <b>{fmt_amount(order.amount)} ETH</b>",
            f"Every: <b>{fmt_interval(order.interval_hours)}</b>",
            f"Buys: <b>{order.repeat_count}</b>",
            f"Total: <b>{fmt_amount(order.amount * order.repeat_count)} ETH</b>",
        ]
    if isinstance(order, LimitOrder):
        return [
            f"Token: <code>{safe_html(order.token)}</code>",
            f"Sell: <b>{fmt_amount(order.amount)}</b> tokens",
            f"Price: <b>{fmt_amount(order.price)} ETH</b>",
            f"Receive: <b>{fmt_amount(order.amount * order.price)} ETH</b>",
            f"Expires in: <b>{fmt_expiry(order.expiry)}</b>",
        ]
    if isinstance(order, Withdrawal):
        return [f"Amount: <b>{fmt_amount(order.amount)} ETH</b>", f"To: <code>{safe_html(order.recipient)}</code>"]
    return []


def confirm_card(order: Order, settings: dict | None = None) -> str:
    lines = [f"<b>Confirm {KIND_LABELS[order.kind].lower()}</b>", ""]
    lines.extend(_order_lines(order))
    if settings and order.kind in (OperationKind.BUY, OperationKind.SELL, OperationKind.RECURRING_BUY):
        lines.append(f"Slippage: {safe_html(settings.get('slippage', '0.5'))}%  Gas: {safe_html(settings.get('gas_priority', 'standard'))}")
    lines.extend(["", "<i>Nothing is sent until you tap Confirm.</i>"])
    return "\n".join(lines)


def executed_text(kind: OperationKind, order: Order | None, reference: str | None) -> str:
    if kind is OperationKind.KEY_VERIFICATION:
        return "✅ Key confirmed. Your wallet is ready. Deposit ETH to start trading."
    lines = [f"✅ <b>{KIND_LABELS[kind]} done</b>"]
    if order is not None:
        lines.extend(_order_lines(order))
    if reference:
        label = "Order" if kind in (OperationKind.RECURRING_BUY, OperationKind.LIMIT_ORDER) else "Tx"
        lines.append(f"{label}: <code>{safe_html(reference)}</code>")
    return "\n".join(lines)


def failed_text(kind: OperationKind | None, reason: str | None) -> str:
    label = KIND_LABELS.get(kind, "Operation") if kind else "Operation"
    return f"❌ <b>{label} failed.</b>\n{_FAILURE_TEXT.get(reason or 'unknown', _FAILURE_TEXT['unknown'])}"


def cancelled_text(kind: OperationKind | None) -> str:
    label = KIND_LABELS.get(kind, "Operation") if kind else "Operation"
    return f"{label} cancelled."


def wallet_created_text(address: str, private_key: str) -> str:
    return (
        "<b>Wallet created</b>\n\n"
        f"Address: <code>{safe_html(address)}</code>\n"
        f"Private key: <tg-spoiler><code>{safe_html(private_key)}</code></tg-spoiler>\n\n"
        "Save the key somewhere safe now. This message deletes itself shortly and the key is never shown again."
    )


def wallet_unsecured_text() -> str:
    return (
        "⚠ I couldn't store the key securely, so no wallet was linked to your account and the key was discarded. "
        "Nothing was funded. Please try again in a moment."
    )


def wallet_text(address: str, balance: Decimal | None) -> str:
    bal = f"{fmt_amount(balance)} ETH" if balance is not None else "unavailable"
    return f"<b>Your wallet</b>\n\nAddress: <code>{safe_html(address)}</code>\nBalance: <b>{bal}</b>"


def settings_text(settings: dict) -> str:
    lines = [
        "<b>Settings</b>",
        "",
        f"slippage:      {safe_html(str(settings.get('slippage', '0.5')))}%",
        f"gas_priority:  {safe_html(str(settings.get('gas_priority', 'standard')))}",
        f"language:      {safe_html(str(settings.get('language', 'en')))}",
    ]
    return "\n".join(lines)


def orders_text(orders: list[OrderSummary]) -> str:
    if not orders:
        return "No open recurring buys or limit orders."
    lines = ["<b>Open orders</b>", ""]
    for idx, order in enumerate(orders, start=1):
        created = order.created_at.strftime("%Y-%m-%d %H:%M") if order.created_at else "?"
        amount = fmt_amount(order.amount) if order.amount is not None else "?"
        token = short_address(order.token) if order.token else "?"
        pending = "  <i>on-chain cancel pending</i>" if order.detail.get("onchain_cancel_pending") else ""
        lines.append(
            f"{idx}. {KIND_LABELS[order.kind]}  {amount}  <code>{safe_html(token)}</code>  {created}{pending}\n"
            f"   id <code>{safe_html(short_address(order.order_id))}</code>"
        )
    return "\n".join(lines)


def order_cancelled_text(kind: OperationKind, order_id: str) -> str:
    return f"✅ {KIND_LABELS[kind]} <code>{safe_html(short_address(order_id))}</code> cancelled."


_TX_STATUS = {
    "completed": "✅",
    "failed": "❌",
    "pending": "⏳",
    "unknown": "❔",
}


def transactions_text(entries: list[TransactionEntry], counts: dict[str, int]) -> str:
    if not entries:
        return "No transactions yet. Your trades and withdrawals will show up here."
    total = sum(counts.values())
    summary = "  ".join(f"{_TX_STATUS.get(status, '•')} {counts[status]}" for status in sorted(counts))
    lines = ["<b>Transaction history</b>", f"{total} total  {summary}", ""]
    for idx, entry in enumerate(entries, start=1):
        try:
            label = KIND_LABELS[OperationKind(entry.kind)]
        except ValueError:
            label = entry.kind
        when = entry.created_at.strftime("%Y-%m-%d %H:%M") if entry.created_at else "?"
        token = f"  <code>{safe_html(short_address(entry.token))}</code>" if entry.token else ""
        line = f"{idx}. {_TX_STATUS.get(entry.status, '•')} {label}  {fmt_amount(entry.amount)}{token}  {when}"
        if entry.reference:
            line += f"\n   ref <code>{safe_html(short_address(entry.reference))}</code>"
        elif entry.status == "unknown":
            line += "\n   <i>outcome unknown, check your balance</i>"
        elif entry.failure_reason:
            line += f"\n   <i>{safe_html(entry.failure_reason.replace('_', ' '))}</i>"
        lines.append(line)
    return "\n".join(lines)


def deposit_text(address: str, chain: str) -> str:
    return (
        "<b>Deposit</b>\n\n"
        f"Send ETH or tokens on <b>{safe_html(chain.capitalize())}</b> to your wallet:\n"
        f"<code>{safe_html(address)}</code>\n\n"
        "Only use this network. Funds sent on another chain can't be recovered by the bot."
    )
