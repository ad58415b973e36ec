from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from eth_utils import is_address, is_checksum_address, to_checksum_address

from app.core.errors import ValidationError

MAX_AMOUNT = Decimal("1000000000")
MAX_RECURRING_AMOUNT = Decimal("10000")
MAX_INTERVAL_HOURS = 10_000
MIN_REPEAT = 1
MAX_REPEAT = 100

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_EXPIRY_RE = re.compile(r"^(\d+)([HDWM])$", re.IGNORECASE)
_LAST4_RE = re.compile(r"^[0-9a-fA-F]{4}$")
_INT_RE = re.compile(r"^\d+$")


@dataclass(frozen=True)
class AmountInput:
    """A collected amount: either absolute units or a percentage still to be resolved."""

    value: Decimal
    is_percent: bool = False

    def display(self) -> str:
        if self.is_percent:
            return f"{self.value:g}%"
        return f"{self.value:g}"


def _clean(raw: object) -> str:
    return str(raw or "").strip().replace(",", "")


def _number(text: str) -> Decimal | None:
    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def parse_amount(raw: object, *, allow_percent: bool, ceiling: Decimal = MAX_AMOUNT) -> AmountInput:
    text = _clean(raw)
    if not text:
        raise ValidationError("amount", "Send an amount, for example 0.5")

    if text.endswith("%"):
        if not allow_percent:
            raise ValidationError("amount", "Percentages are not supported here. Send a fixed amount.")
        pct = _number(text[:-1].strip())
        if pct is None or pct <= 0:
            raise ValidationError("amount", "Percentage must be a number greater than 0, for example 25%")
        return AmountInput(value=pct, is_percent=True)

    value = _number(text)
    if value is None:
        raise ValidationError("amount", "That is not a number. Send an amount, for example 0.5")
    if value <= 0:
        raise ValidationError("amount", "Amount must be greater than 0")
    if value > ceiling:
        raise ValidationError("amount", f"Amount must not exceed {ceiling:g}")
    return AmountInput(value=value)


def parse_interval_hours(raw: object) -> int:
    text = _clean(raw)
    if not _INT_RE.match(text):
        raise ValidationError("interval", "Interval must be a whole number of hours")
    hours = int(text)
    if hours < 1 or hours > MAX_INTERVAL_HOURS:
        raise ValidationError("interval", f"Interval must be between 1 and {MAX_INTERVAL_HOURS} hours")
    return hours


def parse_repeat_count(raw: object) -> int:
    text = _clean(raw)
    if not _INT_RE.match(text):
        raise ValidationError("repeat_count", "Send a whole number of buys")
    count = int(text)
    if count < MIN_REPEAT or count > MAX_REPEAT:
        raise ValidationError("repeat_count", f"Number of buys must be between {MIN_REPEAT} and {MAX_REPEAT}")
    return count


def parse_price(raw: object) -> Decimal:
    value = _number(_clean(raw).lstrip("$"))
    if value is None or value <= 0:
        raise ValidationError("price", "Price must be a number greater than 0")
    return value


def parse_expiry(raw: object) -> str:
    """'2d' -> '2D'. Units: H hours, D days, W weeks, M months."""
    text = str(raw or "").strip()
    m = _EXPIRY_RE.match(text)
    if not m or int(m.group(1)) < 1:
        raise ValidationError("expiry", "Expiry looks like 12H, 2D, 1W or 1M")
    return f"{int(m.group(1))}{m.group(2).upper()}"


def parse_address(raw: object, field: str = "token") -> str:
    text = str(raw or "").strip()
    if not _ADDRESS_RE.match(text) or not is_address(text):
        raise ValidationError(field, "Send a valid address (0x followed by 40 hex characters)")
    digits = text[2:]
    # All-lower or all-upper carries no checksum; mixed case must be valid EIP-55.
    if digits != digits.lower() and digits != digits.upper() and not is_checksum_address(text):
        raise ValidationError(field, "Address checksum doesn't match. Copy the address again.")
    return to_checksum_address(text)


def parse_recipient(raw: object, own_address: str | None) -> str:
    address = parse_address(raw, field="recipient")
    if own_address and address.lower() == own_address.lower():
        raise ValidationError("recipient", "That is your own wallet. Send a different address.")
    return address


def parse_last4(raw: object) -> str:
    text = str(raw or "").strip()
    if text.lower().startswith("0x"):
        text = text[2:]
    if not _LAST4_RE.match(text):
        raise ValidationError("last4", "Send exactly the last 4 characters of your private key")
    return text.lower()
