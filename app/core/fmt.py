from __future__ import annotations

import re
from decimal import Decimal


def strip_html_tags(text: str) -> str:
    """Remove HTML tags so user never sees literal <b> or </b>. Keeps inner text."""
    if not text:
        return text
    return re.sub(r"<[^>]+>", "", str(text))


def safe_html(text: str) -> str:
    """Escape special HTML characters so dynamic content is safe in HTML parse_mode."""
    return str(text).replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def short_address(address: str | None) -> str:
    """0x1234…abcd, used in logs and compact UI lines."""
    if not address:
        return ""
    addr = str(address)
    if len(addr) <= 12:
        return addr
    return f"{addr[:6]}…{addr[-4:]}"


def fmt_amount(v: float | Decimal) -> str:
    """Token amount without trailing zero noise: 1,250.5 / 0.0421 / 0.00000123"""
    if v == 0:
        return "0"
    av = abs(v)
    if av >= 1_000:
        text = f"{v:,.2f}"
    elif av >= 1:
        text = f"{v:.4f}"
    elif av >= 0.0001:
        text = f"{v:.6f}"
    else:
        text = f"{v:.10f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def fmt_interval(hours: int) -> str:
    if hours % (24 * 30) == 0:
        n = hours // (24 * 30)
        return f"{n} month" + ("s" if n != 1 else "")
    if hours % (24 * 7) == 0:
        n = hours // (24 * 7)
        return f"{n} week" + ("s" if n != 1 else "")
    if hours % 24 == 0:
        n = hours // 24
        return f"{n} day" + ("s" if n != 1 else "")
    return f"{hours} hour" + ("s" if hours != 1 else "")


_EXPIRY_UNITS = {"H": "hour", "D": "day", "W": "week", "M": "month"}


def fmt_expiry(expiry: str) -> str:
    """'2D' -> '2 days'. Anything unexpected is returned as is."""
    m = re.fullmatch(r"(\d+)([HDWM])", str(expiry or ""))
    if not m:
        return str(expiry)
    n = int(m.group(1))
    unit = _EXPIRY_UNITS[m.group(2)]
    return f"{n} {unit}" + ("s" if n != 1 else "")
