from __future__ import annotations

from decimal import Decimal

from app.db.models import TransactionRecord
from app.services.transactions import TransactionEntry

from conftest import TOKEN, WALLET

NATIVE = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"


def _row(kind: str, token_in: str | None, token_out: str | None, **kwargs) -> TransactionRecord:
    return TransactionRecord(
        wallet_address=WALLET,
        kind=kind,
        token_in=token_in,
        token_out=token_out,
        amount=Decimal("0.25"),
        status=kwargs.pop("status", "completed"),
        idempotency_key="k",
        **kwargs,
    )


def test_entry_shows_the_traded_token() -> None:
    assert TransactionEntry.from_row(_row("buy", NATIVE, TOKEN)).token == TOKEN
    assert TransactionEntry.from_row(_row("recurring_buy", NATIVE, TOKEN)).token == TOKEN
    assert TransactionEntry.from_row(_row("sell", TOKEN, NATIVE)).token == TOKEN


def test_entry_carries_outcome() -> None:
    entry = TransactionEntry.from_row(_row("withdraw", NATIVE, None, status="failed", failure_reason="timeout"))
    assert entry.status == "failed"
    assert entry.failure_reason == "timeout"
    assert entry.amount == Decimal("0.25")
    assert entry.reference is None
