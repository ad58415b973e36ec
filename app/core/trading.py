"""Order shapes and the collaborator interfaces around trade execution.

Each operation kind has its own frozen order type holding exactly the fields it needs, with
amounts already resolved to absolute values.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol, Union


class OperationKind(str, Enum):
    BUY = "buy"
    SELL = "sell"
    RECURRING_BUY = "recurring_buy"
    LIMIT_ORDER = "limit_order"
    WITHDRAW = "withdraw"
    KEY_VERIFICATION = "key_verification"


@dataclass(frozen=True)
class BuyOrder:
    token: str
    amount: Decimal
    kind: OperationKind = field(default=OperationKind.BUY, init=False)


@dataclass(frozen=True)
class SellOrder:
    token: str
    amount: Decimal
    kind: OperationKind = field(default=OperationKind.SELL, init=False)


@dataclass(frozen=True)
class RecurringBuyOrder:
    token: str
    amount: Decimal
    interval_hours: int
    repeat_count: int
    kind: OperationKind = field(default=OperationKind.RECURRING_BUY, init=False)

    @property
    def interval_seconds(self) -> int:
        return self.interval_hours * 3600


@dataclass(frozen=True)
class LimitOrder:
    token: str
    amount: Decimal
    price: Decimal
    expiry: str
    kind: OperationKind = field(default=OperationKind.LIMIT_ORDER, init=False)


@dataclass(frozen=True)
class Withdrawal:
    amount: Decimal
    recipient: str
    kind: OperationKind = field(default=OperationKind.WITHDRAW, init=False)


Order = Union[BuyOrder, SellOrder, RecurringBuyOrder, LimitOrder, Withdrawal]


def decimal_str(value) -> str:
    """Plain positional notation, never an exponent: 0.00000123, not 1.23E-6."""
    return format(Decimal(str(value)), "f")


def order_to_dict(order: Order) -> dict:
    out = {k: decimal_str(v) if isinstance(v, Decimal) else v for k, v in asdict(order).items()}
    out["kind"] = order.kind.value
    return out


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    reference: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class OrderSummary:
    order_id: str
    kind: OperationKind
    status: int
    token: str | None = None
    amount: Decimal | None = None
    created_at: datetime | None = None
    detail: dict = field(default_factory=dict)


class BalanceReader(Protocol):
    async def get_native_balance(self, wallet_address: str) -> Decimal: ...

    async def get_token_balance(self, wallet_address: str, token_address: str) -> Decimal: ...


class TradeExecutor(Protocol):
    async def execute(
        self,
        order: Order,
        private_key: str,
        wallet_address: str,
        settings: dict,
        idempotency_key: str,
    ) -> ExecutionResult: ...


class OrderApi(Protocol):
    async def list_orders(self, kind: OperationKind, wallet_address: str, statuses: tuple[int, ...]) -> list[OrderSummary]: ...

    async def cancel_order_api(self, kind: OperationKind, order_id: str) -> ExecutionResult: ...

    async def cancel_order_onchain(
        self, kind: OperationKind, order_id: str, private_key: str, wallet_address: str
    ) -> ExecutionResult: ...
