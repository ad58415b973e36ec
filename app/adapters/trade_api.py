from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from app.core.errors import UpstreamError
from app.core.fmt import short_address
from app.core.http import ResilientHTTPClient
from app.core.trading import (
    BuyOrder,
    ExecutionResult,
    LimitOrder,
    OperationKind,
    Order,
    OrderSummary,
    RecurringBuyOrder,
    SellOrder,
    Withdrawal,
    decimal_str,
)

logger = logging.getLogger(__name__)

_ORDER_PATHS = {
    OperationKind.RECURRING_BUY: "dca",
    OperationKind.LIMIT_ORDER: "limit",
}


def _parse_ts(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        # Seconds or milliseconds since epoch.
        ts = float(value) / (1000.0 if value > 10**11 else 1.0)
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _first(row: dict, *keys: str) -> Any:
    for key in keys:
        if row.get(key) not in (None, ""):
            return row[key]
    return None


class TradeApiExecutor:
    """HTTP client for the swap/order service.

    Anything that moves funds or changes order state is posted exactly once (``retries=0``);
    a lost response is reported as a failure, never re-sent. Only order listing is retried.
    """

    def __init__(
        self,
        http: ResilientHTTPClient,
        base_url: str,
        api_key: str = "",
        chain: str = "base",
        referrer: str = "",
        submit_timeout: float | None = None,
    ) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.chain = chain
        self.referrer = referrer
        self.submit_timeout = submit_timeout

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _order_payload(self, order: Order) -> tuple[str, dict]:
        if isinstance(order, BuyOrder):
            return "/swap/buy", {"to_token": order.token, "from_amount": decimal_str(order.amount)}
        if isinstance(order, SellOrder):
            return "/swap/sell", {"from_token": order.token, "from_amount": decimal_str(order.amount)}
        if isinstance(order, RecurringBuyOrder):
            return "/dca/create", {
                "to_token": order.token,
                "from_amount": decimal_str(order.amount),
                "interval_sec": order.interval_seconds,
                "times": order.repeat_count,
            }
        if isinstance(order, LimitOrder):
            return "/limit/create", {
                "maker_token": order.token,
                "maker_amount": decimal_str(order.amount),
                "price": decimal_str(order.price),
                "expire": order.expiry,
            }
        if isinstance(order, Withdrawal):
            return "/transfer/native", {"to_address": order.recipient, "amount": decimal_str(order.amount)}
        raise TypeError(f"unsupported order type: {type(order).__name__}")

    @staticmethod
    def _normalize(resp: Any) -> ExecutionResult:
        if not isinstance(resp, dict):
            return ExecutionResult(success=False, error_message="malformed response from trade service")
        data = resp.get("data") if isinstance(resp.get("data"), dict) else {}
        reference = _first(data, "tx_hash", "txHash", "order_id", "orderHash", "hash") or _first(
            resp, "tx_hash", "txHash", "order_id", "orderHash", "hash"
        )
        if resp.get("success"):
            return ExecutionResult(success=True, reference=str(reference) if reference else None)
        error = resp.get("error") or resp.get("message") or "trade service rejected the request"
        if isinstance(error, dict):
            error = error.get("message") or str(error)
        return ExecutionResult(success=False, error_message=str(error))

    async def _submit(self, path: str, payload: dict, idempotency_key: str | None = None) -> ExecutionResult:
        try:
            resp = await self.http.post_json(
                f"{self.base_url}{path}",
                payload,
                headers=self._headers(idempotency_key),
                retries=0,
                timeout=self.submit_timeout,
            )
        except UpstreamError as exc:
            return ExecutionResult(success=False, error_message=str(exc))
        return self._normalize(resp)

    async def execute(
        self,
        order: Order,
        private_key: str,
        wallet_address: str,
        settings: dict,
        idempotency_key: str,
    ) -> ExecutionResult:
        path, payload = self._order_payload(order)
        payload.update(
            {
                "chain": self.chain,
                "wallet_address": wallet_address,
                "private_key": private_key,
                "slippage": float(settings.get("slippage", "0.5")),
                "gas_priority": settings.get("gas_priority", "standard"),
            }
        )
        if self.referrer:
            payload["referrer"] = self.referrer
        result = await self._submit(path, payload, idempotency_key)
        logger.info(
            "trade_submitted",
            extra={
                "event": "trade_submitted",
                "kind": order.kind.value,
                "wallet": short_address(wallet_address),
                "reason": None if result.success else "rejected",
            },
        )
        return result

    async def list_orders(self, kind: OperationKind, wallet_address: str, statuses: tuple[int, ...]) -> list[OrderSummary]:
        prefix = _ORDER_PATHS[kind]
        resp = await self.http.get_json(
            f"{self.base_url}/{prefix}/orders",
            params={"chain": self.chain, "address": wallet_address, "statuses": ",".join(str(s) for s in statuses)},
            headers=self._headers(),
        )
        rows = resp.get("data") if isinstance(resp, dict) else resp
        out: list[OrderSummary] = []
        for row in rows or []:
            if not isinstance(row, dict):
                continue
            order_id = _first(row, "order_id", "orderHash", "id", "hash")
            if order_id is None:
                continue
            try:
                status = int(_first(row, "status", "status_code") or 0)
            except (TypeError, ValueError):
                continue
            amount = _first(row, "amount", "from_amount", "makerAmount")
            out.append(
                OrderSummary(
                    order_id=str(order_id),
                    kind=kind,
                    status=status,
                    token=_first(row, "token", "to_token", "maker_token", "makerAsset"),
                    amount=Decimal(str(amount)) if amount is not None else None,
                    created_at=_parse_ts(_first(row, "created_at", "createDateTime", "createdAt")),
                    detail=row,
                )
            )
        return out

    async def cancel_order_api(self, kind: OperationKind, order_id: str) -> ExecutionResult:
        prefix = _ORDER_PATHS[kind]
        return await self._submit(f"/{prefix}/cancel", {"chain": self.chain, "order_id": order_id})

    async def cancel_order_onchain(
        self, kind: OperationKind, order_id: str, private_key: str, wallet_address: str
    ) -> ExecutionResult:
        prefix = _ORDER_PATHS[kind]
        return await self._submit(
            f"/{prefix}/cancel-onchain",
            {
                "chain": self.chain,
                "order_id": order_id,
                "wallet_address": wallet_address,
                "private_key": private_key,
            },
        )
