from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest

from app.adapters.balances import EvmBalanceAdapter
from app.adapters.trade_api import TradeApiExecutor
from app.core.errors import UpstreamError
from app.core.http import ResilientHTTPClient
from app.core.trading import BuyOrder, LimitOrder, OperationKind, RecurringBuyOrder

from conftest import PRIVATE_KEY, TOKEN, WALLET

BASE = "http://trade.test/v1"
NATIVE = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"


def _client(handler) -> ResilientHTTPClient:
    return ResilientHTTPClient(timeout=1.0, retries=2, backoff_base=0.0, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_execute_posts_once_with_idempotency_key() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": {"tx_hash": "0xfeed"}})

    http = _client(handler)
    executor = TradeApiExecutor(http, BASE, api_key="k", chain="base")
    result = await executor.execute(BuyOrder(token=TOKEN, amount=0.5), PRIVATE_KEY, WALLET, {"slippage": "1"}, "idem-1")
    await http.close()

    assert result.success is True
    assert result.reference == "0xfeed"
    assert len(seen) == 1
    request = seen[0]
    assert request.url.path == "/v1/swap/buy"
    assert request.headers["Idempotency-Key"] == "idem-1"
    assert request.headers["Authorization"] == "Bearer k"
    body = json.loads(request.content)
    assert body["to_token"] == TOKEN
    assert body["slippage"] == 1.0
    assert body["from_amount"] == "0.5"


@pytest.mark.asyncio
async def test_execute_is_never_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(502)

    http = _client(handler)
    executor = TradeApiExecutor(http, BASE)
    order = RecurringBuyOrder(token=TOKEN, amount=0.1, interval_hours=24, repeat_count=3)
    result = await executor.execute(order, PRIVATE_KEY, WALLET, {}, "idem-2")
    await http.close()

    assert result.success is False
    assert calls == 1


@pytest.mark.asyncio
async def test_rejection_message_is_passed_through() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": False, "error": {"message": "insufficient funds"}})

    http = _client(handler)
    result = await TradeApiExecutor(http, BASE).execute(BuyOrder(token=TOKEN, amount=1), PRIVATE_KEY, WALLET, {}, "x")
    await http.close()
    assert result.success is False
    assert result.error_message == "insufficient funds"


@pytest.mark.asyncio
async def test_list_orders_parses_rows_and_retries() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            return httpx.Response(503)
        assert request.url.params["statuses"] == "1,3,5"
        return httpx.Response(
            200,
            json={
                "data": [
                    {"orderHash": "0xo1", "status": 1, "makerAsset": TOKEN, "makerAmount": "2.5", "createDateTime": "2025-01-01T00:00:00Z"},
                    {"status": 1},
                    {"id": "o2", "status": "bad"},
                ]
            },
        )

    http = _client(handler)
    orders = await TradeApiExecutor(http, BASE).list_orders(OperationKind.LIMIT_ORDER, WALLET, (1, 3, 5))
    await http.close()

    assert calls == 2
    assert len(orders) == 1
    assert orders[0].order_id == "0xo1"
    assert orders[0].amount == 2.5
    assert orders[0].created_at.year == 2025


@pytest.mark.asyncio
async def test_balances_read_native_and_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if payload["method"] == "eth_getBalance":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": hex(2 * 10**18)})
        data = payload["params"][0]["data"]
        if data == "0x313ce567":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 2, "result": hex(6)})
        assert data.endswith(WALLET[2:])
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 3, "result": hex(1_500_000)})

    http = _client(handler)
    adapter = EvmBalanceAdapter(http, "http://rpc.test", NATIVE)
    assert await adapter.get_native_balance(WALLET) == 2.0
    assert await adapter.get_token_balance(WALLET, TOKEN) == 1.5
    assert await adapter.get_token_balance(WALLET, NATIVE.lower()) == 2.0
    await http.close()


@pytest.mark.asyncio
async def test_balance_rpc_error_is_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"message": "header not found"}})

    http = _client(handler)
    with pytest.raises(UpstreamError):
        await EvmBalanceAdapter(http, "http://rpc.test", NATIVE).get_native_balance(WALLET)
    await http.close()


@pytest.mark.asyncio
async def test_token_balance_keeps_every_base_unit() -> None:
    raw = 123456789012345678901

    def handler(request: httpx.Request) -> httpx.Response:
        data = json.loads(request.content)["params"][0]["data"]
        if data == "0x313ce567":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 2, "result": hex(18)})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 3, "result": hex(raw)})

    http = _client(handler)
    balance = await EvmBalanceAdapter(http, "http://rpc.test", NATIVE).get_token_balance(WALLET, TOKEN)
    await http.close()
    assert balance == Decimal("123.456789012345678901")
    assert balance.scaleb(18) == raw


@pytest.mark.asyncio
async def test_limit_order_amounts_are_sent_as_decimal_strings() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True, "data": {"orderHash": "0xo9"}})

    http = _client(handler)
    order = LimitOrder(token=TOKEN, amount=Decimal("123.456789012345678901"), price=Decimal("0.00000125"), expiry="1D")
    result = await TradeApiExecutor(http, BASE).execute(order, PRIVATE_KEY, WALLET, {}, "idem-3")
    await http.close()
    assert result.reference == "0xo9"
    assert seen[0]["maker_amount"] == "123.456789012345678901"
    assert seen[0]["price"] == "0.00000125"
