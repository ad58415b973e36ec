from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.core.errors import ValidationError
from app.core.trading import ExecutionResult, OperationKind, OrderSummary
from app.services.operations import FailureReason
from app.services.orders import OrderService

from conftest import CHAT_ID, PRIVATE_KEY, WALLET


def _order(order_id: str, kind: OperationKind, status: int, hour: int | None) -> OrderSummary:
    created = datetime(2025, 1, 1, hour, tzinfo=timezone.utc) if hour is not None else None
    return OrderSummary(order_id=order_id, kind=kind, status=status, token="0x" + "22" * 20, amount=1.0, created_at=created)


class DummyOrderApi:
    def __init__(self) -> None:
        self.orders: dict[OperationKind, list[OrderSummary]] = {
            OperationKind.RECURRING_BUY: [
                _order("dca-2", OperationKind.RECURRING_BUY, 1, 5),
                _order("dca-old", OperationKind.RECURRING_BUY, 2, 1),
            ],
            OperationKind.LIMIT_ORDER: [
                _order("lim-1", OperationKind.LIMIT_ORDER, 3, 2),
                _order("lim-nodate", OperationKind.LIMIT_ORDER, 5, None),
                _order("lim-0", OperationKind.LIMIT_ORDER, 1, 2),
            ],
        }
        self.api_result = ExecutionResult(success=True)
        self.chain_result = ExecutionResult(success=True, reference="0xcancel")
        self.api_cancels: list[str] = []
        self.chain_cancels: list[tuple[str, str]] = []

    async def list_orders(self, kind, wallet_address, statuses):
        return list(self.orders[kind])

    async def cancel_order_api(self, kind, order_id):
        self.api_cancels.append(order_id)
        if self.api_result.success:
            self.orders[kind] = [o for o in self.orders[kind] if o.order_id != order_id]
        return self.api_result

    async def cancel_order_onchain(self, kind, order_id, private_key, wallet_address):
        self.chain_cancels.append((order_id, private_key))
        return self.chain_result


@pytest.fixture
def api() -> DummyOrderApi:
    return DummyOrderApi()


@pytest.fixture
def service(api, vault, profiles) -> OrderService:
    return OrderService(api, vault, profiles)


@pytest.mark.asyncio
async def test_list_active_filters_and_orders(service) -> None:
    orders = await service.list_active(WALLET)
    assert [o.order_id for o in orders] == ["lim-0", "lim-1", "dca-2", "lim-nodate"]


@pytest.mark.asyncio
async def test_cancel_runs_both_phases(service, api) -> None:
    result = await service.cancel(CHAT_ID, OperationKind.LIMIT_ORDER, "lim-1")
    assert result.success is True
    assert api.api_cancels == ["lim-1"]
    assert api.chain_cancels == [("lim-1", PRIVATE_KEY)]
    assert "lim-1" not in [o.order_id for o in await service.list_active(WALLET)]


@pytest.mark.asyncio
async def test_cancel_unknown_order_is_rejected(service, api) -> None:
    with pytest.raises(ValidationError):
        await service.cancel(CHAT_ID, OperationKind.RECURRING_BUY, "dca-old")
    assert api.api_cancels == []


@pytest.mark.asyncio
async def test_cancel_wrong_kind_is_rejected(service) -> None:
    with pytest.raises(ValidationError):
        await service.cancel(CHAT_ID, OperationKind.BUY, "lim-1")


@pytest.mark.asyncio
async def test_api_phase_failure_stops_cancel(service, api) -> None:
    api.api_result = ExecutionResult(success=False, error_message="service unavailable")
    result = await service.cancel(CHAT_ID, OperationKind.RECURRING_BUY, "dca-2")
    assert result.success is False
    assert result.reason is FailureReason.UNKNOWN
    assert api.chain_cancels == []


@pytest.mark.asyncio
async def test_onchain_failure_keeps_order_listed_and_retry_skips_api(service, api) -> None:
    api.chain_result = ExecutionResult(success=False, error_message="nonce too low")
    result = await service.cancel(CHAT_ID, OperationKind.LIMIT_ORDER, "lim-1")
    assert result.success is False
    assert result.reason is FailureReason.ONCHAIN_CANCEL_FAILED

    listed = {o.order_id: o for o in await service.list_active(WALLET)}
    assert "lim-1" in listed
    assert listed["lim-1"].detail["onchain_cancel_pending"] is True

    api.chain_result = ExecutionResult(success=True)
    result = await service.cancel(CHAT_ID, OperationKind.LIMIT_ORDER, "lim-1")
    assert result.success is True
    assert api.api_cancels == ["lim-1"]
    assert len(api.chain_cancels) == 2
    assert "lim-1" not in [o.order_id for o in await service.list_active(WALLET)]


@pytest.mark.asyncio
async def test_cancel_without_key_material(service, api, vault_backend) -> None:
    vault_backend.records.clear()
    result = await service.cancel(CHAT_ID, OperationKind.LIMIT_ORDER, "lim-1")
    assert result.reason is FailureReason.NO_KEY_MATERIAL
    assert api.api_cancels == []
