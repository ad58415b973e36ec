from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from app.core.errors import ValidationError
from app.core.trading import OperationKind, OrderApi, OrderSummary
from app.services.operations import FailureReason, classify_failure
from app.services.profiles import ProfileService
from app.services.vault import KeyVaultService

logger = logging.getLogger(__name__)

# Order service status codes that still count as live.
ACTIVE_STATUSES: dict[OperationKind, tuple[int, ...]] = {
    OperationKind.RECURRING_BUY: (1, 5),
    OperationKind.LIMIT_ORDER: (1, 3, 5),
}
ORDER_KINDS = (OperationKind.RECURRING_BUY, OperationKind.LIMIT_ORDER)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class CancelResult:
    success: bool
    kind: OperationKind
    order_id: str
    reason: FailureReason | None = None


def _sort_key(order: OrderSummary) -> tuple:
    return (order.created_at is None, order.created_at or _EPOCH, order.order_id)


class OrderService:
    """Active recurring/limit orders and their two-phase cancellation.

    Cancelling moves the order to cancelled on the order service, then cancels it on chain.
    When the second phase fails the order is kept in ``list_active`` (the chain is what counts)
    and the next cancel attempt only retries the on-chain part.
    """

    def __init__(self, api: OrderApi, vault: KeyVaultService, profiles: ProfileService) -> None:
        self.api = api
        self.vault = vault
        self.profiles = profiles
        self._onchain_pending: dict[tuple[str, OperationKind, str], OrderSummary] = {}

    async def list_active(self, wallet_address: str, kinds: tuple[OperationKind, ...] = ORDER_KINDS) -> list[OrderSummary]:
        wallet_key = wallet_address.lower()
        out: list[OrderSummary] = []
        seen: set[tuple[OperationKind, str]] = set()
        for kind in kinds:
            statuses = ACTIVE_STATUSES[kind]
            for order in await self.api.list_orders(kind, wallet_address, statuses):
                if order.status not in statuses:
                    continue
                seen.add((kind, order.order_id))
                out.append(order)
        for (wallet, kind, order_id), order in self._onchain_pending.items():
            if wallet == wallet_key and kind in kinds and (kind, order_id) not in seen:
                out.append(order)
        out.sort(key=_sort_key)
        return out

    async def list_for_chat(self, chat_id: int) -> list[OrderSummary]:
        profile = await self.profiles.require_eligible(chat_id, allow_stale=True)
        return await self.list_active(profile.primary_wallet.address)

    async def cancel(self, chat_id: int, kind: OperationKind, order_id: str) -> CancelResult:
        if kind not in ACTIVE_STATUSES:
            raise ValidationError("order", "Only recurring buys and limit orders can be cancelled")
        profile = await self.profiles.require_eligible(chat_id, force_refresh=True)
        wallet = profile.primary_wallet.address
        pending_key = (wallet.lower(), kind, order_id)

        active = {o.order_id: o for o in await self.list_active(wallet, (kind,))}
        if order_id not in active:
            raise ValidationError("order", "That order is no longer active")

        private_key = await self.vault.retrieve(wallet)
        if private_key is None:
            return CancelResult(success=False, kind=kind, order_id=order_id, reason=FailureReason.NO_KEY_MATERIAL)

        if pending_key not in self._onchain_pending:
            api_result = await self.api.cancel_order_api(kind, order_id)
            if not api_result.success:
                logger.warning(
                    "order_cancel_api_failed",
                    extra={"event": "order_cancel_api_failed", "chat_id": chat_id, "kind": kind.value},
                )
                return CancelResult(
                    success=False, kind=kind, order_id=order_id, reason=classify_failure(api_result.error_message)
                )

        chain_result = await self.api.cancel_order_onchain(kind, order_id, private_key, wallet)
        private_key = None
        if not chain_result.success:
            self._onchain_pending[pending_key] = dataclasses.replace(
                active[order_id], detail={**active[order_id].detail, "onchain_cancel_pending": True}
            )
            logger.warning(
                "order_cancel_onchain_failed",
                extra={"event": "order_cancel_onchain_failed", "chat_id": chat_id, "kind": kind.value},
            )
            return CancelResult(success=False, kind=kind, order_id=order_id, reason=FailureReason.ONCHAIN_CANCEL_FAILED)

        self._onchain_pending.pop(pending_key, None)
        logger.info("order_cancelled", extra={"event": "order_cancelled", "chat_id": chat_id, "kind": kind.value})
        return CancelResult(success=True, kind=kind, order_id=order_id)
