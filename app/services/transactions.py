from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select

from app.core.trading import BuyOrder, LimitOrder, Order, RecurringBuyOrder, SellOrder, decimal_str, order_to_dict
from app.db.models import TransactionRecord


@dataclass(frozen=True)
class TransactionEntry:
    kind: str
    amount: Decimal
    status: str
    token: str | None = None
    reference: str | None = None
    failure_reason: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: TransactionRecord) -> TransactionEntry:
        return cls(
            kind=row.kind,
            amount=Decimal(row.amount),
            status=row.status,
            token=row.token_out if row.kind in ("buy", "recurring_buy") else row.token_in,
            reference=row.reference,
            failure_reason=row.failure_reason,
            created_at=row.created_at,
        )


def _tokens(order: Order, native: str) -> tuple[str | None, str | None]:
    if isinstance(order, (BuyOrder, RecurringBuyOrder)):
        return native, order.token
    if isinstance(order, (SellOrder, LimitOrder)):
        return order.token, native
    return native, None


class TransactionJournal:
    """One row per confirmed operation: ``pending`` before submission, then the outcome."""

    def __init__(self, db_factory, native_token_address: str = "") -> None:
        self.db_factory = db_factory
        self.native_token_address = native_token_address

    async def open(self, user_id: int | None, wallet_address: str, order: Order, idempotency_key: str) -> int:
        token_in, token_out = _tokens(order, self.native_token_address)
        params = order_to_dict(order)
        async with self.db_factory() as session:
            row = TransactionRecord(
                user_id=user_id,
                wallet_address=wallet_address,
                kind=order.kind.value,
                token_in=token_in,
                token_out=token_out,
                amount=Decimal(decimal_str(order.amount)),
                params_json=params,
                status="pending",
                idempotency_key=idempotency_key,
                created_at=datetime.utcnow(),
                updated_at=datetime.utcnow(),
            )
            session.add(row)
            await session.commit()
            return int(row.id)

    async def close(self, row_id: int, status: str, reference: str | None = None, reason: str | None = None) -> None:
        async with self.db_factory() as session:
            q = await session.execute(select(TransactionRecord).where(TransactionRecord.id == row_id))
            row = q.scalar_one_or_none()
            if row is None:
                return
            row.status = status
            row.reference = reference
            row.failure_reason = reason
            row.updated_at = datetime.utcnow()
            await session.commit()

    async def recent(self, user_id: int, limit: int = 10) -> list[TransactionEntry]:
        """Newest first."""
        async with self.db_factory() as session:
            q = await session.execute(
                select(TransactionRecord)
                .where(TransactionRecord.user_id == user_id)
                .order_by(TransactionRecord.created_at.desc(), TransactionRecord.id.desc())
                .limit(limit)
            )
            return [TransactionEntry.from_row(row) for row in q.scalars().all()]

    async def status_counts(self, user_id: int) -> dict[str, int]:
        async with self.db_factory() as session:
            q = await session.execute(
                select(TransactionRecord.status, func.count(TransactionRecord.id))
                .where(TransactionRecord.user_id == user_id)
                .group_by(TransactionRecord.status)
            )
            return {status: int(count) for status, count in q.all()}
