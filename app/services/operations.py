"""Per-conversation trade construction.

An operation is idle (``None``), ``Collecting`` fields in a fixed per-kind order, or
``Confirming`` a fully resolved order. ``confirm`` and ``cancel`` always end in idle. The
caller holds the conversation lock around every call, so no two events for one chat
interleave.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal, localcontext
from enum import Enum
from typing import Any, Callable, Union

from app.core.errors import InvalidTransitionError, NotEligibleError, OperationConflictError, UpstreamError, ValidationError
from app.core.fmt import short_address
from app.core.trading import (
    BalanceReader,
    BuyOrder,
    ExecutionResult,
    LimitOrder,
    OperationKind,
    Order,
    RecurringBuyOrder,
    SellOrder,
    TradeExecutor,
    Withdrawal,
)
from app.core.validators import (
    MAX_RECURRING_AMOUNT,
    AmountInput,
    parse_address,
    parse_amount,
    parse_expiry,
    parse_interval_hours,
    parse_last4,
    parse_price,
    parse_recipient,
    parse_repeat_count,
)
from app.services.conversations import Conversation, ConversationStore
from app.services.profiles import ProfileService
from app.services.transactions import TransactionJournal
from app.services.vault import KeyVaultService

logger = logging.getLogger(__name__)

FIELD_ORDER: dict[OperationKind, tuple[str, ...]] = {
    OperationKind.BUY: ("token", "amount"),
    OperationKind.SELL: ("token", "amount"),
    OperationKind.RECURRING_BUY: ("token", "amount", "interval", "repeat_count"),
    OperationKind.LIMIT_ORDER: ("token", "amount", "price", "expiry"),
    OperationKind.WITHDRAW: ("amount", "recipient"),
    OperationKind.KEY_VERIFICATION: ("last4",),
}

# Which balance a percentage (or an absolute amount check) is measured against.
_NATIVE_FUNDED = {OperationKind.BUY, OperationKind.WITHDRAW}
_TOKEN_FUNDED = {OperationKind.SELL, OperationKind.LIMIT_ORDER}
_ABSOLUTE_CHECKED = {OperationKind.SELL, OperationKind.LIMIT_ORDER, OperationKind.WITHDRAW}
_FULL = Decimal(100)
# Wide enough for a uint256 balance times a percentage.
_RESOLVE_PRECISION = 80


def _as_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class FailureReason(str, Enum):
    NO_KEY_MATERIAL = "no_key_material"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    SLIPPAGE_EXCEEDED = "slippage_exceeded"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"
    ONCHAIN_CANCEL_FAILED = "onchain_cancel_failed"


_FAILURE_PATTERNS: tuple[tuple[FailureReason, tuple[str, ...]], ...] = (
    (FailureReason.INSUFFICIENT_FUNDS, ("insufficient funds", "insufficient balance", "exceeds balance", "not enough balance")),
    (
        FailureReason.SLIPPAGE_EXCEEDED,
        ("slippage", "price impact", "return amount is not enough", "too little received", "insufficient output amount"),
    ),
    (FailureReason.TIMEOUT, ("timeout", "timed out", "deadline")),
)


def classify_failure(message: str | None) -> FailureReason:
    text = (message or "").lower()
    for reason, needles in _FAILURE_PATTERNS:
        if any(n in text for n in needles):
            return reason
    return FailureReason.UNKNOWN


@dataclass
class Collecting:
    kind: OperationKind
    fields: dict[str, Any] = dataclasses.field(default_factory=dict)
    created_at: float = 0.0

    def next_field(self) -> str | None:
        for name in FIELD_ORDER[self.kind]:
            if name not in self.fields:
                return name
        return None


@dataclass(frozen=True)
class Confirming:
    kind: OperationKind
    fields: dict[str, Any]
    order: Order
    idempotency_key: str
    created_at: float = 0.0


OperationState = Union[Collecting, Confirming]


class StepStatus(str, Enum):
    PROMPT = "prompt"
    INVALID = "invalid"
    CONFIRM = "confirm"
    EXECUTED = "executed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StepResult:
    status: StepStatus
    kind: OperationKind | None = None
    field: str | None = None
    hint: str | None = None
    order: Order | None = None
    idempotency_key: str | None = None
    reference: str | None = None
    reason: FailureReason | None = None
    fields: dict = dataclasses.field(default_factory=dict)


class OperationMachine:
    def __init__(
        self,
        conversations: ConversationStore,
        profiles: ProfileService,
        vault: KeyVaultService,
        balances: BalanceReader,
        executor: TradeExecutor,
        journal: TransactionJournal | None = None,
        executor_timeout: float = 45.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.conversations = conversations
        self.profiles = profiles
        self.vault = vault
        self.balances = balances
        self.executor = executor
        self.journal = journal
        self.executor_timeout = executor_timeout
        self.clock = clock

    def state(self, chat_id: int) -> OperationState | None:
        conv = self.conversations.peek(chat_id)
        return conv.operation if conv else None

    def _reset(self, conv: Conversation) -> None:
        conv.operation = None

    def _prompt(self, state: Collecting) -> StepResult:
        return StepResult(status=StepStatus.PROMPT, kind=state.kind, field=state.next_field(), fields=dict(state.fields))

    async def start(self, chat_id: int, kind: OperationKind) -> StepResult:
        conv = self.conversations.get(chat_id)
        if conv.operation is not None:
            raise OperationConflictError(conv.operation.kind.value)
        await self.profiles.require_eligible(chat_id, allow_stale=True)
        state = Collecting(kind=kind, created_at=self.clock())
        conv.operation = state
        logger.info("operation_started", extra={"event": "operation_started", "chat_id": chat_id, "operation": kind.value})
        return self._prompt(state)

    def current_prompt(self, chat_id: int) -> StepResult | None:
        """Re-issue whatever the active operation is waiting for."""
        state = self.state(chat_id)
        if isinstance(state, Collecting):
            return self._prompt(state)
        if isinstance(state, Confirming):
            return StepResult(
                status=StepStatus.CONFIRM,
                kind=state.kind,
                order=state.order,
                idempotency_key=state.idempotency_key,
                fields=dict(state.fields),
            )
        return None

    async def submit_field(self, chat_id: int, raw: str, name: str | None = None) -> StepResult:
        """Offer ``raw`` for the field the operation is waiting for.

        ``name`` (set by buttons) must match that field; a value for any other slot is
        rejected without changing state.
        """
        conv = self.conversations.get(chat_id)
        state = conv.operation
        if not isinstance(state, Collecting):
            raise InvalidTransitionError("no operation is collecting input")
        expected = state.next_field()
        if expected is None:
            raise InvalidTransitionError("operation has no pending field")
        if name is not None and name != expected:
            return StepResult(
                status=StepStatus.INVALID,
                kind=state.kind,
                field=expected,
                hint=f"Expected {expected.replace('_', ' ')} first",
                fields=dict(state.fields),
            )

        if state.kind is OperationKind.KEY_VERIFICATION:
            return await self._verify_key(conv, state, raw)

        try:
            value = await self._parse(conv.chat_id, state.kind, expected, raw)
        except ValidationError as exc:
            return StepResult(status=StepStatus.INVALID, kind=state.kind, field=exc.field, hint=exc.hint, fields=dict(state.fields))

        state.fields[expected] = value
        if state.next_field() is not None:
            return self._prompt(state)
        return await self._enter_confirming(conv, state, last_field=expected)

    async def _parse(self, chat_id: int, kind: OperationKind, name: str, raw: str) -> Any:
        if name == "token":
            return parse_address(raw, field="token")
        if name == "amount":
            recurring = kind is OperationKind.RECURRING_BUY
            kwargs = {"ceiling": MAX_RECURRING_AMOUNT} if recurring else {}
            return parse_amount(raw, allow_percent=not recurring, **kwargs)
        if name == "interval":
            return parse_interval_hours(raw)
        if name == "repeat_count":
            return parse_repeat_count(raw)
        if name == "price":
            return parse_price(raw)
        if name == "expiry":
            return parse_expiry(raw)
        if name == "recipient":
            profile = await self.profiles.load(chat_id, allow_stale=True)
            own = profile.primary_wallet.address if profile and profile.primary_wallet else None
            return parse_recipient(raw, own)
        raise ValidationError(name, "Unexpected input")

    async def _balance_for(self, kind: OperationKind, wallet: str, token: str | None) -> Decimal:
        if kind in _NATIVE_FUNDED:
            return _as_decimal(await self.balances.get_native_balance(wallet))
        if kind in _TOKEN_FUNDED and token:
            return _as_decimal(await self.balances.get_token_balance(wallet, token))
        raise ValidationError("amount", "Percentages are not supported here. Send a fixed amount.")

    async def _resolve_amount(self, kind: OperationKind, amount: AmountInput, wallet: str, token: str | None) -> Decimal:
        """Turn the collected amount into an absolute one against a freshly read balance."""
        needs_balance = amount.is_percent or kind in _ABSOLUTE_CHECKED
        if not needs_balance:
            return amount.value
        balance = await self._balance_for(kind, wallet, token)
        if balance <= 0:
            raise ValidationError("amount", "Your balance for this is zero")
        if not amount.is_percent:
            resolved = amount.value
        elif amount.value == _FULL:
            resolved = balance
        else:
            with localcontext() as ctx:
                ctx.prec = _RESOLVE_PRECISION
                resolved = balance * amount.value / _FULL
        if resolved > balance:
            raise ValidationError("amount", f"That is more than your balance ({balance.normalize():f})")
        if resolved <= 0:
            raise ValidationError("amount", "Resolved amount is zero")
        return resolved

    def _build_order(self, kind: OperationKind, fields: dict, amount: Decimal) -> Order:
        if kind is OperationKind.BUY:
            return BuyOrder(token=fields["token"], amount=amount)
        if kind is OperationKind.SELL:
            return SellOrder(token=fields["token"], amount=amount)
        if kind is OperationKind.RECURRING_BUY:
            return RecurringBuyOrder(
                token=fields["token"],
                amount=amount,
                interval_hours=fields["interval"],
                repeat_count=fields["repeat_count"],
            )
        if kind is OperationKind.LIMIT_ORDER:
            return LimitOrder(token=fields["token"], amount=amount, price=fields["price"], expiry=fields["expiry"])
        if kind is OperationKind.WITHDRAW:
            return Withdrawal(amount=amount, recipient=fields["recipient"])
        raise InvalidTransitionError(f"{kind.value} does not build an order")

    async def _enter_confirming(self, conv: Conversation, state: Collecting, last_field: str) -> StepResult:
        try:
            profile = await self.profiles.require_eligible(conv.chat_id, allow_stale=True)
        except NotEligibleError:
            self._reset(conv)
            raise
        wallet = profile.primary_wallet.address

        try:
            amount = await self._resolve_amount(state.kind, state.fields["amount"], wallet, state.fields.get("token"))
        except ValidationError as exc:
            # The amount no longer fits the balance; ask for it again, keep the rest.
            state.fields.pop("amount", None)
            return StepResult(status=StepStatus.INVALID, kind=state.kind, field="amount", hint=exc.hint, fields=dict(state.fields))
        except UpstreamError as exc:
            state.fields.pop(last_field, None)
            logger.warning(
                "balance_read_failed",
                extra={"event": "balance_read_failed", "chat_id": conv.chat_id, "reason": str(exc)},
            )
            return StepResult(
                status=StepStatus.INVALID,
                kind=state.kind,
                field=last_field,
                hint="Couldn't read your balance right now. Send it again in a moment.",
                fields=dict(state.fields),
            )

        order = self._build_order(state.kind, state.fields, amount)
        confirming = Confirming(
            kind=state.kind,
            fields=dict(state.fields),
            order=order,
            idempotency_key=uuid.uuid4().hex,
            created_at=state.created_at,
        )
        conv.operation = confirming
        logger.info(
            "operation_confirming",
            extra={"event": "operation_confirming", "chat_id": conv.chat_id, "operation": state.kind.value},
        )
        return StepResult(
            status=StepStatus.CONFIRM,
            kind=state.kind,
            order=order,
            idempotency_key=confirming.idempotency_key,
            fields=dict(confirming.fields),
        )

    async def _verify_key(self, conv: Conversation, state: Collecting, raw: str) -> StepResult:
        try:
            last4 = parse_last4(raw)
        except ValidationError as exc:
            return StepResult(status=StepStatus.INVALID, kind=state.kind, field=exc.field, hint=exc.hint)
        try:
            profile = await self.profiles.require_eligible(conv.chat_id, allow_stale=True)
        except NotEligibleError:
            self._reset(conv)
            raise
        private_key = await self.vault.retrieve(profile.primary_wallet.address)
        if private_key is None:
            self._reset(conv)
            return StepResult(status=StepStatus.FAILED, kind=state.kind, reason=FailureReason.NO_KEY_MATERIAL)
        if private_key.lower()[-4:] != last4:
            return StepResult(
                status=StepStatus.INVALID,
                kind=state.kind,
                field="last4",
                hint="Those characters don't match. Check your saved key and try again.",
            )
        self._reset(conv)
        logger.info("key_verified", extra={"event": "key_verified", "chat_id": conv.chat_id})
        return StepResult(status=StepStatus.EXECUTED, kind=state.kind)

    async def confirm(self, chat_id: int, idempotency_key: str | None = None) -> StepResult:
        conv = self.conversations.get(chat_id)
        state = conv.operation
        if not isinstance(state, Confirming):
            raise InvalidTransitionError("nothing to confirm")
        if idempotency_key is not None and idempotency_key != state.idempotency_key:
            raise InvalidTransitionError("confirmation does not match the pending order")
        # Leave Confirming before anything else happens so a repeated confirm cannot submit twice.
        self._reset(conv)
        started = self.clock()
        try:
            result = await self._execute(chat_id, state)
        except NotEligibleError:
            raise
        except Exception:
            logger.exception(
                "operation_confirm_error",
                extra={"event": "operation_confirm_error", "chat_id": chat_id, "operation": state.kind.value},
            )
            result = StepResult(status=StepStatus.FAILED, kind=state.kind, order=state.order, reason=FailureReason.UNKNOWN)

        logger.info(
            "operation_executed" if result.status is StepStatus.EXECUTED else "operation_failed",
            extra={
                "event": "operation_executed" if result.status is StepStatus.EXECUTED else "operation_failed",
                "chat_id": chat_id,
                "operation": state.kind.value,
                "reason": result.reason.value if result.reason else None,
                "latency_ms": int((self.clock() - started) * 1000),
            },
        )
        return result

    async def _execute(self, chat_id: int, state: Confirming) -> StepResult:
        def failed(reason: FailureReason) -> StepResult:
            return StepResult(status=StepStatus.FAILED, kind=state.kind, order=state.order, reason=reason)

        profile = await self.profiles.require_eligible(chat_id, force_refresh=True)
        wallet = profile.primary_wallet.address

        private_key = await self.vault.retrieve(wallet)
        if private_key is None:
            return failed(FailureReason.NO_KEY_MATERIAL)

        row_id: int | None = None
        if self.journal is not None:
            try:
                row_id = await self.journal.open(profile.user_id, wallet, state.order, state.idempotency_key)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "journal_open_failed",
                    extra={"event": "journal_open_failed", "chat_id": chat_id, "reason": exc.__class__.__name__},
                )
                return failed(FailureReason.UNKNOWN)

        outcome: ExecutionResult | None = None
        reason: FailureReason | None = None
        try:
            outcome = await asyncio.wait_for(
                self.executor.execute(
                    state.order,
                    private_key,
                    wallet,
                    profile.effective_settings(),
                    state.idempotency_key,
                ),
                timeout=self.executor_timeout,
            )
        except asyncio.TimeoutError:
            # The submission may still land; never assume either way.
            reason = FailureReason.TIMEOUT
        except Exception as exc:  # noqa: BLE001
            outcome = ExecutionResult(success=False, error_message=str(exc))
            reason = classify_failure(str(exc))
        else:
            if not outcome.success:
                reason = classify_failure(outcome.error_message)
        finally:
            private_key = None

        await self._close_journal(row_id, outcome, reason, chat_id)

        logger.info(
            "executor_returned",
            extra={
                "event": "executor_returned",
                "chat_id": chat_id,
                "wallet": short_address(wallet),
                "reason": reason.value if reason else None,
            },
        )
        if reason is not None:
            return failed(reason)
        return StepResult(
            status=StepStatus.EXECUTED,
            kind=state.kind,
            order=state.order,
            reference=outcome.reference if outcome else None,
        )

    async def _close_journal(
        self, row_id: int | None, outcome: ExecutionResult | None, reason: FailureReason | None, chat_id: int
    ) -> None:
        if self.journal is None or row_id is None:
            return
        if reason is FailureReason.TIMEOUT:
            status = "unknown"
        elif reason is None:
            status = "completed"
        else:
            status = "failed"
        try:
            await self.journal.close(row_id, status, outcome.reference if outcome else None, reason.value if reason else None)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "journal_close_failed",
                extra={"event": "journal_close_failed", "chat_id": chat_id, "reason": exc.__class__.__name__},
            )

    async def cancel(self, chat_id: int) -> StepResult:
        conv = self.conversations.get(chat_id)
        state = conv.operation
        if state is None:
            raise InvalidTransitionError("no active operation")
        self._reset(conv)
        logger.info("operation_cancelled", extra={"event": "operation_cancelled", "chat_id": chat_id, "operation": state.kind.value})
        return StepResult(status=StepStatus.CANCELLED, kind=state.kind)
