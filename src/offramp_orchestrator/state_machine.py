"""
Off-ramp orchestrator state machine.

One OffRampOrchestrator drives one user-initiated payout:

    idle -> quoting -> order_created -> awaiting_signature -> transfer_pending
         -> transfer_confirmed -> settlement_processing
         -> settled* | refunded* | expired* | failed*

plus ``insufficient_funds*`` and ``cancelled*``. Only the orchestrator
mutates the lifecycle state, and it does so synchronously when an awaited
step resolves. Transfer and settlement failures end the run with a
PayoutResult delivered through the terminal callback (exactly once), they
are never raised across the async boundary. Validation errors are raised
to the caller before the machine leaves ``idle``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .exceptions import (
    AmountMismatchError,
    InsufficientFundsError,
    InvalidTransitionError,
    OfframpException,
    OrderCreationFailedError,
    OrderExpiredError,
    ReconciliationTimeoutError,
    SettlementFailedError,
    TransferFailedError,
)
from .logging import log_manual_reconciliation
from .models import Order, OrderStatus, OutcomeCategory, Recipient, SettlementOutcome
from .orders import OrderManager
from .providers.registry import ProviderRegistry
from .reconciler import SettlementReconciler
from .store import OrderStore
from .transfer import TransferEvent, TransferExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OrchestratorState(str, Enum):
    IDLE = "idle"
    QUOTING = "quoting"
    ORDER_CREATED = "order_created"
    AWAITING_SIGNATURE = "awaiting_signature"
    TRANSFER_PENDING = "transfer_pending"
    TRANSFER_CONFIRMED = "transfer_confirmed"
    SETTLEMENT_PROCESSING = "settlement_processing"
    SETTLED = "settled"
    REFUNDED = "refunded"
    EXPIRED = "expired"
    FAILED = "failed"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    CANCELLED = "cancelled"


S = OrchestratorState

TERMINAL_STATES = frozenset({
    S.SETTLED, S.REFUNDED, S.EXPIRED, S.FAILED, S.INSUFFICIENT_FUNDS, S.CANCELLED,
})

# States from which the caller may still abandon the flow
CANCELLABLE_STATES = frozenset({
    S.IDLE, S.QUOTING, S.ORDER_CREATED, S.AWAITING_SIGNATURE, S.TRANSFER_PENDING,
})

TRANSITIONS: dict[OrchestratorState, frozenset[OrchestratorState]] = {
    S.IDLE: frozenset({S.QUOTING, S.CANCELLED}),
    S.QUOTING: frozenset({S.ORDER_CREATED, S.INSUFFICIENT_FUNDS, S.FAILED, S.CANCELLED}),
    S.ORDER_CREATED: frozenset({S.AWAITING_SIGNATURE, S.INSUFFICIENT_FUNDS, S.FAILED, S.CANCELLED}),
    S.AWAITING_SIGNATURE: frozenset({S.TRANSFER_PENDING, S.FAILED, S.CANCELLED}),
    S.TRANSFER_PENDING: frozenset({S.TRANSFER_CONFIRMED, S.FAILED, S.CANCELLED}),
    S.TRANSFER_CONFIRMED: frozenset({S.SETTLEMENT_PROCESSING}),
    S.SETTLEMENT_PROCESSING: frozenset({S.SETTLED, S.REFUNDED, S.EXPIRED, S.FAILED}),
}

SETTLEMENT_FAILURE_STATES: dict[OrderStatus, OrchestratorState] = {
    OrderStatus.REFUNDED: S.REFUNDED,
    OrderStatus.EXPIRED: S.EXPIRED,
    OrderStatus.FAILED: S.FAILED,
    OrderStatus.CANCELLED: S.FAILED,
}


@dataclass(frozen=True)
class PayoutResult:
    """The single terminal report of one payout."""
    state: OrchestratorState
    category: OutcomeCategory
    order: Optional[Order] = None
    error: Optional[OfframpException] = None
    outcome: Optional[SettlementOutcome] = None

    @property
    def succeeded(self) -> bool:
        return self.category == OutcomeCategory.SUCCESS

    @property
    def retryable(self) -> bool:
        return self.category == OutcomeCategory.RETRYABLE_FAILURE

    @property
    def needs_support(self) -> bool:
        """Funds left the wallet and the payout failed or is unknown."""
        return isinstance(self.error, (SettlementFailedError, ReconciliationTimeoutError))

    @property
    def user_message(self) -> str:
        if self.error is not None:
            return self.error.user_message
        return "Payment sent. The recipient has been paid."

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "state": self.state.value,
            "category": self.category.value,
            "message": self.user_message,
        }
        if self.order is not None:
            data["orderId"] = self.order.id
            data["receiptCode"] = self.order.receipt_code
            data["transferHash"] = self.order.transfer_hash
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data


def categorize(state: OrchestratorState, error: Optional[OfframpException]) -> OutcomeCategory:
    """Map a terminal state (and its error) onto the user-visible category."""
    if state == S.SETTLED and error is None:
        return OutcomeCategory.SUCCESS
    if isinstance(error, ReconciliationTimeoutError):
        return OutcomeCategory.UNKNOWN
    if state == S.CANCELLED or (error is not None and error.retryable):
        return OutcomeCategory.RETRYABLE_FAILURE
    return OutcomeCategory.NON_RETRYABLE_FAILURE


class _Cancelled(Exception):
    """Raised inside ``run`` when the caller abandons the flow."""


StateListener = Callable[[OrchestratorState, OrchestratorState], None]
TerminalCallback = Callable[[PayoutResult], None]


class OffRampOrchestrator:
    """
    Sequences order creation, transfer and settlement for one payout.

    Usage:
        orchestrator = service.new_payout(submitter, on_terminal=notify_user)
        result = await orchestrator.run(
            amount=Decimal("10"),
            currency="KES",
            recipient=PhoneRecipient("254712345678"),
            return_address=wallet_address,
            recipient_name="Jane Doe",
        )
    """

    def __init__(
        self,
        order_manager: OrderManager,
        executor: TransferExecutor,
        reconciler: SettlementReconciler,
        registry: ProviderRegistry,
        store: OrderStore,
        *,
        on_state_change: Optional[StateListener] = None,
        on_terminal: Optional[TerminalCallback] = None,
    ):
        self._orders = order_manager
        self._executor = executor
        self._reconciler = reconciler
        self._registry = registry
        self._store = store
        self._on_state_change = on_state_change
        self._on_terminal = on_terminal

        self._state = S.IDLE
        self._history: list[OrchestratorState] = [S.IDLE]
        self._order: Optional[Order] = None
        self._result: Optional[PayoutResult] = None
        self._terminal_fired = False
        self._cancel_event = asyncio.Event()
        self._task: Optional["asyncio.Task[PayoutResult]"] = None

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def history(self) -> list[OrchestratorState]:
        return list(self._history)

    @property
    def order(self) -> Optional[Order]:
        return self._order

    @property
    def result(self) -> Optional[PayoutResult]:
        return self._result

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def can_cancel(self) -> bool:
        return self._state in CANCELLABLE_STATES

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def start(
        self,
        amount: Any,
        currency: Any,
        recipient: Recipient,
        return_address: str,
        recipient_name: str = "",
    ) -> "asyncio.Task[PayoutResult]":
        """Validate synchronously, then run the payout in a background task."""
        self._orders.validate(amount, currency, recipient, return_address)
        self._task = asyncio.create_task(
            self.run(amount, currency, recipient, return_address, recipient_name),
        )
        return self._task

    async def run(
        self,
        amount: Any,
        currency: Any,
        recipient: Recipient,
        return_address: str,
        recipient_name: str = "",
    ) -> PayoutResult:
        """
        Drive the payout to a terminal state.

        Raises:
            OfframpValidationError: Request rejected; the machine stays idle
            InvalidTransitionError: The orchestrator was already used
        """
        if self._state != S.IDLE:
            raise InvalidTransitionError(self._state.value, S.QUOTING.value)
        self._orders.validate(amount, currency, recipient, return_address)
        if self._cancel_event.is_set():
            return await self._finish(S.CANCELLED)

        try:
            return await self._run(amount, currency, recipient, return_address, recipient_name)
        except _Cancelled:
            return await self._finish(S.CANCELLED)

    def cancel(self) -> bool:
        """Abandon the flow. Only possible before the transfer is confirmed."""
        if not self.can_cancel:
            logger.info("Cancel ignored for order %s in state %s", self._order_id, self._state.value)
            return False
        logger.info("Payout %s cancelled in state %s", self._order_id, self._state.value)
        self._cancel_event.set()
        return True

    # ------------------------------------------------------------------
    # Flow
    # ------------------------------------------------------------------

    async def _run(
        self,
        amount: Any,
        currency: Any,
        recipient: Recipient,
        return_address: str,
        recipient_name: str,
    ) -> PayoutResult:
        self._transition(S.QUOTING)
        try:
            order = await self._cancellable(self._orders.create_settlement_order(
                amount, currency, recipient, return_address, recipient_name,
            ))
        except InsufficientFundsError as e:
            return await self._finish(S.INSUFFICIENT_FUNDS, e)
        except (OrderCreationFailedError, AmountMismatchError) as e:
            return await self._finish(S.FAILED, e)

        self._order = order
        await self._store.save_order(order)
        self._transition(S.ORDER_CREATED)

        if order.is_expired():
            return await self._finish(S.FAILED, OrderExpiredError(order.id, order.valid_until))
        self._transition(S.AWAITING_SIGNATURE)

        try:
            event = await self._cancellable(
                self._executor.execute(order, listener=self._on_transfer_event),
            )
        except (TransferFailedError, OrderExpiredError, AmountMismatchError) as e:
            return await self._finish(S.FAILED, e)

        # Funds have left the wallet; no cancellation from here on
        if self._state == S.AWAITING_SIGNATURE:
            self._transition(S.TRANSFER_PENDING)
        self._transition(S.TRANSFER_CONFIRMED)
        if event.tx_hash:
            order = order.evolve(transfer_hash=event.tx_hash)
            self._order = order
            await self._store.advance_status(order.id, None, transfer_hash=event.tx_hash)
        self._transition(S.SETTLEMENT_PROCESSING)
        return await self._settle(order, event)

    async def _settle(self, order: Order, event: TransferEvent) -> PayoutResult:
        provider = self._registry.get(order.provider)
        if provider.settlement_scheme == "fixed_address":
            if not event.tx_hash:
                error = SettlementFailedError(order.id, "failed", "payout needs a transfer hash")
                log_manual_reconciliation(order, "payout_without_transfer_hash")
                return await self._finish(S.FAILED, error)
            try:
                order = await provider.on_transfer_confirmed(order, event.tx_hash)
            except Exception as e:
                message = e.message if isinstance(e, OfframpException) else str(e) or type(e).__name__
                log_manual_reconciliation(order, "payout_request_failed", provider_message=message)
                return await self._finish(
                    S.FAILED, SettlementFailedError(order.id, "failed", message),
                )
            self._order = order
            await self._store.advance_status(
                order.id, None, provider_reference=order.provider_reference,
            )

        try:
            outcome = await self._reconciler.reconcile(order)
        except Exception as e:
            # Funds already left the wallet: report the outcome as unknown
            logger.exception("Settlement reconciliation for order %s broke down", order.id)
            reason = str(e) or type(e).__name__
            log_manual_reconciliation(order, "reconciliation_error", error=reason)
            return await self._finish(
                S.FAILED, ReconciliationTimeoutError(order.id, 0, 0.0, reason=reason),
            )
        return await self._resolve_settlement(order, outcome)

    async def _resolve_settlement(self, order: Order, outcome: SettlementOutcome) -> PayoutResult:
        if outcome.kind == "timeout":
            error = ReconciliationTimeoutError(order.id, outcome.attempts, outcome.elapsed_seconds)
            log_manual_reconciliation(
                order, "reconciliation_timeout",
                attempts=outcome.attempts, elapsed_seconds=round(outcome.elapsed_seconds, 1),
            )
            return await self._finish(S.FAILED, error, outcome)

        observation = outcome.observation
        changes: dict[str, Any] = {"status": outcome.status}
        if observation is not None:
            if observation.receipt_code:
                changes["receipt_code"] = observation.receipt_code
            if observation.transfer_hash and not order.transfer_hash:
                changes["transfer_hash"] = observation.transfer_hash
        self._order = order.evolve(**changes)

        if outcome.kind == "settled":
            return await self._finish(S.SETTLED, outcome=outcome)

        error = SettlementFailedError(
            order.id,
            outcome.status.value,
            observation.message if observation else None,
        )
        log_manual_reconciliation(
            self._order, f"settlement_{outcome.status.value}",
            source=outcome.source, raw_status=observation.raw_status if observation else None,
        )
        return await self._finish(SETTLEMENT_FAILURE_STATES[outcome.status], error, outcome)

    def _on_transfer_event(self, event: TransferEvent) -> None:
        if event.kind == "pending" and self._state == S.AWAITING_SIGNATURE:
            self._transition(S.TRANSFER_PENDING)

    async def _cancellable(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the caller cancels first."""
        step = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({step, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            step.cancel()
            raise
        finally:
            cancelled.cancel()
        # A step that already finished wins over a late cancel
        if step.done():
            return step.result()
        step.cancel()
        try:
            await step
        except asyncio.CancelledError:
            pass
        raise _Cancelled()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def _order_id(self) -> Optional[str]:
        return self._order.id if self._order else None

    def _transition(self, new_state: OrchestratorState) -> None:
        if new_state not in TRANSITIONS.get(self._state, frozenset()):
            raise InvalidTransitionError(self._state.value, new_state.value)
        previous = self._state
        self._state = new_state
        self._history.append(new_state)
        logger.info("Payout %s: %s -> %s", self._order_id, previous.value, new_state.value)
        if self._on_state_change is not None:
            self._on_state_change(previous, new_state)

    async def _finish(
        self,
        state: OrchestratorState,
        error: Optional[OfframpException] = None,
        outcome: Optional[SettlementOutcome] = None,
    ) -> PayoutResult:
        self._transition(state)
        await self._record_pre_transfer_end(state, error)
        result = PayoutResult(
            state=state,
            category=categorize(state, error),
            order=self._order,
            error=error,
            outcome=outcome,
        )
        self._result = result
        if error is not None:
            logger.warning(
                "Payout %s ended %s (%s): %s",
                self._order_id, state.value, result.category.value, error.message,
            )
        if not self._terminal_fired:
            self._terminal_fired = True
            if self._on_terminal is not None:
                self._on_terminal(result)
        return result

    async def _record_pre_transfer_end(
        self,
        state: OrchestratorState,
        error: Optional[OfframpException],
    ) -> None:
        """Close out the stored order when the flow ended before funds moved."""
        if self._order is None or self._order.transfer_hash:
            return
        if isinstance(error, (SettlementFailedError, ReconciliationTimeoutError)):
            return
        if state == S.CANCELLED:
            status = OrderStatus.CANCELLED
        elif isinstance(error, OrderExpiredError):
            status = OrderStatus.EXPIRED
        elif state == S.FAILED:
            status = OrderStatus.FAILED
        else:
            return
        self._order = self._order.evolve(status=status)
        await self._store.advance_status(self._order.id, status)
