"""
Transfer executor.

Wraps the externally supplied "submit transfer" capability (the wallet
signing mechanism) and turns whatever it reports into three canonical events:
``pending``, ``confirmed{hash}`` and ``failed{reason}``.

The submitter may report progress through the ``emit`` callback it is handed
(wallet lifecycle names such as ``transactionPending`` / ``success`` /
``error``), by returning the transaction hash, or by raising.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Literal, Mapping, Optional, Protocol

from .exceptions import AmountMismatchError, OrderExpiredError, TransferFailedError
from .logging import log_manual_reconciliation
from .models import Order

logger = logging.getLogger(__name__)

PENDING_EVENTS = frozenset({"transactionpending", "transaction_pending", "submitted", "pending"})
CONFIRMED_EVENTS = frozenset({"success", "confirmed", "transactionsuccess"})
FAILED_EVENTS = frozenset({"error", "failed", "transactionerror"})

_REJECTION_MARKERS = ("user rejected", "user denied", "rejected the request")


@dataclass(frozen=True)
class TransferRequest:
    """Exactly what the wallet must send, taken from the normalized Order."""
    order_id: str
    to_address: str
    amount: Decimal
    asset: str
    from_address: Optional[str] = None


@dataclass(frozen=True)
class TransferEvent:
    kind: Literal["pending", "confirmed", "failed"]
    tx_hash: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    speculative: bool = False
    payload: Mapping[str, Any] = field(default_factory=dict)


EmitCallback = Callable[[str, Mapping[str, Any]], None]
TransferListener = Callable[[TransferEvent], None]
LivenessCheck = Callable[[Order], Awaitable[bool]]


class TransferSubmitter(Protocol):
    """The wallet-signing capability, supplied by the embedding application."""

    async def submit(self, request: TransferRequest, emit: EmitCallback) -> Optional[str]:
        """Send the transfer. Returns the transaction hash when known."""
        ...


def extract_tx_hash(payload: Mapping[str, Any]) -> Optional[str]:
    """Transaction hash from ``hash``/``transactionHash`` or the first receipt."""
    for key in ("hash", "transactionHash", "txHash"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    receipts = payload.get("transactionReceipts") or payload.get("receipts") or []
    if receipts:
        first = receipts[0]
        if isinstance(first, str):
            return first
        if isinstance(first, Mapping):
            value = first.get("transactionHash") or first.get("hash")
            if isinstance(value, str) and value:
                return value
    return None


def normalize_lifecycle_event(name: str, payload: Mapping[str, Any]) -> Optional[TransferEvent]:
    """Map a wallet lifecycle name onto a canonical TransferEvent (None if unknown)."""
    key = name.strip().lower()
    if key in PENDING_EVENTS:
        return TransferEvent("pending", tx_hash=extract_tx_hash(payload), payload=payload)
    if key in CONFIRMED_EVENTS:
        return TransferEvent("confirmed", tx_hash=extract_tx_hash(payload), payload=payload)
    if key in FAILED_EVENTS:
        message = payload.get("message") or payload.get("error")
        message = str(message) if message else None
        reason = payload.get("reason")
        if not reason:
            lowered = (message or "").lower()
            reason = "user_rejected" if any(m in lowered for m in _REJECTION_MARKERS) else "wallet_error"
        return TransferEvent("failed", reason=str(reason), message=message, payload=payload)
    return None


class TransferExecutor:
    """
    Drive one transfer to ``confirmed`` or raise TransferFailedError.

    Once the wallet reports ``pending``, a fallback window bounds the wait.
    When it elapses the transfer fails with ``transfer_timeout``, unless
    optimistic confirmation is enabled and the liveness check reports the
    provider order still live, in which case it is confirmed speculatively
    and logged for manual reconciliation.
    """

    def __init__(
        self,
        submitter: TransferSubmitter,
        *,
        fallback_window_seconds: float = 120.0,
        optimistic_confirmation: bool = False,
        liveness_check: Optional[LivenessCheck] = None,
    ):
        self._submitter = submitter
        self._window = fallback_window_seconds
        self._optimistic = optimistic_confirmation
        self._liveness_check = liveness_check

    @staticmethod
    def build_request(order: Order) -> TransferRequest:
        return TransferRequest(
            order_id=order.id,
            to_address=order.receive_address,
            amount=order.transfer_amount,
            asset=order.source_asset,
            from_address=order.return_address,
        )

    async def execute(
        self,
        order: Order,
        listener: Optional[TransferListener] = None,
    ) -> TransferEvent:
        """
        Submit the transfer for ``order`` and wait for the outcome.

        Returns:
            The ``confirmed`` TransferEvent

        Raises:
            OrderExpiredError: ``valid_until`` passed; nothing is submitted
            AmountMismatchError: Order totals do not add up; nothing is submitted
            TransferFailedError: Wallet failure or fallback window elapsed
        """
        if order.is_expired():
            raise OrderExpiredError(order.id, order.valid_until)
        if not order.amounts_consistent():
            raise AmountMismatchError(
                f"Refusing to transfer for order {order.id}: amounts inconsistent",
                details={"order_id": order.id},
            )

        request = self.build_request(order)
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future[TransferEvent] = loop.create_future()
        pending_seen = asyncio.Event()

        def notify(event: TransferEvent) -> None:
            if listener is not None:
                listener(event)

        def resolve(event: TransferEvent) -> None:
            if not outcome.done():
                outcome.set_result(event)

        def mark_pending(event: TransferEvent) -> None:
            if not pending_seen.is_set():
                pending_seen.set()
                notify(event)

        def emit(name: str, payload: Optional[Mapping[str, Any]] = None) -> None:
            if outcome.done():
                return
            event = normalize_lifecycle_event(name, payload or {})
            if event is None:
                logger.debug("Ignoring wallet event %r for order %s", name, order.id)
                return
            if event.kind == "pending":
                mark_pending(event)
            elif event.kind == "confirmed" and not event.tx_hash:
                logger.warning("Wallet reported %r without a hash for order %s", name, order.id)
                mark_pending(TransferEvent("pending", payload=event.payload))
            else:
                resolve(event)

        async def run_submitter() -> None:
            try:
                tx_hash = await self._submitter.submit(request, emit)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Transfer submission for order %s failed: %s", order.id, e)
                resolve(TransferEvent("failed", reason="wallet_error", message=str(e)))
                return
            if tx_hash:
                resolve(TransferEvent("confirmed", tx_hash=tx_hash))
            else:
                mark_pending(TransferEvent("pending"))

        logger.info(
            "Submitting transfer for order %s: %s %s to %s",
            order.id, request.amount, request.asset, request.to_address,
        )
        submit_task = asyncio.create_task(run_submitter())
        try:
            event = await self._await_outcome(order, outcome, pending_seen)
        finally:
            if not submit_task.done():
                submit_task.cancel()

        if event.kind == "failed":
            raise TransferFailedError(
                event.message or f"Transfer for order {order.id} failed",
                reason=event.reason or "wallet_error",
            )
        if not pending_seen.is_set():
            notify(TransferEvent("pending", tx_hash=event.tx_hash))
        notify(event)
        logger.info("Transfer for order %s confirmed: %s", order.id, event.tx_hash)
        return event

    async def _await_outcome(
        self,
        order: Order,
        outcome: "asyncio.Future[TransferEvent]",
        pending_seen: asyncio.Event,
    ) -> TransferEvent:
        pending_wait = asyncio.ensure_future(pending_seen.wait())
        try:
            # Signing time is unbounded; the fallback window starts at "pending"
            await asyncio.wait({outcome, pending_wait}, return_when=asyncio.FIRST_COMPLETED)
            if outcome.done():
                return outcome.result()
            try:
                return await asyncio.wait_for(asyncio.shield(outcome), self._window)
            except asyncio.TimeoutError:
                return await self._on_window_elapsed(order)
        finally:
            pending_wait.cancel()

    async def _on_window_elapsed(self, order: Order) -> TransferEvent:
        logger.warning(
            "Transfer for order %s still pending after %.0fs", order.id, self._window,
        )
        if self._optimistic and self._liveness_check is not None and await self._liveness_check(order):
            log_manual_reconciliation(
                order,
                "speculative_transfer_confirmation",
                window_seconds=self._window,
            )
            return TransferEvent("confirmed", speculative=True)
        return TransferEvent(
            "failed",
            reason="transfer_timeout",
            message=f"Transfer for order {order.id} was not confirmed within {self._window:.0f}s",
        )
