"""
Settlement reconciler.

After the transfer is confirmed, two independent signals report the payout
outcome: the poll loop (``fetch_status`` on the backoff schedule) and
provider webhooks. Both funnel every observation into ``_observe``, where a
per-Order ``completed`` flag is checked and set with no suspension point in
between. The first terminal observation wins; later ones only persist
(monotonically) and never produce a second resolution.

A terminal status already persisted when the session starts (a webhook that
beat the transfer hand-off) resolves the session before the first poll.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from .backoff import BackoffPolicy
from .exceptions import ProviderError, UnknownProviderError
from .logging import log_manual_reconciliation
from .models import (
    FAILURE_STATUSES,
    SUCCESS_STATUSES,
    TERMINAL_STATUSES,
    Order,
    ProviderStatus,
    SettlementOutcome,
)
from .providers.registry import ProviderRegistry
from .store import OrderStore

logger = logging.getLogger(__name__)


@dataclass
class PollingSession:
    """Reconciliation state for one Order; discarded once resolved."""
    order: Order
    policy: BackoffPolicy
    started_at: float
    future: "asyncio.Future[SettlementOutcome]"
    attempts: int = 0
    next_delay: float = 0.0
    completed: bool = False
    poll_task: Optional["asyncio.Task[None]"] = None
    winner: Optional[ProviderStatus] = field(default=None, repr=False)

    @property
    def deadline(self) -> float:
        return self.started_at + self.policy.deadline

    def try_complete(self, outcome: SettlementOutcome) -> bool:
        """Check-and-set the completed flag. Must not await."""
        if self.completed:
            return False
        self.completed = True
        self.winner = outcome.observation
        if not self.future.done():
            self.future.set_result(outcome)
        return True


class SettlementReconciler:
    """Resolves each confirmed transfer to exactly one SettlementOutcome."""

    def __init__(
        self,
        registry: ProviderRegistry,
        store: OrderStore,
        policy: Optional[BackoffPolicy] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self._store = store
        self._policy = policy or BackoffPolicy()
        self._clock = clock
        self._sessions: dict[str, PollingSession] = {}

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    def session(self, order_id: str) -> Optional[PollingSession]:
        return self._sessions.get(order_id)

    def start(self, order: Order) -> PollingSession:
        """Create the polling session and start polling. Idempotent per order."""
        existing = self._sessions.get(order.id)
        if existing is not None:
            return existing
        loop = asyncio.get_running_loop()
        session = PollingSession(
            order=order,
            policy=self._policy,
            started_at=self._clock(),
            future=loop.create_future(),
        )
        self._sessions[order.id] = session
        session.poll_task = asyncio.create_task(
            self._poll_loop(session), name=f"settlement-poll-{order.id}",
        )
        logger.info(
            "Reconciling order %s via %s (max %d polls, deadline %.0fs)",
            order.id, order.provider, self._policy.max_attempts, self._policy.deadline,
        )
        return session

    async def reconcile(self, order: Order) -> SettlementOutcome:
        """Start (or join) reconciliation of ``order`` and wait for its outcome."""
        session = self.start(order)
        try:
            return await asyncio.shield(session.future)
        finally:
            if session.future.done():
                self._sessions.pop(order.id, None)

    async def handle_webhook(self, provider_name: str, observation: ProviderStatus) -> bool:
        """
        Intake for a verified webhook observation.

        Returns:
            True if this observation resolved an active reconciliation
        """
        session = self._sessions.get(observation.order_id)
        if session is None:
            observation = await self._resolve_order_id(provider_name, observation)
            session = self._sessions.get(observation.order_id)
        if session is None:
            logger.info(
                "Webhook %s for order %s with no active reconciliation; persisting only",
                observation.raw_status, observation.order_id,
            )
            await self._persist(observation)
            return False
        return await self._observe(session, observation)

    async def _resolve_order_id(self, provider_name: str, observation: ProviderStatus) -> ProviderStatus:
        if await self._store.get(observation.order_id) is not None:
            return observation
        record = await self._store.get_by_reference(provider_name, observation.order_id)
        if record is None:
            return observation
        return replace(observation, order_id=record.id)

    async def _observe(self, session: PollingSession, observation: ProviderStatus) -> bool:
        won = False
        outcome: Optional[SettlementOutcome] = None
        if observation.status in SUCCESS_STATUSES or observation.status in FAILURE_STATUSES:
            outcome = SettlementOutcome(
                order_id=session.order.id,
                kind="settled" if observation.status in SUCCESS_STATUSES else "failed",
                status=observation.status,
                observation=observation,
                attempts=session.attempts,
                elapsed_seconds=self._clock() - session.started_at,
            )
            won = session.try_complete(outcome)

        await self._persist(observation)

        if not won:
            if outcome is not None:
                logger.debug(
                    "Order %s already resolved; %s %s ignored",
                    session.order.id, observation.source, observation.raw_status,
                )
            return False

        logger.info(
            "Order %s resolved %s (%s) by %s after %d polls",
            session.order.id, outcome.kind, observation.status.value,
            observation.source, session.attempts,
        )
        task = session.poll_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        if outcome.kind == "settled":
            self._verify_amount(session.order, observation)
        self._end_session(session.order)
        return True

    async def _persist(self, observation: ProviderStatus) -> None:
        write = await self._store.advance_status(
            observation.order_id,
            observation.status,
            transfer_hash=observation.transfer_hash,
            receipt_code=observation.receipt_code,
        )
        if write.record is None:
            logger.warning("Status for unknown order %s not persisted", observation.order_id)

    def _verify_amount(self, order: Order, observation: ProviderStatus) -> None:
        paid = observation.amount_paid
        if paid is None or paid in (order.source_amount, order.transfer_amount):
            return
        log_manual_reconciliation(
            order,
            "amount_paid_mismatch",
            amount_paid=str(paid),
            expected=str(order.source_amount),
        )

    async def _poll_loop(self, session: PollingSession) -> None:
        order = session.order
        policy = session.policy
        try:
            provider = self._registry.get(order.provider)
            seeded = await self._stored_terminal(order)
            if seeded is not None and await self._observe(session, seeded):
                return
            while not session.completed:
                elapsed = self._clock() - session.started_at
                if policy.exhausted(session.attempts, elapsed):
                    break
                session.attempts += 1
                try:
                    observation = await asyncio.wait_for(
                        provider.fetch_status(order), timeout=policy.deadline - elapsed,
                    )
                    if await self._observe(session, observation):
                        return
                except Exception as e:
                    # Any failed poll counts toward the bounds and is retried
                    delay = policy.delay_after_error(session.attempts)
                    logger.warning(
                        "Status poll %d for order %s failed: %s",
                        session.attempts, order.id, str(e) or type(e).__name__,
                        exc_info=not isinstance(e, (ProviderError, asyncio.TimeoutError)),
                    )
                else:
                    delay = policy.delay_for(session.attempts)

                if session.completed:
                    return
                elapsed = self._clock() - session.started_at
                if policy.exhausted(session.attempts, elapsed):
                    break
                session.next_delay = min(delay, policy.deadline - elapsed)
                await asyncio.sleep(session.next_delay)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Reconciliation of order %s aborted", order.id)
            # Delivered to whoever awaits reconcile()
            if not session.completed:
                session.completed = True
                session.future.set_exception(e)
                self._end_session(order)
            return

        self._time_out(session)

    async def _stored_terminal(self, order: Order) -> Optional[ProviderStatus]:
        """A terminal status persisted before the session existed (early webhook)."""
        record = await self._store.get(order.id)
        if record is None or record.canonical_status not in TERMINAL_STATUSES:
            return None
        logger.info(
            "Order %s already %s in store; resolving without polling",
            order.id, record.canonical_status.value,
        )
        return ProviderStatus(
            order_id=order.id,
            status=record.canonical_status,
            raw_status=record.canonical_status.value,
            transfer_hash=record.transfer_hash,
            receipt_code=record.receipt_code,
            source="store",
        )

    def _time_out(self, session: PollingSession) -> None:
        elapsed = self._clock() - session.started_at
        outcome = SettlementOutcome(
            order_id=session.order.id,
            kind="timeout",
            attempts=session.attempts,
            elapsed_seconds=elapsed,
        )
        if session.try_complete(outcome):
            logger.warning(
                "Order %s unresolved after %d polls / %.1fs",
                session.order.id, session.attempts, elapsed,
            )
            self._end_session(session.order)

    def _end_session(self, order: Order) -> None:
        self._sessions.pop(order.id, None)
        try:
            provider = self._registry.get(order.provider)
        except UnknownProviderError:
            return
        provider.forget(order.id)
