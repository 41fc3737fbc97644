from __future__ import annotations

import asyncio
import logging
from decimal import Decimal

import httpx
import pytest

from offramp_orchestrator.exceptions import ProviderError
from offramp_orchestrator.models import OrderStatus, ProviderStatus
from offramp_orchestrator.reconciler import SettlementReconciler
from offramp_orchestrator.store import InMemoryOrderStore

from fakes import fast_policy, make_order


def _hook(order_id: str, status: OrderStatus, **kwargs) -> ProviderStatus:
    return ProviderStatus(
        order_id=order_id, status=status, raw_status=status.value, source="webhook", **kwargs,
    )


async def _started(reconciler, order):
    task = asyncio.create_task(reconciler.reconcile(order))
    await asyncio.sleep(0)
    return task


@pytest.mark.asyncio
async def test_poll_resolves_settlement(registry, provider, store):
    order = make_order()
    await store.save_order(order)
    provider.statuses = ["pending", "processing", "settled"]
    reconciler = SettlementReconciler(registry, store, fast_policy())

    outcome = await asyncio.wait_for(reconciler.reconcile(order), 2)

    assert outcome.kind == "settled"
    assert outcome.status == OrderStatus.SETTLED
    assert outcome.source == "poll"
    assert outcome.attempts == 3
    assert (await store.get(order.id)).canonical_status == OrderStatus.SETTLED
    assert reconciler.session(order.id) is None


@pytest.mark.asyncio
async def test_validated_counts_as_success(registry, provider, store):
    order = make_order()
    await store.save_order(order)
    provider.statuses = ["validated"]

    outcome = await SettlementReconciler(registry, store, fast_policy()).reconcile(order)

    assert outcome.kind == "settled"
    assert outcome.status == OrderStatus.VALIDATED


@pytest.mark.asyncio
async def test_provider_failure_resolves_failed(registry, provider, store):
    order = make_order()
    await store.save_order(order)
    provider.statuses = ["pending", "refunded"]

    outcome = await SettlementReconciler(registry, store, fast_policy()).reconcile(order)

    assert outcome.kind == "failed"
    assert outcome.status == OrderStatus.REFUNDED


@pytest.mark.asyncio
async def test_webhook_wins_race_and_poll_result_is_ignored(registry, provider, store):
    order = make_order()
    await store.save_order(order)
    provider.poll_delay = 0.05
    provider.statuses = ["pending"]
    reconciler = SettlementReconciler(registry, store, fast_policy(base_delay=0.02))

    task = await _started(reconciler, order)
    session = reconciler.session(order.id)
    await asyncio.sleep(0.08)

    # The poll in flight would also report settled, with different data
    provider.statuses = [ProviderStatus(
        order_id=order.id, status=OrderStatus.SETTLED, receipt_code="POLL1", transfer_hash="0xpoll",
    )]
    resolved = await reconciler.handle_webhook("fake", _hook(
        order.id, OrderStatus.SETTLED, receipt_code="HOOK1", transfer_hash="0xhook",
    ))
    outcome = await asyncio.wait_for(task, 1)
    await asyncio.sleep(0.1)

    assert resolved is True
    assert outcome.source == "webhook"
    assert outcome.observation.receipt_code == "HOOK1"
    assert session.poll_task.cancelled()
    record = await store.get(order.id)
    assert record.canonical_status == OrderStatus.SETTLED
    assert record.receipt_code == "HOOK1"
    assert record.transfer_hash == "0xhook"


@pytest.mark.asyncio
async def test_exactly_one_resolution_under_concurrent_signals(registry, provider, store):
    order = make_order()
    await store.save_order(order)
    provider.statuses = ["settled"]
    reconciler = SettlementReconciler(registry, store, fast_policy())

    task = await _started(reconciler, order)
    results = await asyncio.gather(*(
        reconciler.handle_webhook("fake", _hook(order.id, OrderStatus.SETTLED, receipt_code=f"R{i}"))
        for i in range(5)
    ))
    outcome = await asyncio.wait_for(task, 1)

    poll_won = 1 if outcome.source == "poll" else 0
    assert sum(results) + poll_won == 1
    assert task.done() and not task.cancelled()


@pytest.mark.asyncio
async def test_late_webhook_after_resolution_only_persists(registry, provider, store):
    order = make_order()
    await store.save_order(order)
    provider.statuses = ["settled"]
    reconciler = SettlementReconciler(registry, store, fast_policy())
    await reconciler.reconcile(order)

    resolved = await reconciler.handle_webhook(
        "fake", _hook(order.id, OrderStatus.REFUNDED, receipt_code="LATE1"),
    )

    record = await store.get(order.id)
    assert resolved is False
    assert record.canonical_status == OrderStatus.SETTLED
    assert record.receipt_code is None


@pytest.mark.asyncio
async def test_non_terminal_webhook_does_not_resolve(registry, provider, store):
    order = make_order()
    await store.save_order(order)
    reconciler = SettlementReconciler(registry, store, fast_policy(max_attempts=5))

    task = await _started(reconciler, order)
    resolved = await reconciler.handle_webhook("fake", _hook(order.id, OrderStatus.PROCESSING))
    outcome = await asyncio.wait_for(task, 2)

    assert resolved is False
    assert outcome.kind == "timeout"
    assert (await store.get(order.id)).canonical_status == OrderStatus.PROCESSING


@pytest.mark.asyncio
async def test_polling_bounded_by_max_attempts(registry, provider, store):
    order = make_order()
    await store.save_order(order)
    reconciler = SettlementReconciler(registry, store, fast_policy(max_attempts=4))

    outcome = await asyncio.wait_for(reconciler.reconcile(order), 2)

    assert outcome.kind == "timeout"
    assert outcome.attempts == 4
    assert provider.count("get_order_status") == 4


@pytest.mark.asyncio
async def test_polling_bounded_by_deadline(registry, provider, store):
    order = make_order()
    await store.save_order(order)
    policy = fast_policy(base_delay=0.03, max_delay=0.03, max_attempts=1000, deadline=0.2)

    outcome = await asyncio.wait_for(SettlementReconciler(registry, store, policy).reconcile(order), 2)

    assert outcome.kind == "timeout"
    assert outcome.attempts < 1000
    assert outcome.elapsed_seconds < 0.5


@pytest.mark.asyncio
async def test_poll_errors_count_toward_bound(registry, provider, store):
    order = make_order()
    await store.save_order(order)
    provider.statuses = [ProviderError("503", provider="fake", status_code=503)]

    outcome = await SettlementReconciler(registry, store, fast_policy(max_attempts=3)).reconcile(order)

    assert outcome.kind == "timeout"
    assert outcome.attempts == 3


@pytest.mark.asyncio
async def test_transient_poll_error_then_settled(registry, provider, store):
    order = make_order()
    await store.save_order(order)
    provider.statuses = [ProviderError("timeout", provider="fake"), "settled"]

    outcome = await SettlementReconciler(registry, store, fast_policy()).reconcile(order)

    assert outcome.kind == "settled"
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_any_poll_error_is_retried_within_bounds(registry, provider, store):
    order = make_order()
    await store.save_order(order)
    provider.statuses = [httpx.ReadError("connection reset"), RuntimeError("bad payload"), "settled"]
    reconciler = SettlementReconciler(registry, store, fast_policy())

    outcome = await asyncio.wait_for(reconciler.reconcile(order), 2)

    assert outcome.kind == "settled"
    assert outcome.attempts == 3
    assert reconciler.session(order.id) is None


@pytest.mark.asyncio
async def test_persistent_poll_errors_end_in_timeout(registry, provider, store):
    order = make_order()
    await store.save_order(order)
    provider.statuses = [httpx.RemoteProtocolError("peer closed connection")]

    outcome = await asyncio.wait_for(
        SettlementReconciler(registry, store, fast_policy(max_attempts=3)).reconcile(order), 2,
    )

    assert outcome.kind == "timeout"
    assert outcome.attempts == 3


@pytest.mark.asyncio
async def test_store_failure_reaches_caller(registry, provider):
    class _UnreadableStore(InMemoryOrderStore):
        async def get(self, order_id):
            raise RuntimeError("store down")

    reconciler = SettlementReconciler(registry, _UnreadableStore(), fast_policy())
    order = make_order()

    with pytest.raises(RuntimeError, match="store down"):
        await asyncio.wait_for(reconciler.reconcile(order), 2)

    assert reconciler.session(order.id) is None


@pytest.mark.asyncio
async def test_start_is_idempotent(registry, provider, store):
    order = make_order()
    await store.save_order(order)
    provider.statuses = ["settled"]
    reconciler = SettlementReconciler(registry, store, fast_policy())

    first = reconciler.start(order)
    second = reconciler.start(order)
    outcome = await reconciler.reconcile(order)

    assert first is second
    assert outcome.kind == "settled"
    assert provider.count("get_order_status") == 1


@pytest.mark.asyncio
async def test_webhook_without_session_is_persisted(registry, store):
    order = make_order()
    await store.save_order(order)
    reconciler = SettlementReconciler(registry, store, fast_policy())

    resolved = await reconciler.handle_webhook("fake", _hook(order.id, OrderStatus.SETTLED))

    assert resolved is False
    assert (await store.get(order.id)).canonical_status == OrderStatus.SETTLED


@pytest.mark.asyncio
async def test_webhook_keyed_by_provider_reference(registry, provider, store):
    order = make_order().evolve(provider_reference="TXN-42")
    await store.save_order(order)
    reconciler = SettlementReconciler(registry, store, fast_policy(base_delay=0.05))

    task = await _started(reconciler, order)
    resolved = await reconciler.handle_webhook(
        "fake", _hook("TXN-42", OrderStatus.SETTLED, receipt_code="QK1"),
    )
    outcome = await asyncio.wait_for(task, 1)

    assert resolved is True
    assert outcome.order_id == order.id
    assert (await store.get(order.id)).receipt_code == "QK1"


@pytest.mark.asyncio
async def test_amount_paid_mismatch_flags_manual_reconciliation(registry, provider, store, caplog):
    order = make_order()
    await store.save_order(order)
    reconciler = SettlementReconciler(registry, store, fast_policy(base_delay=0.05))

    task = await _started(reconciler, order)
    with caplog.at_level(logging.ERROR, logger="offramp_orchestrator.reconciliation"):
        await reconciler.handle_webhook(
            "fake", _hook(order.id, OrderStatus.SETTLED, amount_paid=Decimal("9.5")),
        )
        outcome = await asyncio.wait_for(task, 1)

    assert outcome.kind == "settled"
    assert "amount_paid_mismatch" in caplog.text


@pytest.mark.asyncio
async def test_terminal_status_stored_before_start_resolves_without_polling(registry, provider, store):
    order = make_order()
    await store.save_order(order)
    reconciler = SettlementReconciler(registry, store, fast_policy())
    # Webhook delivered while the payout request was still in flight
    await reconciler.handle_webhook("fake", _hook(order.id, OrderStatus.SETTLED, receipt_code="EARLY1"))

    outcome = await asyncio.wait_for(reconciler.reconcile(order), 1)

    assert outcome.kind == "settled"
    assert outcome.source == "store"
    assert outcome.observation.receipt_code == "EARLY1"
    assert provider.count("get_order_status") == 0


@pytest.mark.asyncio
async def test_provider_state_released_once_resolved(registry, provider, store):
    settled, stuck = make_order("ord_settled"), make_order("ord_stuck")
    await store.save_order(settled)
    await store.save_order(stuck)
    reconciler = SettlementReconciler(registry, store, fast_policy(max_attempts=2))

    provider.statuses = ["settled"]
    await reconciler.reconcile(settled)
    provider.statuses = ["pending"]
    timed_out = await reconciler.reconcile(stuck)

    assert timed_out.kind == "timeout"
    assert provider.forgotten == ["ord_settled", "ord_stuck"]
