from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from offramp_orchestrator.config import TransferSettings
from offramp_orchestrator.exceptions import (
    InsufficientFundsError,
    InvalidTransitionError,
    OfframpValidationError,
    OrderCreationFailedError,
    OrderExpiredError,
    ProviderError,
    ReconciliationTimeoutError,
    SettlementFailedError,
    TransferFailedError,
)
from offramp_orchestrator.models import OrderStatus, OutcomeCategory, PhoneRecipient, ProviderStatus
from offramp_orchestrator.providers.registry import ProviderRegistry
from offramp_orchestrator.service import OfframpService
from offramp_orchestrator.state_machine import OrchestratorState as S
from offramp_orchestrator.store import InMemoryOrderStore

from fakes import WEBHOOK_SECRET, FakeBalanceChecker, FakeProvider, FakeSubmitter, fast_policy, sign

WALLET = "0x1111111111111111111111111111111111111111"
PHONE = PhoneRecipient("254712345678")


def _service(provider, store, *, policy=None, balance=None, **transfer) -> OfframpService:
    settings = {"fallback_window_seconds": 0.2, **transfer}
    return OfframpService(
        ProviderRegistry([provider]),
        store,
        policy=policy or fast_policy(),
        transfer_settings=TransferSettings(**settings),
        balance_checker=FakeBalanceChecker(Decimal(balance)) if balance is not None else None,
    )


async def _wait_for_state(orchestrator, state, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while orchestrator.state != state:
        if loop.time() > deadline:
            raise AssertionError(f"never reached {state}, stuck in {orchestrator.state}")
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_happy_path(provider, store):
    provider.statuses = ["processing", "settled"]
    changes, terminal = [], []
    orchestrator = _service(provider, store).new_payout(
        FakeSubmitter(),
        on_state_change=lambda prev, new: changes.append((prev, new)),
        on_terminal=terminal.append,
    )

    result = await orchestrator.run("10", "KES", PHONE, WALLET, recipient_name="Jane Doe")

    assert orchestrator.history == [
        S.IDLE, S.QUOTING, S.ORDER_CREATED, S.AWAITING_SIGNATURE, S.TRANSFER_PENDING,
        S.TRANSFER_CONFIRMED, S.SETTLEMENT_PROCESSING, S.SETTLED,
    ]
    assert len(changes) == 7
    assert changes[-1] == (S.SETTLEMENT_PROCESSING, S.SETTLED)
    assert terminal == [result]
    assert result.succeeded
    assert result.category == OutcomeCategory.SUCCESS
    assert result.order.status == OrderStatus.SETTLED
    assert result.order.transfer_hash == "0xabc"
    assert orchestrator.is_terminal

    record = await store.get(result.order.id)
    assert record.canonical_status == OrderStatus.SETTLED
    assert record.transfer_hash == "0xabc"


@pytest.mark.asyncio
async def test_receipt_code_reaches_result(provider, store):
    provider.statuses = [ProviderStatus(
        order_id="fake_order_1", status=OrderStatus.SETTLED, receipt_code="QK12AB34",
    )]
    orchestrator = _service(provider, store).new_payout(FakeSubmitter())

    result = await orchestrator.run("10", "KES", PHONE, WALLET)

    assert result.order.receipt_code == "QK12AB34"
    assert result.to_dict()["receiptCode"] == "QK12AB34"
    assert result.to_dict()["state"] == "settled"


@pytest.mark.asyncio
async def test_insufficient_funds_is_terminal_before_any_order(provider, store):
    terminal = []
    orchestrator = _service(provider, store, balance="40").new_payout(
        FakeSubmitter(), on_terminal=terminal.append,
    )

    result = await orchestrator.run("100", "KES", PHONE, WALLET)

    assert result.state == S.INSUFFICIENT_FUNDS
    assert result.category == OutcomeCategory.RETRYABLE_FAILURE
    assert isinstance(result.error, InsufficientFundsError)
    assert result.error.shortfall == Decimal("60")
    assert orchestrator.history == [S.IDLE, S.QUOTING, S.INSUFFICIENT_FUNDS]
    assert provider.count("create_order") == 0
    assert terminal == [result]


@pytest.mark.asyncio
async def test_order_creation_failure_is_retryable(provider, store):
    provider.create_error = ProviderError("Recipient account is invalid", provider="fake", status_code=422)
    orchestrator = _service(provider, store).new_payout(FakeSubmitter())

    result = await orchestrator.run("10", "KES", PHONE, WALLET)

    assert result.state == S.FAILED
    assert result.retryable
    assert isinstance(result.error, OrderCreationFailedError)
    assert result.error.provider_message == "Recipient account is invalid"
    assert result.order is None


@pytest.mark.asyncio
async def test_validation_error_is_raised_and_machine_stays_idle(provider, store):
    terminal = []
    orchestrator = _service(provider, store).new_payout(FakeSubmitter(), on_terminal=terminal.append)

    with pytest.raises(OfframpValidationError):
        await orchestrator.run("0.1", "KES", PHONE, WALLET)

    assert orchestrator.state == S.IDLE
    assert terminal == []
    assert provider.calls == []


@pytest.mark.asyncio
async def test_rejected_transfer_fails_and_closes_order(provider, store):
    submitter = FakeSubmitter(events=(("error", {"message": "User rejected the request."}),))
    orchestrator = _service(provider, store).new_payout(submitter)

    result = await orchestrator.run("10", "KES", PHONE, WALLET)

    assert result.state == S.FAILED
    assert result.retryable
    assert isinstance(result.error, TransferFailedError)
    assert result.error.reason == "user_rejected"
    assert not result.needs_support
    assert (await store.get(result.order.id)).canonical_status == OrderStatus.FAILED


@pytest.mark.asyncio
async def test_expired_order_is_never_transferred(provider, store):
    provider.valid_for = timedelta(seconds=-1)
    submitter = FakeSubmitter()
    orchestrator = _service(provider, store).new_payout(submitter)

    result = await orchestrator.run("10", "KES", PHONE, WALLET)

    assert result.state == S.FAILED
    assert isinstance(result.error, OrderExpiredError)
    assert result.retryable
    assert submitter.requests == []
    assert (await store.get(result.order.id)).canonical_status == OrderStatus.EXPIRED


@pytest.mark.asyncio
async def test_cancel_while_awaiting_signature(provider, store):
    submitter = FakeSubmitter(events=(), hang=True)
    terminal = []
    orchestrator = _service(provider, store).new_payout(submitter, on_terminal=terminal.append)

    task = orchestrator.start("10", "KES", PHONE, WALLET)
    await _wait_for_state(orchestrator, S.AWAITING_SIGNATURE)
    assert orchestrator.cancel() is True
    result = await asyncio.wait_for(task, 1)

    assert result.state == S.CANCELLED
    assert result.category == OutcomeCategory.RETRYABLE_FAILURE
    assert orchestrator.history[-1] == S.CANCELLED
    assert terminal == [result]
    assert (await store.get(result.order.id)).canonical_status == OrderStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_before_start(provider, store):
    orchestrator = _service(provider, store).new_payout(FakeSubmitter())

    assert orchestrator.cancel() is True
    result = await orchestrator.run("10", "KES", PHONE, WALLET)

    assert result.state == S.CANCELLED
    assert orchestrator.history == [S.IDLE, S.CANCELLED]
    assert provider.calls == []


@pytest.mark.asyncio
async def test_cancel_after_transfer_confirmed_is_ignored(provider, store):
    provider.poll_delay = 0.05
    provider.statuses = ["pending", "settled"]
    orchestrator = _service(provider, store).new_payout(FakeSubmitter())

    task = orchestrator.start("10", "KES", PHONE, WALLET)
    await _wait_for_state(orchestrator, S.SETTLEMENT_PROCESSING)
    assert orchestrator.cancel() is False
    result = await asyncio.wait_for(task, 2)

    assert result.state == S.SETTLED


@pytest.mark.asyncio
async def test_refund_after_transfer_needs_support(provider, store, caplog):
    provider.statuses = ["refunded"]
    orchestrator = _service(provider, store).new_payout(FakeSubmitter())

    with caplog.at_level(logging.ERROR, logger="offramp_orchestrator.reconciliation"):
        result = await orchestrator.run("10", "KES", PHONE, WALLET)

    assert result.state == S.REFUNDED
    assert result.category == OutcomeCategory.NON_RETRYABLE_FAILURE
    assert isinstance(result.error, SettlementFailedError)
    assert result.needs_support
    assert "settlement_refunded" in caplog.text
    assert (await store.get(result.order.id)).canonical_status == OrderStatus.REFUNDED


@pytest.mark.asyncio
async def test_provider_cancellation_after_transfer_is_failed(provider, store):
    provider.statuses = ["cancelled"]
    orchestrator = _service(provider, store).new_payout(FakeSubmitter())

    result = await orchestrator.run("10", "KES", PHONE, WALLET)

    assert result.state == S.FAILED
    assert isinstance(result.error, SettlementFailedError)


@pytest.mark.asyncio
async def test_reconciliation_timeout_is_unknown(provider, store, caplog):
    orchestrator = _service(provider, store, policy=fast_policy(max_attempts=2)).new_payout(FakeSubmitter())

    with caplog.at_level(logging.ERROR, logger="offramp_orchestrator.reconciliation"):
        result = await orchestrator.run("10", "KES", PHONE, WALLET)

    assert result.state == S.FAILED
    assert result.category == OutcomeCategory.UNKNOWN
    assert isinstance(result.error, ReconciliationTimeoutError)
    assert result.needs_support
    assert "reconciliation_timeout" in caplog.text
    assert (await store.get(result.order.id)).canonical_status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_terminal_callback_fires_once_with_duplicate_webhooks(provider, store):
    provider.poll_delay = 0.2
    terminal = []
    service = _service(provider, store)
    orchestrator = service.new_payout(FakeSubmitter(), on_terminal=terminal.append)

    task = orchestrator.start("10", "KES", PHONE, WALLET)
    await _wait_for_state(orchestrator, S.SETTLEMENT_PROCESSING)
    body = json.dumps({"data": {"id": orchestrator.order.id, "status": "settled", "receipt": "QK77"}}).encode()
    for _ in range(3):
        await service.handle_webhook("fake", body, {"X-Fake-Signature": sign(WEBHOOK_SECRET, body)})
    result = await asyncio.wait_for(task, 1)

    assert terminal == [result]
    assert result.state == S.SETTLED
    assert result.outcome.source == "webhook"
    assert result.order.receipt_code == "QK77"


@pytest.mark.asyncio
async def test_fixed_address_requests_payout_with_transfer_hash(store):
    provider = FakeProvider(scheme="fixed_address")
    provider.statuses = ["settled"]
    orchestrator = _service(provider, store).new_payout(FakeSubmitter())

    result = await orchestrator.run("10", "KES", PHONE, WALLET)

    assert result.state == S.SETTLED
    assert ("on_transfer_confirmed", "0xabc") in provider.calls
    assert result.order.provider_reference == f"ref_{result.order.id}"
    assert (await store.get(result.order.id)).provider_reference == f"ref_{result.order.id}"


@pytest.mark.asyncio
async def test_fixed_address_payout_request_failure(store, caplog):
    provider = FakeProvider(scheme="fixed_address")
    provider.confirm_error = ProviderError("disbursement rejected", provider="fake")
    orchestrator = _service(provider, store).new_payout(FakeSubmitter())

    with caplog.at_level(logging.ERROR, logger="offramp_orchestrator.reconciliation"):
        result = await orchestrator.run("10", "KES", PHONE, WALLET)

    assert result.state == S.FAILED
    assert isinstance(result.error, SettlementFailedError)
    assert result.needs_support
    assert provider.count("get_order_status") == 0
    assert "payout_request_failed" in caplog.text


@pytest.mark.asyncio
async def test_speculative_confirmation_proceeds_to_settlement(provider, store):
    provider.statuses = ["pending", "settled"]
    submitter = FakeSubmitter(events=(("transactionPending", {}),), hang=True)
    orchestrator = _service(
        provider, store, fallback_window_seconds=0.05, optimistic_confirmation=True,
    ).new_payout(submitter)

    result = await orchestrator.run("10", "KES", PHONE, WALLET)

    assert result.state == S.SETTLED
    assert result.order.transfer_hash is None


@pytest.mark.asyncio
async def test_orchestrator_is_single_use(provider, store):
    provider.statuses = ["settled"]
    orchestrator = _service(provider, store).new_payout(FakeSubmitter())
    await orchestrator.run("10", "KES", PHONE, WALLET)

    with pytest.raises(InvalidTransitionError):
        await orchestrator.run("10", "KES", PHONE, WALLET)


class _UnreadableStore(InMemoryOrderStore):
    async def get(self, order_id):
        raise RuntimeError("connection to order store lost")


@pytest.mark.asyncio
async def test_reconciliation_breakdown_still_ends_the_payout(provider, caplog):
    provider.statuses = ["settled"]
    terminal = []
    orchestrator = _service(provider, _UnreadableStore()).new_payout(
        FakeSubmitter(), on_terminal=terminal.append,
    )

    with caplog.at_level(logging.ERROR, logger="offramp_orchestrator.reconciliation"):
        result = await asyncio.wait_for(orchestrator.run("10", "KES", PHONE, WALLET), 2)

    assert result.state == S.FAILED
    assert result.category == OutcomeCategory.UNKNOWN
    assert isinstance(result.error, ReconciliationTimeoutError)
    assert "connection to order store lost" in result.error.message
    assert result.needs_support
    assert terminal == [result]
    assert "reconciliation_error" in caplog.text


@pytest.mark.asyncio
async def test_unexpected_payout_request_error_is_a_settlement_failure(store):
    provider = FakeProvider(scheme="fixed_address")
    provider.confirm_error = ValueError("malformed disbursement response")
    terminal = []
    orchestrator = _service(provider, store).new_payout(FakeSubmitter(), on_terminal=terminal.append)

    result = await orchestrator.run("10", "KES", PHONE, WALLET)

    assert result.state == S.FAILED
    assert isinstance(result.error, SettlementFailedError)
    assert result.error.details["provider_message"] == "malformed disbursement response"
    assert terminal == [result]


@pytest.mark.asyncio
async def test_transport_failures_while_polling_are_retried(provider, store):
    provider.statuses = [httpx.ReadError("connection reset"), "settled"]
    orchestrator = _service(provider, store).new_payout(FakeSubmitter())

    result = await asyncio.wait_for(orchestrator.run("10", "KES", PHONE, WALLET), 2)

    assert result.state == S.SETTLED
    assert provider.count("get_order_status") == 2
