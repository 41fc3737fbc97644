from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest

from offramp_orchestrator.exceptions import ProviderError
from offramp_orchestrator.models import (
    BankAccountRecipient,
    Currency,
    Fees,
    OrderStatus,
    PaybillRecipient,
    PhoneRecipient,
)
from offramp_orchestrator.providers.pretium import PretiumProvider
from offramp_orchestrator.providers.registry import ProviderRegistry
from offramp_orchestrator.reconciler import SettlementReconciler
from offramp_orchestrator.store import InMemoryOrderStore

from fakes import fast_policy, sign

BASE_URL = "https://pretium.test"
SECRET = "pr_secret"
SETTLEMENT_ADDRESS = "0xsettlement"


def _provider(handler, **kwargs) -> PretiumProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PretiumProvider(
        "ck_test",
        base_url=BASE_URL,
        webhook_secret=SECRET,
        settlement_address=SETTLEMENT_ADDRESS,
        retry_delay=0,
        client=client,
        **kwargs,
    )


def _unused(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request {request.method} {request.url}")


async def _order(provider, recipient=None, currency=Currency.KES, amount="10", rate="130"):
    return await provider.create_order(
        amount=Decimal(amount),
        currency=currency,
        recipient=recipient or PhoneRecipient("0712345678"),
        recipient_name="Jane Doe",
        return_address="0xwallet",
        rate=Decimal(rate),
        source_asset="USDC",
    )


@pytest.mark.asyncio
async def test_quote_uses_buying_rate():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={
            "code": 200,
            "message": "Success",
            "data": {"buying_rate": "129.3", "selling_rate": "131.2"},
        })

    rate = await _provider(handler).quote("USDC", Decimal("10"), Currency.KES)

    assert rate == Decimal("129.3")
    assert seen[0].url.path == "/v1/exchange-rate"
    assert json.loads(seen[0].content) == {"currency_code": "KES"}
    assert seen[0].headers["x-api-key"] == "ck_test"


@pytest.mark.asyncio
async def test_error_code_in_body_raises():
    def handler(request):
        return httpx.Response(200, json={"code": 400, "message": "Unsupported currency"})

    with pytest.raises(ProviderError) as exc_info:
        await _provider(handler).quote("USDC", Decimal("10"), Currency.GHS)

    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "Unsupported currency"


@pytest.mark.asyncio
async def test_create_order_is_local_and_deducts_platform_fee():
    order = await _order(_provider(_unused))

    assert order.id.startswith("pretium_")
    assert order.receive_address == SETTLEMENT_ADDRESS
    assert order.fees == Fees()
    assert order.transfer_amount == Decimal("10")
    assert order.local_amount == Decimal("1287.12")
    assert order.amounts_consistent()


@pytest.mark.asyncio
async def test_disbursement_after_transfer():
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(request)
        return httpx.Response(200, json={
            "code": 200,
            "data": {"transaction_code": "TX123", "status": "PENDING"},
        })

    provider = _provider(handler, callback_url="https://hooks.example/pretium")
    order = await _order(provider)

    updated = await provider.on_transfer_confirmed(order, "0xabc")

    assert sent[0].url.path == "/v1/pay/KES"
    payload = json.loads(sent[0].content)
    assert payload == {
        "account_name": "Jane Doe",
        "amount": "1287.12",
        "chain": "BASE",
        "transaction_hash": "0xabc",
        "callback_url": "https://hooks.example/pretium",
        "fee": "12.88",
        "shortcode": "0712345678",
        "type": "MOBILE",
        "mobile_network": "Safaricom",
    }
    assert updated.provider_reference == "TX123"


@pytest.mark.asyncio
async def test_bank_and_paybill_payloads():
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"code": 200, "data": {"transaction_code": f"TX{len(sent)}"}})

    provider = _provider(handler)
    bank_order = await _order(
        provider,
        BankAccountRecipient("0123456789", bank_code="058", bank_name="GTBank"),
        currency=Currency.NGN,
        rate="1600",
    )
    paybill_order = await _order(provider, PaybillRecipient("888880", account="ACC-9"))

    await provider.on_transfer_confirmed(bank_order, "0x1")
    await provider.on_transfer_confirmed(paybill_order, "0x2")

    bank, paybill = sent
    assert bank["type"] == "BANK_TRANSFER"
    assert bank["account_number"] == "0123456789"
    assert bank["bank_code"] == "058"
    assert "fee" not in bank
    assert paybill["type"] == "PAYBILL"
    assert paybill["shortcode"] == "888880"
    assert paybill["account_number"] == "ACC-9"


@pytest.mark.asyncio
async def test_disbursement_without_transaction_code_fails():
    def handler(request):
        return httpx.Response(200, json={"code": 200, "data": {"status": "PENDING"}})

    provider = _provider(handler)
    order = await _order(provider)

    with pytest.raises(ProviderError):
        await provider.on_transfer_confirmed(order, "0xabc")


@pytest.mark.asyncio
async def test_status_lookup_by_transaction_code():
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(request)
        if request.url.path == "/v1/pay/KES":
            return httpx.Response(200, json={"code": 200, "data": {"transaction_code": "TX123"}})
        return httpx.Response(200, json={"code": 200, "data": {
            "status": "COMPLETE",
            "receipt_number": "QK12AB34",
            "transaction_hash": "0xabc",
            "amount_in_usd": "10",
        }})

    provider = _provider(handler)
    order = await provider.on_transfer_confirmed(await _order(provider), "0xabc")

    status = await provider.get_order_status(order.id)

    assert sent[-1].url.path == "/v1/status/KES"
    assert json.loads(sent[-1].content) == {"transaction_code": "TX123"}
    assert status.order_id == order.id
    assert status.status == OrderStatus.SETTLED
    assert status.receipt_code == "QK12AB34"
    assert status.amount_paid == Decimal("10")


@pytest.mark.asyncio
async def test_status_lookup_before_disbursement_fails():
    with pytest.raises(ProviderError):
        await _provider(_unused).get_order_status("pretium_unknown")


def test_webhook_maps_transaction_code_to_order():
    provider = _provider(_unused)
    provider.register_transaction("pretium_abc", "TX9", Currency.KES)
    body = json.dumps({
        "transaction_code": "TX9",
        "status": "COMPLETE",
        "receipt_number": "R1",
    }).encode()

    status = provider.handle_webhook(body, {"X-Pretium-Signature": sign(SECRET, body)})

    assert status.order_id == "pretium_abc"
    assert status.status == OrderStatus.SETTLED
    assert status.receipt_code == "R1"
    assert status.source == "webhook"


def test_webhook_for_unknown_code_keeps_code():
    provider = _provider(_unused)
    body = json.dumps({"data": {"transaction_code": "TX404", "status": "FAILED"}}).encode()

    status = provider.handle_webhook(body, {"X-Pretium-Signature": sign(SECRET, body)})

    assert status.order_id == "TX404"
    assert status.status == OrderStatus.FAILED


def test_webhook_without_transaction_code_is_invalid():
    provider = _provider(_unused)
    body = json.dumps({"status": "COMPLETE"}).encode()

    with pytest.raises(ValueError):
        provider.handle_webhook(body, {"X-Pretium-Signature": sign(SECRET, body)})


def test_supported_currencies_and_scheme():
    provider = _provider(_unused)
    assert provider.settlement_scheme == "fixed_address"
    assert Currency.UGX not in provider.supported_currencies
    assert provider.ISSUES_RECEIPT_CODES


@pytest.mark.asyncio
async def test_non_numeric_code_in_body_raises_provider_error():
    def handler(request):
        return httpx.Response(200, json={"code": "ERR_LIMIT", "message": "Daily limit reached"})

    with pytest.raises(ProviderError) as exc_info:
        await _provider(handler).quote("USDC", Decimal("10"), Currency.KES)

    assert exc_info.value.status_code is None
    assert exc_info.value.message == "Daily limit reached"


@pytest.mark.asyncio
async def test_read_errors_are_retried_then_reported_as_provider_error():
    attempts = []

    def handler(request):
        attempts.append(request)
        raise httpx.ReadError("connection reset", request=request)

    provider = _provider(handler)
    order = (await _order(provider)).evolve(provider_reference="TX1")

    with pytest.raises(ProviderError, match="connection reset"):
        await provider.fetch_status(order)

    assert len(attempts) == 4


@pytest.mark.asyncio
async def test_status_lookup_uses_persisted_reference():
    sent = []

    def handler(request):
        sent.append(request)
        return httpx.Response(200, json={"code": 200, "data": {"status": "PROCESSING"}})

    # A fresh adapter, as after a restart: nothing registered in memory
    provider = _provider(handler)
    order = (await _order(provider, currency=Currency.GHS)).evolve(provider_reference="TX77")

    status = await provider.fetch_status(order)

    assert sent[0].url.path == "/v1/status/GHS"
    assert json.loads(sent[0].content) == {"transaction_code": "TX77"}
    assert status.order_id == order.id
    assert status.status == OrderStatus.PROCESSING


@pytest.mark.asyncio
async def test_transaction_released_after_reconciliation():
    def handler(request):
        if request.url.path == "/v1/pay/KES":
            return httpx.Response(200, json={"code": 200, "data": {"transaction_code": "TX5"}})
        return httpx.Response(200, json={"code": 200, "data": {"status": "COMPLETE", "receipt_number": "R5"}})

    provider = _provider(handler)
    store = InMemoryOrderStore()
    order = await provider.on_transfer_confirmed(await _order(provider), "0xabc")
    await store.save_order(order)
    reconciler = SettlementReconciler(ProviderRegistry([provider]), store, fast_policy())

    outcome = await reconciler.reconcile(order)

    assert outcome.kind == "settled"
    assert provider._transactions == {}
    assert provider._orders_by_code == {}
    with pytest.raises(ProviderError):
        await provider.get_order_status(order.id)
