"""Pretium settlement provider (fixed settlement address, out-of-band payout)."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Any, Mapping, Optional

import httpx

from ..exceptions import ProviderError
from ..logging import mask_account, mask_sensitive_data
from ..models import (
    BankAccountRecipient,
    Currency,
    Fees,
    Order,
    OrderStatus,
    PaybillRecipient,
    PhoneRecipient,
    ProviderStatus,
    Recipient,
    TillRecipient,
    to_decimal,
)
from .base import SettlementProvider, SettlementScheme
from .http import ProviderHTTPClient

logger = logging.getLogger(__name__)

DEFAULT_MOBILE_NETWORKS: dict[Currency, str] = {
    Currency.KES: "Safaricom",
    Currency.GHS: "MTN",
}

LOCAL_QUANTUM = Decimal("0.01")


class PretiumProvider(SettlementProvider):
    """
    Pretium disbursement API.

    The user pays into one provider-wide settlement address. Pretium only
    learns about the payout once we call ``/v1/pay`` with the transfer hash,
    so ``create_order`` is local and the disbursement happens in
    ``on_transfer_confirmed``. Pretium's own transaction code is what its
    status endpoint and webhooks are keyed by. The adapter correlates order
    ids and transaction codes while a payout is in flight; afterwards the
    code persisted as ``provider_reference`` is used.
    """

    STATUS_MAP = {
        "pending": OrderStatus.PENDING,
        "processing": OrderStatus.PROCESSING,
        "complete": OrderStatus.SETTLED,
        "failed": OrderStatus.FAILED,
    }
    ISSUES_RECEIPT_CODES = True
    SIGNATURE_HEADER = "X-Pretium-Signature"

    def __init__(
        self,
        consumer_key: str,
        *,
        base_url: str = "https://api.xwift.africa",
        webhook_secret: str = "",
        settlement_address: str = "0x8005ee53e57ab11e11eaa4efe07ee3835dc02f98",
        chain: str = "BASE",
        fee_percentage: Decimal = Decimal("0.01"),
        callback_url: str = "",
        order_validity_seconds: int = 1800,
        timeout: float = 30.0,
        retry_delay: float = 1.0,
        minimum_amounts: Optional[Mapping[str, Decimal]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(webhook_secret=webhook_secret, minimum_amounts=minimum_amounts)
        self._settlement_address = settlement_address
        self._chain = chain
        self._fee_percentage = Decimal(str(fee_percentage))
        self._callback_url = callback_url
        self._order_validity = timedelta(seconds=order_validity_seconds)
        self._http = ProviderHTTPClient(
            self.provider_name,
            base_url,
            {"x-api-key": consumer_key},
            timeout=timeout,
            retry_delay=retry_delay,
            client=client,
        )
        # order id -> (transaction code, currency)
        self._transactions: dict[str, tuple[str, Currency]] = {}
        self._orders_by_code: dict[str, str] = {}

    @property
    def provider_name(self) -> str:
        return "pretium"

    @property
    def settlement_scheme(self) -> SettlementScheme:
        return "fixed_address"

    @property
    def supported_currencies(self) -> frozenset[Currency]:
        return frozenset({Currency.KES, Currency.GHS, Currency.NGN})

    def register_transaction(self, order_id: str, transaction_code: str, currency: Currency) -> None:
        """Correlate a Pretium transaction code with our order id."""
        self._transactions[order_id] = (transaction_code, Currency(currency))
        self._orders_by_code[transaction_code] = order_id

    async def quote(self, source_asset: str, amount: Decimal, currency: Currency) -> Decimal:
        body = await self._http.request(
            "POST",
            "/v1/exchange-rate",
            json={"currency_code": Currency(currency).value},
            retry=True,
        )
        data = _checked_data(body, "exchange-rate")
        rate = to_decimal(data.get("buying_rate"))
        if rate <= 0:
            raise ProviderError(
                f"Invalid rate from pretium: {data!r}",
                provider=self.provider_name,
            )
        return rate

    async def create_order(
        self,
        *,
        amount: Decimal,
        currency: Currency,
        recipient: Recipient,
        recipient_name: str,
        return_address: str,
        rate: Decimal,
        source_asset: str,
    ) -> Order:
        total_local = to_decimal(amount) * rate
        # Platform fee is taken out of the local amount, not added on-chain
        payout = (total_local / (1 + self._fee_percentage)).quantize(LOCAL_QUANTUM, rounding=ROUND_DOWN)
        order = Order.build(
            id=f"pretium_{uuid.uuid4().hex[:16]}",
            provider=self.provider_name,
            source_asset=source_asset,
            source_amount=amount,
            fees=Fees(),
            local_amount=payout,
            currency=Currency(currency),
            recipient=recipient,
            recipient_name=recipient_name,
            receive_address=self._settlement_address,
            valid_until=datetime.now(timezone.utc) + self._order_validity,
            rate=rate,
            return_address=return_address,
        )
        logger.info(
            "Pretium order %s prepared: %s %s -> %s %s for %s",
            order.id, order.transfer_amount, order.source_asset,
            order.local_amount, order.currency.value, mask_account(recipient.number),
        )
        return order

    async def on_transfer_confirmed(self, order: Order, tx_hash: str) -> Order:
        """Request the disbursement now that the funds reached the settlement address."""
        payload = self._disburse_payload(order, tx_hash)
        logger.info("Requesting pretium disbursement for %s: %s", order.id, mask_sensitive_data(payload))
        body = await self._http.request("POST", f"/v1/pay/{order.currency.value}", json=payload)
        data = _checked_data(body, "pay")
        code = data.get("transaction_code")
        if not code:
            raise ProviderError(
                "Pretium disbursement response carries no transaction_code",
                provider=self.provider_name,
                response_body=body,
            )
        self.register_transaction(order.id, code, order.currency)
        return order.evolve(provider_reference=code)

    def forget(self, order_id: str) -> None:
        entry = self._transactions.pop(order_id, None)
        if entry is not None:
            self._orders_by_code.pop(entry[0], None)

    async def get_order_status(self, order_id: str) -> ProviderStatus:
        entry = self._transactions.get(order_id)
        if entry is None:
            raise ProviderError(
                f"No pretium transaction recorded for order {order_id}",
                provider=self.provider_name,
            )
        code, currency = entry
        return await self._status_by_code(order_id, code, currency)

    async def fetch_status(self, order: Order) -> ProviderStatus:
        # The persisted transaction code outlives this process
        if order.provider_reference:
            return await self._status_by_code(order.id, order.provider_reference, order.currency)
        return await self.get_order_status(order.id)

    async def _status_by_code(self, order_id: str, code: str, currency: Currency) -> ProviderStatus:
        body = await self._http.request(
            "POST",
            f"/v1/status/{currency.value}",
            json={"transaction_code": code},
            retry=True,
        )
        return self._to_status(order_id, _checked_data(body, "status"), source="poll")

    def parse_webhook(self, event: dict[str, Any]) -> ProviderStatus:
        data = event.get("data") if isinstance(event.get("data"), dict) else event
        code = data.get("transaction_code")
        if not code:
            raise ValueError("Pretium webhook carries no transaction_code")
        order_id = self._orders_by_code.get(code, code)
        return self._to_status(order_id, data, source="webhook")

    def _to_status(self, order_id: str, data: dict[str, Any], *, source: str) -> ProviderStatus:
        raw = str(data.get("status") or "")
        status, mapped = self.map_status(raw)
        amount_paid = data.get("amount_in_usd")
        return ProviderStatus(
            order_id=order_id,
            status=status,
            raw_status=raw,
            transfer_hash=data.get("transaction_hash"),
            amount_paid=to_decimal(amount_paid) if amount_paid not in (None, "") else None,
            receipt_code=data.get("receipt_number") or None,
            message=data.get("message"),
            source=source,
            mapped=mapped,
        )

    def _disburse_payload(self, order: Order, tx_hash: str) -> dict[str, Any]:
        recipient = order.recipient
        payload: dict[str, Any] = {
            "account_name": order.recipient_name,
            "amount": str(order.local_amount),
            "chain": self._chain,
            "transaction_hash": tx_hash,
        }
        if self._callback_url:
            payload["callback_url"] = self._callback_url

        if isinstance(recipient, BankAccountRecipient):
            payload.update(
                type="BANK_TRANSFER",
                account_number=recipient.number,
                bank_code=recipient.bank_code,
                bank_name=recipient.bank_name,
            )
            return payload

        total_local = (order.source_amount * order.rate).quantize(LOCAL_QUANTUM, rounding=ROUND_DOWN)
        payload["fee"] = str(max(total_local - order.local_amount, Decimal("0")))
        payload["shortcode"] = recipient.number
        if isinstance(recipient, PhoneRecipient):
            payload["type"] = "MOBILE"
            payload["mobile_network"] = recipient.network or DEFAULT_MOBILE_NETWORKS.get(order.currency, "")
        elif isinstance(recipient, TillRecipient):
            payload["type"] = "BUY_GOODS"
            payload["mobile_network"] = DEFAULT_MOBILE_NETWORKS[Currency.KES]
        elif isinstance(recipient, PaybillRecipient):
            payload["type"] = "PAYBILL"
            payload["account_number"] = recipient.account
            payload["mobile_network"] = DEFAULT_MOBILE_NETWORKS[Currency.KES]
        return payload

    async def close(self):
        await self._http.close()


def _checked_data(body: Any, operation: str) -> dict[str, Any]:
    """Unwrap ``{code, message, data}``; Pretium reports errors with HTTP 200 too."""
    if not isinstance(body, dict):
        raise ProviderError(f"Unexpected pretium {operation} response: {body!r}", provider="pretium")
    code = body.get("code")
    if code is not None:
        try:
            numeric: Optional[int] = int(code)
        except (TypeError, ValueError):
            numeric = None
        if numeric != 200:
            raise ProviderError(
                body.get("message") or f"pretium {operation} failed with code {code!r}",
                provider="pretium",
                status_code=numeric,
                response_body=body,
            )
    data = body.get("data")
    if not isinstance(data, dict):
        raise ProviderError(
            f"pretium {operation} response carries no data",
            provider="pretium",
            response_body=body,
        )
    return data
