"""Paycrest settlement provider (per-order receive address)."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Any, Mapping, Optional

import httpx

from ..exceptions import OfframpValidationError, ProviderError
from ..logging import mask_account, mask_sensitive_data
from ..models import (
    BankAccountRecipient,
    Currency,
    Fees,
    Order,
    OrderStatus,
    PhoneRecipient,
    ProviderStatus,
    Recipient,
    TillRecipient,
    parse_timestamp,
    to_decimal,
)
from .base import SettlementProvider, SettlementScheme
from .http import ProviderHTTPClient

logger = logging.getLogger(__name__)

# M-Pesa institution code; tills settle on the same network
DEFAULT_MOBILE_INSTITUTION = "SAFAKEPC"
DEFAULT_ORDER_VALIDITY = timedelta(minutes=30)

_STATUS_PREFIXES = ("payment_order.", "order.")


class PaycrestProvider(SettlementProvider):
    """
    Paycrest sender API.

    Every order gets its own receive address; Paycrest notices the incoming
    transfer by itself, so there is nothing to do once the hash is known.
    """

    STATUS_MAP = {
        "initiated": OrderStatus.INITIATED,
        "pending": OrderStatus.PENDING,
        "processing": OrderStatus.PROCESSING,
        "validated": OrderStatus.VALIDATED,
        "settled": OrderStatus.SETTLED,
        "refunded": OrderStatus.REFUNDED,
        "expired": OrderStatus.EXPIRED,
        "failed": OrderStatus.FAILED,
        "cancelled": OrderStatus.CANCELLED,
    }
    SUPPORTED_RECIPIENTS = frozenset({"phone", "till", "bank_account"})
    SIGNATURE_HEADER = "X-Paycrest-Signature"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.paycrest.io/v1",
        webhook_secret: str = "",
        network: str = "base",
        timeout: float = 30.0,
        retry_delay: float = 1.0,
        minimum_amounts: Optional[Mapping[str, Decimal]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(webhook_secret=webhook_secret, minimum_amounts=minimum_amounts)
        self._network = network
        self._http = ProviderHTTPClient(
            self.provider_name,
            base_url,
            {"API-Key": api_key},
            timeout=timeout,
            retry_delay=retry_delay,
            client=client,
        )

    @property
    def provider_name(self) -> str:
        return "paycrest"

    @property
    def settlement_scheme(self) -> SettlementScheme:
        return "per_order"

    @property
    def supported_currencies(self) -> frozenset[Currency]:
        return frozenset(Currency)

    def map_status(self, raw: Optional[str]) -> tuple[OrderStatus, bool]:
        key = (raw or "").strip().lower()
        for prefix in _STATUS_PREFIXES:
            if key.startswith(prefix):
                key = key[len(prefix):]
                break
        return super().map_status(key)

    def validate_recipient(self, currency: Currency, recipient: Recipient) -> None:
        super().validate_recipient(currency, recipient)
        self._institution_for(Currency(currency), recipient)

    async def quote(self, source_asset: str, amount: Decimal, currency: Currency) -> Decimal:
        body = await self._http.request(
            "GET",
            f"/rates/{source_asset.upper()}/{amount}/{Currency(currency).value}",
            params={"network": self._network},
            retry=True,
        )
        rate = _extract_rate(body)
        if rate is None or rate <= 0:
            raise ProviderError(
                f"Invalid rate from paycrest: {body!r}",
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
        currency = Currency(currency)
        payload = {
            "amount": str(amount),
            "token": source_asset.upper(),
            "rate": str(rate),
            "network": self._network,
            "recipient": {
                "institution": self._institution_for(currency, recipient),
                "accountIdentifier": recipient.number,
                "accountName": recipient_name,
                "memo": f"Payment to {recipient_name}",
                "metadata": {},
                "currency": currency.value,
            },
            "reference": f"offramp_{uuid.uuid4().hex}",
            "returnAddress": return_address,
        }
        logger.info("Creating paycrest order: %s", mask_sensitive_data(payload))

        # Order creation is not idempotent server-side: sent exactly once
        body = await self._http.request("POST", "/sender/orders", json=payload)
        data = _unwrap(body)

        order_id = data.get("id")
        receive_address = data.get("receiveAddress")
        if not order_id or not receive_address:
            raise ProviderError(
                "Paycrest order response is missing id or receiveAddress",
                provider=self.provider_name,
                response_body=body,
            )

        status, _ = self.map_status(data.get("status") or "initiated")
        order = Order.build(
            id=str(order_id),
            provider=self.provider_name,
            source_asset=source_asset,
            source_amount=data.get("amount", amount),
            fees=Fees(
                sender_fee=to_decimal(data.get("senderFee")),
                transaction_fee=to_decimal(data.get("transactionFee")),
            ),
            local_amount=(to_decimal(amount) * rate).quantize(Decimal("0.01"), rounding=ROUND_DOWN),
            currency=currency,
            recipient=recipient,
            recipient_name=recipient_name,
            receive_address=receive_address,
            valid_until=parse_timestamp(data.get("validUntil"))
            or datetime.now(timezone.utc) + DEFAULT_ORDER_VALIDITY,
            rate=rate,
            status=status,
            return_address=return_address,
            provider_reference=payload["reference"],
        )
        logger.info(
            "Paycrest order %s created for %s (transfer %s %s to %s)",
            order.id, mask_account(recipient.number), order.transfer_amount,
            order.source_asset, order.receive_address,
        )
        return order

    async def get_order_status(self, order_id: str) -> ProviderStatus:
        body = await self._http.request("GET", f"/sender/orders/{order_id}", retry=True)
        return self._to_status(order_id, _unwrap(body), source="poll")

    def parse_webhook(self, event: dict[str, Any]) -> ProviderStatus:
        data = event.get("data")
        if not isinstance(data, dict):
            raise ValueError("Paycrest webhook carries no order data")
        order_id = data.get("id") or data.get("orderId")
        if not order_id:
            raise ValueError("Paycrest webhook carries no order id")
        if not data.get("status") and event.get("event"):
            data = {**data, "status": event["event"]}
        return self._to_status(str(order_id), data, source="webhook")

    def _to_status(self, order_id: str, data: dict[str, Any], *, source: str) -> ProviderStatus:
        raw = str(data.get("status") or "")
        status, mapped = self.map_status(raw)
        amount_paid = data.get("amountPaid")
        logs = data.get("transactionLogs") or data.get("transactions") or []
        return ProviderStatus(
            order_id=order_id,
            status=status,
            raw_status=raw,
            transfer_hash=data.get("txHash") or data.get("transactionHash"),
            amount_paid=to_decimal(amount_paid) if amount_paid not in (None, "") else None,
            message=data.get("message"),
            transaction_logs=tuple(log for log in logs if isinstance(log, dict)),
            source=source,
            mapped=mapped,
        )

    def _institution_for(self, currency: Currency, recipient: Recipient) -> str:
        if isinstance(recipient, BankAccountRecipient):
            return recipient.bank_code
        if isinstance(recipient, PhoneRecipient) and recipient.network:
            return recipient.network.upper()
        if isinstance(recipient, (PhoneRecipient, TillRecipient)) and currency == Currency.KES:
            return DEFAULT_MOBILE_INSTITUTION
        raise OfframpValidationError(
            f"A mobile-money network is required for {currency.value} payouts",
            field="recipient.network",
        )

    async def close(self):
        await self._http.close()


def _unwrap(body: Any) -> dict[str, Any]:
    """Strip Paycrest's ``{status, message, data}`` envelope."""
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        return body["data"]
    if isinstance(body, dict):
        return body
    raise ProviderError(f"Unexpected paycrest response: {body!r}", provider="paycrest")


def _extract_rate(body: Any) -> Optional[Decimal]:
    if isinstance(body, (int, float, str)):
        return to_decimal(body)
    if not isinstance(body, dict):
        return None
    data = body.get("data")
    if isinstance(data, (int, float, str)) and data != "":
        return to_decimal(data)
    if isinstance(data, dict) and data.get("rate") is not None:
        return to_decimal(data["rate"])
    if body.get("rate") is not None:
        return to_decimal(body["rate"])
    return None
