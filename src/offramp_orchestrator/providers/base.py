"""Abstract SettlementProvider interface for multi-provider off-ramp support."""

from __future__ import annotations

import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, ClassVar, Literal, Mapping, Optional

from ..exceptions import OfframpValidationError, WebhookSignatureError
from ..models import Currency, Order, OrderStatus, ProviderStatus, Recipient
from ..status import map_provider_status

SettlementScheme = Literal["per_order", "fixed_address"]

DEFAULT_MINIMUMS: dict[str, Decimal] = {
    "KES": Decimal("0.5"),
    "NGN": Decimal("1.0"),
    "GHS": Decimal("0.5"),
    "UGX": Decimal("0.5"),
}


class SettlementProvider(ABC):
    """
    Abstract base class for settlement providers.

    A provider accepts a stablecoin transfer and pays local fiat out to a
    recipient. Adapters hide the provider's request/response shapes and its
    status vocabulary so the orchestrator never branches on provider identity.

    Two settlement schemes exist:
    - ``per_order``: the provider issues a receive address per order and
      notices the transfer by itself (Paycrest)
    - ``fixed_address``: one provider-wide settlement address; the payout is
      requested out-of-band once the transfer hash is known (Pretium), via
      ``on_transfer_confirmed``
    """

    #: native status (lower-case) -> canonical status
    STATUS_MAP: ClassVar[Mapping[str, OrderStatus]] = {}
    #: recipient variants the provider can pay out to
    SUPPORTED_RECIPIENTS: ClassVar[frozenset[str]] = frozenset({"phone", "till", "paybill", "bank_account"})
    #: whether settled orders eventually carry a receipt code
    ISSUES_RECEIPT_CODES: ClassVar[bool] = False
    #: header carrying the hex HMAC-SHA256 of the raw webhook body
    SIGNATURE_HEADER: ClassVar[str] = "X-Signature"

    def __init__(
        self,
        *,
        webhook_secret: str = "",
        minimum_amounts: Optional[Mapping[str, Decimal]] = None,
    ):
        self._webhook_secret = webhook_secret
        self._minimums = {
            k.upper(): Decimal(str(v))
            for k, v in (minimum_amounts or DEFAULT_MINIMUMS).items()
        }

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""

    @property
    @abstractmethod
    def settlement_scheme(self) -> SettlementScheme:
        """How the provider learns about the on-chain transfer."""

    @property
    @abstractmethod
    def supported_currencies(self) -> frozenset[Currency]:
        """Destination currencies this provider pays out in."""

    def minimum_amount(self, currency: Currency) -> Decimal:
        """Static per-currency floor, checked locally before any API call."""
        return self._minimums.get(Currency(currency).value, Decimal("0"))

    @abstractmethod
    async def quote(self, source_asset: str, amount: Decimal, currency: Currency) -> Decimal:
        """
        Get the unit exchange rate for ``source_asset`` -> ``currency``.

        Raises:
            ProviderError: On network or provider failure (callers fall back
                to a cached rate)
        """

    @abstractmethod
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
        """
        Create a settlement order and normalize it.

        Not idempotent server-side: callers must not retry ambiguous failures
        without a fresh quote.

        Raises:
            InsufficientFundsError: Provider reported a balance shortfall
            ProviderError: Any other provider or transport failure
        """

    @abstractmethod
    async def get_order_status(self, order_id: str) -> ProviderStatus:
        """Read-only status lookup, safe to call repeatedly."""

    async def fetch_status(self, order: Order) -> ProviderStatus:
        """Status lookup for a known order; adapters keyed by their own reference override this."""
        return await self.get_order_status(order.id)

    def forget(self, order_id: str) -> None:
        """Drop any per-order state once reconciliation of ``order_id`` has ended."""

    async def on_transfer_confirmed(self, order: Order, tx_hash: str) -> Order:
        """Hook run once the transfer hash is known. No-op for per-order schemes."""
        return order

    def map_status(self, raw: Optional[str]) -> tuple[OrderStatus, bool]:
        return map_provider_status(raw, self.STATUS_MAP, provider=self.provider_name)

    def validate_recipient(self, currency: Currency, recipient: Recipient) -> None:
        if Currency(currency) not in self.supported_currencies:
            raise OfframpValidationError(
                f"{self.provider_name} does not pay out in {Currency(currency).value}",
                field="currency",
            )
        if recipient.kind not in self.SUPPORTED_RECIPIENTS:
            raise OfframpValidationError(
                f"{self.provider_name} cannot pay out to a {recipient.kind} recipient",
                field="recipient",
            )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        """Constant-time check of the HMAC-SHA256 signature over the raw body."""
        if not self._webhook_secret:
            return False
        signature = _header(headers, self.SIGNATURE_HEADER).strip()
        if signature.startswith("sha256="):
            signature = signature.split("=", 1)[1]
        if not signature:
            return False
        expected = hmac.new(
            self._webhook_secret.encode(),
            payload,
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, signature.lower())

    @abstractmethod
    def parse_webhook(self, event: dict[str, Any]) -> ProviderStatus:
        """Turn a verified, decoded webhook body into a status observation."""

    def handle_webhook(self, payload: bytes, headers: Mapping[str, str]) -> ProviderStatus:
        """
        Verify and parse a webhook delivery.

        Raises:
            WebhookSignatureError: If the signature is missing or invalid
            ValueError: If the body is not a JSON object
        """
        if not self.verify_webhook(payload, headers):
            raise WebhookSignatureError(
                f"Invalid {self.provider_name} webhook signature",
                details={"provider": self.provider_name},
            )
        event = json.loads(payload)
        if not isinstance(event, dict):
            raise ValueError("Webhook body must be a JSON object")
        return self.parse_webhook(event)

    async def close(self):
        """Close any resources (HTTP clients, etc.)."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
        return ""
    return value
