"""Domain models: orders, recipients, provider observations and outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any, Literal, Optional, Union


class Currency(str, Enum):
    """Destination fiat currencies."""
    KES = "KES"
    NGN = "NGN"
    GHS = "GHS"
    UGX = "UGX"


class OrderStatus(str, Enum):
    """Canonical, provider-agnostic order status."""
    INITIATED = "initiated"
    PENDING = "pending"
    PROCESSING = "processing"
    VALIDATED = "validated"
    SETTLED = "settled"
    REFUNDED = "refunded"
    EXPIRED = "expired"
    FAILED = "failed"
    CANCELLED = "cancelled"


SUCCESS_STATUSES = frozenset({OrderStatus.VALIDATED, OrderStatus.SETTLED})
FAILURE_STATUSES = frozenset({
    OrderStatus.REFUNDED,
    OrderStatus.EXPIRED,
    OrderStatus.FAILED,
    OrderStatus.CANCELLED,
})
TERMINAL_STATUSES = SUCCESS_STATUSES | FAILURE_STATUSES

# On-chain precision of the source assets; anything else settles at 2 places.
ASSET_DECIMALS: dict[str, int] = {
    "USDC": 6,
    "USDT": 6,
    "CUSD": 6,
}


def asset_quantum(asset: str) -> Decimal:
    """Smallest representable unit of an asset (e.g. 0.000001 for USDC)."""
    places = ASSET_DECIMALS.get(asset.upper(), 2)
    return Decimal(1).scaleb(-places)


def to_decimal(value: Any, default: str = "0") -> Decimal:
    """Parse provider amounts (str/int/float/None) without float drift."""
    if value is None or value == "":
        return Decimal(default)
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse provider ISO-8601 timestamps (trailing ``Z`` allowed) as aware UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Recipients
# =============================================================================

@dataclass(frozen=True)
class PhoneRecipient:
    """Mobile-money wallet identified by phone number."""
    number: str
    network: Optional[str] = None
    kind: Literal["phone"] = field(default="phone", init=False)


@dataclass(frozen=True)
class TillRecipient:
    """M-Pesa Buy Goods till."""
    number: str
    kind: Literal["till"] = field(default="till", init=False)


@dataclass(frozen=True)
class PaybillRecipient:
    """M-Pesa Paybill business number plus account reference."""
    number: str
    account: str
    kind: Literal["paybill"] = field(default="paybill", init=False)


@dataclass(frozen=True)
class BankAccountRecipient:
    """Bank account payout destination."""
    number: str
    bank_code: str
    bank_name: str
    kind: Literal["bank_account"] = field(default="bank_account", init=False)


Recipient = Union[PhoneRecipient, TillRecipient, PaybillRecipient, BankAccountRecipient]

# Recipient variants each currency can pay out to.
ALLOWED_RECIPIENTS: dict[Currency, frozenset[str]] = {
    Currency.KES: frozenset({"phone", "till", "paybill", "bank_account"}),
    Currency.GHS: frozenset({"phone"}),
    Currency.UGX: frozenset({"phone"}),
    Currency.NGN: frozenset({"bank_account"}),
}


def recipient_to_dict(recipient: Recipient) -> dict[str, Any]:
    data: dict[str, Any] = {"kind": recipient.kind, "number": recipient.number}
    if isinstance(recipient, PhoneRecipient) and recipient.network:
        data["network"] = recipient.network
    elif isinstance(recipient, PaybillRecipient):
        data["account"] = recipient.account
    elif isinstance(recipient, BankAccountRecipient):
        data["bank_code"] = recipient.bank_code
        data["bank_name"] = recipient.bank_name
    return data


def recipient_from_dict(data: dict[str, Any]) -> Recipient:
    kind = data.get("kind")
    if kind == "phone":
        return PhoneRecipient(number=data["number"], network=data.get("network"))
    if kind == "till":
        return TillRecipient(number=data["number"])
    if kind == "paybill":
        return PaybillRecipient(number=data["number"], account=data["account"])
    if kind == "bank_account":
        return BankAccountRecipient(
            number=data["number"],
            bank_code=data["bank_code"],
            bank_name=data["bank_name"],
        )
    raise ValueError(f"Unknown recipient kind: {kind!r}")


# =============================================================================
# Orders
# =============================================================================

@dataclass(frozen=True)
class Fees:
    """Provider fees, additive to the source amount."""
    sender_fee: Decimal = Decimal("0")
    transaction_fee: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.sender_fee + self.transaction_fee


@dataclass(frozen=True)
class Order:
    """One fiat payout, normalized from a provider's order response.

    ``transfer_amount`` is fixed when the order is normalized and never
    recomputed downstream.
    """
    id: str
    provider: str
    source_asset: str
    source_amount: Decimal
    local_amount: Decimal
    currency: Currency
    recipient: Recipient
    recipient_name: str
    receive_address: str
    fees: Fees
    transfer_amount: Decimal
    valid_until: datetime
    rate: Decimal
    status: OrderStatus = OrderStatus.INITIATED
    return_address: Optional[str] = None
    transfer_hash: Optional[str] = None
    receipt_code: Optional[str] = None
    provider_reference: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def build(
        cls,
        *,
        source_amount: Any,
        fees: Fees,
        source_asset: str,
        **kwargs: Any,
    ) -> "Order":
        """Normalize amounts to asset precision and fix the transfer total."""
        quantum = asset_quantum(source_asset)
        base = to_decimal(source_amount).quantize(quantum, rounding=ROUND_DOWN)
        normalized_fees = Fees(
            sender_fee=to_decimal(fees.sender_fee).quantize(quantum, rounding=ROUND_DOWN),
            transaction_fee=to_decimal(fees.transaction_fee).quantize(quantum, rounding=ROUND_DOWN),
        )
        return cls(
            source_amount=base,
            fees=normalized_fees,
            source_asset=source_asset.upper(),
            transfer_amount=base + normalized_fees.total,
            **kwargs,
        )

    @property
    def is_success(self) -> bool:
        return self.status in SUCCESS_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.valid_until

    def amounts_consistent(self) -> bool:
        return self.transfer_amount == self.source_amount + self.fees.total

    def evolve(self, **changes: Any) -> "Order":
        """Return a copy with ``changes`` applied.

        Once validated or settled only the receipt code may still be filled in.
        """
        if self.is_success:
            allowed = {"receipt_code"}
            illegal = set(changes) - allowed
            if illegal or (self.receipt_code and changes.get("receipt_code") not in (None, self.receipt_code)):
                raise ValueError(
                    f"Order {self.id} is {self.status.value}; only receipt_code backfill allowed"
                )
        return replace(self, **changes)


# =============================================================================
# Provider observations & quotes
# =============================================================================

@dataclass(frozen=True)
class ProviderStatus:
    """One status observation of an order, from a poll or a webhook."""
    order_id: str
    status: OrderStatus
    raw_status: str = ""
    transfer_hash: Optional[str] = None
    amount_paid: Optional[Decimal] = None
    receipt_code: Optional[str] = None
    message: Optional[str] = None
    transaction_logs: tuple[dict[str, Any], ...] = ()
    source: Literal["poll", "webhook", "store"] = "poll"
    mapped: bool = True
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class RateQuote:
    """Unit exchange rate for (source asset, destination currency)."""
    asset: str
    currency: Currency
    rate: Decimal
    source: Literal["live", "cached", "static"] = "live"
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# =============================================================================
# Outcomes
# =============================================================================

class OutcomeCategory(str, Enum):
    """User-visible classification of every terminal state."""
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    NON_RETRYABLE_FAILURE = "non_retryable_failure"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SettlementOutcome:
    """Single resolution of a settlement reconciliation."""
    order_id: str
    kind: Literal["settled", "failed", "timeout"]
    status: Optional[OrderStatus] = None
    observation: Optional[ProviderStatus] = None
    attempts: int = 0
    elapsed_seconds: float = 0.0

    @property
    def source(self) -> Optional[str]:
        return self.observation.source if self.observation else None
