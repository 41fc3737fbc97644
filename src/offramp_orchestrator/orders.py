"""
Order manager: validate, quote and create one settlement order.

Validation happens locally, before any network call. Order creation is sent
exactly once; a failed or ambiguous attempt is surfaced as
OrderCreationFailedError and the caller has to start over with a fresh quote.
"""
from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Protocol

from .exceptions import (
    AmountMismatchError,
    InsufficientFundsError,
    OfframpValidationError,
    OrderCreationFailedError,
    ProviderError,
    UnknownProviderError,
)
from .logging import mask_account
from .models import (
    ALLOWED_RECIPIENTS,
    FAILURE_STATUSES,
    Currency,
    Order,
    RateQuote,
    Recipient,
    to_decimal,
)
from .providers.base import SettlementProvider
from .providers.registry import ProviderRegistry
from .rates import RateQuoteService

logger = logging.getLogger(__name__)

_BALANCE_KEYS = ("balanceInfo", "balance_info", "data")


class BalanceChecker(Protocol):
    """Reads the caller's on-chain balance of a source asset."""

    async def get_balance(self, address: str, asset: str) -> Decimal:
        ...


class OrderManager:
    """Creates settlement orders through the provider routed for the currency."""

    def __init__(
        self,
        registry: ProviderRegistry,
        rates: RateQuoteService,
        *,
        source_asset: str = "USDC",
        balance_checker: Optional[BalanceChecker] = None,
    ):
        self._registry = registry
        self._rates = rates
        self._source_asset = source_asset.upper()
        self._balance_checker = balance_checker

    @property
    def source_asset(self) -> str:
        return self._source_asset

    def validate(
        self,
        amount: Any,
        currency: Any,
        recipient: Recipient,
        return_address: str,
    ) -> tuple[Decimal, Currency, SettlementProvider]:
        """
        Check a payout request without touching the network.

        Returns:
            (amount, currency, provider) normalized

        Raises:
            OfframpValidationError: On any malformed or out-of-range input
        """
        try:
            currency = currency if isinstance(currency, Currency) else Currency(str(currency).strip().upper())
        except ValueError:
            raise OfframpValidationError(f"Unsupported currency: {currency}", field="currency") from None

        try:
            amount = to_decimal(amount)
        except (InvalidOperation, ValueError):
            raise OfframpValidationError(f"Invalid amount: {amount!r}", field="amount") from None
        if not amount.is_finite() or amount <= 0:
            raise OfframpValidationError("Amount must be greater than zero", field="amount")

        try:
            provider = self._registry.for_currency(currency)
        except UnknownProviderError as e:
            raise OfframpValidationError(e.message, field="currency") from None

        minimum = provider.minimum_amount(currency)
        if amount < minimum:
            raise OfframpValidationError(
                f"Minimum amount for {currency.value} is {minimum} {self._source_asset}",
                field="amount",
                details={"minimum": str(minimum)},
            )

        if recipient.kind not in ALLOWED_RECIPIENTS.get(currency, frozenset()):
            raise OfframpValidationError(
                f"{currency.value} payouts cannot go to a {recipient.kind} recipient",
                field="recipient",
            )
        if not recipient.number or not recipient.number.strip():
            raise OfframpValidationError("Recipient number is required", field="recipient.number")
        if not return_address:
            raise OfframpValidationError("Return address is required", field="return_address")

        provider.validate_recipient(currency, recipient)
        return amount, currency, provider

    async def create_settlement_order(
        self,
        amount: Any,
        currency: Any,
        recipient: Recipient,
        return_address: str,
        recipient_name: str = "",
    ) -> Order:
        """
        Validate, quote and create the provider order.

        Raises:
            OfframpValidationError: Request rejected before any network call
            InsufficientFundsError: Balance does not cover the amount
            OrderCreationFailedError: Quote or order creation failed
            AmountMismatchError: Normalized totals do not add up (defect)
        """
        amount, currency, provider = self.validate(amount, currency, recipient, return_address)

        if self._balance_checker is not None:
            balance = to_decimal(await self._balance_checker.get_balance(return_address, self._source_asset))
            if balance < amount:
                logger.info(
                    "Balance pre-check failed for %s: %s < %s %s",
                    mask_account(return_address), balance, amount, self._source_asset,
                )
                raise InsufficientFundsError(current_balance=balance, required_amount=amount)

        try:
            quote = await self._rates.get_rate(provider, self._source_asset, amount, currency)
        except ProviderError as e:
            raise OrderCreationFailedError(
                f"Could not quote {self._source_asset}/{currency.value}: {e.message}",
                provider=provider.provider_name,
                provider_message=e.message,
                status_code=e.status_code,
            ) from e

        order = await self._create_with_provider(
            provider, amount, currency, recipient, recipient_name, return_address, quote,
        )

        if not order.amounts_consistent():
            raise AmountMismatchError(
                f"Order {order.id}: transfer {order.transfer_amount} != "
                f"{order.source_amount} + fees {order.fees.total}",
                details={"order_id": order.id},
            )

        logger.info(
            "Order %s created via %s: %s %s -> %s %s (rate %s, %s)",
            order.id, provider.provider_name, order.transfer_amount, order.source_asset,
            order.local_amount, currency.value, quote.rate, quote.source,
        )
        return order

    async def order_is_live(self, order: Order) -> bool:
        """Whether the provider still holds ``order`` open for payment.

        Only per-order receive addresses can be confirmed without a hash;
        fixed-address payouts need the hash to request the disbursement.
        """
        provider = self._registry.get(order.provider)
        if provider.settlement_scheme != "per_order":
            return False
        try:
            observation = await provider.get_order_status(order.id)
        except ProviderError as e:
            logger.warning("Could not confirm order %s is live: %s", order.id, e.message)
            return False
        return observation.status not in FAILURE_STATUSES

    async def _create_with_provider(
        self,
        provider: SettlementProvider,
        amount: Decimal,
        currency: Currency,
        recipient: Recipient,
        recipient_name: str,
        return_address: str,
        quote: RateQuote,
    ) -> Order:
        try:
            return await provider.create_order(
                amount=amount,
                currency=currency,
                recipient=recipient,
                recipient_name=recipient_name,
                return_address=return_address,
                rate=quote.rate,
                source_asset=self._source_asset,
            )
        except ProviderError as e:
            if "insufficient" in e.message.lower():
                raise _insufficient_from_provider(e, amount) from e
            raise OrderCreationFailedError(
                f"{provider.provider_name} rejected the order: {e.message}",
                provider=provider.provider_name,
                provider_message=e.message,
                status_code=e.status_code,
            ) from e


def _insufficient_from_provider(error: ProviderError, amount: Decimal) -> InsufficientFundsError:
    """Build the structured shortfall error from a provider rejection."""
    current: Optional[Decimal] = None
    required: Optional[Decimal] = None
    body = error.response_body if isinstance(error.response_body, dict) else {}
    for container in [body] + [body.get(k) for k in _BALANCE_KEYS]:
        if not isinstance(container, dict):
            continue
        if current is None and container.get("currentBalance") is not None:
            current = to_decimal(container["currentBalance"])
        if required is None and container.get("requiredAmount") is not None:
            required = to_decimal(container["requiredAmount"])
    return InsufficientFundsError(
        current_balance=current if current is not None else Decimal("0"),
        required_amount=required if required is not None else amount,
        provider_message=error.message,
    )
