"""ProviderRegistry - currency routing and name lookup for settlement providers."""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Optional

import httpx

from ..config import OfframpSettings
from ..exceptions import UnknownProviderError
from ..models import Currency
from .base import SettlementProvider
from .paycrest import PaycrestProvider
from .pretium import PretiumProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    Routes each destination currency to exactly one settlement provider.

    The provider is picked once, when the order is created, and its name is
    carried on the Order. Later steps (status polling, webhooks, the
    fixed-address payout hook) look the adapter up by that name and never
    re-derive it from the currency.
    """

    def __init__(
        self,
        providers: Iterable[SettlementProvider],
        currency_providers: Optional[Mapping[str, str]] = None,
        default_provider: Optional[str] = None,
    ):
        """
        Initialize the registry.

        Args:
            providers: Adapter instances to route between
            currency_providers: Optional {currency: provider_name} overrides
            default_provider: Provider for currencies without an override;
                defaults to the first provider given
        """
        self._providers = {p.provider_name: p for p in providers}
        if not self._providers:
            raise ValueError("At least one provider required")

        self._default = default_provider or next(iter(self._providers))
        if self._default not in self._providers:
            raise UnknownProviderError(f"Default provider {self._default!r} is not registered")

        self._routes: dict[Currency, str] = {}
        for currency, name in (currency_providers or {}).items():
            if name not in self._providers:
                raise UnknownProviderError(
                    f"Provider {name!r} configured for {currency} is not registered"
                )
            self._routes[Currency(currency.upper())] = name

    @classmethod
    def from_settings(
        cls,
        settings: OfframpSettings,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "ProviderRegistry":
        """Build the enabled adapters from configuration."""
        providers: list[SettlementProvider] = []
        if settings.paycrest.enabled:
            providers.append(PaycrestProvider(
                settings.paycrest.api_key,
                base_url=settings.paycrest.base_url,
                webhook_secret=settings.paycrest.signing_secret,
                network=settings.paycrest.network,
                timeout=settings.http_timeout_seconds,
                minimum_amounts=settings.minimum_amounts,
                client=client,
            ))
        if settings.pretium.enabled:
            providers.append(PretiumProvider(
                settings.pretium.consumer_key,
                base_url=settings.pretium.base_url,
                webhook_secret=settings.pretium.webhook_secret,
                settlement_address=settings.pretium.settlement_address,
                chain=settings.pretium.chain,
                fee_percentage=settings.pretium.fee_percentage,
                callback_url=settings.pretium.callback_url,
                order_validity_seconds=settings.pretium.order_validity_seconds,
                timeout=settings.http_timeout_seconds,
                minimum_amounts=settings.minimum_amounts,
                client=client,
            ))
        logger.info(
            "Settlement providers enabled: %s (default %s, routes %s)",
            [p.provider_name for p in providers],
            settings.default_provider,
            settings.currency_provider_map,
        )
        return cls(
            providers,
            currency_providers=settings.currency_provider_map,
            default_provider=settings.default_provider,
        )

    @property
    def names(self) -> list[str]:
        return list(self._providers)

    def get(self, name: str) -> SettlementProvider:
        try:
            return self._providers[name]
        except KeyError:
            raise UnknownProviderError(
                f"Unknown settlement provider: {name}",
                details={"provider": name},
            ) from None

    def for_currency(self, currency: Currency) -> SettlementProvider:
        """Adapter that pays out in ``currency``."""
        currency = Currency(currency)
        provider = self.get(self._routes.get(currency, self._default))
        if currency not in provider.supported_currencies:
            raise UnknownProviderError(
                f"No provider pays out in {currency.value}",
                details={"currency": currency.value, "provider": provider.provider_name},
            )
        return provider

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
