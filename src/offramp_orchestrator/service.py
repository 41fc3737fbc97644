"""Process-wide wiring: one registry, store and reconciler shared by all payouts."""
from __future__ import annotations

import logging
from typing import Mapping, Optional

from .backoff import BackoffPolicy
from .config import OfframpSettings, TransferSettings
from .models import ProviderStatus
from .orders import BalanceChecker, OrderManager
from .providers.registry import ProviderRegistry
from .rates import RateQuoteService
from .reconciler import SettlementReconciler
from .state_machine import OffRampOrchestrator, StateListener, TerminalCallback
from .store import InMemoryOrderStore, OrderRecord, OrderStore, PostgresOrderStore
from .transfer import TransferExecutor, TransferSubmitter

logger = logging.getLogger(__name__)


class OfframpService:
    """
    Composition root.

    Webhooks arrive on a shared endpoint and may belong to any payout in
    flight, so the reconciler (which owns the per-order polling sessions)
    lives here rather than inside a single orchestrator.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: OrderStore,
        *,
        rates: Optional[RateQuoteService] = None,
        policy: Optional[BackoffPolicy] = None,
        transfer_settings: Optional[TransferSettings] = None,
        source_asset: str = "USDC",
        balance_checker: Optional[BalanceChecker] = None,
    ):
        self.registry = registry
        self.store = store
        self.rates = rates or RateQuoteService()
        self.transfer_settings = transfer_settings or TransferSettings()
        self.orders = OrderManager(
            registry, self.rates, source_asset=source_asset, balance_checker=balance_checker,
        )
        self.reconciler = SettlementReconciler(registry, store, policy)

    @classmethod
    def from_settings(
        cls,
        settings: OfframpSettings,
        *,
        store: Optional[OrderStore] = None,
        balance_checker: Optional[BalanceChecker] = None,
    ) -> "OfframpService":
        if store is None:
            store = PostgresOrderStore(settings.database_url) if settings.database_url else InMemoryOrderStore()
        return cls(
            ProviderRegistry.from_settings(settings),
            store,
            rates=RateQuoteService.from_settings(settings.rates),
            policy=BackoffPolicy.from_settings(settings.polling),
            transfer_settings=settings.transfer,
            source_asset=settings.source_asset,
            balance_checker=balance_checker,
        )

    def new_payout(
        self,
        submitter: TransferSubmitter,
        *,
        on_state_change: Optional[StateListener] = None,
        on_terminal: Optional[TerminalCallback] = None,
    ) -> OffRampOrchestrator:
        """Orchestrator for one payout, signing through ``submitter``."""
        executor = TransferExecutor(
            submitter,
            fallback_window_seconds=self.transfer_settings.fallback_window_seconds,
            optimistic_confirmation=self.transfer_settings.optimistic_confirmation,
            liveness_check=self.orders.order_is_live,
        )
        return OffRampOrchestrator(
            self.orders,
            executor,
            self.reconciler,
            self.registry,
            self.store,
            on_state_change=on_state_change,
            on_terminal=on_terminal,
        )

    async def handle_webhook(
        self,
        provider_name: str,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> ProviderStatus:
        """
        Verify, parse and dispatch a webhook delivery.

        Raises:
            UnknownProviderError: No adapter named ``provider_name``
            WebhookSignatureError: Signature missing or invalid
            ValueError: Verified body is not a usable event
        """
        provider = self.registry.get(provider_name)
        observation = provider.handle_webhook(payload, headers)
        resolved = await self.reconciler.handle_webhook(provider_name, observation)
        logger.info(
            "%s webhook for order %s: %s -> %s%s",
            provider_name, observation.order_id, observation.raw_status,
            observation.status.value, " (resolved)" if resolved else "",
        )
        return observation

    async def settlement_status(self, order_id: str) -> Optional[OrderRecord]:
        return await self.store.get(order_id)

    def issues_receipt_codes(self, provider_name: str) -> bool:
        return self.registry.get(provider_name).ISSUES_RECEIPT_CODES

    async def close(self) -> None:
        await self.registry.close()
        await self.store.close()
