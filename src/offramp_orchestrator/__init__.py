"""Off-ramp settlement orchestrator: stablecoin to local fiat payouts."""

from .backoff import BackoffPolicy
from .config import OfframpSettings, load_settings
from .exceptions import (
    AmountMismatchError,
    InsufficientFundsError,
    InvalidTransitionError,
    OfframpException,
    OfframpValidationError,
    OrderCreationFailedError,
    OrderExpiredError,
    ProviderError,
    ReconciliationTimeoutError,
    SettlementFailedError,
    TransferFailedError,
    UnknownProviderError,
    WebhookSignatureError,
)
from .models import (
    BankAccountRecipient,
    Currency,
    Fees,
    Order,
    OrderStatus,
    OutcomeCategory,
    PaybillRecipient,
    PhoneRecipient,
    ProviderStatus,
    RateQuote,
    SettlementOutcome,
    TillRecipient,
)
from .orders import BalanceChecker, OrderManager
from .providers import PaycrestProvider, PretiumProvider, ProviderRegistry, SettlementProvider
from .rates import RateQuoteService
from .reconciler import PollingSession, SettlementReconciler
from .service import OfframpService
from .state_machine import OffRampOrchestrator, OrchestratorState, PayoutResult
from .store import InMemoryOrderStore, OrderRecord, OrderStore, PostgresOrderStore
from .transfer import TransferEvent, TransferExecutor, TransferRequest, TransferSubmitter

__version__ = "0.1.0"
__all__ = [
    # Orchestration
    "OfframpService",
    "OffRampOrchestrator",
    "OrchestratorState",
    "PayoutResult",
    "OrderManager",
    "BalanceChecker",
    "TransferExecutor",
    "TransferSubmitter",
    "TransferRequest",
    "TransferEvent",
    "SettlementReconciler",
    "PollingSession",
    "BackoffPolicy",
    "RateQuoteService",
    # Providers
    "SettlementProvider",
    "PaycrestProvider",
    "PretiumProvider",
    "ProviderRegistry",
    # Persistence
    "OrderStore",
    "OrderRecord",
    "InMemoryOrderStore",
    "PostgresOrderStore",
    # Models
    "Currency",
    "Fees",
    "Order",
    "OrderStatus",
    "OutcomeCategory",
    "ProviderStatus",
    "RateQuote",
    "SettlementOutcome",
    "PhoneRecipient",
    "TillRecipient",
    "PaybillRecipient",
    "BankAccountRecipient",
    # Config
    "OfframpSettings",
    "load_settings",
    # Errors
    "OfframpException",
    "OfframpValidationError",
    "InsufficientFundsError",
    "OrderCreationFailedError",
    "OrderExpiredError",
    "TransferFailedError",
    "AmountMismatchError",
    "SettlementFailedError",
    "ReconciliationTimeoutError",
    "ProviderError",
    "WebhookSignatureError",
    "InvalidTransitionError",
    "UnknownProviderError",
]
