"""Settlement provider adapters."""

from .base import SettlementProvider, SettlementScheme
from .http import ProviderHTTPClient
from .paycrest import PaycrestProvider
from .pretium import PretiumProvider
from .registry import ProviderRegistry

__all__ = [
    "SettlementProvider",
    "SettlementScheme",
    "ProviderHTTPClient",
    "PaycrestProvider",
    "PretiumProvider",
    "ProviderRegistry",
]
