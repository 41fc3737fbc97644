"""Canonical configuration surface for the off-ramp orchestrator."""
from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PollingSettings(BaseModel):
    """Settlement status polling schedule (see backoff.BackoffPolicy)."""
    base_delay_seconds: float = 3.0
    fast_attempts: int = 10
    factor: float = 1.4
    max_delay_seconds: float = 30.0
    max_attempts: int = 60
    deadline_seconds: float = 600.0
    error_delay_seconds: float = 5.0


class TransferSettings(BaseModel):
    """On-chain transfer confirmation window."""
    fallback_window_seconds: float = 120.0
    # Speculative confirmation after the window; off unless explicitly enabled
    optimistic_confirmation: bool = False


class RateSettings(BaseModel):
    cache_ttl_seconds: float = 60.0
    # Oldest cached rate still served when the live quote fails
    max_stale_seconds: float = 21600.0
    static_rates: dict[str, Decimal] = Field(default_factory=lambda: {
        "KES": Decimal("150.5"),
        "NGN": Decimal("1650.0"),
    })


class PaycrestSettings(BaseModel):
    """Paycrest sender API (per-order receive address)."""
    enabled: bool = True
    base_url: str = "https://api.paycrest.io/v1"
    api_key: str = ""
    api_secret: str = ""
    # Falls back to api_secret, which is what Paycrest signs with by default
    webhook_secret: str = ""
    network: str = "base"

    @property
    def signing_secret(self) -> str:
        return self.webhook_secret or self.api_secret


class PretiumSettings(BaseModel):
    """Pretium disbursement API (fixed settlement address)."""
    enabled: bool = False
    base_url: str = "https://api.xwift.africa"
    consumer_key: str = ""
    webhook_secret: str = ""
    settlement_address: str = "0x8005ee53e57ab11e11eaa4efe07ee3835dc02f98"
    chain: str = "BASE"
    fee_percentage: Decimal = Decimal("0.01")
    callback_url: str = ""
    order_validity_seconds: int = 1800


class OfframpSettings(BaseSettings):
    """Main orchestrator configuration."""

    model_config = SettingsConfigDict(
        env_prefix="OFFRAMP_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    environment: Literal["dev", "sandbox", "prod"] = "dev"

    source_asset: str = "USDC"
    http_timeout_seconds: float = 30.0

    # Per-currency floor, enforced before any provider call
    minimum_amounts: dict[str, Decimal] = Field(default_factory=lambda: {
        "KES": Decimal("0.5"),
        "NGN": Decimal("1.0"),
        "GHS": Decimal("0.5"),
        "UGX": Decimal("0.5"),
    })

    # "GHS:pretium,NGN:pretium"; unlisted currencies use default_provider
    currency_providers: str = ""
    default_provider: str = "paycrest"

    polling: PollingSettings = Field(default_factory=PollingSettings)
    transfer: TransferSettings = Field(default_factory=TransferSettings)
    rates: RateSettings = Field(default_factory=RateSettings)
    paycrest: PaycrestSettings = Field(default_factory=PaycrestSettings)
    pretium: PretiumSettings = Field(default_factory=PretiumSettings)

    database_url: str = ""

    @field_validator("source_asset", "default_provider")
    @classmethod
    def normalize_names(cls, v: str) -> str:
        return v.strip()

    @property
    def currency_provider_map(self) -> dict[str, str]:
        """Parse ``currency_providers`` into {currency: provider_name}."""
        result: dict[str, str] = {}
        for part in self.currency_providers.split(","):
            if ":" not in part:
                continue
            currency, provider = part.split(":", 1)
            if currency.strip() and provider.strip():
                result[currency.strip().upper()] = provider.strip().lower()
        return result

    @model_validator(mode="after")
    def validate_production_credentials(self) -> "OfframpSettings":
        if self.environment != "prod":
            return self
        missing = []
        if self.paycrest.enabled:
            if not self.paycrest.api_key:
                missing.append("OFFRAMP_PAYCREST__API_KEY")
            if not self.paycrest.signing_secret:
                missing.append("OFFRAMP_PAYCREST__API_SECRET")
        if self.pretium.enabled:
            if not self.pretium.consumer_key:
                missing.append("OFFRAMP_PRETIUM__CONSUMER_KEY")
            if not self.pretium.webhook_secret:
                missing.append("OFFRAMP_PRETIUM__WEBHOOK_SECRET")
        if missing:
            raise ValueError(
                "Missing provider credentials for production: " + ", ".join(missing)
            )
        return self


@lru_cache
def load_settings(env_file: str | None = None) -> OfframpSettings:
    """Load OfframpSettings once per process to keep components consistent."""
    if env_file:
        return OfframpSettings(_env_file=Path(env_file))
    return OfframpSettings()
