"""
Logging utilities with sensitive data masking.

Provider payloads carry API keys, webhook signatures, phone numbers and bank
account numbers. Everything logged from a provider request/response or a
webhook goes through these helpers first.

Usage:
    from offramp_orchestrator.logging import mask_sensitive_data, mask_account

    logger.info("Order created: %s", mask_sensitive_data(payload))
    logger.info("Paying out to %s", mask_account(recipient.number))

Orders that need a human to look at them (funds left the wallet but the
payout failed or is unknown) are recorded through
``log_manual_reconciliation`` on the dedicated
``offramp_orchestrator.reconciliation`` logger, so operators can route that
logger to an alerting sink.
"""
from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence

if TYPE_CHECKING:
    from .models import Order

MASK_PATTERN = "***"
MAX_LOG_MESSAGE_LENGTH = 2000

SENSITIVE_FIELDS = frozenset({
    "api_key",
    "apikey",
    "api_secret",
    "client_secret",
    "secret",
    "webhook_secret",
    "password",
    "authorization",
    "signature",
    "x_paycrest_signature",
    "x_pretium_signature",
})

reconciliation_logger = logging.getLogger("offramp_orchestrator.reconciliation")


def mask_value(value: str, show_chars: int = 4) -> str:
    """Mask a sensitive value, optionally showing first/last characters."""
    if not value or len(value) <= show_chars * 2:
        return MASK_PATTERN

    return f"{value[:show_chars]}...{value[-show_chars:]}"


def mask_account(value: Optional[str], visible: int = 4) -> str:
    """Mask a phone or account number, keeping the last ``visible`` digits."""
    if not value:
        return ""
    digits = value.strip()
    if len(digits) <= visible:
        return MASK_PATTERN
    return "*" * (len(digits) - visible) + digits[-visible:]


def is_sensitive_key(key: str) -> bool:
    key_lower = key.lower().replace("-", "_")
    return key_lower in SENSITIVE_FIELDS or any(
        sensitive in key_lower
        for sensitive in ("secret", "password", "access_token", "api_key", "credential")
    )


def mask_sensitive_data(
    data: Any,
    additional_fields: Optional[Sequence[str]] = None,
    _depth: int = 0,
    _max_depth: int = 10,
) -> Any:
    """Recursively mask sensitive data in a data structure.

    Account identifiers (``accountIdentifier``, ``shortcode``, ``account_number``)
    are partially masked rather than removed so support can still correlate.
    """
    if _depth > _max_depth:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if is_sensitive_key(str(key)) or (additional_fields and key in additional_fields):
                result[key] = MASK_PATTERN
            elif str(key) in ("accountIdentifier", "shortcode", "account_number", "phone") and isinstance(value, str):
                result[key] = mask_account(value)
            else:
                result[key] = mask_sensitive_data(value, additional_fields, _depth + 1, _max_depth)
        return result

    if isinstance(data, (list, tuple)):
        return type(data)(
            mask_sensitive_data(item, additional_fields, _depth + 1, _max_depth)
            for item in data
        )

    if isinstance(data, str):
        return _mask_inline_patterns(data)

    return data


def _mask_inline_patterns(text: str) -> str:
    if len(text) > MAX_LOG_MESSAGE_LENGTH:
        text = text[:MAX_LOG_MESSAGE_LENGTH] + "...[truncated]"

    patterns = [
        (r"(Bearer\s+)[a-zA-Z0-9._-]+", r"\1***"),
        (r"\b(api[_-]?key[=:])\s*[\"']?([^\"'\s]+)[\"']?", r"\1***"),
        (r"(https?://)[^:/\s]+:[^@/\s]+@", r"\1***:***@"),
    ]
    for pattern, replacement in patterns:
        text = re.sub(pattern, replacement, text, flags=re.IGNORECASE)
    return text


def mask_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Mask sensitive HTTP headers."""
    sensitive_headers = {
        "authorization",
        "api-key",
        "x-api-key",
        "x-paycrest-signature",
        "x-pretium-signature",
        "cookie",
    }
    return {
        key: MASK_PATTERN if key.lower() in sensitive_headers else value
        for key, value in headers.items()
    }


def log_manual_reconciliation(order: "Order", reason: str, **context: Any) -> None:
    """Record an order that needs an operator to reconcile it by hand."""
    reconciliation_logger.error(
        "Manual reconciliation required: order=%s provider=%s reason=%s "
        "transfer_amount=%s %s tx_hash=%s context=%s",
        order.id,
        order.provider,
        reason,
        order.transfer_amount,
        order.source_asset,
        order.transfer_hash,
        mask_sensitive_data(context),
    )
