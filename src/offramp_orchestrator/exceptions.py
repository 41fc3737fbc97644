"""Exception hierarchy for the off-ramp orchestrator.

All orchestrator errors inherit from OfframpException, enabling:
- Consistent handling between the order, transfer and settlement phases
- HTTP status mapping in the API layer
- Structured error payloads with machine-readable codes
- Provider messages preserved for operators, normalized text for users

Usage:
    from offramp_orchestrator.exceptions import (
        OfframpException,
        InsufficientFundsError,
        OrderCreationFailedError,
    )

    try:
        order = await manager.create_settlement_order(...)
    except InsufficientFundsError as e:
        show_top_up(e.shortfall)

All exceptions have:
- error_code: Machine-readable error code (e.g., "INSUFFICIENT_FUNDS")
- http_status: Appropriate HTTP status code for API responses
- retryable: Whether the user may simply try again (with a fresh quote)
- message: Diagnostic message (may contain the provider's wording)
- user_message: Normalized message safe to show to end users
- details: Optional additional context dictionary
- to_dict(): Convert to API response format
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional


class OfframpException(Exception):
    """Base exception for all orchestrator errors.

    Attributes:
        message: Diagnostic error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "OFFRAMP_ERROR"
    http_status: int = 500
    retryable: bool = False
    user_message: str = "Something went wrong. Please try again later."

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.user_message,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Pre-network errors
# =============================================================================

class OfframpValidationError(OfframpException):
    """Amount below minimum, malformed recipient, unsupported currency."""

    error_code = "VALIDATION_ERROR"
    http_status = 400
    retryable = True

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)
        self.field = field
        self.user_message = message


class InsufficientFundsError(OfframpException):
    """Wallet balance does not cover the requested amount."""

    error_code = "INSUFFICIENT_FUNDS"
    http_status = 400
    retryable = True
    user_message = "Your balance is too low for this amount. Top up or reduce the amount."

    def __init__(
        self,
        current_balance: Decimal,
        required_amount: Decimal,
        provider_message: Optional[str] = None,
    ) -> None:
        self.current_balance = Decimal(current_balance)
        self.required_amount = Decimal(required_amount)
        self.shortfall = max(self.required_amount - self.current_balance, Decimal("0"))
        details: dict[str, Any] = {
            "current_balance": str(self.current_balance),
            "required_amount": str(self.required_amount),
            "shortfall": str(self.shortfall),
        }
        if provider_message:
            details["provider_message"] = provider_message
        super().__init__(
            f"Insufficient funds: balance {self.current_balance} < required {self.required_amount}",
            details=details,
        )


# =============================================================================
# Provider communication
# =============================================================================

class ProviderError(OfframpException):
    """Transport or HTTP failure while talking to a settlement provider."""

    error_code = "PROVIDER_ERROR"
    http_status = 502
    retryable = True
    user_message = "The payout provider is unavailable right now. Please try again."

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
        response_body: Any = None,
    ) -> None:
        details = details or {}
        if provider:
            details["provider"] = provider
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details)
        self.provider = provider
        self.status_code = status_code
        self.response_body = response_body


class OrderCreationFailedError(OfframpException):
    """Provider or network error while creating the settlement order.

    Retryable by re-quoting, never by resubmitting the same quote.
    """

    error_code = "ORDER_CREATION_FAILED"
    http_status = 502
    retryable = True
    user_message = "We could not create your order. Please get a new quote and try again."

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        provider_message: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if provider:
            details["provider"] = provider
        if provider_message:
            details["provider_message"] = provider_message
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details)
        self.provider = provider
        self.provider_message = provider_message


class OrderExpiredError(OrderCreationFailedError):
    """Order validity window passed before the transfer was submitted."""

    error_code = "ORDER_EXPIRED"
    http_status = 409
    user_message = "This order has expired. Please request a new quote."

    def __init__(self, order_id: str, valid_until: Any) -> None:
        super().__init__(
            f"Order {order_id} expired at {valid_until}; re-quote required",
            details={"order_id": order_id, "valid_until": str(valid_until)},
        )
        self.order_id = order_id


class UnknownProviderError(OfframpException):
    """No adapter registered under the requested name or currency."""

    error_code = "UNKNOWN_PROVIDER"
    http_status = 404


# =============================================================================
# Transfer & settlement
# =============================================================================

class TransferFailedError(OfframpException):
    """The external transfer mechanism failed or timed out."""

    error_code = "TRANSFER_FAILED"
    http_status = 400
    retryable = True
    user_message = "Your transfer did not go through. Start a new payout to try again."

    def __init__(
        self,
        message: str,
        reason: str = "wallet_error",
        tx_hash: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["reason"] = reason
        if tx_hash:
            details["tx_hash"] = tx_hash
        super().__init__(message, details=details)
        self.reason = reason
        self.tx_hash = tx_hash


class AmountMismatchError(OfframpException):
    """Transfer amount differs from source amount plus fees. A defect."""

    error_code = "AMOUNT_MISMATCH"
    http_status = 500
    retryable = False


class SettlementFailedError(OfframpException):
    """Provider-side terminal failure after the transfer was confirmed."""

    error_code = "SETTLEMENT_FAILED"
    http_status = 409
    retryable = False
    user_message = (
        "Your funds were sent but the payout did not complete. "
        "Contact support with your order reference."
    )

    def __init__(
        self,
        order_id: str,
        reason: str,
        provider_message: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {"order_id": order_id, "reason": reason}
        if provider_message:
            details["provider_message"] = provider_message
        super().__init__(f"Settlement for order {order_id} ended as {reason}", details=details)
        self.order_id = order_id
        self.reason = reason


class ReconciliationTimeoutError(OfframpException):
    """Neither polling nor webhook reached a terminal state within bounds."""

    error_code = "RECONCILIATION_TIMEOUT"
    http_status = 202
    retryable = False
    user_message = (
        "Your payout is still being processed. Check again later or contact "
        "support with your order reference."
    )

    def __init__(
        self,
        order_id: str,
        attempts: int,
        elapsed_seconds: float,
        reason: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {
            "order_id": order_id,
            "attempts": attempts,
            "elapsed_seconds": round(elapsed_seconds, 3),
        }
        if reason:
            details["reason"] = reason
            message = f"Settlement status unknown for order {order_id}: {reason}"
        else:
            message = (
                f"Settlement status unknown for order {order_id} after "
                f"{attempts} polls / {elapsed_seconds:.1f}s"
            )
        super().__init__(message, details=details)
        self.order_id = order_id


# =============================================================================
# Integrity & programming errors
# =============================================================================

class WebhookSignatureError(OfframpException):
    """Webhook payload failed HMAC verification."""

    error_code = "SIGNATURE_ERROR"
    http_status = 401


class InvalidTransitionError(OfframpException):
    """Illegal lifecycle transition requested."""

    error_code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Illegal transition: {current} -> {requested}",
            details={"current": current, "requested": requested},
        )
        self.current = current
        self.requested = requested
