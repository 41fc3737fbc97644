"""Canonical order-status ranking and monotonic transitions."""

from __future__ import annotations

import logging
from typing import Mapping, Optional

from .models import OrderStatus

logger = logging.getLogger(__name__)


CANONICAL_STATUS_RANK: dict[OrderStatus, int] = {
    OrderStatus.INITIATED: 10,
    OrderStatus.PENDING: 20,
    OrderStatus.PROCESSING: 30,
    OrderStatus.VALIDATED: 40,
    OrderStatus.SETTLED: 50,
    OrderStatus.REFUNDED: 50,
    OrderStatus.EXPIRED: 50,
    OrderStatus.FAILED: 50,
    OrderStatus.CANCELLED: 50,
}


def status_rank(status: Optional[OrderStatus]) -> int:
    if status is None:
        return 0
    return CANONICAL_STATUS_RANK[status]


def is_advance(current: Optional[OrderStatus], incoming: OrderStatus) -> bool:
    """True when ``incoming`` moves the lifecycle strictly forward."""
    if current is None:
        return True
    if current == incoming:
        return False
    # validated only ever finishes as settled; terminal ranks never move sideways
    if current == OrderStatus.VALIDATED:
        return incoming == OrderStatus.SETTLED
    return status_rank(incoming) > status_rank(current)


def apply_status_transition(
    current: Optional[OrderStatus],
    incoming: Optional[OrderStatus],
) -> tuple[Optional[OrderStatus], bool]:
    """
    Return (next_status, out_of_order).

    Out-of-order is flagged when a lower-rank status arrives after the order
    already advanced; the current status is kept.
    """
    if incoming is None:
        return current, False
    if is_advance(current, incoming):
        return incoming, False
    if current == incoming:
        return current, False
    return current, True


def map_provider_status(
    raw: Optional[str],
    mapping: Mapping[str, OrderStatus],
    *,
    provider: str,
) -> tuple[OrderStatus, bool]:
    """Map a native provider status onto the canonical set.

    Returns (status, mapped). Unknown values are treated as ``processing``
    so they never terminate reconciliation, and are logged.
    """
    key = (raw or "").strip().lower()
    status = mapping.get(key)
    if status is None:
        logger.warning(
            "Unmapped %s status %r treated as processing", provider, raw,
        )
        return OrderStatus.PROCESSING, False
    return status, True
