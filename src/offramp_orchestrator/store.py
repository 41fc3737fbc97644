"""Order persistence.

One row per Order. Both the poll loop and the webhook handler write to it, so
every status write is monotonic and idempotent: a status is stored only when
it advances the canonical lifecycle, and ``transfer_hash`` / ``receipt_code``
/ ``provider_reference`` are only ever filled in when still empty, and never
from an event that contradicts the stored outcome (a late ``refunded`` on a
``settled`` order).

``PostgresOrderStore`` follows the same rules inside a row-locking
transaction.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from .models import (
    FAILURE_STATUSES,
    SUCCESS_STATUSES,
    Currency,
    Order,
    OrderStatus,
    recipient_from_dict,
    recipient_to_dict,
)
from .status import apply_status_transition, status_rank

logger = logging.getLogger(__name__)


@dataclass
class OrderRecord:
    id: str
    provider: str
    canonical_status: OrderStatus
    source_amount: Decimal
    local_amount: Decimal
    transfer_amount: Decimal
    currency: Currency
    recipient: dict[str, Any]
    recipient_name: str
    receive_address: str
    transfer_hash: Optional[str] = None
    receipt_code: Optional[str] = None
    provider_reference: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_order(cls, order: Order) -> "OrderRecord":
        return cls(
            id=order.id,
            provider=order.provider,
            canonical_status=order.status,
            source_amount=order.source_amount,
            local_amount=order.local_amount,
            transfer_amount=order.transfer_amount,
            currency=order.currency,
            recipient=recipient_to_dict(order.recipient),
            recipient_name=order.recipient_name,
            receive_address=order.receive_address,
            transfer_hash=order.transfer_hash,
            receipt_code=order.receipt_code,
            provider_reference=order.provider_reference,
            created_at=order.created_at,
        )

    @property
    def is_success(self) -> bool:
        return self.canonical_status in (OrderStatus.VALIDATED, OrderStatus.SETTLED)

    def recipient_variant(self):
        return recipient_from_dict(self.recipient)


@dataclass(frozen=True)
class StatusWrite:
    """Result of one ``advance_status`` call."""
    record: Optional[OrderRecord]
    advanced: bool = False
    backfilled: bool = False
    out_of_order: bool = False

    @property
    def changed(self) -> bool:
        return self.advanced or self.backfilled


def merge_observation(
    record: OrderRecord,
    status: Optional[OrderStatus],
    *,
    transfer_hash: Optional[str] = None,
    receipt_code: Optional[str] = None,
    provider_reference: Optional[str] = None,
) -> tuple[dict[str, Any], bool]:
    """Column changes for one observation, plus the out-of-order flag."""
    changes: dict[str, Any] = {}
    next_status, out_of_order = apply_status_transition(record.canonical_status, status)
    if next_status is not None and next_status != record.canonical_status:
        changes["canonical_status"] = next_status
    if _contradicts(record.canonical_status, status):
        # A late event from the opposite outcome must not annotate the order
        return changes, out_of_order
    for name, value in (
        ("transfer_hash", transfer_hash),
        ("receipt_code", receipt_code),
        ("provider_reference", provider_reference),
    ):
        if value and not getattr(record, name):
            changes[name] = value
    return changes, out_of_order


def _contradicts(current: Optional[OrderStatus], incoming: Optional[OrderStatus]) -> bool:
    if current is None or incoming is None:
        return False
    return (
        (current in SUCCESS_STATUSES and incoming in FAILURE_STATUSES)
        or (current in FAILURE_STATUSES and incoming in SUCCESS_STATUSES)
    )


class OrderStore(ABC):
    """Persistence contract shared by the in-memory and Postgres stores."""

    @abstractmethod
    async def save_order(self, order: Order) -> OrderRecord:
        """Insert the order, or merge it into an existing row monotonically."""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[OrderRecord]:
        ...

    @abstractmethod
    async def get_by_reference(self, provider: str, reference: str) -> Optional[OrderRecord]:
        """Look an order up by the provider's own reference (e.g. a transaction code)."""

    @abstractmethod
    async def advance_status(
        self,
        order_id: str,
        status: Optional[OrderStatus],
        *,
        transfer_hash: Optional[str] = None,
        receipt_code: Optional[str] = None,
        provider_reference: Optional[str] = None,
    ) -> StatusWrite:
        """Write ``status`` only if it advances the lifecycle; never regress."""

    async def close(self) -> None:
        pass


class InMemoryOrderStore(OrderStore):
    """Dict-backed store for development and tests."""

    def __init__(self) -> None:
        self._records: dict[str, OrderRecord] = {}

    async def save_order(self, order: Order) -> OrderRecord:
        existing = self._records.get(order.id)
        if existing is None:
            record = OrderRecord.from_order(order)
            self._records[order.id] = record
            return replace(record)
        write = await self.advance_status(
            order.id,
            order.status,
            transfer_hash=order.transfer_hash,
            receipt_code=order.receipt_code,
            provider_reference=order.provider_reference,
        )
        return write.record

    async def get(self, order_id: str) -> Optional[OrderRecord]:
        record = self._records.get(order_id)
        return replace(record) if record else None

    async def get_by_reference(self, provider: str, reference: str) -> Optional[OrderRecord]:
        for record in self._records.values():
            if record.provider == provider and record.provider_reference == reference:
                return replace(record)
        return None

    async def advance_status(
        self,
        order_id: str,
        status: Optional[OrderStatus],
        *,
        transfer_hash: Optional[str] = None,
        receipt_code: Optional[str] = None,
        provider_reference: Optional[str] = None,
    ) -> StatusWrite:
        record = self._records.get(order_id)
        if record is None:
            return StatusWrite(record=None)
        changes, out_of_order = merge_observation(
            record,
            status,
            transfer_hash=transfer_hash,
            receipt_code=receipt_code,
            provider_reference=provider_reference,
        )
        if out_of_order:
            logger.info(
                "Ignoring out-of-order status %s for order %s (stored %s)",
                status.value if status else None, order_id, record.canonical_status.value,
            )
        if changes:
            for name, value in changes.items():
                setattr(record, name, value)
            record.updated_at = datetime.now(timezone.utc)
        return StatusWrite(
            record=replace(record),
            advanced="canonical_status" in changes,
            backfilled=bool(set(changes) - {"canonical_status"}),
            out_of_order=out_of_order,
        )


_COLUMNS = (
    "id, provider, canonical_status, source_amount, local_amount, transfer_amount, "
    "currency, recipient, recipient_name, receive_address, transfer_hash, receipt_code, "
    "provider_reference, created_at, updated_at"
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS offramp_orders (
    id TEXT PRIMARY KEY,
    provider TEXT NOT NULL,
    canonical_status TEXT NOT NULL,
    status_rank INTEGER NOT NULL,
    source_amount NUMERIC NOT NULL,
    local_amount NUMERIC NOT NULL,
    transfer_amount NUMERIC NOT NULL,
    currency TEXT NOT NULL,
    recipient JSONB NOT NULL,
    recipient_name TEXT NOT NULL DEFAULT '',
    receive_address TEXT NOT NULL,
    transfer_hash TEXT,
    receipt_code TEXT,
    provider_reference TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_offramp_orders_reference
    ON offramp_orders (provider, provider_reference);
"""


class PostgresOrderStore(OrderStore):
    """
    ``offramp_orders`` table via asyncpg.

    Status writes lock the row (``SELECT ... FOR UPDATE``) so concurrent
    webhook and poll writers from different processes still merge
    monotonically.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._pool = None

    async def _get_pool(self):
        if self._pool is None:
            import asyncpg

            dsn = self._dsn
            if dsn.startswith("postgres://"):
                dsn = dsn.replace("postgres://", "postgresql://", 1)
            self._pool = await asyncpg.create_pool(dsn, min_size=1, max_size=5)
        return self._pool

    async def initialize(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA)

    async def save_order(self, order: Order) -> OrderRecord:
        record = OrderRecord.from_order(order)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            inserted = await conn.fetchval(
                """
                INSERT INTO offramp_orders
                    (id, provider, canonical_status, status_rank, source_amount, local_amount,
                     transfer_amount, currency, recipient, recipient_name, receive_address,
                     transfer_hash, receipt_code, provider_reference, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10, $11, $12, $13, $14, $15, $15)
                ON CONFLICT (id) DO NOTHING
                RETURNING id
                """,
                record.id,
                record.provider,
                record.canonical_status.value,
                status_rank(record.canonical_status),
                record.source_amount,
                record.local_amount,
                record.transfer_amount,
                record.currency.value,
                json.dumps(record.recipient),
                record.recipient_name,
                record.receive_address,
                record.transfer_hash,
                record.receipt_code,
                record.provider_reference,
                record.created_at,
            )
        if inserted:
            return record
        write = await self.advance_status(
            order.id,
            order.status,
            transfer_hash=order.transfer_hash,
            receipt_code=order.receipt_code,
            provider_reference=order.provider_reference,
        )
        return write.record

    async def get(self, order_id: str) -> Optional[OrderRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM offramp_orders WHERE id = $1",
                order_id,
            )
        return _row_to_record(row) if row else None

    async def get_by_reference(self, provider: str, reference: str) -> Optional[OrderRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM offramp_orders "
                "WHERE provider = $1 AND provider_reference = $2",
                provider,
                reference,
            )
        return _row_to_record(row) if row else None

    async def advance_status(
        self,
        order_id: str,
        status: Optional[OrderStatus],
        *,
        transfer_hash: Optional[str] = None,
        receipt_code: Optional[str] = None,
        provider_reference: Optional[str] = None,
    ) -> StatusWrite:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {_COLUMNS} FROM offramp_orders WHERE id = $1 FOR UPDATE",
                    order_id,
                )
                if row is None:
                    return StatusWrite(record=None)
                record = _row_to_record(row)
                changes, out_of_order = merge_observation(
                    record,
                    status,
                    transfer_hash=transfer_hash,
                    receipt_code=receipt_code,
                    provider_reference=provider_reference,
                )
                if changes:
                    record = replace(record, **changes, updated_at=datetime.now(timezone.utc))
                    await conn.execute(
                        """
                        UPDATE offramp_orders
                        SET canonical_status = $2, status_rank = $3, transfer_hash = $4,
                            receipt_code = $5, provider_reference = $6, updated_at = $7
                        WHERE id = $1
                        """,
                        order_id,
                        record.canonical_status.value,
                        status_rank(record.canonical_status),
                        record.transfer_hash,
                        record.receipt_code,
                        record.provider_reference,
                        record.updated_at,
                    )
        return StatusWrite(
            record=record,
            advanced="canonical_status" in changes,
            backfilled=bool(set(changes) - {"canonical_status"}),
            out_of_order=out_of_order,
        )

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


def _row_to_record(row: Any) -> OrderRecord:
    recipient = row["recipient"]
    if isinstance(recipient, str):
        recipient = json.loads(recipient)
    return OrderRecord(
        id=row["id"],
        provider=row["provider"],
        canonical_status=OrderStatus(row["canonical_status"]),
        source_amount=row["source_amount"],
        local_amount=row["local_amount"],
        transfer_amount=row["transfer_amount"],
        currency=Currency(row["currency"]),
        recipient=recipient,
        recipient_name=row["recipient_name"],
        receive_address=row["receive_address"],
        transfer_hash=row["transfer_hash"],
        receipt_code=row["receipt_code"],
        provider_reference=row["provider_reference"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
