"""HTTP surface: settlement status for UI polling and provider webhooks."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import APIRouter, Depends, HTTPException, Request, status

from .exceptions import UnknownProviderError, WebhookSignatureError
from .logging import mask_headers
from .service import OfframpService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["settlement"])


@dataclass
class SettlementApiDeps:
    service: OfframpService


def get_deps() -> SettlementApiDeps:
    raise NotImplementedError("Dependency override required")


@router.get("/settlement/{order_id}/status")
async def get_settlement_status(
    order_id: str,
    deps: SettlementApiDeps = Depends(get_deps),
):
    record = await deps.service.settlement_status(order_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="order_not_found")

    try:
        receipts_expected = deps.service.issues_receipt_codes(record.provider)
    except UnknownProviderError:
        receipts_expected = False
    ready = record.is_success and (bool(record.receipt_code) or not receipts_expected)
    return {
        "ready": ready,
        "status": record.canonical_status.value,
        "receiptCode": record.receipt_code,
    }


@router.post("/webhooks/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    deps: SettlementApiDeps = Depends(get_deps),
):
    body = await request.body()
    try:
        observation = await deps.service.handle_webhook(provider, body, request.headers)
    except UnknownProviderError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unknown_provider") from exc
    except WebhookSignatureError as exc:
        logger.warning(
            "Rejected %s webhook: %s headers=%s",
            provider, exc.message, mask_headers(dict(request.headers)),
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid_webhook_signature",
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_payload") from exc

    return {"received": True, "orderId": observation.order_id, "status": observation.status.value}
