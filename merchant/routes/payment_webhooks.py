"""
Inbound payment-provider webhook.

The tenant is taken from the event's session metadata (set at checkout), then
the signature is verified against that tenant's webhook secret before any of
the payload is trusted.
"""

import json
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from merchant.core.config import get_settings
from merchant.core.exceptions import InvalidRequestError
from merchant.dependencies import get_db, get_dispatcher
from merchant.models.store import Store
from merchant.services.payment import verify_webhook_signature
from merchant.services.payment.client import SIGNATURE_HEADER
from merchant.services.payment_ingestion import PaymentEventIngestor

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/webhooks", tags=["payment-webhooks"])


@router.post("/payment")
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    dispatcher=Depends(get_dispatcher),
):
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        raise InvalidRequestError(f"Missing {SIGNATURE_HEADER} header")

    body = await request.body()
    try:
        unverified = json.loads(body)
    except ValueError:
        raise InvalidRequestError("Invalid JSON")
    if not isinstance(unverified, dict):
        raise InvalidRequestError("Event payload must be a JSON object")

    metadata = (((unverified.get("data") or {}).get("object") or {}).get("metadata") or {})
    store_id = metadata.get("store_id")
    if not store_id:
        raise InvalidRequestError("Missing store_id in metadata")

    store = await db.get(Store, store_id)
    if store is None or not store.payment_webhook_secret:
        raise InvalidRequestError("Store not found or webhook secret missing")

    event = verify_webhook_signature(
        body,
        signature,
        store.payment_webhook_secret,
        tolerance_seconds=get_settings().PAYMENT_SIGNATURE_TOLERANCE_SECONDS,
    )

    result = await PaymentEventIngestor(db, store, dispatcher=dispatcher).ingest(event)
    logger.info(f"Payment event {event.get('id')} ({event.get('type')}): {result.status}")
    return {"ok": True, "status": result.status, "order_id": result.order_id}
