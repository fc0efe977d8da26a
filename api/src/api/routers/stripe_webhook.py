"""Stripe webhook handler."""

from __future__ import annotations

import logging

from chartsense.models import AnalyticsEvent
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from api.services.stripe_service import verify_webhook_signature
from api.services.webhook_service import process_event

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/webhook")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        event = verify_webhook_signature(payload, sig_header)
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except Exception:
        logger.warning("Rejected Stripe webhook with an invalid signature")
        db.add(
            AnalyticsEvent(
                event_type="stripe.webhook.error",
                metadata_json={"reason": "invalid_signature"},
            )
        )
        await db.commit()
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    event_id = str(event.get("id", "")).strip()
    if not event_id:
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    event_type = str(event.get("type", "")).strip()
    if not event_type:
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    event_data = event.get("data")
    if not isinstance(event_data, dict) or not isinstance(event_data.get("object"), dict):
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    logger.info("Stripe webhook: %s %s", event_type, event_id)
    outcome = await process_event(db, event)

    db.add(
        AnalyticsEvent(
            event_type="stripe.webhook.processed",
            metadata_json={"event_id": event_id, "event_type": event_type, "outcome": outcome},
        )
    )
    return {"status": outcome}
