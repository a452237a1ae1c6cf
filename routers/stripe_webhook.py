# routers/stripe_webhook.py

from __future__ import annotations

import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.config import settings
from app.db import get_db
from app.ingestion import process_webhook_event
from app.stripe_source import get_commerce_source

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

logger = logging.getLogger(__name__)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    source=Depends(get_commerce_source),
):
    """
    Stripe webhook endpoint.
    - Verifica firma con STRIPE_WEBHOOK_SECRET (prima di qualsiasi scrittura)
    - Evento gia' processato -> 200 (ack, nessuna modifica)
    - Errore di elaborazione -> evento "failed" + 500, Stripe ritenta
    """
    if not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=500,
            detail="Stripe webhook not configured (missing STRIPE_WEBHOOK_SECRET)",
        )

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature header")

    try:
        event = source.construct_event(payload, sig_header)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning("Stripe webhook rejected: %s", e)
        raise HTTPException(status_code=400, detail=f"Invalid webhook signature: {str(e)}")

    try:
        return process_webhook_event(db, event, source)
    except Exception:
        logger.exception("Stripe webhook processing failed id=%s type=%s", event.get("id"), event.get("type"))
        raise HTTPException(status_code=500, detail="Webhook processing failed")
