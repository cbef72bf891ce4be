import json
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request

from clubbilling.core.errors import ValidationError
from clubbilling.services.container import Services
from clubbilling.utils.deps import get_services

log = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(request: Request, services: Services = Depends(get_services)):
    """
    Stripe webhook receiver.
    - Verifies the signature before anything else.
    - Duplicates and unhandled types are acknowledged with 200.
    - Internal failures return 500 so Stripe re-delivers the event.
    """
    raw = await request.body()
    secret = services.settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        log.error("webhook.stripe.missing_secret")
        raise HTTPException(500, "Webhook secret not configured")

    sig = request.headers.get("stripe-signature")
    if not sig:
        log.warning("webhook.stripe.missing_signature")
        raise HTTPException(400, "Missing Stripe-Signature")

    try:
        stripe.Webhook.construct_event(raw, sig, secret)
    except ValueError:
        log.warning("webhook.stripe.invalid_payload bytes=%d", len(raw))
        raise HTTPException(400, "Invalid payload")
    except stripe.SignatureVerificationError:
        log.warning("webhook.stripe.invalid_signature")
        raise HTTPException(400, "Invalid signature")

    payload = json.loads(raw)
    try:
        result = await services.ingestor.ingest(payload)
    except ValidationError as e:
        log.warning("webhook.stripe.malformed type=%s err=%s", payload.get("type"), e)
        raise HTTPException(400, "Malformed event")
    except Exception:
        log.exception("webhook.stripe.failed type=%s id=%s", payload.get("type"), payload.get("id"))
        raise HTTPException(500, "Webhook handler failed")

    return {"received": True, "status": result.status}
