import json
import logging

import stripe
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from starterkit.core.settings import settings
from starterkit.jobs.client import JobsUnavailableError
from starterkit.jobs.workers import enqueue_stripe_webhook, process_stripe_event
from db import get_db

router = APIRouter()
logger = logging.getLogger("billing")


def _event_field(event, key: str):
    if isinstance(event, dict):
        return event.get(key)
    return getattr(event, key, None)


@router.post("/stripe/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    try:
        if settings.STRIPE_WEBHOOK_SECRET:
            if not sig_header:
                raise ValueError("missing Stripe-Signature header")
            event = stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
        else:
            event = json.loads(payload.decode("utf-8"))
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning(f"stripe webhook rejected: {e}")
        return PlainTextResponse("invalid", status_code=400)

    event_id = _event_field(event, "id") or ""
    event_type = _event_field(event, "type") or ""
    if not event_type:
        return PlainTextResponse("invalid", status_code=400)
    raw = payload.decode("utf-8")

    jobs = getattr(request.app.state, "jobs", None)
    if jobs is not None and jobs.is_available():
        try:
            result = enqueue_stripe_webhook(jobs, event_id, event_type, raw)
        except JobsUnavailableError:
            result = None
        if result is not None:
            logger.info(
                "stripe webhook queued",
                extra={"event_id": event_id, "event_type": event_type, "job_id": result.job_id},
            )
            return JSONResponse(
                {"received": True, "queued": True, "duplicate": result.unique_skipped_as_duplicate}
            )

    # No job system: apply the event before acknowledging it
    try:
        handled = process_stripe_event(db, event_type, raw)
    except Exception:
        db.rollback()
        logger.exception("stripe webhook processing failed", extra={"event_id": event_id})
        return PlainTextResponse("error", status_code=500)
    return JSONResponse({"received": True, "queued": False, "handled": handled})
