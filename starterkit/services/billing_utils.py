from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from starterkit.core.settings import settings
from starterkit.models.organization import PLAN_ENTERPRISE, PLAN_FREE, PLAN_PRO, Organization

logger = logging.getLogger("billing")


def parse_event_object(payload: Any) -> Dict[str, Any]:
    """Return ``data.object`` of a Stripe event given as JSON text, bytes or a dict."""
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8")
    if isinstance(payload, str):
        payload = json.loads(payload) if payload.strip() else {}
    if not isinstance(payload, dict):
        raise ValueError("stripe event payload must be a JSON object")
    data = payload.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    # Payloads that are already the bare object (no event envelope)
    if obj is None and "object" in payload and "data" not in payload:
        obj = payload
    return obj if isinstance(obj, dict) else {}


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields can be an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def plan_from_price_id(price_id: Optional[str]) -> str:
    if not price_id:
        return PLAN_FREE
    if settings.STRIPE_ENTERPRISE_PRICE_ID and price_id == settings.STRIPE_ENTERPRISE_PRICE_ID:
        return PLAN_ENTERPRISE
    if settings.STRIPE_PREMIUM_PRICE_ID and price_id == settings.STRIPE_PREMIUM_PRICE_ID:
        return PLAN_PRO
    # Any paid price without an explicit mapping counts as pro
    return PLAN_PRO


def _first_price_id(subscription: Dict[str, Any]) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    return _id_of((items[0] or {}).get("price"))


def _org_for_customer(db: Session, customer_id: Optional[str]) -> Optional[Organization]:
    if not customer_id:
        return None
    return db.query(Organization).filter(Organization.stripe_customer_id == customer_id).first()


def _org_for_subscription(db: Session, subscription_id: Optional[str]) -> Optional[Organization]:
    if not subscription_id:
        return None
    return db.query(Organization).filter(Organization.stripe_subscription_id == subscription_id).first()


def apply_checkout_completed(db: Session, session_obj: Dict[str, Any]) -> Optional[Organization]:
    """Link the Stripe customer to the organization named in the session metadata.

    The plan itself is set by the subscription events that follow.
    """
    customer_id = _id_of(session_obj.get("customer"))
    metadata = session_obj.get("metadata") or {}
    org = None
    raw_org_id = metadata.get("organization_id")
    if raw_org_id:
        try:
            org = db.query(Organization).filter(Organization.id == int(raw_org_id)).first()
        except (TypeError, ValueError):
            logger.warning("checkout metadata has invalid organization_id %r", raw_org_id)
    if org is None:
        org = _org_for_customer(db, customer_id)
    if org is None:
        logger.error("checkout completed for unknown customer", extra={"customer_id": customer_id})
        return None

    if customer_id:
        org.stripe_customer_id = customer_id
    subscription_id = _id_of(session_obj.get("subscription"))
    if subscription_id:
        org.stripe_subscription_id = subscription_id
    db.commit()
    logger.info("checkout completed", extra={"org_id": org.id, "customer_id": customer_id})
    return org


def apply_subscription_change(db: Session, subscription: Dict[str, Any]) -> Optional[Organization]:
    """Handle subscription created/updated: plan, subscription id and status."""
    sub_id = subscription.get("id")
    org = _org_for_subscription(db, sub_id) or _org_for_customer(db, _id_of(subscription.get("customer")))
    if org is None:
        logger.error("subscription owner not found", extra={"subscription_id": sub_id})
        return None

    plan = plan_from_price_id(_first_price_id(subscription))
    org.plan = plan
    org.stripe_subscription_id = sub_id
    org.subscription_status = subscription.get("status")
    db.commit()
    logger.info("subscription synced", extra={"org_id": org.id, "plan": plan, "status": org.subscription_status})
    return org


def apply_subscription_deleted(db: Session, subscription: Dict[str, Any]) -> Optional[Organization]:
    sub_id = subscription.get("id")
    org = _org_for_subscription(db, sub_id) or _org_for_customer(db, _id_of(subscription.get("customer")))
    if org is None:
        logger.error("subscription owner not found", extra={"subscription_id": sub_id})
        return None

    org.plan = PLAN_FREE
    org.stripe_subscription_id = None
    org.subscription_status = "canceled"
    db.commit()
    logger.info("subscription deleted; organization downgraded", extra={"org_id": org.id})
    return org


def apply_invoice_payment(db: Session, invoice: Dict[str, Any], succeeded: bool) -> Optional[Organization]:
    """Record an invoice outcome on the subscription status (``active`` / ``past_due``)."""
    invoice_id = invoice.get("id")
    customer_id = _id_of(invoice.get("customer"))
    if succeeded:
        logger.info("invoice paid", extra={"invoice_id": invoice_id, "customer_id": customer_id})
    else:
        logger.warning("invoice payment failed", extra={"invoice_id": invoice_id, "customer_id": customer_id})

    sub_id = _id_of(invoice.get("subscription"))
    if not sub_id:
        return None
    org = _org_for_subscription(db, sub_id)
    if org is None:
        logger.error("subscription not found for invoice", extra={"subscription_id": sub_id})
        return None
    org.subscription_status = "active" if succeeded else "past_due"
    db.commit()
    return org
