# kleanly/billing/__init__.py
from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from kleanly import db, limiter
from kleanly.errors import NotFound, ValidationFailed
from kleanly.models_billing import StripeCustomer
from kleanly.services import get_gateway, make_reconciler

billing_bp = Blueprint("billing_bp", __name__)


@billing_bp.route("/stripe-webhook", methods=["GET", "POST"])
@billing_bp.route("/api/stripe/webhook", methods=["GET", "POST"])
@limiter.exempt
def stripe_webhook():
    """
    Stripe webhook receiver.

    400 only for a missing/invalid signature or an unparseable payload. Every
    event that verifies is answered 200, including handled conflicts, so
    Stripe does not retry business outcomes.
    """
    if request.method == "GET":
        return jsonify({"ok": True, "hint": "POST Stripe events here"})

    payload = request.get_data()
    event = get_gateway().construct_event(payload, request.headers.get("Stripe-Signature"))
    outcome = make_reconciler().process(event)
    return jsonify({"ok": True, "event_id": event.get("id"), "outcome": outcome.to_dict()})


@billing_bp.route("/billing-portal", methods=["POST"])
@limiter.limit("10 per minute")
def billing_portal():
    body = request.get_json(silent=True) or {}
    business_id = body.get("businessId") or body.get("business_id")
    if not business_id:
        raise ValidationFailed("missing_field", "businessId is required", field="businessId")

    customer = db.session.query(StripeCustomer).filter_by(business_id=str(business_id)).first()
    if customer is None:
        raise NotFound("no_customer", "No billing account for this business yet")

    return_url = current_app.config.get("PUBLIC_SITE_URL", "").rstrip("/") + current_app.config.get(
        "STRIPE_PORTAL_RETURN_PATH", "/"
    )
    url = get_gateway().create_portal_session(customer.stripe_customer_id, return_url)
    return jsonify({"ok": True, "url": url})
