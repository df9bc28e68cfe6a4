import hashlib
import hmac
import json
import math
import time
from itertools import count

from kleanly import db
from kleanly.errors import BillingProviderError
from kleanly.models_billing import Sponsorship
from kleanly.services.stripe_service import StripeGateway

WEBHOOK_SECRET = "whsec_test_secret"

# degrees of longitude per km along the equator (R = 6378137 m)
DEG_PER_KM = 180.0 / (math.pi * 6378.137)


def side_for_km2(km2):
    return math.sqrt(km2) * DEG_PER_KM


def rect(x0, y0, width, height):
    return {
        "type": "Polygon",
        "coordinates": [[
            [x0, y0], [x0 + width, y0], [x0 + width, y0 + height], [x0, y0 + height], [x0, y0],
        ]],
    }


def square(x0, y0, side):
    return rect(x0, y0, side, side)


def add_sponsorship(business_id, region_id, category_id, geometry, slot=1, status="active", sub_id=None, **extra):
    from kleanly.services import geometry as geo

    row = Sponsorship(
        business_id=business_id,
        region_id=region_id,
        category_id=category_id,
        slot=slot,
        status=status,
        geometry=geometry,
        area_km2=geo.area_km2(geometry) if geometry else 0.0,
        price_monthly_minor=extra.pop("price_monthly_minor", 1000),
        stripe_subscription_id=sub_id,
        **extra,
    )
    db.session.add(row)
    db.session.commit()
    return row


def subscription(sub_id, business_id=None, region_id=None, category_id=None, slot=1, status="active",
                 customer="cus_test", lock_id=None, area_km2=None, unit_amount=9000,
                 cancel_at_period_end=False, period_end=None, metadata=None):
    meta = {} if metadata is None else dict(metadata)
    if metadata is None:
        for key, value in (("business_id", business_id), ("area_id", region_id),
                           ("category_id", category_id), ("slot", slot), ("lock_id", lock_id),
                           ("area_km2", area_km2)):
            if value is not None:
                meta[key] = str(value)
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "currency": "gbp",
        "metadata": meta,
        "items": {"data": [{
            "id": f"si_{sub_id}",
            "current_period_end": period_end or int(time.time()) + 30 * 86400,
            "price": {"unit_amount": unit_amount, "currency": "gbp", "product": "prod_sponsored"},
        }]},
    }


_event_ids = count(1)


def event(event_type, obj, event_id=None):
    return {
        "id": event_id or f"evt_{next(_event_ids)}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def sign(payload: bytes, secret=WEBHOOK_SECRET, timestamp=None):
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class FakeStripeGateway:
    """Records calls; subscriptions live in a dict keyed by id."""

    def __init__(self):
        self.calls = []
        self.subscriptions = {}
        self.failing = set()
        self.webhook_secret = WEBHOOK_SECRET
        self._ids = count(1)

    def _record(self, call, **kwargs):
        if call in self.failing:
            raise BillingProviderError("billing_provider_error", f"Stripe {call} failed")
        self.calls.append((call, kwargs))

    def calls_to(self, name):
        return [kw for n, kw in self.calls if n == name]

    def create_customer(self, business_id, email=None, name=None):
        self._record("create_customer", business_id=business_id, email=email, name=name)
        return f"cus_{next(self._ids)}"

    def create_subscription_checkout(self, **kwargs):
        self._record("create_subscription_checkout", **kwargs)
        session_id = f"cs_test_{next(self._ids)}"
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    def retrieve_subscription(self, subscription_id, expand=None):
        self._record("retrieve_subscription", subscription_id=subscription_id, expand=expand)
        if subscription_id not in self.subscriptions:
            raise BillingProviderError("billing_provider_error", f"No such subscription: {subscription_id}")
        return json.loads(json.dumps(self.subscriptions[subscription_id]))

    def cancel_subscription_now(self, subscription_id):
        self._record("cancel_subscription_now", subscription_id=subscription_id)
        sub = self.subscriptions.setdefault(subscription_id, {"id": subscription_id})
        sub["status"] = "canceled"
        return sub

    def set_cancel_at_period_end(self, subscription_id, flag):
        self._record("set_cancel_at_period_end", subscription_id=subscription_id, flag=flag)
        sub = self.subscriptions.setdefault(subscription_id, {"id": subscription_id, "status": "active"})
        sub["cancel_at_period_end"] = bool(flag)
        return sub

    def update_subscription_price(self, subscription_id, unit_amount, currency):
        self._record("update_subscription_price", subscription_id=subscription_id,
                     unit_amount=unit_amount, currency=currency)
        return {"id": subscription_id}

    def create_portal_session(self, customer_id, return_url):
        self._record("create_portal_session", customer_id=customer_id, return_url=return_url)
        return f"https://billing.stripe.test/{customer_id}"

    def construct_event(self, payload, sig_header):
        # real verification, so signature tests exercise the stripe library
        return StripeGateway("", webhook_secret=self.webhook_secret).construct_event(payload, sig_header)
