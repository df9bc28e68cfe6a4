# kleanly/services/stripe_service.py
"""
Stripe gateway for sponsored placements.

Provides:
- Customer creation (idempotent per business)
- Subscription Checkout sessions priced inline with price_data
- Subscription retrieve / cancel / cancel-at-period-end / in-place re-price
- Billing portal sessions
- Webhook signature verification

Every call returns plain dicts and raises BillingProviderError on any Stripe
failure, so callers never see stripe's own exception types.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import stripe

from kleanly.errors import BillingProviderError, ValidationFailed


def _plain(obj: Any) -> Any:
    """StripeObject -> plain dict (recursively)."""
    if obj is None:
        return None
    if isinstance(obj, stripe.StripeObject):
        return json.loads(str(obj))
    return obj


class StripeGateway:
    def __init__(
        self,
        api_key: str,
        webhook_secret: str = "",
        timeout: float = 8.0,
        max_network_retries: int = 1,
    ):
        self.api_key = api_key or ""
        self.webhook_secret = webhook_secret or ""
        self.timeout = float(timeout)
        self.max_network_retries = int(max_network_retries)
        self._client: Optional[stripe.StripeClient] = None

    @classmethod
    def from_config(cls, config) -> "StripeGateway":
        return cls(
            api_key=config.get("STRIPE_SECRET_KEY", ""),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET", ""),
            timeout=config.get("STRIPE_API_TIMEOUT_SEC", 8),
            max_network_retries=config.get("STRIPE_MAX_NETWORK_RETRIES", 1),
        )

    @property
    def client(self) -> stripe.StripeClient:
        """Get configured Stripe client."""
        if not self.api_key:
            raise BillingProviderError("stripe_not_configured", "STRIPE_SECRET_KEY not configured")
        if self._client is None:
            self._client = stripe.StripeClient(
                self.api_key,
                http_client=stripe.RequestsClient(timeout=self.timeout),
                max_network_retries=self.max_network_retries,
            )
        return self._client

    def _call(self, what: str, fn, *args, **kwargs):
        try:
            return _plain(fn(*args, **kwargs))
        except stripe.StripeError as e:
            raise BillingProviderError(
                "billing_provider_error",
                f"Stripe {what} failed: {e.user_message or str(e)}",
                stripe_code=getattr(e, "code", None),
            ) from e

    # ----- customers -------------------------------------------------------

    def create_customer(self, business_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        params: Dict[str, Any] = {"metadata": {"business_id": business_id}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        customer = self._call(
            "customer create",
            self.client.customers.create,
            params=params,
            options={"idempotency_key": f"kleanly-customer-{business_id}"},
        )
        return customer["id"]

    # ----- checkout --------------------------------------------------------

    def create_subscription_checkout(
        self,
        *,
        customer_id: str,
        currency: str,
        unit_amount: int,
        product_name: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        description: Optional[str] = None,
        expires_at: Optional[int] = None,
    ) -> Dict[str, Any]:
        product_data: Dict[str, Any] = {"name": product_name}
        if description:
            product_data["description"] = description
        params: Dict[str, Any] = {
            "mode": "subscription",
            "customer": customer_id,
            "line_items": [{
                "price_data": {
                    "currency": currency,
                    "unit_amount": int(unit_amount),
                    "recurring": {"interval": "month"},
                    "product_data": product_data,
                },
                "quantity": 1,
            }],
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if expires_at:
            params["expires_at"] = int(expires_at)
        session = self._call("checkout session create", self.client.checkout.sessions.create, params=params)
        return {"id": session["id"], "url": session.get("url")}

    # ----- subscriptions ---------------------------------------------------

    def retrieve_subscription(self, subscription_id: str, expand: Optional[List[str]] = None) -> Dict[str, Any]:
        params = {"expand": expand} if expand else {}
        return self._call("subscription retrieve", self.client.subscriptions.retrieve, subscription_id, params=params)

    def cancel_subscription_now(self, subscription_id: str) -> Dict[str, Any]:
        return self._call("subscription cancel", self.client.subscriptions.cancel, subscription_id)

    def set_cancel_at_period_end(self, subscription_id: str, flag: bool) -> Dict[str, Any]:
        """
        Toggle cancel_at_period_end. A subscription that is already canceled,
        or already carries the requested flag, is returned untouched.
        """
        sub = self.retrieve_subscription(subscription_id)
        if sub.get("status") == "canceled" or bool(sub.get("cancel_at_period_end")) == bool(flag):
            return sub
        return self._call(
            "subscription update",
            self.client.subscriptions.update,
            subscription_id,
            params={"cancel_at_period_end": bool(flag)},
        )

    def update_subscription_price(self, subscription_id: str, unit_amount: int, currency: str) -> Dict[str, Any]:
        """Re-price the single item in place: no proration, billing anchor unchanged."""
        sub = self.retrieve_subscription(subscription_id)
        items = (sub.get("items") or {}).get("data") or []
        if not items:
            raise BillingProviderError("billing_provider_error", f"Subscription {subscription_id} has no items")
        item = items[0]
        price = item.get("price") or {}
        product = price.get("product")
        if isinstance(product, dict):
            product = product.get("id")
        return self._call(
            "subscription update",
            self.client.subscriptions.update,
            subscription_id,
            params={
                "items": [{
                    "id": item["id"],
                    "price_data": {
                        "currency": currency,
                        "product": product,
                        "unit_amount": int(unit_amount),
                        "recurring": {"interval": "month"},
                    },
                }],
                "proration_behavior": "none",
                "billing_cycle_anchor": "unchanged",
            },
        )

    # ----- portal ----------------------------------------------------------

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = self._call(
            "billing portal session create",
            self.client.billing_portal.sessions.create,
            params={"customer": customer_id, "return_url": return_url},
        )
        return session["url"]

    # ----- webhooks --------------------------------------------------------

    def construct_event(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """Verify the Stripe-Signature header and parse the event."""
        if not self.webhook_secret:
            raise BillingProviderError("webhook_not_configured", "STRIPE_WEBHOOK_SECRET not configured", status=500)
        if not sig_header:
            raise ValidationFailed("missing_signature", "Missing Stripe signature header")
        try:
            event = stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        except ValueError as e:
            raise ValidationFailed("invalid_payload", f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise ValidationFailed("invalid_signature", "Webhook signature verification failed") from e
        return _plain(event)
