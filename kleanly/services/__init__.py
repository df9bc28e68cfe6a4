# kleanly/services/__init__.py
"""
Wiring for the sponsorship services.

The services themselves take their collaborators as arguments; these helpers
build them from the current app's config, database session and the Stripe
gateway stored on app.extensions by create_app.
"""
from flask import current_app

from kleanly.extensions import db


def get_gateway():
    return current_app.extensions["stripe_gateway"]


def _epsilon() -> float:
    return float(current_app.config.get("SPONSOR_AREA_EPSILON_KM2", 1e-6))


def make_resolver():
    from kleanly.services.availability import AvailabilityResolver
    return AvailabilityResolver(db.session, epsilon_km2=_epsilon())


def make_pricing():
    from kleanly.services.pricing import PricingEngine
    return PricingEngine.from_config(current_app.config)


def make_ledger():
    from kleanly.services.ledger import SponsorshipLedger
    return SponsorshipLedger(db.session, epsilon_km2=_epsilon())


def make_locks():
    from kleanly.services.locks import LockManager
    return LockManager(db.session, ttl_seconds=current_app.config.get("SPONSOR_LOCK_TTL_SECONDS", 1800))


def make_orchestrator(resolver=None):
    from kleanly.services.checkout import CheckoutOrchestrator
    cfg = current_app.config
    return CheckoutOrchestrator(
        db.session,
        resolver or make_resolver(),
        make_pricing(),
        make_ledger(),
        make_locks(),
        get_gateway(),
        slots=tuple(cfg.get("SPONSOR_SLOTS") or (1,)),
        partial_claims=cfg.get("SPONSOR_PARTIAL_CLAIMS", True),
        max_months=cfg.get("SPONSOR_MAX_MONTHS", 12),
        lock_ttl_seconds=cfg.get("SPONSOR_LOCK_TTL_SECONDS", 1800),
        site_url=cfg.get("PUBLIC_SITE_URL", ""),
        success_path=cfg.get("STRIPE_SUCCESS_PATH", ""),
        cancel_path=cfg.get("STRIPE_CANCEL_PATH", ""),
    )


def make_subscriptions():
    from kleanly.services.subscriptions import SubscriptionManager
    return SubscriptionManager(db.session, make_ledger(), get_gateway())


def make_reconciler(resolver=None):
    from kleanly.services.reconciler import BillingEventReconciler
    return BillingEventReconciler(
        db.session,
        resolver or make_resolver(),
        make_ledger(),
        make_locks(),
        get_gateway(),
        make_pricing(),
        epsilon_km2=_epsilon(),
    )
