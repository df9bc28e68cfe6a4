# kleanly/services/reconciler.py
"""
Stripe webhook reconciliation for sponsored placements.

Provides:
- One typed parse of checkout/subscription metadata (PurchaseContext)
- Subscription lifecycle -> ledger writes, with a fresh availability check at
  confirmation time and immediate Stripe cancellation when the claim loses
- Invoice upserts keyed by Stripe invoice id
- An event log so redelivered event ids short-circuit

Every handled outcome, conflicts included, is returned to the webhook as a
success; only unexpected errors propagate (and make Stripe retry).
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from flask import current_app
from sqlalchemy.exc import IntegrityError

from kleanly.errors import BillingProviderError, LedgerConflict, NotFound
from kleanly.models_billing import (
    CANCELED,
    BillingEvent,
    SponsoredInvoice,
    StripeCustomer,
    is_active_like,
)
from kleanly.monitoring import add_breadcrumb, capture_exception
from kleanly.services.ledger import SponsorshipClaim, status_from_provider

# Accepted spellings, first match wins.
_BUSINESS_KEYS = ("business_id", "businessId", "cleaner_id", "cleanerId")
_REGION_KEYS = ("area_id", "areaId", "region_id", "regionId")
_CATEGORY_KEYS = ("category_id", "categoryId", "category")
_SLOT_KEYS = ("slot", "slot_id", "slotId")
_LOCK_KEYS = ("lock_id", "lockId")

_INVOICE_STATUS_BY_EVENT = {
    "invoice.finalized": "open",
    "invoice.paid": "paid",
    "invoice.payment_failed": "open",
    "invoice.voided": "void",
}


def _first(meta: Mapping[str, Any], keys) -> Optional[str]:
    for key in keys:
        value = meta.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def _float(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _int(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _ts(value: Any) -> Optional[datetime]:
    """Unix seconds -> naive UTC datetime."""
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _ref_id(value: Any) -> Optional[str]:
    """Stripe references arrive either as an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


@dataclass(frozen=True)
class PurchaseContext:
    business_id: str
    region_id: str
    category_id: str
    slot: int
    lock_id: Optional[str] = None
    priced_area_km2: Optional[float] = None
    monthly_price_minor: Optional[int] = None


@dataclass(frozen=True)
class IncompleteContext:
    missing: Tuple[str, ...]
    lock_id: Optional[str] = None


def parse_purchase_metadata(
    meta: Optional[Mapping[str, Any]],
    fallback_business_id: Optional[str] = None,
) -> Union[PurchaseContext, IncompleteContext]:
    meta = meta or {}
    business_id = _first(meta, _BUSINESS_KEYS) or fallback_business_id
    region_id = _first(meta, _REGION_KEYS)
    category_id = _first(meta, _CATEGORY_KEYS)
    slot = _int(_first(meta, _SLOT_KEYS))
    lock_id = _first(meta, _LOCK_KEYS)

    missing = []
    if not business_id:
        missing.append("business_id")
    if not region_id:
        missing.append("area_id")
    if not category_id:
        missing.append("category_id")
    if slot is None or slot < 1:
        missing.append("slot")
    if missing:
        return IncompleteContext(missing=tuple(missing), lock_id=lock_id)

    return PurchaseContext(
        business_id=business_id,
        region_id=region_id,
        category_id=category_id,
        slot=slot,
        lock_id=lock_id,
        priced_area_km2=_float(meta.get("area_km2")),
        monthly_price_minor=_int(meta.get("monthly_price_minor") or meta.get("monthly_price_pennies")),
    )


@dataclass
class ReconcileOutcome:
    action: str  # activated, updated, canceled, skipped, recorded, ignored, duplicate
    reason: Optional[str] = None
    subscription_id: Optional[str] = None
    sponsorship_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _subscription_item(sub: Mapping[str, Any]) -> Dict[str, Any]:
    items = (sub.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _period_end(sub: Mapping[str, Any]) -> Optional[datetime]:
    # newer API versions moved current_period_end onto the subscription item
    return _ts(sub.get("current_period_end") or _subscription_item(sub).get("current_period_end"))


def _unit_amount(sub: Mapping[str, Any]) -> Optional[int]:
    price = _subscription_item(sub).get("price") or {}
    return _int(price.get("unit_amount"))


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    sub_id = _ref_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return _ref_id(details.get("subscription"))


class BillingEventReconciler:
    def __init__(self, session, resolver, ledger, locks, gateway, pricing, epsilon_km2: float = 1e-6):
        self.session = session
        self.resolver = resolver
        self.ledger = ledger
        self.locks = locks
        self.gateway = gateway
        self.pricing = pricing
        self.epsilon_km2 = epsilon_km2
        self.handlers = {
            "checkout.session.completed": self.handle_checkout_completed,
            "customer.subscription.created": self.handle_subscription,
            "customer.subscription.updated": self.handle_subscription,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "invoice.finalized": self.handle_invoice,
            "invoice.paid": self.handle_invoice,
            "invoice.payment_failed": self.handle_invoice,
            "invoice.voided": self.handle_invoice,
        }

    # ---- entry point ------------------------------------------------------

    def process(self, event: Mapping[str, Any]) -> ReconcileOutcome:
        """Dispatch one verified Stripe event and record the outcome."""
        event_id = event.get("id")
        event_type = event.get("type") or ""
        handler = self.handlers.get(event_type)
        if handler is None:
            current_app.logger.debug(f"No handler for webhook event: {event_type}")
            return ReconcileOutcome("ignored", "unhandled_event")

        if event_id and self.session.query(BillingEvent).filter_by(stripe_event_id=event_id).first():
            current_app.logger.info(f"Webhook event {event_id} already processed")
            return ReconcileOutcome("duplicate", "event_already_processed")

        obj = ((event.get("data") or {}).get("object")) or {}
        current_app.logger.info(f"Processing webhook event: {event_type} ({event_id})")
        add_breadcrumb(f"{event_type} {event_id}", category="stripe.webhook")
        outcome = handler(obj, event_type)

        level = "warning" if outcome.action == "canceled" else "info"
        getattr(current_app.logger, level)(
            f"Webhook {event_type} ({event_id}) -> {outcome.action}"
            f"{' reason=' + outcome.reason if outcome.reason else ''}"
            f" sub={outcome.subscription_id} sponsorship={outcome.sponsorship_id}"
        )
        if event_id:
            self._record_event(event_id, event_type, outcome)
        return outcome

    def _record_event(self, event_id: str, event_type: str, outcome: ReconcileOutcome) -> None:
        self.session.add(BillingEvent(
            stripe_event_id=event_id,
            event_type=event_type,
            stripe_subscription_id=outcome.subscription_id,
            outcome=outcome.action,
            reason=outcome.reason,
        ))
        try:
            self.session.commit()
        except IntegrityError:
            # a concurrent delivery of the same event logged it first
            self.session.rollback()

    # ---- helpers ----------------------------------------------------------

    def _business_for_customer(self, customer_id: Optional[str]) -> Optional[str]:
        if not customer_id:
            return None
        row = self.session.query(StripeCustomer).filter_by(stripe_customer_id=customer_id).first()
        return row.business_id if row else None

    def resolve_context(self, meta: Mapping[str, Any], customer_id: Optional[str]):
        ctx = parse_purchase_metadata(meta)
        if isinstance(ctx, IncompleteContext) and "business_id" in ctx.missing:
            fallback = self._business_for_customer(customer_id)
            if fallback:
                ctx = parse_purchase_metadata(meta, fallback_business_id=fallback)
        return ctx

    def _release(self, ctx, reason: str) -> None:
        lock_id = getattr(ctx, "lock_id", None)
        if lock_id:
            self.locks.release(lock_id, reason)

    def _cancel_remote(self, sub_id: str, reason: str) -> None:
        try:
            self.gateway.cancel_subscription_now(sub_id)
            current_app.logger.warning(f"Canceled Stripe subscription {sub_id} ({reason})")
        except BillingProviderError as e:
            current_app.logger.error(
                f"Failed to cancel Stripe subscription {sub_id} after {reason}: {e}", exc_info=True
            )
            capture_exception(e, subscription_id=sub_id, reason=reason)

    def _claim(self, sub: Mapping[str, Any], ctx: PurchaseContext, status: str) -> SponsorshipClaim:
        item_price = (_subscription_item(sub).get("price") or {})
        return SponsorshipClaim(
            business_id=ctx.business_id,
            region_id=ctx.region_id,
            category_id=ctx.category_id,
            slot=ctx.slot,
            status=status,
            price_monthly_minor=_unit_amount(sub) or ctx.monthly_price_minor,
            currency=(sub.get("currency") or item_price.get("currency") or self.pricing.currency),
            stripe_subscription_id=sub.get("id"),
            stripe_customer_id=_ref_id(sub.get("customer")),
            current_period_end=_period_end(sub),
            cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
        )

    def _tombstone(self, sub: Mapping[str, Any], ctx: PurchaseContext, reason: str, status: str = CANCELED):
        """Canceled, geometry-less row so late or replayed events for this subscription stay no-ops."""
        try:
            return self.ledger.record_rejection(self._claim(sub, ctx, status), reason)
        except LedgerConflict as e:
            # e.g. metadata pointing at an area that no longer exists
            current_app.logger.error(f"Could not record canceled subscription {sub.get('id')}: {e}")
            return None

    def _reject(self, sub: Mapping[str, Any], ctx: PurchaseContext, status: str, reason: str) -> ReconcileOutcome:
        sub_id = sub.get("id")
        self._cancel_remote(sub_id, reason)
        row = self._tombstone(sub, ctx, reason, status)
        self._release(ctx, reason)
        add_breadcrumb(f"{sub_id} rejected: {reason}", category="sponsorship", level="warning")
        return ReconcileOutcome("canceled", reason, sub_id, row.id if row else None)

    def _maybe_reprice(self, row, ctx: PurchaseContext, sub: Mapping[str, Any]) -> None:
        """The claim shrank since checkout; bring the price down to match."""
        if ctx.priced_area_km2 is None or row.area_km2 >= ctx.priced_area_km2 - self.epsilon_km2:
            return
        current_minor = row.price_monthly_minor
        monthly = self.pricing.monthly_price(row.area_km2, ctx.category_id, ctx.slot)
        new_minor = self.pricing.to_minor_units(monthly)
        if current_minor is not None and new_minor >= current_minor:
            return
        try:
            self.gateway.update_subscription_price(row.stripe_subscription_id, new_minor, row.currency)
        except BillingProviderError as e:
            current_app.logger.error(f"Re-price of {row.stripe_subscription_id} failed: {e}", exc_info=True)
            capture_exception(e, subscription_id=row.stripe_subscription_id, reason="reprice")
            return
        self.ledger.set_price(row, new_minor)
        current_app.logger.info(
            f"Re-priced sponsorship {row.id}: {ctx.priced_area_km2:.6f} -> {row.area_km2:.6f} km², "
            f"price_minor {current_minor} -> {new_minor}"
        )

    # ---- subscription path ------------------------------------------------

    def apply_subscription(self, sub: Mapping[str, Any], meta: Optional[Mapping[str, Any]] = None) -> ReconcileOutcome:
        """
        Bring the ledger in line with one Stripe subscription object.

        Idempotent per subscription id: a live row is only refreshed, a
        canceled row is terminal, and only a first confirmation runs the
        availability check and claims geometry.
        """
        sub_id = sub.get("id")
        if not sub_id:
            return ReconcileOutcome("skipped", "missing_subscription_id")
        meta = meta if meta is not None else (sub.get("metadata") or {})
        ctx = self.resolve_context(meta, _ref_id(sub.get("customer")))
        status = status_from_provider(sub.get("status"), bool(sub.get("cancel_at_period_end")))
        existing = self.ledger.by_subscription(sub_id)

        if existing is not None and existing.status == CANCELED:
            return ReconcileOutcome("skipped", "already_canceled", sub_id, existing.id)

        if existing is not None and existing.is_live:
            if status == CANCELED:
                self.ledger.mark_canceled(sub_id, "subscription_canceled")
                self._release(ctx, "subscription_canceled")
                return ReconcileOutcome("canceled", "subscription_canceled", sub_id, existing.id)
            if not is_active_like(status):
                # provider reports something unknown; keep the paid claim as is
                return ReconcileOutcome("skipped", "unknown_status", sub_id, existing.id)
            self.ledger.refresh_billing(
                existing,
                status,
                current_period_end=_period_end(sub),
                cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
                price_monthly_minor=_unit_amount(sub),
            )
            self._release(ctx, "checkout_completed")
            return ReconcileOutcome("updated", None, sub_id, existing.id)

        if isinstance(ctx, IncompleteContext):
            current_app.logger.warning(
                f"Subscription {sub_id} missing metadata {','.join(ctx.missing)}; not writing a sponsorship"
            )
            return ReconcileOutcome("skipped", "missing_metadata", sub_id)

        if status == CANCELED:
            # canceled before we ever saw it live: leave a tombstone so late events stay no-ops
            row = self._tombstone(sub, ctx, "subscription_canceled")
            self._release(ctx, "subscription_canceled")
            return ReconcileOutcome("canceled", "subscription_canceled", sub_id, row.id if row else None)

        if not is_active_like(status):
            return ReconcileOutcome("skipped", "not_live", sub_id)

        try:
            avail = self.resolver.remaining(ctx.region_id, ctx.category_id, ctx.slot)
        except NotFound:
            current_app.logger.warning(f"Subscription {sub_id} references unknown area {ctx.region_id}")
            self._cancel_remote(sub_id, "no_remaining")
            self._release(ctx, "no_remaining")
            return ReconcileOutcome("canceled", "no_remaining", sub_id)
        if avail.sold_out:
            return self._reject(sub, ctx, status, "no_remaining")

        claim = self._claim(sub, ctx, status)
        claim.geometry = avail.geometry
        claim.area_km2 = avail.area_km2
        try:
            row = self.ledger.upsert(claim)
        except LedgerConflict as e:
            capture_exception(e, subscription_id=sub_id, reason="db_write_failed")
            return self._reject(sub, ctx, status, "db_write_failed")

        self._maybe_reprice(row, ctx, sub)
        self._release(ctx, "checkout_completed")
        return ReconcileOutcome("activated", None, sub_id, row.id)

    # ---- event handlers ---------------------------------------------------

    def handle_checkout_completed(self, session: Mapping[str, Any], event_type: str = "") -> ReconcileOutcome:
        if session.get("mode") != "subscription":
            return ReconcileOutcome("ignored", "not_subscription_mode")
        sub_id = _ref_id(session.get("subscription"))
        if not sub_id:
            return ReconcileOutcome("skipped", "missing_subscription_id")
        try:
            sub = self.gateway.retrieve_subscription(sub_id, expand=["latest_invoice"])
        except BillingProviderError as e:
            # customer.subscription.created carries the same metadata and will follow
            current_app.logger.error(f"Could not fetch subscription {sub_id}: {e}", exc_info=True)
            capture_exception(e, subscription_id=sub_id, reason="fetch_subscription")
            return ReconcileOutcome("skipped", "provider_error", sub_id)

        meta = dict(sub.get("metadata") or {})
        meta.update(session.get("metadata") or {})
        if not sub.get("customer") and session.get("customer"):
            sub = dict(sub, customer=session.get("customer"))
        outcome = self.apply_subscription(sub, meta)

        latest = sub.get("latest_invoice")
        if isinstance(latest, dict) and latest.get("id"):
            self._upsert_invoice(latest, "")
        return outcome

    def handle_subscription(self, sub: Mapping[str, Any], event_type: str = "") -> ReconcileOutcome:
        return self.apply_subscription(sub)

    def handle_subscription_deleted(self, sub: Mapping[str, Any], event_type: str = "") -> ReconcileOutcome:
        sub_id = sub.get("id")
        row = self.ledger.mark_canceled(sub_id, "subscription_deleted")
        ctx = self.resolve_context(sub.get("metadata") or {}, _ref_id(sub.get("customer")))
        if row is None and isinstance(ctx, PurchaseContext):
            row = self._tombstone(sub, ctx, "subscription_deleted")
        self._release(ctx, "subscription_deleted")
        if row is None:
            return ReconcileOutcome("skipped", "unknown_subscription", sub_id)
        return ReconcileOutcome("canceled", "subscription_deleted", sub_id, row.id)

    def handle_invoice(self, invoice: Mapping[str, Any], event_type: str = "") -> ReconcileOutcome:
        if not invoice.get("id"):
            return ReconcileOutcome("skipped", "missing_invoice_id")
        sub_id = _invoice_subscription_id(invoice)
        if sub_id and self.ledger.by_subscription(sub_id) is None:
            try:
                sub = self.gateway.retrieve_subscription(sub_id)
            except BillingProviderError as e:
                current_app.logger.error(f"Could not fetch subscription {sub_id} for invoice: {e}", exc_info=True)
                capture_exception(e, subscription_id=sub_id, reason="fetch_subscription")
            else:
                self.apply_subscription(sub)
        return self._upsert_invoice(invoice, event_type)

    def _upsert_invoice(self, invoice: Mapping[str, Any], event_type: str) -> ReconcileOutcome:
        sub_id = _invoice_subscription_id(invoice)
        row = self.ledger.by_subscription(sub_id)
        values = {
            "sponsorship_id": row.id if row else None,
            "stripe_subscription_id": sub_id,
            "hosted_invoice_url": invoice.get("hosted_invoice_url"),
            "invoice_pdf": invoice.get("invoice_pdf"),
            "amount_due_minor": _int(invoice.get("amount_due")),
            "amount_paid_minor": _int(invoice.get("amount_paid")),
            "currency": invoice.get("currency"),
            "status": invoice.get("status") or _INVOICE_STATUS_BY_EVENT.get(event_type),
            "period_start": _ts(invoice.get("period_start")),
            "period_end": _ts(invoice.get("period_end")),
        }

        for attempt in range(2):
            record = self.session.query(SponsoredInvoice).filter_by(stripe_invoice_id=invoice["id"]).first()
            if record is None:
                record = SponsoredInvoice(stripe_invoice_id=invoice["id"])
                self.session.add(record)
            for key, value in values.items():
                # never unlink or blank out what an earlier event already stored
                if value is not None:
                    setattr(record, key, value)
            try:
                self.session.commit()
                break
            except IntegrityError:
                self.session.rollback()
                if attempt:
                    raise

        return ReconcileOutcome(
            "recorded",
            "linked" if row else "unlinked",
            sub_id,
            row.id if row else None,
        )
