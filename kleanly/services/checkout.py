# kleanly/services/checkout.py
"""
Checkout orchestration for sponsored placements.

Validates a purchase against the ledger and the availability resolver,
prices the remaining area and opens a Stripe subscription Checkout session.
Nothing is written to the ledger here: the reconciler does that once Stripe
confirms the subscription.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import IntegrityError

from kleanly.errors import (
    AvailabilityConflict,
    BillingProviderError,
    LedgerConflict,
    LockHeld,
    NotFound,
    ValidationFailed,
)
from kleanly.models import Business
from kleanly.models_billing import CANCELING, StripeCustomer
from kleanly.models_geo import Category, Region
from kleanly.services import geometry as geo

# Stripe accepts Checkout expiry between 30 minutes and 24 hours out.
_MIN_SESSION_TTL = 30 * 60
_MAX_SESSION_TTL = 24 * 60 * 60


def parse_slot(value: Any, allowed: Iterable[int]) -> int:
    if isinstance(value, bool):
        raise ValidationFailed("invalid_slot", "slot must be an integer")
    try:
        slot = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationFailed("invalid_slot", "slot must be an integer")
    if slot not in tuple(allowed):
        raise ValidationFailed("invalid_slot", f"slot {slot} is not offered", allowed=list(allowed))
    return slot


def parse_months(value: Any, max_months: int) -> int:
    if value in (None, ""):
        return 1
    try:
        months = int(value)
    except (TypeError, ValueError):
        raise ValidationFailed("invalid_months", "months must be an integer")
    if months < 1 or months > max_months:
        raise ValidationFailed("invalid_months", f"months must be between 1 and {max_months}")
    return months


@dataclass
class CheckoutResult:
    url: str
    session_id: str
    lock_id: str
    area_km2: float
    monthly_price: Decimal
    currency: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "url": self.url,
            "checkout_session_id": self.session_id,
            "lock_id": self.lock_id,
            "area_km2": round(self.area_km2, 6),
            "monthly_price": float(self.monthly_price),
            "currency": self.currency,
        }


class CheckoutOrchestrator:
    def __init__(
        self,
        session,
        resolver,
        pricing,
        ledger,
        locks,
        gateway,
        *,
        slots: Tuple[int, ...] = (1,),
        partial_claims: bool = True,
        max_months: int = 12,
        lock_ttl_seconds: int = 1800,
        site_url: str = "",
        success_path: str = "",
        cancel_path: str = "",
    ):
        self.session = session
        self.resolver = resolver
        self.pricing = pricing
        self.ledger = ledger
        self.locks = locks
        self.gateway = gateway
        self.slots = tuple(slots) or (1,)
        self.partial_claims = partial_claims
        self.max_months = max_months
        self.lock_ttl_seconds = lock_ttl_seconds
        self.site_url = (site_url or "").rstrip("/")
        self.success_path = success_path
        self.cancel_path = cancel_path

    # ---- validation -------------------------------------------------------

    def _require(self, value: Any, name: str) -> str:
        value = str(value).strip() if value is not None else ""
        if not value:
            raise ValidationFailed("missing_field", f"{name} is required", field=name)
        return value

    def load_scope(self, region_id: Any, category_id: Any, slot: Any) -> Tuple[Region, Category, int]:
        region_id = self._require(region_id, "areaId")
        category_id = self._require(category_id, "categoryId")
        slot = parse_slot(slot, self.slots)
        region = self.session.get(Region, region_id)
        if region is None:
            raise NotFound("area_not_found", "Area not found", area_id=region_id)
        category = self.session.get(Category, category_id)
        if category is None:
            raise NotFound("category_not_found", "Category not found", category_id=category_id)
        return region, category, slot

    def load_business(self, business_id: Any) -> Business:
        business_id = self._require(business_id, "businessId")
        business = self.session.get(Business, business_id)
        if business is None:
            raise NotFound("business_not_found", "Business not found", business_id=business_id)
        return business

    # ---- previews ---------------------------------------------------------

    def _price_payload(self, area_km2: float, category_id: str, slot: int, months: int) -> Dict[str, Any]:
        monthly = self.pricing.monthly_price(area_km2, category_id, slot)
        tier = self.pricing.tier_for(category_id, slot)
        return {
            "monthly_price": float(monthly),
            "monthly_price_minor": self.pricing.to_minor_units(monthly),
            "months": months,
            "total_price": float(self.pricing.total_price(monthly, months)),
            "currency": self.pricing.currency,
            "rate_per_km2": float(tier.rate),
            "min_price": float(tier.minimum),
        }

    def preview(self, region_id: Any, category_id: Any, slot: Any, months: Any = None) -> Dict[str, Any]:
        """Read-only: what can be bought here right now and at what price."""
        region, category, slot = self.load_scope(region_id, category_id, slot)
        months = parse_months(months, self.max_months)
        avail = self.resolver.remaining(region.id, category.id, slot)
        body = {
            "ok": True,
            "area_id": region.id,
            "category_id": category.id,
            "slot": slot,
            "sold_out": avail.sold_out,
            "geojson": avail.geojson(),
            "area_km2": round(avail.area_km2, 6),
            "total_km2": round(avail.total_km2, 6),
        }
        body.update(self._price_payload(avail.area_km2, category.id, slot, months))
        return body

    # ---- checkout ---------------------------------------------------------

    def _check_ownership(self, business_id: str, region_id: str, category_id: str, slot: int) -> None:
        own = self.ledger.live_for_business(business_id, region_id, category_id, slot)
        if own is not None:
            raise AvailabilityConflict(
                "already_sponsored",
                "You already sponsor this area",
                owner_business_id=business_id,
                sponsorship_id=own.id,
            )
        if not self.partial_claims:
            others = self.ledger.live_in_scope(region_id, category_id, slot, exclude_business_id=business_id)
            if others:
                raise AvailabilityConflict(
                    "slot_taken",
                    "This slot is already sponsored by another business",
                    owner_business_id=others[0].business_id,
                )

    def ensure_customer(self, business: Business) -> str:
        """Reuse the stored Stripe customer for a business, or create one."""
        existing = self.session.query(StripeCustomer).filter_by(business_id=business.id).first()
        if existing:
            return existing.stripe_customer_id

        customer_id = self.gateway.create_customer(business.id, business.contact_email, business.business_name)
        self.session.add(StripeCustomer(business_id=business.id, stripe_customer_id=customer_id))
        try:
            self.session.commit()
        except IntegrityError:
            # a concurrent request stored it first
            self.session.rollback()
            existing = self.session.query(StripeCustomer).filter_by(business_id=business.id).first()
            if existing is None:
                raise
            return existing.stripe_customer_id

        current_app.logger.info(f"Created Stripe customer {customer_id} for business {business.id}")
        return customer_id

    def _take_lock(self, lock_id: Optional[str], business_id: str, region_id: str, category_id: str, slot: int) -> str:
        lock = self.locks.get_valid(lock_id, business_id, region_id, category_id, slot)
        if lock is not None:
            return lock.id
        try:
            return self.locks.acquire(region_id, category_id, slot, business_id)
        except LockHeld as e:
            raise AvailabilityConflict(
                "checkout_in_progress",
                "Another business is checking out this area, try again shortly",
                lock_business_id=e.business_id or None,
            )

    def _session_expiry(self) -> Optional[int]:
        ttl = int(self.lock_ttl_seconds)
        if ttl < _MIN_SESSION_TTL or ttl > _MAX_SESSION_TTL:
            return None
        return int(time.time()) + ttl

    def create_checkout(
        self,
        business_id: Any,
        region_id: Any,
        category_id: Any,
        slot: Any,
        lock_id: Optional[str] = None,
    ) -> CheckoutResult:
        business = self.load_business(business_id)
        region, category, slot = self.load_scope(region_id, category_id, slot)

        self._check_ownership(business.id, region.id, category.id, slot)

        avail = self.resolver.remaining(region.id, category.id, slot)
        if avail.sold_out:
            raise AvailabilityConflict("no_remaining", "No remaining area to sponsor in this slot")

        monthly = self.pricing.monthly_price(avail.area_km2, category.id, slot)
        unit_amount = self.pricing.to_minor_units(monthly)

        lock_id = self._take_lock(lock_id, business.id, region.id, category.id, slot)
        metadata = {
            "kind": "sponsored_area",
            "business_id": business.id,
            "area_id": region.id,
            "category_id": category.id,
            "slot": str(slot),
            "lock_id": lock_id,
            "area_km2": f"{avail.area_km2:.6f}",
            "monthly_price_minor": str(unit_amount),
            "currency": self.pricing.currency,
        }
        try:
            customer_id = self.ensure_customer(business)
            session = self.gateway.create_subscription_checkout(
                customer_id=customer_id,
                currency=self.pricing.currency,
                unit_amount=unit_amount,
                product_name=f"Sponsored area: {region.name} ({category.name}, slot {slot})",
                description=f"{avail.area_km2:.2f} km² sponsored placement",
                metadata=metadata,
                success_url=self.site_url + self.success_path,
                cancel_url=self.site_url + self.cancel_path,
                expires_at=self._session_expiry(),
            )
        except Exception:
            # whatever failed, the lock must not outlive this request
            self.session.rollback()
            self.locks.release(lock_id, "checkout_failed")
            raise

        current_app.logger.info(
            f"Created sponsored checkout session {session['id']} business={business.id} "
            f"region={region.id} category={category.id} slot={slot} "
            f"area_km2={avail.area_km2:.6f} price_minor={unit_amount}"
        )
        return CheckoutResult(
            url=session.get("url") or "",
            session_id=session["id"],
            lock_id=lock_id,
            area_km2=avail.area_km2,
            monthly_price=monthly,
            currency=self.pricing.currency,
        )

    # ---- upgrade (top-up of an existing sponsorship) ----------------------

    def _own_live(self, business_id: str, region_id: str, category_id: str, slot: int):
        own = self.ledger.live_for_business(business_id, region_id, category_id, slot)
        if own is None:
            raise AvailabilityConflict("no_subscription", "No active sponsorship to upgrade")
        return own

    def upgrade_preview(self, business_id: Any, region_id: Any, category_id: Any, slot: Any) -> Dict[str, Any]:
        business = self.load_business(business_id)
        region, category, slot = self.load_scope(region_id, category_id, slot)
        own = self.ledger.live_for_business(business.id, region.id, category.id, slot)
        avail = self.resolver.remaining(region.id, category.id, slot)

        current_km2 = float(own.area_km2 or 0.0) if own else 0.0
        new_total = current_km2 + (0.0 if avail.sold_out else avail.area_km2)
        body = {
            "ok": True,
            "has_existing": own is not None,
            "sponsorship_id": own.id if own else None,
            "current_km2": round(current_km2, 6),
            "extra_km2": round(0.0 if avail.sold_out else avail.area_km2, 6),
            "new_total_km2": round(new_total, 6),
            "sold_out": avail.sold_out,
            "extra_geojson": avail.geojson(),
            "current_price_minor": own.price_monthly_minor if own else None,
        }
        body.update(self._price_payload(new_total, category.id, slot, 1))
        return body

    def upgrade(self, business_id: Any, region_id: Any, category_id: Any, slot: Any) -> Dict[str, Any]:
        """
        Grow a live sponsorship in place by everything still available.

        The ledger write goes first so the new area is claimed atomically; if
        Stripe then refuses the re-price, the row is put back as it was.
        """
        business = self.load_business(business_id)
        region, category, slot = self.load_scope(region_id, category_id, slot)
        own = self._own_live(business.id, region.id, category.id, slot)
        if own.status == CANCELING:
            raise AvailabilityConflict("subscription_canceling", "Reactivate the sponsorship before upgrading")
        if not own.stripe_subscription_id:
            raise AvailabilityConflict("no_subscription", "Sponsorship has no billing subscription")

        avail = self.resolver.remaining(region.id, category.id, slot)
        if avail.sold_out:
            raise AvailabilityConflict("no_remaining", "No remaining area to add")

        old_geometry = geo.normalize(own.geometry_geojson)
        old_area = float(own.area_km2 or 0.0)
        old_price = own.price_monthly_minor

        merged = geo.union(old_geometry, avail.geometry)
        new_area = geo.area_km2(merged)
        monthly = self.pricing.monthly_price(new_area, category.id, slot)
        unit_amount = self.pricing.to_minor_units(monthly)

        try:
            self.ledger.expand(own, merged, new_area, unit_amount)
        except LedgerConflict:
            raise AvailabilityConflict("no_remaining", "The extra area was taken while upgrading")

        try:
            self.gateway.update_subscription_price(own.stripe_subscription_id, unit_amount, self.pricing.currency)
        except BillingProviderError:
            current_app.logger.error(
                f"Stripe re-price failed for {own.stripe_subscription_id}; reverting upgrade of sponsorship {own.id}",
                exc_info=True,
            )
            if old_geometry is not None:
                self.ledger.expand(own, old_geometry, old_area, old_price or 0)
            raise

        current_app.logger.info(
            f"Upgraded sponsorship {own.id}: {old_area:.6f} -> {new_area:.6f} km², price_minor={unit_amount}"
        )
        return {
            "ok": True,
            "sponsorship": own.to_dict(),
            "added_km2": round(new_area - old_area, 6),
            "monthly_price": float(monthly),
            "currency": self.pricing.currency,
        }
