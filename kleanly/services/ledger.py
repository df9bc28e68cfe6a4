# kleanly/services/ledger.py
"""
Sponsorship ledger: the authoritative record of who owns which geometry.

Every write that makes or keeps a row live runs, inside one transaction:

1. a per-scope advisory lock (PostgreSQL) so concurrent claimants serialize,
2. the partial unique index (one live row per business/region/category/slot),
3. a disjointness check against every other live row in the scope.

Any failure rolls the transaction back and raises LedgerConflict.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from flask import current_app
from shapely.geometry.base import BaseGeometry
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from kleanly.errors import LedgerConflict
from kleanly.models import utcnow
from kleanly.models_billing import (
    ACTIVE,
    ACTIVE_LIKE_STATUSES,
    CANCELED,
    CANCELING,
    PROVISIONAL,
    Sponsorship,
)
from kleanly.services import geometry as geo

_TERMINAL_PROVIDER_STATUSES = ("canceled", "incomplete_expired")


def status_from_provider(provider_status: Optional[str], cancel_at_period_end: bool = False) -> str:
    """Map a Stripe subscription status onto a ledger status."""
    s = (provider_status or "").lower()
    if s in _TERMINAL_PROVIDER_STATUSES:
        return CANCELED
    if s in ACTIVE_LIKE_STATUSES:
        return CANCELING if cancel_at_period_end else s
    return PROVISIONAL


@dataclass
class SponsorshipClaim:
    business_id: str
    region_id: str
    category_id: str
    slot: int
    status: str
    geometry: Optional[BaseGeometry] = None
    area_km2: float = 0.0
    price_monthly_minor: Optional[int] = None
    currency: str = "gbp"
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancel_reason: Optional[str] = None


class SponsorshipLedger:
    def __init__(self, session, epsilon_km2: float = 1e-6):
        self.session = session
        self.epsilon_km2 = epsilon_km2

    # ---- reads ------------------------------------------------------------

    def get(self, sponsorship_id: str) -> Optional[Sponsorship]:
        return self.session.get(Sponsorship, sponsorship_id)

    def by_subscription(self, stripe_subscription_id: Optional[str]) -> Optional[Sponsorship]:
        if not stripe_subscription_id:
            return None
        return (
            self.session.query(Sponsorship)
            .filter(Sponsorship.stripe_subscription_id == stripe_subscription_id)
            .first()
        )

    def live_for_business(self, business_id: str, region_id: str, category_id: str, slot: int) -> Optional[Sponsorship]:
        return (
            self.session.query(Sponsorship)
            .filter(
                Sponsorship.business_id == business_id,
                Sponsorship.region_id == region_id,
                Sponsorship.category_id == category_id,
                Sponsorship.slot == slot,
                Sponsorship.status.in_(ACTIVE_LIKE_STATUSES),
            )
            .first()
        )

    def live_in_scope(
        self,
        region_id: str,
        category_id: str,
        slot: int,
        exclude_id: Optional[str] = None,
        exclude_business_id: Optional[str] = None,
        for_update: bool = False,
    ) -> List[Sponsorship]:
        q = self.session.query(Sponsorship).filter(
            Sponsorship.region_id == region_id,
            Sponsorship.category_id == category_id,
            Sponsorship.slot == slot,
            Sponsorship.status.in_(ACTIVE_LIKE_STATUSES),
        )
        if exclude_id:
            q = q.filter(Sponsorship.id != exclude_id)
        if exclude_business_id:
            q = q.filter(Sponsorship.business_id != exclude_business_id)
        if for_update:
            q = q.with_for_update()
        return q.order_by(Sponsorship.created_at.asc()).all()

    def for_business_in_region(
        self,
        business_id: str,
        region_id: str,
        slot: int,
        category_id: Optional[str] = None,
        live_only: bool = True,
    ) -> List[Sponsorship]:
        q = self.session.query(Sponsorship).filter(
            Sponsorship.business_id == business_id,
            Sponsorship.region_id == region_id,
            Sponsorship.slot == slot,
        )
        if category_id:
            q = q.filter(Sponsorship.category_id == category_id)
        if live_only:
            q = q.filter(Sponsorship.status.in_(ACTIVE_LIKE_STATUSES))
        return q.order_by(Sponsorship.created_at.desc()).all()

    def live_for_category(self, category_id: str) -> List[Sponsorship]:
        return (
            self.session.query(Sponsorship)
            .filter(
                Sponsorship.category_id == category_id,
                Sponsorship.status.in_(ACTIVE_LIKE_STATUSES),
            )
            .all()
        )

    # ---- transaction plumbing ---------------------------------------------

    def _lock_scope(self, region_id: str, category_id: str, slot: int) -> None:
        bind = self.session.get_bind()
        if bind.dialect.name != "postgresql":
            return
        with self.session.no_autoflush:
            self.session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:scope))"),
                {"scope": f"sponsorship:{region_id}:{category_id}:{slot}"},
            )

    def _assert_claimable(self, row: Sponsorship) -> None:
        mine = geo.normalize(row.geometry_geojson)
        if mine is None:
            raise LedgerConflict("invalid_geometry", f"sponsorship {row.id} has no usable geometry")
        others = self.live_in_scope(row.region_id, row.category_id, row.slot, exclude_id=row.id, for_update=True)
        for other in others:
            if other.business_id == row.business_id:
                raise LedgerConflict("duplicate_owner", other.id)
            theirs = geo.normalize(other.geometry_geojson)
            if theirs is None:
                raise LedgerConflict("overlap", f"{other.id} has no readable geometry")
            if geo.overlaps(mine, theirs, self.epsilon_km2):
                raise LedgerConflict("overlap", other.id)

    def _commit(self, row: Sponsorship, check: bool) -> None:
        try:
            self.session.flush()
            if check:
                self._assert_claimable(row)
            self.session.commit()
        except LedgerConflict as e:
            self.session.rollback()
            current_app.logger.warning(f"Ledger write rejected: {e}")
            raise
        except IntegrityError as e:
            self.session.rollback()
            current_app.logger.warning(f"Ledger write hit a constraint: {e.orig}")
            raise LedgerConflict("duplicate_owner", str(e.orig)) from e

    # ---- writes -----------------------------------------------------------

    def upsert(self, claim: SponsorshipClaim) -> Sponsorship:
        """
        Insert or update the row keyed by stripe_subscription_id.

        A claim without geometry keeps whatever geometry the row already has.
        Raises LedgerConflict if the resulting live row would overlap another
        live row in scope or duplicate the business's ownership.
        """
        self._lock_scope(claim.region_id, claim.category_id, claim.slot)
        row = self.by_subscription(claim.stripe_subscription_id)
        was_live = bool(row is not None and row.is_live)
        if row is None:
            row = Sponsorship(
                business_id=claim.business_id,
                region_id=claim.region_id,
                category_id=claim.category_id,
                slot=claim.slot,
                stripe_subscription_id=claim.stripe_subscription_id,
            )
            self.session.add(row)

        row.status = claim.status
        if claim.geometry is not None:
            row.geometry = geo.to_geojson(claim.geometry)
            row.area_km2 = float(claim.area_km2)
        if claim.price_monthly_minor is not None:
            row.price_monthly_minor = int(claim.price_monthly_minor)
        row.currency = (claim.currency or row.currency or "gbp").lower()
        row.stripe_customer_id = claim.stripe_customer_id or row.stripe_customer_id
        if claim.current_period_end is not None:
            row.current_period_end = claim.current_period_end
        row.cancel_at_period_end = bool(claim.cancel_at_period_end)
        if claim.status == CANCELED:
            row.canceled_at = row.canceled_at or utcnow()
            row.cancel_reason = claim.cancel_reason or row.cancel_reason

        self._commit(row, check=row.is_live and (not was_live or claim.geometry is not None))
        current_app.logger.info(
            f"Ledger upsert sponsorship={row.id} sub={row.stripe_subscription_id} "
            f"status={row.status} area_km2={row.area_km2:.6f}"
        )
        return row

    def record_rejection(self, claim: SponsorshipClaim, reason: str) -> Sponsorship:
        """Persist a canceled, geometry-less row so a refused purchase stays auditable."""
        claim.status = CANCELED
        claim.geometry = None
        claim.area_km2 = 0.0
        claim.cancel_reason = reason
        claim.cancel_at_period_end = False
        return self.upsert(claim)

    def refresh_billing(
        self,
        row: Sponsorship,
        status: str,
        current_period_end: Optional[datetime] = None,
        cancel_at_period_end: Optional[bool] = None,
        price_monthly_minor: Optional[int] = None,
        cancel_reason: Optional[str] = None,
    ) -> Sponsorship:
        """Update billing fields only; geometry is never recomputed here."""
        was_live = row.is_live
        self._lock_scope(row.region_id, row.category_id, row.slot)
        row.status = status
        if current_period_end is not None:
            row.current_period_end = current_period_end
        if cancel_at_period_end is not None:
            row.cancel_at_period_end = bool(cancel_at_period_end)
        if price_monthly_minor is not None:
            row.price_monthly_minor = int(price_monthly_minor)
        if status == CANCELED:
            row.canceled_at = row.canceled_at or utcnow()
            row.cancel_reason = row.cancel_reason or cancel_reason
        self._commit(row, check=row.is_live and not was_live)
        return row

    def mark_canceled(self, stripe_subscription_id: str, reason: str, now: Optional[datetime] = None) -> Optional[Sponsorship]:
        row = self.by_subscription(stripe_subscription_id)
        if row is None:
            return None
        if row.status != CANCELED:
            row.status = CANCELED
            row.canceled_at = now or utcnow()
            row.cancel_reason = row.cancel_reason or reason
            self.session.commit()
            current_app.logger.info(f"Sponsorship {row.id} canceled ({reason})")
        return row

    def schedule_cancel(self, row: Sponsorship) -> Sponsorship:
        row.status = CANCELING
        row.cancel_at_period_end = True
        self.session.commit()
        return row

    def reactivate(self, row: Sponsorship) -> Sponsorship:
        # canceling rows never stopped blocking, so no disjointness check is needed
        row.status = ACTIVE
        row.cancel_at_period_end = False
        self.session.commit()
        return row

    def expand(self, row: Sponsorship, geometry: BaseGeometry, area_km2: float, price_monthly_minor: int) -> Sponsorship:
        """Replace a live row's geometry in place (upgrade), re-checking disjointness."""
        self._lock_scope(row.region_id, row.category_id, row.slot)
        row.geometry = geo.to_geojson(geometry)
        row.area_km2 = float(area_km2)
        row.price_monthly_minor = int(price_monthly_minor)
        self._commit(row, check=True)
        return row

    def set_price(self, row: Sponsorship, price_monthly_minor: int) -> Sponsorship:
        row.price_monthly_minor = int(price_monthly_minor)
        self.session.commit()
        return row

    def expire_ended(self, now: Optional[datetime] = None) -> int:
        """Move canceling rows whose paid period is over to canceled."""
        now = now or utcnow()
        rows = (
            self.session.query(Sponsorship)
            .filter(
                Sponsorship.status == CANCELING,
                Sponsorship.current_period_end.isnot(None),
                Sponsorship.current_period_end <= now,
            )
            .all()
        )
        for row in rows:
            row.status = CANCELED
            row.canceled_at = now
            row.cancel_reason = row.cancel_reason or "period_ended"
        if rows:
            self.session.commit()
        return len(rows)
