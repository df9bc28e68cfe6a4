# kleanly/models_billing.py
from __future__ import annotations

import json

from sqlalchemy import text

from kleanly import db
from kleanly.models import new_id, utcnow

# Sponsorship statuses. "Active-like" rows hold a live claim on geometry.
PROVISIONAL = "provisional"
ACTIVE = "active"
CANCELING = "canceling"
CANCELED = "canceled"

ACTIVE_LIKE_STATUSES = (
    "active",
    "trialing",
    "past_due",
    "unpaid",
    "incomplete",
    "paused",
    "canceling",
)

_LIVE_SQL = "status IN (" + ", ".join(f"'{s}'" for s in ACTIVE_LIKE_STATUSES) + ")"


def is_active_like(status) -> bool:
    return (status or "").lower() in ACTIVE_LIKE_STATUSES


class StripeCustomer(db.Model):
    __tablename__ = "stripe_customers"
    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.String(36), db.ForeignKey("businesses.id"), unique=True, nullable=False)
    stripe_customer_id = db.Column(db.String(64), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)


class Sponsorship(db.Model):
    """
    A billed claim on part of a region for one (category, slot).

    Live rows are constrained twice: the partial unique index below gives one
    live row per (business, region, category, slot), and the ledger checks
    geometric disjointness inside the same write transaction.
    """
    __tablename__ = "sponsorships"
    __table_args__ = (
        db.Index(
            "uq_sponsorships_live_owner",
            "business_id", "region_id", "category_id", "slot",
            unique=True,
            postgresql_where=text(_LIVE_SQL),
            sqlite_where=text(_LIVE_SQL),
        ),
        db.Index("ix_sponsorships_scope_status", "region_id", "category_id", "slot", "status"),
        db.CheckConstraint("slot >= 1", name="ck_sponsorships_slot_positive"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    business_id = db.Column(db.String(36), db.ForeignKey("businesses.id"), index=True, nullable=False)
    region_id = db.Column(db.String(36), db.ForeignKey("regions.id"), nullable=False)
    category_id = db.Column(db.String(36), db.ForeignKey("categories.id"), nullable=False)
    slot = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(32), index=True, nullable=False, default=PROVISIONAL)
    geometry_geojson = db.Column(db.Text, nullable=True)  # owned MultiPolygon
    area_km2 = db.Column(db.Float, nullable=False, default=0.0)
    price_monthly_minor = db.Column(db.Integer, nullable=True)  # pence/cents
    currency = db.Column(db.String(8), nullable=False, default="gbp")

    stripe_subscription_id = db.Column(db.String(64), unique=True, nullable=True)
    stripe_customer_id = db.Column(db.String(64), index=True, nullable=True)
    current_period_end = db.Column(db.DateTime, nullable=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)
    cancel_reason = db.Column(db.String(64), nullable=True)  # no_remaining, db_write_failed, period_ended, ...
    canceled_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    region = db.relationship("Region", back_populates="sponsorships")
    category = db.relationship("Category", back_populates="sponsorships")
    invoices = db.relationship("SponsoredInvoice", back_populates="sponsorship", lazy="dynamic")

    @property
    def geometry(self):
        return json.loads(self.geometry_geojson) if self.geometry_geojson else None

    @geometry.setter
    def geometry(self, value):
        self.geometry_geojson = json.dumps(value) if value is not None else None

    @property
    def is_live(self) -> bool:
        return is_active_like(self.status)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "area_id": self.region_id,
            "category_id": self.category_id,
            "slot": self.slot,
            "status": self.status,
            "area_km2": round(self.area_km2 or 0.0, 6),
            "price_monthly_minor": self.price_monthly_minor,
            "currency": self.currency,
            "stripe_subscription_id": self.stripe_subscription_id,
            "stripe_customer_id": self.stripe_customer_id,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancel_at_period_end": bool(self.cancel_at_period_end),
            "cancel_reason": self.cancel_reason,
        }

    def __repr__(self) -> str:
        return (
            f"<Sponsorship id={self.id} business={self.business_id} region={self.region_id} "
            f"category={self.category_id} slot={self.slot} status={self.status}>"
        )


class SponsorshipLock(db.Model):
    __tablename__ = "sponsorship_locks"
    __table_args__ = (
        db.Index(
            "uq_sponsorship_locks_active_scope",
            "region_id", "category_id", "slot",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    business_id = db.Column(db.String(36), db.ForeignKey("businesses.id"), index=True, nullable=False)
    region_id = db.Column(db.String(36), db.ForeignKey("regions.id"), nullable=False)
    category_id = db.Column(db.String(36), db.ForeignKey("categories.id"), nullable=False)
    slot = db.Column(db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    released_at = db.Column(db.DateTime, nullable=True)
    release_reason = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)


class SponsoredInvoice(db.Model):
    __tablename__ = "sponsored_invoices"
    id = db.Column(db.Integer, primary_key=True)
    sponsorship_id = db.Column(db.String(36), db.ForeignKey("sponsorships.id"), index=True, nullable=True)
    stripe_invoice_id = db.Column(db.String(64), unique=True, nullable=False)
    stripe_subscription_id = db.Column(db.String(64), index=True, nullable=True)
    hosted_invoice_url = db.Column(db.Text, nullable=True)
    invoice_pdf = db.Column(db.Text, nullable=True)
    amount_due_minor = db.Column(db.Integer, nullable=True)
    amount_paid_minor = db.Column(db.Integer, nullable=True)
    currency = db.Column(db.String(8), nullable=True)
    status = db.Column(db.String(32), index=True)  # draft, open, paid, uncollectible, void
    period_start = db.Column(db.DateTime, nullable=True)
    period_end = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    sponsorship = db.relationship("Sponsorship", back_populates="invoices")

    def to_dict(self) -> dict:
        return {
            "stripe_invoice_id": self.stripe_invoice_id,
            "hosted_invoice_url": self.hosted_invoice_url,
            "invoice_pdf": self.invoice_pdf,
            "status": self.status,
            "amount_due_minor": self.amount_due_minor,
            "currency": self.currency,
            "period_end": self.period_end.isoformat() if self.period_end else None,
        }


class BillingEvent(db.Model):
    """One row per handled Stripe webhook event, with its reconciliation outcome."""
    __tablename__ = "billing_events"
    id = db.Column(db.Integer, primary_key=True)
    stripe_event_id = db.Column(db.String(255), unique=True, nullable=False)
    event_type = db.Column(db.String(64), index=True, nullable=False)
    stripe_subscription_id = db.Column(db.String(64), index=True, nullable=True)
    outcome = db.Column(db.String(32), nullable=False)
    reason = db.Column(db.String(64), nullable=True)
    processed_at = db.Column(db.DateTime, default=utcnow, nullable=False)
