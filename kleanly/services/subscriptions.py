# kleanly/services/subscriptions.py
"""User-initiated subscription actions: soft cancel, reactivate, lookup."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from flask import current_app

from kleanly.errors import AvailabilityConflict, NotFound, ValidationFailed
from kleanly.models import utcnow
from kleanly.models_billing import CANCELING, SponsoredInvoice, Sponsorship


class SubscriptionManager:
    def __init__(self, session, ledger, gateway):
        self.session = session
        self.ledger = ledger
        self.gateway = gateway

    def find_live(self, business_id: str, region_id: str, slot: int, category_id: Optional[str] = None) -> Sponsorship:
        rows = self.ledger.for_business_in_region(business_id, region_id, slot, category_id)
        if not rows:
            raise NotFound("no_subscription", "No active sponsorship found for this area")
        if len(rows) > 1:
            raise ValidationFailed(
                "ambiguous_category",
                "Several categories are sponsored here, pass categoryId",
                category_ids=sorted(r.category_id for r in rows),
            )
        return rows[0]

    def cancel(self, business_id: str, region_id: str, slot: int, category_id: Optional[str] = None) -> Sponsorship:
        """Schedule cancellation at period end. Geometry stays reserved until then."""
        row = self.find_live(business_id, region_id, slot, category_id)
        if row.status == CANCELING and row.cancel_at_period_end:
            return row
        if row.stripe_subscription_id:
            self.gateway.set_cancel_at_period_end(row.stripe_subscription_id, True)
        self.ledger.schedule_cancel(row)
        current_app.logger.info(f"Sponsorship {row.id} scheduled to cancel at period end")
        return row

    def reactivate(
        self,
        business_id: str,
        region_id: str,
        slot: int,
        category_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Sponsorship:
        row = self.find_live(business_id, region_id, slot, category_id)
        if row.status != CANCELING:
            return row
        now = now or utcnow()
        if row.current_period_end is not None and row.current_period_end <= now:
            raise AvailabilityConflict("period_ended", "The paid period has already ended")
        if row.stripe_subscription_id:
            self.gateway.set_cancel_at_period_end(row.stripe_subscription_id, False)
        self.ledger.reactivate(row)
        current_app.logger.info(f"Sponsorship {row.id} reactivated")
        return row

    def lookup(
        self,
        business_id: str,
        region_id: str,
        slot: int,
        category_id: Optional[str] = None,
    ) -> Tuple[Optional[Sponsorship], Optional[SponsoredInvoice]]:
        """Newest sponsorship (live first) with its latest invoice."""
        rows = self.ledger.for_business_in_region(business_id, region_id, slot, category_id, live_only=False)
        if not rows:
            return None, None
        live = [r for r in rows if r.is_live]
        row = live[0] if live else rows[0]
        invoice = row.invoices.order_by(SponsoredInvoice.created_at.desc(), SponsoredInvoice.id.desc()).first()
        return row, invoice

    def to_payload(self, row: Optional[Sponsorship], invoice: Optional[SponsoredInvoice]) -> Dict[str, Any]:
        return {
            "ok": True,
            "sponsorship": row.to_dict() if row else None,
            "latest_invoice": invoice.to_dict() if invoice else None,
        }
