# kleanly/services/locks.py
"""
Short-lived checkout locks, one active lock per (region, category, slot).

A lock only keeps two businesses from sitting in Stripe Checkout for the same
scope at once; it is never proof of ownership. The partial unique index on
sponsorship_locks is the final arbiter when two acquires race.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from kleanly.errors import LockHeld
from kleanly.models import utcnow
from kleanly.models_billing import SponsorshipLock


class LockManager:
    def __init__(self, session, ttl_seconds: int = 1800):
        self.session = session
        self.ttl = timedelta(seconds=int(ttl_seconds))

    def _active_in_scope(self, region_id: str, category_id: str, slot: int, for_update: bool = False):
        q = self.session.query(SponsorshipLock).filter(
            SponsorshipLock.region_id == region_id,
            SponsorshipLock.category_id == category_id,
            SponsorshipLock.slot == slot,
            SponsorshipLock.is_active.is_(True),
        )
        if for_update:
            q = q.with_for_update()
        return q.first()

    def _deactivate(self, lock: SponsorshipLock, reason: str, now: datetime) -> None:
        lock.is_active = False
        lock.released_at = now
        lock.release_reason = reason
        if lock.expires_at is None or lock.expires_at > now:
            lock.expires_at = now

    def acquire(
        self,
        region_id: str,
        category_id: str,
        slot: int,
        business_id: str,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Take (or refresh) the scope lock for business_id and return its id.

        Raises LockHeld when another business holds an unexpired lock.
        """
        now = now or utcnow()
        current = self._active_in_scope(region_id, category_id, slot, for_update=True)
        if current is not None and current.expires_at <= now:
            self._deactivate(current, "expired", now)
            self.session.flush()
            current = None

        if current is not None:
            if current.business_id != business_id:
                self.session.rollback()
                raise LockHeld(current.id, current.business_id)
            current.expires_at = now + self.ttl
            self.session.commit()
            current_app.logger.info(f"Refreshed checkout lock {current.id} for business {business_id}")
            return current.id

        lock = SponsorshipLock(
            business_id=business_id,
            region_id=region_id,
            category_id=category_id,
            slot=slot,
            is_active=True,
            expires_at=now + self.ttl,
        )
        self.session.add(lock)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            holder = self._active_in_scope(region_id, category_id, slot)
            if holder is not None and holder.business_id == business_id:
                return holder.id
            raise LockHeld(holder.id if holder else "", holder.business_id if holder else "")

        current_app.logger.info(
            f"Acquired checkout lock {lock.id} region={region_id} category={category_id} "
            f"slot={slot} business={business_id}"
        )
        return lock.id

    def get_valid(
        self,
        lock_id: Optional[str],
        business_id: str,
        region_id: str,
        category_id: str,
        slot: int,
        now: Optional[datetime] = None,
    ) -> Optional[SponsorshipLock]:
        if not lock_id:
            return None
        now = now or utcnow()
        lock = self.session.get(SponsorshipLock, lock_id)
        if lock is None or not lock.is_active or lock.expires_at <= now:
            return None
        if (lock.business_id, lock.region_id, lock.category_id, lock.slot) != (
            business_id, region_id, category_id, slot,
        ):
            return None
        return lock

    def release(self, lock_id: Optional[str], reason: str = "released", now: Optional[datetime] = None) -> bool:
        """Deactivate a lock. Idempotent; returns True only if it was active."""
        if not lock_id:
            return False
        lock = self.session.get(SponsorshipLock, lock_id)
        if lock is None or not lock.is_active:
            return False
        self._deactivate(lock, reason, now or utcnow())
        self.session.commit()
        current_app.logger.info(f"Released checkout lock {lock_id} ({reason})")
        return True

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        stale = (
            self.session.query(SponsorshipLock)
            .filter(SponsorshipLock.is_active.is_(True), SponsorshipLock.expires_at <= now)
            .all()
        )
        for lock in stale:
            self._deactivate(lock, "expired", now)
        if stale:
            self.session.commit()
        return len(stale)
