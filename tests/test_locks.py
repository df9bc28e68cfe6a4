from datetime import timedelta

import pytest

from kleanly import db
from kleanly.errors import LockHeld
from kleanly.models import utcnow
from kleanly.models_billing import SponsorshipLock
from kleanly.services.locks import LockManager


@pytest.fixture
def locks(app):
    return LockManager(db.session, ttl_seconds=600)


def test_acquire_then_refresh_for_same_business(world, locks):
    t0 = utcnow()
    lock_id = locks.acquire(world.region, world.bins, 1, world.x, now=t0)
    again = locks.acquire(world.region, world.bins, 1, world.x, now=t0 + timedelta(seconds=60))
    assert again == lock_id
    lock = db.session.get(SponsorshipLock, lock_id)
    assert lock.expires_at == t0 + timedelta(seconds=660)


def test_other_business_is_refused_while_lock_is_live(world, locks):
    lock_id = locks.acquire(world.region, world.bins, 1, world.x)
    with pytest.raises(LockHeld) as exc:
        locks.acquire(world.region, world.bins, 1, world.y)
    assert exc.value.lock_id == lock_id
    assert exc.value.business_id == world.x


def test_locks_are_scoped_by_category_and_slot(world, locks):
    a = locks.acquire(world.region, world.bins, 1, world.x)
    b = locks.acquire(world.region, world.windows, 1, world.y)
    c = locks.acquire(world.region, world.bins, 2, world.y)
    assert len({a, b, c}) == 3


def test_expired_lock_is_taken_over(world, locks):
    t0 = utcnow()
    old = locks.acquire(world.region, world.bins, 1, world.x, now=t0)
    new = locks.acquire(world.region, world.bins, 1, world.y, now=t0 + timedelta(seconds=601))
    assert new != old
    stale = db.session.get(SponsorshipLock, old)
    assert stale.is_active is False
    assert stale.release_reason == "expired"


def test_get_valid_checks_owner_scope_and_expiry(world, locks):
    t0 = utcnow()
    lock_id = locks.acquire(world.region, world.bins, 1, world.x, now=t0)
    assert locks.get_valid(lock_id, world.x, world.region, world.bins, 1, now=t0) is not None
    assert locks.get_valid(lock_id, world.y, world.region, world.bins, 1, now=t0) is None
    assert locks.get_valid(lock_id, world.x, world.region, world.bins, 2, now=t0) is None
    assert locks.get_valid(lock_id, world.x, world.region, world.bins, 1, now=t0 + timedelta(hours=1)) is None
    assert locks.get_valid(None, world.x, world.region, world.bins, 1) is None


def test_release_is_idempotent(world, locks):
    lock_id = locks.acquire(world.region, world.bins, 1, world.x)
    assert locks.release(lock_id, "checkout_failed") is True
    assert locks.release(lock_id, "checkout_failed") is False
    assert locks.release("missing") is False
    # scope is free again
    assert locks.acquire(world.region, world.bins, 1, world.y) != lock_id


def test_expire_stale_sweeps_only_lapsed_locks(world, locks):
    t0 = utcnow()
    locks.acquire(world.region, world.bins, 1, world.x, now=t0 - timedelta(hours=1))
    live = locks.acquire(world.region, world.windows, 1, world.x, now=t0)
    assert locks.expire_stale(t0) == 1
    assert locks.expire_stale(t0) == 0
    assert db.session.get(SponsorshipLock, live).is_active is True
