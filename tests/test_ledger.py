from datetime import timedelta

import pytest

from factories import add_sponsorship, rect, square
from kleanly import db
from kleanly.errors import LedgerConflict
from kleanly.models import utcnow
from kleanly.models_billing import Sponsorship
from kleanly.models_geo import Region
from kleanly.services import geometry as geo
from kleanly.services import make_ledger
from kleanly.services.ledger import SponsorshipClaim, status_from_provider


def _claim(world, business, geometry, sub_id, status="active", **kw):
    shape = geo.normalize(geometry) if geometry is not None else None
    return SponsorshipClaim(
        business_id=business,
        region_id=world.region,
        category_id=world.bins,
        slot=kw.pop("slot", 1),
        status=status,
        geometry=shape,
        area_km2=geo.area_km2(shape),
        price_monthly_minor=kw.pop("price_monthly_minor", 9000),
        stripe_subscription_id=sub_id,
        stripe_customer_id="cus_test",
        **kw,
    )


@pytest.mark.parametrize("provider, flag, expected", [
    ("active", False, "active"),
    ("active", True, "canceling"),
    ("trialing", False, "trialing"),
    ("past_due", True, "canceling"),
    ("unpaid", False, "unpaid"),
    ("canceled", False, "canceled"),
    ("incomplete_expired", False, "canceled"),
    ("something_new", False, "provisional"),
    (None, False, "provisional"),
])
def test_status_from_provider(provider, flag, expected):
    assert status_from_provider(provider, flag) == expected


def test_disjoint_claims_coexist(world):
    ledger = make_ledger()
    left = ledger.upsert(_claim(world, world.x, rect(0, 0, world.side * 0.4, world.side), "sub_x"))
    right = ledger.upsert(_claim(world, world.y, rect(world.side * 0.4, 0, world.side * 0.6, world.side), "sub_y"))
    assert left.status == right.status == "active"
    assert right.area_km2 == pytest.approx(6.0, rel=1e-3)
    assert len(ledger.live_in_scope(world.region, world.bins, 1)) == 2


def test_overlapping_claim_is_rejected_and_rolled_back(world):
    ledger = make_ledger()
    ledger.upsert(_claim(world, world.x, rect(0, 0, world.side * 0.4, world.side), "sub_x"))
    with pytest.raises(LedgerConflict) as exc:
        ledger.upsert(_claim(world, world.y, square(0, 0, world.side), "sub_y"))
    assert exc.value.reason == "overlap"
    assert ledger.by_subscription("sub_y") is None
    assert len(ledger.live_in_scope(world.region, world.bins, 1)) == 1


def test_second_live_row_for_same_owner_is_rejected(world):
    ledger = make_ledger()
    ledger.upsert(_claim(world, world.x, rect(0, 0, world.side * 0.4, world.side), "sub_x1"))
    with pytest.raises(LedgerConflict) as exc:
        ledger.upsert(_claim(world, world.x, rect(world.side * 0.5, 0, world.side * 0.5, world.side), "sub_x2"))
    assert exc.value.reason == "duplicate_owner"
    assert ledger.by_subscription("sub_x2") is None


def test_same_owner_other_slot_is_allowed(world):
    ledger = make_ledger()
    ledger.upsert(_claim(world, world.x, square(0, 0, world.side), "sub_x1"))
    row = ledger.upsert(_claim(world, world.x, square(0, 0, world.side), "sub_x2", slot=2))
    assert row.slot == 2 and row.is_live


def test_canceled_rows_do_not_conflict(world):
    add_sponsorship(world.y, world.region, world.bins, square(0, 0, world.side), status="canceled", sub_id="sub_old")
    row = make_ledger().upsert(_claim(world, world.x, square(0, 0, world.side), "sub_x"))
    assert row.is_live


def test_claim_without_geometry_is_invalid(world):
    with pytest.raises(LedgerConflict) as exc:
        make_ledger().upsert(_claim(world, world.x, None, "sub_x"))
    assert exc.value.reason == "invalid_geometry"


def test_upsert_is_keyed_by_subscription(world):
    ledger = make_ledger()
    first = ledger.upsert(_claim(world, world.x, rect(0, 0, world.side * 0.4, world.side), "sub_x"))
    again = ledger.upsert(_claim(world, world.x, None, "sub_x", status="past_due"))
    assert again.id == first.id
    assert again.status == "past_due"
    # geometry carried over from the first write
    assert again.area_km2 == pytest.approx(4.0, rel=1e-3)
    assert db.session.query(Sponsorship).count() == 1


def test_record_rejection_keeps_an_audit_row(world):
    ledger = make_ledger()
    ledger.upsert(_claim(world, world.x, square(0, 0, world.side), "sub_x"))
    row = ledger.record_rejection(_claim(world, world.y, square(0, 0, world.side), "sub_y"), "no_remaining")
    assert row.status == "canceled"
    assert row.cancel_reason == "no_remaining"
    assert row.geometry is None
    assert row.area_km2 == 0.0
    assert row.canceled_at is not None


def test_refresh_billing_never_touches_geometry(world):
    row = add_sponsorship(world.x, world.region, world.bins, rect(0, 0, world.side * 0.4, world.side), sub_id="sub_x")
    before = row.geometry_geojson
    end = utcnow() + timedelta(days=30)
    make_ledger().refresh_billing(row, "canceling", current_period_end=end, cancel_at_period_end=True,
                                  price_monthly_minor=6000)
    assert row.geometry_geojson == before
    assert row.status == "canceling"
    assert row.cancel_at_period_end is True
    assert row.price_monthly_minor == 6000


def test_mark_canceled_is_idempotent(world):
    add_sponsorship(world.x, world.region, world.bins, square(0, 0, world.side), sub_id="sub_x")
    ledger = make_ledger()
    first = ledger.mark_canceled("sub_x", "subscription_deleted")
    stamp = first.canceled_at
    second = ledger.mark_canceled("sub_x", "other_reason")
    assert second.status == "canceled"
    assert second.canceled_at == stamp
    assert second.cancel_reason == "subscription_deleted"
    assert ledger.mark_canceled("sub_missing", "x") is None


def test_expire_ended_only_moves_lapsed_canceling_rows(world):
    now = utcnow()
    lapsed = add_sponsorship(world.x, world.region, world.bins, rect(0, 0, world.side * 0.4, world.side),
                             status="canceling", sub_id="sub_x", current_period_end=now - timedelta(hours=1))
    running = add_sponsorship(world.y, world.region, world.bins, rect(world.side / 2, 0, world.side / 2, world.side),
                              status="canceling", sub_id="sub_y", current_period_end=now + timedelta(days=3))
    assert make_ledger().expire_ended(now) == 1
    assert lapsed.status == "canceled"
    assert lapsed.cancel_reason == "period_ended"
    assert running.status == "canceling"


def test_expand_rechecks_disjointness(world):
    ledger = make_ledger()
    mine = add_sponsorship(world.x, world.region, world.bins, rect(0, 0, world.side * 0.4, world.side), sub_id="sub_x")
    add_sponsorship(world.y, world.region, world.bins, rect(world.side * 0.6, 0, world.side * 0.4, world.side),
                    sub_id="sub_y")
    grown = geo.normalize(rect(0, 0, world.side * 0.6, world.side))
    ledger.expand(mine, grown, geo.area_km2(grown), 9000)
    assert mine.area_km2 == pytest.approx(6.0, rel=1e-3)

    too_big = geo.normalize(square(0, 0, world.side))
    with pytest.raises(LedgerConflict):
        ledger.expand(mine, too_big, geo.area_km2(too_big), 15000)
    db.session.expire_all()
    assert db.session.get(Sponsorship, mine.id).area_km2 == pytest.approx(6.0, rel=1e-3)


def test_region_geometry_is_frozen_once_sponsored(world):
    region = db.session.get(Region, world.region)
    region.name = "Testville North"
    db.session.commit()

    add_sponsorship(world.x, world.region, world.bins, rect(0, 0, world.side * 0.4, world.side), sub_id="sub_x")
    region.geometry = square(0, 0, world.side * 2)
    with pytest.raises(ValueError):
        db.session.commit()
    db.session.rollback()
    assert db.session.get(Region, world.region).geometry == square(0, 0, world.side)
