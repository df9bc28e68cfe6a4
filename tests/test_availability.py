import pytest

from factories import add_sponsorship, rect, square
from kleanly.errors import NotFound
from kleanly.services import geometry as geo
from kleanly.services import make_resolver


def test_empty_region_is_fully_available(world):
    avail = make_resolver().remaining(world.region, world.bins, 1)
    assert not avail.sold_out
    assert avail.area_km2 == pytest.approx(10.0, rel=1e-3)
    assert avail.total_km2 == pytest.approx(10.0, rel=1e-3)
    assert avail.geojson()["type"] == "MultiPolygon"


def test_owned_area_is_subtracted(world):
    add_sponsorship(world.x, world.region, world.bins, rect(0, 0, world.side * 0.4, world.side), sub_id="sub_x")
    avail = make_resolver().remaining(world.region, world.bins, 1)
    assert not avail.sold_out
    assert avail.area_km2 == pytest.approx(6.0, rel=1e-3)
    assert avail.blocker_ids


def test_fully_owned_region_is_sold_out(world):
    add_sponsorship(world.x, world.region, world.bins, square(0, 0, world.side), sub_id="sub_x")
    avail = make_resolver().remaining(world.region, world.bins, 1)
    assert avail.sold_out
    assert avail.area_km2 == 0.0
    assert avail.geojson() is None


@pytest.mark.parametrize("status", ["trialing", "past_due", "unpaid", "incomplete", "paused", "canceling"])
def test_every_active_like_status_blocks(world, status):
    add_sponsorship(world.x, world.region, world.bins, square(0, 0, world.side), status=status, sub_id="sub_x")
    assert make_resolver().remaining(world.region, world.bins, 1).sold_out


@pytest.mark.parametrize("status", ["canceled", "provisional"])
def test_non_live_rows_do_not_block(world, status):
    add_sponsorship(world.x, world.region, world.bins, square(0, 0, world.side), status=status, sub_id="sub_x")
    assert make_resolver().remaining(world.region, world.bins, 1).area_km2 == pytest.approx(10.0, rel=1e-3)


def test_other_category_and_slot_do_not_block(world):
    add_sponsorship(world.x, world.region, world.windows, square(0, 0, world.side), sub_id="sub_w")
    add_sponsorship(world.y, world.region, world.bins, square(0, 0, world.side), slot=2, sub_id="sub_s2")
    avail = make_resolver().remaining(world.region, world.bins, 1)
    assert avail.area_km2 == pytest.approx(10.0, rel=1e-3)


def test_exclude_business_previews_own_area(world):
    add_sponsorship(world.x, world.region, world.bins, rect(0, 0, world.side * 0.4, world.side), sub_id="sub_x")
    avail = make_resolver().remaining(world.region, world.bins, 1, exclude_business_id=world.x)
    assert avail.area_km2 == pytest.approx(10.0, rel=1e-3)


def test_blocker_without_geometry_means_sold_out(world):
    add_sponsorship(world.x, world.region, world.bins, None, sub_id="sub_x")
    assert make_resolver().remaining(world.region, world.bins, 1).sold_out


def test_geometry_failure_fails_closed(world, monkeypatch):
    add_sponsorship(world.x, world.region, world.bins, rect(0, 0, world.side * 0.4, world.side), sub_id="sub_x")

    def boom(*_):
        raise RuntimeError("GEOS blew up")

    monkeypatch.setattr(geo, "difference", boom)
    avail = make_resolver().remaining(world.region, world.bins, 1)
    assert avail.sold_out
    assert avail.area_km2 == 0.0


def test_unknown_region_raises_not_found(world):
    with pytest.raises(NotFound):
        make_resolver().remaining("no-such-region", world.bins, 1)
