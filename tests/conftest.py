from types import SimpleNamespace

import pytest

from factories import WEBHOOK_SECRET, FakeStripeGateway, side_for_km2, square
from kleanly import create_app, db
from kleanly.models import Business
from kleanly.models_geo import Category, Region


@pytest.fixture
def gateway():
    return FakeStripeGateway()


@pytest.fixture
def app(gateway):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "SQLALCHEMY_ENGINE_OPTIONS": {},
            "RATELIMIT_ENABLED": False,
            "SENTRY_DSN": "",
            "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
            "CRON_SECRET": "cron-test-key",
            "PUBLIC_SITE_URL": "https://kleanly.test",
            "SPONSOR_SLOTS": (1, 2),
            "SPONSOR_PARTIAL_CLAIMS": True,
            "SPONSOR_CURRENCY": "gbp",
            "RATE_PER_KM2_PER_MONTH": 15,
            "MIN_PRICE_PER_MONTH": 5,
            "SPONSOR_PRICING_OVERRIDES": {},
        },
        stripe_gateway=gateway,
    )
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def world(app):
    """Two businesses, two categories and one 10 km² region at the equator."""
    x = Business(business_name="Sparkle Bins", contact_email="x@example.com")
    y = Business(business_name="Gleam Team", contact_email="y@example.com")
    bins = Category(slug="bin-cleaning", name="Bin cleaning")
    windows = Category(slug="window-cleaning", name="Window cleaning")
    side = side_for_km2(10)
    region = Region(name="Testville", geometry=square(0.0, 0.0, side))
    db.session.add_all([x, y, bins, windows, region])
    db.session.commit()
    return SimpleNamespace(
        x=x.id,
        y=y.id,
        bins=bins.id,
        windows=windows.id,
        region=region.id,
        side=side,
    )
