# kleanly/models_geo.py
from __future__ import annotations

import json

from sqlalchemy import event, func, inspect, select

from kleanly import db
from kleanly.models import new_id, utcnow


class Region(db.Model):
    """Named service-area boundary. Geometry is GeoJSON text, SRID 4326."""
    __tablename__ = "regions"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(200), nullable=False)
    geometry_geojson = db.Column(db.Text, nullable=False)
    created_by_business_id = db.Column(db.String(36), db.ForeignKey("businesses.id"), index=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    sponsorships = db.relationship("Sponsorship", back_populates="region", lazy="dynamic")

    @property
    def geometry(self):
        return json.loads(self.geometry_geojson) if self.geometry_geojson else None

    @geometry.setter
    def geometry(self, value):
        self.geometry_geojson = json.dumps(value) if value is not None else None

    def __repr__(self) -> str:
        return f"<Region id={self.id} name={self.name!r}>"


class Category(db.Model):
    """Service classification; sponsorship exclusivity is scoped per category."""
    __tablename__ = "categories"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    slug = db.Column(db.String(80), unique=True, index=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)

    sponsorships = db.relationship("Sponsorship", back_populates="category", lazy="dynamic")

    def __repr__(self) -> str:
        return f"<Category {self.slug}>"


@event.listens_for(Region, "before_update")
def _freeze_referenced_region(mapper, connection, target):
    # Owned geometries are clipped from the region; changing it would orphan them.
    if not inspect(target).attrs.geometry_geojson.history.has_changes():
        return
    from kleanly.models_billing import Sponsorship

    count = connection.execute(
        select(func.count()).select_from(Sponsorship.__table__).where(
            Sponsorship.__table__.c.region_id == target.id
        )
    ).scalar()
    if count:
        raise ValueError(f"Region {target.id} geometry is immutable once sponsored")
