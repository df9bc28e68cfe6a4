# kleanly/services/availability.py
"""
Remaining sponsorable area for (region, category, slot).

remaining = normalize(region) - union(live sponsorship geometries in scope)

Fails closed: any geometry problem, or any blocking row without usable
geometry, reports the scope as sold out rather than guessing.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from flask import current_app
from shapely.geometry import MultiPolygon

from kleanly.errors import NotFound
from kleanly.models_billing import ACTIVE_LIKE_STATUSES, Sponsorship
from kleanly.models_geo import Region
from kleanly.services import geometry as geo


@dataclass
class Availability:
    geometry: Optional[MultiPolygon]
    area_km2: float
    sold_out: bool
    total_km2: float = 0.0
    blocker_ids: List[str] = field(default_factory=list)

    def geojson(self) -> Optional[dict]:
        if self.sold_out:
            return None
        return geo.to_geojson(self.geometry)


def sold_out(total_km2: float = 0.0, blocker_ids=None) -> Availability:
    return Availability(
        geometry=None,
        area_km2=0.0,
        sold_out=True,
        total_km2=total_km2,
        blocker_ids=list(blocker_ids or []),
    )


class AvailabilityResolver:
    def __init__(self, session, epsilon_km2: float = 1e-6):
        self.session = session
        self.epsilon_km2 = epsilon_km2

    def blocking_rows(
        self,
        region_id: str,
        category_id: str,
        slot: int,
        exclude_business_id: Optional[str] = None,
    ) -> List[Sponsorship]:
        q = self.session.query(Sponsorship).filter(
            Sponsorship.region_id == region_id,
            Sponsorship.category_id == category_id,
            Sponsorship.slot == slot,
            Sponsorship.status.in_(ACTIVE_LIKE_STATUSES),
        )
        if exclude_business_id:
            q = q.filter(Sponsorship.business_id != exclude_business_id)
        return q.order_by(Sponsorship.created_at.asc()).all()

    def remaining(
        self,
        region_id: str,
        category_id: str,
        slot: int,
        exclude_business_id: Optional[str] = None,
    ) -> Availability:
        """
        Compute what is still claimable.

        `exclude_business_id` drops that business's own rows from the blockers;
        used when previewing what an owner could hold, never for new claims.
        Raises NotFound for an unknown region.
        """
        region = self.session.get(Region, region_id)
        if region is None:
            raise NotFound("area_not_found", "Area not found", area_id=region_id)

        rows = self.blocking_rows(region_id, category_id, slot, exclude_business_id)
        result = self.compute(region.geometry_geojson, [r.geometry_geojson for r in rows])
        result.blocker_ids = [r.id for r in rows]
        current_app.logger.debug(
            "availability region=%s category=%s slot=%s blockers=%d remaining_km2=%.6f sold_out=%s",
            region_id, category_id, slot, len(rows), result.area_km2, result.sold_out,
        )
        return result

    def compute(self, region_geometry, blocker_geometries: Iterable) -> Availability:
        total = 0.0
        try:
            base = geo.normalize(region_geometry)
            if base is None:
                current_app.logger.warning("availability: region geometry unusable, reporting sold out")
                return sold_out()
            total = geo.area_km2(base)

            blockers = []
            for raw in blocker_geometries:
                g = geo.normalize(raw)
                if g is None:
                    # A live claim whose shape we cannot read still blocks.
                    current_app.logger.warning("availability: blocker without usable geometry, reporting sold out")
                    return sold_out(total)
                blockers.append(g)

            left = geo.difference(base, geo.union_all(blockers)) if blockers else base
            area = geo.area_km2(left)
        except Exception as e:
            current_app.logger.error(f"availability computation failed: {e}", exc_info=True)
            return sold_out(total)

        if left.is_empty or area <= self.epsilon_km2:
            return sold_out(total)
        return Availability(geometry=left, area_km2=area, sold_out=False, total_km2=total)
