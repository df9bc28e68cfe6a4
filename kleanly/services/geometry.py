# kleanly/services/geometry.py
"""
Polygon helpers for sponsored areas.

Inputs are GeoJSON-like (dict or JSON text) Polygon / MultiPolygon / Feature /
FeatureCollection in WGS84 degrees, or shapely geometries. Outputs are shapely
MultiPolygons. Areas are spherical (same ring formula the map client uses),
reported in km².

Failure policy: nothing here may make area look *more* available than it is.
`difference` returns an empty result when GEOS fails, `union` falls back to
the bounding box of both inputs, and `overlaps` answers True when it cannot
decide. Input that is present but unreadable is not "nothing": it empties a
difference, raises GeometryError from a union, and counts as an overlap.
"""
from __future__ import annotations

import json
import logging
import math
from typing import Any, Iterable, List, Optional

from shapely.errors import ShapelyError
from shapely.geometry import GeometryCollection, MultiPolygon, Polygon, box, mapping, shape
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union
from shapely.validation import make_valid

from kleanly.errors import GeometryError

log = logging.getLogger(__name__)

EARTH_RADIUS_M = 6378137.0
M2_PER_KM2 = 1_000_000.0

_POLYGONAL = ("Polygon", "MultiPolygon", "GeometryCollection")
_GEOM_ERRORS = (ShapelyError, ValueError, TypeError, AttributeError, KeyError, IndexError)


def empty() -> MultiPolygon:
    return MultiPolygon()


# ----------------------------- loading --------------------------------------

def _parts(geometry: Any) -> List[BaseGeometry]:
    """Split any accepted input into shapely geometries (uncleaned)."""
    if geometry is None:
        return []
    if isinstance(geometry, BaseGeometry):
        return [] if geometry.is_empty else [geometry]
    if isinstance(geometry, (str, bytes)):
        geometry = json.loads(geometry)
    if not isinstance(geometry, dict):
        raise TypeError(f"unsupported geometry input: {type(geometry).__name__}")

    gtype = geometry.get("type")
    if gtype == "FeatureCollection":
        out: List[BaseGeometry] = []
        for feature in geometry.get("features") or []:
            out.extend(_parts(feature))
        return out
    if gtype == "Feature":
        return _parts(geometry.get("geometry"))
    if gtype in _POLYGONAL:
        return [shape(geometry)]
    # Points and lines carry no area.
    return []


def _polygons(geom: BaseGeometry) -> List[Polygon]:
    if geom is None or geom.is_empty:
        return []
    if isinstance(geom, Polygon):
        return [geom]
    if isinstance(geom, MultiPolygon):
        return [p for p in geom.geoms if not p.is_empty]
    if isinstance(geom, GeometryCollection):
        out: List[Polygon] = []
        for g in geom.geoms:
            out.extend(_polygons(g))
        return out
    return []


def _as_multipolygon(geom: BaseGeometry) -> MultiPolygon:
    polys = _polygons(geom)
    return MultiPolygon(polys) if polys else empty()


def _clean(geom: BaseGeometry) -> List[Polygon]:
    if not geom.is_valid:
        geom = make_valid(geom)
    polys = _polygons(geom)
    fixed: List[Polygon] = []
    for p in polys:
        if not p.is_valid:
            fixed.extend(_polygons(p.buffer(0)))
        else:
            fixed.append(p)
    return fixed


def _read(geometry: Any) -> Optional[MultiPolygon]:
    polys: List[Polygon] = []
    for part in _parts(geometry):
        polys.extend(_clean(part))
    if not polys:
        return None
    merged = _as_multipolygon(unary_union(polys))
    if merged.is_empty:
        return None
    return merged


def normalize(geometry: Any) -> Optional[MultiPolygon]:
    """
    Parse, clean and dissolve input into one MultiPolygon.

    Returns None for empty input, non-areal input, or anything that cannot be
    cleaned (self-intersections are repaired with make_valid first).
    """
    try:
        return _read(geometry)
    except _GEOM_ERRORS as e:
        log.warning("normalize: unusable geometry treated as empty (%s)", e)
        return None


def _coerce(geometry: Any) -> Optional[MultiPolygon]:
    """
    None when there is no area to speak of (None, empty, points, lines).

    Raises GeometryError when something was given but cannot be read, so the
    set operations below can fail closed instead of treating it as nothing.
    """
    if isinstance(geometry, MultiPolygon):
        if geometry.is_empty:
            return None
        if geometry.is_valid:
            return geometry
    try:
        return _read(geometry)
    except _GEOM_ERRORS as e:
        raise GeometryError(f"unreadable geometry: {e}") from e


# ----------------------------- set operations -------------------------------

def _bounding_box(*geoms: BaseGeometry) -> MultiPolygon:
    bounds = [g.bounds for g in geoms if g is not None and not g.is_empty]
    if not bounds:
        return empty()
    minx = min(b[0] for b in bounds)
    miny = min(b[1] for b in bounds)
    maxx = max(b[2] for b in bounds)
    maxy = max(b[3] for b in bounds)
    return MultiPolygon([box(minx, miny, maxx, maxy)])


def union(a: Any, b: Any) -> MultiPolygon:
    """
    Geometric union. On GEOS failure, the bounding box of both inputs.

    An input that was given but cannot be read has no bounds to fall back on,
    so GeometryError is raised instead of returning the other side alone.
    """
    ga, gb = _coerce(a), _coerce(b)
    if ga is None:
        return gb if gb is not None else empty()
    if gb is None:
        return ga
    try:
        return _as_multipolygon(unary_union([ga, gb]))
    except _GEOM_ERRORS as e:
        log.warning("union failed, using bounding box of inputs (%s)", e)
        try:
            return _bounding_box(ga, gb)
        except _GEOM_ERRORS as e2:
            raise GeometryError(f"union fallback failed: {e2}") from e2


def union_all(geometries: Iterable[Any]) -> MultiPolygon:
    """Union of many. Raises GeometryError if any item cannot be read."""
    items = [g for g in (_coerce(x) for x in geometries) if g is not None]
    if not items:
        return empty()
    try:
        return _as_multipolygon(unary_union(items))
    except _GEOM_ERRORS as e:
        log.warning("bulk union failed, folding pairwise (%s)", e)
        acc = items[0]
        for g in items[1:]:
            acc = union(acc, g)
        return acc


def difference(a: Any, b: Any) -> MultiPolygon:
    """a minus b. Empty when a is empty, when either side is unreadable, or when GEOS fails."""
    try:
        ga = _coerce(a)
        gb = _coerce(b) if ga is not None else None
    except GeometryError as e:
        log.warning("difference input unreadable, returning empty result (%s)", e)
        return empty()
    if ga is None:
        return empty()
    if gb is None:
        return ga
    try:
        return _as_multipolygon(ga.difference(gb))
    except _GEOM_ERRORS as e:
        log.warning("difference failed, returning empty result (%s)", e)
        return empty()


def overlaps(a: Any, b: Any, epsilon_km2: float = 1e-6) -> bool:
    """True when a and b share more than epsilon of area, or when unknown."""
    try:
        ga, gb = _coerce(a), _coerce(b)
    except GeometryError as e:
        log.warning("overlap input unreadable, assuming overlap (%s)", e)
        return True
    if ga is None or gb is None:
        return False
    try:
        if not ga.intersects(gb):
            return False
        return area_km2(ga.intersection(gb)) > epsilon_km2
    except _GEOM_ERRORS as e:
        log.warning("intersection test failed, assuming overlap (%s)", e)
        return True


# ----------------------------- area -----------------------------------------

def _ring_area_m2(coords) -> float:
    pts = list(coords)
    n = len(pts)
    if n <= 2:
        return 0.0
    total = 0.0
    for i in range(n):
        if i == n - 2:
            lower, middle, upper = n - 2, n - 1, 0
        elif i == n - 1:
            lower, middle, upper = n - 1, 0, 1
        else:
            lower, middle, upper = i, i + 1, i + 2
        total += (
            math.radians(pts[upper][0]) - math.radians(pts[lower][0])
        ) * math.sin(math.radians(pts[middle][1]))
    return abs(total * EARTH_RADIUS_M * EARTH_RADIUS_M / 2.0)


def _polygon_area_m2(poly: Polygon) -> float:
    area = _ring_area_m2(poly.exterior.coords)
    for hole in poly.interiors:
        area -= _ring_area_m2(hole.coords)
    return max(0.0, area)


def area_km2(geometry: Any) -> float:
    if geometry is None:
        return 0.0
    if isinstance(geometry, BaseGeometry):
        polys = _polygons(geometry)
    else:
        g = normalize(geometry)
        polys = _polygons(g) if g is not None else []
    return sum(_polygon_area_m2(p) for p in polys) / M2_PER_KM2


# ----------------------------- output ---------------------------------------

def to_geojson(geom: Optional[BaseGeometry]) -> Optional[dict]:
    if geom is None or geom.is_empty:
        return None
    # round-trip through json to turn coordinate tuples into lists
    return json.loads(json.dumps(mapping(geom)))
