"""
Geometry kit — pure functions over GeoJSON-style coordinates.

Everything here works on plain ``[lon, lat]`` (or projected ``[x, y]``)
pairs so it can be applied both to raw lon/lat and to metre coordinates
from :class:`LocalProjection`.

Usage
-----
    from netcover.geo.geometry import bounding_box_of, convex_hull
    bbox = bounding_box_of({"type": "Point", "coordinates": [24.1, 56.9]})
    hull = convex_hull([(0, 0), (1, 0), (0, 1), (1, 1)])
"""
from __future__ import annotations

import math
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

import pyproj
from shapely.geometry import mapping, shape
from shapely.ops import transform

BBox = Tuple[float, float, float, float]
Coord = Tuple[float, float]

WGS84 = pyproj.CRS("EPSG:4326")


# ── Coordinate walking ───────────────────────────────────────────────

def _is_position(value) -> bool:
    return (
        isinstance(value, (list, tuple))
        and len(value) >= 2
        and isinstance(value[0], (int, float))
        and isinstance(value[1], (int, float))
    )


def _iter_positions(coords) -> Iterator[Coord]:
    """Yield every (x, y) found in an arbitrarily nested coordinate array."""
    if _is_position(coords):
        yield float(coords[0]), float(coords[1])
        return
    if isinstance(coords, (list, tuple)):
        for item in coords:
            yield from _iter_positions(item)


def iter_geometry_coords(geometry: Optional[dict]) -> Iterator[Coord]:
    """Yield all coordinate pairs of a geometry, all rings included."""
    if not isinstance(geometry, dict):
        return
    if geometry.get("type") == "GeometryCollection":
        for child in geometry.get("geometries") or []:
            yield from iter_geometry_coords(child)
        return
    yield from _iter_positions(geometry.get("coordinates"))


def collect_coords(geometry: Optional[dict]) -> List[Coord]:
    """Collect coordinates for outline purposes.

    Polygons contribute their exterior ring only; holes never extend an
    outline.
    """
    if not isinstance(geometry, dict):
        return []
    gtype = geometry.get("type")
    coords = geometry.get("coordinates")
    if gtype in ("Point", "MultiPoint", "LineString", "MultiLineString"):
        return list(_iter_positions(coords))
    if gtype == "Polygon":
        return list(_iter_positions(coords[0])) if coords else []
    if gtype == "MultiPolygon":
        out: List[Coord] = []
        for poly in coords or []:
            if poly:
                out.extend(_iter_positions(poly[0]))
        return out
    if gtype == "GeometryCollection":
        out = []
        for child in geometry.get("geometries") or []:
            out.extend(collect_coords(child))
        return out
    return []


# ── Bounding boxes ───────────────────────────────────────────────────

def bbox_of_points(points: Iterable[Coord]) -> Optional[BBox]:
    min_x = min_y = math.inf
    max_x = max_y = -math.inf
    for x, y in points:
        if x < min_x:
            min_x = x
        if x > max_x:
            max_x = x
        if y < min_y:
            min_y = y
        if y > max_y:
            max_y = y
    if min_x == math.inf:
        return None
    return (min_x, min_y, max_x, max_y)


def bounding_box_of(geometry: Optional[dict]) -> Optional[BBox]:
    """Return (minLon, minLat, maxLon, maxLat) for any GeoJSON geometry.

    Returns None for empty, unknown or coordinate-less input.
    """
    return bbox_of_points(iter_geometry_coords(geometry))


def bbox_intersects(a: Sequence[float], b: Sequence[float]) -> bool:
    """Axis-aligned overlap test.  Touching edges and corners intersect."""
    a_minx, a_miny, a_maxx, a_maxy = a
    b_minx, b_miny, b_maxx, b_maxy = b
    return not (
        a_maxx < b_minx or a_minx > b_maxx
        or a_maxy < b_miny or a_miny > b_maxy
    )


def bbox_contains(bbox: Sequence[float], x: float, y: float) -> bool:
    min_x, min_y, max_x, max_y = bbox
    return min_x <= x <= max_x and min_y <= y <= max_y


# ── Centroids ────────────────────────────────────────────────────────

def centroid_of_ring(ring: Sequence[Sequence[float]]) -> Optional[Coord]:
    """Signed-area weighted centroid of a ring.

    Open and closed rings are both accepted.  A ring whose area is exactly
    zero (collinear or repeated vertices) falls back to its first vertex.
    """
    pts = [(float(p[0]), float(p[1])) for p in ring if _is_position(p)]
    if not pts:
        return None

    n = len(pts)
    area2 = 0.0
    cx = 0.0
    cy = 0.0
    for i in range(n):
        x0, y0 = pts[i]
        x1, y1 = pts[(i + 1) % n]
        cross = x0 * y1 - x1 * y0
        area2 += cross
        cx += (x0 + x1) * cross
        cy += (y0 + y1) * cross

    if area2 == 0.0:
        return pts[0]
    return (cx / (3.0 * area2), cy / (3.0 * area2))


def mean_point(points: Sequence[Coord]) -> Optional[Coord]:
    """Arithmetic centroid of a point list."""
    if not points:
        return None
    n = float(len(points))
    return (sum(p[0] for p in points) / n, sum(p[1] for p in points) / n)


def geometry_center(geometry: Optional[dict]) -> Optional[Coord]:
    """Visual centre (lon, lat) of a record geometry.

    Point → its coordinates; Polygon → exterior ring centroid;
    MultiPolygon → first polygon's exterior centroid; otherwise None.
    """
    if not isinstance(geometry, dict):
        return None
    gtype = geometry.get("type")
    coords = geometry.get("coordinates")
    try:
        if gtype == "Point":
            return (float(coords[0]), float(coords[1])) if _is_position(coords) else None
        if gtype == "Polygon":
            return centroid_of_ring(coords[0]) if coords else None
        if gtype == "MultiPolygon":
            if not coords or not coords[0]:
                return None
            return centroid_of_ring(coords[0][0])
    except (TypeError, IndexError):
        return None
    return None


# ── Convex hull (Andrew's monotone chain) ────────────────────────────

def _cross(o: Coord, a: Coord, b: Coord) -> float:
    return (a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0])


def convex_hull_ring(points: Iterable[Sequence[float]]) -> Optional[List[Coord]]:
    """Closed counter-clockwise hull ring, or None below 3 distinct points.

    Collinear points are dropped (``cross <= 0`` pops), so an all-collinear
    input is degenerate too.
    """
    uniq = sorted({(float(p[0]), float(p[1])) for p in points if _is_position(p)})
    if len(uniq) < 3:
        return None

    lower: List[Coord] = []
    for p in uniq:
        while len(lower) >= 2 and _cross(lower[-2], lower[-1], p) <= 0:
            lower.pop()
        lower.append(p)

    upper: List[Coord] = []
    for p in reversed(uniq):
        while len(upper) >= 2 and _cross(upper[-2], upper[-1], p) <= 0:
            upper.pop()
        upper.append(p)

    hull = lower[:-1] + upper[:-1]
    if len(hull) < 3:
        return None
    return hull + [hull[0]]


def convex_hull(points: Iterable[Sequence[float]]) -> Optional[dict]:
    """Convex hull as a GeoJSON Polygon, or None for degenerate input."""
    ring = convex_hull_ring(points)
    if ring is None:
        return None
    return {"type": "Polygon", "coordinates": [[[x, y] for x, y in ring]]}


# ── Distances / projection ───────────────────────────────────────────

def planar_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Euclidean distance in whatever projected unit both points use."""
    return math.hypot(a[0] - b[0], a[1] - b[1])


class LocalProjection:
    """Azimuthal equidistant projection centred on a point.

    Distances from the centre are exact and nearby distances are close to
    true metres, which keeps DBSCAN's ``eps`` interpretable in metres.
    """

    def __init__(self, lon_0: float, lat_0: float):
        self.lon_0 = lon_0
        self.lat_0 = lat_0
        crs = pyproj.CRS(
            f"+proj=aeqd +lat_0={lat_0} +lon_0={lon_0} +datum=WGS84 +units=m +no_defs"
        )
        self._fwd = pyproj.Transformer.from_crs(WGS84, crs, always_xy=True)
        self._inv = pyproj.Transformer.from_crs(crs, WGS84, always_xy=True)

    @classmethod
    def around(cls, points: Sequence[Coord]) -> "LocalProjection":
        """Projection centred on the mean of *points* (lon, lat)."""
        centre = mean_point(points) or (0.0, 0.0)
        return cls(centre[0], centre[1])

    def forward(self, lon: float, lat: float) -> Coord:
        x, y = self._fwd.transform(lon, lat)
        return (x, y)

    def forward_many(self, points: Sequence[Coord]) -> List[Coord]:
        if not points:
            return []
        xs, ys = self._fwd.transform([p[0] for p in points], [p[1] for p in points])
        return list(zip(map(float, xs), map(float, ys)))

    def inverse(self, x: float, y: float) -> Coord:
        lon, lat = self._inv.transform(x, y)
        return (lon, lat)

    def inverse_geometry(self, geometry: dict) -> dict:
        """Back-project a metre-space GeoJSON geometry to lon/lat."""
        return mapping(transform(self._inv.transform, shape(geometry)))
