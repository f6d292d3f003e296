"""
Density-cluster overlays per connection category.

The visible records are reduced to one point each (their geometry
centre), grouped by category, projected to local metres and clustered
with DBSCAN.  Every cluster becomes one overlay shape:

  - fewer than 3 members → buffered circle around the arithmetic
    centroid, radius ``max(eps * 0.9, 60)`` metres so 1–2 point clusters
    stay visible
  - otherwise → convex hull of the members (a degenerate hull, e.g. all
    members collinear, falls back to the circle)

Points are put into a canonical order (lon, lat, id) before anything else
happens, so cluster membership and hull vertices do not depend on the
order records arrive in.

Usage
-----
    engine = ClusterEngine(eps_m=100, min_pts=3)
    clusters = engine.compute(working_set.records(), categories={"fiber"})
    geojson = clusters_to_geojson(clusters)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set

import numpy as np
from shapely.geometry import Point, mapping
from sklearn.cluster import DBSCAN

from ..geo.geometry import (
    BBox,
    Coord,
    LocalProjection,
    bbox_contains,
    convex_hull_ring,
    geometry_center,
    mean_point,
)
from ..geo.records import Record

log = logging.getLogger(__name__)

DEFAULT_EPS_M = 180.0
DEFAULT_MIN_PTS = 5
MIN_CIRCLE_RADIUS_M = 60.0
CIRCLE_RADIUS_FACTOR = 0.9


@dataclass
class ClusterPoint:
    """A record reduced to its centre."""
    record_id: str
    category: str
    lon: float
    lat: float


@dataclass
class Cluster:
    """One rendered density region."""
    category: str
    members: List[ClusterPoint]
    centroid: Coord                       # (lon, lat)
    shape: str                            # "hull" or "circle"
    ring: List[List[float]] = field(default_factory=list)  # closed lon/lat ring
    radius_m: Optional[float] = None      # circles only

    @property
    def member_ids(self) -> List[str]:
        return [m.record_id for m in self.members]

    def to_feature(self) -> dict:
        props = {
            "category": self.category,
            "shape": self.shape,
            "size": len(self.members),
            "centroid": list(self.centroid),
        }
        if self.radius_m is not None:
            props["radius_m"] = self.radius_m
        return {
            "type": "Feature",
            "properties": props,
            "geometry": {"type": "Polygon", "coordinates": [self.ring]},
        }


def dbscan(xy: np.ndarray, eps: float, min_pts: int) -> List[List[int]]:
    """DBSCAN over an (n, 2) array of projected coordinates.

    Clusters are grown from core points in array order.  A point's
    eps-neighbourhood includes itself (``distance <= eps``); a border point
    reachable from two clusters stays with the first one that reached it.

    Returns clusters as sorted lists of row indices, in creation order;
    noise (label -1) is left out.
    """
    if len(xy) == 0:
        return []
    labels = DBSCAN(eps=eps, min_samples=min_pts).fit_predict(xy)

    clusters: Dict[int, List[int]] = {}
    for i, label in enumerate(labels):
        if label == -1:
            continue
        clusters.setdefault(int(label), []).append(i)
    return [clusters[label] for label in sorted(clusters)]


def to_cluster_points(records: Iterable[Record]) -> List[ClusterPoint]:
    points: List[ClusterPoint] = []
    for rec in records:
        centre = geometry_center(rec.geometry)
        if centre is None:
            continue
        points.append(ClusterPoint(rec.id, rec.category, centre[0], centre[1]))
    return points


class ClusterEngine:
    """Turns records into per-category hull / circle overlays."""

    def __init__(
        self,
        eps_m: float = DEFAULT_EPS_M,
        min_pts: int = DEFAULT_MIN_PTS,
        min_circle_radius_m: float = MIN_CIRCLE_RADIUS_M,
        circle_radius_factor: float = CIRCLE_RADIUS_FACTOR,
    ):
        self.eps_m = eps_m
        self.min_pts = min_pts
        self.min_circle_radius_m = min_circle_radius_m
        self.circle_radius_factor = circle_radius_factor

    def circle_radius(self, eps: float) -> float:
        return max(eps * self.circle_radius_factor, self.min_circle_radius_m)

    def compute(
        self,
        records: Iterable[Record],
        eps: Optional[float] = None,
        min_pts: Optional[int] = None,
        categories: Optional[Set[str]] = None,
        viewport: Optional[BBox] = None,
    ) -> List[Cluster]:
        """Cluster *records* and build one overlay shape per cluster.

        *categories* restricts to those categories; *viewport* (a lon/lat
        bbox) keeps only points whose centre lies inside it.
        """
        eps = self.eps_m if eps is None else eps
        min_pts = self.min_pts if min_pts is None else min_pts

        groups: Dict[str, List[ClusterPoint]] = {}
        for p in to_cluster_points(records):
            if categories is not None and p.category not in categories:
                continue
            if viewport is not None and not bbox_contains(viewport, p.lon, p.lat):
                continue
            groups.setdefault(p.category, []).append(p)

        clusters: List[Cluster] = []
        for category in sorted(groups):
            clusters.extend(self._cluster_category(category, groups[category], eps, min_pts))

        log.debug(
            "Clustered %d categories into %d overlays (eps=%.0f, min_pts=%d)",
            len(groups), len(clusters), eps, min_pts,
        )
        return clusters

    def _cluster_category(
        self, category: str, points: List[ClusterPoint], eps: float, min_pts: int,
    ) -> List[Cluster]:
        points = sorted(points, key=lambda p: (p.lon, p.lat, p.record_id))
        lonlat = [(p.lon, p.lat) for p in points]
        proj = LocalProjection.around(lonlat)
        xy = np.array(proj.forward_many(lonlat), dtype=float).reshape(-1, 2)

        out: List[Cluster] = []
        for idxs in dbscan(xy, eps, min_pts):
            members = [points[i] for i in idxs]
            member_xy = [(float(xy[i, 0]), float(xy[i, 1])) for i in idxs]
            centroid = mean_point([(m.lon, m.lat) for m in members])

            ring = convex_hull_ring(member_xy) if len(members) >= 3 else None
            if ring is not None:
                out.append(Cluster(
                    category=category,
                    members=members,
                    centroid=centroid,
                    shape="hull",
                    ring=[list(proj.inverse(x, y)) for x, y in ring],
                ))
            else:
                out.append(self._circle(category, members, centroid, proj, eps))
        return out

    def _circle(
        self,
        category: str,
        members: List[ClusterPoint],
        centroid: Coord,
        proj: LocalProjection,
        eps: float,
    ) -> Cluster:
        radius = self.circle_radius(eps)
        cx, cy = proj.forward(centroid[0], centroid[1])
        disc = proj.inverse_geometry(mapping(Point(cx, cy).buffer(radius)))
        ring = [[float(x), float(y)] for x, y in disc["coordinates"][0]]
        return Cluster(
            category=category,
            members=members,
            centroid=centroid,
            shape="circle",
            ring=ring,
            radius_m=radius,
        )


def clusters_to_geojson(clusters: Sequence[Cluster]) -> dict:
    """Export cluster overlays as a GeoJSON FeatureCollection."""
    return {
        "type": "FeatureCollection",
        "features": [c.to_feature() for c in clusters],
    }
