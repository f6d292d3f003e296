"""
Partition index — the in-memory "pointer" catalog.

One :class:`PartitionPointer` per partition, refreshed wholesale whenever
the catalog is re-fetched.  The catalog is small (tens to hundreds of
entries), so intersection is a linear AABB scan.

Pointers are produced offline by :func:`build_pointer`, which scans a
partition's records once and summarises them as a bbox, a convex-hull
outline and the four extreme points.

Usage
-----
    from netcover.geo.partition_index import PartitionIndex
    index = PartitionIndex.from_catalog(json.loads(pointer_json))
    for ptr in index.intersecting(viewport):
        print(ptr.name, ptr.record_count)
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from .geometry import (
    BBox,
    Coord,
    bbox_intersects,
    bbox_of_points,
    collect_coords,
    convex_hull,
)
from .records import PartitionPointer, Record, ViewportState

log = logging.getLogger(__name__)


def furthest_points(points: Sequence[Coord]) -> List[Coord]:
    """Extreme points in [west, east, north, south] order.

    Ties keep the first point seen.
    """
    if not points:
        return []
    west = east = north = south = points[0]
    for p in points:
        if p[0] < west[0]:
            west = p
        if p[0] > east[0]:
            east = p
        if p[1] > north[1]:
            north = p
        if p[1] < south[1]:
            south = p
    return [west, east, north, south]


def build_pointer(
    name: str,
    records: Iterable[Record],
    updated_at: Optional[str] = None,
    file: str = "",
    overlay: bool = False,
) -> PartitionPointer:
    """Summarise a partition's records into a catalog pointer.

    Raises ValueError when no record contributes a coordinate, since such
    a partition could never intersect a viewport.
    """
    count = 0
    pts: List[Coord] = []
    for rec in records:
        count += 1
        pts.extend(collect_coords(rec.geometry))

    bbox = bbox_of_points(pts)
    if bbox is None:
        raise ValueError(f"partition {name!r} has no coordinates")

    return PartitionPointer(
        name=name,
        bbox=bbox,
        outline=convex_hull(pts),
        furthest_points=furthest_points(pts),
        record_count=count,
        updated_at=updated_at,
        file=file or name,
        overlay=overlay,
    )


class PartitionIndex:
    """Read-only view over the current partition catalog."""

    def __init__(self, pointers: Optional[Iterable[PartitionPointer]] = None):
        self._pointers: Dict[str, PartitionPointer] = {}
        if pointers is not None:
            self.replace(pointers)

    @classmethod
    def from_catalog(cls, entries: Any) -> "PartitionIndex":
        """Build an index from raw catalog dicts, skipping malformed ones."""
        index = cls()
        pointers: List[PartitionPointer] = []
        for entry in entries if isinstance(entries, list) else []:
            try:
                pointers.append(PartitionPointer.from_dict(entry))
            except (ValueError, TypeError) as exc:
                log.warning("Skipping catalog entry: %s", exc)
        index.replace(pointers)
        return index

    def replace(self, pointers: Iterable[PartitionPointer]) -> None:
        """Swap in a new catalog.  Duplicate names: last one wins."""
        fresh: Dict[str, PartitionPointer] = {}
        for ptr in pointers:
            if ptr.name in fresh:
                log.warning("Duplicate partition name %r in catalog", ptr.name)
            fresh[ptr.name] = ptr
        self._pointers = fresh
        log.info("Partition index holds %d partitions", len(fresh))

    def get(self, name: str) -> Optional[PartitionPointer]:
        return self._pointers.get(name)

    def names(self) -> List[str]:
        return list(self._pointers)

    def intersecting(self, viewport: ViewportState) -> List[PartitionPointer]:
        return self.intersecting_bbox(viewport.bbox)

    def intersecting_bbox(self, bbox: BBox) -> List[PartitionPointer]:
        return [p for p in self._pointers.values() if bbox_intersects(p.bbox, bbox)]

    def outlines(self) -> List[Dict[str, Any]]:
        """One polygon per partition for low-zoom rendering."""
        return [pointer_geometry(p) for p in self._pointers.values()]

    def as_catalog(self) -> List[Dict[str, Any]]:
        return [p.as_dict() for p in self._pointers.values()]

    def __len__(self) -> int:
        return len(self._pointers)

    def __iter__(self) -> Iterator[PartitionPointer]:
        return iter(list(self._pointers.values()))

    def __contains__(self, name: object) -> bool:
        return name in self._pointers


def pointer_geometry(p: PartitionPointer) -> Dict[str, Any]:
    """Outline polygon, or the bbox rectangle when the pointer has none."""
    if p.outline:
        return p.outline
    x0, y0, x1, y1 = p.bbox
    return {
        "type": "Polygon",
        "coordinates": [[[x0, y0], [x1, y0], [x1, y1], [x0, y1], [x0, y0]]],
    }


def pointers_to_geojson(pointers: Iterable[PartitionPointer]) -> dict:
    """Export pointer outlines as a GeoJSON FeatureCollection."""
    features = []
    for p in pointers:
        features.append({
            "type": "Feature",
            "properties": {
                "name": p.name,
                "count": p.record_count,
                "updatedAt": p.updated_at,
                "userDataset": p.overlay,
            },
            "geometry": pointer_geometry(p),
        })

    return {
        "type": "FeatureCollection",
        "features": features,
    }
