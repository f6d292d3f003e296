"""
Data model for the partition cache.

A :class:`Record` is one availability item (an address with its offers),
a :class:`PartitionPointer` describes a whole partition without its
contents, and a :class:`CacheEntry` is what the persistent cache holds for
one partition.

Incoming records arrive in three shapes and are all normalised by
:func:`parse_record`:

1. canonical ``{"id", "category", "geometry", "payload"}`` (cache format)
2. offer objects ``{"id", "address", "geometry", "offers": [...]}``
3. GeoJSON Features whose ``properties`` carry ``id`` / ``connection_type``

Example
-------
    rec = parse_record({"id": "a1", "geometry": {...}, "offers": [...]})
    rec.category      # "fiber"
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..errors import MalformedRecord
from .geometry import BBox, bbox_of_points, bounding_box_of

log = logging.getLogger(__name__)

CATEGORIES = ("fiber", "dsl", "cable", "mobile", "satellite", "unknown")

RECORD_GEOMETRY_TYPES = ("Point", "Polygon", "MultiPolygon")

_CATEGORY_PATTERNS = [
    (re.compile(r"fiber|optik"), "fiber"),
    (re.compile(r"vdsl|dsl"), "dsl"),
    (re.compile(r"cable"), "cable"),
    (re.compile(r"mobile|4g|5g|wireless"), "mobile"),
    (re.compile(r"satellite|satelit"), "satellite"),
]


def normalize_category(raw: Any) -> str:
    """Map a free-form connection type onto a canonical category."""
    if not raw:
        return "unknown"
    text = str(raw).lower()
    for pattern, category in _CATEGORY_PATTERNS:
        if pattern.search(text):
            return category
    return text


@dataclass
class Record:
    """One dataset item."""
    id: str
    category: str
    geometry: Dict[str, Any]
    payload: Dict[str, Any] = field(default_factory=dict)
    source: str = ""          # partition / overlay it was merged from

    def as_dict(self) -> Dict[str, Any]:
        """Canonical form used by the cache."""
        return {
            "id": self.id,
            "category": self.category,
            "geometry": self.geometry,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Record":
        return parse_record(data)


def _validate_geometry(geometry: Any) -> Dict[str, Any]:
    if not isinstance(geometry, dict):
        raise MalformedRecord("geometry missing")
    if geometry.get("type") not in RECORD_GEOMETRY_TYPES:
        raise MalformedRecord(f"unsupported geometry type {geometry.get('type')!r}")
    if bounding_box_of(geometry) is None:
        raise MalformedRecord("geometry has no coordinates")
    return geometry


def _offer_connection_type(offers: Any) -> Any:
    if not isinstance(offers, list) or not offers or not isinstance(offers[0], dict):
        return None
    first = offers[0]
    return first.get("connectionType") or first.get("type") or first.get("connection_type")


_CANONICAL_KEYS = {"id", "category", "geometry", "payload"}


def parse_record(raw: Any) -> Record:
    """Normalise one raw item into a :class:`Record`.

    Raises
    ------
    MalformedRecord
        If the item has no id or no usable Point/Polygon/MultiPolygon.
    """
    if not isinstance(raw, dict):
        raise MalformedRecord("record is not an object")

    if raw.get("type") == "Feature":
        props = raw.get("properties")
        if not isinstance(props, dict):
            raise MalformedRecord("feature without properties")
        rec_id = props.get("id") or raw.get("id")
        if not rec_id:
            raise MalformedRecord("feature without id")
        category = props.get("category") or normalize_category(
            props.get("connection_type") or _offer_connection_type(props.get("offers"))
        )
        payload = {k: v for k, v in props.items() if k not in ("id", "category")}
        return Record(
            id=str(rec_id),
            category=normalize_category(category),
            geometry=_validate_geometry(raw.get("geometry")),
            payload=payload,
        )

    rec_id = raw.get("id")
    if not rec_id:
        raise MalformedRecord("record without id")
    geometry = _validate_geometry(raw.get("geometry"))

    if set(raw) <= _CANONICAL_KEYS and isinstance(raw.get("payload", {}), dict):
        return Record(
            id=str(rec_id),
            category=normalize_category(raw.get("category")),
            geometry=geometry,
            payload=dict(raw.get("payload") or {}),
        )

    category = raw.get("category") or _offer_connection_type(raw.get("offers"))
    payload = {k: v for k, v in raw.items() if k not in ("id", "category", "geometry")}
    return Record(
        id=str(rec_id),
        category=normalize_category(category),
        geometry=geometry,
        payload=payload,
    )


def parse_records(items: List[Any], source: str = "") -> List[Record]:
    """Parse a list of raw items, skipping malformed ones."""
    out: List[Record] = []
    for item in items:
        try:
            rec = parse_record(item)
        except MalformedRecord as exc:
            log.debug("Skipping malformed record in %s: %s", source or "input", exc)
            continue
        out.append(rec)
    return out


def parse_ndjson(text: str, source: str = "") -> List[Record]:
    """Parse newline-delimited JSON, one record per line.

    Each line is handled on its own; unparsable lines and lines that fail
    record validation are skipped.
    """
    records: List[Record] = []
    skipped = 0
    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            records.append(parse_record(json.loads(line)))
        except (ValueError, MalformedRecord) as exc:
            skipped += 1
            log.debug("%s line %d skipped: %s", source or "ndjson", lineno, exc)

    if skipped:
        log.warning(
            "%s: %d records parsed, %d malformed lines skipped",
            source or "ndjson", len(records), skipped,
        )
    return records


# ── Partition metadata ───────────────────────────────────────────────

_POINTER_KEYS = {
    "name", "bbox", "boundingBox", "outline", "furthestPoints",
    "count", "recordCount", "updatedAt", "file", "path", "userDataset",
}


def _as_bbox(value: Any) -> Optional[BBox]:
    if isinstance(value, (list, tuple)) and len(value) == 4:
        try:
            return tuple(float(v) for v in value)  # type: ignore[return-value]
        except (TypeError, ValueError):
            return None
    return None


@dataclass
class PartitionPointer:
    """Catalog entry for one named partition."""
    name: str
    bbox: BBox
    outline: Optional[Dict[str, Any]] = None
    furthest_points: List[Tuple[float, float]] = field(default_factory=list)
    record_count: int = 0
    updated_at: Optional[str] = None
    file: str = ""
    overlay: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.file:
            self.file = self.name

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PartitionPointer":
        """Build a pointer from a catalog entry.

        The bbox is derived from the outline ring when the entry has none.
        """
        if not isinstance(data, dict) or not data.get("name"):
            raise ValueError("catalog entry without name")

        outline = data.get("outline")
        bbox = _as_bbox(data.get("bbox")) or _as_bbox(data.get("boundingBox"))
        if bbox is None and isinstance(outline, dict) and outline.get("type") == "Polygon":
            ring = (outline.get("coordinates") or [[]])[0]
            bbox = bbox_of_points((float(p[0]), float(p[1])) for p in ring)
        if bbox is None:
            raise ValueError(f"catalog entry {data['name']!r} has no bbox or outline")

        furthest = [
            (float(p[0]), float(p[1]))
            for p in data.get("furthestPoints") or []
            if isinstance(p, (list, tuple)) and len(p) >= 2
        ]
        updated_at = data.get("updatedAt")
        return cls(
            name=str(data["name"]),
            bbox=bbox,
            outline=outline if isinstance(outline, dict) else None,
            furthest_points=furthest,
            record_count=int(data.get("recordCount", data.get("count", 0)) or 0),
            updated_at=str(updated_at) if updated_at is not None else None,
            file=str(data.get("file") or data.get("path") or data["name"]),
            overlay=bool(data.get("userDataset", False)),
            extra={k: v for k, v in data.items() if k not in _POINTER_KEYS},
        )

    def as_dict(self) -> Dict[str, Any]:
        """Serialise back to the catalog wire format."""
        out: Dict[str, Any] = dict(self.extra)
        out.update({
            "name": self.name,
            "bbox": list(self.bbox),
            "outline": self.outline,
            "furthestPoints": [list(p) for p in self.furthest_points],
            "count": self.record_count,
            "updatedAt": self.updated_at,
            "file": self.file,
        })
        if self.overlay:
            out["userDataset"] = True
        return out


@dataclass
class CacheEntry:
    """One cached partition."""
    name: str
    updated_at: Optional[str]
    records: List[Record] = field(default_factory=list)

    def is_valid_for(self, pointer: PartitionPointer) -> bool:
        return self.updated_at == pointer.updated_at


@dataclass(frozen=True)
class ViewportState:
    """Visible map bounds plus zoom, as reported by the map surface."""
    west: float
    south: float
    east: float
    north: float
    zoom: float

    @property
    def bbox(self) -> BBox:
        return (self.west, self.south, self.east, self.north)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ViewportState":
        return cls(
            west=float(data["west"]),
            south=float(data["south"]),
            east=float(data["east"]),
            north=float(data["north"]),
            zoom=float(data["zoom"]),
        )
