"""
User overlay datasets kept in the local store.

Uploaded datasets are persisted once and then behave like catalog
partitions: each gets a pointer (name prefixed ``user:``) and is loaded
into the working set only while it intersects the viewport.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import List, Optional

from ..geo.partition_index import build_pointer
from ..geo.records import PartitionPointer, Record, parse_record, parse_records
from ..errors import MalformedRecord
from .kv_store import KeyValueStore

log = logging.getLogger(__name__)

POINTER_INDEX_KEY = "userPointerIndex"
DATA_PREFIX = "userData_"
OVERLAY_PREFIX = "user:"


def overlay_name(name: str) -> str:
    return name if name.startswith(OVERLAY_PREFIX) else OVERLAY_PREFIX + name


class OverlayStore:
    """Persisted user datasets plus their pointer index."""

    def __init__(self, store: KeyValueStore):
        self._store = store

    def pointers(self) -> List[PartitionPointer]:
        raw = self._store.get(POINTER_INDEX_KEY)
        if not raw:
            return []
        try:
            entries = json.loads(raw)
        except ValueError as exc:
            log.warning("Overlay pointer index unreadable (%s); ignoring", exc)
            return []
        out: List[PartitionPointer] = []
        for entry in entries if isinstance(entries, list) else []:
            try:
                out.append(PartitionPointer.from_dict(entry))
            except (ValueError, TypeError) as exc:
                log.warning("Skipping overlay pointer: %s", exc)
        return out

    def _save_pointers(self, pointers: List[PartitionPointer]) -> None:
        self._store.set(POINTER_INDEX_KEY, json.dumps([p.as_dict() for p in pointers]))

    def save(self, name: str, items: List[object]) -> PartitionPointer:
        """Persist a dataset and register its pointer.

        *items* may be Records or raw dicts; malformed raw items are dropped.
        Raises ValueError when nothing usable remains.
        """
        records = [i for i in items if isinstance(i, Record)]
        records += parse_records([i for i in items if not isinstance(i, Record)], name)
        if not records:
            raise ValueError(f"overlay {name!r} has no valid records")

        full_name = overlay_name(name)
        pointer = build_pointer(
            full_name,
            records,
            updated_at=datetime.now(timezone.utc).isoformat(),
            overlay=True,
        )
        self._store.set(
            DATA_PREFIX + full_name,
            json.dumps([r.as_dict() for r in records]),
        )
        others = [p for p in self.pointers() if p.name != full_name]
        self._save_pointers(others + [pointer])
        log.info("Saved overlay %s (%d records)", full_name, len(records))
        return pointer

    def records(self, name: str) -> Optional[List[Record]]:
        raw = self._store.get(DATA_PREFIX + overlay_name(name))
        if raw is None:
            return None
        try:
            return [parse_record(item) for item in json.loads(raw)]
        except (ValueError, TypeError, MalformedRecord) as exc:
            log.warning("Overlay %s unreadable (%s); dropping", name, exc)
            self.delete(name)
            return None

    def delete(self, name: str) -> bool:
        full_name = overlay_name(name)
        pointers = self.pointers()
        remaining = [p for p in pointers if p.name != full_name]
        self._store.remove(DATA_PREFIX + full_name)
        if len(remaining) == len(pointers):
            return False
        self._save_pointers(remaining)
        log.info("Deleted overlay %s", full_name)
        return True
