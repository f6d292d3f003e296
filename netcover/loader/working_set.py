"""
Working set — every record currently loaded, keyed by id.

Records from all partitions and overlays are merged into one collection.
A later merge of the same id replaces the earlier record (last writer
wins) and takes over its ownership, so evicting the earlier source leaves
it in place.
"""
from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Dict, Iterable, List, Optional, Set

from ..geo.records import Record

log = logging.getLogger(__name__)


class WorkingSet:
    """Deduplicated, id-keyed record collection (thread-safe)."""

    def __init__(self) -> None:
        self._records: Dict[str, Record] = {}
        self._lock = threading.RLock()
        self._version = 0

    @property
    def version(self) -> int:
        """Bumped on every mutation; lets consumers skip recomputation."""
        return self._version

    def merge(self, source: str, records: Iterable[Record]) -> int:
        """Merge *records* tagged with *source*.  Returns the merged count."""
        n = 0
        with self._lock:
            for rec in records:
                if not rec.id:
                    continue
                self._records[rec.id] = dataclasses.replace(rec, source=source)
                n += 1
            if n:
                self._version += 1
        return n

    def remove_source(self, source: str) -> int:
        """Drop every record currently owned by *source*."""
        with self._lock:
            doomed = [rid for rid, r in self._records.items() if r.source == source]
            for rid in doomed:
                del self._records[rid]
            if doomed:
                self._version += 1
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            if self._records:
                self._records.clear()
                self._version += 1

    def get(self, record_id: str) -> Optional[Record]:
        with self._lock:
            return self._records.get(record_id)

    def records(self) -> List[Record]:
        with self._lock:
            return list(self._records.values())

    def sources(self) -> Set[str]:
        with self._lock:
            return {r.source for r in self._records.values()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        with self._lock:
            return record_id in self._records
