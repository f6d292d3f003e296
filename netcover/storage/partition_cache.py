"""
Persistent partition cache with freshness-token validity.

Each partition is stored under ``region_<name>`` as
``{"updatedAt": <token>, "records": [...]}``.  An entry is valid only
while its token equals the catalog pointer's ``updatedAt``; the catalog
rewrites whole partitions, so there is no other expiry and no size bound.

Usage
-----
    cache = PartitionCache(SQLiteStore())
    cache.put("riga", records, "2025-01-01")
    cache.get_valid("riga", "2025-01-01")   # -> records
    cache.get_valid("riga", "2025-02-01")   # -> None, entry purged
"""
from __future__ import annotations

import json
import logging
from typing import List, Optional

from ..errors import CacheCorruption, MalformedRecord
from ..geo.records import CacheEntry, Record, parse_record
from .kv_store import KeyValueStore

log = logging.getLogger(__name__)

KEY_PREFIX = "region_"


class PartitionCache:
    """Maps partition name → (updatedAt, records) in a key/value store."""

    def __init__(self, store: KeyValueStore):
        self._store = store

    @staticmethod
    def _key(name: str) -> str:
        return f"{KEY_PREFIX}{name}"

    @staticmethod
    def _encode(entry: CacheEntry) -> str:
        return json.dumps({
            "updatedAt": entry.updated_at,
            "records": [r.as_dict() for r in entry.records],
        })

    @staticmethod
    def _decode(name: str, raw: str) -> CacheEntry:
        try:
            doc = json.loads(raw)
            if not isinstance(doc, dict) or not isinstance(doc.get("records"), list):
                raise CacheCorruption(f"cache entry {name!r} has no record list")
            records = [parse_record(item) for item in doc["records"]]
        except (ValueError, MalformedRecord) as exc:
            raise CacheCorruption(f"cache entry {name!r} unparsable: {exc}") from exc
        updated_at = doc.get("updatedAt")
        return CacheEntry(
            name=name,
            updated_at=str(updated_at) if updated_at is not None else None,
            records=records,
        )

    def get(self, name: str) -> Optional[CacheEntry]:
        """Return the stored entry, or None.  Corrupt entries are purged."""
        raw = self._store.get(self._key(name))
        if raw is None:
            return None
        try:
            return self._decode(name, raw)
        except CacheCorruption as exc:
            log.warning("%s; discarding", exc)
            self._store.remove(self._key(name))
            return None

    def get_valid(
        self, name: str, expected_updated_at: Optional[str]
    ) -> Optional[List[Record]]:
        """Cached records if the entry matches *expected_updated_at*.

        A mismatching entry is deleted so the caller refetches.  When the
        catalog carries no token (None) any cached entry is accepted.
        """
        entry = self.get(name)
        if entry is None:
            return None
        if expected_updated_at is None or entry.updated_at == expected_updated_at:
            return entry.records
        log.info(
            "Cache entry %s stale (cached %s, catalog %s); purging",
            name, entry.updated_at, expected_updated_at,
        )
        self._store.remove(self._key(name))
        return None

    def put(
        self, name: str, records: List[Record], updated_at: Optional[str]
    ) -> CacheEntry:
        entry = CacheEntry(name=name, updated_at=updated_at, records=list(records))
        self._store.set(self._key(name), self._encode(entry))
        log.debug("Cached partition %s (%d records, %s)", name, len(records), updated_at)
        return entry

    def remove(self, name: str) -> None:
        self._store.remove(self._key(name))

    def cached_names(self) -> List[str]:
        return [k[len(KEY_PREFIX):] for k in self._store.keys(KEY_PREFIX)]
