import math
from typing import Callable, Dict, List, Optional

import pytest

from netcover.errors import PartitionFetchFailure
from netcover.geo.records import PartitionPointer, Record
from netcover.ingest.catalog_client import Transport
from netcover.loader.scheduler import Scheduler, TimerHandle
from netcover.storage.kv_store import MemoryStore

# Riga, roughly
LON0 = 24.10
LAT0 = 56.95
M_PER_DEG_LAT = 111_320.0


def offset(dx_m: float, dy_m: float, lon0: float = LON0, lat0: float = LAT0):
    """(lon, lat) a given number of metres east/north of an origin."""
    lat = lat0 + dy_m / M_PER_DEG_LAT
    lon = lon0 + dx_m / (M_PER_DEG_LAT * math.cos(math.radians(lat0)))
    return lon, lat


def point_record(rec_id: str, lon: float, lat: float, category: str = "fiber") -> Record:
    return Record(
        id=rec_id,
        category=category,
        geometry={"type": "Point", "coordinates": [lon, lat]},
        payload={"address": f"Street {rec_id}"},
    )


def raw_offer(rec_id: str, lon: float, lat: float, connection: str = "Optika") -> dict:
    return {
        "id": rec_id,
        "address": f"Iela {rec_id}",
        "geometry": {"type": "Point", "coordinates": [lon, lat]},
        "offers": [{"connectionType": connection, "price": 19.99}],
    }


def make_pointer(name: str, bbox, updated_at: Optional[str] = "2025-01-01") -> PartitionPointer:
    return PartitionPointer(name=name, bbox=tuple(bbox), updated_at=updated_at, record_count=0)


class _ManualHandle(TimerHandle):
    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler(Scheduler):
    """Scheduler driven by explicit ``advance`` calls."""

    def __init__(self) -> None:
        self.now = 0.0
        self.scheduled = 0
        self._pending: List[list] = []

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle:
        handle = _ManualHandle()
        self.scheduled += 1
        self._pending.append([self.now + delay_s, self.scheduled, handle, callback])
        return handle

    def pending(self) -> int:
        return sum(1 for _, _, h, _ in self._pending if not h.cancelled)

    def advance(self, seconds: float) -> None:
        self.now += seconds
        due = sorted(
            (item for item in self._pending if item[0] <= self.now),
            key=lambda item: (item[0], item[1]),
        )
        for item in due:
            self._pending.remove(item)
            if not item[2].cancelled:
                item[3]()

    def shutdown(self) -> None:
        for item in self._pending:
            item[2].cancel()
        self._pending.clear()


class FakeTransport(Transport):
    """In-memory catalog and partitions with call counting."""

    def __init__(self, partitions: Optional[Dict[str, List[Record]]] = None,
                 catalog: Optional[list] = None):
        self.partitions = partitions or {}
        self.catalog = catalog or []
        self.fetches: Dict[str, int] = {}
        self.failing: set = set()
        self.on_fetch: Optional[Callable[[PartitionPointer], None]] = None
        self.catalog_error: Optional[Exception] = None

    def fetch_catalog(self) -> list:
        if self.catalog_error is not None:
            raise self.catalog_error
        return list(self.catalog)

    def fetch_partition(self, pointer: PartitionPointer) -> List[Record]:
        self.fetches[pointer.name] = self.fetches.get(pointer.name, 0) + 1
        if self.on_fetch is not None:
            self.on_fetch(pointer)
        if pointer.name in self.failing:
            raise PartitionFetchFailure(pointer.name, "unreachable")
        return list(self.partitions.get(pointer.name, []))


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def store():
    return MemoryStore()
