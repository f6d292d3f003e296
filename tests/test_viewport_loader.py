import threading
from concurrent.futures import ThreadPoolExecutor, wait

import pytest

from netcover.geo.partition_index import PartitionIndex
from netcover.geo.records import ViewportState
from netcover.loader.scheduler import ThreadingScheduler
from netcover.loader.viewport_loader import PartitionState, ViewportLoader
from netcover.loader.working_set import WorkingSet
from netcover.storage.overlay_store import OverlayStore
from netcover.storage.partition_cache import PartitionCache

from conftest import FakeTransport, make_pointer, point_record, raw_offer

WEST = make_pointer("west", (0.0, 0.0, 1.0, 1.0))
EAST = make_pointer("east", (2.0, 0.0, 3.0, 1.0))

OVER_WEST = ViewportState(west=0.2, south=0.2, east=0.8, north=0.8, zoom=16)
OVER_EAST = ViewportState(west=2.2, south=0.2, east=2.8, north=0.8, zoom=16)
OVER_BOTH = ViewportState(west=0.5, south=0.2, east=2.5, north=0.8, zoom=16)
ZOOMED_OUT = ViewportState(west=-10, south=-10, east=10, north=10, zoom=12)


@pytest.fixture
def transport():
    return FakeTransport(partitions={
        "west": [point_record("w1", 0.5, 0.5), point_record("w2", 0.6, 0.5)],
        "east": [point_record("e1", 2.5, 0.5)],
    })


def _loader(transport, store, scheduler, **kwargs):
    return ViewportLoader(
        PartitionIndex([WEST, EAST]),
        PartitionCache(store),
        transport,
        WorkingSet(),
        scheduler,
        **kwargs,
    )


def _ids(loader):
    return sorted(r.id for r in loader.working_set.records())


# ── loading ──────────────────────────────────────────────────────────

def test_loads_only_intersecting_partitions(transport, store, scheduler):
    loader = _loader(transport, store, scheduler)
    assert loader.on_viewport_change(OVER_WEST) == ["west"]
    assert _ids(loader) == ["w1", "w2"]
    assert loader.state_of("west") is PartitionState.LOADED
    assert loader.state_of("east") is PartitionState.NOT_LOADED
    assert transport.fetches == {"west": 1}


def test_loaded_partition_not_fetched_again(transport, store, scheduler):
    loader = _loader(transport, store, scheduler)
    loader.on_viewport_change(OVER_WEST)
    assert loader.on_viewport_change(OVER_WEST) == []
    assert transport.fetches == {"west": 1}


def test_cache_hit_skips_transport(transport, store, scheduler):
    _loader(transport, store, scheduler).on_viewport_change(OVER_WEST)
    # fresh session on the same store
    again = _loader(transport, store, scheduler)
    again.on_viewport_change(OVER_WEST)
    assert transport.fetches == {"west": 1}
    assert _ids(again) == ["w1", "w2"]


def test_stale_cache_is_refetched(transport, store, scheduler):
    PartitionCache(store).put("west", [point_record("old", 0.5, 0.5)], "2024-12-01")
    loader = _loader(transport, store, scheduler)
    loader.on_viewport_change(OVER_WEST)
    assert transport.fetches == {"west": 1}
    assert _ids(loader) == ["w1", "w2"]
    assert PartitionCache(store).get("west").updated_at == "2025-01-01"


def test_failed_fetch_returns_to_not_loaded_and_retries(transport, store, scheduler):
    transport.failing.add("west")
    loader = _loader(transport, store, scheduler)
    loader.on_viewport_change(OVER_WEST)
    assert loader.state_of("west") is PartitionState.NOT_LOADED
    assert len(loader.working_set) == 0
    assert PartitionCache(store).get("west") is None

    transport.failing.clear()
    loader.on_viewport_change(OVER_WEST)
    assert transport.fetches == {"west": 2}
    assert _ids(loader) == ["w1", "w2"]


def test_unexpected_error_does_not_wedge_partition(transport, store, scheduler):
    def boom(pointer):
        raise RuntimeError("bad payload")

    transport.on_fetch = boom
    loader = _loader(transport, store, scheduler)
    loader.on_viewport_change(OVER_WEST)
    assert loader.state_of("west") is PartitionState.NOT_LOADED


def test_reentrant_viewport_event_does_not_duplicate_fetch(transport, store, scheduler):
    loader = _loader(transport, store, scheduler)
    seen = []

    def during_fetch(pointer):
        seen.append(loader.state_of(pointer.name))
        assert loader.on_viewport_change(OVER_WEST) == []

    transport.on_fetch = during_fetch
    loader.on_viewport_change(OVER_WEST)
    assert seen == [PartitionState.LOADING]
    assert transport.fetches == {"west": 1}


def test_background_fetches_on_executor(transport, store, scheduler):
    gate = threading.Event()
    transport.on_fetch = lambda pointer: gate.wait(5)
    with ThreadPoolExecutor(max_workers=2) as pool:
        loader = _loader(transport, store, scheduler, executor=pool)
        assert sorted(loader.on_viewport_change(OVER_BOTH)) == ["east", "west"]
        assert loader.state_of("west") is PartitionState.LOADING
        # repeated events while in flight dispatch nothing
        assert loader.on_viewport_change(OVER_BOTH) == []

        gate.set()
        wait(loader.inflight(), timeout=5)

    assert transport.fetches == {"west": 1, "east": 1}
    assert _ids(loader) == ["e1", "w1", "w2"]
    assert loader.loaded_names() == ["east", "west"]


# ── eviction ─────────────────────────────────────────────────────────

def test_idle_partition_evicted_after_delay(transport, store, scheduler):
    loader = _loader(transport, store, scheduler)
    loader.on_viewport_change(OVER_WEST)
    loader.on_viewport_change(OVER_EAST)
    assert loader.state_of("west") is PartitionState.EVICTION_PENDING
    assert loader.pending_evictions() == ["west"]

    scheduler.advance(4.9)
    assert "w1" in loader.working_set

    scheduler.advance(0.1)
    assert loader.state_of("west") is PartitionState.NOT_LOADED
    assert _ids(loader) == ["e1"]


def test_reentering_cancels_eviction(transport, store, scheduler):
    loader = _loader(transport, store, scheduler)
    loader.on_viewport_change(OVER_WEST)
    loader.on_viewport_change(OVER_EAST)
    scheduler.advance(3)
    loader.on_viewport_change(OVER_WEST)
    assert loader.state_of("west") is PartitionState.LOADED
    assert scheduler.pending() == 1   # east is now the idle one

    scheduler.advance(10)
    assert _ids(loader) == ["w1", "w2"]
    assert transport.fetches == {"west": 1, "east": 1}


def test_repeated_out_of_view_events_schedule_one_timer(transport, store, scheduler):
    loader = _loader(transport, store, scheduler)
    loader.on_viewport_change(OVER_WEST)
    elsewhere = ViewportState(west=5, south=5, east=6, north=6, zoom=17)
    for _ in range(4):
        loader.on_viewport_change(elsewhere)
    assert scheduler.scheduled == 1
    scheduler.advance(5)
    assert len(loader.working_set) == 0
    assert loader.pending_evictions() == []


def test_zoom_out_clears_everything(transport, store, scheduler):
    loader = _loader(transport, store, scheduler)
    loader.on_viewport_change(OVER_BOTH)
    loader.on_viewport_change(OVER_EAST)
    assert loader.pending_evictions() == ["west"]

    assert loader.on_viewport_change(ZOOMED_OUT) == []
    assert len(loader.working_set) == 0
    assert loader.pending_evictions() == []
    assert scheduler.pending() == 0
    assert loader.loaded_names() == []

    # zooming back in reloads, from cache
    loader.on_viewport_change(OVER_WEST)
    assert _ids(loader) == ["w1", "w2"]
    assert transport.fetches == {"west": 1, "east": 1}


def test_threshold_zoom_itself_loads(transport, store, scheduler):
    loader = _loader(transport, store, scheduler)
    vp = ViewportState(west=0.2, south=0.2, east=0.8, north=0.8, zoom=15)
    assert loader.on_viewport_change(vp) == ["west"]


def test_shutdown_cancels_pending_evictions(transport, store, scheduler):
    loader = _loader(transport, store, scheduler)
    loader.on_viewport_change(OVER_WEST)
    loader.on_viewport_change(OVER_EAST)
    loader.shutdown()
    assert loader.pending_evictions() == []
    scheduler.advance(10)
    assert "w1" in loader.working_set


# ── ownership ────────────────────────────────────────────────────────

def test_last_writer_owns_shared_record(store, scheduler):
    transport = FakeTransport(partitions={
        "west": [point_record("shared", 0.9, 0.5), point_record("w1", 0.5, 0.5)],
        "east": [point_record("shared", 2.1, 0.5, "dsl")],
    })
    loader = _loader(transport, store, scheduler)
    loader.on_viewport_change(OVER_WEST)
    loader.on_viewport_change(OVER_EAST)

    shared = loader.working_set.get("shared")
    assert shared.source == "east"
    assert shared.category == "dsl"

    scheduler.advance(5)  # evicts west
    assert "shared" in loader.working_set
    assert "w1" not in loader.working_set


def test_overlay_loads_and_evicts_like_a_partition(transport, store, scheduler):
    overlays = OverlayStore(store)
    ptr = overlays.save("upload", [raw_offer("u1", 0.4, 0.4), raw_offer("u2", 0.45, 0.4)])
    loader = _loader(transport, store, scheduler, overlays=overlays)
    loader.register_overlay(ptr)

    assert sorted(loader.on_viewport_change(OVER_WEST)) == ["user:upload", "west"]
    assert loader.working_set.get("u1").source == "user:upload"

    loader.unregister_overlay("user:upload")
    assert "u1" not in loader.working_set
    assert loader.state_of("user:upload") is PartitionState.NOT_LOADED
    assert "w1" in loader.working_set


class _GatedOverlays(OverlayStore):
    """Overlay store whose reads block until the test releases them."""

    def __init__(self, store, reads):
        super().__init__(store)
        self.entered = [threading.Event() for _ in range(reads)]
        self.release = [threading.Event() for _ in range(reads)]
        self._calls = 0

    def records(self, name):
        recs = super().records(name)
        n = self._calls
        self._calls += 1
        self.entered[n].set()
        self.release[n].wait(5)
        return recs


def test_resaved_overlay_discards_superseded_load(transport, store, scheduler):
    overlays = _GatedOverlays(store, reads=2)
    with ThreadPoolExecutor(max_workers=2) as pool:
        loader = _loader(transport, store, scheduler, overlays=overlays, executor=pool)
        loader.register_overlay(overlays.save("upload", [raw_offer("old", 0.4, 0.4)]))
        loader.on_viewport_change(OVER_WEST)
        assert overlays.entered[0].wait(5)
        stale = [f for f in loader.inflight() if not f.done()]

        # re-save while the first read is still in flight
        ptr = overlays.save("upload", [raw_offer("new", 0.45, 0.4)])
        loader.unregister_overlay(ptr.name)
        loader.register_overlay(ptr)
        assert loader.on_viewport_change(OVER_WEST) == ["user:upload"]
        assert overlays.entered[1].wait(5)

        overlays.release[0].set()
        wait(stale, timeout=5)
        assert "old" not in loader.working_set
        assert loader.state_of("user:upload") is PartitionState.LOADING

        overlays.release[1].set()
        wait(loader.inflight(), timeout=5)

    assert loader.working_set.get("new").source == "user:upload"
    assert "old" not in loader.working_set
    assert loader.state_of("user:upload") is PartitionState.LOADED


# ── scheduler ────────────────────────────────────────────────────────

def test_threading_scheduler_runs_callback():
    fired = threading.Event()
    sched = ThreadingScheduler()
    sched.call_later(0.01, fired.set)
    assert fired.wait(2)
    sched.shutdown()


def test_threading_scheduler_cancel_prevents_callback():
    fired = threading.Event()
    sched = ThreadingScheduler()
    handle = sched.call_later(0.2, fired.set)
    handle.cancel()
    assert handle.cancelled
    assert not fired.wait(0.4)
    sched.shutdown()
