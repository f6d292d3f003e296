"""
Viewport loader — lazy partition loading with idle eviction.

Every pan/zoom settle calls :meth:`ViewportLoader.on_viewport_change`.
Each partition moves through

    NOT_LOADED → LOADING → LOADED ⇄ EVICTION_PENDING → NOT_LOADED

State machine
─────────────
  zoom below threshold
    → cancel all eviction timers, clear the working set, every partition
      not currently LOADING goes back to NOT_LOADED (only outlines show)
  partition intersects and NOT_LOADED
    → LOADING; cache hit merges directly, miss fetches through the
      transport, stores in the cache and merges; failure → NOT_LOADED
      (retried on the next viewport event that still intersects)
  partition loaded but no longer intersects
    → EVICTION_PENDING with one idle timer; re-entering cancels it;
      expiry removes its records and sets NOT_LOADED

LOADING is the only duplicate-fetch guard: a partition in LOADING is never
fetched again.  In-flight fetches are not cancelled; their results are
merged and become subject to eviction on the next viewport event.

All state transitions and working-set merges run under one lock, so the
loader may be driven from a UI thread while fetches complete on worker
threads and timers fire on timer threads.

Usage
-----
    loader = ViewportLoader(index, cache, transport, working_set, scheduler)
    loader.on_viewport_change(ViewportState(24.0, 56.9, 24.2, 57.0, zoom=16))
"""
from __future__ import annotations

import enum
import logging
import threading
from concurrent.futures import Executor, Future
from typing import Dict, List, Optional, Tuple

from ..errors import PartitionFetchFailure
from ..geo.geometry import bbox_intersects
from ..geo.partition_index import PartitionIndex
from ..geo.records import PartitionPointer, Record, ViewportState
from ..ingest.catalog_client import Transport
from ..storage.overlay_store import OverlayStore
from ..storage.partition_cache import PartitionCache
from .scheduler import Scheduler, TimerHandle
from .working_set import WorkingSet

log = logging.getLogger(__name__)

LOAD_THRESHOLD_ZOOM = 15.0
EVICT_IDLE_S = 5.0


class PartitionState(enum.Enum):
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    LOADED = "loaded"
    EVICTION_PENDING = "eviction_pending"


class ViewportLoader:
    """Decides which partitions to fetch, keep and evict for a viewport."""

    def __init__(
        self,
        index: PartitionIndex,
        cache: PartitionCache,
        transport: Transport,
        working_set: WorkingSet,
        scheduler: Scheduler,
        overlays: Optional[OverlayStore] = None,
        executor: Optional[Executor] = None,
        load_threshold_zoom: float = LOAD_THRESHOLD_ZOOM,
        evict_idle_s: float = EVICT_IDLE_S,
    ):
        self._index = index
        self._cache = cache
        self._transport = transport
        self._working_set = working_set
        self._scheduler = scheduler
        self._overlays = overlays
        self._executor = executor
        self.load_threshold_zoom = load_threshold_zoom
        self.evict_idle_s = evict_idle_s

        self._lock = threading.RLock()
        self._states: Dict[str, PartitionState] = {}
        self._timers: Dict[str, TimerHandle] = {}
        self._overlay_pointers: Dict[str, PartitionPointer] = {}
        self._inflight: Dict[str, Future] = {}
        # Bumped by unregister_overlay; loads started under an older
        # generation are discarded.
        self._generations: Dict[str, int] = {}

    # ── Inspection ────────────────────────────────────────────────────

    def state_of(self, name: str) -> PartitionState:
        with self._lock:
            return self._states.get(name, PartitionState.NOT_LOADED)

    def loaded_names(self) -> List[str]:
        with self._lock:
            return sorted(
                n for n, s in self._states.items()
                if s in (PartitionState.LOADED, PartitionState.EVICTION_PENDING)
            )

    def pending_evictions(self) -> List[str]:
        with self._lock:
            return sorted(self._timers)

    def inflight(self) -> List[Future]:
        with self._lock:
            return list(self._inflight.values())

    @property
    def working_set(self) -> WorkingSet:
        return self._working_set

    # ── Overlays ─────────────────────────────────────────────────────

    def register_overlay(self, pointer: PartitionPointer) -> None:
        with self._lock:
            self._overlay_pointers[pointer.name] = pointer

    def unregister_overlay(self, name: str) -> None:
        """Forget an overlay and drop its records immediately."""
        with self._lock:
            self._overlay_pointers.pop(name, None)
            self._generations[name] = self._generations.get(name, 0) + 1
            self._cancel_eviction(name)
            self._states.pop(name, None)
            self._working_set.remove_source(name)

    # ── Viewport events ──────────────────────────────────────────────

    def _candidates(self, viewport: ViewportState) -> List[PartitionPointer]:
        pointers = self._index.intersecting(viewport)
        pointers.extend(
            p for p in self._overlay_pointers.values()
            if bbox_intersects(p.bbox, viewport.bbox)
        )
        return pointers

    def on_viewport_change(self, viewport: ViewportState) -> List[str]:
        """React to a settled viewport.  Returns the partitions dispatched."""
        with self._lock:
            if viewport.zoom < self.load_threshold_zoom:
                self._reset()
                return []

            visible = self._candidates(viewport)
            visible_names = {p.name for p in visible}

            to_load: List[Tuple[PartitionPointer, int]] = []
            for ptr in visible:
                if self._states.get(ptr.name, PartitionState.NOT_LOADED) is PartitionState.NOT_LOADED:
                    self._states[ptr.name] = PartitionState.LOADING
                    to_load.append((ptr, self._generations.get(ptr.name, 0)))

            for name, state in list(self._states.items()):
                if state not in (PartitionState.LOADED, PartitionState.EVICTION_PENDING):
                    continue
                if name in visible_names:
                    self._cancel_eviction(name)
                else:
                    self._schedule_eviction(name)

        for ptr, generation in to_load:
            self._dispatch(ptr, generation)
        return [p.name for p, _ in to_load]

    def _reset(self) -> None:
        for name in list(self._timers):
            self._cancel_eviction(name)
        changed = False
        for name, state in list(self._states.items()):
            if state is not PartitionState.LOADING and state is not PartitionState.NOT_LOADED:
                self._states[name] = PartitionState.NOT_LOADED
                changed = True
        if len(self._working_set):
            self._working_set.clear()
            changed = True
        if changed:
            log.info("Zoomed out below %.0f: working set cleared", self.load_threshold_zoom)

    # ── Loading ──────────────────────────────────────────────────────

    def _dispatch(self, pointer: PartitionPointer, generation: int) -> None:
        if self._executor is None:
            self._load(pointer, generation)
            return
        future = self._executor.submit(self._load, pointer, generation)
        with self._lock:
            self._inflight[pointer.name] = future

        def _done(_f: Future, name: str = pointer.name) -> None:
            with self._lock:
                if self._inflight.get(name) is _f:
                    del self._inflight[name]

        future.add_done_callback(_done)

    def _obtain(self, pointer: PartitionPointer) -> List[Record]:
        if pointer.overlay:
            records = self._overlays.records(pointer.name) if self._overlays else None
            if records is None:
                raise PartitionFetchFailure(pointer.name, "overlay data missing")
            log.info("Overlay %s: %d records from local store", pointer.name, len(records))
            return records

        cached = self._cache.get_valid(pointer.name, pointer.updated_at)
        if cached is not None:
            log.info("Partition %s: %d records from cache", pointer.name, len(cached))
            return cached

        records = self._transport.fetch_partition(pointer)
        self._cache.put(pointer.name, records, pointer.updated_at)
        return records

    def _load(self, pointer: PartitionPointer, generation: int) -> None:
        try:
            records = self._obtain(pointer)
        except PartitionFetchFailure as exc:
            log.warning("Load failed, will retry on next viewport: %s", exc)
            self._set_state(pointer.name, PartitionState.NOT_LOADED, generation)
            return
        except Exception:
            log.exception("Unexpected error loading partition %s", pointer.name)
            self._set_state(pointer.name, PartitionState.NOT_LOADED, generation)
            return

        with self._lock:
            if self._generations.get(pointer.name, 0) != generation:
                log.debug("Discarding superseded load of %s", pointer.name)
                return
            if self._states.get(pointer.name) is not PartitionState.LOADING:
                return
            self._working_set.merge(pointer.name, records)
            self._states[pointer.name] = PartitionState.LOADED

    def _set_state(self, name: str, state: PartitionState, generation: int) -> None:
        with self._lock:
            if name in self._states and self._generations.get(name, 0) == generation:
                self._states[name] = state

    # ── Eviction ─────────────────────────────────────────────────────

    def _schedule_eviction(self, name: str) -> None:
        if name in self._timers:
            return
        handle: TimerHandle

        def _fire() -> None:
            self._on_eviction_timer(name, handle)

        handle = self._scheduler.call_later(self.evict_idle_s, _fire)
        self._timers[name] = handle
        self._states[name] = PartitionState.EVICTION_PENDING
        log.debug("Eviction of %s scheduled in %.1fs", name, self.evict_idle_s)

    def _cancel_eviction(self, name: str) -> None:
        handle = self._timers.pop(name, None)
        if handle is None:
            return
        handle.cancel()
        if self._states.get(name) is PartitionState.EVICTION_PENDING:
            self._states[name] = PartitionState.LOADED
        log.debug("Eviction of %s cancelled", name)

    def _on_eviction_timer(self, name: str, handle: TimerHandle) -> None:
        with self._lock:
            if self._timers.get(name) is not handle:
                return
            del self._timers[name]
            if self._states.get(name) is not PartitionState.EVICTION_PENDING:
                return
            removed = self._working_set.remove_source(name)
            self._states[name] = PartitionState.NOT_LOADED
        log.info("Evicted %s after idle (%d records)", name, removed)

    # ── Lifecycle ────────────────────────────────────────────────────

    def shutdown(self) -> None:
        """Cancel every pending eviction.  In-flight fetches run to completion."""
        with self._lock:
            for name in list(self._timers):
                self._cancel_eviction(name)
