"""
Spatial cache service — the host-owned entry point.

Wires the partition index, persistent cache, transport, working set,
viewport loader and cluster engine together.  The host constructs one
instance, calls :meth:`SpatialCacheService.init`, forwards every viewport
settle to :meth:`on_viewport_change`, asks for :meth:`clusters` when it
redraws, and calls :meth:`teardown` on exit.

Data flow
─────────
  viewport settle
    → ViewportLoader (intersection, cache lookup or fetch, eviction)
    → WorkingSet update (version bump)
    → clusters() recomputes on the next call
    → host renders overlays

Usage
-----
    cfg = SpatialCacheConfig.from_file(Path("netcover.json"))
    service = SpatialCacheService(
        cfg,
        HttpTransport.from_config(cfg),
        SQLiteStore(cfg.store_path),
    )
    service.init()
    service.on_viewport_change(ViewportState(24.0, 56.9, 24.2, 57.0, 16))
    overlays = service.clusters(categories={"fiber", "mobile"})
    service.teardown()
"""
from __future__ import annotations

import json
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple

from .config import SpatialCacheConfig
from .errors import IndexFetchFailure
from .geo.geometry import BBox
from .geo.partition_index import PartitionIndex
from .geo.records import PartitionPointer, ViewportState
from .ingest.catalog_client import Transport
from .loader.scheduler import Scheduler, ThreadingScheduler
from .loader.viewport_loader import ViewportLoader
from .loader.working_set import WorkingSet
from .overlay.cluster_engine import Cluster, ClusterEngine
from .storage.kv_store import KeyValueStore
from .storage.overlay_store import OverlayStore, overlay_name
from .storage.partition_cache import PartitionCache

log = logging.getLogger(__name__)

CATALOG_KEY = "regionPointerCache"

_ClusterKey = Tuple[int, Optional[FrozenSet[str]], float, int, Optional[BBox]]


class SpatialCacheService:
    """Owns every piece of the partition cache for one map view."""

    def __init__(
        self,
        config: SpatialCacheConfig,
        transport: Transport,
        store: KeyValueStore,
        scheduler: Optional[Scheduler] = None,
        executor: Optional[Executor] = None,
    ):
        self.config = config
        self.transport = transport
        self.store = store
        self.scheduler = scheduler or ThreadingScheduler()
        self._owns_executor = executor is None and config.max_workers > 0
        self.executor = executor
        if self._owns_executor:
            self.executor = ThreadPoolExecutor(
                max_workers=config.max_workers, thread_name_prefix="netcover-fetch",
            )

        self.index = PartitionIndex()
        self.cache = PartitionCache(store)
        self.overlays = OverlayStore(store)
        self.working_set = WorkingSet()
        self.loader = ViewportLoader(
            self.index,
            self.cache,
            transport,
            self.working_set,
            self.scheduler,
            overlays=self.overlays,
            executor=self.executor,
            load_threshold_zoom=config.load_threshold_zoom,
            evict_idle_s=config.evict_idle_s,
        )
        self.engine = ClusterEngine(
            eps_m=config.eps_m,
            min_pts=config.min_pts,
            min_circle_radius_m=config.min_circle_radius_m,
            circle_radius_factor=config.circle_radius_factor,
        )

        self._cluster_key: Optional[_ClusterKey] = None
        self._clusters: List[Cluster] = []
        self._closed = False

    # ── Lifecycle ────────────────────────────────────────────────────

    def init(self, offline_ok: bool = False) -> "SpatialCacheService":
        """Load the catalog and register stored overlays.

        Raises IndexFetchFailure when the catalog is unreachable, unless
        *offline_ok* is set and a previously stored catalog exists.
        """
        self.refresh_catalog(offline_ok=offline_ok)
        for pointer in self.overlays.pointers():
            self.loader.register_overlay(pointer)
        return self

    def refresh_catalog(self, offline_ok: bool = False) -> int:
        """Re-fetch the catalog and replace the index wholesale."""
        try:
            entries = self.transport.fetch_catalog()
        except IndexFetchFailure as exc:
            stored = self._stored_catalog() if offline_ok else None
            if stored is None:
                raise
            log.warning("Catalog unreachable (%s); using stored copy", exc)
            entries = stored
        else:
            self.store.set(CATALOG_KEY, json.dumps(entries))

        fresh = PartitionIndex.from_catalog(entries)
        self.index.replace(list(fresh))
        return len(self.index)

    def _stored_catalog(self) -> Optional[List[Dict[str, Any]]]:
        raw = self.store.get(CATALOG_KEY)
        if raw is None:
            return None
        try:
            entries = json.loads(raw)
        except ValueError as exc:
            log.warning("Stored catalog unreadable: %s", exc)
            return None
        return entries if isinstance(entries, list) else None

    def teardown(self) -> None:
        """Cancel timers, stop the fetch pool, close the transport and the store."""
        if self._closed:
            return
        self._closed = True
        self.loader.shutdown()
        self.scheduler.shutdown()
        if self._owns_executor and self.executor is not None:
            self.executor.shutdown(wait=True)
        self.transport.close()
        self.store.close()
        log.info("SpatialCacheService torn down")

    def __enter__(self) -> "SpatialCacheService":
        return self

    def __exit__(self, *exc_info) -> None:
        self.teardown()

    # ── Viewport / overlays ──────────────────────────────────────────

    def on_viewport_change(self, viewport: ViewportState) -> List[str]:
        return self.loader.on_viewport_change(viewport)

    def add_overlay(self, name: str, items: List[object]) -> PartitionPointer:
        """Persist a user dataset; it loads lazily like any partition."""
        pointer = self.overlays.save(name, items)
        self.loader.unregister_overlay(pointer.name)
        self.loader.register_overlay(pointer)
        return pointer

    def remove_overlay(self, name: str) -> bool:
        removed = self.overlays.delete(name)
        self.loader.unregister_overlay(overlay_name(name))
        return removed

    def outlines(self) -> List[Dict[str, Any]]:
        """Partition outlines, shown in place of records at low zoom."""
        return self.index.outlines()

    # ── Clusters ─────────────────────────────────────────────────────

    def clusters(
        self,
        categories: Optional[Set[str]] = None,
        eps: Optional[float] = None,
        min_pts: Optional[int] = None,
        viewport: Optional[BBox] = None,
    ) -> List[Cluster]:
        """Cluster overlays for the working set.

        Recomputed only when the working set, the category filter, the
        viewport filter or the DBSCAN parameters changed since last call.
        """
        eps = self.config.eps_m if eps is None else eps
        min_pts = self.config.min_pts if min_pts is None else min_pts
        key: _ClusterKey = (
            self.working_set.version,
            frozenset(categories) if categories is not None else None,
            float(eps),
            int(min_pts),
            tuple(viewport) if viewport is not None else None,
        )
        if key != self._cluster_key:
            self._clusters = self.engine.compute(
                self.working_set.records(),
                eps=eps,
                min_pts=min_pts,
                categories=categories,
                viewport=viewport,
            )
            self._cluster_key = key
        return self._clusters
