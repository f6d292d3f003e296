"""
Runtime configuration for the spatial cache service.

Transport endpoints, the load threshold, the eviction delay and the
clustering defaults.  Values come from a JSON file plus environment
overrides.

Usage
-----
    from netcover.config import SpatialCacheConfig
    cfg = SpatialCacheConfig.from_file(Path("netcover.json"))
    cfg.evict_idle_s   # 5.0 unless overridden
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

log = logging.getLogger(__name__)

_DEFAULT_DB = Path(__file__).resolve().parent.parent / "data" / "netcover_cache.db"

DEFAULT_BASE_URL = "https://raw.githubusercontent.com/OxCone1/data-tet-map/main/"


@dataclass
class SpatialCacheConfig:
    """Tunable parameters for loading, eviction and clustering."""

    base_url: str = DEFAULT_BASE_URL
    catalog_path: str = "pointer.json"

    # Below this zoom individual records are not loaded; only outlines show.
    load_threshold_zoom: float = 15.0
    evict_idle_s: float = 5.0

    # DBSCAN defaults (metres / points)
    eps_m: float = 180.0
    min_pts: int = 5
    min_circle_radius_m: float = 60.0
    circle_radius_factor: float = 0.9

    http_timeout_s: float = 20.0
    http_retries: int = 2
    max_workers: int = 8

    db_path: Optional[Path] = None

    @property
    def store_path(self) -> Path:
        return self.db_path or _DEFAULT_DB

    def with_env(self) -> "SpatialCacheConfig":
        """Apply ``NETCOVER_BASE_URL`` / ``NETCOVER_DB`` overrides in place."""
        base_url = os.environ.get("NETCOVER_BASE_URL")
        if base_url:
            self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        db = os.environ.get("NETCOVER_DB")
        if db:
            self.db_path = Path(db)
        return self

    @classmethod
    def from_file(cls, path: Optional[Path] = None) -> "SpatialCacheConfig":
        """Load a config from a JSON file, then apply environment overrides.

        Missing file → defaults.  Unknown keys are ignored with a warning.
        """
        cfg = cls()
        if path is None or not Path(path).exists():
            return cfg.with_env()

        try:
            raw = json.loads(Path(path).read_text())
        except (OSError, ValueError) as exc:
            raise ValueError(f"Invalid config file {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ValueError(f"Config file {path} must hold a JSON object")

        known = {f.name for f in fields(cls)}
        for key, value in raw.items():
            if key not in known:
                log.warning("Ignoring unknown config key %r in %s", key, path)
                continue
            if key == "db_path" and value is not None:
                value = Path(value)
            setattr(cfg, key, value)

        log.info("Loaded config from %s", path)
        return cfg.with_env()
