"""
Command-line tools.

    netcover build-pointers data/*.ndjson -o pointer.json
    netcover clusters data/riga.ndjson --eps 100 --min-pts 3 -c fiber
    netcover cache --db data/netcover_cache.db
    netcover catalog --base-url https://example.org/data/
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .config import SpatialCacheConfig
from .errors import IndexFetchFailure
from .geo.partition_index import PartitionIndex, build_pointer
from .geo.records import parse_ndjson
from .ingest.catalog_client import HttpTransport
from .overlay.cluster_engine import ClusterEngine, clusters_to_geojson
from .storage.kv_store import SQLiteStore
from .storage.partition_cache import PartitionCache

log = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _write_json(doc, out: Optional[Path]) -> None:
    text = json.dumps(doc, indent=2)
    if out is None:
        sys.stdout.write(text + "\n")
    else:
        out.write_text(text + "\n")
        log.info("Wrote %s", out)


def cmd_build_pointers(args: argparse.Namespace) -> int:
    """Scan NDJSON partitions and write the pointer catalog."""
    pointers = []
    for path in args.files:
        records = parse_ndjson(path.read_text(encoding="utf-8"), source=path.name)
        updated_at = args.updated_at or datetime.fromtimestamp(
            path.stat().st_mtime, tz=timezone.utc
        ).isoformat()
        try:
            ptr = build_pointer(path.stem, records, updated_at=updated_at, file=path.name)
        except ValueError as exc:
            log.warning("Skipping %s: %s", path, exc)
            continue
        pointers.append(ptr.as_dict())
        log.info("%s: %d records, bbox %s", ptr.name, ptr.record_count,
                 ",".join(f"{v:.4f}" for v in ptr.bbox))
    _write_json(pointers, args.output)
    return 0 if pointers else 1


def cmd_clusters(args: argparse.Namespace) -> int:
    cfg = SpatialCacheConfig.from_file(args.config)
    records = parse_ndjson(args.file.read_text(encoding="utf-8"), source=args.file.name)
    engine = ClusterEngine(
        eps_m=cfg.eps_m,
        min_pts=cfg.min_pts,
        min_circle_radius_m=cfg.min_circle_radius_m,
        circle_radius_factor=cfg.circle_radius_factor,
    )
    clusters = engine.compute(
        records,
        eps=args.eps,
        min_pts=args.min_pts,
        categories=set(args.category) if args.category else None,
    )
    log.info("%d records → %d clusters", len(records), len(clusters))
    _write_json(clusters_to_geojson(clusters), args.output)
    return 0


def cmd_cache(args: argparse.Namespace) -> int:
    cfg = SpatialCacheConfig.from_file(args.config)
    store = SQLiteStore(args.db or cfg.store_path)
    try:
        cache = PartitionCache(store)
        for name in cache.cached_names():
            entry = cache.get(name)
            if entry is None:
                print(f"{name}\t(corrupt, removed)")
                continue
            if args.purge:
                cache.remove(name)
            print(f"{name}\t{entry.updated_at}\t{len(entry.records)}"
                  + ("\tpurged" if args.purge else ""))
    finally:
        store.close()
    return 0


def cmd_catalog(args: argparse.Namespace) -> int:
    """Fetch the remote catalog and list its partitions."""
    cfg = SpatialCacheConfig.from_file(args.config)
    if args.base_url:
        cfg.base_url = args.base_url if args.base_url.endswith("/") else args.base_url + "/"
    transport = HttpTransport.from_config(cfg)
    try:
        entries = transport.fetch_catalog()
    except IndexFetchFailure as exc:
        log.error("%s", exc)
        return 1
    finally:
        transport.close()

    index = PartitionIndex.from_catalog(entries)
    for ptr in index:
        print(f"{ptr.name}\t{ptr.updated_at}\t{ptr.record_count}")
    if args.output is not None:
        _write_json(index.as_catalog(), args.output)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="netcover",
        description="Partition catalog and cluster overlay tools",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--config", type=Path, default=None,
                        help="JSON config file (see SpatialCacheConfig)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("build-pointers", help="build pointer.json from NDJSON partitions")
    p.add_argument("files", nargs="+", type=Path)
    p.add_argument("-o", "--output", type=Path, default=None)
    p.add_argument("--updated-at", default=None,
                   help="freshness token for every partition (default: file mtime)")
    p.set_defaults(func=cmd_build_pointers)

    p = sub.add_parser("clusters", help="cluster an NDJSON partition to GeoJSON")
    p.add_argument("file", type=Path)
    p.add_argument("--eps", type=float, default=None, help="metres")
    p.add_argument("--min-pts", type=int, default=None)
    p.add_argument("-c", "--category", action="append", default=[])
    p.add_argument("-o", "--output", type=Path, default=None)
    p.set_defaults(func=cmd_clusters)

    p = sub.add_parser("cache", help="list (or purge) cached partitions")
    p.add_argument("--db", type=Path, default=None)
    p.add_argument("--purge", action="store_true")
    p.set_defaults(func=cmd_cache)

    p = sub.add_parser("catalog", help="fetch and list the remote partition catalog")
    p.add_argument("--base-url", default=None, help="overrides the configured base URL")
    p.add_argument("-o", "--output", type=Path, default=None)
    p.set_defaults(func=cmd_catalog)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
