"""
Catalog and partition transport.

The dataset is published as static files: a ``pointer.json`` catalog
listing every partition, and one NDJSON file per partition.  Both are
plain GETs against a base URL (a CDN or raw git host).

Usage
-----
    from netcover.ingest.catalog_client import HttpTransport
    transport = HttpTransport.from_config(SpatialCacheConfig.from_file())
    entries = transport.fetch_catalog()
    records = transport.fetch_partition(pointer)
    transport.close()
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List

import requests

from .. import __version__
from ..errors import IndexFetchFailure, PartitionFetchFailure
from ..geo.records import PartitionPointer, Record, parse_ndjson
from . import fetch_with_retry

if TYPE_CHECKING:
    from ..config import SpatialCacheConfig

log = logging.getLogger(__name__)


class Transport(ABC):
    """Source of catalog entries and partition contents."""

    @abstractmethod
    def fetch_catalog(self) -> List[Dict[str, Any]]:
        """Return raw catalog entries.  Raises IndexFetchFailure."""

    @abstractmethod
    def fetch_partition(self, pointer: PartitionPointer) -> List[Record]:
        """Return a partition's records.  Raises PartitionFetchFailure."""

    def close(self) -> None:
        pass


class HttpTransport(Transport):
    """Fetches the catalog and NDJSON partitions over one HTTP session."""

    def __init__(
        self,
        base_url: str,
        catalog_path: str = "pointer.json",
        timeout: float = 20.0,
        retries: int = 2,
        backoff: float = 2.0,
    ):
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.catalog_path = catalog_path
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.session = requests.Session()
        self.session.headers["User-Agent"] = f"netcover/{__version__}"

    @classmethod
    def from_config(cls, cfg: "SpatialCacheConfig") -> "HttpTransport":
        return cls(
            cfg.base_url,
            catalog_path=cfg.catalog_path,
            timeout=cfg.http_timeout_s,
            retries=cfg.http_retries,
        )

    def _get(self, path: str) -> requests.Response:
        return fetch_with_retry(
            self.base_url + path.lstrip("/"),
            session=self.session,
            timeout=self.timeout,
            retries=self.retries,
            backoff=self.backoff,
        )

    def fetch_catalog(self) -> List[Dict[str, Any]]:
        try:
            data = self._get(self.catalog_path).json()
        except (requests.RequestException, ValueError) as exc:
            raise IndexFetchFailure(f"catalog {self.catalog_path}: {exc}") from exc
        if not isinstance(data, list):
            raise IndexFetchFailure(
                f"catalog {self.catalog_path}: expected a JSON array, got {type(data).__name__}"
            )
        log.info("Catalog: %d entries from %s", len(data), self.base_url)
        return data

    def fetch_partition(self, pointer: PartitionPointer) -> List[Record]:
        try:
            text = self._get(pointer.file).text
        except requests.RequestException as exc:
            raise PartitionFetchFailure(pointer.name, str(exc)) from exc
        records = parse_ndjson(text, source=pointer.name)
        log.info("Partition %s: %d records from network", pointer.name, len(records))
        return records

    def close(self) -> None:
        self.session.close()
