"""
Failure taxonomy for the partition cache.

None of these are fatal: every failure degrades to "show less data".
Catalog failures reach the caller; partition, cache and record failures
are caught and logged inside the core.
"""
from __future__ import annotations


class NetcoverError(Exception):
    """Base class for all netcover errors."""


class IndexFetchFailure(NetcoverError):
    """The partition catalog could not be fetched or decoded."""


class PartitionFetchFailure(NetcoverError):
    """A single partition was unreachable or its payload unusable."""

    def __init__(self, name: str, reason: str):
        super().__init__(f"partition {name!r}: {reason}")
        self.name = name
        self.reason = reason


class CacheCorruption(NetcoverError):
    """A stored cache entry could not be parsed."""


class MalformedRecord(NetcoverError):
    """A record failed shape or geometry validation."""
