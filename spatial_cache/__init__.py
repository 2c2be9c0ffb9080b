"""
Proximity Image Cache

Loads geotagged records in fixed-size lat/lon tiles around a moving focus point
and answers "nearest N" queries from memory:

- TileIndex: grid math + which tiles are loaded
- RecordStore: deduplicated id -> Record map
- Loader: single in-flight fetch, request coalescing, stale-result discard,
  grid-move cleanup
- MemoryGovernor: least-recently-used tile eviction under a record budget
- NearestQuery / ProximityCache: the per-session facade

Usage:
    from spatial_cache import ProximityCache
    from sources.memory_source import InMemorySource
"""
from .cache import ProximityCache
from .loader import LoadReport, Loader
from .query import NearestQuery, rank_by_distance

__all__ = ["ProximityCache", "Loader", "LoadReport", "NearestQuery", "rank_by_distance"]
