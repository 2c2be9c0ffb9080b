from __future__ import annotations

from typing import Dict, Optional, Tuple


TileKey = Tuple[int, int]


class SpatialCacheError(Exception):
    """Base class for everything the proximity cache raises."""


class InvalidInput(SpatialCacheError, ValueError):
    """Caller passed something no result can be computed for (bad focus, negative count)."""


class InvalidCoordinate(InvalidInput):
    """Latitude/longitude is not a finite number."""

    def __init__(self, lat: object, lon: object, what: str = "coordinate"):
        super().__init__(f"{what} must have finite lat/lon, got ({lat!r}, {lon!r})")
        self.lat = lat
        self.lon = lon


class FetchFailure(SpatialCacheError):
    """The fetch collaborator errored, timed out or returned malformed data for one tile."""

    def __init__(self, tile_key: TileKey, cause: Optional[BaseException] = None, detail: str = ""):
        msg = detail or (f"{type(cause).__name__}: {cause}" if cause is not None else "fetch failed")
        super().__init__(f"tile {tile_key[0]},{tile_key[1]}: {msg}")
        self.tile_key = tile_key
        self.cause = cause


class LoadFailed(SpatialCacheError):
    """Every tile a load needed failed; nothing new could be loaded."""

    def __init__(self, failures: Dict[TileKey, FetchFailure]):
        keys = ", ".join(f"{x},{y}" for x, y in sorted(failures))
        super().__init__(f"could not load nearby records ({len(failures)} tile(s) failed: {keys})")
        self.failures = dict(failures)


class StaleResultDiscarded(SpatialCacheError):
    """Internal: a fetch finished after a newer request was issued; its result is dropped."""
