from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from common.geo import KM_PER_DEG, bbox_around
from common.types import BoundingBox, Coordinate


TileKey = Tuple[int, int]


@dataclass(slots=True)
class Tile:
    """
    A fully loaded grid cell.

    Attributes:
        key: (x, y) = (floor(lon / size), floor(lat / size)).
        loaded_at: clock value of the last load *or use*; eviction goes oldest first.
        record_ids: ids of records whose coordinate falls in this cell.
    """
    key: TileKey
    loaded_at: float
    record_ids: Set[str] = field(default_factory=set)


class TileIndex:
    """
    Fixed-size lat/lon grid and the set of tiles that are currently loaded.

    A tile is either present (fully loaded) or absent; there is no partial state.
    Tile size cannot change after construction, build a new index instead.
    """

    def __init__(self, tile_size_km: float = 10.0, grid_extent: int = 3):
        if not tile_size_km > 0:
            raise ValueError("tile_size_km must be > 0")
        if grid_extent < 1 or grid_extent % 2 == 0:
            raise ValueError("grid_extent must be an odd number >= 1")
        self.tile_size_km = float(tile_size_km)
        self.tile_size_deg = self.tile_size_km / KM_PER_DEG
        self.grid_extent = int(grid_extent)
        self._tiles: Dict[TileKey, Tile] = {}

    # -------- grid math --------

    def tile_key_for(self, coord: Coordinate) -> TileKey:
        return (
            int(math.floor(coord.lon / self.tile_size_deg)),
            int(math.floor(coord.lat / self.tile_size_deg)),
        )

    def tile_bounds(self, key: TileKey) -> BoundingBox:
        s = self.tile_size_deg
        x, y = key
        return BoundingBox(lon_min=x * s, lat_min=y * s, lon_max=(x + 1) * s, lat_max=(y + 1) * s)

    def tiles_covering(self, focus: Coordinate, extent: Optional[int] = None) -> Set[TileKey]:
        """N x N block of keys centred on the focus tile (default N = grid_extent)."""
        n = self.grid_extent if extent is None else int(extent)
        if n < 1 or n % 2 == 0:
            raise ValueError("extent must be an odd number >= 1")
        cx, cy = self.tile_key_for(focus)
        half = n // 2
        return {(cx + dx, cy + dy) for dx in range(-half, half + 1) for dy in range(-half, half + 1)}

    def tiles_intersecting(self, focus: Coordinate, radius_m: float) -> Set[TileKey]:
        """Keys of every tile overlapping the bounding box of a circle around `focus`."""
        if radius_m <= 0:
            return {self.tile_key_for(focus)}
        lon_min, lat_min, lon_max, lat_max = bbox_around(focus.lat, focus.lon, radius_m / 1000.0)
        x0, y0 = self.tile_key_for(Coordinate(lat_min, lon_min))
        x1, y1 = self.tile_key_for(Coordinate(lat_max, lon_max))
        return {(x, y) for x in range(x0, x1 + 1) for y in range(y0, y1 + 1)}

    # -------- loaded state --------

    def is_loaded(self, key: TileKey) -> bool:
        return key in self._tiles

    def get(self, key: TileKey) -> Optional[Tile]:
        return self._tiles.get(key)

    def mark_loaded(self, key: TileKey, record_ids: Iterable[str], now: float) -> Tile:
        tile = Tile(key=key, loaded_at=now, record_ids=set(record_ids))
        self._tiles[key] = tile
        return tile

    def touch(self, key: TileKey, now: float) -> bool:
        tile = self._tiles.get(key)
        if tile is None:
            return False
        tile.loaded_at = max(tile.loaded_at, now)
        return True

    def unmark(self, key: TileKey) -> Set[str]:
        """Forget a tile; returns the record ids it owned (empty if it was not loaded)."""
        tile = self._tiles.pop(key, None)
        return tile.record_ids if tile is not None else set()

    def keys(self) -> Set[TileKey]:
        return set(self._tiles)

    def oldest_first(self) -> List[Tile]:
        # key as secondary sort keeps the order deterministic for equal timestamps
        return sorted(self._tiles.values(), key=lambda t: (t.loaded_at, t.key))

    def clear(self) -> None:
        self._tiles.clear()

    def __len__(self) -> int:
        return len(self._tiles)

    def __contains__(self, key: object) -> bool:
        return key in self._tiles
