from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple, Any, Dict, Mapping
import math

from common.errors import InvalidCoordinate


TileKey = Tuple[int, int]

# Row keys consumed by the cache; everything else is passed through untouched.
_CORE_KEYS = ("id", "lat", "lon", "distance")


def _finite(v: Any) -> bool:
    try:
        return math.isfinite(float(v))
    except (TypeError, ValueError):
        return False


@dataclass(slots=True, frozen=True)
class Coordinate:
    """WGS84 point in degrees. Range is the caller's concern; only finiteness is checked."""
    lat: float
    lon: float

    def is_finite(self) -> bool:
        return _finite(self.lat) and _finite(self.lon)

    def require_finite(self, what: str = "focus point") -> "Coordinate":
        if not self.is_finite():
            raise InvalidCoordinate(self.lat, self.lon, what)
        return self


@dataclass(slots=True, frozen=True)
class BoundingBox:
    """[lon_min, lat_min, lon_max, lat_max] window handed to the fetch collaborator."""
    lon_min: float
    lat_min: float
    lon_max: float
    lat_max: float

    def contains(self, coord: Coordinate) -> bool:
        return (self.lon_min <= coord.lon <= self.lon_max) and (self.lat_min <= coord.lat <= self.lat_max)

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.lon_min, self.lat_min, self.lon_max, self.lat_max)


@dataclass(slots=True)
class Record:
    """
    One loadable item (a geotagged image).

    Attributes:
        id: opaque identity, the deduplication key.
        coordinate: where the item was taken; items without one are never loaded.
        display: caller-defined metadata (title, image paths, dimensions, owner/privacy flags).
            The cache never interprets it.
        distance: meters to the last focus point it was ranked against; None until ranked.
    """
    id: str
    coordinate: Coordinate
    display: Dict[str, Any] = field(default_factory=dict)
    distance: Optional[float] = None

    @property
    def lat(self) -> float:
        return self.coordinate.lat

    @property
    def lon(self) -> float:
        return self.coordinate.lon

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Record":
        """
        Build a Record from a collaborator row `{id, lat, lon, ...display}`.

        Raises:
            ValueError: id, lat or lon missing/None.
            InvalidCoordinate: lat/lon present but not finite numbers.
        """
        rid = row.get("id")
        if rid is None or rid == "":
            raise ValueError("row has no id")
        lat, lon = row.get("lat"), row.get("lon")
        if lat is None or lon is None:
            raise ValueError(f"row {rid} has no coordinate")
        if not (_finite(lat) and _finite(lon)):
            raise InvalidCoordinate(lat, lon, f"record {rid}")
        display = {k: v for k, v in row.items() if k not in _CORE_KEYS}
        return cls(id=str(rid), coordinate=Coordinate(float(lat), float(lon)), display=display)

    def to_dict(self) -> Dict[str, Any]:
        """Row shape again, plus the last computed distance (safe to serialize)."""
        d: Dict[str, Any] = dict(self.display)
        d["id"] = self.id
        d["lat"] = self.coordinate.lat
        d["lon"] = self.coordinate.lon
        d["distance"] = self.distance
        return d


@dataclass(slots=True, frozen=True)
class FetchRequest:
    """
    What the fetch collaborator is asked for: one tile's window, scoped to a viewer.

    Attributes:
        bbox: query window (inclusive bounds).
        viewer_id: current viewer for privacy scoping; None means anonymous (public items only).
        search_term: optional free-text filter.
        user_filter_id: optional "only items of this owner" filter.
        tile_key: the tile this request loads, for logging by collaborators.
    """
    bbox: BoundingBox
    viewer_id: Optional[str] = None
    search_term: Optional[str] = None
    user_filter_id: Optional[str] = None
    tile_key: Optional[TileKey] = None
