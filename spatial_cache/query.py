from __future__ import annotations

import math
from typing import List, Optional

import numpy as np

from common.errors import InvalidInput, LoadFailed
from common.geo import haversine_m_many
from common.logging_setup import get_logger
from common.types import Coordinate, Record
from spatial_cache.loader import Loader
from spatial_cache.record_store import RecordStore


log = get_logger("spatial_cache.query")


def rank_by_distance(
    records: List[Record],
    focus: Coordinate,
    *,
    pinned_id: Optional[str] = None,
    max_distance_m: Optional[float] = None,
) -> List[Record]:
    """
    Annotate every record with its distance to `focus` and return them nearest first.

    The sort is stable, so equal distances keep the given (insertion) order.
    A pinned record goes first with distance 0 and is never filtered out.
    """
    if not records:
        return []
    lats = np.fromiter((r.coordinate.lat for r in records), dtype=float, count=len(records))
    lons = np.fromiter((r.coordinate.lon for r in records), dtype=float, count=len(records))
    dist = haversine_m_many(focus.lat, focus.lon, lats, lons)
    for rec, d in zip(records, dist):
        rec.distance = float(d)

    pinned: Optional[Record] = None
    ranked: List[Record] = []
    for i in np.argsort(dist, kind="stable"):
        rec = records[int(i)]
        if pinned_id is not None and rec.id == pinned_id:
            rec.distance = 0.0
            pinned = rec
            continue
        if max_distance_m is not None and rec.distance > max_distance_m:
            continue
        ranked.append(rec)
    return [pinned] + ranked if pinned is not None else ranked


class NearestQuery:
    """Nearest-N view over the record store; loads the neighbourhood first."""

    def __init__(self, loader: Loader, store: RecordStore):
        self.loader = loader
        self.store = store

    async def nearest(
        self,
        focus: Coordinate,
        count: int,
        pinned_id: Optional[str] = None,
        max_distance_m: Optional[float] = None,
    ) -> List[Record]:
        """
        Up to `count` records ordered by ascending distance from `focus`.

        Fewer than `count` is a normal outcome. If the load fails outright the
        answer falls back to what is already cached (the failure is kept in
        `loader.last_error`).
        """
        if not focus.is_finite():
            raise InvalidInput(f"focus must have finite lat/lon, got ({focus.lat!r}, {focus.lon!r})")
        if count is None or int(count) < 0:
            raise InvalidInput(f"count must be >= 0, got {count!r}")
        if max_distance_m is not None and (not math.isfinite(max_distance_m) or max_distance_m < 0):
            raise InvalidInput(f"max_distance_m must be a finite number >= 0, got {max_distance_m!r}")

        try:
            await self.loader.load_for(focus, radius_m=max_distance_m)
        except LoadFailed as e:
            log.warning("Serving cached records only: %s", e)

        ranked = rank_by_distance(self.store.all(), focus, pinned_id=pinned_id, max_distance_m=max_distance_m)
        if pinned_id is not None and (not ranked or ranked[0].id != pinned_id):
            log.debug("Pinned record not in store", extra={"extra": {"pinned_id": pinned_id}})
        return ranked[: int(count)]
