from __future__ import annotations

import math
from typing import Iterable, Optional, Set

from common.logging_setup import get_logger
from spatial_cache.record_store import RecordStore
from spatial_cache.tile_index import TileIndex, TileKey


log = get_logger("spatial_cache.governor")

LOW_WATER_FRACTION = 0.8


def evict_tiles(index: TileIndex, store: RecordStore, keys: Iterable[TileKey]) -> int:
    """
    Unmark `keys` and delete the records they own. Returns #records deleted.

    A record is only deleted when its coordinate still maps to the evicted tile,
    so a record re-homed to another tile survives eviction of its old one.
    """
    removed = 0
    for key in list(keys):
        for rid in index.unmark(key):
            rec = store.get(rid)
            if rec is None or index.tile_key_for(rec.coordinate) != key:
                continue
            store.delete(rid)
            removed += 1
    return removed


class MemoryGovernor:
    """
    Keeps the record store under a record budget by dropping least-recently-used tiles.

    Eviction starts once size > budget and stops at floor(0.8 * budget) (hysteresis),
    or when only protected tiles remain.
    """

    def __init__(self, index: TileIndex, store: RecordStore, max_records: Optional[int] = None):
        self.index = index
        self.store = store
        self.max_records = max_records

    def over_budget(self, max_records: Optional[int] = None) -> bool:
        budget = self.max_records if max_records is None else max_records
        return budget is not None and self.store.size() > budget

    def enforce_budget(self, active: Optional[Set[TileKey]] = None, max_records: Optional[int] = None) -> int:
        budget = self.max_records if max_records is None else max_records
        if budget is None or self.store.size() <= budget:
            return 0

        protected = active or set()
        target = int(math.floor(LOW_WATER_FRACTION * budget))
        before = self.store.size()
        evicted_tiles = 0
        for tile in self.index.oldest_first():
            if self.store.size() <= target:
                break
            if tile.key in protected:
                continue
            evict_tiles(self.index, self.store, [tile.key])
            evicted_tiles += 1

        removed = before - self.store.size()
        if self.store.size() > budget:
            log.warning(
                "Record budget still exceeded; remaining tiles are in the active neighbourhood",
                extra={"extra": {"records": self.store.size(), "budget": budget}},
            )
        log.info(
            "Memory governor evicted tiles",
            extra={"extra": {"tiles": evicted_tiles, "records": removed, "remaining": self.store.size()}},
        )
        return removed
