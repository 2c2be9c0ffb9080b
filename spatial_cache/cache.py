from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional

from common.config import CacheConfig
from common.logging_setup import get_logger
from common.types import Coordinate, Record
from spatial_cache.governor import MemoryGovernor
from spatial_cache.loader import FetchFn, LoadReport, Loader
from spatial_cache.query import NearestQuery
from spatial_cache.record_store import RecordStore
from spatial_cache.tile_index import TileIndex


log = get_logger("spatial_cache")


class ProximityCache:
    """
    One browsing session's spatial cache: tile index + record store + loader,
    memory governor and nearest-N query, wired around a caller-supplied fetch function.

    Usage:
        cache = ProximityCache(source.fetch, CacheConfig(tile_size_km=10))
        cache.set_viewer(user_id)
        items = await cache.nearest(Coordinate(52.52, 13.405), 50)
    """

    def __init__(
        self,
        fetch: FetchFn,
        config: Optional[CacheConfig] = None,
        *,
        viewer_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self._clock = clock
        self.config = config or CacheConfig()
        self.store = RecordStore()
        self._viewer_id = viewer_id
        self._search_term: Optional[str] = None
        self._user_filter_id: Optional[str] = None
        self._build()

    def _make_grid(self) -> None:
        cfg = self.config
        self.index = TileIndex(cfg.tile_size_km, cfg.grid_extent)
        self.governor = MemoryGovernor(self.index, self.store, cfg.max_records_in_memory)

    def _build(self) -> None:
        cfg = self.config
        self._make_grid()
        self.loader = Loader(
            self.index,
            self.store,
            self._fetch,
            governor=self.governor,
            viewer_id=self._viewer_id,
            search_term=self._search_term,
            user_filter_id=self._user_filter_id,
            fetch_timeout_s=cfg.fetch_timeout_s,
            max_radius_km=cfg.max_radius_km,
            clock=self._clock,
        )
        self.query = NearestQuery(self.loader, self.store)

    # -------- configuration --------

    def configure(
        self,
        tile_size_km: Optional[float] = None,
        grid_extent: Optional[int] = None,
        max_records_in_memory: Optional[int] = None,
        *,
        unlimited: bool = False,
    ) -> None:
        """
        Change tiling/budget. Tile keys depend on the tile size, so this drops all state.
        Arguments left as None keep their current value; `unlimited=True` removes the budget.
        """
        cfg = self.config
        budget = None if unlimited else (
            max_records_in_memory if max_records_in_memory is not None else cfg.max_records_in_memory
        )
        new_cfg = CacheConfig(
            tile_size_km=tile_size_km if tile_size_km is not None else cfg.tile_size_km,
            grid_extent=grid_extent if grid_extent is not None else cfg.grid_extent,
            max_records_in_memory=budget,
            max_radius_km=cfg.max_radius_km,
            fetch_timeout_s=cfg.fetch_timeout_s,
        )
        self.store.clear()
        self.config = new_cfg
        self._make_grid()
        # same loader, so a fetch still in flight stays the only outstanding call
        self.loader.rebind(
            self.index,
            self.governor,
            fetch_timeout_s=new_cfg.fetch_timeout_s,
            max_radius_km=new_cfg.max_radius_km,
        )
        log.info(
            "Cache reconfigured",
            extra={"extra": {
                "tile_size_km": new_cfg.tile_size_km,
                "grid_extent": new_cfg.grid_extent,
                "max_records_in_memory": new_cfg.max_records_in_memory,
            }},
        )

    @property
    def viewer_id(self) -> Optional[str]:
        return self._viewer_id

    def set_viewer(self, viewer_id: Optional[str]) -> None:
        """Viewer used for privacy scoping. A different viewer sees different records, so this clears."""
        if viewer_id == self._viewer_id:
            return
        self._viewer_id = viewer_id
        self.clear()
        self.loader.viewer_id = viewer_id

    def set_filters(self, search_term: Optional[str] = None, user_filter_id: Optional[str] = None) -> None:
        """Optional collaborator filters (free text, owner). Changing them clears."""
        if (search_term, user_filter_id) == (self._search_term, self._user_filter_id):
            return
        self._search_term = search_term
        self._user_filter_id = user_filter_id
        self.clear()
        self.loader.search_term = search_term
        self.loader.user_filter_id = user_filter_id

    # -------- operations --------

    async def load_for(self, focus: Coordinate, radius_m: Optional[float] = None) -> LoadReport:
        return await self.loader.load_for(focus, radius_m=radius_m)

    async def nearest(
        self,
        focus: Coordinate,
        count: int,
        pinned_id: Optional[str] = None,
        max_distance_m: Optional[float] = None,
    ) -> List[Record]:
        return await self.query.nearest(focus, count, pinned_id=pinned_id, max_distance_m=max_distance_m)

    def get(self, record_id: str) -> Optional[Record]:
        return self.store.get(record_id)

    def clear(self) -> None:
        """Drop records, tiles and any pending request; an in-flight fetch result will be discarded."""
        self.loader.reset()
        self.store.clear()
        self.index.clear()
        log.info("Cache cleared")

    def stats(self) -> Dict[str, Any]:
        center = self.loader.center
        return {
            "record_count": self.store.size(),
            "tile_count": len(self.index),
            "pending_fetch": self.loader.busy,
            "queued_request": self.loader.has_pending,
            "center_tile": list(center) if center is not None else None,
            "last_error": self.loader.last_error,
            "fetch_ms_mean": round(self.loader.fetch_ms.mean, 3),
            "fetch_count": self.loader.fetch_ms.n,
            "tile_size_km": self.config.tile_size_km,
            "grid_extent": self.config.grid_extent,
            "max_records_in_memory": self.config.max_records_in_memory,
        }
