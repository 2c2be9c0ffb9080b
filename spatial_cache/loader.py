from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from common.errors import FetchFailure, InvalidCoordinate, InvalidInput, LoadFailed, StaleResultDiscarded
from common.logging_setup import get_logger
from common.types import Coordinate, FetchRequest, Record
from common.utils import RunningStats
from spatial_cache.governor import MemoryGovernor, evict_tiles
from spatial_cache.record_store import RecordStore
from spatial_cache.tile_index import TileIndex, TileKey


log = get_logger("spatial_cache.loader")

FetchFn = Callable[[FetchRequest], Awaitable[Sequence[Mapping]]]


@dataclass
class LoadReport:
    """
    Outcome of one load_for() call.

    Attributes:
        focus, center: requested point and its tile.
        required: tiles the neighbourhood needed.
        loaded: tiles fetched by this run (center first).
        failed: tile -> error text for tiles left unmarked (retried on a later load).
        cached: nothing had to be fetched.
        new_records: ids that were not in the store before.
        evicted_records: records dropped by grid-move cleanup or the memory governor.
        stale: superseded by a newer request (or a reset) before it finished;
            the cache state reflects the newer request.
    """
    focus: Coordinate
    center: TileKey
    required: Set[TileKey] = field(default_factory=set)
    loaded: List[TileKey] = field(default_factory=list)
    failed: Dict[TileKey, str] = field(default_factory=dict)
    cached: bool = False
    new_records: int = 0
    evicted_records: int = 0
    stale: bool = False


@dataclass
class _Request:
    focus: Coordinate
    radius_m: Optional[float]
    seq: int
    required: Set[TileKey] = field(default_factory=set)
    waiters: List["asyncio.Future[LoadReport]"] = field(default_factory=list)


@dataclass
class _Plan:
    required: Set[TileKey]
    center: TileKey
    missing: List[TileKey]


class Loader:
    """
    Fills the tile index / record store around a focus point.

    At most one collaborator call is in flight. A request arriving while a load
    is running becomes *the* pending request (a newer one replaces it) and runs
    as soon as the current one settles. A request needing exactly the tiles of
    the latest unsettled one joins it instead. Every other call gets a new
    sequence number; a fetch that completes after a newer call was issued is
    dropped untouched.
    """

    def __init__(
        self,
        index: TileIndex,
        store: RecordStore,
        fetch: FetchFn,
        *,
        governor: Optional[MemoryGovernor] = None,
        viewer_id: Optional[str] = None,
        search_term: Optional[str] = None,
        user_filter_id: Optional[str] = None,
        fetch_timeout_s: float = 10.0,
        max_radius_km: float = 50.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.index = index
        self.store = store
        self.governor = governor
        self.viewer_id = viewer_id
        self.search_term = search_term
        self.user_filter_id = user_filter_id
        self.fetch_timeout_s = float(fetch_timeout_s)
        self.max_radius_km = float(max_radius_km)
        self.last_error: Optional[str] = None
        self.fetch_ms = RunningStats()

        self._fetch = fetch
        self._clock = clock
        self._seq = 0
        self._busy = False
        self._pending: Optional[_Request] = None
        self._running: Optional[_Request] = None
        self._center: Optional[TileKey] = None
        self._needs_cleanup = False
        self._worker: Optional["asyncio.Task[None]"] = None

    # -------- public API --------

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    @property
    def center(self) -> Optional[TileKey]:
        return self._center

    async def load_for(self, focus: Coordinate, radius_m: Optional[float] = None) -> LoadReport:
        """
        Make sure the neighbourhood of `focus` is loaded.

        Served synchronously when every required tile is already loaded and no
        load is running. Raises InvalidCoordinate for a non-finite focus and
        LoadFailed when every missing tile failed.
        """
        focus.require_finite()
        if radius_m is not None:
            if not math.isfinite(radius_m) or radius_m < 0:
                raise InvalidInput(f"radius_m must be a finite number >= 0, got {radius_m!r}")

        required = self._required(focus, radius_m)
        loop = asyncio.get_running_loop()

        latest = self._joinable(required)
        if latest is not None:
            log.debug("Joining unsettled load request", extra={"extra": {"seq": latest.seq}})
            joined: "asyncio.Future[LoadReport]" = loop.create_future()
            latest.waiters.append(joined)
            return await joined

        self._seq += 1
        req = _Request(focus=focus, radius_m=radius_m, seq=self._seq, required=required)

        if not self._busy and self._pending is None:
            plan = self._plan(req)
            if not plan.missing:
                return self._settle(req, plan, loaded=[], failed={}, new_records=0)

        fut: "asyncio.Future[LoadReport]" = loop.create_future()
        if self._pending is not None:
            log.debug(
                "Superseding pending load request",
                extra={"extra": {"old_seq": self._pending.seq, "new_seq": req.seq}},
            )
            req.waiters.extend(self._pending.waiters)
        req.waiters.append(fut)
        self._pending = req

        if not self._busy:
            self._busy = True
            self._worker = loop.create_task(self._drain())
        return await fut

    def reset(self) -> None:
        """Invalidate the in-flight fetch, drop the pending request and forget the centre tile."""
        self._seq += 1
        pending, self._pending = self._pending, None
        if pending is not None:
            report = LoadReport(focus=pending.focus, center=self.index.tile_key_for(pending.focus), stale=True)
            for fut in pending.waiters:
                if not fut.done():
                    fut.set_result(report)
        self._center = None
        self._needs_cleanup = False
        self.last_error = None

    def rebind(
        self,
        index: TileIndex,
        governor: Optional[MemoryGovernor] = None,
        *,
        fetch_timeout_s: Optional[float] = None,
        max_radius_km: Optional[float] = None,
    ) -> None:
        """
        Reset and switch to a new grid. A fetch still in flight stays the only
        outstanding collaborator call; its result is discarded and the next
        request runs on the same worker once it returns.
        """
        self.reset()
        self.index = index
        self.governor = governor
        if fetch_timeout_s is not None:
            self.fetch_timeout_s = float(fetch_timeout_s)
        if max_radius_km is not None:
            self.max_radius_km = float(max_radius_km)

    # -------- state machine --------

    def _joinable(self, required: Set[TileKey]) -> Optional[_Request]:
        """The latest issued request, if it is still unsettled and needs exactly `required`."""
        if self._pending is not None:
            latest = self._pending
        elif self._running is not None and self._running.seq == self._seq:
            latest = self._running
        else:
            return None
        return latest if latest.required == required else None

    async def _drain(self) -> None:
        req: Optional[_Request] = None
        try:
            while self._pending is not None:
                req, self._pending = self._pending, None
                self._running = req
                try:
                    report = await self._run(req)
                except Exception as e:
                    # LoadFailed, or a bug; either way the waiters must hear about it
                    if not isinstance(e, LoadFailed):
                        log.exception("Unexpected loader error")
                    self._resolve(req, exc=e)
                else:
                    self._resolve(req, report=report)
                self._running = None
                req = None
        except asyncio.CancelledError:
            for r in (req, self._pending):
                if r is not None:
                    for fut in r.waiters:
                        fut.cancel()
            self._pending = None
            raise
        finally:
            self._busy = False
            self._running = None
            self._worker = None

    @staticmethod
    def _resolve(
        req: _Request,
        report: Optional[LoadReport] = None,
        exc: Optional[BaseException] = None,
    ) -> None:
        for fut in req.waiters:
            if fut.done():
                continue
            if exc is not None:
                fut.set_exception(exc)
            else:
                fut.set_result(report)  # type: ignore[arg-type]

    def _required(self, focus: Coordinate, radius_m: Optional[float]) -> Set[TileKey]:
        required = self.index.tiles_covering(focus)
        if radius_m:
            radius = min(radius_m, self.max_radius_km * 1000.0)
            if radius < radius_m:
                log.debug("Radius clamped", extra={"extra": {"requested_m": radius_m, "used_m": radius}})
            required |= self.index.tiles_intersecting(focus, radius)
        return required

    def _plan(self, req: _Request) -> _Plan:
        required = req.required
        center = self.index.tile_key_for(req.focus)
        now = self._clock()
        missing: List[TileKey] = []
        for key in required:
            # recency of use, not only of load, protects a tile from the governor
            if not self.index.touch(key, now):
                missing.append(key)
        cx, cy = center
        missing.sort(key=lambda k: (max(abs(k[0] - cx), abs(k[1] - cy)), k[1], k[0]))
        return _Plan(required=required, center=center, missing=missing)

    async def _run(self, req: _Request) -> LoadReport:
        plan = self._plan(req)
        loaded: List[TileKey] = []
        failed: Dict[TileKey, FetchFailure] = {}
        new_records = 0

        if plan.missing:
            log.info(
                "Loading tiles",
                extra={"extra": {"seq": req.seq, "center": plan.center, "missing": len(plan.missing)}},
            )
        for key in plan.missing:
            try:
                if req.seq != self._seq:
                    raise StaleResultDiscarded(f"request {req.seq} superseded by {self._seq}")
                rows = await self._fetch_tile(key)
                if req.seq != self._seq:
                    raise StaleResultDiscarded(f"tile {key} result for request {req.seq} is stale")
            except StaleResultDiscarded as e:
                log.debug("Stale load abandoned: %s", e)
                if loaded:
                    # tiles applied before the newer request was issued
                    self._needs_cleanup = True
                return LoadReport(
                    focus=req.focus,
                    center=plan.center,
                    required=plan.required,
                    loaded=loaded,
                    failed={k: str(v) for k, v in failed.items()},
                    new_records=new_records,
                    stale=True,
                )
            except FetchFailure as e:
                log.warning("Tile fetch failed: %s", e, extra={"extra": {"tile": key, "seq": req.seq}})
                failed[key] = e
                self.last_error = str(e)
                continue
            new_records += self._apply_tile(key, rows)
            loaded.append(key)

        if plan.missing and len(failed) == len(plan.missing):
            raise LoadFailed(failed)
        if plan.missing and not failed:
            self.last_error = None
        return self._settle(
            req,
            plan,
            loaded=loaded,
            failed={k: str(v) for k, v in failed.items()},
            new_records=new_records,
        )

    def _settle(
        self,
        req: _Request,
        plan: _Plan,
        *,
        loaded: List[TileKey],
        failed: Dict[TileKey, str],
        new_records: int,
    ) -> LoadReport:
        evicted = 0
        # Cleanup strictly after the new neighbourhood is in; the first run counts as a move.
        if self._center != plan.center or self._needs_cleanup:
            evicted += self._cleanup_outside(plan.required)
            self._needs_cleanup = False
            if self._center is not None:
                log.info(
                    "Grid moved",
                    extra={"extra": {"from": self._center, "to": plan.center, "evicted": evicted}},
                )
            self._center = plan.center
        if self.governor is not None:
            evicted += self.governor.enforce_budget(active=plan.required)
        return LoadReport(
            focus=req.focus,
            center=plan.center,
            required=plan.required,
            loaded=loaded,
            failed=failed,
            cached=not plan.missing,
            new_records=new_records,
            evicted_records=evicted,
        )

    # -------- tile I/O --------

    async def _fetch_tile(self, key: TileKey) -> List[Mapping]:
        request = FetchRequest(
            bbox=self.index.tile_bounds(key),
            viewer_id=self.viewer_id,
            search_term=self.search_term,
            user_filter_id=self.user_filter_id,
            tile_key=key,
        )
        t0 = time.perf_counter()
        try:
            result = await asyncio.wait_for(self._fetch(request), timeout=self.fetch_timeout_s)
        except asyncio.TimeoutError as e:
            raise FetchFailure(key, e, f"timed out after {self.fetch_timeout_s:g}s") from e
        except Exception as e:
            raise FetchFailure(key, e) from e
        finally:
            self.fetch_ms.add(1000.0 * (time.perf_counter() - t0))

        if result is None or isinstance(result, (str, bytes, Mapping)):
            raise FetchFailure(key, detail=f"malformed response of type {type(result).__name__}")
        try:
            rows = list(result)
        except TypeError as e:
            raise FetchFailure(key, e, "malformed response (not iterable)") from e
        for row in rows:
            if not isinstance(row, Mapping):
                raise FetchFailure(key, detail=f"malformed row of type {type(row).__name__}")
        return rows

    def _apply_tile(self, key: TileKey, rows: List[Mapping]) -> int:
        """Upsert a tile's rows and mark it loaded. Returns #records new to the store."""
        ids: Set[str] = set()
        new_records = 0
        no_coord = 0
        outside = 0
        for row in rows:
            try:
                rec = Record.from_row(row)
            except InvalidCoordinate as e:
                log.warning("Skipping record: %s", e)
                continue
            except ValueError:
                no_coord += 1
                continue
            if self.index.tile_key_for(rec.coordinate) != key:
                # on the shared edge, or the collaborator over-fetched; owned by another tile
                outside += 1
                continue
            prev = self.store.get(rec.id)
            if prev is not None:
                old_key = self.index.tile_key_for(prev.coordinate)
                if old_key != key:
                    old = self.index.get(old_key)
                    if old is not None:
                        old.record_ids.discard(rec.id)
            if self.store.upsert(rec):
                new_records += 1
            ids.add(rec.id)

        self.index.mark_loaded(key, ids, self._clock())
        log.debug(
            "Tile loaded",
            extra={"extra": {"tile": key, "records": len(ids), "new": new_records, "no_coord": no_coord, "outside": outside}},
        )
        return new_records

    def _cleanup_outside(self, keep: Set[TileKey]) -> int:
        removed = evict_tiles(self.index, self.store, [k for k in self.index.keys() if k not in keep])
        for rec in self.store.all():
            if self.index.tile_key_for(rec.coordinate) not in keep:
                self.store.delete(rec.id)
                removed += 1
        return removed
