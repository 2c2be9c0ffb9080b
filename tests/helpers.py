"""
Shared fakes for the proximity cache tests
"""

import asyncio
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from common.types import FetchRequest
from sources.memory_source import InMemorySource

# Berlin, the default focus of the gallery
BERLIN = (52.520, 13.405)


def row(rid: str, lat: float, lon: float, **display: Any) -> Dict[str, Any]:
    d = {"id": rid, "lat": lat, "lon": lon}
    d.update(display)
    return d


class ScriptedSource(InMemorySource):
    """
    InMemorySource with knobs for failure and timing:
      - fail_keys / fail_all: raise for those tiles
      - raw_by_tile: return this payload verbatim for a tile (malformed data, bad rows)
      - gate: fetches wait on this event before answering
      - entered: set whenever a fetch starts
      - max_in_flight: most calls ever outstanding at once
    """

    def __init__(
        self,
        rows: Iterable[Mapping[str, Any]] = (),
        *,
        fail_keys: Iterable[Tuple[int, int]] = (),
        fail_all: bool = False,
        raw_by_tile: Optional[Dict[Tuple[int, int], Any]] = None,
        gate: Optional[asyncio.Event] = None,
        delay_s: float = 0.0,
    ):
        super().__init__(rows, delay_s=delay_s)
        self.fail_keys: Set[Tuple[int, int]] = set(fail_keys)
        self.fail_all = fail_all
        self.raw_by_tile = raw_by_tile or {}
        self.gate = gate
        self.entered: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0

    def called_keys(self) -> List[Tuple[int, int]]:
        return [c.tile_key for c in self.calls]

    async def fetch(self, request: FetchRequest):
        self.calls.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            return await self._answer(request)
        finally:
            self.in_flight -= 1

    async def _answer(self, request: FetchRequest):
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay_s > 0:
            await asyncio.sleep(self.delay_s)
        key = request.tile_key
        if self.fail_all or key in self.fail_keys:
            raise RuntimeError(f"backend unavailable for tile {key}")
        if key in self.raw_by_tile:
            return self.raw_by_tile[key]
        return self.query(request)
