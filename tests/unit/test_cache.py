"""
Unit tests for ProximityCache (nearest / configure / clear / stats)
"""

import asyncio
import os
import sys

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.config import CacheConfig
from common.errors import InvalidInput
from common.geo import haversine_m
from common.types import Coordinate
from spatial_cache.cache import ProximityCache
from tests.helpers import BERLIN, ScriptedSource, row


FOCUS = Coordinate(*BERLIN)

# Five records in the focus tile (148, 582), three one tile east (149, 582)
BERLIN_ROWS = [
    row("a", 52.519, 13.404, title="Brandenburger Tor"),
    row("b", 52.515, 13.400),
    row("c", 52.510, 13.390),
    row("d", 52.500, 13.380),
    row("e", 52.480, 13.350),
    row("f", 52.518, 13.430),
    row("g", 52.500, 13.450),
    row("h", 52.490, 13.500),
]


def make_cache(rows=BERLIN_ROWS, config=None, **source_kwargs):
    source = ScriptedSource(rows, **source_kwargs)
    return ProximityCache(source.fetch, config or CacheConfig()), source


class TestNearest:
    """Test cases for ProximityCache.nearest"""

    def test_berlin_scenario(self):
        """Nearest four around the Brandenburg Gate, one of them from the neighbouring tile"""
        cache, source = make_cache()
        items = asyncio.run(cache.nearest(FOCUS, 4))

        assert [r.id for r in items] == ["a", "b", "c", "f"]
        assert items[0].distance == pytest.approx(haversine_m(52.520, 13.405, 52.519, 13.404), abs=1.0)
        assert items[0].display["title"] == "Brandenburger Tor"
        assert len(source.calls) == 9

    def test_distances_are_monotonic(self):
        cache, _ = make_cache()
        items = asyncio.run(cache.nearest(FOCUS, 50))
        distances = [r.distance for r in items]
        assert len(items) == 8
        assert distances == sorted(distances)

    def test_fewer_than_count(self):
        cache, _ = make_cache(rows=BERLIN_ROWS[:2])
        assert len(asyncio.run(cache.nearest(FOCUS, 10))) == 2

    def test_count_zero(self):
        cache, _ = make_cache()
        assert asyncio.run(cache.nearest(FOCUS, 0)) == []

    def test_pinned_first(self):
        cache, _ = make_cache()
        items = asyncio.run(cache.nearest(FOCUS, 3, pinned_id="h"))
        assert [r.id for r in items] == ["h", "a", "b"]
        assert items[0].distance == 0.0

    def test_max_distance(self):
        cache, _ = make_cache()
        items = asyncio.run(cache.nearest(FOCUS, 50, max_distance_m=1000.0))
        assert [r.id for r in items] == ["a", "b"]

    def test_invalid_input(self):
        cache, source = make_cache()
        with pytest.raises(InvalidInput):
            asyncio.run(cache.nearest(Coordinate(float("nan"), 13.4), 5))
        with pytest.raises(InvalidInput):
            asyncio.run(cache.nearest(FOCUS, -1))
        with pytest.raises(InvalidInput):
            asyncio.run(cache.nearest(FOCUS, 5, max_distance_m=-3.0))
        assert source.calls == []

    def test_degrades_to_cached_records(self):
        """A failed load still answers from what is in memory"""
        cache, source = make_cache()

        async def scenario():
            await cache.nearest(FOCUS, 5)
            source.fail_all = True
            return await cache.nearest(Coordinate(48.137, 11.575), 3)

        items = asyncio.run(scenario())
        assert len(items) == 3
        assert cache.stats()["last_error"] is not None
        assert cache.stats()["record_count"] == 8

    def test_second_query_does_not_refetch(self):
        cache, source = make_cache()

        async def scenario():
            await cache.nearest(FOCUS, 5)
            await cache.nearest(Coordinate(52.515, 13.41), 5)

        asyncio.run(scenario())
        assert len(source.calls) == 9


class TestViewerScope:
    """Test cases for privacy scoping and filters"""

    ROWS = BERLIN_ROWS + [
        row("mine", 52.5201, 13.4051, is_private=True, profile_id="u1"),
        row("theirs", 52.5202, 13.4052, is_private=True, profile_id="u2"),
    ]

    def test_anonymous_sees_public_only(self):
        cache, _ = make_cache(rows=self.ROWS)
        ids = [r.id for r in asyncio.run(cache.nearest(FOCUS, 50))]
        assert "mine" not in ids
        assert "theirs" not in ids

    def test_set_viewer_clears_and_reloads(self):
        cache, source = make_cache(rows=self.ROWS)

        async def scenario():
            await cache.nearest(FOCUS, 50)
            cache.set_viewer("u1")
            return await cache.nearest(FOCUS, 50)

        ids = [r.id for r in asyncio.run(scenario())]
        assert "mine" in ids
        assert "theirs" not in ids
        assert len(source.calls) == 18
        assert source.calls[-1].viewer_id == "u1"
        assert cache.viewer_id == "u1"

    def test_same_viewer_keeps_cache(self):
        cache, _ = make_cache()
        cache.set_viewer(None)
        asyncio.run(cache.nearest(FOCUS, 5))
        cache.set_viewer(None)
        assert cache.stats()["record_count"] == 8

    def test_search_filter(self):
        cache, source = make_cache()
        cache.set_filters(search_term="tor")
        items = asyncio.run(cache.nearest(FOCUS, 50))
        assert [r.id for r in items] == ["a"]
        assert source.calls[0].search_term == "tor"


class TestConfigureClearStats:
    """Test cases for configure / clear / stats"""

    def test_stats_after_load(self):
        cache, _ = make_cache()
        asyncio.run(cache.nearest(FOCUS, 5))
        s = cache.stats()
        assert s["record_count"] == 8
        assert s["tile_count"] == 9
        assert s["pending_fetch"] is False
        assert s["queued_request"] is False
        assert s["center_tile"] == [148, 582]
        assert s["last_error"] is None
        assert s["fetch_count"] == 9
        assert s["tile_size_km"] == 10.0
        assert s["grid_extent"] == 3
        assert s["max_records_in_memory"] == 5000

    def test_clear(self):
        cache, source = make_cache()

        async def scenario():
            await cache.nearest(FOCUS, 5)
            cache.clear()
            assert cache.stats()["record_count"] == 0
            assert cache.stats()["tile_count"] == 0
            return await cache.nearest(FOCUS, 5)

        items = asyncio.run(scenario())
        assert len(items) == 5
        assert len(source.calls) == 18

    def test_get(self):
        cache, _ = make_cache()
        asyncio.run(cache.nearest(FOCUS, 5))
        assert cache.get("a").display["title"] == "Brandenburger Tor"
        assert cache.get("zzz") is None

    def test_configure_drops_state(self):
        cache, _ = make_cache()
        asyncio.run(cache.nearest(FOCUS, 5))
        cache.configure(tile_size_km=5, grid_extent=5, max_records_in_memory=100)
        s = cache.stats()
        assert s["record_count"] == 0
        assert s["tile_count"] == 0
        assert s["center_tile"] is None
        assert (s["tile_size_km"], s["grid_extent"], s["max_records_in_memory"]) == (5.0, 5, 100)

    def test_configure_during_fetch_keeps_single_call_outstanding(self):
        """A load issued right after configure waits for the abandoned fetch to return"""

        async def scenario():
            source = ScriptedSource(BERLIN_ROWS, gate=asyncio.Event())
            source.entered = asyncio.Event()
            cache = ProximityCache(source.fetch, CacheConfig(grid_extent=1))

            first = asyncio.create_task(cache.load_for(FOCUS))
            await source.entered.wait()
            cache.configure(tile_size_km=5)
            second = asyncio.create_task(cache.nearest(FOCUS, 10))
            await asyncio.sleep(0)
            assert len(source.calls) == 1

            source.gate.set()
            report, items = await asyncio.gather(first, second)
            return cache, source, report, items

        cache, source, report, items = asyncio.run(scenario())
        assert report.stale
        assert source.max_in_flight == 1
        assert len(source.calls) == 2
        assert cache.stats()["tile_size_km"] == 5.0
        assert [r.id for r in items][:2] == ["a", "b"]

    def test_configure_unlimited(self):
        cache, _ = make_cache()
        cache.configure(unlimited=True)
        assert cache.stats()["max_records_in_memory"] is None
        assert cache.governor.max_records is None

    def test_configure_rejects_even_extent(self):
        cache, _ = make_cache()
        asyncio.run(cache.nearest(FOCUS, 5))
        with pytest.raises(ValueError):
            cache.configure(grid_extent=4)
        assert cache.stats()["record_count"] == 8

    def test_budget_spares_active_neighbourhood(self):
        """A budget smaller than the current neighbourhood never evicts it"""
        cache, _ = make_cache(config=CacheConfig(max_records_in_memory=5))
        items = asyncio.run(cache.nearest(FOCUS, 50))
        assert len(items) == 8
        assert cache.stats()["record_count"] == 8

    def test_budget_evicts_old_neighbourhood(self):
        """Leaving an area far behind frees its records"""
        far_rows = [row(f"m{i}", 48.137 + 0.001 * i, 11.575) for i in range(3)]
        cache, _ = make_cache(rows=BERLIN_ROWS + far_rows, config=CacheConfig(max_records_in_memory=5))

        async def scenario():
            await cache.nearest(FOCUS, 50)
            return await cache.nearest(Coordinate(48.137, 11.575), 50)

        items = asyncio.run(scenario())
        assert sorted(r.id for r in items) == ["m0", "m1", "m2"]
        assert cache.stats()["record_count"] == 3
