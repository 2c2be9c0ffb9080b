"""In-memory fetch collaborator: filters a fixed row set the way the items table query does."""
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from common.types import FetchRequest


def _text_matches(row: Mapping[str, Any], term: str) -> bool:
    needle = term.lower()
    for key in ("title", "description", "keywords"):
        v = row.get(key)
        if v is None:
            continue
        if isinstance(v, (list, tuple)):
            v = " ".join(str(x) for x in v)
        if needle in str(v).lower():
            return True
    return False


def row_visible(row: Mapping[str, Any], viewer_id: Optional[str]) -> bool:
    """Public rows (is_private false/null) for everyone; private rows only for their owner."""
    if not row.get("is_private"):
        return True
    return viewer_id is not None and row.get("profile_id") == viewer_id


class InMemorySource:
    """
    Serves rows `{id, lat, lon, ...}` from memory.

    Every fetch is recorded in `calls` so callers can count collaborator round trips.
    `delay_s` simulates network latency.
    """

    def __init__(self, rows: Iterable[Mapping[str, Any]] = (), delay_s: float = 0.0):
        self.rows: List[Dict[str, Any]] = [dict(r) for r in rows]
        self.delay_s = float(delay_s)
        self.calls: List[FetchRequest] = []

    @classmethod
    def from_json(cls, path: str, **kwargs: Any) -> "InMemorySource":
        """Load rows from a JSON file: either a list or {"records": [...]}. Missing file -> empty."""
        p = Path(path)
        if not p.exists():
            return cls([], **kwargs)
        data = json.loads(p.read_text())
        rows = data.get("records", []) if isinstance(data, dict) else data
        return cls(rows, **kwargs)

    def query(self, request: FetchRequest) -> List[Dict[str, Any]]:
        b = request.bbox
        out: List[Dict[str, Any]] = []
        for row in self.rows:
            lat, lon = row.get("lat"), row.get("lon")
            if lat is None or lon is None:
                continue
            if not (b.lat_min <= lat <= b.lat_max and b.lon_min <= lon <= b.lon_max):
                continue
            if not row_visible(row, request.viewer_id):
                continue
            if request.user_filter_id is not None and row.get("profile_id") != request.user_filter_id:
                continue
            if request.search_term and not _text_matches(row, request.search_term):
                continue
            out.append(dict(row))
        return out

    async def fetch(self, request: FetchRequest) -> List[Dict[str, Any]]:
        self.calls.append(request)
        if self.delay_s > 0:
            await asyncio.sleep(self.delay_s)
        return self.query(request)
