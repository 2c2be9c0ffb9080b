from __future__ import annotations

"""
PostgREST (Supabase) adapter for the `items` table.

Usage:
    src = RestRecordSource()   # SUPABASE_URL / SUPABASE_ANON_KEY from env, or base_url=..., api_key=...
    cache = ProximityCache(src.fetch)

Rows come back as {id, lat, lon, title, ..., profile_id, is_private}. Paging is
internal: pages of `page_size` rows are requested until a short page arrives.
Privacy scoping mirrors the gallery queries: public rows (is_private false/null)
plus the viewer's own rows.
"""

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

import requests

from common.types import FetchRequest


log = logging.getLogger(__name__)

SELECT_COLUMNS = (
    "id,lat,lon,title,description,keywords,path_2048,path_512,path_64,"
    "width,height,created_at,profile_id,is_private"
)


class RestRecordSource:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        table: str = "items",
        page_size: int = 1000,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Params:
            base_url: project URL, e.g. https://xyz.supabase.co (falls back to env SUPABASE_URL)
            api_key: anon/service key (falls back to env SUPABASE_ANON_KEY)
            table: table exposed under /rest/v1/
            page_size: rows per request
            timeout: per-request timeout (s)
            session: optional requests.Session for connection reuse
        """
        self.base_url = (base_url or os.getenv("SUPABASE_URL") or "").rstrip("/")
        self.api_key = api_key or os.getenv("SUPABASE_ANON_KEY")
        if not self.base_url:
            raise ValueError("Supabase URL is required. Set SUPABASE_URL or pass base_url=...")
        if not self.api_key:
            raise ValueError(
                "Supabase API key is required. "
                "Set SUPABASE_ANON_KEY environment variable or pass api_key=..."
            )
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self.table = table
        self.page_size = int(page_size)
        self.timeout = float(timeout)
        self.session = session or requests.Session()

    # ----------------------------
    # Public API
    # ----------------------------
    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/rest/v1/{self.table}"

    def build_params(self, request: FetchRequest, *, offset: int = 0) -> List[Tuple[str, Any]]:
        """
        PostgREST query parameters for one page (no request performed).
        Repeated keys (lat=gte.., lat=lte..) are ANDed by PostgREST, hence a list of pairs.
        """
        b = request.bbox
        params: List[Tuple[str, Any]] = [
            ("select", SELECT_COLUMNS),
            ("lat", "not.is.null"),
            ("lon", "not.is.null"),
            ("lat", f"gte.{b.lat_min}"),
            ("lat", f"lte.{b.lat_max}"),
            ("lon", f"gte.{b.lon_min}"),
            ("lon", f"lte.{b.lon_max}"),
        ]
        if request.viewer_id:
            params.append(("or", f"(profile_id.eq.{request.viewer_id},is_private.eq.false,is_private.is.null)"))
        else:
            params.append(("or", "(is_private.eq.false,is_private.is.null)"))
        if request.user_filter_id:
            params.append(("profile_id", f"eq.{request.user_filter_id}"))
        if request.search_term:
            t = request.search_term.replace(",", " ").replace("(", " ").replace(")", " ").strip()
            if t:
                params.append(("and", f"(or(title.ilike.*{t}*,description.ilike.*{t}*))"))
        params += [
            ("order", "created_at.desc"),
            ("limit", self.page_size),
            ("offset", offset),
        ]
        return params

    def headers(self) -> Dict[str, str]:
        return {
            "apikey": str(self.api_key),
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }

    def query(self, request: FetchRequest) -> List[Dict[str, Any]]:
        """
        Blocking: fetch every row inside `request.bbox`, page by page.

        Raises:
            RuntimeError: non-200 response or a body that is not a JSON array.
            requests.RequestException: transport errors / timeouts.
        """
        rows: List[Dict[str, Any]] = []
        offset = 0
        while True:
            r = self.session.get(
                self.endpoint,
                params=self.build_params(request, offset=offset),
                headers=self.headers(),
                timeout=self.timeout,
            )
            if r.status_code != 200:
                raise RuntimeError(f"Items API error {r.status_code}: {r.text[:200]}")
            page = r.json()
            if not isinstance(page, list):
                raise RuntimeError(f"Items API returned {type(page).__name__}, expected a list")
            rows.extend(page)
            if len(page) < self.page_size:
                break
            offset += self.page_size

        log.debug("Fetched %d rows for tile %s", len(rows), request.tile_key)
        return rows

    async def fetch(self, request: FetchRequest) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.query, request)
