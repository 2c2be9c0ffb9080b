from __future__ import annotations

from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from common.config import CacheConfig, load_config
from common.errors import InvalidInput, LoadFailed
from common.logging_setup import get_logger, setup_logging
from common.types import Coordinate
from common.utils import iso_now_ms
from server.sessions import SessionRegistry
from sources.memory_source import InMemorySource
from sources.rest_source import RestRecordSource
from spatial_cache.cache import ProximityCache
from spatial_cache.loader import FetchFn, LoadReport


log = get_logger("server")


def make_fetch(source_cfg: Dict[str, Any]) -> FetchFn:
    """Build the fetch collaborator named by the `source` config section."""
    kind = str(source_cfg.get("kind", "memory")).lower()
    if kind == "memory":
        return InMemorySource.from_json(source_cfg.get("records_path", "data/records.json")).fetch
    if kind == "rest":
        return RestRecordSource(
            base_url=source_cfg.get("base_url"),
            api_key=source_cfg.get("api_key"),
            table=source_cfg.get("table", "items"),
            page_size=int(source_cfg.get("page_size", 1000)),
        ).fetch
    raise ValueError(f"unknown source kind: {kind!r}")


def _report_to_dict(rep: LoadReport) -> Dict[str, Any]:
    return {
        "center": list(rep.center),
        "required": len(rep.required),
        "loaded": [list(k) for k in rep.loaded],
        "failed": {f"{k[0]},{k[1]}": v for k, v in rep.failed.items()},
        "cached": rep.cached,
        "new_records": rep.new_records,
        "evicted_records": rep.evicted_records,
        "stale": rep.stale,
    }


def create_app(P: Optional[Dict[str, Any]] = None, fetch: Optional[FetchFn] = None) -> FastAPI:
    """
    Build the API. `P` is a config dict as returned by load_config();
    `fetch` overrides the configured source (tests, embedding).
    """
    P = P or load_config()
    cache_cfg = CacheConfig.from_dict(P.get("cache"))
    source_cfg = P.get("source", {})
    fetch_fn = fetch or make_fetch(source_cfg)
    factory: Callable[[], ProximityCache] = lambda: ProximityCache(fetch_fn, cache_cfg)
    sessions = SessionRegistry(factory, max_sessions=int(P.get("server", {}).get("max_sessions", 256)))

    app = FastAPI(title="Culoca Proximity Cache API", version="1.0.0")
    app.state.sessions = sessions

    # (Optional) CORS for local dev tools
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten as needed
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "ts": iso_now_ms(),
            "source": source_cfg.get("kind", "memory") if fetch is None else "custom",
            "sessions": sessions.stats(),
        }

    @app.get("/stats")
    def stats(x_session_id: str = Header("default")):
        cache = sessions.get(x_session_id)
        return {
            "sessions": sessions.stats(),
            "session": cache.stats() if cache is not None else None,
        }

    @app.get("/nearest")
    async def nearest(
        lat: float = Query(...),
        lon: float = Query(...),
        count: int = Query(50),
        pinned: Optional[str] = Query(None),
        radius: Optional[float] = Query(None, description="max distance (m)"),
        x_session_id: str = Header("default"),
        x_viewer_id: Optional[str] = Header(None),
    ):
        cache = sessions.get_or_create(x_session_id, x_viewer_id)
        try:
            items = await cache.nearest(Coordinate(lat, lon), count, pinned_id=pinned, max_distance_m=radius)
        except InvalidInput as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {
            "items": [r.to_dict() for r in items],
            "count": len(items),
            "stats": cache.stats(),
        }

    @app.post("/load")
    async def load(
        lat: float = Query(...),
        lon: float = Query(...),
        radius: Optional[float] = Query(None),
        x_session_id: str = Header("default"),
        x_viewer_id: Optional[str] = Header(None),
    ):
        cache = sessions.get_or_create(x_session_id, x_viewer_id)
        try:
            rep = await cache.load_for(Coordinate(lat, lon), radius_m=radius)
        except InvalidInput as e:
            raise HTTPException(status_code=400, detail=str(e))
        except LoadFailed as e:
            log.warning("Load failed: %s", e)
            raise HTTPException(status_code=502, detail=str(e))
        return {"report": _report_to_dict(rep), "stats": cache.stats()}

    @app.post("/clear")
    def clear(x_session_id: str = Header("default")):
        cache = sessions.get(x_session_id)
        if cache is None:
            raise HTTPException(status_code=404, detail="unknown_session")
        cache.clear()
        return {"cleared": True, "stats": cache.stats()}

    return app


# -------- local dev entrypoint --------
def main() -> None:
    P = load_config()
    setup_logging(P.get("logging", {}).get("level", "INFO"), force=True)
    srv = P.get("server", {})
    uvicorn.run(create_app(P), host=srv.get("host", "0.0.0.0"), port=int(srv.get("port", 8000)))


if __name__ == "__main__":
    main()
