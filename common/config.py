from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_CONFIG_PATH = "config/params.yaml"

DEFAULTS: Dict[str, Any] = {
    "cache": {
        "tile_size_km": 10.0,
        "grid_extent": 3,
        "max_records_in_memory": 5000,
        "max_radius_km": 50.0,
        "fetch_timeout_s": 10.0,
    },
    "source": {
        "kind": "memory",                  # memory | rest
        "records_path": "data/records.json",
        "base_url": None,                  # falls back to env SUPABASE_URL
        "api_key": None,                   # falls back to env SUPABASE_ANON_KEY
        "table": "items",
        "page_size": 1000,
    },
    "server": {"host": "0.0.0.0", "port": 8000, "max_sessions": 256},
    "logging": {"level": "INFO"},
}


@dataclass(slots=True)
class CacheConfig:
    """
    Tunables of one proximity cache.

    Attributes:
        tile_size_km: side of a grid tile (converted to degrees at 111 km/deg).
        grid_extent: N of the N x N neighbourhood loaded around the focus tile (odd).
        max_records_in_memory: eviction budget; None means unlimited.
        max_radius_km: upper bound on radius loads, caps fetch fan-out.
        fetch_timeout_s: per-tile collaborator timeout; a timeout counts as a fetch failure.
    """
    tile_size_km: float = 10.0
    grid_extent: int = 3
    max_records_in_memory: Optional[int] = 5000
    max_radius_km: float = 50.0
    fetch_timeout_s: float = 10.0

    def __post_init__(self) -> None:
        self.tile_size_km = float(self.tile_size_km)
        if not self.tile_size_km > 0:
            raise ValueError("tile_size_km must be > 0")
        self.grid_extent = int(self.grid_extent)
        if self.grid_extent < 1 or self.grid_extent % 2 == 0:
            raise ValueError("grid_extent must be an odd number >= 1")
        if self.max_records_in_memory is not None:
            self.max_records_in_memory = int(self.max_records_in_memory)
            if self.max_records_in_memory < 1:
                raise ValueError("max_records_in_memory must be >= 1 or None")
        self.max_radius_km = float(self.max_radius_km)
        if self.max_radius_km < 0:
            raise ValueError("max_radius_km must be >= 0")
        self.fetch_timeout_s = float(self.fetch_timeout_s)
        if not self.fetch_timeout_s > 0:
            raise ValueError("fetch_timeout_s must be > 0")

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "CacheConfig":
        d = d or {}
        base = DEFAULTS["cache"]
        return cls(
            tile_size_km=d.get("tile_size_km", base["tile_size_km"]),
            grid_extent=d.get("grid_extent", base["grid_extent"]),
            max_records_in_memory=d.get("max_records_in_memory", base["max_records_in_memory"]),
            max_radius_km=d.get("max_radius_km", base["max_radius_km"]),
            fetch_timeout_s=d.get("fetch_timeout_s", base["fetch_timeout_s"]),
        )


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load the YAML config merged over DEFAULTS.
    Path precedence: explicit arg, env CULOCA_CONFIG, config/params.yaml.
    A missing file yields the defaults.
    """
    path = path or os.environ.get("CULOCA_CONFIG") or DEFAULT_CONFIG_PATH
    if not Path(path).exists():
        P = copy.deepcopy(DEFAULTS)
    else:
        with open(path, "r") as f:
            P = _merge(DEFAULTS, yaml.safe_load(f) or {})

    # Env overrides
    if os.environ.get("LOG_LEVEL"):
        P["logging"]["level"] = os.environ["LOG_LEVEL"]
    return P
