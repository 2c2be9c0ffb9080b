#!/usr/bin/env python3
"""
Generate a synthetic geotagged record set for the in-memory source.

Writes data/records.json as {"records": [{id, lat, lon, title, path_512, ...}, ...]}
with points scattered around a centre (Gaussian, sigma in km). A fraction of the
records is private to one of a few synthetic owners.

Examples:
  python scripts/generate_sample_records.py --center 52.520 13.405 --count 2000 --sigma-km 15
  python scripts/generate_sample_records.py --center 48.137 11.575 --count 500 --private 0.2 --out data/munich.json
"""
from __future__ import annotations

import argparse
import json
import os
import sys
import uuid
from pathlib import Path
from typing import Dict, List, Tuple

import numpy as np

# Add the project root to the path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from common.geo import km_to_deg_lat, km_to_deg_lon


def synth_records(
    center: Tuple[float, float],
    count: int,
    *,
    sigma_km: float = 15.0,
    private_fraction: float = 0.1,
    owners: int = 5,
    seed: int = 0,
) -> List[Dict]:
    """Deterministic for a given seed."""
    if count < 0:
        raise ValueError("count must be >= 0")
    rng = np.random.default_rng(seed)
    lat0, lon0 = center
    dlat = rng.normal(0.0, km_to_deg_lat(sigma_km), size=count)
    dlon = rng.normal(0.0, km_to_deg_lon(sigma_km, lat0), size=count)
    private = rng.random(count) < private_fraction
    owner_ids = [str(uuid.UUID(int=int(rng.integers(1, 2**62)))) for _ in range(max(1, owners))]
    owner_idx = rng.integers(0, len(owner_ids), size=count)

    out: List[Dict] = []
    for i in range(count):
        rid = str(uuid.UUID(int=int(rng.integers(1, 2**62))))
        out.append(
            {
                "id": rid,
                "lat": round(float(lat0 + dlat[i]), 6),
                "lon": round(float(lon0 + dlon[i]), 6),
                "title": f"Sample image {i:05d}",
                "path_512": f"512/{rid}.jpg",
                "path_64": f"64/{rid}.jpg",
                "width": 2048,
                "height": 1365,
                "profile_id": owner_ids[int(owner_idx[i])],
                "is_private": bool(private[i]),
            }
        )
    return out


def main() -> None:
    ap = argparse.ArgumentParser(description="Synthesize geotagged records for the in-memory source")
    ap.add_argument("--center", nargs=2, type=float, default=[52.520, 13.405], metavar=("LAT", "LON"))
    ap.add_argument("--count", type=int, default=2000)
    ap.add_argument("--sigma-km", type=float, default=15.0, help="Gaussian spread around the centre (km)")
    ap.add_argument("--private", type=float, default=0.1, help="Fraction of private records")
    ap.add_argument("--owners", type=int, default=5)
    ap.add_argument("--seed", type=int, default=0)
    ap.add_argument("--out", default="data/records.json")
    args = ap.parse_args()

    rows = synth_records(
        (args.center[0], args.center[1]),
        args.count,
        sigma_km=args.sigma_km,
        private_fraction=args.private,
        owners=args.owners,
        seed=args.seed,
    )
    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps({"records": rows}, indent=1))
    print(f"Wrote {len(rows)} records to {out}")


if __name__ == "__main__":
    main()
