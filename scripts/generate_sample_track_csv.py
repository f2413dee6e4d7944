from __future__ import annotations

import argparse
import csv
import math
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Final

from zoneinfo import ZoneInfo


TZ: Final[str] = "Europe/Berlin"
METERS_PER_DEG_LAT: Final[float] = 111_320.0


@dataclass(frozen=True, slots=True)
class Site:
    id: str
    name: str
    lat: float
    lon: float


def _jitter(rng: random.Random, lat: float, lon: float, meters: float) -> tuple[float, float]:
    d_lat = rng.uniform(-meters, meters) / METERS_PER_DEG_LAT
    d_lon = rng.uniform(-meters, meters) / (METERS_PER_DEG_LAT * math.cos(math.radians(lat)))
    return lat + d_lat, lon + d_lon


def generate_samples(
    *,
    vehicles: list[str],
    stops: int,
    seed: int,
    start_local: datetime,
    sites: list[Site],
) -> list[dict[str, str]]:
    """Generate fake samples: drives between sites with parked stays in between."""

    rng = random.Random(seed)
    tz = ZoneInfo(TZ)
    out: list[dict[str, str]] = []

    for vehicle in vehicles:
        cur = start_local.replace(tzinfo=tz)
        site = rng.choice(sites)
        battery = rng.uniform(70.0, 95.0)

        for _ in range(stops):
            # Parked: slow speeds, small GPS jitter, draining battery.
            for _ in range(rng.randint(4, 30)):
                lat, lon = _jitter(rng, site.lat, site.lon, 15.0)
                speed = rng.choice([0.0, 0.0, 0.0, rng.uniform(0.1, 0.9)])
                if rng.random() < 0.03:
                    lat, lon = 0.0, 0.0  # lost fix
                battery = max(5.0, battery - rng.uniform(0.0, 0.6))
                out.append(_row(vehicle, cur, lat, lon, speed, battery))
                cur += timedelta(seconds=rng.uniform(60, 300))

            # Driving: interpolate toward the next site.
            nxt = rng.choice([s for s in sites if s.id != site.id])
            legs = rng.randint(3, 10)
            for i in range(1, legs + 1):
                f = i / (legs + 1)
                lat = site.lat + (nxt.lat - site.lat) * f
                lon = site.lon + (nxt.lon - site.lon) * f
                speed = rng.uniform(20.0, 80.0)
                battery = min(100.0, battery + rng.uniform(0.2, 1.0))
                out.append(_row(vehicle, cur, lat, lon, speed, battery))
                cur += timedelta(seconds=rng.uniform(30, 120))
            site = nxt

            # Occasional overnight gap.
            if rng.random() < 0.1:
                cur += timedelta(hours=rng.uniform(8, 14))

    out.sort(key=lambda r: (r["device_id"], int(r["timestamp"])))
    return out


def _row(vehicle: str, when: datetime, lat: float, lon: float, speed: float, battery: float) -> dict[str, str]:
    return {
        "device_id": vehicle,
        "timestamp": str(int(when.timestamp())),
        "lat": f"{lat:.7f}",
        "lon": f"{lon:.7f}",
        "speed_kmh": f"{speed:.1f}",
        "battery_pct": f"{battery:.1f}",
    }


def main() -> int:
    p = argparse.ArgumentParser(description="Generate fake samples and locations CSVs for demo/testing.")
    p.add_argument("--out", type=str, default="sample_data/samples.csv", help="Output samples CSV path")
    p.add_argument("--locations-out", type=str, default="sample_data/locations.csv", help="Output locations CSV")
    p.add_argument("--vehicles", type=int, default=2, help="Number of vehicles")
    p.add_argument("--stops", type=int, default=20, help="Stops per vehicle")
    p.add_argument("--seed", type=int, default=42, help="Random seed (reproducible)")
    p.add_argument(
        "--start",
        type=str,
        default="2025-08-04 07:30:00",
        help="Start local time in Europe/Berlin, e.g. '2025-08-04 07:30:00'",
    )
    args = p.parse_args()

    start_local = datetime.fromisoformat(args.start)
    sites = [
        Site("C-1001", "Baeckerei Schulz", 52.5200000, 13.4050000),
        Site("C-1002", "Autohaus Meier", 52.4862000, 13.4250000),
        Site("C-1003", "Praxis Dr. Wolf", 52.5450000, 13.3550000),
        Site("DEPOT", "Depot", 52.5000000, 13.3000000),
    ]
    vehicles = [f"truck-{i + 1}" for i in range(args.vehicles)]

    rows = generate_samples(vehicles=vehicles, stops=args.stops, seed=args.seed, start_local=start_local, sites=sites)
    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(f, fieldnames=["device_id", "timestamp", "lat", "lon", "speed_kmh", "battery_pct"])
        w.writeheader()
        w.writerows(rows)

    loc_path = Path(args.locations_out)
    loc_path.parent.mkdir(parents=True, exist_ok=True)
    with loc_path.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(f, fieldnames=["id", "name", "lat", "lon"])
        w.writeheader()
        for s in sites:
            if s.id != "DEPOT":
                w.writerow({"id": s.id, "name": s.name, "lat": f"{s.lat:.7f}", "lon": f"{s.lon:.7f}"})

    print(f"Generated: {out_path} (rows={len(rows)}, seed={args.seed}), {loc_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
