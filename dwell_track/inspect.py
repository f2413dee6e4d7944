"""Inspect a samples CSV and export a readable time series."""

from __future__ import annotations

import csv
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from dwell_track.models import Sample
from dwell_track.timeutils import DeltaStats, delta_stats, dt_from_epoch_s


@dataclass(frozen=True, slots=True)
class InspectResult:
    """High-level sample inspection result."""

    samples: int
    devices: Sequence[str]
    min_time: int | None
    max_time: int | None
    delta: DeltaStats | None
    min_lat: float | None
    max_lat: float | None
    min_lon: float | None
    max_lon: float | None
    invalid_fixes: int
    unknown_speed: int
    duplicate_timestamps: int


def inspect_samples(samples: Sequence[Sample]) -> InspectResult:
    """Inspect already-loaded samples.

    Coordinates ranges and sampling intervals ignore "no fix" samples;
    duplicate timestamps are counted per device.
    """

    valid = [s for s in samples if s.has_fix]
    devices = sorted({s.device_id for s in samples})
    if not valid:
        return InspectResult(
            samples=len(samples),
            devices=devices,
            min_time=None,
            max_time=None,
            delta=None,
            min_lat=None,
            max_lat=None,
            min_lon=None,
            max_lon=None,
            invalid_fixes=len(samples),
            unknown_speed=sum(1 for s in samples if s.speed_kmh is None),
            duplicate_timestamps=0,
        )

    dupe = 0
    seen: set[tuple[str, int]] = set()
    for s in samples:
        key = (s.device_id, s.timestamp)
        if key in seen:
            dupe += 1
        seen.add(key)

    times = sorted(s.timestamp for s in valid)
    lats = [s.lat for s in valid]
    lons = [s.lon for s in valid]
    return InspectResult(
        samples=len(samples),
        devices=devices,
        min_time=times[0],
        max_time=times[-1],
        delta=delta_stats(times) if len(devices) == 1 else None,
        min_lat=min(lats),
        max_lat=max(lats),
        min_lon=min(lons),
        max_lon=max(lons),
        invalid_fixes=len(samples) - len(valid),
        unknown_speed=sum(1 for s in samples if s.speed_kmh is None),
        duplicate_timestamps=dupe,
    )


def export_readable_csv(samples: Iterable[Sample], out_path: str | Path, tz_name: str) -> None:
    """Export samples with local times.

    Output columns:
        - time_local: ISO datetime (local timezone)
        - device_id, epoch_s, lat, lon, speed_kmh, battery_pct
        - valid_fix: 1/0
    """

    p = Path(out_path)
    with p.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(
            f,
            fieldnames=[
                "time_local",
                "device_id",
                "epoch_s",
                "lat",
                "lon",
                "speed_kmh",
                "battery_pct",
                "valid_fix",
            ],
        )
        w.writeheader()
        for s in samples:
            w.writerow(
                {
                    "time_local": dt_from_epoch_s(s.timestamp, tz_name).isoformat(sep=" "),
                    "device_id": s.device_id,
                    "epoch_s": s.timestamp,
                    "lat": s.lat,
                    "lon": s.lon,
                    "speed_kmh": "" if s.speed_kmh is None else s.speed_kmh,
                    "battery_pct": "" if s.battery_pct is None else s.battery_pct,
                    "valid_fix": 1 if s.has_fix else 0,
                }
            )
