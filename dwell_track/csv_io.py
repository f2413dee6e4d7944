"""CSV input/output for samples, locations, blind spots and the visit log."""

from __future__ import annotations

import bisect
import csv
import logging
import re
import threading
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from dwell_track.geo import haversine_m, is_valid_fix
from dwell_track.models import BlindSpot, Location, Sample, Vehicle
from dwell_track.ports import SinkError
from dwell_track.timeutils import dt_from_epoch_s, round_minutes

logger = logging.getLogger(__name__)

SAMPLE_FIELDS = ["device_id", "timestamp", "lat", "lon", "speed_kmh", "battery_pct"]
VISIT_LOG_FIELDS = [
    "visit_id",
    "vehicle_id",
    "vehicle_name",
    "location_id",
    "location_name",
    "start_time",
    "end_time",
    "duration_minutes",
    "start_epoch_s",
    "end_epoch_s",
]


@dataclass(frozen=True, slots=True)
class CsvSummary:
    """Quick summary of CSV parsing."""

    rows_total: int
    rows_parsed: int
    rows_skipped: int
    fieldnames: Sequence[str]


def _parse_float(value: str) -> float:
    return float(value.strip())


def _parse_optional_float(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    return float(value.strip())


def _sample_from_row(row: dict[str, str]) -> Sample:
    return Sample(
        device_id=row["device_id"].strip(),
        timestamp=int(float(row["timestamp"].strip())),
        lat=_parse_float(row["lat"]),
        lon=_parse_float(row["lon"]),
        speed_kmh=_parse_optional_float(row.get("speed_kmh")),
        battery_pct=_parse_optional_float(row.get("battery_pct")),
    )


def _require_columns(fieldnames: Sequence[str], required: Sequence[str], csv_path: str | Path) -> None:
    missing = [c for c in required if c not in fieldnames]
    if missing:
        raise KeyError(f"{csv_path}: missing CSV columns {missing}. Found: {list(fieldnames)}")


def load_samples(csv_path: str | Path, device_id: str | None = None) -> tuple[list[Sample], CsvSummary]:
    """Load all samples into memory, ordered by timestamp.

    Sorting is stable, so samples sharing a timestamp keep their file order.

    Args:
        csv_path: Path to the samples CSV.
        device_id: If given, keep only this device's samples.

    Returns:
        (samples, summary); the summary counts rows of all devices.
    """

    p = Path(csv_path)
    rows_total = 0
    rows_parsed = 0
    samples: list[Sample] = []
    fieldnames: Sequence[str] = ()

    with p.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        fieldnames = reader.fieldnames or ()
        if fieldnames:
            _require_columns(fieldnames, SAMPLE_FIELDS[:4], p)
        for row in reader:
            rows_total += 1
            try:
                sample = _sample_from_row(row)
            except (KeyError, ValueError, TypeError, AttributeError):
                continue
            rows_parsed += 1
            if device_id is None or sample.device_id == device_id:
                samples.append(sample)

    samples.sort(key=lambda s: s.timestamp)
    summary = CsvSummary(
        rows_total=rows_total,
        rows_parsed=rows_parsed,
        rows_skipped=rows_total - rows_parsed,
        fieldnames=fieldnames,
    )
    if summary.rows_skipped > 0:
        logger.warning("skipped %s unparsable rows in %s", summary.rows_skipped, p)
    return samples, summary


def write_samples_csv(samples: Iterable[Sample], out_path: str | Path) -> None:
    p = Path(out_path)
    with p.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(f, fieldnames=SAMPLE_FIELDS)
        w.writeheader()
        for s in samples:
            w.writerow(
                {
                    "device_id": s.device_id,
                    "timestamp": s.timestamp,
                    "lat": f"{s.lat:.7f}",
                    "lon": f"{s.lon:.7f}",
                    "speed_kmh": "" if s.speed_kmh is None else s.speed_kmh,
                    "battery_pct": "" if s.battery_pct is None else s.battery_pct,
                }
            )


class CsvTelemetrySource:
    """In-memory telemetry source over samples loaded from CSV.

    ``as_of`` hides samples newer than the given Unix time, which lets a
    recorded track be polled as if it were live.
    """

    def __init__(self, samples: Iterable[Sample], as_of: int | None = None) -> None:
        by_device: dict[str, list[Sample]] = defaultdict(list)
        for s in samples:
            by_device[s.device_id].append(s)
        self._samples = {k: sorted(v, key=lambda s: s.timestamp) for k, v in by_device.items()}
        self._times = {k: [s.timestamp for s in v] for k, v in self._samples.items()}
        self.as_of = as_of

    @classmethod
    def from_csv(cls, csv_path: str | Path, as_of: int | None = None) -> CsvTelemetrySource:
        samples, _ = load_samples(csv_path)
        return cls(samples, as_of=as_of)

    def device_ids(self) -> list[str]:
        return sorted(self._samples)

    def _slice(self, device_id: str, start: int | None, end: int | None) -> list[Sample]:
        samples = self._samples.get(device_id, [])
        times = self._times.get(device_id, [])
        if self.as_of is not None:
            end = self.as_of if end is None else min(end, self.as_of)
        lo = 0 if start is None else bisect.bisect_left(times, start)
        hi = len(times) if end is None else bisect.bisect_right(times, end)
        return samples[lo:hi]

    def fetch_samples(self, device_id: str, start: int, end: int) -> list[Sample]:
        return self._slice(device_id, start, end)

    def fetch_recent_samples(self, device_id: str, n: int) -> list[Sample]:
        if n <= 0:
            return []
        return list(reversed(self._slice(device_id, None, None)[-n:]))

    def fetch_last_minutes(self, device_id: str, minutes: int, now: int) -> list[Sample]:
        return self._slice(device_id, now - minutes * 60, now)


def load_locations(csv_path: str | Path) -> list[Location]:
    """Read known locations. Columns: id, name, lat, lon."""

    p = Path(csv_path)
    out: list[Location] = []
    with p.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        _require_columns(reader.fieldnames or (), ["id", "lat", "lon"], p)
        for row in reader:
            try:
                loc = Location(
                    id=row["id"].strip(),
                    name=(row.get("name") or row["id"]).strip(),
                    lat=_parse_float(row["lat"]),
                    lon=_parse_float(row["lon"]),
                )
            except (ValueError, TypeError, AttributeError):
                logger.warning("skipping invalid location row %s", row)
                continue
            # Not geocoded yet.
            if not is_valid_fix(loc.lat, loc.lon):
                logger.debug("skipping location %s without coordinates", loc.id)
                continue
            out.append(loc)
    return out


class CsvLocationDirectory:
    """Location directory backed by a fixed list of locations."""

    def __init__(self, locations: Iterable[Location]) -> None:
        self._locations = list(locations)

    @classmethod
    def from_csv(cls, csv_path: str | Path) -> CsvLocationDirectory:
        return cls(load_locations(csv_path))

    def __len__(self) -> int:
        return len(self._locations)

    def nearby(self, lat: float, lon: float, radius_m: float) -> list[Location]:
        hits: list[Location] = []
        for loc in self._locations:
            d = haversine_m(lat, lon, loc.lat, loc.lon)
            if d <= radius_m:
                hits.append(
                    Location(id=loc.id, name=loc.name, lat=loc.lat, lon=loc.lon, distance_m=round(d, 2))
                )
        hits.sort(key=lambda loc: loc.distance_m)
        return hits


def load_blind_spots(csv_path: str | Path) -> list[BlindSpot]:
    """Read blind spot circles. Columns: name, lat, lon, radius_m."""

    p = Path(csv_path)
    out: list[BlindSpot] = []
    with p.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        _require_columns(reader.fieldnames or (), ["lat", "lon", "radius_m"], p)
        for row in reader:
            try:
                spot = BlindSpot(
                    name=(row.get("name") or "").strip(),
                    lat=_parse_float(row["lat"]),
                    lon=_parse_float(row["lon"]),
                    radius_m=_parse_float(row["radius_m"]),
                )
            except (ValueError, TypeError, AttributeError):
                logger.warning("skipping invalid blind spot row %s", row)
                continue
            if spot.radius_m <= 0:
                logger.warning("skipping blind spot %r with non-positive radius", spot.name)
                continue
            out.append(spot)
    return out


def load_vehicles(csv_path: str | Path) -> dict[str, Vehicle]:
    """Read vehicle names keyed by id. Columns: id, name."""

    p = Path(csv_path)
    out: dict[str, Vehicle] = {}
    with p.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        _require_columns(reader.fieldnames or (), ["id"], p)
        for row in reader:
            vid = (row.get("id") or "").strip()
            if vid:
                out[vid] = Vehicle(id=vid, name=(row.get("name") or vid).strip())
    return out


def visit_id_for(vehicle_id: str, location_id: str, start: int, tz_name: str) -> str:
    """Reproducible visit id: dwell-<vehicle>-<location>-<YYYYMMDD>-<HHMM>.

    The vehicle id is reduced to ASCII letters and digits.
    """

    vid = re.sub(r"[^a-zA-Z0-9]", "", vehicle_id) or "unknown"
    local = dt_from_epoch_s(start, tz_name)
    return f"dwell-{vid}-{location_id or 'unknown'}-{local:%Y%m%d}-{local:%H%M}"


class CsvVisitSink:
    """Visit sink writing one row per visit to a CSV log.

    Rows are keyed by the reproducible visit id, so recording the same visit
    twice replaces the earlier row.
    """

    def __init__(self, csv_path: str | Path, tz_name: str) -> None:
        self.path = Path(csv_path)
        self.tz_name = tz_name
        self._lock = threading.Lock()
        self._rows: dict[str, dict[str, str]] = {}
        if self.path.exists():
            with self.path.open("r", encoding="utf-8", newline="") as f:
                for row in csv.DictReader(f):
                    if row.get("visit_id"):
                        self._rows[row["visit_id"]] = row

    def __len__(self) -> int:
        return len(self._rows)

    def has_existing_visit(self, vehicle_id: str, location_id: str, start: int) -> bool:
        with self._lock:
            return visit_id_for(vehicle_id, location_id, start, self.tz_name) in self._rows

    def record_visit(self, vehicle: Vehicle, location: Location, start: int, end: int) -> str:
        visit_id = visit_id_for(vehicle.id, location.id, start, self.tz_name)
        end = max(end, start)
        row = {
            "visit_id": visit_id,
            "vehicle_id": vehicle.id,
            "vehicle_name": vehicle.name,
            "location_id": location.id,
            "location_name": location.name,
            "start_time": dt_from_epoch_s(start, self.tz_name).isoformat(sep=" "),
            "end_time": dt_from_epoch_s(end, self.tz_name).isoformat(sep=" "),
            "duration_minutes": str(round_minutes(end - start)),
            "start_epoch_s": str(start),
            "end_epoch_s": str(end),
        }
        with self._lock:
            previous = self._rows.get(visit_id)
            self._rows[visit_id] = row
            try:
                self._flush()
            except OSError as exc:
                if previous is None:
                    del self._rows[visit_id]
                else:
                    self._rows[visit_id] = previous
                raise SinkError(f"cannot write visit log {self.path}: {exc}") from exc
        logger.debug("recorded visit %s", visit_id)
        return visit_id

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        with tmp.open("w", encoding="utf-8", newline="") as f:
            w = csv.DictWriter(f, fieldnames=VISIT_LOG_FIELDS, extrasaction="ignore")
            w.writeheader()
            for row in sorted(self._rows.values(), key=lambda r: (r.get("start_epoch_s", ""), r["visit_id"])):
                w.writerow(row)
        tmp.replace(self.path)
