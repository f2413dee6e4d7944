"""Historical dwell segmentation and episode reporting."""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, Protocol, Sequence

from dwell_track.geo import RunningCentroid, haversine_m, time_weighted_centroid
from dwell_track.models import DwellEpisode, Sample
from dwell_track.motion import DWELL_CANDIDATE_KMH, is_moving
from dwell_track.timeutils import dt_from_epoch_s, epoch_s_from_dt, format_hhmmss, parse_dt, round_minutes

logger = logging.getLogger(__name__)


class CentroidMode(str, Enum):
    """How the reported centroid of an episode is computed."""

    SAMPLE = "sample"
    TIME = "time"


@dataclass(frozen=True, slots=True)
class SegmentParams:
    """Parameters controlling historical segmentation."""

    minimum_stop_minutes: float = 2.0
    # Looser than the live drift tolerance: parking-lot scale drift is fine after the fact.
    stay_radius_m: float = 75.0
    # Two samples further apart than this never belong to the same stay, even at the same spot.
    max_gap_minutes: float = 60.0
    moving_threshold_kmh: float = DWELL_CANDIDATE_KMH
    min_samples: int = 3
    centroid_mode: CentroidMode = CentroidMode.SAMPLE


class SegmentationStrategy(Protocol):
    """Turns a complete, time-ordered sample sequence into dwell episodes."""

    name: str

    def segment(self, samples: Sequence[Sample]) -> list[DwellEpisode]: ...


class _Stay:
    """An open stay while scanning forward."""

    __slots__ = ("centroid", "members")

    def __init__(self, first: Sample) -> None:
        self.members: list[Sample] = [first]
        self.centroid = RunningCentroid(first.lat, first.lon)

    @property
    def start_time(self) -> int:
        return self.members[0].timestamp

    @property
    def end_time(self) -> int:
        return self.members[-1].timestamp

    def add(self, sample: Sample) -> None:
        self.members.append(sample)
        self.centroid.add(sample.lat, sample.lon)

    def absorb(self, other: _Stay) -> None:
        for s in other.members:
            self.add(s)


def _is_stationary(sample: Sample, params: SegmentParams) -> bool:
    # Unknown speed is never a dwell candidate.
    return is_moving(sample.speed_kmh, params.moving_threshold_kmh) is False


def _to_episode(stay: _Stay, method: str, params: SegmentParams) -> DwellEpisode | None:
    elapsed_s = stay.end_time - stay.start_time
    if elapsed_s < params.minimum_stop_minutes * 60.0:
        return None
    if len(stay.members) < params.min_samples:
        return None

    if params.centroid_mode is CentroidMode.TIME:
        lat, lon = time_weighted_centroid(
            [(s.lat, s.lon) for s in stay.members],
            [s.timestamp for s in stay.members],
        )
    else:
        lat, lon = stay.centroid.lat, stay.centroid.lon

    return DwellEpisode(
        device_id=stay.members[0].device_id,
        start_time=stay.start_time,
        end_time=stay.end_time,
        centroid_lat=lat,
        centroid_lon=lon,
        sample_count=len(stay.members),
        duration_minutes=round_minutes(elapsed_s),
        detection_method=method,
    )


def _scan_stays(samples: Iterable[Sample], params: SegmentParams) -> Iterator[_Stay]:
    """Single forward pass yielding every closed stay, short ones included."""

    max_gap_s = params.max_gap_minutes * 60.0
    stay: _Stay | None = None
    for sample in samples:
        if not sample.has_fix:
            continue
        stationary = _is_stationary(sample, params)

        if stay is None:
            if stationary:
                stay = _Stay(sample)
            continue

        distance = stay.centroid.distance_m(sample.lat, sample.lon)
        gap_s = sample.timestamp - stay.end_time
        if stationary and distance <= params.stay_radius_m and gap_s <= max_gap_s:
            stay.add(sample)
            continue

        yield stay
        stay = _Stay(sample) if stationary else None

    if stay is not None:
        yield stay


class LinearSegmenter:
    """One open stay at a time, re-centred on the running mean of its members.

    A sample joins the open stay if it is not moving, lies within
    ``stay_radius_m`` of the running centroid and follows the stay's last
    member within ``max_gap_minutes``. Anything else closes the stay, which is
    emitted if it lasted ``minimum_stop_minutes`` with at least
    ``min_samples`` members. A lone slow sample between moving ones (traffic
    lights) therefore never becomes an episode.
    """

    name = "linear"

    def __init__(self, params: SegmentParams = SegmentParams()) -> None:
        self.params = params

    def segment(self, samples: Sequence[Sample]) -> list[DwellEpisode]:
        episodes: list[DwellEpisode] = []
        for stay in _scan_stays(samples, self.params):
            episode = _to_episode(stay, self.name, self.params)
            if episode is not None:
                episodes.append(episode)
        logger.debug("linear segmentation: %s samples -> %s episodes", len(samples), len(episodes))
        return episodes


class ClusterMergeSegmenter:
    """Linear stays merged across short interruptions.

    Builds stays exactly like LinearSegmenter, then merges neighbouring stays
    whose centroids are within ``merge_radius_m`` and whose gap is at most
    ``merge_gap_minutes`` before applying the emission rules. Suited to noisy
    trackers that report brief speed spikes while parked.
    """

    name = "cluster"

    def __init__(
        self,
        params: SegmentParams = SegmentParams(),
        *,
        merge_radius_m: float = 100.0,
        merge_gap_minutes: float = 15.0,
    ) -> None:
        self.params = params
        self.merge_radius_m = merge_radius_m
        self.merge_gap_minutes = merge_gap_minutes

    def segment(self, samples: Sequence[Sample]) -> list[DwellEpisode]:
        merged: list[_Stay] = []
        for stay in _scan_stays(samples, self.params):
            if merged and self._mergeable(merged[-1], stay):
                merged[-1].absorb(stay)
            else:
                merged.append(stay)

        episodes: list[DwellEpisode] = []
        for stay in merged:
            episode = _to_episode(stay, self.name, self.params)
            if episode is not None:
                episodes.append(episode)
        logger.debug("cluster segmentation: %s samples -> %s episodes", len(samples), len(episodes))
        return episodes

    def _mergeable(self, prev: _Stay, cur: _Stay) -> bool:
        if cur.start_time - prev.end_time > self.merge_gap_minutes * 60.0:
            return False
        distance = haversine_m(prev.centroid.lat, prev.centroid.lon, cur.centroid.lat, cur.centroid.lon)
        return distance <= self.merge_radius_m


def build_segmenter(
    method: str,
    params: SegmentParams,
    *,
    merge_radius_m: float = 100.0,
    merge_gap_minutes: float = 15.0,
) -> SegmentationStrategy:
    """Create a segmentation strategy by name ("linear" or "cluster")."""

    if method == LinearSegmenter.name:
        return LinearSegmenter(params)
    if method == ClusterMergeSegmenter.name:
        return ClusterMergeSegmenter(params, merge_radius_m=merge_radius_m, merge_gap_minutes=merge_gap_minutes)
    raise ValueError(f"Unknown segmentation method: {method!r} (expected 'linear' or 'cluster')")


_EPISODE_FIELDS = [
    "device_id",
    "start_time",
    "end_time",
    "duration_minutes",
    "duration_hhmmss",
    "centroid_lat",
    "centroid_lon",
    "sample_count",
    "start_epoch_s",
    "end_epoch_s",
    "detection_method",
]


def write_episodes_csv(episodes: Sequence[DwellEpisode], out_path: str | Path, tz_name: str) -> None:
    """Write episodes to CSV for review or manual editing."""

    p = Path(out_path)
    with p.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(f, fieldnames=_EPISODE_FIELDS)
        w.writeheader()
        for e in episodes:
            w.writerow(
                {
                    "device_id": e.device_id,
                    "start_time": dt_from_epoch_s(e.start_time, tz_name).isoformat(sep=" "),
                    "end_time": dt_from_epoch_s(e.end_time, tz_name).isoformat(sep=" "),
                    "duration_minutes": e.duration_minutes,
                    "duration_hhmmss": format_hhmmss(e.end_time - e.start_time),
                    "centroid_lat": f"{e.centroid_lat:.7f}",
                    "centroid_lon": f"{e.centroid_lon:.7f}",
                    "sample_count": e.sample_count,
                    "start_epoch_s": e.start_time,
                    "end_epoch_s": e.end_time,
                    "detection_method": e.detection_method,
                }
            )


def iter_episodes_from_csv(csv_path: str | Path, tz_name: str) -> Iterator[DwellEpisode]:
    """Read an episodes CSV (possibly manually edited) and yield DwellEpisode objects.

    Manual editing guidance:
        - You may edit start_time/end_time columns directly.
        - If you do, start_epoch_s/end_epoch_s will be ignored and recomputed.
    """

    p = Path(csv_path)
    with p.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        for row in reader:
            start = epoch_s_from_dt(parse_dt(row["start_time"], tz_name))
            end = epoch_s_from_dt(parse_dt(row["end_time"], tz_name))
            yield DwellEpisode(
                device_id=row.get("device_id", "") or "",
                start_time=start,
                end_time=end,
                centroid_lat=float(row.get("centroid_lat", "0") or "0"),
                centroid_lon=float(row.get("centroid_lon", "0") or "0"),
                sample_count=int(row.get("sample_count", "0") or "0"),
                duration_minutes=round_minutes(max(0, end - start)),
                detection_method=row.get("detection_method", "manual_or_imported") or "manual_or_imported",
            )


@dataclass(frozen=True, slots=True)
class EpisodesTotal:
    """Total duration summary."""

    episodes: int
    total_seconds: float

    @property
    def total_hhmmss(self) -> str:
        return format_hhmmss(self.total_seconds)


def sum_episodes(episodes: Iterable[DwellEpisode]) -> EpisodesTotal:
    """Sum episode durations."""

    total = 0.0
    count = 0
    for e in episodes:
        total += max(0, e.end_time - e.start_time)
        count += 1
    return EpisodesTotal(episodes=count, total_seconds=total)
