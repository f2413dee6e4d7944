"""Historical replay: segment a past time range and record each visit once."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from dwell_track.geo import find_blind_spot
from dwell_track.models import BlindSpot, DwellEpisode, Location, Vehicle
from dwell_track.ports import LocationDirectory, TelemetrySource, VisitSink
from dwell_track.segmenter import SegmentationStrategy

logger = logging.getLogger(__name__)


class ReplayOutcome(str, Enum):
    BLIND_SPOT = "blind-spot"
    NO_LOCATION = "no-location"
    EXISTING = "existing"
    RECORDED = "recorded"
    UPDATED = "updated"
    DRY_RUN = "dry-run"


@dataclass(frozen=True, slots=True)
class ReplayParams:
    """Parameters of a historical replay run."""

    proximity_m: float = 500.0
    dry_run: bool = False
    # Re-record visits the sink already has instead of skipping them.
    force_update: bool = False


@dataclass(frozen=True, slots=True)
class ReplayItem:
    """What happened to one dwell episode."""

    vehicle: Vehicle
    episode: DwellEpisode
    outcome: ReplayOutcome
    location: Location | None = None
    blind_spot: BlindSpot | None = None
    visit_id: str | None = None


@dataclass(slots=True)
class ReplayReport:
    vehicles: int = 0
    episodes_found: int = 0
    items: list[ReplayItem] = field(default_factory=list)

    def count(self, *outcomes: ReplayOutcome) -> int:
        return sum(1 for item in self.items if item.outcome in outcomes)

    @property
    def recorded(self) -> int:
        return self.count(ReplayOutcome.RECORDED, ReplayOutcome.UPDATED)


def replay_vehicle(
    vehicle: Vehicle,
    start: int,
    end: int,
    *,
    source: TelemetrySource,
    directory: LocationDirectory,
    sink: VisitSink,
    segmenter: SegmentationStrategy,
    blind_spots: Sequence[BlindSpot] = (),
    params: ReplayParams = ReplayParams(),
    report: ReplayReport | None = None,
    on_item: Callable[[ReplayItem], None] | None = None,
) -> ReplayReport:
    """Replay one vehicle's samples in [start, end] into the sink.

    Each episode is skipped if its centroid lies in a blind spot or has no
    known location within ``proximity_m``; otherwise it is attributed to the
    closest location. Episodes the sink already knows are skipped unless
    ``force_update`` is set.

    Raises:
        SinkError: If the sink fails; the run stops at that episode.
    """

    if report is None:
        report = ReplayReport()
    report.vehicles += 1

    samples = source.fetch_samples(vehicle.id, start, end)
    episodes = segmenter.segment(samples)
    report.episodes_found += len(episodes)
    logger.info("%s (%s): %s samples, %s episodes", vehicle.name, vehicle.id, len(samples), len(episodes))

    for episode in episodes:
        item = _replay_episode(vehicle, episode, directory, sink, blind_spots, params)
        report.items.append(item)
        if on_item is not None:
            on_item(item)
    return report


def _replay_episode(
    vehicle: Vehicle,
    episode: DwellEpisode,
    directory: LocationDirectory,
    sink: VisitSink,
    blind_spots: Sequence[BlindSpot],
    params: ReplayParams,
) -> ReplayItem:
    spot = find_blind_spot(episode.centroid_lat, episode.centroid_lon, blind_spots)
    if spot is not None:
        logger.debug("episode at %s in blind spot %r", episode.start_time, spot.name)
        return ReplayItem(vehicle, episode, ReplayOutcome.BLIND_SPOT, blind_spot=spot)

    nearby = directory.nearby(episode.centroid_lat, episode.centroid_lon, params.proximity_m)
    if not nearby:
        return ReplayItem(vehicle, episode, ReplayOutcome.NO_LOCATION)
    closest = min(nearby, key=lambda loc: loc.distance_m)

    if params.dry_run:
        return ReplayItem(vehicle, episode, ReplayOutcome.DRY_RUN, location=closest)

    existing = sink.has_existing_visit(vehicle.id, closest.id, episode.start_time)
    if existing and not params.force_update:
        return ReplayItem(vehicle, episode, ReplayOutcome.EXISTING, location=closest)

    visit_id = sink.record_visit(vehicle, closest, episode.start_time, episode.end_time)
    outcome = ReplayOutcome.UPDATED if existing else ReplayOutcome.RECORDED
    logger.info("%s visit %s at %s", outcome.value, visit_id, closest.name)
    return ReplayItem(vehicle, episode, outcome, location=closest, visit_id=visit_id)


def replay(
    vehicles: Iterable[Vehicle],
    start: int,
    end: int,
    *,
    source: TelemetrySource,
    directory: LocationDirectory,
    sink: VisitSink,
    segmenter: SegmentationStrategy,
    blind_spots: Sequence[BlindSpot] = (),
    params: ReplayParams = ReplayParams(),
    on_item: Callable[[ReplayItem], None] | None = None,
) -> ReplayReport:
    """Replay every vehicle in turn; see replay_vehicle."""

    if start > end:
        raise ValueError("replay start must not be after its end")
    report = ReplayReport()
    for vehicle in vehicles:
        replay_vehicle(
            vehicle,
            start,
            end,
            source=source,
            directory=directory,
            sink=sink,
            segmenter=segmenter,
            blind_spots=blind_spots,
            params=params,
            report=report,
            on_item=on_item,
        )
    return report
