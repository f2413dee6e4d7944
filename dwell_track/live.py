"""Live polling: one check per vehicle per tick.

A tick fetches each vehicle's recent samples, finds the nearest known
location, estimates how long the vehicle has been stopped, summarizes the
trailing window and runs the confirmation gate. A visit is recorded only
when both the per-poll movement rules and the gate agree, and at most once
per (vehicle, location) within the gate's confirmation window.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum

from dwell_track.gate import GateDecision, VisitConfirmationGate
from dwell_track.geo import find_blind_spot
from dwell_track.models import BlindSpot, ConfirmedVisit, Location, MovementSnapshot, Sample, Vehicle
from dwell_track.movement import DecisionParams, VisitDecision, analyze_window, decide_visit
from dwell_track.ports import LocationDirectory, SinkError, TelemetrySource, VisitSink
from dwell_track.stop_duration import DRIFT_TOLERANCE_M, RECENT_WINDOW, estimate_stop_minutes
from dwell_track.store import PairStatistics
from dwell_track.timeutils import round_minutes

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LiveParams:
    """Parameters of the live polling workflow."""

    proximity_m: float = 500.0
    recent_window: int = RECENT_WINDOW
    drift_tolerance_m: float = DRIFT_TOLERANCE_M
    analyzer_minutes: int = 30
    poll_interval_minutes: float = 15.0
    decision: DecisionParams = field(default_factory=DecisionParams)
    workers: int = 4
    dry_run: bool = False


class PollOutcome(str, Enum):
    NO_DATA = "no-data"
    BLIND_SPOT = "blind-spot"
    NO_LOCATION = "no-location"
    WAITING = "waiting"
    ALREADY_CONFIRMED = "already-confirmed"
    DRY_RUN = "dry-run"
    CREATED = "created"
    SINK_FAILED = "sink-failed"


@dataclass(frozen=True, slots=True)
class VehicleCheck:
    """Result of checking one vehicle in one tick."""

    vehicle: Vehicle
    outcome: PollOutcome
    checked_at: int
    sample: Sample | None = None
    location: Location | None = None
    stop_minutes: int = 0
    snapshot: MovementSnapshot | None = None
    gate: GateDecision | None = None
    decision: VisitDecision | None = None
    visit_id: str | None = None
    ended: tuple[ConfirmedVisit, ...] = ()
    message: str = ""


class LiveMonitor:
    """Runs the per-vehicle live check against injected collaborators."""

    def __init__(
        self,
        source: TelemetrySource,
        directory: LocationDirectory,
        sink: VisitSink,
        gate: VisitConfirmationGate,
        *,
        blind_spots: Sequence[BlindSpot] = (),
        params: LiveParams = LiveParams(),
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.source = source
        self.directory = directory
        self.sink = sink
        self.gate = gate
        self.blind_spots = list(blind_spots)
        self.params = params
        self._clock = clock or (lambda: int(time.time()))

    def check_vehicle(self, vehicle: Vehicle, now: int | None = None) -> VehicleCheck:
        now = self._clock() if now is None else now
        p = self.params

        try:
            recent = self.source.fetch_recent_samples(vehicle.id, p.recent_window)
        except Exception as exc:
            logger.warning("fetching samples of %s failed, no new information: %s", vehicle.id, exc)
            return VehicleCheck(vehicle, PollOutcome.NO_DATA, now, message=f"telemetry error: {exc}")

        current = next((s for s in recent if s.has_fix), None)
        if current is None:
            return VehicleCheck(vehicle, PollOutcome.NO_DATA, now, message="no valid position")

        spot = find_blind_spot(current.lat, current.lon, self.blind_spots)
        if spot is not None:
            ended = tuple(self.gate.end_departed(vehicle.id, (), now))
            return VehicleCheck(
                vehicle, PollOutcome.BLIND_SPOT, now, sample=current, ended=ended, message=f"in blind spot {spot.name}"
            )

        try:
            nearby = self.directory.nearby(current.lat, current.lon, p.proximity_m)
        except Exception as exc:
            logger.warning("location lookup for %s failed, no new information: %s", vehicle.id, exc)
            return VehicleCheck(vehicle, PollOutcome.NO_DATA, now, sample=current, message=f"lookup error: {exc}")

        ended = tuple(self.gate.end_departed(vehicle.id, {loc.id for loc in nearby}, now))
        if not nearby:
            return VehicleCheck(vehicle, PollOutcome.NO_LOCATION, now, sample=current, ended=ended)
        location = min(nearby, key=lambda loc: loc.distance_m)

        stop_minutes = estimate_stop_minutes(
            current.speed_kmh,
            now,
            recent,
            drift_tolerance_m=p.drift_tolerance_m,
            window=p.recent_window,
        )
        try:
            window = self.source.fetch_last_minutes(vehicle.id, p.analyzer_minutes, now)
        except Exception as exc:
            logger.warning("fetching the trailing window of %s failed: %s", vehicle.id, exc)
            window = []
        snapshot = analyze_window(window, now)
        decision = decide_visit(snapshot, stop_minutes, p.decision)
        gate = self.gate.observe(vehicle, location, current.lat, current.lon, now)

        common = dict(
            sample=current,
            location=location,
            stop_minutes=stop_minutes,
            snapshot=snapshot,
            gate=gate,
            decision=decision,
            ended=ended,
        )
        if gate.already_confirmed:
            return VehicleCheck(vehicle, PollOutcome.ALREADY_CONFIRMED, now, message=gate.reason, **common)
        if not (gate.should_fire and decision.should_create):
            reason = decision.reason if gate.should_fire else gate.reason
            return VehicleCheck(vehicle, PollOutcome.WAITING, now, message=reason, **common)
        if p.dry_run:
            return VehicleCheck(vehicle, PollOutcome.DRY_RUN, now, message=decision.reason, **common)

        start = gate.start_time if gate.start_time is not None else now
        try:
            visit_id = self.sink.record_visit(vehicle, location, start, now)
        except SinkError as exc:
            logger.error("recording visit %s@%s failed, retrying next poll: %s", vehicle.id, location.id, exc)
            return VehicleCheck(vehicle, PollOutcome.SINK_FAILED, now, message=str(exc), **common)

        self.gate.confirm(vehicle.id, location.id, visit_id, now)
        logger.info("visit created: %s at %s (%s)", vehicle.name, location.name, decision.reason)
        return VehicleCheck(vehicle, PollOutcome.CREATED, now, visit_id=visit_id, message=decision.reason, **common)

    def run_once(self, vehicles: Sequence[Vehicle], now: int | None = None) -> list[VehicleCheck]:
        """Check all vehicles concurrently, then prune old observations."""

        now = self._clock() if now is None else now
        results: list[VehicleCheck] = []
        workers = max(1, min(self.params.workers, len(vehicles) or 1))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(self.check_vehicle, v, now) for v in vehicles]
            for vehicle, fut in zip(vehicles, futures):
                try:
                    results.append(fut.result())
                except Exception:
                    logger.exception("checking vehicle %s failed", vehicle.id)
        self.gate.prune(now)
        return results

    def run_forever(
        self,
        vehicles: Sequence[Vehicle],
        stop_event: threading.Event,
        *,
        max_ticks: int | None = None,
        on_tick: Callable[[list[VehicleCheck]], None] | None = None,
    ) -> int:
        """Poll every ``poll_interval_minutes`` until ``stop_event`` is set.

        Returns:
            Number of completed ticks.
        """

        ticks = 0
        while not stop_event.is_set():
            results = self.run_once(vehicles)
            ticks += 1
            if on_tick is not None:
                on_tick(results)
            if max_ticks is not None and ticks >= max_ticks:
                break
            if stop_event.wait(self.params.poll_interval_minutes * 60.0):
                break
        return ticks


class SignalStatus(str, Enum):
    ACTIVE = "active"
    WEAK = "weak-signal"
    GONE = "possibly-gone"


WEAK_SIGNAL_MINUTES = 10
GONE_SIGNAL_MINUTES = 30
LONG_STAY_MINUTES = 120


@dataclass(frozen=True, slots=True)
class ActiveVisit:
    """A (vehicle, location) pair currently under observation."""

    stats: PairStatistics
    duration_minutes: int
    last_seen_minutes: int
    status: SignalStatus

    @property
    def long_stay(self) -> bool:
        return self.duration_minutes > LONG_STAY_MINUTES


def active_visits(stats: Sequence[PairStatistics], now: int) -> list[ActiveVisit]:
    """Classify gate statistics by signal freshness."""

    out: list[ActiveVisit] = []
    for st in stats:
        last_seen = round_minutes(now - st.last_seen)
        if last_seen > GONE_SIGNAL_MINUTES:
            status = SignalStatus.GONE
        elif last_seen > WEAK_SIGNAL_MINUTES:
            status = SignalStatus.WEAK
        else:
            status = SignalStatus.ACTIVE
        out.append(
            ActiveVisit(
                stats=st,
                duration_minutes=max(0, round_minutes(now - st.first_seen)),
                last_seen_minutes=max(0, last_seen),
                status=status,
            )
        )
    return out
