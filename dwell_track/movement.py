"""Trailing-window movement analysis for live decisioning.

The analyzer looks at every sample of the last few minutes at once. Movement
is judged on the cumulative path length rather than point-to-point distance,
so GPS jitter around a parked vehicle does not read as constant
micro-movement. Battery trend and the engine heuristic built on it are
best-effort hints for the caller, never part of the dwell decision itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Final, Sequence

from dwell_track.geo import haversine_m
from dwell_track.models import BatteryTrend, MovementSnapshot, Sample
from dwell_track.timeutils import round_minutes

logger = logging.getLogger(__name__)

MOVEMENT_THRESHOLD_M: Final[float] = 50.0
STOPPED_KMH: Final[float] = 2.0
BATTERY_SWING_PCT: Final[float] = 2.0


def battery_trend(readings: Sequence[float]) -> BatteryTrend:
    """Compare the mean of the first three readings with the last three.

    Args:
        readings: Battery percentages, oldest first.
    """

    if len(readings) < 3:
        return BatteryTrend.UNKNOWN
    first_avg = sum(readings[:3]) / 3.0
    last_avg = sum(readings[-3:]) / 3.0
    if last_avg > first_avg + BATTERY_SWING_PCT:
        return BatteryTrend.INCREASING
    if last_avg < first_avg - BATTERY_SWING_PCT:
        return BatteryTrend.DECREASING
    return BatteryTrend.STABLE


def analyze_window(samples: Sequence[Sample], now: int | None = None) -> MovementSnapshot:
    """Summarize the samples of a trailing time window.

    Args:
        samples: Samples of one device, oldest first.
        now: Current Unix time; defaults to the latest sample time.

    Returns:
        MovementSnapshot; the all-zero snapshot for an empty window.
    """

    valid = [s for s in samples if s.has_fix]
    if not valid:
        return MovementSnapshot()

    total_m = 0.0
    for prev, cur in zip(valid, valid[1:]):
        total_m += haversine_m(prev.lat, prev.lon, cur.lat, cur.lon)

    latest = valid[-1]
    # Unknown latest speed is never "stopped".
    latest_stopped = latest.speed_kmh is not None and latest.speed_kmh < STOPPED_KMH
    movement = total_m > MOVEMENT_THRESHOLD_M
    stopped = (not movement) and latest_stopped

    speeds = [s.speed_kmh for s in valid if s.speed_kmh is not None]
    avg_speed = sum(speeds) / len(speeds) if speeds else 0.0
    batteries = [s.battery_pct for s in valid if s.battery_pct is not None]

    stop_minutes = 0
    if latest_stopped:
        stop_start = latest.timestamp
        for s in reversed(valid):
            if s.speed_kmh is None or s.speed_kmh >= STOPPED_KMH:
                break
            stop_start = s.timestamp
        ref_now = latest.timestamp if now is None else now
        stop_minutes = max(0, round_minutes(ref_now - stop_start))

    return MovementSnapshot(
        stopped=stopped,
        stop_duration_minutes=stop_minutes,
        movement_detected=movement,
        battery_trend=battery_trend(batteries),
        average_speed=round(avg_speed, 1),
        sample_count=len(valid),
        total_movement_m=round(total_m, 2),
        current_battery=latest.battery_pct,
    )


def infer_engine_running(snapshot: MovementSnapshot) -> bool | None:
    """Guess whether the engine is running from speed and battery behaviour.

    A charging battery (rising, or above 85 %) while stopped suggests the
    engine runs; a draining battery below 60 % suggests it is off.

    Returns:
        True/False, or None when the data does not support a guess.
    """

    if snapshot.average_speed > 5.0:
        return True
    if not snapshot.stopped or snapshot.current_battery is None:
        return None
    if snapshot.battery_trend is BatteryTrend.INCREASING or snapshot.current_battery > 85.0:
        return True
    if snapshot.battery_trend is BatteryTrend.DECREASING and snapshot.current_battery < 60.0:
        return False
    return None


@dataclass(frozen=True, slots=True)
class DecisionParams:
    """Thresholds of the per-poll "create visit now?" rules."""

    engine_off_minutes: int = 5
    draining_minutes: int = 5
    long_stop_minutes: int = 10
    long_stop_max_speed_kmh: float = 1.0


@dataclass(frozen=True, slots=True)
class VisitDecision:
    should_create: bool
    reason: str


def decide_visit(
    snapshot: MovementSnapshot,
    stop_minutes: int,
    params: DecisionParams = DecisionParams(),
) -> VisitDecision:
    """Apply the live visit rules to one poll's movement data.

    Rules, first match wins:
      1. engine inferred off and stopped for ``engine_off_minutes``;
      2. no movement, stopped for ``draining_minutes`` and battery decreasing;
      3. no movement, stopped for ``long_stop_minutes`` and average speed
         below ``long_stop_max_speed_kmh``.
    """

    engine = infer_engine_running(snapshot)
    if engine is False and stop_minutes >= params.engine_off_minutes:
        return VisitDecision(True, f"engine off for {stop_minutes} min (battery {snapshot.battery_trend.value})")
    if (
        not snapshot.movement_detected
        and stop_minutes >= params.draining_minutes
        and snapshot.battery_trend is BatteryTrend.DECREASING
    ):
        return VisitDecision(True, f"stopped {stop_minutes} min, battery draining")
    if (
        not snapshot.movement_detected
        and stop_minutes >= params.long_stop_minutes
        and snapshot.average_speed < params.long_stop_max_speed_kmh
    ):
        return VisitDecision(True, f"stopped {stop_minutes} min without movement")

    engine_text = "unknown" if engine is None else ("on" if engine else "off")
    return VisitDecision(
        False,
        f"waiting ({stop_minutes} min stopped, engine {engine_text}, "
        f"movement {'yes' if snapshot.movement_detected else 'no'}, {snapshot.sample_count} samples)",
    )
