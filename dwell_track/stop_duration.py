"""How long has the vehicle been stopped right now (live mode)."""

from __future__ import annotations

import logging
from typing import Final, Sequence

from dwell_track.geo import haversine_m
from dwell_track.models import Sample
from dwell_track.motion import DWELL_CANDIDATE_KMH, STATIONARY_KMH, is_moving
from dwell_track.timeutils import round_minutes

logger = logging.getLogger(__name__)

DRIFT_TOLERANCE_M: Final[float] = 50.0
RECENT_WINDOW: Final[int] = 100


def estimate_stop_minutes(
    current_speed_kmh: float | None,
    now: int,
    recent: Sequence[Sample],
    *,
    drift_tolerance_m: float = DRIFT_TOLERANCE_M,
    window: int = RECENT_WINDOW,
) -> int:
    """Minutes the vehicle has been continuously stopped up to ``now``.

    The reference position is the newest valid sample, not a centroid. Walking
    from newest to oldest, every sample that is slower than 1 km/h and within
    ``drift_tolerance_m`` of the reference moves the stop start back to its
    timestamp; the first sample that moved or drifted too far ends the scan.
    Gaps between samples do not reset the scan.

    Args:
        current_speed_kmh: Speed of the current report (None if unknown).
        now: Current Unix time in seconds.
        recent: Most recent samples of the device, newest first.
        drift_tolerance_m: Radius absorbing GPS jitter while parked.
        window: Only the first ``window`` samples are considered.

    Returns:
        Whole minutes, 0 when moving, unknown or without usable samples.
    """

    moving = is_moving(current_speed_kmh, DWELL_CANDIDATE_KMH)
    if moving is None or moving:
        return 0

    candidates = [s for s in recent[:window] if s.has_fix]
    if not candidates:
        return 0

    ref = candidates[0]
    stop_start = now
    for sample in candidates:
        # Unknown speed counts as a violation.
        if is_moving(sample.speed_kmh, STATIONARY_KMH) is not False:
            break
        if haversine_m(ref.lat, ref.lon, sample.lat, sample.lon) > drift_tolerance_m:
            break
        stop_start = min(stop_start, sample.timestamp)

    minutes = max(0, round_minutes(now - stop_start))
    logger.debug("device %s stopped for %s min (scanned %s samples)", ref.device_id, minutes, len(candidates))
    return minutes
