"""Moving/stopped classification by speed."""

from __future__ import annotations

from typing import Final

# Below this the vehicle is effectively stationary (fine-grained stop detection).
STATIONARY_KMH: Final[float] = 1.0
# At or above this a sample is not a dwell candidate.
DWELL_CANDIDATE_KMH: Final[float] = 5.0


def is_moving(speed_kmh: float | None, threshold: float) -> bool | None:
    """Classify a speed reading against a threshold.

    Args:
        speed_kmh: Reported speed, or None if the device did not report one.
        threshold: Speeds at or above this count as moving.

    Returns:
        True/False, or None when the speed is unknown. Callers decide how to
        treat unknown speed; the engine always treats it conservatively.
    """

    if speed_kmh is None:
        return None
    return speed_kmh >= threshold
