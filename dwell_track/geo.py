"""Geospatial utilities (no external dependencies)."""

from __future__ import annotations

import math
from typing import Iterable, Sequence

from dwell_track.models import BlindSpot


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute Haversine distance in meters between two lat/lon points.

    Args:
        lat1: Latitude 1 in degrees.
        lon1: Longitude 1 in degrees.
        lat2: Latitude 2 in degrees.
        lon2: Longitude 2 in degrees.

    Returns:
        Distance in meters.
    """

    r = 6_371_000.0  # mean Earth radius in meters
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return r * c


def is_inside_circle(
    lat: float,
    lon: float,
    center_lat: float,
    center_lon: float,
    radius_m: float,
) -> bool:
    """Check whether a point is inside or on the boundary of a circle."""

    return haversine_m(lat, lon, center_lat, center_lon) <= radius_m


def is_valid_fix(lat: float, lon: float) -> bool:
    """Reject the (0, 0) "no fix" sentinel some trackers emit."""

    return not (lat == 0.0 and lon == 0.0)


class RunningCentroid:
    """Incrementally updated arithmetic mean of lat/lon pairs."""

    __slots__ = ("count", "lat", "lon")

    def __init__(self, lat: float, lon: float) -> None:
        self.count = 1
        self.lat = lat
        self.lon = lon

    def add(self, lat: float, lon: float) -> None:
        self.count += 1
        self.lat += (lat - self.lat) / self.count
        self.lon += (lon - self.lon) / self.count

    def distance_m(self, lat: float, lon: float) -> float:
        return haversine_m(self.lat, self.lon, lat, lon)


def mean_centroid(coords: Sequence[tuple[float, float]]) -> tuple[float, float]:
    """Unweighted mean of (lat, lon) pairs.

    Raises:
        ValueError: If coords is empty.
    """

    if not coords:
        raise ValueError("cannot compute the centroid of zero points")
    n = float(len(coords))
    return sum(c[0] for c in coords) / n, sum(c[1] for c in coords) / n


def time_weighted_centroid(
    coords: Sequence[tuple[float, float]],
    timestamps: Sequence[int],
) -> tuple[float, float]:
    """Mean of (lat, lon) pairs weighted by the time each position was held.

    Each point is weighted by the seconds until the next point; the last point
    gets the median of the other weights so a final sample is not ignored.
    Falls back to the unweighted mean when all weights are zero.
    """

    if len(coords) != len(timestamps):
        raise ValueError("coords and timestamps must have the same length")
    if len(coords) < 2:
        return mean_centroid(coords)

    weights = [float(max(0, timestamps[i + 1] - timestamps[i])) for i in range(len(coords) - 1)]
    ordered = sorted(weights)
    n = len(ordered)
    median = ordered[n // 2] if n % 2 == 1 else 0.5 * (ordered[n // 2 - 1] + ordered[n // 2])
    weights.append(median)

    total = sum(weights)
    if total <= 0:
        return mean_centroid(coords)
    lat = sum(c[0] * w for c, w in zip(coords, weights)) / total
    lon = sum(c[1] * w for c, w in zip(coords, weights)) / total
    return lat, lon


def find_blind_spot(lat: float, lon: float, blind_spots: Iterable[BlindSpot]) -> BlindSpot | None:
    """Return the first blind spot containing the point, if any."""

    for spot in blind_spots:
        if is_inside_circle(lat, lon, spot.lat, spot.lon, spot.radius_m):
            return spot
    return None
