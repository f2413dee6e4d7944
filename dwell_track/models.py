"""Data models for samples, dwell episodes and live visit tracking."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final


@dataclass(frozen=True, slots=True)
class Sample:
    """A single position report from a tracking device.

    Attributes:
        device_id: Tracker/device identifier.
        timestamp: Unix epoch seconds.
        lat: Latitude in decimal degrees. 0.0 together with lon 0.0 means "no fix".
        lon: Longitude in decimal degrees.
        speed_kmh: Speed in km/h, or None when the device did not report one.
        battery_pct: Battery level in percent, if reported.
    """

    device_id: str
    timestamp: int
    lat: float
    lon: float
    speed_kmh: float | None
    battery_pct: float | None = None

    @property
    def has_fix(self) -> bool:
        """False for the (0, 0) "no fix" sentinel."""

        return not (self.lat == 0.0 and self.lon == 0.0)


@dataclass(frozen=True, slots=True)
class DwellEpisode:
    """A contiguous interval during which a device stayed at one place.

    Note:
        The centroid is the plain mean of member coordinates unless the
        time-weighted centroid mode was selected; denser sampling during part
        of a stay pulls a sample-weighted centroid toward that part.
    """

    device_id: str
    start_time: int
    end_time: int
    centroid_lat: float
    centroid_lon: float
    sample_count: int
    duration_minutes: int
    detection_method: str


@dataclass(frozen=True, slots=True)
class Vehicle:
    """A tracked vehicle."""

    id: str
    name: str


@dataclass(frozen=True, slots=True)
class Location:
    """A known location returned by a location directory lookup."""

    id: str
    name: str
    lat: float
    lon: float
    distance_m: float = 0.0


@dataclass(frozen=True, slots=True)
class BlindSpot:
    """A circle inside which dwelling is never reported (depot, home yard...)."""

    name: str
    lat: float
    lon: float
    radius_m: float


@dataclass(frozen=True, slots=True)
class Observation:
    """One poll's record of a vehicle near its nearest known location."""

    vehicle_id: str
    vehicle_name: str
    location_id: str
    location_name: str
    vehicle_lat: float
    vehicle_lon: float
    location_lat: float
    location_lon: float
    distance_m: float
    observed_at: int


@dataclass(frozen=True, slots=True)
class ConfirmedVisit:
    """A live visit that crossed the minimum duration threshold."""

    vehicle_id: str
    location_id: str
    start_time: int
    end_time: int | None
    duration_minutes: int
    side_effect_created: bool
    side_effect_id: str | None = None

    @property
    def ongoing(self) -> bool:
        return self.end_time is None


class BatteryTrend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"
    UNKNOWN = "unknown"


class GateState(str, Enum):
    """Lifecycle of a (vehicle, location) pair in the confirmation gate."""

    NO_VISIT = "no-visit"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ENDED = "ended"


@dataclass(frozen=True, slots=True)
class MovementSnapshot:
    """Aggregate view of the trailing sample window."""

    stopped: bool = False
    stop_duration_minutes: int = 0
    movement_detected: bool = False
    battery_trend: BatteryTrend = BatteryTrend.UNKNOWN
    average_speed: float = 0.0
    sample_count: int = 0
    total_movement_m: float = 0.0
    current_battery: float | None = None


DEFAULT_TZ: Final[str] = "Europe/Berlin"
