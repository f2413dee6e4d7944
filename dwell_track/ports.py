"""Interfaces of the external collaborators the workflows talk to."""

from __future__ import annotations

from typing import Protocol

from dwell_track.models import Location, Sample, Vehicle


class TelemetrySource(Protocol):
    """Provides position samples of a device."""

    def fetch_samples(self, device_id: str, start: int, end: int) -> list[Sample]:
        """All samples with start <= timestamp <= end, oldest first."""
        ...

    def fetch_recent_samples(self, device_id: str, n: int) -> list[Sample]:
        """The n most recent samples, newest first."""
        ...

    def fetch_last_minutes(self, device_id: str, minutes: int, now: int) -> list[Sample]:
        """Samples of the trailing ``minutes`` before ``now``, oldest first."""
        ...


class LocationDirectory(Protocol):
    """Known locations (customers, sites) searchable by proximity."""

    def nearby(self, lat: float, lon: float, radius_m: float) -> list[Location]:
        """Locations within radius_m, closest first, with distance_m filled in."""
        ...


class VisitSink(Protocol):
    """Destination of confirmed visits (a calendar, a CRM log...)."""

    def record_visit(self, vehicle: Vehicle, location: Location, start: int, end: int) -> str:
        """Persist a visit and return its sink id. Raises SinkError on failure."""
        ...

    def has_existing_visit(self, vehicle_id: str, location_id: str, start: int) -> bool: ...


class SinkError(RuntimeError):
    """The visit sink could not store a visit."""
