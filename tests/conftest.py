"""Shared test fixtures: coordinate helpers, sample factory, in-memory gate store."""

from __future__ import annotations

import math
from collections.abc import Callable

import pytest

from dwell_track.gate import GateParams, VisitConfirmationGate
from dwell_track.models import Sample
from dwell_track.store import SqliteGateStore

BASE_LAT = 52.52
BASE_LON = 13.405
# Meters per degree of latitude for the haversine Earth radius used in geo.py.
M_PER_DEG = 6_371_000.0 * math.pi / 180.0

T0 = 1_755_244_800  # 2025-08-15 10:00 Europe/Berlin


def offset(north_m: float = 0.0, east_m: float = 0.0) -> tuple[float, float]:
    """Coordinates ``north_m``/``east_m`` meters away from the base point."""
    lat = BASE_LAT + north_m / M_PER_DEG
    lon = BASE_LON + east_m / (M_PER_DEG * math.cos(math.radians(BASE_LAT)))
    return lat, lon


@pytest.fixture()
def at() -> Callable[..., tuple[float, float]]:
    return offset


@pytest.fixture()
def make_sample() -> Callable[..., Sample]:
    """Factory: make_sample(t, north_m=0, east_m=0, speed=0.0, battery=None, device="truck-1")."""

    def _make(
        t: int,
        north_m: float = 0.0,
        east_m: float = 0.0,
        speed: float | None = 0.0,
        battery: float | None = None,
        device: str = "truck-1",
    ) -> Sample:
        lat, lon = offset(north_m, east_m)
        return Sample(device_id=device, timestamp=t, lat=lat, lon=lon, speed_kmh=speed, battery_pct=battery)

    return _make


@pytest.fixture()
def store():
    """A fresh in-memory gate store for each test."""
    s = SqliteGateStore(":memory:")
    yield s
    s.close()


@pytest.fixture()
def gate(store: SqliteGateStore) -> VisitConfirmationGate:
    return VisitConfirmationGate(store, GateParams(minimum_visit_minutes=10))
