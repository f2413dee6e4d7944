"""Tests for the historical replay workflow."""

from __future__ import annotations

import pytest

from dwell_track.csv_io import CsvLocationDirectory, CsvTelemetrySource, CsvVisitSink
from dwell_track.history import ReplayOutcome, ReplayParams, replay, replay_vehicle
from dwell_track.models import BlindSpot, Location, Sample, Vehicle
from dwell_track.ports import SinkError
from dwell_track.segmenter import LinearSegmenter

from conftest import T0, offset

TZ = "Europe/Berlin"
VEHICLE = Vehicle("truck-1", "Sprinter 1")
CUSTOMER = Location("C-1001", "Baeckerei Schulz", *offset(north_m=40.0))
OTHER = Location("C-1002", "Autohaus Meier", *offset(north_m=250.0))


def _stay(start: int, north_m: float, n: int = 8, device: str = "truck-1") -> list[Sample]:
    lat, lon = offset(north_m=north_m)
    return [Sample(device, start + i * 60, lat, lon, 0.0) for i in range(n)]


def _drive(start: int, north_from: float, north_to: float, device: str = "truck-1") -> list[Sample]:
    out = []
    for i in range(1, 4):
        lat, lon = offset(north_m=north_from + (north_to - north_from) * i / 4)
        out.append(Sample(device, start + i * 60, lat, lon, 45.0))
    return out


@pytest.fixture()
def day() -> list[Sample]:
    """Customer stop, drive, stop in the depot, drive, stop in the middle of nowhere."""
    samples = _stay(T0, 0.0)
    samples += _drive(T0 + 420, 0.0, 5000.0)
    samples += _stay(T0 + 1200, 5000.0)
    samples += _drive(T0 + 1620, 5000.0, 20000.0)
    samples += _stay(T0 + 2400, 20000.0)
    return samples


class _MemorySink:
    def __init__(self, existing: set[tuple[str, str, int]] = frozenset(), fail: bool = False) -> None:
        self.existing = set(existing)
        self.fail = fail
        self.recorded: list[tuple[str, str, int, int]] = []

    def has_existing_visit(self, vehicle_id, location_id, start):
        return (vehicle_id, location_id, start) in self.existing

    def record_visit(self, vehicle, location, start, end):
        if self.fail:
            raise SinkError("calendar unavailable")
        self.recorded.append((vehicle.id, location.id, start, end))
        return f"{vehicle.id}-{location.id}-{start}"


def _run(day, sink, params=ReplayParams(), blind_spots=()):
    return replay(
        [VEHICLE],
        T0 - 3600,
        T0 + 86400,
        source=CsvTelemetrySource(day),
        directory=CsvLocationDirectory([CUSTOMER, OTHER]),
        sink=sink,
        segmenter=LinearSegmenter(),
        blind_spots=blind_spots,
        params=params,
    )


class TestReplay:
    def test_attributes_episodes(self, day):
        sink = _MemorySink()
        depot = BlindSpot("Depot", *offset(north_m=5000.0), radius_m=200.0)
        report = _run(day, sink, blind_spots=[depot])
        assert report.vehicles == 1
        assert report.episodes_found == 3
        outcomes = [item.outcome for item in report.items]
        assert outcomes == [ReplayOutcome.RECORDED, ReplayOutcome.BLIND_SPOT, ReplayOutcome.NO_LOCATION]
        assert report.recorded == 1
        assert sink.recorded == [("truck-1", "C-1001", T0, T0 + 420)]
        assert report.items[0].location.id == "C-1001"
        assert report.items[1].blind_spot == depot

    def test_closest_location_wins(self, day):
        sink = _MemorySink()
        report = _run(day, sink)
        assert report.items[0].location.id == "C-1001"
        assert report.items[0].location.distance_m == pytest.approx(40.0, abs=0.1)

    def test_without_blind_spots_the_depot_stop_is_unattributed(self, day):
        report = _run(day, _MemorySink())
        assert report.items[1].outcome is ReplayOutcome.NO_LOCATION

    def test_existing_visits_are_skipped(self, day):
        sink = _MemorySink(existing={("truck-1", "C-1001", T0)})
        report = _run(day, sink)
        assert report.items[0].outcome is ReplayOutcome.EXISTING
        assert sink.recorded == []

    def test_force_update(self, day):
        sink = _MemorySink(existing={("truck-1", "C-1001", T0)})
        report = _run(day, sink, params=ReplayParams(force_update=True))
        assert report.items[0].outcome is ReplayOutcome.UPDATED
        assert report.recorded == 1
        assert len(sink.recorded) == 1

    def test_dry_run_writes_nothing(self, day):
        sink = _MemorySink(fail=True)
        report = _run(day, sink, params=ReplayParams(dry_run=True))
        assert report.items[0].outcome is ReplayOutcome.DRY_RUN
        assert report.recorded == 0

    def test_sink_failure_aborts(self, day):
        with pytest.raises(SinkError):
            _run(day, _MemorySink(fail=True))

    def test_rerun_is_idempotent_at_the_sink(self, day, tmp_path):
        sink = CsvVisitSink(tmp_path / "visits.csv", TZ)
        first = _run(day, sink)
        second = _run(day, CsvVisitSink(tmp_path / "visits.csv", TZ))
        assert first.recorded == 1
        assert second.recorded == 0
        assert second.count(ReplayOutcome.EXISTING) == 1

    def test_range_is_respected(self, day):
        sink = _MemorySink()
        report = replay_vehicle(
            VEHICLE,
            T0 + 1000,
            T0 + 86400,
            source=CsvTelemetrySource(day),
            directory=CsvLocationDirectory([CUSTOMER]),
            sink=sink,
            segmenter=LinearSegmenter(),
        )
        assert report.episodes_found == 2
        assert sink.recorded == []

    def test_several_vehicles(self, day):
        other = _stay(T0, 250.0, device="truck-2")
        items = []
        report = replay(
            [VEHICLE, Vehicle("truck-2", "Caddy")],
            T0,
            T0 + 86400,
            source=CsvTelemetrySource(day + other),
            directory=CsvLocationDirectory([CUSTOMER, OTHER]),
            sink=_MemorySink(),
            segmenter=LinearSegmenter(),
            on_item=items.append,
        )
        assert report.vehicles == 2
        assert len(items) == report.episodes_found == 4
        assert items[-1].vehicle.id == "truck-2"
        assert items[-1].location.id == "C-1002"

    def test_inverted_range(self):
        with pytest.raises(ValueError):
            replay(
                [VEHICLE],
                T0,
                T0 - 1,
                source=CsvTelemetrySource([]),
                directory=CsvLocationDirectory([]),
                sink=_MemorySink(),
                segmenter=LinearSegmenter(),
            )
