"""Tests for the visit confirmation gate and its SQLite store."""

from __future__ import annotations

import threading

import pytest

from dwell_track.gate import GateParams, VisitConfirmationGate
from dwell_track.models import GateState, Location, Observation, Vehicle
from dwell_track.store import GateStoreError, SqliteGateStore

from conftest import T0, offset

V1 = Vehicle("V1", "Sprinter 1")
L1 = Location("L1", "Baeckerei Schulz", *offset(), distance_m=12.0)
L2 = Location("L2", "Autohaus Meier", *offset(north_m=300.0), distance_m=40.0)


def _m(minutes: float) -> int:
    return T0 + int(minutes * 60)


def _obs(vehicle_id: str, location_id: str, at: int, distance: float = 10.0) -> Observation:
    lat, lon = offset()
    return Observation(vehicle_id, vehicle_id, location_id, location_id, lat, lon, lat, lon, distance, at)


# ── Store ────────────────────────────────────────────────────────


class TestSqliteGateStore:
    def test_earliest_observation_respects_since(self, store):
        for t in (T0, T0 + 60, T0 + 120):
            store.add_observation(_obs("V1", "L1", t))
        store.add_observation(_obs("V1", "L2", T0 - 600))
        assert store.earliest_observation("V1", "L1", T0 - 3600) == T0
        assert store.earliest_observation("V1", "L1", T0 + 30) == T0 + 60
        assert store.earliest_observation("V1", "L1", T0 + 500) is None
        assert store.earliest_observation("V9", "L1", 0) is None

    def test_prune_by_age_and_cap(self, store):
        for i in range(10):
            store.add_observation(_obs("V1", "L1", T0 + i * 60))
        assert store.prune_observations(older_than=T0 + 120, max_rows=1000) == 2
        assert store.count_observations() == 8
        assert store.prune_observations(older_than=0, max_rows=5) == 3
        assert store.count_observations() == 5
        # The newest rows survive.
        assert store.earliest_observation("V1", "L1", 0) == T0 + 5 * 60

    def test_pair_statistics(self, store):
        store.add_observation(_obs("V1", "L1", T0, distance=10.0))
        store.add_observation(_obs("V1", "L1", T0 + 300, distance=30.0))
        store.add_observation(_obs("V2", "L1", T0 + 60, distance=5.0))
        store.add_observation(_obs("V1", "L1", T0 - 9000, distance=500.0))
        stats = store.pair_statistics(since=T0 - 60)
        assert [(s.vehicle_id, s.location_id) for s in stats] == [("V1", "L1"), ("V2", "L1")]
        v1 = stats[0]
        assert v1.first_seen == T0
        assert v1.last_seen == T0 + 300
        assert v1.observation_count == 2
        assert v1.avg_distance_m == pytest.approx(20.0)

    def test_confirmed_visit_lifecycle(self, store):
        assert store.open_visit("V1", "L1") is None
        v = store.upsert_confirmed("V1", "L1", T0, 5, "dwell-V1-L1")
        assert v.ongoing
        assert v.side_effect_created
        again = store.upsert_confirmed("V1", "L1", T0 + 60, 7, "dwell-V1-L1-b")
        assert again.start_time == T0
        assert again.duration_minutes == 7
        assert again.side_effect_id == "dwell-V1-L1-b"
        assert len(store.open_visits("V1")) == 1

        closed = store.close_visit("V1", "L1", T0 + 25 * 60)
        assert closed is not None
        assert not closed.ongoing
        assert closed.end_time == T0 + 25 * 60
        assert closed.duration_minutes == 25
        assert store.close_visit("V1", "L1", T0 + 30 * 60) is None
        assert store.open_visits("V1") == []

    def test_recent_confirmed_window(self, store):
        store.upsert_confirmed("V1", "L1", T0, 5, "x")
        assert store.recent_confirmed("V1", "L1", since=T0 - 10) is not None
        assert store.recent_confirmed("V1", "L1", since=T0 + 10) is None
        assert store.recent_confirmed("V1", "L2", since=0) is None

    def test_unopenable_database(self, tmp_path):
        with pytest.raises(GateStoreError):
            SqliteGateStore(tmp_path / "missing" / "gate.sqlite")

    def test_file_database_persists(self, tmp_path):
        path = tmp_path / "gate.sqlite"
        s1 = SqliteGateStore(path)
        s1.add_observation(_obs("V1", "L1", T0))
        s1.close()
        s2 = SqliteGateStore(path)
        assert s2.count_observations() == 1
        s2.close()


# ── Gate ─────────────────────────────────────────────────────────


class TestVisitConfirmationGate:
    def test_pending_then_confirmed(self, gate):
        d0 = gate.observe(V1, L1, L1.lat, L1.lon, _m(0))
        d5 = gate.observe(V1, L1, L1.lat, L1.lon, _m(5))
        d10 = gate.observe(V1, L1, L1.lat, L1.lon, _m(10))
        assert (d0.state, d0.duration_minutes, d0.should_fire) == (GateState.PENDING, 0, False)
        assert (d5.state, d5.duration_minutes, d5.should_fire) == (GateState.PENDING, 5, False)
        assert (d10.state, d10.duration_minutes, d10.should_fire) == (GateState.CONFIRMED, 10, True)
        assert d10.start_time == _m(0)

        assert gate.confirm("V1", "L1", "dwell-V1-L1-20250815-1000", _m(10)) is True
        d15 = gate.observe(V1, L1, L1.lat, L1.lon, _m(15))
        assert d15.state is GateState.CONFIRMED
        assert d15.already_confirmed
        assert not d15.should_fire
        assert d15.duration_minutes == 15

    def test_second_confirmation_is_a_noop(self, gate, store):
        gate.observe(V1, L1, L1.lat, L1.lon, _m(0))
        gate.observe(V1, L1, L1.lat, L1.lon, _m(10))
        assert gate.confirm("V1", "L1", "first", _m(10)) is True
        assert gate.confirm("V1", "L1", "second", _m(12)) is False
        visit = store.open_visit("V1", "L1")
        assert visit is not None
        assert visit.side_effect_id == "first"
        assert gate.is_confirmed("V1", "L1", _m(20))

    def test_confirmation_expires_after_window(self, gate):
        gate.observe(V1, L1, L1.lat, L1.lon, _m(0))
        gate.confirm("V1", "L1", "first", _m(10))
        assert gate.is_confirmed("V1", "L1", _m(23 * 60))
        assert not gate.is_confirmed("V1", "L1", _m(24 * 60 + 1))

    def test_observations_outside_lookback_do_not_count(self, gate):
        gate.observe(V1, L1, L1.lat, L1.lon, _m(0))
        d = gate.observe(V1, L1, L1.lat, L1.lon, _m(130))
        assert d.duration_minutes == 0
        assert d.state is GateState.PENDING

    def test_pairs_are_independent(self, gate):
        gate.observe(V1, L1, L1.lat, L1.lon, _m(0))
        d = gate.observe(V1, L2, L2.lat, L2.lon, _m(20))
        assert d.duration_minutes == 0
        assert gate.observe(V1, L1, L1.lat, L1.lon, _m(20)).should_fire

    def test_end_departed(self, gate):
        gate.observe(V1, L1, L1.lat, L1.lon, _m(0))
        gate.observe(V1, L1, L1.lat, L1.lon, _m(10))
        gate.confirm("V1", "L1", "first", _m(10))

        assert gate.end_departed("V1", {"L1"}, _m(20)) == []
        ended = gate.end_departed("V1", set(), _m(31))
        assert len(ended) == 1
        assert ended[0].location_id == "L1"
        assert ended[0].end_time == _m(31)
        assert ended[0].duration_minutes == 31
        assert gate.end_departed("V1", set(), _m(40)) == []

    def test_pair_state_lifecycle(self, gate):
        assert gate.pair_state("V1", "L1", _m(0)) is GateState.NO_VISIT
        gate.observe(V1, L1, L1.lat, L1.lon, _m(0))
        assert gate.pair_state("V1", "L1", _m(5)) is GateState.PENDING
        # Past the minimum, side effect not yet created.
        assert gate.pair_state("V1", "L1", _m(10)) is GateState.CONFIRMED

        gate.confirm("V1", "L1", "first", _m(10))
        assert gate.pair_state("V1", "L1", _m(20)) is GateState.CONFIRMED
        gate.end_departed("V1", set(), _m(31))
        assert gate.pair_state("V1", "L1", _m(40)) is GateState.ENDED
        assert gate.pair_state("V1", "L1", _m(24 * 60 + 20)) is GateState.NO_VISIT
        assert gate.pair_state("V1", "L2", _m(40)) is GateState.NO_VISIT

    def test_prune(self, store):
        gate = VisitConfirmationGate(store, GateParams(max_observations=3))
        for i in range(5):
            gate.observe(V1, L1, L1.lat, L1.lon, _m(i))
        assert gate.prune(_m(5)) == 2
        assert store.count_observations() == 3
        assert gate.prune(_m(25 * 60)) == 3

    def test_statistics(self, gate):
        gate.observe(V1, L1, L1.lat, L1.lon, _m(0))
        gate.observe(V1, L1, L1.lat, L1.lon, _m(15))
        (stats,) = gate.statistics(_m(20))
        assert stats.vehicle_name == "Sprinter 1"
        assert stats.location_name == "Baeckerei Schulz"
        assert stats.observation_count == 2
        assert stats.avg_distance_m == pytest.approx(12.0)

    def test_concurrent_confirmation_fires_once(self, gate, store):
        gate.observe(V1, L1, L1.lat, L1.lon, _m(0))
        results: list[bool] = []
        lock = threading.Lock()

        def worker(n: int) -> None:
            gate.observe(V1, L1, L1.lat, L1.lon, _m(10))
            ok = gate.confirm("V1", "L1", f"sink-{n}", _m(10))
            with lock:
                results.append(ok)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1
        assert store.count_observations() == 9
        assert len(store.open_visits("V1")) == 1


class _BrokenStore:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise GateStoreError("disk I/O error")

        return fail


class TestGateDegradation:
    def test_observe_reports_unknown_duration(self):
        gate = VisitConfirmationGate(_BrokenStore())
        d = gate.observe(V1, L1, L1.lat, L1.lon, _m(0))
        assert d.duration_minutes is None
        assert not d.should_fire
        assert not d.already_confirmed

    def test_other_operations_degrade(self):
        gate = VisitConfirmationGate(_BrokenStore())
        assert gate.confirm("V1", "L1", "x", _m(0)) is False
        assert gate.end_departed("V1", set(), _m(0)) == []
        assert gate.prune(_m(0)) == 0
        assert not gate.is_confirmed("V1", "L1", _m(0))

    def test_pair_state_propagates_store_errors(self):
        gate = VisitConfirmationGate(_BrokenStore())
        with pytest.raises(GateStoreError):
            gate.pair_state("V1", "L1", _m(0))
