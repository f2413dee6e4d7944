"""Tests for the windowed movement analyzer and the live decision rules."""

from __future__ import annotations

import pytest

from dwell_track.models import BatteryTrend, MovementSnapshot, Sample
from dwell_track.movement import (
    DecisionParams,
    analyze_window,
    battery_trend,
    decide_visit,
    infer_engine_running,
)

from conftest import T0

# ── Battery trend ────────────────────────────────────────────────


class TestBatteryTrend:
    def test_decreasing(self):
        assert battery_trend([80, 81, 80, 70, 68, 69]) is BatteryTrend.DECREASING

    def test_too_few_readings(self):
        assert battery_trend([80, 80]) is BatteryTrend.UNKNOWN
        assert battery_trend([]) is BatteryTrend.UNKNOWN

    def test_increasing(self):
        assert battery_trend([50, 51, 50, 55, 56, 57]) is BatteryTrend.INCREASING

    def test_within_two_points_is_stable(self):
        assert battery_trend([80, 80, 80, 81, 82, 81]) is BatteryTrend.STABLE
        assert battery_trend([70, 70, 70]) is BatteryTrend.STABLE


# ── Window analysis ──────────────────────────────────────────────


class TestAnalyzeWindow:
    def test_empty_window(self):
        snap = analyze_window([])
        assert snap == MovementSnapshot()
        assert snap.battery_trend is BatteryTrend.UNKNOWN
        assert snap.sample_count == 0

    def test_parked_with_jitter(self, make_sample):
        samples = [
            make_sample(T0 + i * 60, north_m=(i % 2) * 4.0, speed=0.0, battery=80.0 - i * 2)
            for i in range(8)
        ]
        snap = analyze_window(samples, now=T0 + 7 * 60)
        assert not snap.movement_detected
        assert snap.stopped
        assert snap.total_movement_m == pytest.approx(28.0, abs=0.05)
        assert snap.stop_duration_minutes == 7
        assert snap.battery_trend is BatteryTrend.DECREASING
        assert snap.current_battery == pytest.approx(66.0)
        assert snap.sample_count == 8
        assert snap.average_speed == 0.0

    def test_driving(self, make_sample):
        samples = [make_sample(T0 + i * 30, north_m=i * 200.0, speed=24.0) for i in range(6)]
        snap = analyze_window(samples)
        assert snap.movement_detected
        assert not snap.stopped
        assert snap.total_movement_m == pytest.approx(1000.0, abs=0.05)
        assert snap.average_speed == 24.0
        assert snap.stop_duration_minutes == 0

    def test_arrived_after_driving(self, make_sample):
        samples = [make_sample(T0 + i * 60, north_m=i * 300.0, speed=40.0) for i in range(3)]
        samples += [make_sample(T0 + 180 + i * 60, north_m=600.0, speed=0.0) for i in range(5)]
        snap = analyze_window(samples, now=T0 + 420 + 60)
        # The path still contains the approach, so movement is detected.
        assert snap.movement_detected
        assert not snap.stopped
        assert snap.stop_duration_minutes == 5

    def test_no_fix_samples_are_ignored(self, make_sample):
        samples = [make_sample(T0 + i * 60) for i in range(4)]
        samples.insert(2, Sample("truck-1", T0 + 90, 0.0, 0.0, 0.0))
        snap = analyze_window(samples)
        assert snap.sample_count == 4
        assert snap.total_movement_m == 0.0

    def test_unknown_speeds_do_not_raise(self, make_sample):
        samples = [make_sample(T0 + i * 60, speed=None) for i in range(3)]
        snap = analyze_window(samples)
        assert snap.average_speed == 0.0
        assert snap.stop_duration_minutes == 0
        assert snap.stopped is False

    def test_unknown_speed_is_never_a_stop(self, make_sample):
        samples = [make_sample(T0 + i * 60, speed=None, battery=50.0 - i * 3) for i in range(5)]
        snap = analyze_window(samples, now=T0 + 600)
        assert not snap.movement_detected
        assert snap.stopped is False
        assert snap.stop_duration_minutes == 0
        assert snap.battery_trend is BatteryTrend.DECREASING
        # Draining battery alone does not imply the engine is off.
        assert infer_engine_running(snap) is None
        assert not decide_visit(snap, 0).should_create

    def test_unknown_latest_speed_after_a_stop(self, make_sample):
        samples = [make_sample(T0 + i * 60, speed=0.0) for i in range(4)]
        samples.append(make_sample(T0 + 240, speed=None))
        snap = analyze_window(samples, now=T0 + 240)
        assert snap.stopped is False
        assert snap.stop_duration_minutes == 0


# ── Engine heuristic and decision rules ─────────────────────────


class TestEngineHeuristic:
    def test_fast_average_means_running(self):
        assert infer_engine_running(MovementSnapshot(average_speed=12.0)) is True

    def test_charging_while_stopped(self):
        snap = MovementSnapshot(stopped=True, battery_trend=BatteryTrend.INCREASING, current_battery=70.0)
        assert infer_engine_running(snap) is True
        snap = MovementSnapshot(stopped=True, battery_trend=BatteryTrend.STABLE, current_battery=90.0)
        assert infer_engine_running(snap) is True

    def test_draining_low_battery_means_off(self):
        snap = MovementSnapshot(stopped=True, battery_trend=BatteryTrend.DECREASING, current_battery=55.0)
        assert infer_engine_running(snap) is False

    def test_no_guess(self):
        assert infer_engine_running(MovementSnapshot()) is None
        snap = MovementSnapshot(stopped=True, battery_trend=BatteryTrend.DECREASING, current_battery=75.0)
        assert infer_engine_running(snap) is None


class TestDecideVisit:
    def test_engine_off(self):
        snap = MovementSnapshot(stopped=True, battery_trend=BatteryTrend.DECREASING, current_battery=50.0)
        assert decide_visit(snap, 5).should_create
        assert not decide_visit(snap, 4).should_create

    def test_draining_battery(self):
        snap = MovementSnapshot(stopped=True, battery_trend=BatteryTrend.DECREASING, current_battery=75.0)
        decision = decide_visit(snap, 6)
        assert decision.should_create
        assert "draining" in decision.reason

    def test_long_stop(self):
        snap = MovementSnapshot(stopped=True, average_speed=0.2)
        assert not decide_visit(snap, 9).should_create
        assert decide_visit(snap, 10).should_create

    def test_movement_blocks_long_stop(self):
        snap = MovementSnapshot(movement_detected=True, average_speed=0.5)
        decision = decide_visit(snap, 30)
        assert not decision.should_create
        assert decision.reason.startswith("waiting")

    def test_custom_thresholds(self):
        snap = MovementSnapshot(stopped=True)
        params = DecisionParams(long_stop_minutes=3)
        assert decide_visit(snap, 3, params).should_create
