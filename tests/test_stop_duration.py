"""Tests for the live stop-duration estimator."""

from __future__ import annotations

from dwell_track.models import Sample
from dwell_track.stop_duration import estimate_stop_minutes
from dwell_track.timeutils import round_minutes

from conftest import T0, offset

# 20 samples spanning exactly 12 minutes, oldest at T0 - 720.
TIMES = [T0 - int(i * 720 / 19) for i in range(20)]


def _parked(times=TIMES, speed=0.0) -> list[Sample]:
    """Newest first, jittering up to 15 m around the base point."""
    out = []
    for i, t in enumerate(times):
        lat, lon = offset(north_m=(i % 3) * 5.0, east_m=-(i % 2) * 7.0)
        out.append(Sample("truck-1", t, lat, lon, speed))
    return out


class TestEstimateStopMinutes:
    def test_parked_for_twelve_minutes(self):
        assert estimate_stop_minutes(0.0, T0, _parked()) == 12

    def test_intrusion_cuts_the_scan(self):
        recent = _parked()
        # A moving sample between index 9 and 10 (newest first).
        intruder_t = (TIMES[9] + TIMES[10]) // 2
        recent.insert(10, Sample("truck-1", intruder_t, *offset(), 6.0))
        expected = round_minutes(T0 - TIMES[9])
        assert estimate_stop_minutes(0.0, T0, recent) == expected
        assert expected == 6

    def test_fast_path_when_moving(self):
        assert estimate_stop_minutes(5.0, T0, _parked()) == 0
        assert estimate_stop_minutes(42.0, T0, _parked()) == 0

    def test_unknown_current_speed(self):
        assert estimate_stop_minutes(None, T0, _parked()) == 0

    def test_empty_and_invalid_windows(self):
        assert estimate_stop_minutes(0.0, T0, []) == 0
        no_fix = [Sample("truck-1", t, 0.0, 0.0, 0.0) for t in TIMES]
        assert estimate_stop_minutes(0.0, T0, no_fix) == 0

    def test_invalid_fixes_are_skipped(self):
        recent = _parked()
        recent.insert(5, Sample("truck-1", (TIMES[4] + TIMES[5]) // 2, 0.0, 0.0, 0.0))
        assert estimate_stop_minutes(0.0, T0, recent) == 12

    def test_drift_beyond_tolerance_ends_the_scan(self):
        recent = _parked()
        recent[8] = Sample("truck-1", TIMES[8], *offset(north_m=80.0), 0.0)
        assert estimate_stop_minutes(0.0, T0, recent) == round_minutes(T0 - TIMES[7])

    def test_slow_crawl_counts_as_movement(self):
        recent = _parked()
        recent[4] = Sample("truck-1", TIMES[4], *offset(), 1.0)
        assert estimate_stop_minutes(0.0, T0, recent) == round_minutes(T0 - TIMES[3])

    def test_unknown_sample_speed_ends_the_scan(self):
        recent = _parked()
        recent[3] = Sample("truck-1", TIMES[3], *offset(), None)
        assert estimate_stop_minutes(0.0, T0, recent) == round_minutes(T0 - TIMES[2])

    def test_gaps_do_not_reset(self):
        times = [T0, T0 - 60, T0 - 3 * 3600]
        assert estimate_stop_minutes(0.0, T0, _parked(times)) == 180

    def test_anchored_to_now(self):
        # Last report two minutes ago, so the stop is two minutes longer.
        assert estimate_stop_minutes(0.0, T0 + 120, _parked()) == 14

    def test_window_bound(self):
        assert estimate_stop_minutes(0.0, T0, _parked(), window=10) == round_minutes(T0 - TIMES[9])

    def test_never_negative(self):
        future = [Sample("truck-1", T0 + 600, *offset(), 0.0)]
        assert estimate_stop_minutes(0.0, T0, future) == 0
