from __future__ import annotations

import csv
import io
from datetime import date, datetime, time, timedelta
from pathlib import Path

import streamlit as st

from dwell_track.csv_io import load_samples
from dwell_track.models import DEFAULT_TZ, DwellEpisode, Sample
from dwell_track.segmenter import CentroidMode, SegmentParams, build_segmenter
from dwell_track.timeutils import day_range_epoch_s, dt_from_epoch_s, format_hhmmss, tzinfo_from_name


def _overlap_seconds(episode: DwellEpisode, start_s: int, end_s_exclusive: int) -> float:
    lo = max(episode.start_time, start_s)
    hi = min(episode.end_time, end_s_exclusive)
    return float(max(0, hi - lo))


def _day_ranges(start_d: date, end_d: date, tz_name: str) -> list[tuple[date, int, int]]:
    """Return list of (day, start_s, end_s) for each day in range in tz."""

    tz = tzinfo_from_name(tz_name)
    days: list[tuple[date, int, int]] = []
    cur = start_d
    while cur <= end_d:
        sdt = datetime.combine(cur, time.min).replace(tzinfo=tz)
        edt = datetime.combine(cur + timedelta(days=1), time.min).replace(tzinfo=tz)
        days.append((cur, int(sdt.timestamp()), int(edt.timestamp())))
        cur = cur + timedelta(days=1)
    return days


@st.cache_data(show_spinner=False)
def _load_samples(samples_csv: str, mtime: float) -> list[Sample]:
    _ = mtime  # part of cache key so updated files reload automatically
    samples, _summary = load_samples(samples_csv)
    return samples


def _episodes_csv(rows: list[dict[str, object]]) -> str:
    buf = io.StringIO()
    if rows:
        w = csv.DictWriter(buf, fieldnames=list(rows[0].keys()))
        w.writeheader()
        w.writerows(rows)
    return buf.getvalue()


def main() -> None:
    st.set_page_config(page_title="Dwell episodes", layout="wide")
    st.title("Dwell episodes per vehicle and date range")

    with st.sidebar:
        st.subheader("Data and timezone")
        tz_name = st.text_input("Timezone (IANA)", value=DEFAULT_TZ)
        samples_csv = st.text_input("Samples CSV path", value="samples.csv")

        st.subheader("Segmentation")
        method = st.selectbox("Method", options=["linear", "cluster"], index=0)
        min_minutes = st.number_input("Minimum dwell (minutes)", value=2.0, step=1.0)
        stay_radius_m = st.number_input("Stay radius (m)", value=75.0, step=5.0)

        with st.expander("Advanced parameters", expanded=False):
            max_gap_minutes = st.number_input("Max gap between samples (minutes)", value=60.0, step=5.0)
            moving_kmh = st.number_input("Moving threshold (km/h)", value=5.0, step=0.5)
            min_samples = st.number_input("Minimum samples per episode", value=3, step=1, min_value=1)
            centroid = st.selectbox("Centroid", options=[m.value for m in CentroidMode], index=0)
            merge_radius_m = st.number_input("cluster: merge radius (m)", value=100.0, step=10.0)
            merge_gap_minutes = st.number_input("cluster: merge gap (minutes)", value=15.0, step=1.0)

        st.subheader("Date range")
        today = datetime.now(tzinfo_from_name(tz_name)).date()
        start_d = st.date_input("Start date", value=today.replace(day=1))
        end_d = st.date_input("End date", value=today)

    p = Path(samples_csv)
    if not p.exists():
        st.error(f"File not found: {samples_csv!r}")
        return

    if start_d > end_d:
        st.error("The start date must not be after the end date.")
        return

    try:
        samples = _load_samples(samples_csv, p.stat().st_mtime)
    except Exception as exc:
        st.exception(exc)
        return

    devices = sorted({s.device_id for s in samples})
    if not devices:
        st.warning("The CSV contains no usable samples.")
        return
    device = st.selectbox("Vehicle / device", options=devices, index=0)

    range_start, range_end = day_range_epoch_s(start_d, end_d, tz_name)
    device_samples = [s for s in samples if s.device_id == device and range_start <= s.timestamp <= range_end]

    params = SegmentParams(
        minimum_stop_minutes=float(min_minutes),
        stay_radius_m=float(stay_radius_m),
        max_gap_minutes=float(max_gap_minutes),
        moving_threshold_kmh=float(moving_kmh),
        min_samples=int(min_samples),
        centroid_mode=CentroidMode(centroid),
    )
    segmenter = build_segmenter(
        method, params, merge_radius_m=float(merge_radius_m), merge_gap_minutes=float(merge_gap_minutes)
    )
    with st.spinner("Segmenting ..."):
        episodes = segmenter.segment(device_samples)

    days = _day_ranges(start_d, end_d, tz_name)
    day_seconds: dict[date, float] = {d: 0.0 for d, _, _ in days}
    total_s = 0.0
    rows: list[dict[str, object]] = []
    for e in episodes:
        total_s += max(0, e.end_time - e.start_time)
        for d, d_start, d_end in days:
            ds = _overlap_seconds(e, d_start, d_end)
            if ds > 0:
                day_seconds[d] += ds
        rows.append(
            {
                "start_time": dt_from_epoch_s(e.start_time, tz_name).isoformat(sep=" "),
                "end_time": dt_from_epoch_s(e.end_time, tz_name).isoformat(sep=" "),
                "duration_minutes": e.duration_minutes,
                "centroid_lat": round(e.centroid_lat, 7),
                "centroid_lon": round(e.centroid_lon, 7),
                "samples": e.sample_count,
                "method": e.detection_method,
            }
        )

    st.subheader("Summary")
    c1, c2, c3 = st.columns(3)
    c1.metric("Total dwell time", format_hhmmss(total_s))
    c2.metric("Episodes", str(len(episodes)))
    c3.metric("Samples in range", str(len(device_samples)))

    st.subheader("Average dwell per day")
    st.metric("Per day (selected range)", format_hhmmss(total_s / float(max(1, len(days)))))
    with st.expander("Per day", expanded=False):
        day_rows = [
            {"date": d.isoformat(), "hhmmss": format_hhmmss(sec), "seconds": round(sec, 3)}
            for d, sec in sorted(day_seconds.items(), key=lambda kv: kv[0])
        ]
        st.dataframe(day_rows, use_container_width=True, height=360)

    st.subheader("Episodes")
    st.dataframe(rows, use_container_width=True, height=520)
    if rows:
        st.download_button(
            "Download episodes.csv",
            data=_episodes_csv(rows),
            file_name=f"episodes_{device}.csv",
            mime="text/csv",
        )

    if episodes:
        st.map({"lat": [e.centroid_lat for e in episodes], "lon": [e.centroid_lon for e in episodes]})

    st.caption(
        "Dates are evaluated in the selected timezone; the range is [start 00:00, end 23:59:59]. "
        "Samples without a GPS fix (0, 0) are ignored."
    )


if __name__ == "__main__":
    main()
