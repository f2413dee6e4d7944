"""Command-line interface for dwell_track.

Run:
    python -m dwell_track inspect --csv samples.csv
    python -m dwell_track segment --csv samples.csv --device truck-1
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
import time
from dataclasses import asdict
from pathlib import Path

from dwell_track.csv_io import (
    CsvLocationDirectory,
    CsvTelemetrySource,
    CsvVisitSink,
    load_blind_spots,
    load_samples,
    load_vehicles,
)
from dwell_track.gate import GateParams, VisitConfirmationGate
from dwell_track.history import ReplayItem, ReplayOutcome, ReplayParams, replay
from dwell_track.inspect import export_readable_csv, inspect_samples
from dwell_track.live import LiveMonitor, LiveParams, PollOutcome, VehicleCheck, active_visits
from dwell_track.models import DEFAULT_TZ, Vehicle
from dwell_track.movement import DecisionParams
from dwell_track.ports import SinkError
from dwell_track.segmenter import (
    CentroidMode,
    EpisodesTotal,
    SegmentParams,
    build_segmenter,
    iter_episodes_from_csv,
    sum_episodes,
    write_episodes_csv,
)
from dwell_track.store import GateStoreError, SqliteGateStore
from dwell_track.timeutils import (
    day_range_epoch_s,
    dt_from_epoch_s,
    epoch_s_from_dt,
    parse_date,
    parse_dt,
)

logger = logging.getLogger(__name__)


def _fmt(epoch_s: int, tz_name: str, fmt: str = "%Y-%m-%d %H:%M") -> str:
    return dt_from_epoch_s(epoch_s, tz_name).strftime(fmt)


def _range_epoch_s(args: argparse.Namespace) -> tuple[int | None, int | None]:
    start = epoch_s_from_dt(parse_dt(args.range_start, args.tz)) if args.range_start else None
    end = epoch_s_from_dt(parse_dt(args.range_end, args.tz)) if args.range_end else None
    return start, end


def _segment_params(args: argparse.Namespace) -> SegmentParams:
    return SegmentParams(
        minimum_stop_minutes=args.min_minutes,
        stay_radius_m=args.stay_radius_m,
        max_gap_minutes=args.max_gap_minutes,
        moving_threshold_kmh=args.moving_kmh,
        min_samples=args.min_samples,
        centroid_mode=CentroidMode(args.centroid),
    )


def _vehicles(args: argparse.Namespace, source: CsvTelemetrySource) -> list[Vehicle]:
    named = load_vehicles(args.vehicles) if args.vehicles else {}
    ids = source.device_ids()
    if args.vehicle_id:
        if args.vehicle_id not in ids:
            raise ValueError(f"vehicle {args.vehicle_id!r} has no samples")
        ids = [args.vehicle_id]
    return [named.get(vid, Vehicle(id=vid, name=vid)) for vid in ids]


def _cmd_inspect(args: argparse.Namespace) -> int:
    samples, summary = load_samples(args.csv)
    res = inspect_samples(samples)

    print("### CSV columns")
    print(", ".join(summary.fieldnames))
    print()

    print("### Rows")
    print(f"total_rows={summary.rows_total}, parsed={summary.rows_parsed}, skipped={summary.rows_skipped}")
    print(f"devices={', '.join(res.devices)}")
    print()

    if res.min_time is not None and res.max_time is not None:
        print("### Time range (local)")
        start = dt_from_epoch_s(res.min_time, args.tz)
        end = dt_from_epoch_s(res.max_time, args.tz)
        print(f"start={start.isoformat(sep=' ')}, end={end.isoformat(sep=' ')}")
        print()

    if res.delta is not None:
        print("### Sampling interval (seconds)")
        print(
            f"count={res.delta.count}, min={res.delta.min_s:.3f}, median={res.delta.median_s:.3f}, "
            f"p95={res.delta.p95_s:.3f}, max={res.delta.max_s:.3f}"
        )
        print()

    print("### Coordinate range")
    print(f"lat=[{res.min_lat}, {res.max_lat}], lon=[{res.min_lon}, {res.max_lon}]")
    print()

    print("### Data quality")
    print(
        f"invalid_fixes={res.invalid_fixes}, unknown_speed={res.unknown_speed}, "
        f"duplicate_timestamps={res.duplicate_timestamps}"
    )
    print()

    if args.export:
        export_readable_csv(samples, args.export, args.tz)
        print(f"Exported: {args.export}")

    if args.json:
        payload = asdict(res) | {
            "rows_total": summary.rows_total,
            "rows_parsed": summary.rows_parsed,
            "rows_skipped": summary.rows_skipped,
            "fieldnames": list(summary.fieldnames),
        }
        print(json.dumps(payload, ensure_ascii=False, indent=2))
    return 0


def _cmd_segment(args: argparse.Namespace) -> int:
    samples, _ = load_samples(args.csv, device_id=args.device)
    devices = sorted({s.device_id for s in samples})
    if len(devices) > 1:
        print(f"The CSV holds several devices ({', '.join(devices)}); pick one with --device.", file=sys.stderr)
        return 2

    start, end = _range_epoch_s(args)
    if start is not None:
        samples = [s for s in samples if s.timestamp >= start]
    if end is not None:
        samples = [s for s in samples if s.timestamp <= end]

    segmenter = build_segmenter(
        args.method,
        _segment_params(args),
        merge_radius_m=args.merge_radius_m,
        merge_gap_minutes=args.merge_gap_minutes,
    )
    episodes = segmenter.segment(samples)
    write_episodes_csv(episodes, args.out, args.tz)
    total = sum_episodes(episodes)
    print(f"Found episodes={total.episodes}, total={total.total_hhmmss} ({total.total_seconds:.1f}s)")
    print(f"Exported: {args.out} (edit start_time/end_time and re-run sum-episodes if needed)")
    return 0


def _cmd_sum_episodes(args: argparse.Namespace) -> int:
    episodes = list(iter_episodes_from_csv(args.episodes, args.tz))

    start, end = _range_epoch_s(args)
    if start is not None or end is not None:

        def clipped_seconds(e_start: int, e_end: int) -> float:
            lo = e_start if start is None else max(e_start, start)
            hi = e_end if end is None else min(e_end, end)
            return float(max(0, hi - lo))

        total = EpisodesTotal(
            episodes=len(episodes),
            total_seconds=sum(clipped_seconds(e.start_time, e.end_time) for e in episodes),
        )
    else:
        total = sum_episodes(episodes)

    print(f"episodes={total.episodes}, total={total.total_hhmmss} ({total.total_seconds:.1f}s)")
    return 0


def _print_replay_item(item: ReplayItem, tz_name: str) -> None:
    e = item.episode
    when = f"{_fmt(e.start_time, tz_name)} - {_fmt(e.end_time, tz_name, '%H:%M')}, {e.duration_minutes} min"
    if item.outcome is ReplayOutcome.BLIND_SPOT:
        assert item.blind_spot is not None
        print(f"    skip: blind spot {item.blind_spot.name!r} ({when})")
    elif item.outcome is ReplayOutcome.NO_LOCATION:
        print(f"    skip: no known location nearby ({when})")
    else:
        assert item.location is not None
        print(f"    visit at {item.location.name} ({when}, {item.location.distance_m:.0f} m): {item.outcome.value}")


def _cmd_replay(args: argparse.Namespace) -> int:
    if args.date_from and args.date_to:
        start, end = day_range_epoch_s(parse_date(args.date_from), parse_date(args.date_to), args.tz)
    elif args.date_from or args.date_to:
        print("--from and --to must be given together.", file=sys.stderr)
        return 2
    else:
        end = int(time.time())
        start = end - args.days * 86400
    print(f"Range: {_fmt(start, args.tz)} - {_fmt(end, args.tz)}")
    if args.dry_run:
        print("Dry run: nothing is written to the visit log.")

    source = CsvTelemetrySource.from_csv(args.samples)
    vehicles = _vehicles(args, source)
    directory = CsvLocationDirectory.from_csv(args.locations)
    blind_spots = load_blind_spots(args.blind_spots) if args.blind_spots else []
    sink = CsvVisitSink(args.visit_log, args.tz)
    segmenter = build_segmenter(
        args.method,
        _segment_params(args),
        merge_radius_m=args.merge_radius_m,
        merge_gap_minutes=args.merge_gap_minutes,
    )
    params = ReplayParams(proximity_m=args.proximity_m, dry_run=args.dry_run, force_update=args.force_update)

    current: list[str] = []

    def on_item(item: ReplayItem) -> None:
        if not current or current[-1] != item.vehicle.id:
            current.append(item.vehicle.id)
            print(f"Vehicle {item.vehicle.name} ({item.vehicle.id})")
        _print_replay_item(item, args.tz)

    try:
        report = replay(
            vehicles,
            start,
            end,
            source=source,
            directory=directory,
            sink=sink,
            segmenter=segmenter,
            blind_spots=blind_spots,
            params=params,
            on_item=on_item,
        )
    except SinkError as exc:
        logger.error("replay aborted: %s", exc)
        print(f"Visit log write failed, stopping: {exc}", file=sys.stderr)
        return 1

    print()
    print(f"vehicles={report.vehicles}, episodes={report.episodes_found}, recorded={report.recorded}")
    print(
        f"existing={report.count(ReplayOutcome.EXISTING)}, "
        f"blind_spot={report.count(ReplayOutcome.BLIND_SPOT)}, "
        f"no_location={report.count(ReplayOutcome.NO_LOCATION)}, "
        f"dry_run={report.count(ReplayOutcome.DRY_RUN)}"
    )
    return 0


def _print_check(check: VehicleCheck, tz_name: str) -> None:
    v = check.vehicle
    print(f"{v.name} ({v.id}) @ {_fmt(check.checked_at, tz_name, '%Y-%m-%d %H:%M:%S')}: {check.outcome.value}")
    for visit in check.ended:
        print(f"    visit at {visit.location_id} ended after {visit.duration_minutes} min")
    if check.location is not None:
        print(f"    nearest: {check.location.name} ({check.location.distance_m:.0f} m)")
    if check.snapshot is not None:
        s = check.snapshot
        print(
            f"    stopped {check.stop_minutes} min, movement {s.total_movement_m:.0f} m, "
            f"avg {s.average_speed} km/h, battery {s.battery_trend.value}"
        )
    if check.gate is not None and check.gate.duration_minutes is not None:
        print(f"    at location for {check.gate.duration_minutes} min ({check.gate.state.value})")
    if check.visit_id:
        print(f"    visit recorded: {check.visit_id}")
    if check.message:
        print(f"    {check.message}")


def _cmd_check(args: argparse.Namespace) -> int:
    at = epoch_s_from_dt(parse_dt(args.at, args.tz)) if args.at else None
    if at is not None and args.loop:
        print("--at cannot be combined with --loop.", file=sys.stderr)
        return 2

    source = CsvTelemetrySource.from_csv(args.samples, as_of=at)
    vehicles = _vehicles(args, source)
    store = SqliteGateStore(args.db)
    try:
        gate = VisitConfirmationGate(store, GateParams(minimum_visit_minutes=args.min_visit_minutes))
        params = LiveParams(
            proximity_m=args.proximity_m,
            poll_interval_minutes=args.interval_minutes,
            decision=DecisionParams(),
            workers=args.workers,
            dry_run=args.dry_run,
        )
        monitor = LiveMonitor(
            source,
            CsvLocationDirectory.from_csv(args.locations),
            CsvVisitSink(args.visit_log, args.tz),
            gate,
            blind_spots=load_blind_spots(args.blind_spots) if args.blind_spots else [],
            params=params,
            clock=(lambda: at) if at is not None else None,
        )

        def on_tick(results: list[VehicleCheck]) -> None:
            for check in results:
                _print_check(check, args.tz)
            created = sum(1 for c in results if c.outcome is PollOutcome.CREATED)
            print(f"checked={len(results)}, created={created}")

        if not args.loop:
            on_tick(monitor.run_once(vehicles))
            return 0

        stop = threading.Event()
        print(f"Polling every {args.interval_minutes} min (Ctrl+C to stop)", file=sys.stderr)
        try:
            monitor.run_forever(vehicles, stop, on_tick=on_tick)
        except KeyboardInterrupt:
            stop.set()
            print("\nStopped.", file=sys.stderr)
        return 0
    finally:
        store.close()


def _cmd_monitor(args: argparse.Namespace) -> int:
    if not Path(args.db).exists():
        print(f"No gate database at {args.db!r}; run 'check' first.", file=sys.stderr)
        return 1
    now = epoch_s_from_dt(parse_dt(args.at, args.tz)) if args.at else int(time.time())
    store = SqliteGateStore(args.db)
    try:
        gate = VisitConfirmationGate(store)
        if args.clear_old:
            deleted = gate.prune(now)
            print(f"Removed {deleted} old observations, {store.count_observations()} kept.")
            return 0
        visits = active_visits(gate.statistics(now), now)
        states = {
            (v.stats.vehicle_id, v.stats.location_id): gate.pair_state(v.stats.vehicle_id, v.stats.location_id, now)
            for v in visits
        }
    finally:
        store.close()

    if not visits:
        print("No active visits.")
        return 0

    print("### Active visits")
    for v in visits:
        st = v.stats
        print(f"{st.vehicle_name or st.vehicle_id} at {st.location_name or st.location_id}")
        state = states[(st.vehicle_id, st.location_id)]
        print(f"    duration {v.duration_minutes} min, status {v.status.value}, visit {state.value}")
        print(
            f"    avg distance {st.avg_distance_m:.0f} m, positions {st.observation_count}, "
            f"last signal {v.last_seen_minutes} min ago, since {_fmt(st.first_seen, args.tz, '%H:%M:%S')}"
        )
    print()
    print(f"{len(visits)} active visits of {len({v.stats.vehicle_id for v in visits})} vehicles")
    long_stays = [v for v in visits if v.long_stay]
    if long_stays:
        print("### Long stays (> 2h)")
        for v in long_stays:
            print(f"    {v.stats.vehicle_id} at {v.stats.location_name} for {v.duration_minutes / 60.0:.1f} h")
    return 0


def _add_segment_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--method", type=str, default="linear", choices=["linear", "cluster"], help="Segmentation method")
    p.add_argument("--min-minutes", type=float, default=2.0, help="Minimum dwell duration in minutes")
    p.add_argument("--stay-radius-m", type=float, default=75.0, help="Max distance from the running centroid")
    p.add_argument(
        "--max-gap-minutes",
        type=float,
        default=60.0,
        help="Consecutive samples further apart than this never share an episode",
    )
    p.add_argument("--moving-kmh", type=float, default=5.0, help="Speeds at or above this count as moving")
    p.add_argument("--min-samples", type=int, default=3, help="Minimum samples per episode")
    p.add_argument(
        "--centroid",
        type=str,
        default=CentroidMode.SAMPLE.value,
        choices=[m.value for m in CentroidMode],
        help="Episode centroid: plain sample mean or time-weighted mean",
    )
    p.add_argument("--merge-radius-m", type=float, default=100.0, help="cluster method: merge radius")
    p.add_argument("--merge-gap-minutes", type=float, default=15.0, help="cluster method: max gap to merge across")


def _add_collaborator_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--samples", type=str, required=True, help="Samples CSV (the telemetry source)")
    p.add_argument("--locations", type=str, required=True, help="Known locations CSV: id,name,lat,lon")
    p.add_argument("--blind-spots", type=str, default=None, help="Blind spots CSV: name,lat,lon,radius_m")
    p.add_argument("--vehicles", type=str, default=None, help="Vehicle names CSV: id,name")
    p.add_argument("--vehicle-id", type=str, default=None, help="Only process this vehicle")
    p.add_argument("--visit-log", type=str, default="visits_log.csv", help="Visit log CSV (the sink)")
    p.add_argument("--proximity-m", type=float, default=500.0, help="Location search radius in meters")
    p.add_argument("--dry-run", action="store_true", help="Do not write to the visit log")
    p.add_argument("--tz", type=str, default=DEFAULT_TZ, help="Timezone (IANA)")


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser."""

    p = argparse.ArgumentParser(prog="dwell_track")
    p.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    p_ins = sub.add_parser("inspect", help="Columns, time range, sampling intervals and data quality of a samples CSV")
    p_ins.add_argument("--csv", type=str, default="samples.csv", help="Input CSV path")
    p_ins.add_argument("--tz", type=str, default=DEFAULT_TZ, help="Timezone (IANA), default Europe/Berlin")
    p_ins.add_argument("--export", type=str, default=None, help="Also export a readable CSV with local times")
    p_ins.add_argument("--json", action="store_true", help="Also print JSON")
    p_ins.set_defaults(func=_cmd_inspect)

    p_seg = sub.add_parser("segment", help="Find dwell episodes of one device and export episodes.csv")
    p_seg.add_argument("--csv", type=str, default="samples.csv", help="Input CSV path")
    p_seg.add_argument("--device", type=str, default=None, help="Device id (required if the CSV holds several)")
    p_seg.add_argument("--tz", type=str, default=DEFAULT_TZ, help="Timezone (IANA)")
    p_seg.add_argument("--range-start", type=str, default=None, help="Only samples after, e.g. 2025-08-01 00:00:00")
    p_seg.add_argument("--range-end", type=str, default=None, help="Only samples before, e.g. 2025-08-31 23:59:59")
    p_seg.add_argument("--out", type=str, default="episodes.csv", help="Output episodes CSV path")
    _add_segment_options(p_seg)
    p_seg.set_defaults(func=_cmd_segment)

    p_sum = sub.add_parser("sum-episodes", help="Sum an episodes CSV (manual edits allowed)")
    p_sum.add_argument("--episodes", type=str, default="episodes.csv", help="episodes.csv path")
    p_sum.add_argument("--tz", type=str, default=DEFAULT_TZ, help="Timezone (IANA)")
    p_sum.add_argument("--range-start", type=str, default=None, help="Only count the overlap after this time")
    p_sum.add_argument("--range-end", type=str, default=None, help="Only count the overlap before this time")
    p_sum.set_defaults(func=_cmd_sum_episodes)

    p_rep = sub.add_parser("replay", help="Reconstruct past visits and write them to the visit log")
    _add_collaborator_options(p_rep)
    p_rep.add_argument("--days", type=int, default=7, help="Days back from now (without --from/--to)")
    p_rep.add_argument("--from", dest="date_from", type=str, default=None, help="Start date, e.g. 2025-08-15 or 15.08.2025")
    p_rep.add_argument("--to", dest="date_to", type=str, default=None, help="End date (inclusive)")
    p_rep.add_argument("--force-update", action="store_true", help="Rewrite visits already in the log")
    _add_segment_options(p_rep)
    p_rep.set_defaults(func=_cmd_replay)

    p_chk = sub.add_parser("check", help="Run one live poll (or poll continuously with --loop)")
    _add_collaborator_options(p_chk)
    p_chk.add_argument("--db", type=str, default="dwell_gate.sqlite", help="Gate database path")
    p_chk.add_argument("--at", type=str, default=None, help="Evaluate as of this local time (replays a recorded CSV)")
    p_chk.add_argument("--min-visit-minutes", type=int, default=5, help="Minimum visit duration before recording")
    p_chk.add_argument("--interval-minutes", type=float, default=15.0, help="Polling interval for --loop")
    p_chk.add_argument("--workers", type=int, default=4, help="Vehicles checked concurrently")
    p_chk.add_argument("--loop", action="store_true", help="Keep polling until interrupted")
    p_chk.set_defaults(func=_cmd_check)

    p_mon = sub.add_parser("monitor", help="Show visits currently tracked by the live gate")
    p_mon.add_argument("--db", type=str, default="dwell_gate.sqlite", help="Gate database path")
    p_mon.add_argument("--tz", type=str, default=DEFAULT_TZ, help="Timezone (IANA)")
    p_mon.add_argument("--at", type=str, default=None, help="Evaluate as of this local time")
    p_mon.add_argument("--clear-old", action="store_true", help="Delete expired observations and exit")
    p_mon.set_defaults(func=_cmd_monitor)

    return p


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        return int(args.func(args))
    except GateStoreError as exc:
        print(f"Gate database error: {exc}", file=sys.stderr)
        return 1
    except (KeyError, ValueError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
