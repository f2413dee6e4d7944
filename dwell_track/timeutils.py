"""Time parsing and formatting utilities."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Iterable

from zoneinfo import ZoneInfo

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%d.%m.%Y",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%Y/%m/%d",
    "%d.%m.%y",
    "%d/%m/%y",
)


def tzinfo_from_name(tz_name: str) -> tzinfo:
    """Create tzinfo from an IANA timezone name.

    Args:
        tz_name: Timezone name like "Europe/Berlin".

    Returns:
        tzinfo instance.

    Raises:
        ValueError: If timezone name is invalid on this system.
    """

    try:
        return ZoneInfo(tz_name)
    except Exception as exc:  # ZoneInfo raises KeyError / ZoneInfoNotFoundError (platform dependent)
        raise ValueError(f"Invalid timezone: {tz_name!r}. Example: Europe/Berlin") from exc


def dt_from_epoch_s(epoch_s: int | float, tz_name: str) -> datetime:
    """Convert Unix epoch seconds to a timezone-aware datetime."""

    return datetime.fromtimestamp(epoch_s, tz=tzinfo_from_name(tz_name))


def epoch_s_from_dt(dt: datetime) -> int:
    """Convert a datetime to Unix epoch seconds.

    Args:
        dt: Datetime. If naive, will be treated as UTC (discouraged).
    """

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return int(dt.timestamp())


def parse_dt(text: str, tz_name: str) -> datetime:
    """Parse user-provided datetime text to a timezone-aware datetime.

    Supported formats:
      - "YYYY-MM-DD HH:MM:SS"
      - "YYYY-MM-DDTHH:MM:SS"
      - with optional timezone offset, e.g. "+02:00"

    If timezone is missing, it will be assumed to be tz_name.

    Raises:
        ValueError: If cannot parse.
    """

    s = text.strip().replace("T", " ")
    tz = tzinfo_from_name(tz_name)
    try:
        dt = datetime.fromisoformat(s)
    except ValueError as exc:
        raise ValueError(f"Cannot parse datetime: {text!r}. Expected e.g. 2025-08-15 09:30:00") from exc

    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    return dt.astimezone(tz)


def parse_date(text: str) -> date:
    """Parse a calendar date in one of the common European/ISO notations.

    Accepts 2025-08-15, 15.08.2025, 15/08/2025, 15-08-2025, 2025/08/15,
    15.08.25 and 15/08/25.

    Raises:
        ValueError: If none of the formats match.
    """

    s = text.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date: {text!r}. Supported: YYYY-MM-DD, DD.MM.YYYY, DD/MM/YYYY, ...")


def day_range_epoch_s(start_d: date, end_d: date, tz_name: str) -> tuple[int, int]:
    """Convert an inclusive date range to epoch seconds [start 00:00:00, end 23:59:59]."""

    if start_d > end_d:
        raise ValueError("start date must not be after end date")
    tz = tzinfo_from_name(tz_name)
    start_dt = datetime.combine(start_d, time.min).replace(tzinfo=tz)
    end_dt = datetime.combine(end_d + timedelta(days=1), time.min).replace(tzinfo=tz)
    return int(start_dt.timestamp()), int(end_dt.timestamp()) - 1


def round_minutes(seconds: float) -> int:
    """Round a duration in seconds to whole minutes, halves rounding up."""

    return int(math.floor(seconds / 60.0 + 0.5))


def format_hhmmss(seconds: float) -> str:
    s = int(round(max(0.0, seconds)))
    h = s // 3600
    m = (s % 3600) // 60
    sec = s % 60
    return f"{h:02d}:{m:02d}:{sec:02d}"


@dataclass(frozen=True, slots=True)
class DeltaStats:
    """Sampling interval stats (seconds)."""

    count: int
    min_s: float
    median_s: float
    p95_s: float
    max_s: float


def delta_stats(epoch_s_sorted: Iterable[int]) -> DeltaStats | None:
    """Compute basic sampling-interval statistics.

    Args:
        epoch_s_sorted: Epoch seconds sorted ascending.

    Returns:
        DeltaStats or None if less than 2 points.
    """

    ts = list(epoch_s_sorted)
    if len(ts) < 2:
        return None
    deltas = [float(ts[i] - ts[i - 1]) for i in range(1, len(ts)) if ts[i] >= ts[i - 1]]
    if not deltas:
        return None
    deltas.sort()
    n = len(deltas)
    median = deltas[n // 2] if n % 2 == 1 else 0.5 * (deltas[n // 2 - 1] + deltas[n // 2])
    p95 = deltas[int(0.95 * (n - 1))]
    return DeltaStats(
        count=n,
        min_s=deltas[0],
        median_s=median,
        p95_s=p95,
        max_s=deltas[-1],
    )
